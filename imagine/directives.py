"""
Prompt directive parsing.

Users steer a generation with inline ``--key value`` tokens, e.g.

    a cat --ar 16:9 --step 30 --seed 42 extra

Every token is stripped from the prompt and captured generically; the
recognized ones (``ar``, ``step``, ``cfgscale``, ``seed``, ``zoom``) are then
applied on top of the caller's defaults to produce the final geometry and
sampling parameters.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from imagine.errors import DirectiveError

log = logging.getLogger("imagine.directives")

EM_DASH = "—"

# --key [value]; one or two dashes not glued to a preceding word
DIRECTIVE_RE = re.compile(r"\B-{1,2}(\w+)(?: (-?[\w.:/\\]+))?")
WHITESPACE_RE = re.compile(r"\s+")

MAX_SEED = 2**63 - 1
MIN_SEED = -1
CFG_SCALE_RANGE = (1.0, 30.0)
ZOOM_RANGE = (1.0, 4.0)


@dataclass
class DirectiveDefaults:
    width: int = 512
    height: int = 512
    steps: int = 20
    cfg_scale: float = 7.0
    seed: int = 0
    hr_scale: float = 1.0
    enable_hr: bool = False


@dataclass
class DirectiveResult:
    sanitized_prompt: str
    parameters: Dict[str, str] = field(default_factory=dict)
    width: int = 512
    height: int = 512
    steps: int = 20
    cfg_scale: float = 7.0
    seed: int = -1
    enable_hr: bool = False
    hr_scale: float = 1.0
    hr_resize_x: int = 0
    hr_resize_y: int = 0


def fix_em_dash(prompt: str) -> str:
    """Phones autocorrect ``--`` into an em dash; undo that."""
    return prompt.replace(EM_DASH, "--")


def extract_directives(prompt: str) -> Tuple[Dict[str, str], str]:
    """Split ``prompt`` into (directives, sanitized prompt).

    A key given twice keeps its last value. A key without a value maps to "".
    """
    prompt = fix_em_dash(prompt or "")
    parameters: Dict[str, str] = {}
    for match in DIRECTIVE_RE.finditer(prompt):
        parameters[match.group(1).lower()] = match.group(2) or ""
    sanitized = WHITESPACE_RE.sub(" ", DIRECTIVE_RE.sub("", prompt)).strip()
    return parameters, sanitized


def ceil8(value: int) -> int:
    """Round a positive integer up to the next multiple of 8."""
    if value <= 0:
        raise ValueError(f"cannot round non-positive size {value} to a multiple of 8")
    return -(-value // 8) * 8


def _parse_ratio(ratio: str) -> Tuple[int, int]:
    parts = (ratio or "").split(":")
    if len(parts) != 2:
        raise DirectiveError("ar", ratio, "expected W:H")
    try:
        w_ratio, h_ratio = int(parts[0]), int(parts[1])
    except ValueError:
        raise DirectiveError("ar", ratio, "W and H must be integers") from None
    if w_ratio <= 0 or h_ratio <= 0:
        raise DirectiveError("ar", ratio, "W and H must be positive")
    return w_ratio, h_ratio


def aspect_ratio_calculation(ratio: str, width: int, height: int) -> Tuple[int, int]:
    """Scale the larger side of ``ratio`` from the base size, keeping the other side."""
    w_ratio, h_ratio = _parse_ratio(ratio)
    if w_ratio > h_ratio:
        return ceil8(int(height * (w_ratio / h_ratio))), height
    if h_ratio > w_ratio:
        return width, ceil8(int(width * (h_ratio / w_ratio)))
    return width, height


def aspect_ratio_from_size(width: int, height: int) -> str:
    """768x512 -> "3:2"."""
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid image size {width}x{height}")
    divisor = math.gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise DirectiveError(key, value, "expected an integer") from None


def _parse_float(key: str, value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise DirectiveError(key, value, "expected a number") from None


def _in_range(value: float, bounds: Tuple[float, float]) -> bool:
    return bounds[0] <= value <= bounds[1]


def clamp_seed(seed: int) -> int:
    return min(max(seed, MIN_SEED), MAX_SEED)


def parse_directives(
    prompt: str,
    defaults: DirectiveDefaults,
    aspect_ratio: Optional[str] = None,
) -> DirectiveResult:
    """Apply the directives found in ``prompt`` over ``defaults``.

    ``aspect_ratio`` is the slash-command option; it wins over ``--ar``
    unless it is blank or ``1:1``.

    Raises DirectiveError when a recognized directive has a malformed value.
    """
    parameters, sanitized = extract_directives(prompt)
    result = DirectiveResult(
        sanitized_prompt=sanitized,
        parameters=parameters,
        width=defaults.width,
        height=defaults.height,
        steps=defaults.steps,
        cfg_scale=defaults.cfg_scale,
        enable_hr=defaults.enable_hr,
        hr_scale=defaults.hr_scale,
    )

    if aspect_ratio and aspect_ratio != "1:1":
        result.width, result.height = aspect_ratio_calculation(aspect_ratio, defaults.width, defaults.height)
    elif "ar" in parameters:
        log.debug("Aspect ratio overwrite: %s", parameters["ar"])
        result.width, result.height = aspect_ratio_calculation(parameters["ar"], defaults.width, defaults.height)

    if "zoom" in parameters:
        zoom = _parse_float("zoom", parameters["zoom"])
        result.enable_hr = True
        result.hr_scale = zoom if _in_range(zoom, ZOOM_RANGE) else defaults.hr_scale
    elif not (result.enable_hr and result.hr_scale > 1.0):
        result.enable_hr = False

    if result.enable_hr:
        result.hr_resize_x = int(result.width * result.hr_scale)
        result.hr_resize_y = int(result.height * result.hr_scale)
    else:
        result.hr_resize_x = result.width
        result.hr_resize_y = result.height

    if "step" in parameters:
        steps = _parse_int("step", parameters["step"])
        result.steps = steps if steps >= 1 else defaults.steps

    if "cfgscale" in parameters:
        cfg_scale = _parse_float("cfgscale", parameters["cfgscale"])
        result.cfg_scale = cfg_scale if _in_range(cfg_scale, CFG_SCALE_RANGE) else defaults.cfg_scale

    if "seed" in parameters:
        result.seed = clamp_seed(_parse_int("seed", parameters["seed"]))
    elif defaults.seed == 0:
        result.seed = -1
    else:
        result.seed = clamp_seed(defaults.seed)

    return result
