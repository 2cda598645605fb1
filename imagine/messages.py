"""Text rendering for generation replies."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from shared.schemas import BackendConfig, TextToImageRequest

BAR_WIDTH = 20
MAX_CONTENT_LENGTH = 2000


def progress_bar(progress: float, width: int = BAR_WIDTH) -> str:
    progress = min(max(progress, 0.0), 1.0)
    filled = int(round(progress * width))
    return f"[{'█' * filled}{'░' * (width - filled)}] {progress * 100:5.1f}%"


def format_bytes(value: Optional[float]) -> str:
    if value is None:
        return "?"
    return f"{value / 1024 ** 3:.1f} GB"


def readable_memory(stats: Optional[Dict[str, Any]]) -> Optional[str]:
    """``{"used": .., "total": ..}`` -> "3.2 GB / 16.0 GB"."""
    if not stats or "total" not in stats:
        return None
    used = stats.get("used")
    if used is None and stats.get("free") is not None:
        used = stats["total"] - stats["free"]
    return f"{format_bytes(used)} / {format_bytes(stats['total'])}"


def adetailer_models(request: TextToImageRequest) -> List[str]:
    scripts = request.alwayson_scripts or {}
    args = (scripts.get("ADetailer") or {}).get("args") or []
    return [arg.get("ad_model", "") for arg in args if isinstance(arg, dict)]


def imagine_message_content(
    request: TextToImageRequest,
    user_id: str,
    progress: float = -1.0,
    models: Optional[BackendConfig] = None,
    ram: Optional[str] = None,
    vram: Optional[str] = None,
    eta: Optional[float] = None,
) -> str:
    seed = "at random(-1)" if request.seed == -1 else str(request.seed)
    parts = [
        f"<@{user_id}> asked me to imagine with step: `{request.steps}` cfg: `{request.cfg_scale:.1f}` "
        f"seed: `{seed}` sampler: `{request.sampler_name}` `{request.width} x {request.height}`"
    ]
    if request.enable_hr:
        parts.append(
            f" -> (x `{request.hr_scale:.1f}` by hires.fix) = `{request.hr_resize_x} x {request.hr_resize_y}`"
        )

    models = models or BackendConfig()
    if models.sd_model_checkpoint:
        parts.append(f"\n**Checkpoint**: `{models.sd_model_checkpoint}`")
    if models.sd_vae:
        parts.append(f"\n**VAE**: `{models.sd_vae}`")
    if models.sd_hypernetwork:
        parts.append(" " if models.sd_vae else "\n")
        parts.append(f"**Hypernetwork**: `{models.sd_hypernetwork}`")

    if 0 <= progress < 1:
        status = progress_bar(progress)
        if eta:
            status += f" ETA {eta:.0f}s"
        parts.append(f"\n**Progress**:\n```ansi\n{status}\n```")
        if ram or vram:
            usage = []
            if ram:
                usage.append(f"RAM: {ram}")
            if vram:
                usage.append(f"VRAM: {vram}")
            parts.append("\n" + " | ".join(usage))

    parts.append(f"\n```\n{request.prompt}\n```")

    detailers = adetailer_models(request)
    if detailers:
        parts.append(f"\n**ADetailer**: [{', '.join(detailers)}]")

    return "".join(parts)[:MAX_CONTENT_LENGTH]


def changing_models_content(live: BackendConfig, patch: BackendConfig) -> str:
    def slot(value: Optional[str]) -> str:
        return value if value is not None else "<nil>"

    return (
        "Changing models to: \n"
        f"**Checkpoint**: `{slot(live.sd_model_checkpoint)}` -> `{slot(patch.sd_model_checkpoint or live.sd_model_checkpoint)}`\n"
        f"**VAE**: `{slot(live.sd_vae)}` -> `{slot(patch.sd_vae or live.sd_vae)}`\n"
        f"**Hypernetwork**: `{slot(live.sd_hypernetwork)}` -> `{slot(patch.sd_hypernetwork or live.sd_hypernetwork)}`"
    )


def position_content(position: int) -> str:
    if position <= 1:
        return "I'm dreaming something up for you. You are next in line."
    return f"I'm dreaming something up for you. You are currently #{position} in line."
