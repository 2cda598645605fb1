"""Service configuration loaded from YAML."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from imagine.defaults import DEFAULT_NEGATIVE
from imagine.job_queue import POLL_INTERVAL_S, PRIMARY_CAPACITY, SECONDARY_CAPACITY
from imagine.progress import TICK_INTERVAL_S, TIMEOUT_S

log = logging.getLogger("imagine.config")

IMAGINE_DIR = Path(__file__).resolve().parent
CONFIG_PATH = IMAGINE_DIR / "config" / "imagine.yaml"


class ImagineConfig(BaseModel):
    instance_id: str = "imagine"
    sdapi_base_url: str = "http://127.0.0.1:7860"
    secondary_base_url: Optional[str] = None
    queue_capacity: int = Field(PRIMARY_CAPACITY, ge=1)
    secondary_capacity: int = Field(SECONDARY_CAPACITY, ge=1)
    poll_interval_s: float = Field(POLL_INTERVAL_S, gt=0)
    progress_tick_s: float = Field(TICK_INTERVAL_S, gt=0)
    progress_timeout_s: float = Field(TIMEOUT_S, gt=0)
    backend_timeout_s: float = Field(600.0, gt=0)
    data_dir: Optional[str] = None
    chat_token: Optional[str] = None
    default_negative_prompt: str = DEFAULT_NEGATIVE
    host: str = "0.0.0.0"
    port: int = 9100


def config_path() -> Path:
    override = os.getenv("IMAGINE_CONFIG", "")
    return Path(override) if override else CONFIG_PATH


def load_config(path: Optional[Path] = None) -> ImagineConfig:
    path = Path(path) if path else config_path()
    if not path.exists():
        log.warning("Missing config %s, using defaults", path)
        return ImagineConfig()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return ImagineConfig.model_validate(raw.get("imagine", raw))
