from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from imagine.defaults import DefaultSettingsService
from imagine.errors import DEAD_API, classify_backend_error
from imagine.logging_utils import get_logger
from shared.model_registry import ModelInventories
from shared.schemas import DefaultSettings


@dataclass
class StartupResult:
    backend_alive: bool
    inventory_errors: List[str] = field(default_factory=list)
    defaults: Optional[DefaultSettings] = None
    error: Optional[str] = None


def _truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "y"}


def skip_model_cache() -> bool:
    return _truthy(os.getenv("IMAGINE_SKIP_MODEL_CACHE", ""))


async def run_startup_checks(
    backend,
    inventories: ModelInventories,
    defaults: DefaultSettingsService,
    name: str = "primary",
) -> StartupResult:
    """Probe the backend, warm the model caches and load default settings.

    A dead backend is reported but does not stop the service; jobs fail fast
    with the same message until it comes back.
    """
    slog = get_logger()

    try:
        settings = await defaults.get()
    except Exception as exc:
        slog.error("startup_defaults_failed", pipeline=name, error=str(exc))
        settings = None

    if not await backend.check_alive():
        slog.warning("startup_backend_unreachable", pipeline=name, error=DEAD_API, **classify_backend_error(DEAD_API))
        return StartupResult(backend_alive=False, defaults=settings, error=DEAD_API)

    errors: List[str] = []
    if not skip_model_cache():
        errors = await inventories.populate(backend)
        for message in errors:
            slog.warning("startup_model_cache_failed", pipeline=name, error=message)

    slog.info(
        "startup_checks_done",
        pipeline=name,
        cached={inv.kind.value: len(inv.names()) for inv in inventories},
    )
    return StartupResult(backend_alive=True, inventory_errors=errors, defaults=settings)
