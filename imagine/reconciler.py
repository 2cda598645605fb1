"""
Model reconciliation around a generation job.

Before a job runs, the requested checkpoint / VAE / hypernetwork are resolved
against the backend's cached inventories and only the slots that differ from
the live configuration are switched. Afterwards the pre-job configuration is
restored.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol

from imagine.errors import ModelSwitchError
from shared.model_registry import (
    KIND_SPECS,
    SWITCHABLE_KINDS,
    InventorySource,
    ModelInventories,
)
from shared.schemas import BackendConfig

log = logging.getLogger("imagine.reconciler")

UNLOAD = "None"


class ConfigurableBackend(InventorySource, Protocol):
    async def get_config(self) -> BackendConfig: ...

    async def update_configuration(self, config: BackendConfig) -> None: ...


@dataclass
class SwitchResult:
    config: BackendConfig  # live configuration once the switch settled
    original: BackendConfig  # configuration before the switch
    patch: BackendConfig = field(default_factory=BackendConfig)

    @property
    def switched(self) -> bool:
        return not self.patch.is_empty()


class ModelReconciler:
    def __init__(self, backend: ConfigurableBackend, inventories: ModelInventories):
        self.backend = backend
        self.inventories = inventories

    async def resolve(self, kind, requested: Optional[str]) -> Optional[str]:
        """Map a user-typed model name onto the backend's canonical name.

        "" and None mean "leave the slot alone"; "None" unloads it.
        """
        if not requested:
            return None
        if requested == UNLOAD:
            return UNLOAD
        try:
            match = await self.inventories[kind].best_match(self.backend, requested)
        except Exception as e:
            log.warning("Failed to get cached %s models, passing %r through unresolved: %s", kind.value, requested, e)
            return requested
        if match is None:
            log.warning("No %s matches %r, passing it through unresolved", kind.value, requested)
            return requested
        if match != requested:
            log.info("Resolved %s %r -> %r", kind.value, requested, match)
        return match

    async def plan(self, requested: BackendConfig, live: BackendConfig) -> BackendConfig:
        """Patch holding only the slots whose resolved name differs from ``live``."""
        patch = {}
        for kind in SWITCHABLE_KINDS:
            key = KIND_SPECS[kind].config_key
            resolved = await self.resolve(kind, getattr(requested, key))
            if resolved is None or resolved == getattr(live, key):
                continue
            patch[key] = resolved
        return BackendConfig(**patch)

    async def switch(
        self,
        requested: BackendConfig,
        on_switch: Optional[Callable[[BackendConfig, BackendConfig], Awaitable[None]]] = None,
    ) -> SwitchResult:
        """Apply the patch needed for ``requested``.

        ``on_switch(live, patch)`` runs before the patch is sent, and only if
        there is one. A failure after reading the live configuration raises
        ModelSwitchError carrying it, so the caller can still revert.
        """
        original = await self.backend.get_config()
        patch = await self.plan(requested, original)
        if patch.is_empty():
            return SwitchResult(config=original, original=original, patch=patch)

        try:
            if on_switch is not None:
                await on_switch(original, patch)
            log.info("Switching models: %s", patch.patch())
            await self.backend.update_configuration(patch)
            confirmed = await self.backend.get_config()
        except Exception as e:
            raise ModelSwitchError(original, e) from e
        return SwitchResult(config=confirmed, original=original, patch=patch)

    async def revert(self, original: BackendConfig) -> bool:
        """Restore ``original`` slot by slot. Returns True if a patch was sent.

        A slot that was absent before the job is unloaded. If the live
        configuration cannot be read, every slot is restored.
        """
        try:
            live = await self.backend.get_config()
        except Exception as e:
            log.warning("Could not read live configuration before revert, restoring anyway: %s", e)
            live = None

        patch = {}
        for kind in SWITCHABLE_KINDS:
            key = KIND_SPECS[kind].config_key
            wanted = getattr(original, key)
            if live is not None and _loaded(getattr(live, key)) == _loaded(wanted):
                continue
            patch[key] = UNLOAD if wanted is None else wanted

        if not patch:
            return False
        log.info("Reverting models to %s", patch)
        await self.backend.update_configuration(BackendConfig(**patch))
        return True


def _loaded(value: Optional[str]) -> Optional[str]:
    """Slot value with "absent" and "None" both meaning nothing loaded."""
    return None if value in (None, UNLOAD) else value
