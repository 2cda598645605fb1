"""Bot-wide default generation settings, created on first use and cached."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from imagine.errors import ValidationError
from imagine.repositories import DefaultSettingsStore, NotFoundError
from shared.schemas import DefaultSettings

log = logging.getLogger("imagine.defaults")

BOT_MEMBER_ID = "bot"
INITIAL_WIDTH = 512
INITIAL_HEIGHT = 512
INITIAL_BATCH_COUNT = 4
INITIAL_BATCH_SIZE = 1

DEFAULT_NEGATIVE = (
    "ugly, tiling, poorly drawn hands, poorly drawn feet, poorly drawn face, out of frame, "
    "mutation, mutated, extra limbs, extra legs, extra arms, disfigured, deformed, cross-eye, "
    "body out of frame, blurry, bad art, bad anatomy, blurred, text, watermark, grainy"
)
DEFAULT_SAMPLER = "Euler a"


def fill_in_defaults(settings: Optional[DefaultSettings], member_id: str = BOT_MEMBER_ID):
    """Fill zero fields; returns (settings, updated)."""
    if settings is None:
        settings = DefaultSettings(member_id=member_id)
    updated = False
    if settings.width == 0:
        settings.width = INITIAL_WIDTH
        updated = True
    if settings.height == 0:
        settings.height = INITIAL_HEIGHT
        updated = True
    if settings.batch_count == 0:
        settings.batch_count = INITIAL_BATCH_COUNT
        updated = True
    if settings.batch_size == 0:
        settings.batch_size = INITIAL_BATCH_SIZE
        updated = True
    return settings, updated


class DefaultSettingsService:
    def __init__(self, store: DefaultSettingsStore, member_id: str = BOT_MEMBER_ID):
        self.store = store
        self.member_id = member_id
        self._cached: Optional[DefaultSettings] = None
        self._lock = asyncio.Lock()

    async def get(self) -> DefaultSettings:
        if self._cached is not None:
            return self._cached.model_copy()
        async with self._lock:
            if self._cached is None:
                self._cached = await self._initialize_or_get()
        return self._cached.model_copy()

    async def _initialize_or_get(self) -> DefaultSettings:
        try:
            settings = await self.store.get_by_member_id(self.member_id)
        except NotFoundError:
            settings = None

        settings, updated = fill_in_defaults(settings, self.member_id)
        if updated:
            settings = await self.store.upsert(settings)
            log.info("Initialized bot default settings: %s", settings.model_dump())
        else:
            log.info("Retrieved bot default settings: %s", settings.model_dump())
        return settings

    async def update_dimensions(self, width: int, height: int) -> DefaultSettings:
        if width <= 0 or height <= 0:
            raise ValidationError(f"invalid default size {width}x{height}")
        settings = await self.get()
        settings.width = width
        settings.height = height
        self._cached = await self.store.upsert(settings)
        log.info("Updated default dimensions to: %dx%d", width, height)
        return self._cached.model_copy()

    async def update_batch(self, batch_count: int, batch_size: int) -> DefaultSettings:
        if batch_count <= 0 or batch_size <= 0:
            raise ValidationError(f"invalid default batch {batch_count}x{batch_size}")
        settings = await self.get()
        settings.batch_count = batch_count
        settings.batch_size = batch_size
        self._cached = await self.store.upsert(settings)
        log.info("Updated default batch count/size to: %d/%d", batch_count, batch_size)
        return self._cached.model_copy()
