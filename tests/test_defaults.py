import pytest

from imagine.defaults import BOT_MEMBER_ID, DefaultSettingsService, fill_in_defaults
from imagine.errors import ValidationError
from imagine.repositories import InMemoryDefaultSettingsStore
from shared.schemas import DefaultSettings


def test_fill_in_defaults_only_touches_zero_fields():
    settings, updated = fill_in_defaults(DefaultSettings(member_id="bot", width=768))
    assert updated
    assert (settings.width, settings.height, settings.batch_count, settings.batch_size) == (768, 512, 4, 1)

    complete = DefaultSettings(member_id="bot", width=640, height=640, batch_count=2, batch_size=2)
    same, updated = fill_in_defaults(complete)
    assert not updated
    assert same == complete


@pytest.mark.asyncio
async def test_first_get_initializes_and_persists():
    store = InMemoryDefaultSettingsStore()
    service = DefaultSettingsService(store)
    settings = await service.get()
    assert (settings.width, settings.height) == (512, 512)
    assert (await store.get_by_member_id(BOT_MEMBER_ID)).batch_count == 4


@pytest.mark.asyncio
async def test_existing_settings_are_kept():
    store = InMemoryDefaultSettingsStore()
    await store.upsert(DefaultSettings(member_id=BOT_MEMBER_ID, width=1024, height=768, batch_count=1, batch_size=3))
    settings = await DefaultSettingsService(store).get()
    assert (settings.width, settings.height, settings.batch_size) == (1024, 768, 3)


@pytest.mark.asyncio
async def test_updates_persist_and_refresh_cache():
    store = InMemoryDefaultSettingsStore()
    service = DefaultSettingsService(store)
    await service.update_dimensions(768, 1024)
    await service.update_batch(2, 3)
    settings = await service.get()
    assert (settings.width, settings.height, settings.batch_count, settings.batch_size) == (768, 1024, 2, 3)
    assert (await store.get_by_member_id(BOT_MEMBER_ID)).height == 1024


@pytest.mark.asyncio
async def test_cached_copy_cannot_be_mutated_from_outside():
    service = DefaultSettingsService(InMemoryDefaultSettingsStore())
    settings = await service.get()
    settings.width = 1
    assert (await service.get()).width == 512


@pytest.mark.asyncio
async def test_non_positive_updates_are_rejected():
    service = DefaultSettingsService(InMemoryDefaultSettingsStore())
    with pytest.raises(ValidationError):
        await service.update_dimensions(0, 512)
    with pytest.raises(ValidationError):
        await service.update_batch(1, -1)
