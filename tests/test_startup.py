import pytest

from imagine.app_config import ImagineConfig, load_config
from imagine.defaults import DefaultSettingsService
from imagine.errors import DEAD_API
from imagine.repositories import InMemoryDefaultSettingsStore
from imagine.startup_checks import run_startup_checks
from shared.model_registry import ModelInventories, ModelKind


def test_load_config_reads_nested_section(tmp_path):
    path = tmp_path / "imagine.yaml"
    path.write_text(
        "imagine:\n  instance_id: test-1\n  sdapi_base_url: http://gpu:7860\n  queue_capacity: 5\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.instance_id == "test-1"
    assert config.queue_capacity == 5
    assert config.secondary_capacity == 24


def test_load_config_defaults_when_missing(tmp_path, monkeypatch):
    monkeypatch.setenv("IMAGINE_CONFIG", str(tmp_path / "nope.yaml"))
    assert load_config() == ImagineConfig()


@pytest.mark.asyncio
async def test_startup_warms_caches_and_defaults(backend):
    inventories = ModelInventories()
    result = await run_startup_checks(backend, inventories, DefaultSettingsService(InMemoryDefaultSettingsStore()))
    assert result.backend_alive
    assert result.inventory_errors == []
    assert result.defaults.width == 512
    assert inventories[ModelKind.CHECKPOINT].cached


@pytest.mark.asyncio
async def test_startup_with_dead_backend(backend):
    backend.alive = False
    inventories = ModelInventories()
    result = await run_startup_checks(backend, inventories, DefaultSettingsService(InMemoryDefaultSettingsStore()))
    assert not result.backend_alive
    assert result.error == DEAD_API
    assert not inventories[ModelKind.CHECKPOINT].cached


@pytest.mark.asyncio
async def test_model_cache_can_be_skipped(backend, monkeypatch):
    monkeypatch.setenv("IMAGINE_SKIP_MODEL_CACHE", "1")
    inventories = ModelInventories()
    await run_startup_checks(backend, inventories, DefaultSettingsService(InMemoryDefaultSettingsStore()))
    assert not any(inv.cached for inv in inventories)
