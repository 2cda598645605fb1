import asyncio

import pytest

from shared.model_registry import (
    ModelEntry,
    ModelInventories,
    ModelInventory,
    ModelKind,
    fuzzy_find,
)


class CountingSource:
    def __init__(self, names, fail_kinds=()):
        self.names = names
        self.fail_kinds = set(fail_kinds)
        self.fetches = 0

    async def list_models(self, kind):
        self.fetches += 1
        if kind in self.fail_kinds:
            raise RuntimeError(f"{kind.value} listing broke")
        return [ModelEntry(name=name) for name in self.names]


CHECKPOINTS = [
    "v1-5-pruned-emaonly.safetensors [6ce0161689]",
    "dreamshaper_8.safetensors [879db523c3]",
    "sd_xl_base_1.0.safetensors [31e35c80fc]",
]


def test_fuzzy_find_prefers_separator_and_prefix_matches():
    results = fuzzy_find("dreamshaper", CHECKPOINTS)
    assert results[0].candidate == "dreamshaper_8.safetensors [879db523c3]"
    assert results[0].index == 1


def test_fuzzy_find_is_case_insensitive_subsequence():
    results = fuzzy_find("SDXL", CHECKPOINTS)
    assert [r.candidate for r in results] == ["sd_xl_base_1.0.safetensors [31e35c80fc]"]


def test_fuzzy_find_no_match_or_empty_pattern():
    assert fuzzy_find("zzz", CHECKPOINTS) == []
    assert fuzzy_find("", CHECKPOINTS) == []


def test_entry_from_listing_uses_kind_name_field():
    item = {"title": "a.safetensors [1]", "model_name": "a", "hash": "1", "filename": "/m/a.safetensors"}
    entry = ModelEntry.from_listing(ModelKind.CHECKPOINT, item)
    assert entry.name == "a.safetensors [1]"
    assert entry.alias == "a"
    vae = ModelEntry.from_listing(ModelKind.VAE, {"model_name": "vae-ft-mse", "filename": "/v"})
    assert vae.name == "vae-ft-mse"


def test_inventory_fetches_once_until_refresh():
    source = CountingSource(CHECKPOINTS)
    inventory = ModelInventory(ModelKind.CHECKPOINT)

    async def scenario():
        await inventory.fetch(source)
        await inventory.fetch(source)
        assert await inventory.best_match(source, "v15") == CHECKPOINTS[0]
        assert source.fetches == 1
        source.names = ["other.ckpt"]
        await inventory.refresh(source)
        assert inventory.names() == ["other.ckpt"]
        assert source.fetches == 2

    asyncio.run(scenario())


def test_render_before_fetch_raises():
    with pytest.raises(LookupError):
        ModelInventory(ModelKind.LORA).render(0)


def test_populate_collects_errors_per_kind():
    source = CountingSource(["x"], fail_kinds=[ModelKind.LORA])
    inventories = ModelInventories()
    errors = asyncio.run(inventories.populate(source))
    assert len(errors) == 1
    assert "lora" in errors[0]
    assert inventories[ModelKind.CHECKPOINT].cached
    assert not inventories[ModelKind.LORA].cached
