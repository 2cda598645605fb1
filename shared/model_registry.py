"""
Model inventories for the rendering backend.

One cached inventory per model kind (checkpoints, VAEs, hypernetworks, plus
LoRAs and embeddings for listing). Each inventory is fetched from the backend
once, kept in memory and refreshed only on request. Requested model names are
resolved against an inventory with a fuzzy subsequence match so users can type
``dreamshaper`` instead of ``dreamshaper_8.safetensors [879db523c3]``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel

log = logging.getLogger("imagine.model_registry")


class ModelKind(str, Enum):
    CHECKPOINT = "checkpoint"
    VAE = "vae"
    HYPERNETWORK = "hypernetwork"
    LORA = "lora"
    EMBEDDING = "embedding"


@dataclass(frozen=True)
class KindSpec:
    path: str  # /sdapi/v1 listing endpoint
    name_field: str  # field holding the canonical name in the listing
    config_key: Optional[str] = None  # /sdapi/v1/options key, None if not switchable


KIND_SPECS: Dict[ModelKind, KindSpec] = {
    ModelKind.CHECKPOINT: KindSpec("/sdapi/v1/sd-models", "title", "sd_model_checkpoint"),
    ModelKind.VAE: KindSpec("/sdapi/v1/sd-vae", "model_name", "sd_vae"),
    ModelKind.HYPERNETWORK: KindSpec("/sdapi/v1/hypernetworks", "name", "sd_hypernetwork"),
    ModelKind.LORA: KindSpec("/sdapi/v1/loras", "name"),
    ModelKind.EMBEDDING: KindSpec("/sdapi/v1/embeddings", "name"),
}

# Kinds the reconciler switches, in the order slots are compared
SWITCHABLE_KINDS = (ModelKind.CHECKPOINT, ModelKind.VAE, ModelKind.HYPERNETWORK)


class ModelEntry(BaseModel):
    """One model known to the backend."""
    name: str  # canonical name, the value the backend accepts in /options
    filename: Optional[str] = None
    hash: Optional[str] = None
    alias: Optional[str] = None

    @classmethod
    def from_listing(cls, kind: ModelKind, item: Dict[str, Any]) -> "ModelEntry":
        spec = KIND_SPECS[kind]
        return cls(
            name=str(item.get(spec.name_field) or item.get("name") or ""),
            filename=item.get("filename") or item.get("path"),
            hash=item.get("hash") or item.get("sha256"),
            alias=item.get("alias") or item.get("model_name"),
        )


class InventorySource(Protocol):
    async def list_models(self, kind: ModelKind) -> List[ModelEntry]: ...


# ---------------------------------------------------------------------------
# Fuzzy matching
# ---------------------------------------------------------------------------
SEPARATORS = frozenset("_-./\\ [(")

FIRST_CHAR_MATCH_BONUS = 10
MATCH_FOLLOWING_SEPARATOR_BONUS = 20
CAMEL_CASE_MATCH_BONUS = 20
ADJACENT_MATCH_BONUS = 5
UNMATCHED_LEADING_CHAR_PENALTY = -5
MAX_UNMATCHED_LEADING_CHAR_PENALTY = -15


@dataclass
class FuzzyMatch:
    candidate: str
    index: int
    score: int
    matched_indexes: List[int]


def _score(needle: str, candidate: str) -> Optional[FuzzyMatch]:
    haystack = candidate.lower()
    matched: List[int] = []
    score = 0
    pos = 0
    for ch in needle:
        idx = haystack.find(ch, pos)
        if idx < 0:
            return None
        if idx == 0:
            score += FIRST_CHAR_MATCH_BONUS
        elif candidate[idx - 1] in SEPARATORS:
            score += MATCH_FOLLOWING_SEPARATOR_BONUS
        elif candidate[idx].isupper() and candidate[idx - 1].islower():
            score += CAMEL_CASE_MATCH_BONUS
        if matched and idx == matched[-1] + 1:
            score += ADJACENT_MATCH_BONUS
        matched.append(idx)
        pos = idx + 1

    score += max(UNMATCHED_LEADING_CHAR_PENALTY * matched[0], MAX_UNMATCHED_LEADING_CHAR_PENALTY)
    score -= len(candidate) - len(matched)
    return FuzzyMatch(candidate=candidate, index=-1, score=score, matched_indexes=matched)


def fuzzy_find(pattern: str, candidates: List[str]) -> List[FuzzyMatch]:
    """Rank ``candidates`` containing ``pattern`` as a case-insensitive subsequence.

    Best match first; equal scores keep the candidates' original order.
    """
    needle = (pattern or "").lower()
    if not needle:
        return []
    results: List[FuzzyMatch] = []
    for index, candidate in enumerate(candidates):
        match = _score(needle, candidate)
        if match is None:
            continue
        match.index = index
        results.append(match)
    results.sort(key=lambda m: -m.score)
    return results


# ---------------------------------------------------------------------------
# Inventories
# ---------------------------------------------------------------------------
class ModelInventory:
    """Cached list of one kind of model, fetched lazily from the backend."""

    def __init__(self, kind: ModelKind):
        self.kind = kind
        self._entries: Optional[List[ModelEntry]] = None

    @property
    def cached(self) -> bool:
        return self._entries is not None

    async def fetch(self, source: InventorySource) -> List[ModelEntry]:
        if self._entries is None:
            self._entries = await source.list_models(self.kind)
            if len(self._entries) > 2:
                log.info("Cached %d %s models, e.g. %s", len(self._entries), self.kind.value, self.render(0))
        return self._entries

    async def refresh(self, source: InventorySource) -> List[ModelEntry]:
        self._entries = None
        return await self.fetch(source)

    def render(self, index: int) -> str:
        if self._entries is None:
            raise LookupError(f"{self.kind.value} inventory not fetched yet")
        return self._entries[index].name

    def names(self) -> List[str]:
        return [entry.name for entry in self._entries or []]

    async def best_match(self, source: InventorySource, query: str) -> Optional[str]:
        await self.fetch(source)
        results = fuzzy_find(query, self.names())
        if not results:
            return None
        return self.render(results[0].index)

    def to_api_response(self) -> List[Dict[str, Any]]:
        return [entry.model_dump() for entry in self._entries or []]


class ModelInventories:
    """One inventory per ModelKind."""

    def __init__(self):
        self._inventories = {kind: ModelInventory(kind) for kind in ModelKind}

    def __getitem__(self, kind: ModelKind) -> ModelInventory:
        return self._inventories[kind]

    def __iter__(self):
        return iter(self._inventories.values())

    async def populate(self, source: InventorySource) -> List[str]:
        """Fetch every inventory; returns one message per kind that failed."""
        errors: List[str] = []
        for inventory in self:
            try:
                await inventory.fetch(source)
            except Exception as exc:
                errors.append(f"error caching {inventory.kind.value} models: {exc}")
        return errors
