"""
Persistence for generation records and default settings.

Two implementations of each store: in-memory (tests, ephemeral runs) and a
JSON file under ``data_dir`` guarded by a lock.
"""
from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Tuple

from shared.schemas import DefaultSettings, GenerationRecord

log = logging.getLogger("imagine.repositories")


class NotFoundError(LookupError):
    pass


class GenerationRecordStore(ABC):
    @abstractmethod
    async def create(self, record: GenerationRecord) -> GenerationRecord: ...

    @abstractmethod
    async def get_by_message_and_sort(self, message_id: str, sort_order: int) -> GenerationRecord: ...


class DefaultSettingsStore(ABC):
    @abstractmethod
    async def get_by_member_id(self, member_id: str) -> DefaultSettings: ...

    @abstractmethod
    async def upsert(self, settings: DefaultSettings) -> DefaultSettings: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------
class InMemoryGenerationRecordStore(GenerationRecordStore):
    def __init__(self):
        self.records: Dict[Tuple[str, int], GenerationRecord] = {}

    async def create(self, record: GenerationRecord) -> GenerationRecord:
        stored = record.model_copy(deep=True)
        self.records[(stored.message_id, stored.sort_order)] = stored
        return stored.model_copy(deep=True)

    async def get_by_message_and_sort(self, message_id: str, sort_order: int) -> GenerationRecord:
        try:
            return self.records[(message_id, sort_order)].model_copy(deep=True)
        except KeyError:
            raise NotFoundError(f"no generation for message {message_id} at position {sort_order}") from None


class InMemoryDefaultSettingsStore(DefaultSettingsStore):
    def __init__(self):
        self.settings: Dict[str, DefaultSettings] = {}

    async def get_by_member_id(self, member_id: str) -> DefaultSettings:
        try:
            return self.settings[member_id].model_copy()
        except KeyError:
            raise NotFoundError(f"no default settings for {member_id}") from None

    async def upsert(self, settings: DefaultSettings) -> DefaultSettings:
        self.settings[settings.member_id] = settings.model_copy()
        return settings.model_copy()


# ---------------------------------------------------------------------------
# JSON files
# ---------------------------------------------------------------------------
class _JSONFile:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock = threading.Lock()

    def load(self) -> list:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f) or []
        except json.JSONDecodeError as e:
            log.warning("Ignoring corrupt store %s: %s", self.path, e)
            return []

    def save(self, rows: list) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(rows, f, indent=2, default=str)
        tmp.replace(self.path)


class JSONGenerationRecordStore(GenerationRecordStore):
    def __init__(self, data_dir: Path):
        self._file = _JSONFile(Path(data_dir) / "generations.json")

    async def create(self, record: GenerationRecord) -> GenerationRecord:
        with self._file.lock:
            rows: List[dict] = self._file.load()
            rows = [
                r for r in rows
                if not (r.get("message_id") == record.message_id and r.get("sort_order") == record.sort_order)
            ]
            rows.append(record.model_dump(mode="json"))
            self._file.save(rows)
        return record.model_copy(deep=True)

    async def get_by_message_and_sort(self, message_id: str, sort_order: int) -> GenerationRecord:
        with self._file.lock:
            rows = self._file.load()
        for row in rows:
            if row.get("message_id") == message_id and row.get("sort_order") == sort_order:
                return GenerationRecord.model_validate(row)
        raise NotFoundError(f"no generation for message {message_id} at position {sort_order}")


class JSONDefaultSettingsStore(DefaultSettingsStore):
    def __init__(self, data_dir: Path):
        self._file = _JSONFile(Path(data_dir) / "default_settings.json")

    async def get_by_member_id(self, member_id: str) -> DefaultSettings:
        with self._file.lock:
            rows = self._file.load()
        for row in rows:
            if row.get("member_id") == member_id:
                return DefaultSettings.model_validate(row)
        raise NotFoundError(f"no default settings for {member_id}")

    async def upsert(self, settings: DefaultSettings) -> DefaultSettings:
        with self._file.lock:
            rows = [r for r in self._file.load() if r.get("member_id") != settings.member_id]
            rows.append(settings.model_dump())
            self._file.save(rows)
        return settings.model_copy()
