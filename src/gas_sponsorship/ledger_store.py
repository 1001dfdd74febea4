"""Ledger storage backends.

A store persists LedgerRecords by key and offers ``apply`` as its single
read-modify-write unit. The in-memory store is process-local (demo/dev); the
JSON file store writes the whole mapping atomically with a temp file and
``os.replace``. See ledger_store_redis for the multi-instance backend.
"""
from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .ledger import LedgerRecord, Mutator


class LedgerStore(Protocol):
    backend: str

    async def load(self, key: str) -> Optional[LedgerRecord]: ...
    async def put(self, key: str, record: LedgerRecord) -> None: ...
    async def apply(self, key: str, mutate: Mutator) -> LedgerRecord: ...
    async def close(self) -> None: ...


class InMemoryLedgerStore:
    """In-memory ledger store (swap for the file or Redis store to persist)."""

    backend = "memory"

    def __init__(self) -> None:
        self._records: Dict[str, LedgerRecord] = {}

    async def load(self, key: str) -> Optional[LedgerRecord]:
        return self._records.get(key)

    async def put(self, key: str, record: LedgerRecord) -> None:
        self._records[key] = record

    async def apply(self, key: str, mutate: Mutator) -> LedgerRecord:
        # No await between read and write, so this is atomic on the event loop
        updated = mutate(self._records.get(key))
        self._records[key] = updated
        return updated

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {key: record.to_dict() for key, record in self._records.items()}

    async def close(self) -> None:
        return None


class JsonFileLedgerStore:
    """
    File-backed ledger store.

    Layout: a JSON object mapping ``"{address}_{chain_id}"`` to the record
    dict. Every write rewrites the file through a temp file in the same
    directory followed by ``os.replace``, so readers never see a torn file.
    Safe for one process; use the Redis store for several.
    """

    backend = "file"

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"Ledger file {self._path} is not a JSON object")
        return data

    def _write_all(self, data: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".ledger-", suffix=".json", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load_sync(self, key: str) -> Optional[LedgerRecord]:
        with self._lock:
            raw = self._read_all().get(key)
        return LedgerRecord.from_dict(raw) if raw else None

    def _put_sync(self, key: str, record: LedgerRecord) -> None:
        with self._lock:
            data = self._read_all()
            data[key] = record.to_dict()
            self._write_all(data)

    def _apply_sync(self, key: str, mutate: Mutator) -> LedgerRecord:
        with self._lock:
            data = self._read_all()
            raw = data.get(key)
            updated = mutate(LedgerRecord.from_dict(raw) if raw else None)
            data[key] = updated.to_dict()
            self._write_all(data)
            return updated

    async def load(self, key: str) -> Optional[LedgerRecord]:
        return await asyncio.to_thread(self._load_sync, key)

    async def put(self, key: str, record: LedgerRecord) -> None:
        await asyncio.to_thread(self._put_sync, key, record)

    async def apply(self, key: str, mutate: Mutator) -> LedgerRecord:
        return await asyncio.to_thread(self._apply_sync, key, mutate)

    async def close(self) -> None:
        return None


__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "JsonFileLedgerStore",
]
