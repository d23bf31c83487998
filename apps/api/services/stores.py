"""Whole-record snapshot stores shared by the ledger, job queue and invite registry."""

from __future__ import annotations

import asyncio
import copy
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.snapshot_record import SnapshotRecord


Record = Dict[str, Any]
Table = Dict[str, Record]


class RecordStore(ABC):
    """Key/value persistence of JSON-compatible records.

    ``load``/``save`` move the whole table at once; ``get``/``put``/``delete``
    touch a single record. Writes are last-writer-wins per record.
    """

    namespace: str

    @abstractmethod
    async def load(self) -> Table:
        raise NotImplementedError

    @abstractmethod
    async def save(self, table: Table) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> Optional[Record]:
        raise NotImplementedError

    @abstractmethod
    async def put(self, key: str, record: Record) -> None:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, key: str) -> bool:
        raise NotImplementedError


class MemoryRecordStore(RecordStore):
    """Process-local store; records are deep-copied in and out."""

    def __init__(self, namespace: str = "default") -> None:
        self.namespace = namespace
        self._records: Table = {}

    async def load(self) -> Table:
        return copy.deepcopy(self._records)

    async def save(self, table: Table) -> None:
        self._records = copy.deepcopy(table)

    async def get(self, key: str) -> Optional[Record]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, key: str, record: Record) -> None:
        self._records[key] = copy.deepcopy(record)

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None


class JsonFileRecordStore(RecordStore):
    """One JSON document per namespace, rewritten atomically on every write."""

    def __init__(self, namespace: str, data_dir: str) -> None:
        self.namespace = namespace
        self.path = Path(data_dir) / f"{namespace}.json"
        self._lock = asyncio.Lock()

    def _read(self) -> Table:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    def _write(self, table: Table) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(table, indent=2, default=str), encoding="utf-8")
        os.replace(tmp_path, self.path)

    async def load(self) -> Table:
        async with self._lock:
            return await asyncio.to_thread(self._read)

    async def save(self, table: Table) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, table)

    async def get(self, key: str) -> Optional[Record]:
        async with self._lock:
            table = await asyncio.to_thread(self._read)
        return table.get(key)

    async def put(self, key: str, record: Record) -> None:
        async with self._lock:
            table = await asyncio.to_thread(self._read)
            table[key] = record
            await asyncio.to_thread(self._write, table)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            table = await asyncio.to_thread(self._read)
            if key not in table:
                return False
            del table[key]
            await asyncio.to_thread(self._write, table)
            return True


class SqlRecordStore(RecordStore):
    """Records stored as JSON rows in ``snapshot_records``, scoped by namespace."""

    def __init__(self, namespace: str, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.namespace = namespace
        self.session_maker = session_maker

    async def load(self) -> Table:
        async with self.session_maker() as db:
            result = await db.execute(
                select(SnapshotRecord).where(SnapshotRecord.namespace == self.namespace)
            )
            return {row.key: row.payload for row in result.scalars().all()}

    async def save(self, table: Table) -> None:
        async with self.session_maker() as db:
            await db.execute(
                delete(SnapshotRecord).where(SnapshotRecord.namespace == self.namespace)
            )
            for key, record in table.items():
                db.add(SnapshotRecord(namespace=self.namespace, key=key, payload=record))
            await db.commit()

    async def get(self, key: str) -> Optional[Record]:
        async with self.session_maker() as db:
            row = await db.get(SnapshotRecord, (self.namespace, key))
            return row.payload if row else None

    async def put(self, key: str, record: Record) -> None:
        async with self.session_maker() as db:
            await db.merge(SnapshotRecord(namespace=self.namespace, key=key, payload=record))
            await db.commit()

    async def delete(self, key: str) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                delete(SnapshotRecord).where(
                    SnapshotRecord.namespace == self.namespace,
                    SnapshotRecord.key == key,
                )
            )
            await db.commit()
            return bool(result.rowcount)


def build_record_store(namespace: str, backend: Optional[str] = None) -> RecordStore:
    """Build the configured store for ``namespace``."""
    selected = (backend or settings.STORE_BACKEND or "sql").lower()
    if selected == "memory":
        return MemoryRecordStore(namespace)
    if selected == "json":
        return JsonFileRecordStore(namespace, settings.DATA_DIR)
    if selected == "sql":
        from database import async_session_maker

        return SqlRecordStore(namespace, async_session_maker)
    raise ValueError(f"Unknown STORE_BACKEND: {selected}")
