# src/parley/storage/memory_store.py
from __future__ import annotations
import asyncio
import copy
import itertools
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from loguru import logger

from parley.core.errors import NotFoundError
from parley.core.models import Record, utc_now

R = TypeVar("R", bound=Record)

# Journal entry for a record that did not exist before the transaction touched it.
_ABSENT = object()


class MemoryRecordStore:
    """
    In-process record store.
    - Records are copied on the way in and out, so callers never share state
      with the store (same semantics as a database row).
    - One asyncio.Lock guards every single-record operation, so each update
      is atomic.
    - transaction() serialises units of work. Each write made inside the block
      (by its task or tasks it spawns) journals the record's prior state; on
      error only those records are restored. A record written both inside the
      transaction and by an outside task ends up at its pre-transaction state.
    """

    def __init__(self) -> None:
        self._tables: Dict[type, Dict[str, Record]] = {}
        self._lock = asyncio.Lock()
        self._tx_lock = asyncio.Lock()
        self._seq = itertools.count(1)
        self._journal: ContextVar[Optional[Dict[Tuple[type, str], Any]]] = ContextVar(
            f"parley_store_journal_{id(self)}", default=None
        )

    def _table(self, kind: type) -> Dict[str, Record]:
        return self._tables.setdefault(kind, {})

    def _remember(self, kind: type, record_id: str) -> None:
        # Caller holds self._lock.
        journal = self._journal.get()
        if journal is None or (kind, record_id) in journal:
            return
        prior = self._table(kind).get(record_id)
        journal[(kind, record_id)] = copy.deepcopy(prior) if prior is not None else _ABSENT

    def seed(self, records: Iterable[Record]) -> None:
        """Synchronous bulk load for startup, before the event loop runs. Replaces existing ids."""
        for record in records:
            record.seq = next(self._seq)
            self._table(type(record))[record.id] = copy.deepcopy(record)

    async def get(self, kind: Type[R], record_id: str) -> Optional[R]:
        async with self._lock:
            rec = self._table(kind).get(record_id)
            return copy.deepcopy(rec) if rec is not None else None  # type: ignore[return-value]

    async def list(
        self,
        kind: Type[R],
        *,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[R]:
        where = where or {}
        async with self._lock:
            rows = [
                r for r in self._table(kind).values()
                if all(getattr(r, k) == v for k, v in where.items())
            ]
            key = order_by or "created_at"
            rows.sort(key=lambda r: (getattr(r, key), r.seq), reverse=descending)
            if limit is not None:
                rows = rows[:limit]
            return [copy.deepcopy(r) for r in rows]  # type: ignore[misc]

    async def create(self, record: R) -> R:
        async with self._lock:
            table = self._table(type(record))
            if record.id in table:
                raise ValueError(f"{type(record).__name__} {record.id} already exists")
            self._remember(type(record), record.id)
            record.seq = next(self._seq)
            table[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    async def update(self, record: R, fields: Optional[Iterable[str]] = None) -> R:
        async with self._lock:
            table = self._table(type(record))
            stored = table.get(record.id)
            if stored is None:
                raise NotFoundError(f"{type(record).__name__} not found: {record.id}")
            self._remember(type(record), record.id)
            now = utc_now()
            if fields is None:
                fresh = copy.deepcopy(record)
                fresh.seq, fresh.created_at = stored.seq, stored.created_at
                stored = fresh
                table[record.id] = stored
            else:
                for name in fields:
                    setattr(stored, name, copy.deepcopy(getattr(record, name)))
            stored.updated_at = now
            record.updated_at = now
            return copy.deepcopy(stored)  # type: ignore[return-value]

    async def delete(self, kind: Type[R], record_id: str) -> bool:
        async with self._lock:
            self._remember(kind, record_id)
            return self._table(kind).pop(record_id, None) is not None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._tx_lock:
            journal: Dict[Tuple[type, str], Any] = {}
            token = self._journal.set(journal)
            try:
                yield
            except BaseException:
                async with self._lock:
                    for (kind, record_id), prior in journal.items():
                        table = self._table(kind)
                        if prior is _ABSENT:
                            table.pop(record_id, None)
                        else:
                            table[record_id] = prior
                logger.warning("transaction rolled back ({} records restored)", len(journal))
                raise
            finally:
                self._journal.reset(token)
