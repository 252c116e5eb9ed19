import asyncio
import copy
import json
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import AlreadyExists, ConcurrentModification, NotFound, PersistenceFailure
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.store')

Record = Dict[str, Any]


class Store(ABC):
    """Persistence service consumed by the chat core.

    A key-value store of JSON records grouped in tables. Every record carries
    an integer ``version`` bumped on each write; ``update`` can be made
    conditional on it so a stale read-modify-write is rejected instead of
    silently overwriting a newer list.
    """

    @abstractmethod
    async def get(self, table: str, key: str) -> Optional[Record]:
        """Return a copy of the record, or None."""

    @abstractmethod
    async def put(self, table: str, key: str, item: Record, overwrite: bool = False) -> Record:
        """Store a new record. Raises AlreadyExists unless overwrite is set."""

    @abstractmethod
    async def scan(self, table: str, predicate: Optional[Callable[[Record], bool]] = None) -> List[Record]:
        """Return copies of every record matching predicate."""

    @abstractmethod
    async def append_to_list(self, table: str, key: str, attr: str, items: Iterable[Any],
                             defaults: Optional[Record] = None) -> Record:
        """Atomically append items to a list attribute, creating the record from defaults."""

    @abstractmethod
    async def update(self, table: str, key: str, changes: Record,
                     expected_version: Optional[int] = None) -> Record:
        """Replace whole attributes of an existing record in one write."""

    @abstractmethod
    async def update_many(self, table: str,
                          updates: List[Tuple[str, Record, Optional[int]]]) -> List[Record]:
        """Apply several ``(key, changes, expected_version)`` updates all or nothing."""

    @abstractmethod
    async def delete(self, table: str, key: str) -> bool:
        """Remove a record; returns False when it did not exist."""


class JsonlStore(Store):
    """Store keeping every table in memory and mirroring it to a JSONL file.

    Each table lives in ``<directory>/<table>.jsonl``, one ``{"key", "record"}``
    object per line. The whole file is rewritten after each write (fine for the
    data sizes of a single chat server). With ``directory=None`` nothing
    touches the disk.
    """

    def __init__(self, directory: Optional[str] = None):
        """Initialize the store.

        Args:
            directory (str | None): Folder holding the table files

        Side Effects:
            - Creates directory structure if not exists
            - Loads existing tables from disk
        """
        self.directory = directory
        self._tables: Dict[str, Dict[str, Record]] = {}
        self._table_locks: Dict[str, asyncio.Lock] = {}
        if directory:
            os.makedirs(directory, exist_ok=True)
            self._load()

    def _load(self):
        for name in sorted(os.listdir(self.directory)):
            if not name.endswith(".jsonl"):
                continue
            table = name[:-len(".jsonl")]
            rows = self._tables.setdefault(table, {})
            with open(os.path.join(self.directory, name), "r", encoding="utf-8") as f:
                for line in f:
                    if not line.strip():
                        continue
                    rec = json.loads(line)
                    rows[rec["key"]] = rec["record"]
            logger.info(f"Loaded {len(rows)} records from table {table}")

    def _table(self, table: str) -> Dict[str, Record]:
        return self._tables.setdefault(table, {})

    def _write_file(self, table: str, lines: List[str]):
        path = os.path.join(self.directory, f"{table}.jsonl")
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    async def _flush(self, table: str, rows: Dict[str, Record]):
        if not self.directory:
            return
        lines = [json.dumps({"key": k, "record": v}, ensure_ascii=False) for k, v in rows.items()]
        try:
            await asyncio.to_thread(self._write_file, table, lines)
        except OSError as e:
            logger.error(f"Failed to write table {table}: {e}")
            raise PersistenceFailure(f"could not write {table}") from e
        logger.debug(f"Flushed {len(lines)} records to table {table}")

    async def _commit(self, table: str, build: Callable[[Dict[str, Record]], Dict[str, Optional[Record]]]):
        """Apply a batch of row changes to one table atomically.

        ``build`` receives the current rows, which it must not modify, and
        returns the new record for each changed key (None removes the key);
        it may raise to abort. The staged table is written to disk first and
        only replaces the in-memory table once the write succeeded, so a
        failed write leaves both untouched.
        """
        lock = self._table_locks.setdefault(table, asyncio.Lock())
        async with lock:
            rows = self._table(table)
            changes = build(rows)
            staged = dict(rows)
            for key, rec in changes.items():
                if rec is None:
                    staged.pop(key, None)
                else:
                    staged[key] = rec
            await self._flush(table, staged)
            self._tables[table] = staged
        return changes

    async def get(self, table, key):
        rec = self._table(table).get(key)
        return copy.deepcopy(rec) if rec is not None else None

    async def put(self, table, key, item, overwrite=False):
        def build(rows):
            if key in rows and not overwrite:
                raise AlreadyExists(f"{table} record {key} already exists")
            rec = copy.deepcopy(item)
            rec["version"] = rows[key].get("version", 0) + 1 if key in rows else 1
            return {key: rec}

        changes = await self._commit(table, build)
        return copy.deepcopy(changes[key])

    async def scan(self, table, predicate=None):
        return [copy.deepcopy(rec) for rec in self._table(table).values()
                if predicate is None or predicate(rec)]

    async def append_to_list(self, table, key, attr, items, defaults=None):
        items = copy.deepcopy(list(items))

        def build(rows):
            rec = copy.deepcopy(rows.get(key))
            if rec is None:
                rec = copy.deepcopy(defaults or {})
                rec["version"] = 0
            rec.setdefault(attr, [])
            rec[attr].extend(items)
            rec["version"] = rec.get("version", 0) + 1
            return {key: rec}

        changes = await self._commit(table, build)
        return copy.deepcopy(changes[key])

    async def update(self, table, key, changes, expected_version=None):
        updated = await self.update_many(table, [(key, changes, expected_version)])
        return updated[0]

    async def update_many(self, table, updates):
        updates = [(key, copy.deepcopy(changes), expected) for key, changes, expected in updates]

        def build(rows):
            staged = {}
            for key, changes, expected_version in updates:
                rec = staged[key] if key in staged else copy.deepcopy(rows.get(key))
                if rec is None:
                    raise NotFound(f"{table} record {key} not found")
                if expected_version is not None and rec.get("version", 0) != expected_version:
                    logger.warning(f"Stale write to {table}/{key}: expected version {expected_version}, "
                                   f"stored {rec.get('version', 0)}")
                    raise ConcurrentModification(f"{table} record {key} was modified concurrently")
                rec.update(changes)
                rec["version"] = rec.get("version", 0) + 1
                staged[key] = rec
            return staged

        staged = await self._commit(table, build)
        return [copy.deepcopy(staged[key]) for key, _, _ in updates]

    async def delete(self, table, key):
        existed = False

        def build(rows):
            nonlocal existed
            existed = key in rows
            return {key: None} if existed else {}

        await self._commit(table, build)
        return existed


class KeyedLock:
    """One asyncio.Lock per key, created on demand and dropped when idle.

    Serializes read-modify-write sequences against the same record while
    letting different records proceed concurrently.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    def __call__(self, *keys: str) -> "_KeyedLockContext":
        return _KeyedLockContext(self, sorted(set(keys)))

    async def _acquire(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_ref(key)
            raise

    def _release(self, key: str):
        self._locks[key].release()
        self._release_ref(key)

    def _release_ref(self, key: str):
        self._waiters[key] -= 1
        if self._waiters[key] == 0:
            del self._waiters[key]
            del self._locks[key]

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class _KeyedLockContext:
    # keys are sorted so two callers locking the same pair never deadlock
    def __init__(self, owner: KeyedLock, keys: List[str]):
        self.owner = owner
        self.keys = keys
        self.held: List[str] = []

    async def __aenter__(self):
        try:
            for key in self.keys:
                await self.owner._acquire(key)
                self.held.append(key)
        except BaseException:
            await self.__aexit__(None, None, None)
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        for key in reversed(self.held):
            self.owner._release(key)
        self.held = []
        return False
