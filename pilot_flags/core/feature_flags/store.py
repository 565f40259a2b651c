"""Flag Store.

Durable storage of flag definitions and whitelist entries:
- In-memory store
- SQLite store

The store owns identity and uniqueness: flag names are unique, a user has
at most one whitelist entry per flag, and deleting a flag deletes its
entries.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from dataclasses import replace
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

import anyio

from pilot_flags.core.errors import (
    DuplicateEntryError,
    DuplicateNameError,
    FlagNotFoundError,
    StoreError,
)
from pilot_flags.core.feature_flags.models import (
    FeatureFlag,
    PilotWhitelistEntry,
    as_utc,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FlagStore(ABC):
    """Abstract base class for flag storage."""

    @abstractmethod
    async def find_flag_by_name(self, name: str) -> Optional[FeatureFlag]:
        """Get a flag by name with its whitelist loaded."""
        pass

    @abstractmethod
    async def find_flag_by_id(self, flag_id: int) -> Optional[FeatureFlag]:
        """Get a flag by id with its whitelist loaded."""
        pass

    @abstractmethod
    async def list_flags(self) -> List[FeatureFlag]:
        """All flags ordered by name, whitelists loaded."""
        pass

    @abstractmethod
    async def save_flag(self, flag: FeatureFlag) -> FeatureFlag:
        """Insert (id is None) or update a flag; returns the stored flag.

        Updates only touch description, enabled and audit fields.
        """
        pass

    @abstractmethod
    async def delete_flag(self, flag_id: int) -> bool:
        """Delete a flag and its whitelist entries."""
        pass

    @abstractmethod
    async def save_whitelist_entry(self, entry: PilotWhitelistEntry) -> PilotWhitelistEntry:
        """Insert a whitelist entry; returns it with its id assigned."""
        pass

    @abstractmethod
    async def delete_whitelist_entry(self, entry_id: int) -> bool:
        """Delete a whitelist entry."""
        pass

    @abstractmethod
    async def list_whitelist_entries(self, flag_id: int) -> List[PilotWhitelistEntry]:
        """Entries of a flag ordered by user identifier."""
        pass

    @abstractmethod
    async def find_whitelist_entry(self, entry_id: int) -> Optional[PilotWhitelistEntry]:
        """Get a whitelist entry by id."""
        pass

    async def close(self) -> None:
        """Release resources held by the store."""
        return None


class InMemoryFlagStore(FlagStore):
    """In-memory flag storage. Returns copies so callers never alias state."""

    def __init__(self):
        self._flags: Dict[int, FeatureFlag] = {}
        self._entries: Dict[int, PilotWhitelistEntry] = {}
        self._next_flag_id = 1
        self._next_entry_id = 1
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _entries_for(self, flag_id: int) -> List[PilotWhitelistEntry]:
        entries = [e for e in self._entries.values() if e.feature_flag_id == flag_id]
        entries.sort(key=lambda e: e.user_identifier)
        return [copy.deepcopy(e) for e in entries]

    def _loaded(self, flag: FeatureFlag) -> FeatureFlag:
        return replace(copy.deepcopy(flag), whitelist=self._entries_for(flag.id))

    async def find_flag_by_name(self, name: str) -> Optional[FeatureFlag]:
        async with self._get_lock():
            for flag in self._flags.values():
                if flag.name == name:
                    return self._loaded(flag)
            return None

    async def find_flag_by_id(self, flag_id: int) -> Optional[FeatureFlag]:
        async with self._get_lock():
            flag = self._flags.get(flag_id)
            return self._loaded(flag) if flag else None

    async def list_flags(self) -> List[FeatureFlag]:
        async with self._get_lock():
            flags = sorted(self._flags.values(), key=lambda f: f.name)
            return [self._loaded(f) for f in flags]

    async def save_flag(self, flag: FeatureFlag) -> FeatureFlag:
        async with self._get_lock():
            if flag.id is None:
                if any(f.name == flag.name for f in self._flags.values()):
                    raise DuplicateNameError(
                        f"Feature flag '{flag.name}' already exists", name=flag.name
                    )
                stored = replace(copy.deepcopy(flag), id=self._next_flag_id, whitelist=[])
                self._next_flag_id += 1
                self._flags[stored.id] = stored
                return self._loaded(stored)

            current = self._flags.get(flag.id)
            if current is None:
                raise FlagNotFoundError(f"Feature flag {flag.id} not found", flag_id=flag.id)
            current.description = flag.description
            current.enabled = flag.enabled
            current.updated_at = flag.updated_at
            current.updated_by = flag.updated_by
            return self._loaded(current)

    async def delete_flag(self, flag_id: int) -> bool:
        async with self._get_lock():
            if self._flags.pop(flag_id, None) is None:
                return False
            for entry_id in [k for k, e in self._entries.items() if e.feature_flag_id == flag_id]:
                del self._entries[entry_id]
            return True

    async def save_whitelist_entry(self, entry: PilotWhitelistEntry) -> PilotWhitelistEntry:
        async with self._get_lock():
            if entry.feature_flag_id not in self._flags:
                raise FlagNotFoundError(
                    f"Feature flag {entry.feature_flag_id} not found",
                    flag_id=entry.feature_flag_id,
                )
            for existing in self._entries.values():
                if (
                    existing.feature_flag_id == entry.feature_flag_id
                    and existing.user_identifier == entry.user_identifier
                ):
                    raise DuplicateEntryError(
                        f"'{entry.user_identifier}' is already whitelisted",
                        flag_id=entry.feature_flag_id,
                    )
            stored = replace(copy.deepcopy(entry), id=self._next_entry_id)
            self._next_entry_id += 1
            self._entries[stored.id] = stored
            return copy.deepcopy(stored)

    async def delete_whitelist_entry(self, entry_id: int) -> bool:
        async with self._get_lock():
            return self._entries.pop(entry_id, None) is not None

    async def list_whitelist_entries(self, flag_id: int) -> List[PilotWhitelistEntry]:
        async with self._get_lock():
            return self._entries_for(flag_id)

    async def find_whitelist_entry(self, entry_id: int) -> Optional[PilotWhitelistEntry]:
        async with self._get_lock():
            entry = self._entries.get(entry_id)
            return copy.deepcopy(entry) if entry else None


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS feature_flags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        is_enabled INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT,
        created_by TEXT,
        updated_by TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pilot_whitelists (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        feature_flag_id INTEGER NOT NULL
            REFERENCES feature_flags(id) ON DELETE CASCADE,
        user_identifier TEXT NOT NULL,
        user_type TEXT,
        min_version TEXT,
        created_at TEXT NOT NULL,
        expires_at TEXT,
        created_by TEXT,
        UNIQUE (feature_flag_id, user_identifier)
    )
    """,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


class SqliteFlagStore(FlagStore):
    """SQLite flag storage; blocking calls run in a worker thread."""

    def __init__(self, db_path: str = "data/feature_flags.db"):
        self.db_path = Path(db_path).expanduser()
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            # Schema is created on first use, in the worker thread like every query
            if not self._schema_ready:
                await anyio.to_thread.run_sync(self._init_db)
                self._schema_ready = True
            return await anyio.to_thread.run_sync(partial(func, *args))
        except sqlite3.IntegrityError as e:
            raise self._map_integrity_error(e, *args) from e
        except sqlite3.Error as e:
            logger.error(f"SQLite operation failed: {e}", extra={"operation": func.__name__})
            raise StoreError(f"Flag store operation failed: {e}") from e

    @staticmethod
    def _map_integrity_error(error: sqlite3.IntegrityError, *args: Any) -> Exception:
        message = str(error)
        subject = args[0] if args else None
        if "feature_flags.name" in message:
            name = getattr(subject, "name", None)
            return DuplicateNameError(f"Feature flag '{name}' already exists", name=name)
        if "pilot_whitelists.feature_flag_id" in message:
            user = getattr(subject, "user_identifier", None)
            return DuplicateEntryError(
                f"'{user}' is already whitelisted",
                flag_id=getattr(subject, "feature_flag_id", None),
            )
        if "FOREIGN KEY" in message:
            flag_id = getattr(subject, "feature_flag_id", None)
            return FlagNotFoundError(f"Feature flag {flag_id} not found", flag_id=flag_id)
        return StoreError(f"Flag store constraint failed: {message}")

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> PilotWhitelistEntry:
        return PilotWhitelistEntry(
            id=row["id"],
            feature_flag_id=row["feature_flag_id"],
            user_identifier=row["user_identifier"],
            user_type=row["user_type"],
            min_version=row["min_version"],
            expires_at=_parse_iso(row["expires_at"]),
            created_at=_parse_iso(row["created_at"]),
            created_by=row["created_by"],
        )

    def _load_entries(self, conn: sqlite3.Connection, flag_id: int) -> List[PilotWhitelistEntry]:
        rows = conn.execute(
            "SELECT * FROM pilot_whitelists WHERE feature_flag_id = ? ORDER BY user_identifier",
            (flag_id,),
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def _row_to_flag(self, conn: sqlite3.Connection, row: sqlite3.Row) -> FeatureFlag:
        return FeatureFlag(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            enabled=bool(row["is_enabled"]),
            created_at=_parse_iso(row["created_at"]),
            updated_at=_parse_iso(row["updated_at"]),
            created_by=row["created_by"],
            updated_by=row["updated_by"],
            whitelist=self._load_entries(conn, row["id"]),
        )

    def _find_flag(self, column: str, value: Any) -> Optional[FeatureFlag]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT * FROM feature_flags WHERE {column} = ?", (value,)  # nosec B608
            ).fetchone()
            return self._row_to_flag(conn, row) if row else None

    def _list_flags(self) -> List[FeatureFlag]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT * FROM feature_flags ORDER BY name").fetchall()
            return [self._row_to_flag(conn, r) for r in rows]

    def _save_flag(self, flag: FeatureFlag) -> FeatureFlag:
        with closing(self._connect()) as conn:
            with conn:
                if flag.id is None:
                    cursor = conn.execute(
                        """
                        INSERT INTO feature_flags
                        (name, description, is_enabled, created_at, updated_at, created_by, updated_by)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            flag.name,
                            flag.description,
                            int(flag.enabled),
                            _iso(flag.created_at),
                            _iso(flag.updated_at),
                            flag.created_by,
                            flag.updated_by,
                        ),
                    )
                    flag_id = cursor.lastrowid
                else:
                    cursor = conn.execute(
                        """
                        UPDATE feature_flags
                        SET description = ?, is_enabled = ?, updated_at = ?, updated_by = ?
                        WHERE id = ?
                        """,
                        (
                            flag.description,
                            int(flag.enabled),
                            _iso(flag.updated_at),
                            flag.updated_by,
                            flag.id,
                        ),
                    )
                    if cursor.rowcount == 0:
                        raise FlagNotFoundError(
                            f"Feature flag {flag.id} not found", flag_id=flag.id
                        )
                    flag_id = flag.id
            row = conn.execute("SELECT * FROM feature_flags WHERE id = ?", (flag_id,)).fetchone()
            return self._row_to_flag(conn, row)

    def _delete(self, table: str, row_id: int) -> bool:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))  # nosec B608
            return cursor.rowcount > 0

    def _save_entry(self, entry: PilotWhitelistEntry) -> PilotWhitelistEntry:
        with closing(self._connect()) as conn:
            with conn:
                cursor = conn.execute(
                    """
                    INSERT INTO pilot_whitelists
                    (feature_flag_id, user_identifier, user_type, min_version,
                     created_at, expires_at, created_by)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.feature_flag_id,
                        entry.user_identifier,
                        entry.user_type,
                        entry.min_version,
                        _iso(entry.created_at),
                        _iso(entry.expires_at),
                        entry.created_by,
                    ),
                )
            row = conn.execute(
                "SELECT * FROM pilot_whitelists WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return self._row_to_entry(row)

    def _list_entries(self, flag_id: int) -> List[PilotWhitelistEntry]:
        with closing(self._connect()) as conn:
            return self._load_entries(conn, flag_id)

    def _find_entry(self, entry_id: int) -> Optional[PilotWhitelistEntry]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM pilot_whitelists WHERE id = ?", (entry_id,)
            ).fetchone()
            return self._row_to_entry(row) if row else None

    async def find_flag_by_name(self, name: str) -> Optional[FeatureFlag]:
        return await self._run(self._find_flag, "name", name)

    async def find_flag_by_id(self, flag_id: int) -> Optional[FeatureFlag]:
        return await self._run(self._find_flag, "id", flag_id)

    async def list_flags(self) -> List[FeatureFlag]:
        return await self._run(self._list_flags)

    async def save_flag(self, flag: FeatureFlag) -> FeatureFlag:
        return await self._run(self._save_flag, flag)

    async def delete_flag(self, flag_id: int) -> bool:
        return await self._run(self._delete, "feature_flags", flag_id)

    async def save_whitelist_entry(self, entry: PilotWhitelistEntry) -> PilotWhitelistEntry:
        return await self._run(self._save_entry, entry)

    async def delete_whitelist_entry(self, entry_id: int) -> bool:
        return await self._run(self._delete, "pilot_whitelists", entry_id)

    async def list_whitelist_entries(self, flag_id: int) -> List[PilotWhitelistEntry]:
        return await self._run(self._list_entries, flag_id)

    async def find_whitelist_entry(self, entry_id: int) -> Optional[PilotWhitelistEntry]:
        return await self._run(self._find_entry, entry_id)


def create_flag_store(backend: str, path: Optional[str] = None) -> FlagStore:
    """Build a store from the FLAG_STORE_BACKEND setting."""
    if backend == "memory":
        return InMemoryFlagStore()
    if backend == "sqlite":
        return SqliteFlagStore(path or "data/feature_flags.db")
    raise ValueError(f"Unknown flag store backend: {backend}")
