"""Swappable key/value record stores backing the registry and status records."""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from .errors import IOFailure
from .settings import SupervisorSettings

logger = logging.getLogger("cmdsman.supervisor.store")

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


def _check_key(key: str) -> str:
    if not _KEY_PATTERN.match(key or "") or key.startswith("."):
        raise ValueError(f"invalid record key: {key!r}")
    return key


class RecordStore(Protocol):
    async def initialize(self) -> None: ...

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any]) -> None: ...

    async def list_keys(self) -> list[str]: ...


class MemoryRecordStore:
    """Process-local store; values are deep-copied so callers cannot alias them."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    async def initialize(self) -> None:
        return None

    async def get(self, key: str) -> dict[str, Any] | None:
        value = self._records.get(_check_key(key))
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: dict[str, Any]) -> None:
        self._records[_check_key(key)] = copy.deepcopy(value)

    async def list_keys(self) -> list[str]:
        return sorted(self._records)


class JsonFileRecordStore:
    """One `<key>.json` file per record, replaced atomically on every write."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, key: str) -> Path:
        return self.root / f"{_check_key(key)}.json"

    async def initialize(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"cannot create data directory {self.root}: {exc}") from exc

    async def get(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise IOFailure(f"cannot read record {key}: {exc}") from exc
        if not isinstance(payload, dict):
            raise IOFailure(f"record {key} is not an object")
        return payload

    async def set(self, key: str, value: dict[str, Any]) -> None:
        path = self._path(key)
        temp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(value, indent=2), encoding="utf-8")
            temp_path.replace(path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise IOFailure(f"cannot write record {key}: {exc}") from exc

    async def list_keys(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(path.stem for path in self.root.glob("*.json"))


class SqliteRecordStore:
    """Records kept as JSON text in a single SQLite table."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    async def initialize(self) -> None:
        logger.info("Initializing record database at %s", self.db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS records (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                await db.commit()
        except (OSError, sqlite3.Error) as exc:
            raise IOFailure(f"cannot initialize record database: {exc}") from exc

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    "SELECT value FROM records WHERE key = ?", (_check_key(key),)
                ) as cursor:
                    row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise IOFailure(f"cannot read record {key}: {exc}") from exc
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as exc:
            raise IOFailure(f"record {key} is corrupt: {exc}") from exc

    async def set(self, key: str, value: dict[str, Any]) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO records (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (_check_key(key), json.dumps(value), datetime.utcnow().isoformat()),
                )
                await db.commit()
        except sqlite3.Error as exc:
            raise IOFailure(f"cannot write record {key}: {exc}") from exc

    async def list_keys(self) -> list[str]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute("SELECT key FROM records ORDER BY key") as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise IOFailure(f"cannot list records: {exc}") from exc
        return [row[0] for row in rows]


def build_record_store(settings: SupervisorSettings) -> RecordStore:
    """Select the record backend named by settings."""
    if settings.store_backend == "memory":
        return MemoryRecordStore()
    if settings.store_backend == "sqlite":
        return SqliteRecordStore(settings.data_dir / "cmdsman.db")
    return JsonFileRecordStore(settings.data_dir)
