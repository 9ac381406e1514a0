"""Persistence for engine state sections.

Two backends:

    JsonFileStateStore — one JSON document per state key, written atomically.
    PostgresStateStore — one row per (state_key, section) in ``engine_state``,
                         written with an idempotent upsert.

Both return a plain ``{section: payload}`` mapping; ``EngineState.from_sections``
parses each section independently.  An unreadable store yields ``{}`` so the
engine starts from defaults instead of failing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import asyncpg

from src.config import Settings, get_settings
from src.healthsync.sync.dedup import build_upsert_query

logger = logging.getLogger("healthsync.state_store")


class StateStore(ABC):
    @abstractmethod
    async def load(self, key: str) -> dict[str, Any]:
        """Return every persisted section for ``key`` ({} if none)."""

    @abstractmethod
    async def save(self, key: str, sections: dict[str, Any]) -> None:
        """Persist the given sections for ``key``, replacing previous values."""

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# JSON file
# ---------------------------------------------------------------------------


class JsonFileStateStore(StateStore):
    """Store each state key as ``<directory>/<key>.json``."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return self._directory / f"{safe}.json"

    async def load(self, key: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._read, self._path(key))

    async def save(self, key: str, sections: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, self._path(key), sections)

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("State file %s unreadable (%s), starting from defaults", path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("State file %s is not an object, starting from defaults", path)
            return {}
        return data

    @staticmethod
    def _write(path: Path, sections: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = JsonFileStateStore._read(path)
        existing.update(sections)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(existing, fh, indent=2, sort_keys=True)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


# ---------------------------------------------------------------------------
# Postgres
# ---------------------------------------------------------------------------

_TABLE = "engine_state"

CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    state_key  TEXT NOT NULL,
    section    TEXT NOT NULL,
    payload    JSONB,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (state_key, section)
)
"""

_UPSERT_SQL = build_upsert_query(
    _TABLE,
    columns=["state_key", "section", "payload"],
    conflict_columns=["state_key", "section"],
)


class PostgresStateStore(StateStore):
    """Sections as rows in ``engine_state``; payloads are JSONB."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, settings: Settings | None = None) -> "PostgresStateStore":
        """Create the connection pool and ensure the table exists."""
        s = settings or get_settings()
        pool = await asyncpg.create_pool(s.database_url, min_size=1, max_size=5, command_timeout=30)
        async with pool.acquire() as conn:
            await conn.execute(CREATE_TABLE_SQL)
        logger.info("State store pool initialized")
        return cls(pool)

    async def load(self, key: str) -> dict[str, Any]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT section, payload FROM {_TABLE} WHERE state_key = $1", key
            )
        sections: dict[str, Any] = {}
        for row in rows:
            try:
                payload = row["payload"]
                sections[row["section"]] = json.loads(payload) if isinstance(payload, str) else payload
            except json.JSONDecodeError as exc:
                logger.warning("State section %r unreadable (%s), skipping", row["section"], exc)
        return sections

    async def save(self, key: str, sections: dict[str, Any]) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    _UPSERT_SQL,
                    [(key, name, json.dumps(payload)) for name, payload in sections.items()],
                )

    async def close(self) -> None:
        await self._pool.close()
        logger.info("State store pool closed")


async def create_state_store(settings: Settings | None = None) -> StateStore:
    """Build the store selected by ``settings.state_backend``."""
    s = settings or get_settings()
    if s.state_backend == "postgres":
        return await PostgresStateStore.connect(s)
    return JsonFileStateStore(s.state_path)
