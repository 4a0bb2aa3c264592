from __future__ import annotations

import os
from pathlib import Path

import aiosqlite

from ...errors import PersistenceError
from .utils import _sqlite_memory_connection


class MemorySchemaMixin:
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _allow_destructive_reset_on_mismatch() -> bool:
        raw = os.getenv("MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH", "")
        return raw.strip().lower() in {"1", "true", "yes", "y", "on"}

    async def _has_user_tables(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite_%'
            LIMIT 1
            """
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def init(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
            version = int(row[0]) if row else 0
            has_tables = await self._has_user_tables(db)

            if version > self.SCHEMA_VERSION:
                if has_tables and self._allow_destructive_reset_on_mismatch():
                    await self._reset_schema(db)
                    await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
                    await db.commit()
                    return
                raise PersistenceError(
                    "SQLite schema version mismatch detected (database is newer than this build). "
                    f"Found user_version={version}, supported={self.SCHEMA_VERSION}. "
                    "Set MEMORY_SQLITE_RESET_ON_SCHEMA_MISMATCH=1 to allow destructive reset."
                )

            await self._create_schema(db)
            if version != self.SCHEMA_VERSION:
                await db.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION}")
            await db.commit()

    async def _reset_schema(self, db: aiosqlite.Connection) -> None:
        for table in ("turn_summaries", "tier_transitions", "turns", "sessions"):
            await db.execute(f"DROP TABLE IF EXISTS {table}")
        await self._create_schema(db)

    async def _create_schema(self, db: aiosqlite.Connection) -> None:
        await db.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY NOT NULL,
                user_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                turn_count INTEGER NOT NULL DEFAULT 0,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                last_activity_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_sessions_user_active
            ON sessions(user_id, ended_at, started_at DESC);

            CREATE TABLE IF NOT EXISTS turns (
                id TEXT PRIMARY KEY NOT NULL,
                session_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                turn_number INTEGER NOT NULL,
                user_message TEXT NOT NULL,
                ai_response TEXT NOT NULL DEFAULT '',
                user_tokens INTEGER NOT NULL DEFAULT 0,
                ai_tokens INTEGER NOT NULL DEFAULT 0,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                tier TEXT NOT NULL DEFAULT 'hot' CHECK (tier IN ('hot', 'warm', 'cold')),
                identity_critical INTEGER NOT NULL DEFAULT 0,
                tier_changed_at TEXT,
                FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
                UNIQUE (session_id, turn_number)
            );

            CREATE INDEX IF NOT EXISTS idx_turns_session_tier
            ON turns(session_id, tier, turn_number);

            CREATE INDEX IF NOT EXISTS idx_turns_user_tier
            ON turns(user_id, tier, created_at DESC);

            CREATE TABLE IF NOT EXISTS tier_transitions (
                id TEXT PRIMARY KEY NOT NULL,
                turn_id TEXT NOT NULL,
                from_tier TEXT NOT NULL,
                to_tier TEXT NOT NULL,
                reason TEXT NOT NULL,
                transitioned_at TEXT NOT NULL,
                FOREIGN KEY (turn_id) REFERENCES turns(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_transitions_turn
            ON tier_transitions(turn_id, transitioned_at);

            CREATE TABLE IF NOT EXISTS turn_summaries (
                id TEXT PRIMARY KEY NOT NULL,
                original_turn_id TEXT NOT NULL UNIQUE,
                summary_text TEXT NOT NULL,
                keywords TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                original_tokens INTEGER NOT NULL DEFAULT 0,
                compressed_tokens INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (original_turn_id) REFERENCES turns(id) ON DELETE CASCADE
            );
            """
        )
