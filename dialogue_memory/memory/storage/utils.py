from __future__ import annotations

import json
import os
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Mapping

import aiosqlite

from ...errors import PersistenceError, StorageConstraintError
from ..types import ConversationTurn, MemoryTier, TierTransition, TurnSummary


TURN_COLUMNS = (
    "id, session_id, user_id, turn_number, user_message, ai_response, "
    "user_tokens, ai_tokens, total_tokens, created_at, tier, identity_critical"
)


def _sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("MEMORY_SQLITE_BUSY_TIMEOUT_MS", "5000").strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(0, min(timeout, 60000))


def _casefold(value: object) -> str:
    return str(value or "").casefold()


@asynccontextmanager
async def _sqlite_memory_connection(db_path: str | Path) -> AsyncIterator[aiosqlite.Connection]:
    try:
        async with aiosqlite.connect(db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys=ON")
            timeout_ms = _sqlite_busy_timeout_ms()
            if timeout_ms > 0:
                await db.execute(f"PRAGMA busy_timeout={timeout_ms}")
            # SQLite lower() only folds ASCII; keyword search goes through Python casefold.
            await db.create_function("casefold", 1, _casefold, deterministic=True)
            yield db
    except sqlite3.IntegrityError as exc:
        raise StorageConstraintError(f"SQLite memory store constraint violated: {exc}") from exc
    except sqlite3.Error as exc:
        raise PersistenceError(f"SQLite memory store failure: {exc}") from exc


def normalize_keyword(keyword: str) -> str:
    return " ".join(str(keyword or "").strip().split()).casefold()


def row_to_turn(row: Mapping[str, Any]) -> ConversationTurn:
    return ConversationTurn(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        user_id=str(row["user_id"]),
        turn_number=int(row["turn_number"]),
        user_message=str(row["user_message"] or ""),
        ai_response=str(row["ai_response"] or ""),
        user_tokens=int(row["user_tokens"] or 0),
        ai_tokens=int(row["ai_tokens"] or 0),
        created_at=str(row["created_at"]),
        tier=MemoryTier.parse(row["tier"]),
        identity_critical=bool(row["identity_critical"]),
    )


def row_to_transition(row: Mapping[str, Any]) -> TierTransition:
    return TierTransition(
        id=str(row["id"]),
        turn_id=str(row["turn_id"]),
        from_tier=MemoryTier.parse(row["from_tier"]),
        to_tier=MemoryTier.parse(row["to_tier"]),
        reason=str(row["reason"] or ""),
        transitioned_at=str(row["transitioned_at"]),
    )


def encode_keywords(keywords: tuple[str, ...] | list[str]) -> str:
    return json.dumps([str(item) for item in keywords if str(item).strip()], ensure_ascii=False)


def decode_keywords(raw: object) -> tuple[str, ...]:
    try:
        parsed = json.loads(str(raw or "[]"))
    except json.JSONDecodeError:
        return ()
    if not isinstance(parsed, list):
        return ()
    return tuple(str(item) for item in parsed if str(item).strip())


def row_to_summary(row: Mapping[str, Any], *, prefix: str = "") -> TurnSummary:
    return TurnSummary(
        id=str(row[f"{prefix}id"]),
        original_turn_id=str(row[f"{prefix}original_turn_id"]),
        summary_text=str(row[f"{prefix}summary_text"] or ""),
        keywords=decode_keywords(row[f"{prefix}keywords"]),
        created_at=str(row[f"{prefix}created_at"]),
        original_tokens=int(row[f"{prefix}original_tokens"] or 0),
        compressed_tokens=int(row[f"{prefix}compressed_tokens"] or 0),
    )


async def insert_transition(
    db: aiosqlite.Connection,
    transition: TierTransition,
) -> None:
    await db.execute(
        """
        INSERT INTO tier_transitions (id, turn_id, from_tier, to_tier, reason, transitioned_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            transition.id,
            transition.turn_id,
            transition.from_tier.value,
            transition.to_tier.value,
            transition.reason,
            transition.transitioned_at,
        ),
    )


async def insert_summary(db: aiosqlite.Connection, summary: TurnSummary) -> bool:
    cursor = await db.execute(
        """
        INSERT OR IGNORE INTO turn_summaries (
            id, original_turn_id, summary_text, keywords, created_at, original_tokens, compressed_tokens
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            summary.id,
            summary.original_turn_id,
            summary.summary_text,
            encode_keywords(summary.keywords),
            summary.created_at,
            max(0, int(summary.original_tokens)),
            max(0, int(summary.compressed_tokens)),
        ),
    )
    return int(cursor.rowcount or 0) > 0
