from __future__ import annotations

from typing import Any, Mapping

from ..types import ConversationSession, MemoryTier, new_id, utc_now_iso
from .utils import _sqlite_memory_connection


_SESSION_SELECT = """
    SELECT s.id, s.user_id, s.started_at, s.ended_at, s.turn_count, s.total_tokens, s.last_activity_at,
           (SELECT COUNT(*) FROM turns t WHERE t.session_id = s.id AND t.tier = 'hot') AS hot_count,
           (SELECT COUNT(*) FROM turns t WHERE t.session_id = s.id AND t.tier = 'warm') AS warm_count,
           (SELECT COUNT(*) FROM turns t WHERE t.session_id = s.id AND t.tier = 'cold') AS cold_count
    FROM sessions s
"""


def _aggregate_tier(row: Mapping[str, Any]) -> MemoryTier:
    if int(row["hot_count"] or 0) > 0:
        return MemoryTier.HOT
    if int(row["warm_count"] or 0) > 0:
        return MemoryTier.WARM
    if int(row["cold_count"] or 0) > 0:
        return MemoryTier.COLD
    return MemoryTier.HOT


def _row_to_session(row: Mapping[str, Any]) -> ConversationSession:
    return ConversationSession(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        started_at=str(row["started_at"]),
        ended_at=str(row["ended_at"]) if row["ended_at"] else None,
        turn_count=int(row["turn_count"] or 0),
        total_tokens=int(row["total_tokens"] or 0),
        last_activity_at=str(row["last_activity_at"]) if row["last_activity_at"] else None,
        tier=_aggregate_tier(row),
    )


class MemorySessionsMixin:
    async def get_or_create_session(self, user_id: str) -> ConversationSession:
        user = str(user_id or "").strip()
        if not user:
            raise ValueError("user_id cannot be empty")

        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute(
                _SESSION_SELECT
                + """
                WHERE s.user_id = ? AND s.ended_at IS NULL
                ORDER BY s.started_at DESC
                LIMIT 1
                """,
                (user,),
            ) as cursor:
                row = await cursor.fetchone()

            if row is not None:
                await db.commit()
                return _row_to_session(row)

            now = utc_now_iso()
            session = ConversationSession(id=new_id(), user_id=user, started_at=now, last_activity_at=now)
            await db.execute(
                """
                INSERT INTO sessions (id, user_id, started_at, ended_at, turn_count, total_tokens, last_activity_at)
                VALUES (?, ?, ?, NULL, 0, 0, ?)
                """,
                (session.id, session.user_id, session.started_at, session.last_activity_at),
            )
            await db.commit()
            return session

    async def get_session(self, session_id: str) -> ConversationSession | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(_SESSION_SELECT + " WHERE s.id = ?", (str(session_id),)) as cursor:
                row = await cursor.fetchone()
        return _row_to_session(row) if row is not None else None

    async def mark_session_ended(self, session_id: str) -> bool:
        async with _sqlite_memory_connection(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE sessions SET ended_at = ? WHERE id = ? AND ended_at IS NULL",
                (utc_now_iso(), str(session_id)),
            )
            await db.commit()
            return int(cursor.rowcount or 0) > 0

    async def list_idle_sessions(self, cutoff_iso: str) -> list[ConversationSession]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                _SESSION_SELECT
                + """
                WHERE s.ended_at IS NULL
                  AND COALESCE(s.last_activity_at, s.started_at) < ?
                ORDER BY COALESCE(s.last_activity_at, s.started_at) ASC
                """,
                (str(cutoff_iso),),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]

    async def list_user_sessions(self, user_id: str, *, limit: int = 20) -> list[ConversationSession]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                _SESSION_SELECT
                + """
                WHERE s.user_id = ?
                ORDER BY s.started_at DESC
                LIMIT ?
                """,
                (str(user_id), max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_session(row) for row in rows]
