from __future__ import annotations

from typing import Iterable, List

from ..types import ConversationTurn, MemoryTier
from .utils import TURN_COLUMNS, _sqlite_memory_connection, normalize_keyword, row_to_turn


class MemoryTurnsMixin:
    async def next_turn_number(self, session_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT COALESCE(MAX(turn_number), 0) + 1 FROM turns WHERE session_id = ?",
                (str(session_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 1

    async def insert_turns(self, turns: Iterable[ConversationTurn]) -> int:
        """Persist turns with tier `hot`.

        Re-inserting an already stored turn id is a no-op. A different turn reusing a
        stored (session, turn_number) pair fails the whole batch with StorageConstraintError.
        """
        batch = list(turns)
        if not batch:
            return 0

        inserted = 0
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for turn in batch:
                    cursor = await db.execute(
                        """
                        INSERT INTO turns (
                            id, session_id, user_id, turn_number, user_message, ai_response,
                            user_tokens, ai_tokens, total_tokens, created_at, tier, identity_critical
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'hot', ?)
                        ON CONFLICT(id) DO NOTHING
                        """,
                        (
                            turn.id,
                            turn.session_id,
                            turn.user_id,
                            int(turn.turn_number),
                            turn.user_message,
                            turn.ai_response,
                            max(0, int(turn.user_tokens)),
                            max(0, int(turn.ai_tokens)),
                            turn.total_tokens,
                            turn.created_at,
                            1 if turn.identity_critical else 0,
                        ),
                    )
                    if int(cursor.rowcount or 0) <= 0:
                        continue
                    inserted += 1
                    await db.execute(
                        """
                        UPDATE sessions
                        SET turn_count = turn_count + 1,
                            total_tokens = total_tokens + ?,
                            last_activity_at = ?
                        WHERE id = ?
                        """,
                        (turn.total_tokens, turn.created_at, turn.session_id),
                    )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return inserted

    async def get_turn(self, turn_id: str) -> ConversationTurn | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(f"SELECT {TURN_COLUMNS} FROM turns WHERE id = ?", (str(turn_id),)) as cursor:
                row = await cursor.fetchone()
        return row_to_turn(row) if row is not None else None

    async def list_session_turns(
        self,
        session_id: str,
        *,
        tier: MemoryTier | str | None = None,
    ) -> List[ConversationTurn]:
        query = f"SELECT {TURN_COLUMNS} FROM turns WHERE session_id = ?"
        params: list[object] = [str(session_id)]
        if tier is not None:
            query += " AND tier = ?"
            params.append(MemoryTier.parse(tier).value)
        query += " ORDER BY turn_number ASC"

        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cursor:
                rows = await cursor.fetchall()
        return [row_to_turn(row) for row in rows]

    async def count_session_turns(self, session_id: str, *, tier: MemoryTier | str | None = None) -> int:
        query = "SELECT COUNT(*) FROM turns WHERE session_id = ?"
        params: list[object] = [str(session_id)]
        if tier is not None:
            query += " AND tier = ?"
            params.append(MemoryTier.parse(tier).value)
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_recent_warm_turns(
        self,
        session_id: str,
        limit: int,
        *,
        exclude_turn_ids: Iterable[str] = (),
    ) -> List[ConversationTurn]:
        """Warm turns for a session, newest first."""
        excluded = [str(item) for item in exclude_turn_ids if str(item)]
        query = f"SELECT {TURN_COLUMNS} FROM turns WHERE session_id = ? AND tier = 'warm'"
        params: list[object] = [str(session_id)]
        if excluded:
            query += f" AND id NOT IN ({', '.join('?' for _ in excluded)})"
            params.extend(excluded)
        query += " ORDER BY turn_number DESC LIMIT ?"
        params.append(max(1, int(limit)))

        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cursor:
                rows = await cursor.fetchall()
        return [row_to_turn(row) for row in rows]

    async def search_session_turns(
        self,
        session_id: str,
        keyword: str,
        *,
        tier: MemoryTier | str | None = MemoryTier.WARM,
    ) -> List[ConversationTurn]:
        needle = normalize_keyword(keyword)
        if not needle:
            return []
        query = (
            f"SELECT {TURN_COLUMNS} FROM turns WHERE session_id = ? "
            "AND (instr(casefold(user_message), ?) > 0 OR instr(casefold(ai_response), ?) > 0)"
        )
        params: list[object] = [str(session_id), needle, needle]
        if tier is not None:
            query += " AND tier = ?"
            params.append(MemoryTier.parse(tier).value)
        query += " ORDER BY turn_number ASC"

        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cursor:
                rows = await cursor.fetchall()
        return [row_to_turn(row) for row in rows]
