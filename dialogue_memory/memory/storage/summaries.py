from __future__ import annotations

from typing import Any, Callable, List, Mapping

from ..types import ColdMemoryEntry, ConversationTurn, MemoryTier, TierTransition, TurnSummary, new_id, utc_now_iso
from .utils import (
    _sqlite_memory_connection,
    insert_summary,
    insert_transition,
    normalize_keyword,
    row_to_summary,
    row_to_turn,
)


_COLD_SELECT = """
    SELECT t.id, t.session_id, t.user_id, t.turn_number, t.user_message, t.ai_response,
           t.user_tokens, t.ai_tokens, t.total_tokens, t.created_at, t.tier, t.identity_critical,
           s.id AS s_id, s.original_turn_id AS s_original_turn_id, s.summary_text AS s_summary_text,
           s.keywords AS s_keywords, s.created_at AS s_created_at,
           s.original_tokens AS s_original_tokens, s.compressed_tokens AS s_compressed_tokens
    FROM turns t
    LEFT JOIN turn_summaries s ON s.original_turn_id = t.id
    WHERE t.user_id = ? AND t.tier = 'cold'
"""


def _row_to_cold_entry(row: Mapping[str, Any]) -> ColdMemoryEntry:
    turn = row_to_turn(row)
    summary = row_to_summary(row, prefix="s_") if row["s_id"] is not None else None
    if turn.identity_critical:
        summary = None
    return ColdMemoryEntry(turn=turn, summary=summary)


class MemorySummariesMixin:
    async def archive_warm_turns(
        self,
        session_id: str,
        build_summary: Callable[[ConversationTurn], TurnSummary],
        reason: str,
    ) -> int:
        """Move every Warm turn of a session to Cold in a single transaction.

        Non-critical turns get a summary first. Nothing is written when any step fails,
        and a session with no Warm turns left is a no-op.
        """
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    """
                    SELECT id, session_id, user_id, turn_number, user_message, ai_response,
                           user_tokens, ai_tokens, total_tokens, created_at, tier, identity_critical
                    FROM turns
                    WHERE session_id = ? AND tier = 'warm'
                    ORDER BY turn_number ASC
                    """,
                    (str(session_id),),
                ) as cursor:
                    rows = await cursor.fetchall()

                now = utc_now_iso()
                moved = 0
                for row in rows:
                    turn = row_to_turn(row)
                    if not turn.identity_critical:
                        await insert_summary(db, build_summary(turn.with_tier(MemoryTier.COLD)))
                    cursor = await db.execute(
                        "UPDATE turns SET tier = 'cold', tier_changed_at = ? WHERE id = ? AND tier = 'warm'",
                        (now, turn.id),
                    )
                    if int(cursor.rowcount or 0) <= 0:
                        continue
                    await insert_transition(
                        db,
                        TierTransition(
                            id=new_id(),
                            turn_id=turn.id,
                            from_tier=MemoryTier.WARM,
                            to_tier=MemoryTier.COLD,
                            reason=reason,
                            transitioned_at=now,
                        ),
                    )
                    moved += 1
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return moved

    async def get_turn_summary(self, turn_id: str) -> TurnSummary | None:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, original_turn_id, summary_text, keywords, created_at, original_tokens, compressed_tokens
                FROM turn_summaries
                WHERE original_turn_id = ?
                """,
                (str(turn_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return row_to_summary(row) if row is not None else None

    async def load_cold_entries(self, user_id: str, limit: int) -> List[ColdMemoryEntry]:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                _COLD_SELECT + " ORDER BY t.created_at DESC, t.turn_number DESC LIMIT ?",
                (str(user_id), max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_cold_entry(row) for row in rows]

    async def search_cold_entries(self, user_id: str, keyword: str, *, limit: int = 100) -> List[ColdMemoryEntry]:
        needle = normalize_keyword(keyword)
        if not needle:
            return []
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                _COLD_SELECT
                + """
                  AND (
                    instr(casefold(t.user_message), ?) > 0
                    OR instr(casefold(t.ai_response), ?) > 0
                    OR instr(casefold(s.summary_text), ?) > 0
                    OR instr(casefold(s.keywords), ?) > 0
                  )
                ORDER BY t.created_at DESC, t.turn_number DESC
                LIMIT ?
                """,
                (str(user_id), needle, needle, needle, needle, max(1, int(limit))),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_cold_entry(row) for row in rows]

    async def count_user_cold_summaries(self, user_id: str) -> int:
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                """
                SELECT COUNT(*)
                FROM turn_summaries s
                JOIN turns t ON t.id = s.original_turn_id
                WHERE t.user_id = ?
                """,
                (str(user_id),),
            ) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0
