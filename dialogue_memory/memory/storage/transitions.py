from __future__ import annotations

from typing import Callable, Iterable, List

from ..types import (
    REASON_MANUAL,
    ConversationTurn,
    MemoryTier,
    TierTransition,
    TurnSummary,
    new_id,
    utc_now_iso,
)
from .utils import TURN_COLUMNS, _sqlite_memory_connection, insert_summary, insert_transition, row_to_transition, row_to_turn


class MemoryTransitionsMixin:
    async def transition_turns(
        self,
        turn_ids: Iterable[str],
        from_tier: MemoryTier | str,
        to_tier: MemoryTier | str,
        reason: str,
    ) -> List[str]:
        """Move the given turns between tiers in one transaction.

        Only turns currently at `from_tier` move; the ids that actually moved are returned.
        """
        ids = [str(item) for item in turn_ids if str(item)]
        if not ids:
            return []
        source = MemoryTier.parse(from_tier)
        target = MemoryTier.parse(to_tier)
        now = utc_now_iso()

        moved: list[str] = []
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                for turn_id in ids:
                    cursor = await db.execute(
                        "UPDATE turns SET tier = ?, tier_changed_at = ? WHERE id = ? AND tier = ?",
                        (target.value, now, turn_id, source.value),
                    )
                    if int(cursor.rowcount or 0) <= 0:
                        continue
                    await insert_transition(
                        db,
                        TierTransition(
                            id=new_id(),
                            turn_id=turn_id,
                            from_tier=source,
                            to_tier=target,
                            reason=reason,
                            transitioned_at=now,
                        ),
                    )
                    moved.append(turn_id)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return moved

    async def transition_session_tier(
        self,
        session_id: str,
        from_tier: MemoryTier | str,
        to_tier: MemoryTier | str,
        reason: str,
    ) -> List[str]:
        source = MemoryTier.parse(from_tier)
        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(
                "SELECT id FROM turns WHERE session_id = ? AND tier = ? ORDER BY turn_number ASC",
                (str(session_id), source.value),
            ) as cursor:
                rows = await cursor.fetchall()
        return await self.transition_turns([str(row["id"]) for row in rows], source, to_tier, reason)

    async def override_turn_tier(
        self,
        turn_id: str,
        tier: MemoryTier | str,
        build_summary: Callable[[ConversationTurn], TurnSummary],
    ) -> TierTransition | None:
        """Administrative re-tier that bypasses the Hot->Warm->Cold order.

        Returns None when the turn does not exist. A turn entering Cold without being
        identity-critical gets a summary; a turn leaving Cold loses it.
        """
        target = MemoryTier.parse(tier)
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(f"SELECT {TURN_COLUMNS} FROM turns WHERE id = ?", (str(turn_id),)) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    await db.rollback()
                    return None

                turn = row_to_turn(row)
                now = utc_now_iso()
                await db.execute(
                    "UPDATE turns SET tier = ?, tier_changed_at = ? WHERE id = ?",
                    (target.value, now, turn.id),
                )
                if target is MemoryTier.COLD and not turn.identity_critical:
                    await insert_summary(db, build_summary(turn.with_tier(target)))
                elif target is not MemoryTier.COLD:
                    await db.execute("DELETE FROM turn_summaries WHERE original_turn_id = ?", (turn.id,))

                transition = TierTransition(
                    id=new_id(),
                    turn_id=turn.id,
                    from_tier=turn.tier,
                    to_tier=target,
                    reason=REASON_MANUAL,
                    transitioned_at=now,
                )
                await insert_transition(db, transition)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return transition

    async def list_transitions(
        self,
        *,
        turn_id: str | None = None,
        session_id: str | None = None,
    ) -> List[TierTransition]:
        query = """
            SELECT tt.id, tt.turn_id, tt.from_tier, tt.to_tier, tt.reason, tt.transitioned_at
            FROM tier_transitions tt
            JOIN turns t ON t.id = tt.turn_id
        """
        clauses: list[str] = []
        params: list[object] = []
        if turn_id is not None:
            clauses.append("tt.turn_id = ?")
            params.append(str(turn_id))
        if session_id is not None:
            clauses.append("t.session_id = ?")
            params.append(str(session_id))
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY tt.transitioned_at ASC, tt.rowid ASC"

        async with _sqlite_memory_connection(self.db_path) as db:
            async with db.execute(query, tuple(params)) as cursor:
                rows = await cursor.fetchall()
        return [row_to_transition(row) for row in rows]
