from __future__ import annotations

from .storage.schema import MemorySchemaMixin
from .storage.sessions import MemorySessionsMixin
from .storage.summaries import MemorySummariesMixin
from .storage.transitions import MemoryTransitionsMixin
from .storage.turns import MemoryTurnsMixin
from .storage.utils import _sqlite_memory_connection


class MemoryStore(
    MemorySchemaMixin,
    MemorySessionsMixin,
    MemoryTurnsMixin,
    MemoryTransitionsMixin,
    MemorySummariesMixin,
):
    """Persistent tiered conversation store: sessions, turns, tier audit log and cold summaries."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")
