from .schema import MemorySchemaMixin
from .sessions import MemorySessionsMixin
from .summaries import MemorySummariesMixin
from .transitions import MemoryTransitionsMixin
from .turns import MemoryTurnsMixin

__all__ = [
    "MemorySchemaMixin",
    "MemorySessionsMixin",
    "MemoryTurnsMixin",
    "MemoryTransitionsMixin",
    "MemorySummariesMixin",
]
