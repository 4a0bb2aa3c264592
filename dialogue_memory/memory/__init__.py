from .cold import ColdMemory
from .compression import ExtractiveCompressor, TurnCompressor
from .coordinator import TierCoordinator
from .hot import HotMemory
from .recall import ExpandHint
from .store import MemoryStore
from .types import (
    ColdMemoryEntry,
    ContextBundle,
    ConversationSession,
    ConversationTurn,
    MemoryTier,
    TierTransition,
    TurnSummary,
)
from .warm import WarmMemory

__all__ = [
    "ColdMemory",
    "ColdMemoryEntry",
    "ContextBundle",
    "ConversationSession",
    "ConversationTurn",
    "ExpandHint",
    "ExtractiveCompressor",
    "HotMemory",
    "MemoryStore",
    "MemoryTier",
    "TierCoordinator",
    "TierTransition",
    "TurnCompressor",
    "TurnSummary",
    "WarmMemory",
]
