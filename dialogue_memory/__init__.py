from .app import build_engine, configure_logging
from .config import Settings
from .engine import DialogueMemoryEngine, TurnContext
from .errors import (
    ConfigError,
    DialogueMemoryError,
    PersistenceError,
    ProviderError,
    StorageConstraintError,
    ValidationError,
)

__all__ = [
    "ConfigError",
    "DialogueMemoryEngine",
    "DialogueMemoryError",
    "PersistenceError",
    "ProviderError",
    "Settings",
    "StorageConstraintError",
    "TurnContext",
    "ValidationError",
    "build_engine",
    "configure_logging",
]
