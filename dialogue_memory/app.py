from __future__ import annotations

import logging
from typing import Any

from .config import Settings
from .engine import DialogueMemoryEngine
from .memory.cold import ColdMemory
from .memory.coordinator import TierCoordinator
from .memory.hot import HotMemory
from .memory.store import MemoryStore
from .memory.warm import WarmMemory
from .recognition.processor import RecognitionProcessor
from .services.gemini_client import GeminiProvider
from .services.ollama_client import OllamaProvider

logger = logging.getLogger("dialogue_memory")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_provider(settings: Settings) -> Any:
    # HTTP timeout sits above the per-attempt budget; the processor enforces the real limit.
    http_timeout = max(1.0, settings.recognition_timeout_ms / 1000.0 + 1.0)
    if settings.model_backend == "gemini":
        return GeminiProvider(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout_seconds=http_timeout,
            temperature=settings.recognition_temperature,
            base_url=settings.gemini_base_url,
        )
    return OllamaProvider(
        base_url=settings.ollama_base_url,
        model=settings.ollama_model,
        timeout_seconds=http_timeout,
        temperature=settings.recognition_temperature,
    )


def build_engine(settings: Settings | None = None, *, provider: Any = None) -> DialogueMemoryEngine:
    settings = settings or Settings.from_env()
    settings.validate()

    store = MemoryStore(settings.sqlite_path)
    coordinator = TierCoordinator(
        store,
        HotMemory.from_settings(settings),
        WarmMemory.from_settings(store, settings),
        ColdMemory.from_settings(store, settings),
        context_token_budget=settings.context_token_budget,
    )
    processor = RecognitionProcessor.from_settings(provider or build_provider(settings), settings)
    logger.debug(
        "[engine] built sqlite=%s hot=%s/%s warm=%s/%s backend=%s",
        settings.sqlite_path,
        settings.hot_turn_limit,
        settings.hot_token_budget,
        settings.warm_turn_limit,
        settings.warm_token_budget,
        processor.backend_name,
    )
    return DialogueMemoryEngine(
        store,
        coordinator,
        processor,
        session_idle_timeout_seconds=settings.session_idle_timeout_seconds,
    )
