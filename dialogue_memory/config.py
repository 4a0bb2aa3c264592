from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError


load_dotenv()


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


@dataclass(slots=True)
class Settings:
    sqlite_path: Path = Path("./data/dialogue_memory.db")

    hot_turn_limit: int = 5
    hot_token_budget: int = 1500
    warm_turn_limit: int = 50
    warm_token_budget: int = 15000
    cold_query_limit: int = 100
    context_token_budget: int = 8000
    summary_max_chars: int = 480
    session_idle_timeout_seconds: int = 1800

    recognition_timeout_ms: int = 5000
    recognition_max_retries: int = 2
    recognition_backoff_ms: int = 1000
    fallback_enabled: bool = True
    recognition_temperature: float = 0.1

    model_backend: str = "ollama"
    ollama_base_url: str = "http://127.0.0.1:11434"
    ollama_model: str = "qwen2.5:7b-instruct"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            sqlite_path=Path(_env_str("MEMORY_SQLITE_PATH", "./data/dialogue_memory.db", aliases=("SQLITE_PATH",))).expanduser(),
            hot_turn_limit=_env_int("HOT_TURN_LIMIT", 5),
            hot_token_budget=_env_int("HOT_TOKEN_BUDGET", 1500),
            warm_turn_limit=_env_int("WARM_TURN_LIMIT", 50),
            warm_token_budget=_env_int("WARM_TOKEN_BUDGET", 15000),
            cold_query_limit=_env_int("COLD_QUERY_LIMIT", 100),
            context_token_budget=_env_int("CONTEXT_TOKEN_BUDGET", 8000),
            summary_max_chars=_env_int("COLD_SUMMARY_MAX_CHARS", 480),
            session_idle_timeout_seconds=_env_int("SESSION_IDLE_TIMEOUT_SECONDS", 1800),
            recognition_timeout_ms=_env_int("RECOGNITION_TIMEOUT_MS", 5000, aliases=("LLM1_TIMEOUT_MS",)),
            recognition_max_retries=_env_int("RECOGNITION_MAX_RETRIES", 2, aliases=("LLM1_MAX_RETRIES",)),
            recognition_backoff_ms=_env_int("RECOGNITION_BACKOFF_MS", 1000),
            fallback_enabled=_env_bool("RECOGNITION_FALLBACK_ENABLED", True, aliases=("DUAL_LLM_FALLBACK",)),
            recognition_temperature=_env_float("RECOGNITION_TEMPERATURE", 0.1),
            model_backend=_env_str("RECOGNITION_BACKEND", "ollama").lower(),
            ollama_base_url=_env_str("OLLAMA_BASE_URL", "http://127.0.0.1:11434"),
            ollama_model=_env_str("OLLAMA_MODEL", "qwen2.5:7b-instruct"),
            gemini_api_key=_env_str("GEMINI_API_KEY", ""),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-flash"),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
        )

    def validate(self) -> None:
        if self.hot_turn_limit < 1:
            raise ConfigError("HOT_TURN_LIMIT must be >= 1")
        if self.hot_token_budget < 1:
            raise ConfigError("HOT_TOKEN_BUDGET must be >= 1")
        if self.warm_turn_limit < 1:
            raise ConfigError("WARM_TURN_LIMIT must be >= 1")
        if self.warm_token_budget < 1:
            raise ConfigError("WARM_TOKEN_BUDGET must be >= 1")
        if self.hot_token_budget > self.warm_token_budget:
            raise ConfigError("HOT_TOKEN_BUDGET cannot exceed WARM_TOKEN_BUDGET")
        if self.cold_query_limit < 1:
            raise ConfigError("COLD_QUERY_LIMIT must be >= 1")
        if self.context_token_budget < self.hot_token_budget:
            raise ConfigError("CONTEXT_TOKEN_BUDGET must be >= HOT_TOKEN_BUDGET")
        if self.summary_max_chars < 40:
            raise ConfigError("COLD_SUMMARY_MAX_CHARS must be >= 40")
        if self.session_idle_timeout_seconds < 0:
            raise ConfigError("SESSION_IDLE_TIMEOUT_SECONDS must be >= 0 (0 disables the idle sweep)")

        if self.recognition_timeout_ms < 100:
            raise ConfigError("RECOGNITION_TIMEOUT_MS must be >= 100")
        if self.recognition_max_retries < 0:
            raise ConfigError("RECOGNITION_MAX_RETRIES must be >= 0")
        if self.recognition_backoff_ms < 0:
            raise ConfigError("RECOGNITION_BACKOFF_MS must be >= 0")
        if self.recognition_temperature < 0.0 or self.recognition_temperature > 2.0:
            raise ConfigError("RECOGNITION_TEMPERATURE must be in [0, 2]")

        if self.model_backend not in {"ollama", "gemini"}:
            raise ConfigError("RECOGNITION_BACKEND must be 'ollama' or 'gemini'")
        if self.model_backend == "ollama" and not self.ollama_model:
            raise ConfigError("OLLAMA_MODEL cannot be empty")
        if self.model_backend == "gemini":
            if not self.gemini_api_key:
                raise ConfigError("GEMINI_API_KEY is required when RECOGNITION_BACKEND=gemini")
            if self.gemini_api_key == "put_your_gemini_api_key_here":
                raise ConfigError("GEMINI_API_KEY is still placeholder")
