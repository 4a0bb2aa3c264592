from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Protocol

from ..errors import ProviderError, ValidationError
from ..memory.types import ContextBundle, MemoryTier
from ..prompts.recognition import (
    build_full_recognition_prompt,
    build_minimal_recognition_prompt,
    build_reduced_recognition_prompt,
)
from .fallback import FallbackCalculator
from .types import RecognitionDiagnostics, RecognitionOutput, RecognitionStats
from .validation import check_recognition_output, parse_recognition_output


logger = logging.getLogger("dialogue_memory.recognition")


class RecognitionProvider(Protocol):
    async def send(self, prompt: str) -> str: ...


class RecognitionProcessor:
    """Turns a message and its context into a validated RecognitionOutput.

    Each attempt is time-boxed; failures are retried with exponential backoff and an
    increasingly simpler prompt (full context, then Hot only, then the bare message).
    When attempts run out, or the provider rejects credentials, the deterministic
    fallback answers instead. `recognize` never raises for provider or payload problems.

    `fallback_enabled=False` buys one extra bare-message attempt before the fallback
    is used; the fallback itself is always reachable.
    """

    def __init__(
        self,
        provider: RecognitionProvider | Any,
        *,
        timeout_ms: int = 5000,
        max_retries: int = 2,
        backoff_ms: int = 1000,
        fallback_enabled: bool = True,
        fallback: FallbackCalculator | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        on_diagnostics: Callable[[RecognitionDiagnostics], None] | None = None,
    ) -> None:
        self.provider = provider
        self.timeout_ms = max(1, int(timeout_ms))
        self.max_retries = max(0, int(max_retries))
        self.backoff_ms = max(0, int(backoff_ms))
        self.fallback_enabled = bool(fallback_enabled)
        self.fallback = fallback or FallbackCalculator()
        self._sleep = sleep or asyncio.sleep
        self.on_diagnostics = on_diagnostics
        self.stats = RecognitionStats()
        self.last_diagnostics: RecognitionDiagnostics | None = None

    @classmethod
    def from_settings(cls, provider: RecognitionProvider | Any, settings: object, **kwargs: Any) -> "RecognitionProcessor":
        return cls(
            provider,
            timeout_ms=int(getattr(settings, "recognition_timeout_ms", 5000)),
            max_retries=int(getattr(settings, "recognition_max_retries", 2)),
            backoff_ms=int(getattr(settings, "recognition_backoff_ms", 1000)),
            fallback_enabled=bool(getattr(settings, "fallback_enabled", True)),
            **kwargs,
        )

    async def start(self) -> None:
        start_fn = getattr(self.provider, "start", None)
        if callable(start_fn):
            await start_fn()

    async def close(self) -> None:
        close_fn = getattr(self.provider, "close", None)
        if callable(close_fn):
            await close_fn()

    @property
    def backend_name(self) -> str:
        raw = str(getattr(self.provider, "backend_name", "") or "").strip().lower()
        if raw:
            return raw
        cls_name = self.provider.__class__.__name__.casefold()
        if "gemini" in cls_name:
            return "gemini"
        if "ollama" in cls_name:
            return "ollama"
        return "llm"

    @property
    def model_name(self) -> str:
        return str(getattr(self.provider, "model", "") or "").strip()

    def backoff_seconds(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (1-based): backoff, 2x backoff, 4x backoff..."""
        if retry_number < 1 or self.backoff_ms <= 0:
            return 0.0
        return self.backoff_ms * (2 ** (retry_number - 1)) / 1000.0

    def build_prompt(
        self,
        attempt_index: int,
        message: str,
        bundle: ContextBundle | None,
        previous_output: RecognitionOutput | None,
    ) -> str:
        if attempt_index <= 0:
            context = bundle.format_for_prompt() if bundle is not None else ""
            previous = (
                json.dumps(previous_output.to_dict(), ensure_ascii=False, separators=(",", ":"))
                if previous_output is not None
                else ""
            )
            return build_full_recognition_prompt(message, context, previous)
        if attempt_index == 1:
            context = bundle.format_for_prompt(include=(MemoryTier.HOT,)) if bundle is not None else ""
            return build_reduced_recognition_prompt(message, context)
        return build_minimal_recognition_prompt(message)

    async def _attempt(self, prompt: str) -> RecognitionOutput:
        try:
            raw = await asyncio.wait_for(self.provider.send(prompt), timeout=self.timeout_ms / 1000.0)
        except asyncio.TimeoutError as exc:
            raise ProviderError("timeout", f"no response within {self.timeout_ms}ms") from exc
        output = parse_recognition_output(str(raw or ""))
        check_recognition_output(output)
        return output

    def _context_lines(self, bundle: ContextBundle | None) -> list[str]:
        if bundle is None:
            return []
        return [line for line in bundle.format_for_prompt().splitlines() if line and not line.startswith("# ")]

    async def recognize(
        self,
        message: str,
        context_bundle: ContextBundle | None = None,
        previous_output: RecognitionOutput | None = None,
    ) -> RecognitionOutput:
        started = time.perf_counter()
        text = str(message or "")
        planned = self.max_retries + 1
        if not self.fallback_enabled:
            planned += 1

        attempts = 0
        error_text = ""
        error_kind = ""
        result: RecognitionOutput | None = None

        while attempts < planned:
            if attempts > 0:
                delay = self.backoff_seconds(attempts)
                if delay > 0:
                    await self._sleep(delay)
            # The extra attempt granted without fallback preference always uses the bare message.
            prompt_index = attempts if attempts <= self.max_retries else 2
            attempts += 1
            try:
                prompt = self.build_prompt(prompt_index, text, context_bundle, previous_output)
                result = await self._attempt(prompt)
                break
            except ProviderError as exc:
                error_text = str(exc)[:400]
                error_kind = exc.kind
                self.stats.provider_errors += 1
                if exc.kind == "timeout":
                    self.stats.timeouts += 1
                logger.warning(
                    "[recognition.retry] attempt=%s/%s backend=%s kind=%s error=%s",
                    attempts,
                    planned,
                    self.backend_name,
                    exc.kind,
                    error_text,
                )
                if not exc.retryable:
                    break
            except ValidationError as exc:
                error_text = str(exc)[:400]
                error_kind = "validation"
                self.stats.validation_failures += 1
                logger.warning(
                    "[recognition.retry] attempt=%s/%s backend=%s invalid output: %s",
                    attempts,
                    planned,
                    self.backend_name,
                    error_text,
                )
            except Exception as exc:
                error_text = str(exc)[:400] or exc.__class__.__name__
                error_kind = "network"
                self.stats.provider_errors += 1
                logger.warning(
                    "[recognition.retry] attempt=%s/%s backend=%s unexpected failure: %s",
                    attempts,
                    planned,
                    self.backend_name,
                    error_text,
                )

        fallback_used = result is None
        if result is None:
            result = self.fallback.calculate(text, self._context_lines(context_bundle))
        result = result.with_derived_statuses()

        diagnostics = RecognitionDiagnostics(
            backend_name=self.backend_name,
            model_name=self.model_name,
            attempts=attempts,
            retry_count=max(0, attempts - 1),
            fallback_used=fallback_used,
            latency_ms=max(0, int((time.perf_counter() - started) * 1000)),
            error=error_text,
            error_kind=error_kind,
        )
        self._publish(diagnostics)
        return result

    def _publish(self, diagnostics: RecognitionDiagnostics) -> None:
        self.last_diagnostics = diagnostics
        self.stats.record(diagnostics)
        if diagnostics.fallback_used:
            logger.info(
                "[recognition.fallback] backend=%s attempts=%s retries=%s error_kind=%s latency_ms=%s",
                diagnostics.backend_name,
                diagnostics.attempts,
                diagnostics.retry_count,
                diagnostics.error_kind or "-",
                diagnostics.latency_ms,
            )
        else:
            logger.debug(
                "[recognition.ok] backend=%s attempts=%s retries=%s latency_ms=%s",
                diagnostics.backend_name,
                diagnostics.attempts,
                diagnostics.retry_count,
                diagnostics.latency_ms,
            )
        if self.on_diagnostics is None:
            return
        try:
            self.on_diagnostics(diagnostics)
        except Exception:
            logger.exception("[recognition] diagnostics callback failed")
