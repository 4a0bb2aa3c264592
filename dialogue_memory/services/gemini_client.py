from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import aiohttp

from ..errors import ProviderError
from .common import error_for_status


class GeminiProvider:
    backend_name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float = 30.0,
        temperature: float = 0.1,
        max_output_tokens: int = 700,
        base_url: str = "https://generativelanguage.googleapis.com",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self.temperature = float(temperature)
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.model}:generateContent?key={self.api_key}"

    def _build_payload(self, prompt: str) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature,
            "responseMimeType": "application/json",
        }
        if self.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = self.max_output_tokens
        return {
            "contents": [{"role": "user", "parts": [{"text": str(prompt)}]}],
            "generationConfig": generation_config,
        }

    async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        try:
            async with self._session.post(self._endpoint(), json=payload) as response:
                text = await response.text()
                if response.status != 200:
                    raise error_for_status("Gemini", response.status, text)
        except asyncio.TimeoutError as exc:
            raise ProviderError("timeout", "Gemini request timed out") from exc
        except aiohttp.ClientError as exc:
            raise ProviderError("network", f"Gemini request failed: {exc}") from exc

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderError("malformed", "Gemini returned non-JSON body") from exc
        if not isinstance(parsed, dict):
            raise ProviderError("malformed", "Gemini returned non-object JSON response")
        return parsed

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise ProviderError("malformed", f"Gemini blocked response: {block_reason}")
            raise ProviderError("malformed", "Gemini returned no candidates")

        first = candidates[0]
        content = first.get("content") or {}
        parts = content.get("parts") or []
        chunks: List[str] = []
        for part in parts:
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        if joined:
            return joined

        finish_reason = first.get("finishReason")
        if finish_reason:
            raise ProviderError("malformed", f"Gemini empty response (finishReason={finish_reason})")
        raise ProviderError("malformed", "Gemini empty response")

    async def send(self, prompt: str) -> str:
        data = await self._request(self._build_payload(prompt))
        return self._extract_text(data)
