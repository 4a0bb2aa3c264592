from __future__ import annotations

import asyncio
import json
from typing import Any

import aiohttp

from ..errors import ProviderError
from .common import error_for_status


class OllamaProvider:
    """Recognition model over the Ollama chat API.

    One HTTP call per `send`; retrying is left to the recognition processor.
    """

    backend_name = "ollama"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 30.0,
        temperature: float = 0.1,
        max_output_tokens: int = 700,
    ) -> None:
        self.base_url = (base_url or "http://127.0.0.1:11434").strip().rstrip("/")
        self.model = (model or "").strip()
        if not self.model:
            raise ValueError("Ollama model cannot be empty")
        self.timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self.temperature = float(temperature)
        self.max_output_tokens = int(max_output_tokens)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/chat"

    def _build_payload(self, prompt: str) -> dict[str, Any]:
        options: dict[str, Any] = {"temperature": self.temperature}
        if self.max_output_tokens > 0:
            options["num_predict"] = self.max_output_tokens
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": str(prompt)}],
            "stream": False,
            "think": False,
            "format": "json",
            "options": options,
        }

    async def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        try:
            async with self._session.post(self._endpoint(), json=payload) as response:
                text = await response.text()
                if response.status != 200:
                    raise error_for_status("Ollama", response.status, text)
        except asyncio.TimeoutError as exc:
            raise ProviderError("timeout", "Ollama request timed out") from exc
        except aiohttp.ClientError as exc:
            raise ProviderError("network", f"Ollama request failed: {exc}") from exc

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderError("malformed", "Ollama returned non-JSON body") from exc
        if not isinstance(parsed, dict):
            raise ProviderError("malformed", "Ollama returned non-object JSON response")
        return parsed

    @staticmethod
    def _extract_message_text(data: dict[str, Any]) -> str:
        message = data.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
        response_text = data.get("response")
        if isinstance(response_text, str) and response_text.strip():
            return response_text
        raise ProviderError("malformed", "Ollama returned empty message content")

    async def send(self, prompt: str) -> str:
        data = await self._request(self._build_payload(prompt))
        return self._extract_message_text(data)
