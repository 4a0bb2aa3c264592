from __future__ import annotations

from ..errors import ProviderError


def error_for_status(backend: str, status: int, text: str) -> ProviderError:
    snippet = " ".join(str(text or "").split())[:300]
    if status in {401, 403}:
        return ProviderError("auth", f"{backend} rejected credentials: {snippet}", status_code=status)
    if status in {408, 504}:
        return ProviderError("timeout", f"{backend} timed out: {snippet}", status_code=status)
    return ProviderError("network", f"{backend} error {status}: {snippet}", status_code=status)
