"""Typed provider failures."""

from __future__ import annotations

from typing import Any


class ProviderError(RuntimeError):
    """A provider call failed and retrying will not help."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
        self.body = body


class ProviderAuthError(ProviderError):
    """Credentials were rejected (401/403)."""


class TransientProviderError(ProviderError):
    """Server errors, network failures or rate limits outlasted the retry budget."""


class ProviderNotFound(ProviderError):
    pass
