from __future__ import annotations

from typing import Any, Protocol


class ProviderErrorLike(Protocol):
    @property
    def category(self) -> str: ...

    @property
    def retryable(self) -> bool: ...


def classify_provider_message(message: str, *, terminal_markers: tuple[str, ...]) -> str:
    text = message.lower()
    if "connectivity error" in text or any(f"http {code}" in text for code in (429, 500, 502, 503, 504)):
        return "transient"
    if any(marker in text for marker in terminal_markers):
        return "terminal"
    return "unknown"


def provider_error_http_status(exc: ProviderErrorLike) -> int:
    return 503 if exc.retryable else 502


def provider_error_detail(*, provider: str, operation: str, exc: ProviderErrorLike) -> dict[str, Any]:
    return {
        "type": "provider_error",
        "provider": provider,
        "operation": operation,
        "category": exc.category,
        "retryable": exc.retryable,
        "message": str(exc),
    }
