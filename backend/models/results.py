"""Explicit success/failure results for calls to external providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class ProviderResult(Generic[T]):
    """Outcome of a market-data, execution or advisory call.

    Callers branch on ``ok``; a failure always carries a human-readable
    ``error`` so it can be logged or surfaced without re-raising.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    source: str = ""

    @classmethod
    def success(cls, value: T, source: str = "") -> "ProviderResult[T]":
        return cls(ok=True, value=value, source=source)

    @classmethod
    def failure(cls, error: str, source: str = "") -> "ProviderResult[T]":
        return cls(ok=False, error=error or "unknown error", source=source)

    @classmethod
    async def capture(cls, awaitable: Awaitable[T], source: str = "") -> "ProviderResult[T]":
        """Await ``awaitable`` and fold any exception into a failure result."""
        try:
            return cls.success(await awaitable, source=source)
        except Exception as exc:
            return cls.failure(f"{type(exc).__name__}: {exc}", source=source)

    def unwrap_or(self, default: Any) -> Any:
        return self.value if self.ok else default
