"""Restart delay policies for the health supervisor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class BackoffPolicy(Protocol):
    def delay(self, attempt: int) -> float:
        """Seconds to wait after restart number ``attempt`` (1-based)."""


@dataclass(slots=True, frozen=True)
class FixedBackoff:
    """Same delay after every restart."""

    delay_seconds: float

    def delay(self, attempt: int) -> float:
        del attempt
        return self.delay_seconds


@dataclass(slots=True, frozen=True)
class ExponentialBackoff:
    """``base * factor ** (attempt - 1)`` capped at ``max_delay_seconds``."""

    base_seconds: float
    max_delay_seconds: float
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        return min(self.max_delay_seconds, self.base_seconds * (self.factor**exponent))


def build_backoff(name: str, *, delay_seconds: float, max_delay_seconds: float) -> BackoffPolicy:
    """Backoff policy by configuration name (``fixed`` or ``exponential``)."""

    normalized = name.strip().lower()
    if normalized == "fixed":
        return FixedBackoff(delay_seconds=delay_seconds)
    if normalized == "exponential":
        return ExponentialBackoff(base_seconds=delay_seconds, max_delay_seconds=max_delay_seconds)
    raise ValueError(f"Unknown backoff policy {name!r}; expected 'fixed' or 'exponential'.")
