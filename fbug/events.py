"""Messages carried on the dispatcher's event channel."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class LineEvent:
    source: str
    line: str
    ts: float


@dataclass(frozen=True)
class LinkUp:
    source: str
    ts: float


@dataclass(frozen=True)
class LinkDown:
    """A receive stream ended. `error` is None for an orderly end."""
    source: str
    ts: float
    error: Optional[str] = None
    retryable: bool = True


@dataclass(frozen=True)
class Stop:
    ts: float
