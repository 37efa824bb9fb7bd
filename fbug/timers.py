"""Deadlines for timeout transitions of the current state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .model import Transition


@dataclass(frozen=True)
class ArmedTimer:
    transition: Transition
    state: str
    deadline: float


class TimerSet:
    """Timers armed on entry to a state and disarmed, all together, on exit.

    The dispatcher polls due() from its own thread, so firing a timer and
    matching a line are serialized without extra locking."""
    def __init__(self):
        self._armed: list[ArmedTimer] = []

    def arm(self, state: str, transitions: Iterable[Transition], now: float) -> list[ArmedTimer]:
        added = [ArmedTimer(t, state, now + t.timeout.seconds) for t in transitions]
        self._armed.extend(added)
        return added

    def disarm_all(self) -> int:
        n = len(self._armed)
        self._armed.clear()
        return n

    def armed(self) -> list[ArmedTimer]:
        return list(self._armed)

    def next_deadline(self) -> Optional[float]:
        return min((t.deadline for t in self._armed), default=None)

    def due(self, now: float) -> Optional[ArmedTimer]:
        """The earliest timer whose deadline has passed, if any."""
        ready = [t for t in self._armed if t.deadline <= now]
        return min(ready, key=lambda t: t.deadline) if ready else None
