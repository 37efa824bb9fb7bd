from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields

from .constants import STATE_UNKNOWN


@dataclass
class EngineState:
    """Holds mutable runtime state for one device engine.

    `current` and the transition bookkeeping are written only by the
    dispatcher thread; other threads read them or take a snapshot().
    The containers are shared with other threads and change under `lock`."""
    device: str = ""
    current: str = STATE_UNKNOWN
    previous: str = ""
    entered_ts: float = 0.0
    last_cause: str = ""
    transitions_total: int = 0
    unhandled_total: int = 0
    ambiguous_total: int = 0

    # controls held by a trigger run (mirrors the hold registry)
    active_holds: set = field(default_factory=set)
    # [{"to": ..., "deadline": ...}] for the timeouts armed in `current`
    timers: list = field(default_factory=list)
    # connection label -> link up
    links: dict = field(default_factory=dict)

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def set_link(self, source: str, up: bool):
        with self.lock:
            self.links[source] = up

    def snapshot(self) -> dict:
        with self.lock:
            snap = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "lock"}
            snap["active_holds"] = sorted(self.active_holds)
            snap["timers"] = [dict(t) for t in self.timers]
            snap["links"] = dict(self.links)
        return snap
