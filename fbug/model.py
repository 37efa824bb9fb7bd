"""Validated, immutable device model consumed by the engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Union


# ---------------- Connections ----------------

@dataclass(frozen=True)
class SerialSpec:
    kind: ClassVar[str] = "serial"
    label: str
    path: str
    baud: int = 115200
    lines: bool = True
    getty: bool = False


@dataclass(frozen=True)
class UsbSpec:
    kind: ClassVar[str] = "usb"
    label: str
    port: str


@dataclass(frozen=True)
class SshSpec:
    kind: ClassVar[str] = "ssh"
    label: str
    host: str
    port: int = 22
    alive_interval: float = 1.0
    alive_count_max: int = 3
    command: Optional[str] = None


ConnectionSpec = Union[SerialSpec, UsbSpec, SshSpec]


# ---------------- Controls ----------------

@dataclass(frozen=True)
class ControlSpec:
    name: str
    kind: str
    connection: str
    action: str
    values: Optional[tuple[Any, Any]] = None


# ---------------- States ----------------

@dataclass(frozen=True)
class StateSpec:
    name: str
    properties: tuple[tuple[str, Any], ...] = ()

    def property(self, name: str, default=None):
        for key, value in self.properties:
            if key == name:
                return value
        return default


# ---------------- Detection ----------------

@dataclass(frozen=True)
class Pattern:
    """Literal substring, or a regex when written as `/.../`."""
    text: str
    regex: Optional[re.Pattern] = field(default=None, compare=False)

    @classmethod
    def parse(cls, value: str) -> "Pattern":
        if len(value) >= 2 and value.startswith("/") and value.endswith("/"):
            return cls(text=value, regex=re.compile(value[1:-1]))
        return cls(text=value)

    @property
    def is_regex(self) -> bool:
        return self.regex is not None

    def matches(self, line: str) -> bool:
        if self.regex is not None:
            return self.regex.search(line) is not None
        return self.text in line

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class EventRule:
    source: str
    event: str
    pattern: Pattern


@dataclass(frozen=True)
class TimeoutRule:
    seconds: float
    name: Optional[str] = None
    description: Optional[str] = None


# ---------------- Transitions ----------------

@dataclass(frozen=True)
class SequenceStep:
    control: str
    action: str
    duration: Optional[int] = None


@dataclass(frozen=True)
class Trigger:
    name: str
    to: str
    description: Optional[str] = None
    # None means "any state"; otherwise a subset of the parent transition's sources.
    from_states: Optional[frozenset[str]] = None
    sequence: tuple[SequenceStep, ...] = ()

    def allowed_from(self, state: str) -> bool:
        return self.from_states is None or state in self.from_states


@dataclass(frozen=True)
class Transition:
    to: str
    from_states: Optional[frozenset[str]] = None
    events: tuple[EventRule, ...] = ()
    timeout: Optional[TimeoutRule] = None
    triggers: tuple[Trigger, ...] = ()

    @property
    def is_timeout(self) -> bool:
        return self.timeout is not None

    def applies_from(self, state: str) -> bool:
        """True if the transition is legal while the device is in `state`.

        A wildcard timeout never re-arms on its own target."""
        if self.from_states is None:
            return not (self.is_timeout and state == self.to)
        return state in self.from_states

    def matches(self, source: str, line: str) -> bool:
        return any(rule.source == source and rule.pattern.matches(line) for rule in self.events)

    def label(self) -> str:
        src = "any" if self.from_states is None else ",".join(sorted(self.from_states))
        return f"{src}->{self.to}"


# ---------------- Device ----------------

@dataclass(frozen=True)
class Device:
    name: str
    codename: str
    description: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    resting_state: str = "off"
    connections: tuple[ConnectionSpec, ...] = ()
    controls: tuple[ControlSpec, ...] = ()
    states: tuple[StateSpec, ...] = ()
    transitions: tuple[Transition, ...] = ()
    init: tuple[SequenceStep, ...] = ()

    def connection(self, label: str) -> Optional[ConnectionSpec]:
        return next((c for c in self.connections if c.label == label), None)

    def control(self, name: str) -> Optional[ControlSpec]:
        return next((c for c in self.controls if c.name == name), None)

    def state(self, name: str) -> Optional[StateSpec]:
        return next((s for s in self.states if s.name == name), None)

    def triggers(self) -> list[Trigger]:
        return [t for tr in self.transitions for t in tr.triggers]
