"""The static state/transition table and its load-time validation."""

from __future__ import annotations

from itertools import combinations
from typing import Iterable, Optional

from .connections import actions_for_kind
from .constants import EVENT_KINDS, IMPLICIT_STATES, STATE_ANY, STEP_ACTIONS, WAIT_CONTROL
from .errors import ConfigurationError, UnsupportedAction
from .model import Device, EventRule, Pattern, SequenceStep, Transition, Trigger


class StateTable:
    """Read-only view over a validated device's states and transitions.

    Answers the questions the dispatcher and sequencer ask on the hot path:
    which transitions a line could mean, which of them are legal right now,
    which timeouts apply in a state, and which triggers can be run."""
    def __init__(self, device: Device):
        self.device = device
        self.states = frozenset(s.name for s in device.states) | frozenset(IMPLICIT_STATES)
        self.transitions = device.transitions
        self._triggers = {t.name: t for t in device.triggers()}
        self._parents = {t.name: tr for tr in device.transitions for t in tr.triggers}

    def matching(self, source: str, line: str) -> list[Transition]:
        """Every event transition whose pattern matches, legal or not."""
        return [t for t in self.transitions if not t.is_timeout and t.matches(source, line)]

    def legal_matches(self, source: str, line: str, current: str) -> list[Transition]:
        return [t for t in self.matching(source, line) if t.applies_from(current)]

    def timeouts_for(self, state: str) -> list[Transition]:
        return [t for t in self.transitions if t.is_timeout and t.applies_from(state)]

    def trigger(self, name: str) -> Optional[Trigger]:
        return self._triggers.get(name)

    def parent(self, trigger: Trigger) -> Transition:
        return self._parents[trigger.name]

    def triggers(self) -> list[Trigger]:
        """Runnable triggers (those with a control sequence)."""
        return [t for t in self._triggers.values() if t.sequence]

    def legal_triggers(self, current: str) -> list[Trigger]:
        return [t for t in self.triggers() if t.allowed_from(current)]


def describe_trigger(trigger: Trigger) -> str:
    """Human readable, multi-line description of a trigger."""
    text = trigger.name
    if trigger.description:
        text += f": {trigger.description.lower()}"
    if trigger.from_states is None:
        text += " from any state"
    else:
        text += " from " + ", ".join(sorted(trigger.from_states))
    has_duration = False
    for step in trigger.sequence:
        text += "\n\t* " + describe_step(step)
        if step.duration:
            has_duration = True
    if trigger.sequence and not has_duration:
        text += f"\n\t* Until device enters state {trigger.to}"
    return text


def describe_step(step: SequenceStep) -> str:
    if step.control == WAIT_CONTROL:
        return f"Wait {step.duration or 0}ms"
    text = f"{step.action.capitalize()} {step.control.replace('_', ' ').title()}"
    if step.duration:
        text += f" for {step.duration}ms"
    return text


# ---------------- Validation ----------------

def _dupes(names: Iterable[str]) -> list[str]:
    seen, dupes = set(), []
    for n in names:
        if n in seen and n not in dupes:
            dupes.append(n)
        seen.add(n)
    return dupes


def _check_steps(device: Device, steps: Iterable[SequenceStep], where: str, *, allow_hold: bool = True):
    for i, step in enumerate(steps):
        ctx = f"{where} step {i}"
        if step.control != WAIT_CONTROL and device.control(step.control) is None:
            raise ConfigurationError(f"{ctx}: unknown control '{step.control}'")
        if step.control != WAIT_CONTROL and step.action not in STEP_ACTIONS:
            raise ConfigurationError(f"{ctx}: unknown action '{step.action}' (expected one of {', '.join(STEP_ACTIONS)})")
        if step.action == "hold" and not allow_hold:
            raise ConfigurationError(f"{ctx}: 'hold' is not allowed here")
        if step.duration is not None and step.duration < 0:
            raise ConfigurationError(f"{ctx}: duration must not be negative")


def _from_intersects(a: Transition, b: Transition) -> bool:
    sa = None if a.from_states is None else {s for s in a.from_states if a.applies_from(s)}
    sb = None if b.from_states is None else {s for s in b.from_states if b.applies_from(s)}
    if sa is None and sb is None:
        return True
    if sa is None:
        return any(a.applies_from(s) for s in sb)
    if sb is None:
        return any(b.applies_from(s) for s in sa)
    return bool(sa & sb)


def _pattern_implies(a: Pattern, b: Pattern) -> bool:
    """True when every line matching `b` is provably also matched by `a`, or vice versa."""
    if a.text == b.text:
        return True
    if not a.is_regex and not b.is_regex:
        return a.text in b.text or b.text in a.text
    if a.is_regex and not b.is_regex:
        return a.matches(b.text)
    if b.is_regex and not a.is_regex:
        return b.matches(a.text)
    return False


def _rules_overlap(a: EventRule, b: EventRule) -> bool:
    return a.source == b.source and a.event == b.event and _pattern_implies(a.pattern, b.pattern)


def check_overlaps(transitions: Iterable[Transition]):
    """Reject pairs of transitions that could both claim the same (state, event)."""
    for a, b in combinations(list(transitions), 2):
        if not _from_intersects(a, b):
            continue
        if a.is_timeout and b.is_timeout:
            raise ConfigurationError(
                f"transitions {a.label()} and {b.label()} both time out from the same state")
        for ra in a.events:
            for rb in b.events:
                if _rules_overlap(ra, rb):
                    raise ConfigurationError(
                        f"transitions {a.label()} and {b.label()} overlap on {ra.source}: "
                        f"'{ra.pattern}' vs '{rb.pattern}'")


def validate_device(device: Device) -> Device:
    """Semantic validation of a device model. Raises ConfigurationError."""
    for kind, names in (
        ("connection label", [c.label for c in device.connections]),
        ("control name", [c.name for c in device.controls]),
        ("state name", [s.name for s in device.states]),
        ("trigger name", [t.name for t in device.triggers()]),
    ):
        dupes = _dupes(names)
        if dupes:
            raise ConfigurationError(f"duplicate {kind}: {', '.join(dupes)}")

    declared = {s.name for s in device.states}
    if STATE_ANY in declared:
        raise ConfigurationError(f"'{STATE_ANY}' is reserved and cannot be declared as a state")
    known = declared | set(IMPLICIT_STATES)
    if device.resting_state not in known:
        raise ConfigurationError(f"resting-state '{device.resting_state}' is not a known state")

    for ctl in device.controls:
        conn = device.connection(ctl.connection)
        if conn is None:
            raise ConfigurationError(f"control '{ctl.name}' references non-existent connection '{ctl.connection}'")
        actions = actions_for_kind(conn.kind)
        if ctl.action not in actions:
            raise UnsupportedAction(
                f"control '{ctl.name}': {conn.kind} connection '{conn.label}' has no action '{ctl.action}'"
                f" (available: {', '.join(sorted(actions)) or 'none'})")
        if ctl.values is not None and len(ctl.values) != 2:
            raise ConfigurationError(f"control '{ctl.name}': values must be exactly [on, off]")
        if ctl.values is None and not actions[ctl.action]:
            raise ConfigurationError(f"control '{ctl.name}': action '{ctl.action}' is not boolean, values [on, off] required")

    for tr in device.transitions:
        where = f"transition {tr.label()}"
        if tr.to not in known:
            raise ConfigurationError(f"{where}: unknown target state '{tr.to}'")
        for s in tr.from_states or ():
            if s not in known:
                raise ConfigurationError(f"{where}: unknown source state '{s}'")
        if tr.events and tr.timeout is not None:
            raise ConfigurationError(f"{where}: event and timeout detection are mutually exclusive")
        if not tr.events and tr.timeout is None:
            raise ConfigurationError(f"{where}: no detection rule")
        if tr.timeout is not None and tr.timeout.seconds <= 0:
            raise ConfigurationError(f"{where}: timeout must be positive")
        for rule in tr.events:
            if device.connection(rule.source) is None:
                raise ConfigurationError(f"{where}: unknown event source '{rule.source}'")
            if rule.event not in EVENT_KINDS:
                raise ConfigurationError(f"{where}: unknown event kind '{rule.event}'")
        for trig in tr.triggers:
            if trig.to != tr.to:
                raise ConfigurationError(f"trigger '{trig.name}' does not lead to its transition's state '{tr.to}'")
            if trig.from_states is not None:
                if STATE_ANY in trig.from_states:
                    raise ConfigurationError(f"trigger '{trig.name}': '{STATE_ANY}' cannot be combined with other states")
                unknown = trig.from_states - known
                if unknown:
                    raise ConfigurationError(f"trigger '{trig.name}': unknown source state(s) {', '.join(sorted(unknown))}")
                if tr.from_states is not None and not trig.from_states <= tr.from_states:
                    extra = ", ".join(sorted(trig.from_states - tr.from_states))
                    raise ConfigurationError(
                        f"trigger '{trig.name}': 'from' must be a subset of its transition's 'from' (extra: {extra})")
            elif tr.from_states is not None:
                raise ConfigurationError(f"trigger '{trig.name}': 'from' must be a subset of its transition's 'from'")
            _check_steps(device, trig.sequence, f"trigger '{trig.name}'")

    _check_steps(device, device.init, "init", allow_hold=False)
    check_overlaps(device.transitions)
    return device
