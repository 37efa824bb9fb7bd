"""Execution of trigger sequences against the device's controls."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from .constants import DEFAULT_PRESS_MS, DEFAULT_TRIGGER_TIMEOUT_S, WAIT_CONTROL
from .controls import HoldHandle
from .dispatcher import Waiter
from .errors import ConnectionError, EngineBusy, TriggerFailed
from .model import SequenceStep, Trigger
from .util import ms, now_s


@dataclass(frozen=True)
class TriggerOutcome:
    trigger: str
    target: str
    observed: str
    elapsed_s: float
    ok: bool = True


class _Cancelled(Exception):
    pass


def _is_hold(step: SequenceStep) -> bool:
    return step.action == "hold" and step.control != WAIT_CONTROL


class Sequencer:
    """Runs one trigger at a time.

    Steps execute in order; `duration` is slept after each step (for press it
    is the press length). A `hold` asserts its control and then blocks until
    the dispatcher commits the first state change after the hold was asserted,
    the run's timeout expires or the run is cancelled. Consecutive holds are
    asserted together before waiting. Every control asserted by a run is
    released before run() returns, whatever the exit path."""
    def __init__(self, table, dispatcher, controls: dict, holds, logger,
                 default_timeout_s: float = DEFAULT_TRIGGER_TIMEOUT_S, alerts=None):
        self.table = table
        self.dispatcher = dispatcher
        self.controls = controls
        self.holds = holds
        self.logger = logger
        self.alerts = alerts
        self.default_timeout_s = float(default_timeout_s)
        self.running: Optional[str] = None
        self._busy = threading.Lock()
        self._cancel = threading.Event()
        # The rendezvous the run is (or is about to be) blocked on.
        self._waiter: Optional[Waiter] = None
        self._waiter_lock = threading.Lock()

    def cancel(self) -> bool:
        """Abort the run in flight, if any."""
        if self.running is None:
            return False
        self._cancel.set()
        with self._waiter_lock:
            if self._waiter is not None:
                self._waiter.cancel()
        return True

    def run(self, trigger: Trigger, timeout: Optional[float] = None) -> TriggerOutcome:
        if not self._busy.acquire(blocking=False):
            raise EngineBusy(f"trigger '{self.running}' is already running")
        try:
            self.running = trigger.name
            self._cancel.clear()
            try:
                outcome = self._run(trigger, self.default_timeout_s if timeout is None else float(timeout))
            except TriggerFailed as e:
                self.logger.emit("trigger_failed", trigger=e.trigger, to=e.target, observed=e.observed, reason=e.reason)
                if self.alerts is not None:
                    self.alerts.report("trigger_failed", e.trigger, trigger=e.trigger, observed=e.observed, reason=e.reason)
                raise
            self.logger.emit("trigger_ok", trigger=outcome.trigger, state=outcome.observed,
                             elapsed_s=round(outcome.elapsed_s, 3))
            if self.alerts is not None:
                self.alerts.clear("trigger_failed", trigger.name)
            return outcome
        finally:
            self.running = None
            self._busy.release()

    def run_steps(self, steps: Iterable[SequenceStep], name: str = "init"):
        """Run a plain sequence (no hold, no target), e.g. the startup baseline."""
        if not self._busy.acquire(blocking=False):
            raise EngineBusy(f"trigger '{self.running}' is already running")
        held: list[HoldHandle] = []
        try:
            self.running = name
            self._cancel.clear()
            self.logger.emit("sequence_start", sequence=name)
            for step in steps:
                self._step(name, step, held)
        except _Cancelled:
            raise TriggerFailed(name, "", self.dispatcher.current, "cancelled") from None
        except ConnectionError as e:
            raise TriggerFailed(name, "", self.dispatcher.current, f"control error: {e}") from e
        finally:
            self._release(held)
            self.running = None
            self._busy.release()

    # -------- internals --------

    def _run(self, trigger: Trigger, timeout: float) -> TriggerOutcome:
        started = now_s()
        deadline = started + timeout
        start_state = self.dispatcher.current
        if not trigger.allowed_from(start_state):
            raise TriggerFailed(trigger.name, trigger.to, start_state, "not legal from current state")

        self.logger.emit("trigger_start", trigger=trigger.name, from_state=start_state, to=trigger.to)
        held: list[HoldHandle] = []
        try:
            steps = list(trigger.sequence)
            for i, step in enumerate(steps):
                if _is_hold(step) and (i == 0 or not _is_hold(steps[i - 1])):
                    # Registered before the group is asserted so a fast transition cannot be missed,
                    # and after earlier steps so their state changes do not count.
                    self._expect(trigger.to)
                self._step(trigger.name, step, held)
                if not _is_hold(step):
                    continue
                if i + 1 < len(steps) and _is_hold(steps[i + 1]):
                    continue
                self._await(trigger, deadline)
                self._release(held)
            if self.dispatcher.current != trigger.to:
                self._expect(trigger.to)
                if self.dispatcher.current != trigger.to:
                    self._await(trigger, deadline)
        except _Cancelled:
            raise TriggerFailed(trigger.name, trigger.to, self.dispatcher.current, "cancelled") from None
        except ConnectionError as e:
            raise TriggerFailed(trigger.name, trigger.to, self.dispatcher.current, f"control error: {e}") from e
        finally:
            self._release(held)
            self._expect(None)

        observed = self.dispatcher.current
        if observed != trigger.to:
            raise TriggerFailed(trigger.name, trigger.to, observed, "did not reach target")
        return TriggerOutcome(trigger.name, trigger.to, observed, now_s() - started)

    def _step(self, name: str, step: SequenceStep, held: list):
        if self._cancel.is_set():
            raise _Cancelled()
        self.logger.emit("step", trigger=name, control=step.control, action=step.action, duration_ms=step.duration)
        if step.control == WAIT_CONTROL:
            self._pause(step.duration)
            return
        control = self.controls[step.control]
        if step.action == "press":
            handle = self.holds.hold(control)
            held.append(handle)
            self._pause(step.duration if step.duration is not None else DEFAULT_PRESS_MS)
            handle.release()
        elif step.action == "hold":
            held.append(self.holds.hold(control))
            self._pause(step.duration)
        else:
            control.apply(step.action)
            self._pause(step.duration)

    def _pause(self, duration_ms):
        if duration_ms and self._cancel.wait(ms(duration_ms)):
            raise _Cancelled()

    def _expect(self, target: Optional[str]):
        """Replace the run's waiter with a fresh one for `target` (None just drops it)."""
        with self._waiter_lock:
            old = self._waiter
            self._waiter = self.dispatcher.expect(target) if target is not None else None
        if old is not None:
            self.dispatcher.discard(old)

    def _await(self, trigger: Trigger, deadline: float):
        waiter = self._waiter
        if self._cancel.is_set():
            raise _Cancelled()
        result = waiter.wait(max(0.0, deadline - now_s()))
        if result == Waiter.REACHED:
            return
        if result == Waiter.CANCELLED:
            raise _Cancelled()
        observed = self.dispatcher.current
        reason = f"state changed to {waiter.state}" if result == Waiter.CHANGED else "timed out"
        raise TriggerFailed(trigger.name, trigger.to, observed, reason)

    def _release(self, held: list):
        while held:
            handle = held.pop()
            try:
                handle.release()
            except Exception as e:
                self.logger.emit("release_error", control=handle.control.name, error=str(e))
