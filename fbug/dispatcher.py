"""The dispatcher: single consumer of connection events and timer deadlines.

It is the only writer of the engine's current state. Every commit cancels the
old state's timers, switches state, applies the new state's connection
properties, arms the new state's timers and finally wakes any trigger run
waiting on a state change, in that order."""

from __future__ import annotations

import queue
import threading
from typing import Optional

from .errors import ConnectionError, UnhandledObservation
from .events import LineEvent, LinkDown, LinkUp, Stop
from .model import Transition
from .state import EngineState
from .statetable import StateTable
from .timers import TimerSet
from .util import now_s

POLL_S = 0.2


class Waiter:
    """One-shot rendezvous with the dispatcher.

    Resolved by the next state commit, or by cancel() from the run that owns
    it. Whichever comes first sticks."""

    REACHED = "reached"
    CHANGED = "changed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    def __init__(self, target: str):
        self.target = target
        self.state: Optional[str] = None
        self.cancelled = False
        self._evt = threading.Event()
        self._lock = threading.Lock()

    @property
    def resolved(self) -> bool:
        return self._evt.is_set()

    def _resolve(self, state: str):
        with self._lock:
            if self._evt.is_set():
                return
            self.state = state
            self._evt.set()

    def cancel(self):
        with self._lock:
            if self._evt.is_set():
                return
            self.cancelled = True
            self._evt.set()

    def wait(self, timeout: Optional[float]) -> str:
        if not self._evt.wait(timeout):
            return self.TIMEOUT
        if self.cancelled:
            return self.CANCELLED
        return self.REACHED if self.state == self.target else self.CHANGED


class Dispatcher:
    def __init__(self, table: StateTable, state: EngineState, logger, connections: Optional[dict] = None,
                 alerts=None, verbose: bool = False):
        self.table = table
        self.state = state
        self.logger = logger
        self.connections = connections or {}
        self.alerts = alerts
        self.verbose = bool(verbose)
        self.timers = TimerSet()
        self.events: queue.Queue = queue.Queue()
        self._waiters: list[Waiter] = []
        self._waiters_lock = threading.Lock()
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def current(self) -> str:
        return self.state.current

    # -------- channel --------

    def post(self, event):
        """Thread-safe hand-off onto the event channel."""
        self.events.put(event)

    def start(self):
        if self.state.current in self.table.states:
            self._arm(self.state.current, now_s())
        t = threading.Thread(target=self._loop, daemon=True, name="dispatcher")
        t.start()
        self._thread = t

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 1.0):
        self._stop_evt.set()
        self.post(Stop(now_s()))
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _loop(self):
        """Main loop. Drains the channel and fires due timers until stopped."""
        while not self._stop_evt.is_set():
            timeout = POLL_S
            deadline = self.timers.next_deadline()
            if deadline is not None:
                timeout = max(0.0, min(POLL_S, deadline - now_s()))
            try:
                event = self.events.get(timeout=timeout)
            except queue.Empty:
                event = None
            if isinstance(event, Stop):
                break
            try:
                if event is not None:
                    self.process(event)
                self.fire_due_timers(now_s())
            except Exception as e:
                # A bad event must never take the dispatcher down.
                self.logger.emit("dispatcher_error", error=repr(e))

    # -------- rendezvous --------

    def expect(self, target: str) -> Waiter:
        waiter = Waiter(target)
        with self._waiters_lock:
            self._waiters.append(waiter)
        return waiter

    def discard(self, waiter: Waiter):
        with self._waiters_lock:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def _publish(self, state: str):
        with self._waiters_lock:
            waiters, self._waiters = self._waiters, []
        for w in waiters:
            w._resolve(state)

    # -------- processing --------

    def process(self, event):
        """Handle one channel event. Timers that expired before it was produced fire first."""
        before = self.state.current
        fired = False
        while self.fire_due_timers(event.ts):
            fired = True
        if isinstance(event, LineEvent):
            self._on_line(event, raced_from=before if fired else None)
        elif isinstance(event, LinkUp):
            self.state.set_link(event.source, True)
            self.logger.emit("link_up", connection=event.source)
            if self.alerts is not None:
                self.alerts.clear("link_lost", event.source)
        elif isinstance(event, LinkDown):
            self.state.set_link(event.source, False)
            if event.error is None:
                self.logger.emit("link_closed", connection=event.source)
            else:
                # Losing a link is not evidence of any state; current is left alone.
                self._alert("link_lost", event.source, connection=event.source, error=event.error,
                            retryable=event.retryable, current=self.state.current)

    def _on_line(self, ev: LineEvent, raced_from: Optional[str] = None):
        if self.verbose:
            self.logger.emit("line", connection=ev.source, line=ev.line)
        current = self.state.current
        legal = self.table.legal_matches(ev.source, ev.line, current)
        if len(legal) > 1:
            self.state.ambiguous_total += 1
            targets = ",".join(sorted(t.to for t in legal))
            self._alert("ambiguous_match", (current, targets), current=current, connection=ev.source,
                        line=ev.line, targets=targets)
            return
        if legal:
            self.commit(legal[0], f"{ev.source}: {ev.line}", ev.ts)
            return
        if raced_from is None and ev.ts < self.state.entered_ts:
            # Produced before the commit that left the state it was meant for.
            raced_from = self.state.previous
        if raced_from is not None and self.table.legal_matches(ev.source, ev.line, raced_from):
            # Lost the race against a timeout of the state it was meant for.
            self.logger.emit("event_discarded", connection=ev.source, line=ev.line, state=raced_from,
                             current=current)
            return
        others = tuple(sorted({t.to for t in self.table.matching(ev.source, ev.line) if t.to != current}))
        if others:
            obs = UnhandledObservation(current=current, source=ev.source, line=ev.line, candidates=others)
            self.report_unhandled(obs)

    def report_unhandled(self, obs: UnhandledObservation):
        self.state.unhandled_total += 1
        self._alert("unhandled_observation", (obs.current, obs.candidates), current=obs.current,
                    connection=obs.source, line=obs.line, candidates=",".join(obs.candidates))

    def fire_due_timers(self, now: float) -> bool:
        timer = self.timers.due(now)
        if timer is None:
            return False
        if timer.state != self.state.current:
            self.timers.disarm_all()
            return False
        self.logger.emit("timeout_transition", state=timer.state, to=timer.transition.to,
                         after_s=timer.transition.timeout.seconds)
        self.commit(timer.transition, f"timeout {timer.transition.timeout.seconds}s", timer.deadline)
        return True

    def commit(self, transition: Transition, cause: str, now: float):
        prev = self.state.current
        self.timers.disarm_all()
        self.state.previous = prev
        self.state.current = transition.to
        self.state.entered_ts = now
        self.state.last_cause = cause
        self.state.transitions_total += 1
        self.logger.emit("transition", from_state=prev, to=transition.to, cause=cause)
        if self.alerts is not None:
            self.alerts.clear("unhandled_observation")
            self.alerts.clear("ambiguous_match")
        self.apply_properties(transition.to)
        self._arm(transition.to, now)
        self._publish(transition.to)

    def _arm(self, state: str, now: float):
        armed = self.timers.arm(state, self.table.timeouts_for(state), now)
        self.state.timers = [{"to": t.transition.to, "deadline": round(t.deadline, 3)} for t in armed]

    def apply_properties(self, state_name: str):
        """Bring connections in line with the entered state (currently: baud rate)."""
        spec = self.table.device.state(state_name)
        baud = spec.property("baud") if spec is not None else None
        for conn in self.connections.values():
            if "baud" not in conn.ACTIONS or not conn.connected:
                continue
            target = int(baud) if baud is not None else conn.spec.baud
            if getattr(conn, "baud", None) == target:
                continue
            try:
                conn.action("baud", target)
                self.logger.emit("property_applied", state=state_name, connection=conn.label, baud=target)
            except ConnectionError as e:
                self.logger.emit("property_error", state=state_name, connection=conn.label, error=e.message)

    def _alert(self, kind: str, key, **fields):
        if self.alerts is not None:
            self.alerts.report(kind, key, **fields)
        else:
            self.logger.emit(kind, **fields)
