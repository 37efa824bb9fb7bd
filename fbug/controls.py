"""Logical actuators (buttons, switches, commands) bound to a connection action."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from .model import ControlSpec

ON_VERBS = ("on", "press", "hold")
OFF_VERBS = ("off", "release")


class Control:
    """A named actuator mapping on/off verbs to values sent over one connection.

    Without a `values` table the connection action receives a plain boolean.
    press and hold are asserted through hold(), which returns a handle the
    caller must release."""
    def __init__(self, spec: ControlSpec, connection):
        self.spec = spec
        self.connection = connection

    @property
    def name(self) -> str:
        return self.spec.name

    def value_for(self, verb: str):
        if verb in ON_VERBS:
            return self.spec.values[0] if self.spec.values is not None else True
        if verb in OFF_VERBS:
            return self.spec.values[1] if self.spec.values is not None else False
        raise ValueError(f"unknown control action '{verb}'")

    def apply(self, verb: str):
        """Send the value for `verb`. press/hold must go through hold()."""
        if verb in ("press", "hold"):
            raise ValueError(f"'{verb}' asserts until released, use hold()")
        self.connection.action(self.spec.action, self.value_for(verb))

    def hold(self, on_release: Optional[Callable[["HoldHandle"], None]] = None) -> "HoldHandle":
        self.connection.action(self.spec.action, self.value_for("hold"))
        return HoldHandle(self, on_release)

    def __repr__(self) -> str:
        return f"<Control {self.name} {self.spec.connection}.{self.spec.action}>"


class HoldHandle:
    """An asserted control. release() de-asserts it once; later calls are no-ops.

    A failed release leaves the handle held so it can be retried."""
    def __init__(self, control: Control, on_release=None):
        self.control = control
        self._on_release = on_release
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        with self._lock:
            if self._released:
                return False
            self.control.apply("release")
            self._released = True
        if self._on_release is not None:
            self._on_release(self)
        return True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()


class HoldRegistry:
    """Every control currently held by a trigger run, for bookkeeping and force-release."""
    def __init__(self, logger=None, mirror: Optional[set] = None, lock=None):
        self.logger = logger
        # Optional set kept in sync with the held control names (EngineState.active_holds).
        self.mirror = mirror if mirror is not None else set()
        self._handles: list[HoldHandle] = []
        # Pass the owner's lock when `mirror` is read from other threads.
        self._lock = lock if lock is not None else threading.Lock()

    def hold(self, control: Control) -> HoldHandle:
        handle = control.hold(on_release=self._forget)
        with self._lock:
            self._handles.append(handle)
            self.mirror.add(control.name)
        if self.logger is not None:
            self.logger.emit("hold_asserted", control=control.name)
        return handle

    def _forget(self, handle: HoldHandle):
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)
            if not any(h.control is handle.control for h in self._handles):
                self.mirror.discard(handle.control.name)
        if self.logger is not None:
            self.logger.emit("hold_released", control=handle.control.name)

    def names(self) -> set[str]:
        with self._lock:
            return {h.control.name for h in self._handles}

    def release_all(self) -> list[str]:
        """Release every held control. Returns the names released."""
        with self._lock:
            handles = list(self._handles)
        released, errors = [], []
        for handle in reversed(handles):
            try:
                if handle.release():
                    released.append(handle.control.name)
            except Exception as e:
                errors.append(e)
        if errors:
            raise errors[0]
        return released
