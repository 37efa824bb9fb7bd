"""Connection capability interface shared by serial, USB and SSH links."""

from __future__ import annotations

import abc
import logging
import threading
from typing import Iterator, Optional

from ..errors import ConnectionError, UnsupportedAction

module_logger = logging.getLogger(__name__)

# Values of Connection.ACTIONS: whether the action takes a natural boolean level.
BOOLEAN = True
VALUED = False


class Backoff:
    """Exponential reconnect delay, owned by each connection."""
    def __init__(self, initial_s: float = 0.5, maximum_s: float = 10.0, factor: float = 2.0):
        self.initial_s = initial_s
        self.maximum_s = maximum_s
        self.factor = factor
        self._next = initial_s

    def next(self) -> float:
        delay = self._next
        self._next = min(self._next * self.factor, self.maximum_s)
        return delay

    def reset(self):
        self._next = self.initial_s


class LineBuffer:
    """Splits a byte stream into decoded lines, keeping the unterminated tail."""
    def __init__(self):
        self._buf = b""

    def feed(self, data: bytes) -> list[str]:
        self._buf += data
        *lines, self._buf = self._buf.split(b"\n")
        return [ln.decode("utf-8", errors="replace").rstrip("\r") for ln in lines]

    @property
    def pending(self) -> str:
        return self._buf.decode("utf-8", errors="replace")

    def clear(self):
        self._buf = b""


class Connection(abc.ABC):
    """A long-lived handle over one physical channel.

    connect()/disconnect() are idempotent. send() and action() are serialized
    by a per-connection lock so no two callers interleave on the wire.
    receive() yields lines (or raw chunks) until an orderly disconnect, and
    raises ConnectionError when the link is lost."""

    kind = ""
    # action name -> BOOLEAN | VALUED
    ACTIONS: dict[str, bool] = {}

    def __init__(self, spec, logger: Optional[logging.Logger] = None):
        self.spec = spec
        self.label = spec.label
        self.logger = logger or module_logger
        self.backoff = Backoff()
        self.connected = False
        self._lock = threading.RLock()
        self._closing = threading.Event()

    # -------- lifecycle --------

    def connect(self):
        with self._lock:
            if self.connected:
                return
            self._closing.clear()
            try:
                self._open()
            except ConnectionError:
                raise
            except Exception as e:
                raise ConnectionError(self.label, f"connect failed: {e}", retryable=True) from e
            self.connected = True
            self.logger.debug("%s: connected", self.label)

    def disconnect(self):
        # Set before taking the lock so an in-flight receive/send sees it.
        self._closing.set()
        with self._lock:
            if not self.connected:
                return
            self.connected = False
            try:
                self._close()
            except Exception as e:
                self.logger.debug("%s: error while closing: %s", self.label, e)
            self.logger.debug("%s: disconnected", self.label)

    # -------- data --------

    def send(self, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        if self._closing.is_set():
            raise ConnectionError(self.label, "send cancelled, connection is closing", retryable=False)
        with self._lock:
            self._require_connected()
            try:
                self._write(data)
            except ConnectionError:
                raise
            except Exception as e:
                raise ConnectionError(self.label, f"send failed: {e}", retryable=True) from e

    def receive(self) -> Iterator[str]:
        self._require_connected()
        return self._receive()

    def action(self, name: str, value):
        if name not in self.ACTIONS:
            raise UnsupportedAction(f"{self.kind} connection '{self.label}' has no action '{name}'")
        with self._lock:
            self._require_connected()
            try:
                getattr(self, f"_action_{name}")(value)
            except ConnectionError:
                raise
            except Exception as e:
                raise ConnectionError(self.label, f"action {name}={value!r} failed: {e}", retryable=True) from e
        self.logger.debug("%s: %s=%r", self.label, name, value)

    def _require_connected(self):
        if not self.connected:
            raise ConnectionError(self.label, "not connected", retryable=True)

    # -------- per-kind implementation --------

    @abc.abstractmethod
    def _open(self):
        ...

    @abc.abstractmethod
    def _close(self):
        ...

    @abc.abstractmethod
    def _write(self, data: bytes):
        ...

    @abc.abstractmethod
    def _receive(self) -> Iterator[str]:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.label} connected={self.connected}>"
