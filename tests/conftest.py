import queue
import time
from pathlib import Path

import pytest

from fbug.connections import Connection, actions_for_kind
from fbug.engine import Engine
from fbug.loader import load_device

REPO_ROOT = Path(__file__).resolve().parents[1]
AXOLOTL = REPO_ROOT / "devices" / "axolotl.yaml"


class CapturingLogger:
    """Minimal logger that matches the engine's .emit(event, **fields) contract."""
    def __init__(self):
        self.events = []

    def emit(self, event: str, **fields):
        self.events.append((event, fields))

    def bind(self, **fields):
        return self

    def names(self):
        return [e for e, _ in self.events]

    def last(self, event: str):
        for name, fields in reversed(self.events):
            if name == event:
                return fields
        return None


class FakeConnection(Connection):
    """In-memory connection: records actions, serves lines pushed by the test."""
    def __init__(self, spec, *, open_failures=0, fatal=False):
        super().__init__(spec)
        self.kind = spec.kind
        self.ACTIONS = actions_for_kind(spec.kind)
        self.baud = getattr(spec, "baud", None)
        self.calls = []
        self.sent = []
        self.lines = queue.Queue()
        self.fail_on = set()
        self.open_failures = open_failures
        self.fatal = fatal

    def _open(self):
        from fbug.errors import ConnectionError
        if self.open_failures > 0:
            self.open_failures -= 1
            raise ConnectionError(self.label, "not there yet", retryable=not self.fatal)

    def _close(self):
        pass

    def _write(self, data: bytes):
        self.sent.append(data)

    def _receive(self):
        while not self._closing.is_set():
            try:
                yield self.lines.get(timeout=0.02)
            except queue.Empty:
                continue

    def _record(self, name, value):
        if (name, value) in self.fail_on:
            raise OSError(f"{name} stuck")
        self.calls.append((name, value))

    def _action_dtr(self, value):
        self._record("dtr", value)

    def _action_rts(self, value):
        self._record("rts", value)

    def _action_baud(self, value):
        self._record("baud", value)
        self.baud = value

    def _action_authorized(self, value):
        self._record("authorized", value)

    def _action_run(self, value):
        self._record("run", value)


def _wait_for(cond, timeout_s=2.0):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.005)
    return cond()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def axolotl():
    return load_device(AXOLOTL)


@pytest.fixture
def logger():
    return CapturingLogger()


@pytest.fixture
def make_engine(logger):
    """Build an Engine over fake connections; connections are connected, threads not started."""
    engines = []

    def _make(device, **kwargs):
        conns = {spec.label: FakeConnection(spec) for spec in device.connections}
        for c in conns.values():
            c.connect()
        eng = Engine(device, logger, connections=conns, **kwargs)
        engines.append(eng)
        return eng, conns

    yield _make
    for eng in engines:
        eng.shutdown()


@pytest.fixture
def running(make_engine, axolotl):
    """Axolotl engine with its dispatcher thread running (no readers)."""
    eng, conns = make_engine(axolotl, trigger_timeout_s=2.0)
    eng.dispatcher.start()
    return eng, conns
