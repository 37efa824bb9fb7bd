from __future__ import annotations

import json
import os
import socket
import threading
from typing import Optional

from .connections import build_connection
from .connections.reader import ConnectionReader
from .constants import DEFAULT_TRIGGER_TIMEOUT_S, VERSION
from .controls import Control, HoldRegistry
from .dispatcher import Dispatcher
from .errors import ConnectionError, EngineBusy, TriggerFailed, UnknownTrigger
from .model import Device, Trigger
from .notify import Alerts
from .sequencer import Sequencer, TriggerOutcome
from .state import EngineState
from .statetable import StateTable, describe_trigger


def pin_defaults(device: Device) -> dict:
    """Released level of every pin-driven control, per connection label.

    Serial ports apply these before opening so that opening the port never
    presses a button."""
    pins: dict = {}
    for ctl in device.controls:
        if ctl.action not in ("dtr", "rts"):
            continue
        off = ctl.values[1] if ctl.values is not None else False
        pins.setdefault(ctl.connection, {})[ctl.action] = bool(off)
    return pins


class Engine:
    """One monitored device.

    Wires together the connections and their reader threads, the dispatcher
    (sole owner of the current state), the sequencer that runs triggers, and an
    optional local control socket. Several engines can live in one process."""

    def __init__(
        self,
        device: Device,
        logger,
        *,
        connections: Optional[dict] = None,
        notifier=None,
        verbose: bool = False,
        trigger_timeout_s: float = DEFAULT_TRIGGER_TIMEOUT_S,
    ):
        """Create an engine for a validated device.

        Args:
            device: Device model returned by the loader.
            logger: JsonLogger, usually bound to the device codename.
            connections: Optional label -> Connection mapping (tests inject fakes).
            notifier: Optional Notifier for operator alerts.
            verbose: Log every received line.
            trigger_timeout_s: Default time a trigger run may take to reach its state.
        """
        self.device = device
        self.logger = logger
        self.verbose = bool(verbose)
        self.table = StateTable(device)
        self.state = EngineState(device=device.codename or device.name)
        self.alerts = Alerts(logger, notifier, title=f"fbug {device.codename or device.name}")

        if connections is None:
            pins = pin_defaults(device)
            connections = {
                spec.label: build_connection(spec, device, pin_defaults=pins.get(spec.label))
                for spec in device.connections
            }
        self.connections = connections
        self.controls = {c.name: Control(c, self.connections[c.connection]) for c in device.controls}
        self.holds = HoldRegistry(logger, mirror=self.state.active_holds, lock=self.state.lock)
        self.dispatcher = Dispatcher(self.table, self.state, logger, self.connections, self.alerts, verbose)
        self.sequencer = Sequencer(self.table, self.dispatcher, self.controls, self.holds, logger,
                                   default_timeout_s=trigger_timeout_s, alerts=self.alerts)

        self._stop_evt = threading.Event()
        self._readers: list[ConnectionReader] = []
        self._control_thread = None
        self._control_sock_path: Optional[str] = None

    # ---------------- lifecycle ----------------

    def start(self, run_init: bool = True):
        """Open connections, run the init sequence, then start monitoring."""
        for conn in self.connections.values():
            try:
                conn.connect()
                self.logger.emit("connected", connection=conn.label, kind=conn.kind)
            except ConnectionError as e:
                # The reader keeps retrying with backoff.
                self.logger.emit("connect_failed", connection=conn.label, error=e.message, retryable=e.retryable)

        if run_init and self.device.init:
            try:
                self.sequencer.run_steps(self.device.init)
            except TriggerFailed as e:
                self.logger.emit("init_failed", error=str(e))

        self.dispatcher.start()
        for conn in self.connections.values():
            reader = ConnectionReader(conn, self.dispatcher.post, self._stop_evt, self.logger, verbose=self.verbose)
            reader.start()
            self._readers.append(reader)

    def shutdown(self):
        """Stop everything. No control is left asserted."""
        self.logger.emit("shutdown", state=self.state.current)
        self._stop_evt.set()
        self.sequencer.cancel()
        try:
            released = self.holds.release_all()
            if released:
                self.logger.emit("holds_force_released", controls=",".join(released))
        except Exception as e:
            self.logger.emit("release_error", error=str(e))
        self.dispatcher.stop()
        for conn in self.connections.values():
            conn.disconnect()
        for reader in self._readers:
            reader.join(timeout=1.0)
        if self._control_thread is not None:
            self._control_thread.join(timeout=1.0)

    # ---------------- operations ----------------

    def get_current_state(self) -> str:
        return self.state.current

    def list_legal_triggers(self) -> list[Trigger]:
        return self.table.legal_triggers(self.state.current)

    def run_trigger(self, name: str, timeout: Optional[float] = None) -> TriggerOutcome:
        """Run the named trigger and wait for its state. Raises TriggerFailed / EngineBusy / UnknownTrigger."""
        trigger = self.table.trigger(name)
        if trigger is None or not trigger.sequence:
            raise UnknownTrigger(f"no runnable trigger named '{name}'")
        return self.sequencer.run(trigger, timeout)

    def cancel_trigger(self) -> bool:
        return self.sequencer.cancel()

    def force_release_all_holds(self) -> list[str]:
        released = self.holds.release_all()
        self.logger.emit("holds_force_released", controls=",".join(released))
        return released

    def rest(self, timeout: Optional[float] = None) -> Optional[TriggerOutcome]:
        """Bring the device to its resting state. Returns None if it is already there."""
        target = self.device.resting_state
        current = self.state.current
        if current == target:
            return None
        for trig in self.list_legal_triggers():
            if trig.to == target:
                return self.run_trigger(trig.name, timeout)
        raise UnknownTrigger(f"no trigger leads from '{current}' to resting state '{target}'")

    def status(self) -> dict:
        snap = self.state.snapshot()
        snap["running_trigger"] = self.sequencer.running or ""
        snap["legal_triggers"] = [t.name for t in self.list_legal_triggers()]
        snap["alerts"] = [f"{k}:{v}" for k, v in self.alerts.active()]
        return snap

    # ---------------- Local control socket ----------------
    # The engine owns every connection to the device, so nothing else may
    # drive the controls. A local UNIX socket is the way in for operators.

    def start_control_socket(self, sock_path: str):
        """Start a local control socket.

        The socket accepts single-line commands and returns a single-line JSON response.
        Supported commands: status, state, triggers, run <name>, abort, release, rest.
        """
        if not sock_path:
            return
        self._control_sock_path = sock_path
        t = threading.Thread(target=self._control_loop, daemon=True, name="control-socket")
        t.start()
        self._control_thread = t
        self.logger.emit("control_socket_started", path=sock_path)

    def _control_loop(self):
        path = self._control_sock_path
        if not path:
            return

        parent = os.path.dirname(path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e), path=path)
            return

        srv = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            srv.bind(path)
            # Restrict to local users. systemd can further manage permissions via RuntimeDirectory.
            os.chmod(path, 0o660)
            srv.listen(4)
            srv.settimeout(0.5)
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e), path=path)
            srv.close()
            return

        while not self._stop_evt.is_set():
            try:
                conn, _ = srv.accept()
            except socket.timeout:
                continue
            except OSError as e:
                self.logger.emit("control_socket_error", error=str(e), path=path)
                break
            # `run` blocks until the trigger resolves; `abort` must still get through.
            threading.Thread(target=self._serve_client, args=(conn,), daemon=True).start()

        srv.close()
        try:
            os.remove(path)
        except OSError:
            pass

    def _serve_client(self, conn):
        try:
            conn.settimeout(2.0)
            data = b""
            while b"\n" not in data and len(data) < 4096:
                chunk = conn.recv(4096)
                if not chunk:
                    break
                data += chunk
            conn.settimeout(None)
            cmd = data.decode("utf-8", errors="replace").strip()
            resp = self._handle_control_command(cmd)
            conn.sendall((json.dumps(resp, sort_keys=True, default=str) + "\n").encode("utf-8"))
        except OSError as e:
            self.logger.emit("control_socket_error", error=str(e))
        finally:
            conn.close()

    def _handle_control_command(self, cmd: str) -> dict:
        parts = (cmd or "").strip().split(None, 1)
        if not parts:
            return {"ok": False, "error": "empty command"}
        verb = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        if verb == "status":
            return {"ok": True, "state": self.status(), "version": VERSION}

        if verb == "state":
            return {"ok": True, "state": self.state.current}

        if verb == "triggers":
            legal = {t.name for t in self.list_legal_triggers()}
            return {
                "ok": True,
                "triggers": [
                    {"name": t.name, "to": t.to, "legal": t.name in legal, "description": describe_trigger(t)}
                    for t in self.table.triggers()
                ],
            }

        if verb == "run":
            if not arg:
                return {"ok": False, "error": "usage: run <trigger>"}
            return self._outcome_response(lambda: self.run_trigger(arg))

        if verb == "rest":
            return self._outcome_response(self.rest)

        if verb == "abort":
            return {"ok": True, "cancelled": self.cancel_trigger()}

        if verb == "release":
            try:
                return {"ok": True, "released": self.force_release_all_holds()}
            except ConnectionError as e:
                return {"ok": False, "error": str(e)}

        return {"ok": False, "error": f"unknown command: {verb}"}

    def _outcome_response(self, call) -> dict:
        try:
            outcome = call()
        except TriggerFailed as e:
            return {"ok": False, "error": str(e), "reason": e.reason, "state": e.observed}
        except (UnknownTrigger, EngineBusy) as e:
            return {"ok": False, "error": str(e)}
        if outcome is None:
            return {"ok": True, "state": self.state.current}
        return {"ok": True, "trigger": outcome.trigger, "state": outcome.observed,
                "elapsed_s": round(outcome.elapsed_s, 3)}
