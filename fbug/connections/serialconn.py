"""UART connection over pyserial, with DTR/RTS lines usable as buttons."""

from __future__ import annotations

import os
from typing import Iterator, Optional

import serial

from ..errors import ConnectionError
from ..model import SerialSpec
from .base import BOOLEAN, VALUED, Connection, LineBuffer

READ_TIMEOUT_S = 0.25


class SerialConnection(Connection):
    """Serial console of the device.

    Reads lines (or raw chunks when `lines` is off) and exposes the modem
    control lines as actions. If `getty` is set and credentials are known, a
    pending login prompt is answered automatically."""

    kind = "serial"
    ACTIONS = {"dtr": BOOLEAN, "rts": BOOLEAN, "baud": VALUED}

    def __init__(self, spec: SerialSpec, *, username: Optional[str] = None, password: Optional[str] = None,
                 pin_defaults: Optional[dict] = None, logger=None):
        super().__init__(spec, logger)
        self.baud = spec.baud
        self.username = username
        self.password = password
        # Levels applied to DTR/RTS before the port opens, so opening never presses a button.
        self.pin_defaults = {"dtr": False, "rts": False, **(pin_defaults or {})}
        self._port = None
        self._buffer = LineBuffer()

    def _open(self):
        path = self.spec.path
        if "://" not in path and not os.path.exists(path):
            raise ConnectionError(self.label, f"no such device {path}", retryable=True)
        try:
            port = serial.serial_for_url(path, baudrate=self.baud, timeout=READ_TIMEOUT_S, do_not_open=True)
            port.dtr = bool(self.pin_defaults["dtr"])
            port.rts = bool(self.pin_defaults["rts"])
            port.open()
        except (serial.SerialException, OSError, ValueError) as e:
            raise ConnectionError(self.label, f"failed to open {path}: {e}", retryable=True) from e
        self._port = port
        self._buffer.clear()

    def _close(self):
        port, self._port = self._port, None
        if port is not None:
            port.close()

    def _write(self, data: bytes):
        self._port.write(data)
        self._port.flush()

    def _action_dtr(self, level):
        self._port.dtr = bool(level)

    def _action_rts(self, level):
        self._port.rts = bool(level)

    def _action_baud(self, value):
        value = int(value)
        if self._port.baudrate != value:
            self._port.baudrate = value
        self.baud = value

    def _receive(self) -> Iterator[str]:
        port = self._port
        while not self._closing.is_set():
            try:
                data = port.read(port.in_waiting or 1)
            except Exception as e:
                # Closing the port from another thread surfaces here too.
                if self._closing.is_set():
                    return
                raise ConnectionError(self.label, f"read failed: {e}", retryable=True) from e
            if data:
                if not self.spec.lines:
                    yield data.decode("utf-8", errors="replace")
                    continue
                yield from self._buffer.feed(data)
            if self.spec.getty:
                self._maybe_login()

    def _maybe_login(self):
        if self.username is None:
            return
        prompt = self._buffer.pending.rstrip()
        if prompt.endswith("login:"):
            reply = self.username
        elif prompt.endswith("Password:") and self.password is not None:
            reply = self.password
        else:
            return
        self._buffer.clear()
        self.logger.debug("%s: answering getty prompt %r", self.label, prompt[-16:])
        self.send(reply + "\n")
