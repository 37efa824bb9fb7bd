"""SSH connection (paramiko) with an application-level keepalive."""

from __future__ import annotations

import socket
import threading
from typing import Iterator, Optional

import paramiko

from ..errors import ConnectionError
from ..model import SshSpec
from .base import VALUED, Connection, LineBuffer

CONNECT_TIMEOUT_S = 5.0
COMMAND_TIMEOUT_S = 30.0
RECV_TIMEOUT_S = 0.25


class SshConnection(Connection):
    """Remote shell on the device.

    The receive stream is the output of `command` (or of an interactive shell
    when no command is configured). A keepalive thread checks the server every
    `alive_interval` seconds; after `alive_count_max` consecutive misses the
    link is declared failed and receive() raises."""

    kind = "ssh"
    ACTIONS = {"run": VALUED}

    def __init__(self, spec: SshSpec, *, username: Optional[str] = None, password: Optional[str] = None,
                 logger=None):
        super().__init__(spec, logger)
        self.username = username
        self.password = password
        self.missed = 0
        self._client: Optional[paramiko.SSHClient] = None
        self._channel = None
        self._failed: Optional[ConnectionError] = None
        self._session_stop = threading.Event()
        self._keepalive_thread: Optional[threading.Thread] = None

    def _open(self):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.spec.host,
                port=self.spec.port,
                username=self.username,
                password=self.password,
                timeout=CONNECT_TIMEOUT_S,
                banner_timeout=CONNECT_TIMEOUT_S,
                auth_timeout=CONNECT_TIMEOUT_S,
                look_for_keys=self.password is None,
                allow_agent=self.password is None,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectionError(self.label, f"ssh {self.spec.host}:{self.spec.port}: {e}", retryable=True) from e
        self._client = client
        self._start_keepalive()

    def _start_keepalive(self):
        self._failed = None
        self.missed = 0
        self._session_stop = threading.Event()
        t = threading.Thread(target=self._keepalive_loop, args=(self._session_stop,), daemon=True,
                             name=f"ssh-keepalive-{self.label}")
        t.start()
        self._keepalive_thread = t

    def _close(self):
        self._session_stop.set()
        self._abort_channel()
        client, self._client = self._client, None
        if client is not None:
            client.close()

    def _abort_channel(self):
        chan, self._channel = self._channel, None
        if chan is not None:
            try:
                chan.close()
            except Exception as e:
                self.logger.debug("%s: closing channel: %s", self.label, e)

    def _write(self, data: bytes):
        if self._channel is None:
            raise ConnectionError(self.label, "no open shell to send to", retryable=True)
        self._channel.sendall(data)

    def _action_run(self, command):
        _, stdout, stderr = self._client.exec_command(str(command), timeout=COMMAND_TIMEOUT_S)
        status = stdout.channel.recv_exit_status()
        if status != 0:
            err = stderr.read().decode("utf-8", errors="replace").strip()
            raise ConnectionError(self.label, f"'{command}' exited with {status}: {err}", retryable=False)

    # -------- keepalive --------

    def _keepalive_ok(self) -> bool:
        """One keepalive round trip: open and close a session channel."""
        client = self._client
        transport = client.get_transport() if client is not None else None
        if transport is None or not transport.is_active():
            return False
        try:
            chan = transport.open_session(timeout=self.spec.alive_interval)
            chan.close()
            return True
        except (paramiko.SSHException, OSError, EOFError):
            return False

    def _keepalive_loop(self, stop: threading.Event):
        missed = 0
        while not stop.wait(self.spec.alive_interval):
            if self._keepalive_ok():
                missed = 0
                self.missed = 0
                continue
            missed += 1
            self.missed = missed
            self.logger.debug("%s: keepalive missed (%d/%d)", self.label, missed, self.spec.alive_count_max)
            if missed >= self.spec.alive_count_max:
                self._failed = ConnectionError(
                    self.label, f"{missed} keepalives missed at {self.spec.alive_interval}s", retryable=True)
                self._abort_channel()
                return

    # -------- receive --------

    def _open_stream(self):
        chan = self._client.get_transport().open_session(timeout=CONNECT_TIMEOUT_S)
        if self.spec.command:
            chan.exec_command(self.spec.command)
        else:
            chan.get_pty()
            chan.invoke_shell()
        chan.settimeout(RECV_TIMEOUT_S)
        return chan

    def _receive(self) -> Iterator[str]:
        try:
            self._channel = self._open_stream()
        except (paramiko.SSHException, OSError) as e:
            raise ConnectionError(self.label, f"cannot open stream: {e}", retryable=True) from e
        buf = LineBuffer()
        while True:
            if self._failed is not None:
                raise self._failed
            if self._closing.is_set():
                return
            chan = self._channel
            if chan is None:
                return
            try:
                data = chan.recv(4096)
            except socket.timeout:
                continue
            except (paramiko.SSHException, OSError) as e:
                if self._failed is not None:
                    raise self._failed from e
                if self._closing.is_set():
                    return
                raise ConnectionError(self.label, f"read failed: {e}", retryable=True) from e
            if not data:
                if self._failed is not None:
                    raise self._failed
                # Remote side closed the stream.
                return
            yield from buf.feed(data)
