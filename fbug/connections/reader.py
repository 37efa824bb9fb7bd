from __future__ import annotations

import threading

from ..errors import ConnectionError
from ..events import LineEvent, LinkDown, LinkUp
from ..util import now_s


class ConnectionReader(threading.Thread):
    """Background reader for one connection.

    Keeps the connection open (reconnecting with the connection's own backoff
    when the failure is retryable) and forwards every received line, plus
    link up/down notices, to the dispatcher's event channel in order."""
    def __init__(self, conn, post, stop_evt: threading.Event, logger, verbose: bool = False):
        """Create the reader thread.

        Args:
            conn: A Connection instance (connected or not).
            post: Callable putting an event on the dispatcher channel.
            stop_evt: Set to stop reading and reconnecting.
            logger: JsonLogger for reader-level events.
        """
        super().__init__(daemon=True, name=f"reader-{conn.label}")
        self.conn = conn
        self.post = post
        self.stop_evt = stop_evt
        self.logger = logger
        self.verbose = bool(verbose)

    def run(self):
        """Thread entry point. Reads until stopped or the link fails for good."""
        conn = self.conn
        while not self.stop_evt.is_set():
            try:
                conn.connect()
            except ConnectionError as e:
                if not e.retryable:
                    self.post(LinkDown(conn.label, now_s(), error=e.message, retryable=False))
                    return
                delay = conn.backoff.next()
                self.logger.emit("connect_failed", connection=conn.label, error=e.message, retry_in=round(delay, 2))
                self.stop_evt.wait(delay)
                continue

            conn.backoff.reset()
            self.post(LinkUp(conn.label, now_s()))
            try:
                for line in conn.receive():
                    self.post(LineEvent(conn.label, line, now_s()))
                    if self.stop_evt.is_set():
                        break
            except ConnectionError as e:
                self.post(LinkDown(conn.label, now_s(), error=e.message, retryable=e.retryable))
                conn.disconnect()
                if not e.retryable:
                    return
                self.stop_evt.wait(conn.backoff.next())
                continue

            if self.stop_evt.is_set():
                return
            # Orderly end of stream that we did not ask for; reopen.
            self.post(LinkDown(conn.label, now_s()))
            conn.disconnect()
            self.stop_evt.wait(conn.backoff.next())
