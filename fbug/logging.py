from __future__ import annotations

import json
import sys
import time


class JsonLogger:
    """Minimal structured logger.

    Emits single-line events for state transitions, trigger runs and link
    changes so logs are easy to grep and machine-parse. A logger can be bound
    to extra fields (e.g. the device codename) which are added to every event."""
    def __init__(self, enable_json: bool, stream=None, **bound):
        """Create a logger.

        Args:
            enable_json: Emit sorted-key JSON objects instead of plain lines.
            stream: A file-like object used for output (defaults to stdout).
            **bound: Fields included in every event.
        """
        self.enable_json = enable_json
        self.stream = stream
        self.bound = dict(bound)

    def bind(self, **fields) -> "JsonLogger":
        """Return a logger sharing this one's output with extra fields attached."""
        return JsonLogger(self.enable_json, stream=self.stream, **{**self.bound, **fields})

    def emit(self, event: str, **fields):
        """Emit an event with a name and optional key/value fields."""
        t = time.time()
        stamp = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(t)) + f'.{int((t - int(t)) * 1000):03d}'
        fields = {**self.bound, **fields}
        out = self.stream if self.stream is not None else sys.stdout
        if self.enable_json:
            payload = {"ts": t, "ts_iso": stamp, "event": event, **fields}
            print(json.dumps(payload, sort_keys=True, default=str), file=out, flush=True)
        else:
            msg = f"[{stamp}] {event}"
            if fields:
                msg += " " + " ".join(f"{k}={v}" for k, v in fields.items())
            print(msg, file=out, flush=True)
