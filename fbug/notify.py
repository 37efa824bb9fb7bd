"""Operator alerts, pushed through Pushover when credentials are configured."""

from __future__ import annotations

import os
import threading
from typing import Mapping, Optional

import requests

PUSHOVER_URL = "https://api.pushover.net/1/messages.json"

_TRUE = ("1", "true", "yes", "on")


class Notifier:
    """Delivers pushes on a background thread. A failed push is logged, never raised."""
    def __init__(self, token: Optional[str] = None, user: Optional[str] = None, enabled: bool = True,
                 logger=None, timeout_s: float = 5.0):
        self.enabled = bool(enabled and token and user)
        self.logger = logger
        self._token = token
        self._user = user
        self._timeout = timeout_s
        self._session = requests.Session() if self.enabled else None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, logger=None) -> "Notifier":
        """FBUG_NOTIFY switches pushes on; PUSHOVER_TOKEN and PUSHOVER_USER are the credentials."""
        env = os.environ if environ is None else environ
        return cls(
            token=env.get("PUSHOVER_TOKEN") or None,
            user=env.get("PUSHOVER_USER") or None,
            enabled=env.get("FBUG_NOTIFY", "").strip().lower() in _TRUE,
            logger=logger,
        )

    def send(self, title: str, message: str, priority: int = 0):
        if not self.enabled:
            return
        threading.Thread(target=self.push, args=(title, message, priority), daemon=True,
                         name="notifier").start()

    def push(self, title: str, message: str, priority: int = 0) -> bool:
        """Deliver one push synchronously. Returns whether Pushover accepted it."""
        try:
            resp = self._session.post(
                PUSHOVER_URL,
                data={"token": self._token, "user": self._user, "title": title,
                      "message": message, "priority": priority},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            if self.logger is not None:
                self.logger.emit("push_error", title=title, error=str(e))
            return False
        return True


class Alerts:
    """Operator alerts: always logged, pushed once per condition until it clears."""
    def __init__(self, logger, notifier: Optional[Notifier] = None, title: str = "fbug"):
        self.logger = logger
        self.notifier = notifier
        self.title = title
        self._active: set = set()
        self._lock = threading.Lock()

    def report(self, kind: str, key, **fields):
        self.logger.emit(kind, **fields)
        with self._lock:
            if (kind, key) in self._active:
                return
            self._active.add((kind, key))
        if self.notifier is not None:
            detail = " ".join(f"{k}={v}" for k, v in fields.items())
            self.notifier.send(self.title, f"{kind}: {detail}", priority=1 if kind == "link_lost" else 0)

    def clear(self, kind: str, key=None):
        with self._lock:
            self._active = {(k, v) for k, v in self._active if not (k == kind and (key is None or v == key))}

    def active(self) -> list:
        with self._lock:
            return sorted((k, str(v)) for k, v in self._active)
