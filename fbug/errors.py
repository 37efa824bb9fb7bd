"""Error taxonomy for fbug."""

from __future__ import annotations

from dataclasses import dataclass


class FbugError(Exception):
    """Base error for fbug."""


class ConfigurationError(FbugError):
    """Raised when a device description is inconsistent. Only ever raised at load time."""


class UnsupportedAction(ConfigurationError):
    """Raised when a control names an action its connection kind does not provide."""


class ConnectionError(FbugError):  # noqa: A001
    """Raised on connect/send/receive failures.

    `retryable` tells the reader whether reconnecting can help (device node
    went away, host unreachable) or not (link cancelled, unsupported call)."""

    def __init__(self, label: str, message: str, *, retryable: bool = True):
        super().__init__(f"{label}: {message}")
        self.label = label
        self.message = message
        self.retryable = retryable


@dataclass(frozen=True)
class UnhandledObservation:
    """A line that points at a state no transition legal from `current` leads to."""
    current: str
    source: str
    line: str
    candidates: tuple[str, ...]


class TriggerFailed(FbugError):
    """A trigger run finished without the device reaching the transition's target."""

    def __init__(self, trigger: str, target: str, observed: str, reason: str):
        super().__init__(f"trigger '{trigger}' failed ({reason}): wanted {target}, observed {observed}")
        self.trigger = trigger
        self.target = target
        self.observed = observed
        self.reason = reason


class EngineBusy(FbugError):
    """Raised when a trigger is requested while another one is running."""


class UnknownTrigger(FbugError):
    """Raised when a trigger name is not declared for the device."""
