"""Connection variants, one per `type` in the device description."""

from __future__ import annotations

from .base import BOOLEAN, VALUED, Backoff, Connection, LineBuffer
from .serialconn import SerialConnection
from .sshconn import SshConnection
from .usbconn import UsbConnection

CONNECTION_TYPES = {cls.kind: cls for cls in (SerialConnection, UsbConnection, SshConnection)}


def actions_for_kind(kind: str) -> dict[str, bool]:
    """Action table (name -> takes a boolean level) for a connection kind."""
    return dict(CONNECTION_TYPES[kind].ACTIONS)


def build_connection(spec, device=None, pin_defaults=None, logger=None) -> Connection:
    """Instantiate (but do not connect) the connection for a spec."""
    username = device.username if device is not None else None
    password = device.password if device is not None else None
    if spec.kind == "serial":
        return SerialConnection(spec, username=username, password=password, pin_defaults=pin_defaults, logger=logger)
    if spec.kind == "ssh":
        return SshConnection(spec, username=username, password=password, logger=logger)
    return CONNECTION_TYPES[spec.kind](spec, logger=logger)


__all__ = [
    "BOOLEAN", "VALUED", "Backoff", "Connection", "LineBuffer",
    "SerialConnection", "SshConnection", "UsbConnection",
    "CONNECTION_TYPES", "actions_for_kind", "build_connection",
]
