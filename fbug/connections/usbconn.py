"""USB presence connection backed by the sysfs device tree."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

from ..errors import ConnectionError
from ..model import UsbSpec
from .base import BOOLEAN, Connection

LINE_PRESENT = "present"
LINE_ABSENT = "absent"


class UsbConnection(Connection):
    """Reports whether a device is enumerated on a physical USB port.

    The receive stream yields `present <product>` / `absent` whenever the
    port's state changes (and once on connect). `authorized` logically
    detaches or re-attaches the device without touching the cable."""

    kind = "usb"
    ACTIONS = {"authorized": BOOLEAN}
    SYSFS_ROOT = Path("/sys/bus/usb/devices")
    POLL_INTERVAL_S = 0.5

    def __init__(self, spec: UsbSpec, logger=None):
        super().__init__(spec, logger)

    @property
    def device_dir(self) -> Path:
        return self.SYSFS_ROOT / self.spec.port

    def present(self) -> bool:
        return self.device_dir.is_dir()

    def product(self) -> str:
        try:
            return (self.device_dir / "product").read_text().strip()
        except OSError:
            return ""

    def _open(self):
        if not self.SYSFS_ROOT.is_dir():
            raise ConnectionError(self.label, f"{self.SYSFS_ROOT} is not available", retryable=False)

    def _close(self):
        pass

    def _write(self, data: bytes):
        raise ConnectionError(self.label, "USB presence connections cannot send data", retryable=False)

    def _action_authorized(self, level):
        if not self.present():
            raise ConnectionError(self.label, f"no device on port {self.spec.port}", retryable=True)
        (self.device_dir / "authorized").write_text("1" if level else "0")

    def _receive(self) -> Iterator[str]:
        last = None
        while not self._closing.is_set():
            now_present = self.present()
            if now_present != last:
                last = now_present
                if now_present:
                    product = self.product()
                    yield f"{LINE_PRESENT} {product}".rstrip()
                else:
                    yield LINE_ABSENT
            self._closing.wait(self.POLL_INTERVAL_S)
