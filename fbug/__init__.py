"""fbug package: device-under-test state tracking and control."""

from .engine import Engine
from .loader import load_device
from .state import EngineState

__all__ = ["Engine", "EngineState", "load_device"]
