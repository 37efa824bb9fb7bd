from __future__ import annotations

VERSION = "0.3.0"

# Implicit states. Neither needs to be declared in a device description.
STATE_UNKNOWN = "unknown"
STATE_OFF = "off"
IMPLICIT_STATES = (STATE_UNKNOWN, STATE_OFF)

# Reserved wildcard; may appear in a `from` list but never as a declared state.
STATE_ANY = "any"

# Pseudo-control for pure delays in a sequence.
WAIT_CONTROL = "wait"

EVENT_INPUT = "input"
EVENT_KINDS = (EVENT_INPUT,)

STEP_ACTIONS = ("on", "off", "press", "release", "hold")

DEFAULT_PRESS_MS = 100
DEFAULT_TRIGGER_TIMEOUT_S = 30.0
DEFAULT_CONTROL_SOCKET = "/run/fbug/fbug.sock"


USAGE_EXAMPLES = """\
Usage examples:
  # Run the daemon for one device
  fbugd -d devices/axolotl.yaml

  # Structured logs, serial chatter included
  fbugd -d devices/axolotl.yaml --json --verbose

  # Show what can be triggered, then exit
  fbugd -d devices/axolotl.yaml --list-triggers

  # Check connections without touching any control
  fbugd -d devices/axolotl.yaml --doctor

  # Drive the running daemon
  fbugctl run boot
"""
