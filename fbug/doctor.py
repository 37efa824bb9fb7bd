from __future__ import annotations

import argparse
from argparse import RawDescriptionHelpFormatter

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib

from serial.tools import list_ports

from .connections import UsbConnection, build_connection
from .constants import DEFAULT_CONTROL_SOCKET, DEFAULT_TRIGGER_TIMEOUT_S, USAGE_EXAMPLES
from .engine import pin_defaults
from .errors import ConnectionError
from .model import Device
from .statetable import StateTable, describe_trigger


def run_doctor(args, device: Device) -> int:
    """Check that every connection of the device can be opened and print diagnostics.

    Returns a process exit code: 0 if every connection opened, 1 otherwise."""
    print("Doctor Mode (safe):")
    print("  - No control is actuated; serial pins are opened at their released level.")
    print("  - Each connection is opened once and closed again.")
    print()
    print(f"Device: {device.name} ({device.codename})")
    if device.description:
        for line in device.description.strip().splitlines():
            print(f"  {line}")
    print()

    failures = 0
    pins = pin_defaults(device)
    print("Connections:")
    for spec in device.connections:
        conn = build_connection(spec, device, pin_defaults=pins.get(spec.label))
        if isinstance(conn, UsbConnection):
            if conn.present():
                print(f"  OK   {spec.label} (usb): device on port {spec.port}: {conn.product() or 'unknown product'}")
            else:
                print(f"  WARN {spec.label} (usb): nothing enumerated on port {spec.port}")
            continue
        try:
            conn.connect()
        except ConnectionError as e:
            failures += 1
            print(f"  FAIL {spec.label} ({spec.kind}): {e.message}")
            continue
        print(f"  OK   {spec.label} ({spec.kind}): opened")
        conn.disconnect()
    print()

    ports = sorted(list_ports.comports(), key=lambda p: p.device)
    print("Serial ports on this host:")
    if not ports:
        print("  (none)")
    for p in ports:
        print(f"  {p.device}  {p.description}  [{p.hwid}]")
    print()

    table = StateTable(device)
    print("Triggers:")
    for trig in table.triggers():
        print("  " + describe_trigger(trig).replace("\n", "\n  "))
    timeouts = [t for t in device.transitions if t.is_timeout]
    for tr in timeouts:
        name = tr.timeout.name or tr.label()
        print(f"  {name}: after {tr.timeout.seconds:g}s in {tr.label().split('->')[0]}, assume {tr.to}")
    print()
    print("Doctor complete." if not failures else f"Doctor complete: {failures} connection(s) failed.")
    return 0 if not failures else 1


def load_toml_config(path: str) -> dict:
    """Load TOML configuration from path."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _get_cfg(cfg: dict, section: str, key: str, default=None):
    sec = cfg.get(section, {})
    if not isinstance(sec, dict):
        return default
    return sec.get(key, default)


def config_defaults_from(cfg: dict) -> dict:
    """Map TOML config into argparse defaults."""
    return {
        "device": _get_cfg(cfg, "device", "path", None),
        "trigger_timeout": _get_cfg(cfg, "engine", "trigger_timeout", DEFAULT_TRIGGER_TIMEOUT_S),
        "run_init": _get_cfg(cfg, "engine", "run_init", True),
        "verbose": _get_cfg(cfg, "logging", "verbose", False),
        "no_banner": _get_cfg(cfg, "logging", "no_banner", False),
        "json": _get_cfg(cfg, "logging", "json", False),
        "control_socket": _get_cfg(cfg, "control", "socket", DEFAULT_CONTROL_SOCKET),
    }


def resolved_config_dict(args) -> dict:
    return {
        "device": {"path": args.device},
        "engine": {
            "trigger_timeout": args.trigger_timeout,
            "run_init": bool(args.run_init),
        },
        "logging": {
            "verbose": bool(args.verbose),
            "no_banner": bool(args.no_banner),
            "json": bool(args.json),
        },
        "control": {
            "socket": getattr(args, "control_socket", None),
        },
    }


def build_arg_parser(defaults=None):
    """Construct the CLI argument parser for the daemon."""
    ap = argparse.ArgumentParser(prog="fbugd", epilog=USAGE_EXAMPLES, formatter_class=RawDescriptionHelpFormatter)
    # Built-in defaults, optionally replaced by values from a TOML config.
    if defaults is None:
        defaults = config_defaults_from({})
    ap.set_defaults(**defaults)
    ap.add_argument("-d", "--device", help="Path to the device description (YAML).")
    ap.add_argument("--trigger-timeout", type=float,
                    help="Seconds a trigger may take to bring the device to its target state.")
    ap.add_argument("--init", dest="run_init", action="store_true", help="Run the device's init sequence on startup.")
    ap.add_argument("--no-init", dest="run_init", action="store_false", help="Skip the device's init sequence.")

    ap.add_argument("--verbose", dest="verbose", action="store_true", help="Verbose logging (includes every received line).")
    ap.add_argument("--no-verbose", dest="verbose", action="store_false", help="Disable verbose logging.")
    json_group = ap.add_mutually_exclusive_group()
    json_group.add_argument("--json", dest="json", action="store_true", help="Emit JSON log events.")
    json_group.add_argument("--no-json", dest="json", action="store_false", help="Disable JSON log output.")
    ap.add_argument("--no-banner", dest="no_banner", action="store_true", help="Disable the startup banner.")
    ap.add_argument("--banner", dest="no_banner", action="store_false", help="Enable the startup banner.")

    ap.add_argument("--doctor", action="store_true", help="Check the device's connections and exit. Actuates nothing.")
    ap.add_argument("--list-triggers", action="store_true", help="Print the device's triggers and exit.")
    sock_group = ap.add_mutually_exclusive_group()
    sock_group.add_argument("--control-socket", dest="control_socket",
                            help=f"Path to the local UNIX control socket (default: {DEFAULT_CONTROL_SOCKET}).")
    sock_group.add_argument("--no-control-socket", dest="control_socket", action="store_const", const="",
                            help="Disable the local control socket.")
    ap.add_argument("--config", help="Path to a TOML config file. CLI args override config values.")
    ap.add_argument("--print-config", action="store_true", help="Print the resolved configuration and exit.")
    ap.add_argument("--version", action="store_true", help="Print version and exit.")
    return ap
