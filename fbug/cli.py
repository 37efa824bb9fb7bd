from __future__ import annotations

import json
import signal
import sys
import threading

from .constants import VERSION
from .doctor import (
    build_arg_parser,
    config_defaults_from,
    load_toml_config,
    resolved_config_dict,
    run_doctor,
)
from .engine import Engine
from .errors import ConfigurationError
from .loader import load_device
from .logging import JsonLogger
from .notify import Notifier
from .statetable import StateTable, describe_trigger


def parse_args(argv):
    """Parse CLI args. Values from --config replace the built-in defaults; CLI args win over both."""
    ap = build_arg_parser()
    pre, _ = ap.parse_known_args(argv)
    if pre.config:
        ap = build_arg_parser(config_defaults_from(load_toml_config(pre.config)))
    return ap, ap.parse_args(argv)


def main(argv=None):
    """CLI entry point. Loads the device, starts the engine, and runs until signalled."""
    argv = sys.argv[1:] if argv is None else list(argv)
    ap, args = parse_args(argv)
    if not argv:
        ap.print_help()
        return 0

    if args.version:
        print(VERSION)
        return 0

    # Print resolved configuration and exit (does not touch the device).
    if args.print_config:
        print(json.dumps(resolved_config_dict(args), indent=2, sort_keys=True))
        return 0

    if not args.device:
        raise SystemExit("A device description is required (-d/--device or [device] path in --config)")

    try:
        device = load_device(args.device)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if args.list_triggers:
        for trig in StateTable(device).triggers():
            print(describe_trigger(trig))
        return 0

    if args.doctor:
        return run_doctor(args, device)

    logger = JsonLogger(enable_json=bool(args.json)).bind(device=device.codename)
    notifier = Notifier.from_env(logger=logger)
    engine = Engine(
        device,
        logger,
        notifier=notifier,
        verbose=args.verbose,
        trigger_timeout_s=args.trigger_timeout,
    )

    if not args.no_banner:
        print(f"fbug {VERSION}")
        print(f"For {device.name} ({device.codename})")
        # Structured startup event for log scraping
        logger.emit(
            "startup",
            version=VERSION,
            device_file=args.device,
            connections=",".join(c.label for c in device.connections),
            resting_state=device.resting_state,
            trigger_timeout_s=args.trigger_timeout,
            run_init=bool(args.run_init),
            notify=notifier.enabled,
        )

    engine.start(run_init=bool(args.run_init))
    if args.control_socket:
        engine.start_control_socket(args.control_socket)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    exit_code = 0
    while not stop.wait(0.2):
        if not engine.dispatcher.is_alive():
            logger.emit("dispatcher_dead")
            exit_code = 3
            break

    engine.shutdown()
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
