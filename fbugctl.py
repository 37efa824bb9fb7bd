#!/usr/bin/env python3
"""Local control client for fbug.

The daemon owns every connection to the device, so nothing else can safely
press its buttons. fbugctl talks to the daemon over a local UNIX socket.

Commands:
  status | state | triggers | run <trigger> | abort | release | rest

Socket path:
  - default: /run/fbug/fbug.sock
  - override: --socket PATH or FBUG_SOCKET env var
"""

from __future__ import annotations

import argparse
import json
import os
import socket
import sys

import requests

DEFAULT_SOCK = "/run/fbug/fbug.sock"
PUSHOVER_URL = "https://api.pushover.net/1/messages.json"
COMMANDS = ["status", "state", "triggers", "run", "abort", "release", "rest", "test-notify"]


def _send(sock_path: str, cmd: str, timeout: float | None = None) -> dict:
    s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    s.settimeout(timeout)
    try:
        s.connect(sock_path)
        s.sendall((cmd.strip() + "\n").encode("utf-8"))
        data = b""
        while b"\n" not in data and len(data) < 65536:
            chunk = s.recv(4096)
            if not chunk:
                break
            data += chunk
        line = data.decode("utf-8", errors="replace").strip()
        if not line:
            return {"ok": False, "error": "empty response"}
        try:
            return json.loads(line)
        except ValueError:
            return {"ok": False, "error": "non-json response", "raw": line}
    finally:
        s.close()


def _print_status(resp: dict):
    st = resp.get("state", {})
    holds = ",".join(st.get("active_holds") or []) or "-"
    print(f"ok  version={resp.get('version', '')} device={st.get('device')} state={st.get('current')} "
          f"previous={st.get('previous') or '-'} holds={holds} running={st.get('running_trigger') or '-'}")
    for alert in st.get("alerts") or []:
        print(f"  alert {alert}")


def _test_notify() -> int:
    token = os.getenv("PUSHOVER_TOKEN")
    user = os.getenv("PUSHOVER_USER")
    if not token or not user:
        print("error: PUSHOVER_TOKEN and PUSHOVER_USER must be set", file=sys.stderr)
        return 2
    try:
        r = requests.post(
            PUSHOVER_URL,
            data={"token": token, "user": user, "title": "fbug", "message": "Test notification from fbugctl"},
            timeout=5,
        )
        r.raise_for_status()
    except requests.RequestException as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    print("ok")
    return 0


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(prog="fbugctl", description="Control fbug via its local UNIX socket")
    ap.add_argument("command", choices=COMMANDS, help="Command to send to the daemon")
    ap.add_argument("trigger", nargs="?", help="Trigger name (for 'run')")
    ap.add_argument("--socket", default=os.environ.get("FBUG_SOCKET", DEFAULT_SOCK),
                    help=f"Control socket path (default: {DEFAULT_SOCK})")
    ap.add_argument("--timeout", type=float, default=None,
                    help="Give up waiting for the daemon after this many seconds (default: wait)")
    ap.add_argument("--json", action="store_true", help="Print raw JSON response")
    args = ap.parse_args(argv)

    if args.command == "test-notify":
        return _test_notify()

    if args.command == "run" and not args.trigger:
        ap.error("run requires a trigger name")
    cmd = f"run {args.trigger}" if args.command == "run" else args.command

    try:
        resp = _send(args.socket, cmd, timeout=args.timeout)
    except OSError as e:
        print(f"error: cannot reach daemon at {args.socket}: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(resp, indent=2, sort_keys=True))
        return 0 if resp.get("ok") else 2

    if not resp.get("ok"):
        print(f"error: {resp.get('error', 'unknown error')}", file=sys.stderr)
        raw = resp.get("raw")
        if raw:
            print(raw, file=sys.stderr)
        return 2

    if args.command == "status":
        _print_status(resp)
    elif args.command == "state":
        print(resp.get("state"))
    elif args.command == "triggers":
        for trig in resp.get("triggers", []):
            mark = "*" if trig.get("legal") else " "
            print(f"{mark} {trig.get('description')}")
    elif args.command in ("run", "rest"):
        elapsed = resp.get("elapsed_s")
        print(f"ok  state={resp.get('state')}" + (f" elapsed_s={elapsed}" if elapsed is not None else ""))
    elif args.command == "abort":
        print("ok" if resp.get("cancelled") else "ok  (nothing running)")
    elif args.command == "release":
        print("ok  released=" + (",".join(resp.get("released") or []) or "-"))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
