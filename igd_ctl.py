#!/usr/bin/env python3
"""
Command-line client for a running igd-punch.

Talks to the JSON command API. Gateway operations only start work on the
server; --wait keeps polling until the result is available.

Usage:
    python igd_ctl.py scan --wait
    python igd_ctl.py add 80 9876 [--local-ip 192.168.1.50]
    python igd_ctl.py remove 9876
    python igd_ctl.py external --wait
    python igd_ctl.py status
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Optional

import httpx

DEFAULT_URL = "http://127.0.0.1:8091"


def call(client: httpx.Client, route: str, payload: Optional[dict] = None) -> dict[str, Any]:
    """POST (or GET for status) to the command API and return the JSON reply."""
    if route == "status":
        r = client.get("/status")
    else:
        r = client.post(f"/{route}", json=payload or {})
    r.raise_for_status()
    return r.json()


def wait_for_ready(client: httpx.Client, attempts: int, interval: float) -> bool:
    """Poll /status until the client reports the ready state."""
    for _ in range(attempts):
        if call(client, "status").get("state") == "ready":
            return True
        time.sleep(interval)
    return False


def scan(client: httpx.Client, wait: bool, attempts: int, interval: float) -> dict[str, Any]:
    reply = call(client, "scan")
    if reply.get("result") or not wait:
        return reply
    # Another /scan before ready would restart discovery
    if wait_for_ready(client, attempts, interval):
        return call(client, "scan")
    return reply


def external(client: httpx.Client, wait: bool, attempts: int, interval: float) -> dict[str, Any]:
    reply = call(client, "external")
    if reply.get("result") != 0 or not wait:
        return reply
    for _ in range(attempts):
        time.sleep(interval)
        if call(client, "status").get("state") != "queryingExternalAddress":
            break
        reply = call(client, "external")
        if reply.get("result"):
            return reply
    return reply


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Control a running igd-punch")
    parser.add_argument("--url", default=DEFAULT_URL, help=f"Command API URL (default: {DEFAULT_URL})")
    parser.add_argument("--attempts", type=int, default=40, help="Polls for --wait")
    parser.add_argument("--interval", type=float, default=0.5, help="Seconds between polls")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show state and session")
    sub.add_parser("begin", help="Reset the session")
    p = sub.add_parser("scan", help="Discover the gateway")
    p.add_argument("--wait", action="store_true")
    p = sub.add_parser("add", help="Add a TCP port mapping")
    p.add_argument("local_port", type=int)
    p.add_argument("remote_port", type=int)
    p.add_argument("--local-ip", default=None)
    p = sub.add_parser("remove", help="Remove a TCP port mapping")
    p.add_argument("remote_port", type=int)
    p = sub.add_parser("external", help="Query the external address")
    p.add_argument("--wait", action="store_true")
    return parser


def run(args: argparse.Namespace, client: httpx.Client) -> tuple[int, dict[str, Any]]:
    """Execute one command; returns (exit_code, reply)."""
    if args.command == "status":
        return 0, call(client, "status")
    if args.command == "begin":
        return 0, call(client, "begin")
    if args.command == "scan":
        reply = scan(client, args.wait, args.attempts, args.interval)
        ok = bool(reply.get("result")) or not args.wait
        return (0 if ok else 1), reply
    if args.command == "add":
        payload = {"local_port": args.local_port, "remote_port": args.remote_port}
        if args.local_ip:
            payload["local_ip"] = args.local_ip
        reply = call(client, "add", payload)
    elif args.command == "remove":
        reply = call(client, "remove", {"remote_port": args.remote_port})
    else:
        reply = external(client, args.wait, args.attempts, args.interval)
        if args.wait and not reply.get("result"):
            return 1, reply
    return (1 if reply.get("result") == -1 else 0), reply


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        with httpx.Client(base_url=args.url, timeout=5.0) as client:
            code, reply = run(args, client)
    except httpx.HTTPStatusError as e:
        print(f"Command failed: HTTP {e.response.status_code} {e.response.text}", file=sys.stderr)
        return 1
    except httpx.HTTPError as e:
        print(f"Cannot reach igd-punch at {args.url}: {e}", file=sys.stderr)
        return 1
    print(json.dumps(reply, indent=2))
    return code


if __name__ == "__main__":
    sys.exit(main())
