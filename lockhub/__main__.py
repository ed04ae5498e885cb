"""lockhub command line.

Usage::

    python -m lockhub scan [--uid UID] [--range 192.168.1 ...] [--address IP ...]
    python -m lockhub token SESSION_ID
    python -m lockhub serve [--host HOST] [--port PORT]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from lockhub.config import get_settings


async def _scan(args: argparse.Namespace) -> int:
    from lockhub.device import DeviceClient
    from lockhub.discovery import DiscoveryProber, ScanProgress, build_candidates
    from lockhub.errors import DeviceNotFound

    settings = get_settings()
    ranges = args.range or settings.network_ranges
    candidates = build_candidates(args.address or (), ranges=ranges)

    def progress(p: ScanProgress) -> None:
        print(f"\r  {p.completed}/{p.total} ({p.percent}%)", end="", file=sys.stderr, flush=True)

    async with DeviceClient(timeout=settings.probe_timeout) as client:
        prober = DiscoveryProber(
            device=client, timeout=settings.probe_timeout, batch_size=settings.batch_size
        )
        if args.uid:
            try:
                found = await prober.find(candidates, target_uid=args.uid, on_progress=progress)
            except DeviceNotFound as exc:
                print(f"\n{exc}", file=sys.stderr)
                return 1
            devices = [found]
        else:
            devices = await prober.scan(candidates)

    print(file=sys.stderr)
    for d in devices:
        print(json.dumps({"address": d.address, "uid": d.uid, "type": d.type, "name": d.name}))
    return 0


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    parser = argparse.ArgumentParser(
        prog="python -m lockhub",
        description="ESP32 lock discovery and control hub",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    sub = parser.add_subparsers(dest="command", required=True)

    p_scan = sub.add_parser("scan", help="Probe the LAN for devices")
    p_scan.add_argument("--uid", default=None, help="Stop at the first lock announcing this uid")
    p_scan.add_argument(
        "--range",
        action="append",
        metavar="PREFIX",
        help="Three-octet prefix to sweep, e.g. 192.168.1 (repeatable)",
    )
    p_scan.add_argument(
        "--address",
        action="append",
        metavar="IP",
        help="Address to try before the sweep (repeatable)",
    )

    p_token = sub.add_parser("token", help="Mint a session token for the HTTP API")
    p_token.add_argument("session_id")

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    if args.command == "scan":
        try:
            sys.exit(asyncio.run(_scan(args)))
        except KeyboardInterrupt:
            print("\n\nScan cancelled.")
            sys.exit(1)
    elif args.command == "token":
        from lockhub.auth import create_token
        print(create_token(args.session_id))
    elif args.command == "serve":
        from lockhub.server import main as serve
        serve(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
