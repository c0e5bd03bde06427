from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .core.config import get_settings
from .core.constants import FOLDER_WATCH_S
from .core.crypto import generate_key, generate_room_id
from .core.encoding import b64e
from .core.errors import PartakeError
from .core.files import LocalFolder, format_size
from .core.links import build_join_link, parse_join_link, signaling_url
from .relay.app import build_relay_app
from .protocol.client import ShareClient
from .protocol.link import rtc_link_factory
from .protocol.selfcheck import security_self_check
from .protocol.signaling import SignalingClient

HOST_WAIT_S = 30.0

def _configure_logger():
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )
    return structlog.get_logger()

def _split_put(arg: str):
    local, _, remote = arg.partition(":")
    return local, (remote or None)

async def _run_host(args, settings, logger) -> int:
    room_id, key = generate_room_id(), generate_key()
    signaling = SignalingClient(signaling_url(args.url), room_id, logger, instance_header=settings.instance_header)
    client = ShareClient(
        signaling, key, logger,
        folder=LocalFolder(args.folder, logger),
        allow_write=args.allow_write,
        link_factory=None if args.relay_only else rtc_link_factory(logger),
        fallback_timeout=settings.direct_timeout_s,
        watch_interval=FOLDER_WATCH_S,
    )
    await client.start()
    print(f"Sharing {args.folder} ({len(client.files)} files)")
    print(f"Join link: {build_join_link(args.url, room_id, key)}")
    print("Press Ctrl+C to stop sharing")
    try:
        await client.closed.wait()
    finally:
        await client.close()
    return 0

async def _run_peer(args, settings, logger, room_id: str, key: bytes) -> int:
    signaling = SignalingClient(signaling_url(args.url), room_id, logger, instance_header=settings.instance_header)
    client = ShareClient(
        signaling, key, logger,
        sink=LocalFolder(args.out, logger),
        link_factory=None if args.relay_only else rtc_link_factory(logger),
        fallback_timeout=settings.direct_timeout_s,
    )
    await client.start()
    failures = 0
    try:
        await client.wait_for_host(HOST_WAIT_S)

        if not args.get and not args.put:
            for f in client.files:
                print(f"{format_size(f['size']):>10}  {f['path']}")
            print(f"{len(client.files)} files, uploads {'enabled' if client.allow_write else 'disabled'}")

        for path in args.get or []:
            if client.entry(path) is not None:
                data = await client.request_file(path)
                print(f"Downloaded {path} ({format_size(len(data))})")
                continue
            results = await client.download_folder(path)
            for p, err in results.items():
                if err is None:
                    print(f"Downloaded {p}")
                else:
                    failures += 1
                    print(f"Failed {p}: {err}")

        for arg in args.put or []:
            local, remote = _split_put(arg)
            result = await client.upload_file(local, remote)
            print(f"Upload {result.get('path')}: {result.get('message')}")
            if not result.get("success"):
                failures += 1
    finally:
        await client.close()
    return 3 if failures else 0

def main():
    logger = _configure_logger()
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Partake encrypted folder sharing")
    subparsers = parser.add_subparsers(dest="command", required=True)

    relay_parser = subparsers.add_parser("relay", help="Run the relay/signaling server")
    relay_parser.add_argument("--host", default=settings.host)
    relay_parser.add_argument("--port", type=int, default=settings.port)

    client_parser = subparsers.add_parser("client", help="Share a folder, or join a shared one")
    client_parser.add_argument("--url", required=True, help="Relay URL, or a join link to connect as a peer")
    client_parser.add_argument("--folder", help="Folder to share (host mode)")
    client_parser.add_argument("--allow-write", action="store_true", help="Accept uploads from peers")
    client_parser.add_argument("--out", default=".", help="Where downloads are written (peer mode)")
    client_parser.add_argument("--get", nargs="+", metavar="PATH", help="Files or folders to download")
    client_parser.add_argument("--put", nargs="+", metavar="LOCAL[:REMOTE]", help="Files to upload")
    client_parser.add_argument("--relay-only", action="store_true", help="Skip the direct data channel")

    subparsers.add_parser("gen-key", help="Generate a session key")
    subparsers.add_parser("check", help="Run security self-check")

    args = parser.parse_args()

    if args.command == "check":
        security_self_check(logger)
        print("✓ Security self-check passed")
        return 0

    if args.command == "gen-key":
        print(b64e(generate_key()))
        return 0

    if args.command == "relay":
        security_self_check(logger)
        import uvicorn
        app = build_relay_app(logger, settings)
        logger.info("starting_relay", host=args.host, port=args.port, machine=settings.machine_id)
        uvicorn.run(app, host=args.host, port=args.port, log_config=None)
        return 0

    if args.command == "client":
        security_self_check(logger)
        try:
            link = parse_join_link(args.url)
        except ValueError as e:
            logger.error("link_error", error=str(e))
            print(f"Error: {e}")
            return 2

        if link is None and not args.folder:
            print("Error: --folder is required to share (the URL has no join fragment)")
            return 2

        try:
            if link is None:
                return asyncio.run(_run_host(args, settings, logger))
            return asyncio.run(_run_peer(args, settings, logger, *link))
        except KeyboardInterrupt:
            logger.info("client_shutdown", reason="keyboard_interrupt")
            print("\nShutting down...")
        except PartakeError as e:
            logger.error("protocol_error", error=str(e), kind=type(e).__name__)
            print(f"Protocol error: {e}")
            return 3
        except Exception as e:
            logger.error("unexpected_error", error=str(e))
            print(f"Unexpected error: {e}")
            return 4

    return 0

if __name__ == "__main__":
    sys.exit(main())
