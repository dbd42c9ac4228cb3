"""Command line entry point: ``python -m fieldsync <command>``."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fieldsync import __version__
from fieldsync.bootstrap import SyncContainer, build_container
from fieldsync.core.error_handler import setup_global_exception_handler
from fieldsync.core.logging import configure_logging
from fieldsync.core.settings import get_settings
from fieldsync.sync.orchestrator import VEHICLES
from fieldsync.sync.polling import PollUpdate

logger = logging.getLogger("fieldsync.cli")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _print_update(update: PollUpdate) -> None:
    data = update.as_dict()
    payload = data.pop("data")
    data["size"] = len(payload) if isinstance(payload, (list, dict)) else 0
    _print_json(data)


async def _poll(container: SyncContainer, args: argparse.Namespace) -> int:
    await container.start()
    interval = args.interval or container.settings.remote.refresh_interval
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass

    remaining = {"cycles": args.cycles}

    def on_update(update: PollUpdate) -> None:
        _print_update(update)
        if remaining["cycles"] and update.sequence >= remaining["cycles"]:
            stop_event.set()

    container.poller.start("cli", on_update, interval=interval, dataset=args.dataset)
    await stop_event.wait()
    return 0


async def _stats(container: SyncContainer, args: argparse.Namespace) -> int:
    await container.store.open()
    entries = await container.store.stats()
    report: Dict[str, Any] = {
        "version": __version__,
        "persistent_cache": {
            "url": container.store.url,
            "available": container.store.available,
            "error": container.store.open_error,
            "usage_bytes": await container.store.usage_bytes(),
            "quota_bytes": container.settings.quota_bytes,
            "entries": [entry.as_dict() for entry in entries],
        },
        "metrics": asdict(await container.metrics.snapshot()),
        "remote": container.client.status() if container.client is not None else {"enabled": False},
    }
    _print_json(report)
    return 0


async def _clear_cache(container: SyncContainer, args: argparse.Namespace) -> int:
    if args.expired:
        removed = await container.store.clear_expired()
    else:
        removed = await container.store.clear_all()
    _print_json({"removed": removed, "expired_only": bool(args.expired)})
    return 0


async def _test_connection(container: SyncContainer, args: argparse.Namespace) -> int:
    if container.client is None:
        _print_json({"success": False, "message": "remote API is disabled or not configured"})
        return 1
    result = await container.client.test_connection()
    _print_json(result)
    return 0 if result.get("success") else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fieldsync", description="Field data sync utilities")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    poll = sub.add_parser("poll", help="Poll a dataset and print every update")
    poll.add_argument("--dataset", default=VEHICLES)
    poll.add_argument("--interval", type=float, default=None, help="Seconds between cycles")
    poll.add_argument("--cycles", type=int, default=0, help="Stop after N updates (0 = run until interrupted)")
    poll.set_defaults(handler=_poll)

    stats = sub.add_parser("stats", help="Show cache entries, counters and remote status")
    stats.set_defaults(handler=_stats)

    clear = sub.add_parser("clear-cache", help="Delete cached datasets")
    clear.add_argument("--expired", action="store_true", help="Only delete expired entries")
    clear.set_defaults(handler=_clear_cache)

    test = sub.add_parser("test-connection", help="Authenticate and list devices once")
    test.set_defaults(handler=_test_connection)
    return parser


async def _run(args: argparse.Namespace) -> int:
    setup_global_exception_handler()
    container = build_container(get_settings())
    try:
        return await args.handler(container, args)
    finally:
        await container.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
