#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""main.py
Executable that connects to a sensor node's WebSocket feed, keeps a live
view of the incoming data, optionally persists it in a per‑device SQLite
store and gives the operator a command shell to query / export it.

The feed runs on an asyncio loop in a background thread; the shell owns the
main thread and the terminal.
"""

import argparse
import asyncio
import functools
import os
import threading
from pathlib import Path
from typing import List, Optional

from app_logger import DEFAULT_LOG_FILE, configure_file_logging, logger
from command_shell import StorageShell
from controller import FeedController
from feed_client import FeedClient, fetch_health
from feed_repository import FeedRepository
from models import StoreConfig
from sensor_store import SensorStore
from store_errors import StoreError
from store_observer import LoggingObserver

# ----------------------------------------------------------------------
# Configuration – environment variables override the defaults, flags
# override both
# ----------------------------------------------------------------------
WS_URL = os.getenv("SENSOR_FEED_WS_URL", "ws://localhost:8080")
API_URL = os.getenv("SENSOR_FEED_API_URL", "http://localhost:3000")
DB_FILE = Path(os.getenv("SENSOR_FEED_DB", "./data/sensor_feed.db"))
RECONNECT_INTERVAL_S = 5.0
ANALYZE_INTERVAL_S = 10.0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Sensor feed client with per-device SQLite storage")
    parser.add_argument("--ws-url", default=WS_URL, help="WebSocket feed URL")
    parser.add_argument("--api-url", default=API_URL, help="REST API base URL (health check)")
    parser.add_argument("--db", default=str(DB_FILE), help="SQLite database file")
    parser.add_argument("--retention-days", type=int, default=30,
                        help="default age cutoff for cleanup")
    parser.add_argument("--max-table-size", type=int, default=10000,
                        help="advisory per-device row count")
    parser.add_argument("--no-auto-create", action="store_true",
                        help="refuse writes for devices without a table")
    parser.add_argument("--storage", action="store_true",
                        help="enable storage at startup")
    parser.add_argument("--quiet-store", action="store_true",
                        help="silence the store's diagnostic log output")
    parser.add_argument("--reconnect-interval", type=float, default=RECONNECT_INTERVAL_S)
    parser.add_argument("--analyze-interval", type=float, default=ANALYZE_INTERVAL_S,
                        help="seconds between logged analyses, 0 to disable")
    parser.add_argument("--log-file", default=DEFAULT_LOG_FILE)
    return parser.parse_args(argv)


def build_components(args: argparse.Namespace):
    """
    Build the whole stack and return (store, repository, feed client, shell).
    """
    # 1️⃣  Persistence layer
    config = StoreConfig(
        storage_path=args.db,
        max_table_size=args.max_table_size,
        retention_days=args.retention_days,
        auto_create_tables=not args.no_auto_create,
        logging_enabled=not args.quiet_store,
    )
    store = SensorStore(config, observers=[LoggingObserver()])

    # 2️⃣  Repository façade + controller
    repo = FeedRepository(store)
    controller = FeedController(repo)

    # 3️⃣  Feed client and shell
    client = FeedClient(args.ws_url, controller, reconnect_interval=args.reconnect_interval)
    shell = StorageShell(repo, health_check=functools.partial(fetch_health, args.api_url))
    return store, repo, client, shell


async def periodic_analysis(shell: StorageShell, interval: float) -> None:
    """Log an analysis every ``interval`` seconds (first one after 5 s)."""
    await asyncio.sleep(min(5.0, interval))
    while True:
        lines = await asyncio.to_thread(shell.analysis_lines)
        logger.info("\n".join(lines))
        await asyncio.sleep(interval)


def start_feed(client: FeedClient, shell: StorageShell,
               analyze_interval: float) -> asyncio.AbstractEventLoop:
    """Run the feed (and the periodic analysis) on a loop in a daemon thread."""
    loop = asyncio.new_event_loop()

    async def _main() -> None:
        tasks = [asyncio.create_task(client.run())]
        if analyze_interval > 0:
            tasks.append(asyncio.create_task(periodic_analysis(shell, analyze_interval)))
        try:
            await tasks[0]
        finally:
            for task in tasks[1:]:
                task.cancel()

    def _run() -> None:
        asyncio.set_event_loop(loop)
        loop.run_until_complete(_main())

    threading.Thread(target=_run, name="feed", daemon=True).start()
    return loop


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_file_logging(args.log_file)
    store, repo, client, shell = build_components(args)

    if args.storage:
        try:
            repo.enable_storage()
            print(f"✓ SQLite storage initialized: {args.db}")
        except StoreError as exc:
            print(f"Failed to initialize storage: {exc}")
            logger.error("Failed to initialize storage: %s", exc)

    loop = start_feed(client, shell, args.analyze_interval)
    try:
        shell.cmdloop()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        loop.call_soon_threadsafe(client.stop)
        store.close()
    return 0


# ----------------------------------------------------------------------
# Main entry point
# ----------------------------------------------------------------------
if __name__ == "__main__":
    raise SystemExit(main())
