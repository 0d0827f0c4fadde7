#!/usr/bin/env python3
"""
Queue worker — runs the ingestion and/or delivery consumers outside the API.

Usage:
    python scripts/run_worker.py --role ingestion
    python scripts/run_worker.py --role delivery --name delivery-1
    python scripts/run_worker.py --role all

Scale horizontally by starting more processes with distinct --name values;
the Redis consumer group spreads jobs across them.
"""
import argparse
import asyncio
import os
import signal
import socket
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

logger = structlog.get_logger()

ROLES = ("ingestion", "delivery", "all")


@retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, max=30), reraise=True)
async def _connect(runtime, use_sql: bool):
    if use_sql:
        from database.session import init_db
        await init_db()
    await runtime.queue.connect()


async def run(role: str, name: str):
    from config.settings import load_settings
    from core.runtime import build_runtime

    settings = load_settings()
    runtime = build_runtime(settings)
    use_sql = settings.database.store_backend == "sql"
    await _connect(runtime, use_sql)

    if name:
        runtime.ingestion_consumer.consumer_name = f"{name}-in"
        runtime.delivery_consumer.consumer_name = f"{name}-out"

    if role in ("ingestion", "all"):
        await runtime.ingestion_consumer.start_background()
    if role in ("delivery", "all"):
        await runtime.delivery_consumer.start_background()
    await runtime.promoter.start_background()
    logger.info("worker_started", role=role, name=name or None)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass
    await stop.wait()

    await runtime.shutdown()
    if use_sql:
        from database.session import close_db
        await close_db()
    logger.info("worker_stopped", role=role)


def main():
    parser = argparse.ArgumentParser(description="FlowDesk queue worker")
    parser.add_argument("--role", choices=ROLES, default="all", help="Which consumers to run")
    parser.add_argument("--name", default=socket.gethostname(), help="Consumer name prefix")
    args = parser.parse_args()

    asyncio.run(run(args.role, args.name))


if __name__ == "__main__":
    main()
