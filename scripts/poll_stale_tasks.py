#!/usr/bin/env python3
"""Reconcile generation tasks that have been pending too long.

Finds ``images`` rows still pending/processing after
``STALE_TASK_AFTER_SECONDS``, restores any missing task metadata, and polls
the provider for each one.  Intended to run from cron every few minutes.

Usage:
    DATABASE_URL=postgresql+asyncpg://... REDIS_URL=redis://... \\
        python scripts/poll_stale_tasks.py

Exit codes:
    0 -- every stale task was polled
    1 -- one or more tasks could not be reconciled
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone

from redis.asyncio import Redis

from imagegen.config import settings
from imagegen.database import SessionLocal, engine
from imagegen.integrations.asset_storage import AssetDownloader, LocalAssetStorage
from imagegen.integrations.kie_client import KieClient
from imagegen.services.stale_sweeper import StaleTaskSweeper
from imagegen.services.task_lifecycle import PollReconciler, TaskLifecycle
from imagegen.services.task_store import RedisTaskMetadataStore


async def main() -> int:
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    provider = KieClient()
    downloader = AssetDownloader()
    store = RedisTaskMetadataStore(redis)
    lifecycle = TaskLifecycle(store=store, downloader=downloader, storage=LocalAssetStorage())
    sweeper = StaleTaskSweeper(store, PollReconciler(provider, lifecycle))

    try:
        async with SessionLocal() as db:
            report = await sweeper.sweep(db)
    finally:
        await provider.aclose()
        await downloader.aclose()
        await redis.aclose()
        await engine.dispose()

    json.dump(
        {"timestamp": datetime.now(timezone.utc).isoformat(), **asdict(report)},
        sys.stdout,
        indent=2,
    )
    sys.stdout.write("\n")
    return 1 if report.errors else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
