#!/usr/bin/env python3
"""Nightly reconciliation report.

Checks that every cached balance equals the sum of the user's ledger rows,
and lists unfinished ``images`` rows whose task metadata is already
terminal or has gone missing.  Prints a JSON report to stdout.

Usage:
    DATABASE_URL=postgresql+asyncpg://... REDIS_URL=redis://... \\
        python scripts/reconcile_credits.py

Set ``RECONCILE_SKIP_TASKS=1`` to run the balance check without Redis.

Exit codes:
    0 -- no drift found
    1 -- one or more balances or task rows disagree
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from imagegen.config import settings
from imagegen.database import SessionLocal, engine
from imagegen.services.reconciliation import find_balance_drift, find_status_drift
from imagegen.services.task_store import RedisTaskMetadataStore, TaskMetadataStore


async def build_report(db: AsyncSession, store: TaskMetadataStore | None) -> dict:
    balances = await find_balance_drift(db)
    tasks = await find_status_drift(db, store) if store is not None else []
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "balance_discrepancies": [d.to_dict() for d in balances],
        "task_discrepancies": [d.to_dict() for d in tasks],
        "tasks_checked": store is not None,
        "total_discrepancies": len(balances) + len(tasks),
    }


async def main() -> int:
    redis = None
    if os.environ.get("RECONCILE_SKIP_TASKS") != "1":
        redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    store = RedisTaskMetadataStore(redis) if redis is not None else None

    try:
        async with SessionLocal() as db:
            report = await build_report(db, store)
    finally:
        if redis is not None:
            await redis.aclose()
        await engine.dispose()

    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 1 if report["total_discrepancies"] else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
