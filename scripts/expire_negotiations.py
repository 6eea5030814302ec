"""Expire open negotiations whose deadline has passed.

Intended to run from cron every few minutes. Safe to re-run: negotiations
already expired are skipped, and any that change mid-sweep are reported as
conflicts and picked up next time.

Usage: .venv/bin/python scripts/expire_negotiations.py
"""

import asyncio

from app.database import connect_db, disconnect_db
from app.dependencies import get_negotiation_engine
from app.logging_config import configure_logging


async def sweep():
    configure_logging()
    await connect_db()
    engine = get_negotiation_engine()
    expired: list[str] = []
    conflicts: list[str] = []
    try:
        # Keep going while full batches are still making progress.
        while True:
            result = await engine.expire_stale_negotiations()
            expired.extend(result.expired)
            conflicts.extend(result.conflicts)
            if not result.truncated or not result.expired:
                break
    finally:
        await disconnect_db()

    print(f"Expired {len(expired)} negotiation(s), {len(conflicts)} conflict(s)")
    for negotiation_id in conflicts:
        print(f"  conflict: {negotiation_id} (changed during sweep, will retry next run)")
    if result.truncated:
        print("  more overdue negotiations are waiting; run again")


if __name__ == "__main__":
    asyncio.run(sweep())
