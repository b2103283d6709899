#!/usr/bin/env python3
"""
SlimCal Sync - command line interface.

Runs the sync engine once against the local store, for scripting and
troubleshooting.

Usage:
    python -m slimcal_sync.main --status
    python -m slimcal_sync.main --user-id UID --bootstrap
    python -m slimcal_sync.main --user-id UID --flush --hydrate
    python -m slimcal_sync.main --offline-demo
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import get_settings
from .connectivity import ConnectivityMonitor
from .engine import SyncEngine
from .models import AuthUser, local_day_iso
from .remote import InMemoryRemoteStore, RestRemoteStore
from .storage import MemoryStorage, SQLiteStorage

logger = logging.getLogger("slimcal_sync")


def _print_status(engine: SyncEngine) -> None:
    status = engine.get_sync_status()
    print("\n=== Sync Status ===")
    print(f"Device: {status['client_id']}")
    print(f"User: {status['user_id'] or 'anonymous'}")
    print(f"Online: {status['online']}")
    print(f"Migrated: {status['migrated']}")
    print(f"Queue: {status['queue_stats']}")
    if "rate_limit_remaining" in status:
        print(f"Rate limits: {status['rate_limit_remaining']}")


async def run_offline_demo(user: AuthUser) -> None:
    """Log a meal while offline, reconnect, and watch it reconcile."""
    connectivity = ConnectivityMonitor(online=False)
    engine = SyncEngine(MemoryStorage(), InMemoryRemoteStore(), connectivity=connectivity)
    engine.events.subscribe(
        lambda e: print(f"  event {e.domain.value}: {e.day} consumed={e.consumed} burned={e.burned}")
    )

    await engine.start(user)
    print("Offline: logging a 450 kcal meal")
    result = await engine.save_meal_local_first({"name": "Pasta", "calories": 450})
    print(f"  queued={result.queued} local_only={result.local_only} pending={len(engine.queue)}")

    print("Back online")
    await connectivity.set_online(True)

    totals = engine.cache.get_day_totals(user.id, local_day_iso())
    print(f"Today: consumed={totals.consumed:.0f} burned={totals.burned:.0f} net={totals.net:.0f}")
    _print_status(engine)
    await engine.stop()


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    user: Optional[AuthUser] = AuthUser(id=args.user_id, email=args.email) if args.user_id else None

    if args.offline_demo:
        await run_offline_demo(user or AuthUser(id="demo-user"))
        return 0

    db_path = args.db or settings.cache_db_path
    engine = SyncEngine(SQLiteStorage(db_path), RestRemoteStore(settings), settings=settings)
    engine.set_user(user)

    try:
        if args.bootstrap:
            report = await engine.start(user)
            print("\n=== Bootstrap ===")
            for stage, outcome in report.items():
                print(f"  {stage}: {outcome}")

        if args.flush:
            result = await engine.flush_pending()
            print(
                f"\nFlush result: {result.flushed} flushed, {result.failed} failed, "
                f"{result.remaining} remaining"
            )

        if args.hydrate:
            today = await engine.hydrate_today_totals_from_cloud()
            workouts = await engine.hydrate_recent_workouts_to_local()
            meals = await engine.hydrate_recent_meals_to_local()
            print(f"\nHydrate: today={today.totals} workouts+{workouts.merged} meals+{meals.merged}")
            if not today.ok:
                print(f"  today's totals not refreshed: {today.reason}")

        if args.status:
            _print_status(engine)
    finally:
        await engine.stop()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="SlimCal offline-first sync engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--user-id", help="Signed-in user id (omit for local-only)")
    parser.add_argument("--email", help="Signed-in user email")
    parser.add_argument("--status", action="store_true", help="Show sync status")
    parser.add_argument("--flush", action="store_true", help="Flush the pending operation queue")
    parser.add_argument("--hydrate", action="store_true", help="Pull recent cloud data into the local cache")
    parser.add_argument("--bootstrap", action="store_true", help="Run migrate, flush and hydrate in order")
    parser.add_argument("--offline-demo", action="store_true", help="Run an in-memory offline/online walkthrough")
    parser.add_argument("--db", type=Path, default=None, help="Path to the local store database")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
