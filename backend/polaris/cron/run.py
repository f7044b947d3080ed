"""Entitlement reconciliation cron job.

This module provides the entry point for the scheduled (or manually
triggered) reconciliation run. It can be run as:

    python -m backend.polaris.cron.run
    python -m backend.polaris.cron.run reconcile --dry-run
    python -m backend.polaris.cron.run reconcile --since 2025-01-01T00:00:00Z --limit-users 50

The job:
1. Reads normalized payment events in the lookback window
2. Derives the expected entitlement per user and heals drift
3. Downgrades paid entitlements with no supporting event (orphans)
4. Writes one idempotent correction per applied action
5. Prints the run summary as JSON

Overlapping schedules are skipped through a Redis single-flight lock. If
Redis is down the run goes ahead anyway; every write is idempotent.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, Sequence

from redis.exceptions import RedisError

from backend.polaris.billing.applier import STORE_BREAKER_NAME
from backend.polaris.billing.reconciliation import run_reconciliation
from backend.polaris.billing.store import SqlReconcileStore
from backend.polaris.billing.types import ReconcileSummary
from backend.polaris.config import Settings, get_settings
from backend.polaris.utils.circuit_breaker import get_circuit_breaker
from backend.polaris.utils.db import (
    create_engine_from_settings,
    create_session_factory,
    ensure_db_connected,
)
from backend.polaris.utils.redis_client import (
    acquire_lock,
    create_redis_client,
    make_key,
    release_lock,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1


async def reconcile(
    settings: Settings,
    *,
    since_iso: Optional[str] = None,
    dry_run: bool = False,
    limit_users: Optional[int] = None,
    lookback_days: Optional[int] = None,
) -> Optional[ReconcileSummary]:
    """Run entitlement reconciliation against the configured database.

    Returns:
        The run summary, or None when another run holds the lock.
    """
    redis = create_redis_client(settings)
    lock_key = make_key(settings, "lock", "recon", "entitlements")
    token: Optional[str] = None
    try:
        try:
            token = await acquire_lock(
                redis, lock_key, ttl_seconds=settings.RECON_LOCK_TTL_SECONDS
            )
            if token is None:
                logger.info("reconciliation_skipped_locked", extra={"lock": lock_key})
                return None
        except RedisError:
            logger.warning("reconciliation_lock_unavailable", exc_info=True)

        try:
            engine = create_engine_from_settings(settings)
            try:
                await ensure_db_connected(engine)
                store = SqlReconcileStore(create_session_factory(engine))
                return await run_reconciliation(
                    store,
                    since_iso=since_iso,
                    dry_run=dry_run,
                    limit_users=(
                        limit_users if limit_users is not None else settings.RECON_LIMIT_USERS
                    ),
                    lookback_days=(
                        lookback_days
                        if lookback_days is not None
                        else settings.RECON_LOOKBACK_DAYS
                    ),
                    max_concurrency=settings.RECON_MAX_CONCURRENCY,
                    breaker=get_circuit_breaker(STORE_BREAKER_NAME),
                )
            finally:
                await engine.dispose()
        finally:
            # The lock goes even when engine setup or dispose fails.
            if token is not None:
                await release_lock(redis, lock_key, token)
    finally:
        await redis.aclose()


async def main_async(args: argparse.Namespace) -> int:
    """Async main entry point."""
    try:
        settings = get_settings()
    except RuntimeError:
        logging.basicConfig(level=logging.INFO)
        logger.exception("reconciliation_config_invalid")
        return EXIT_FAILED

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        summary = await reconcile(
            settings,
            since_iso=getattr(args, "since", None),
            dry_run=getattr(args, "dry_run", False),
            limit_users=getattr(args, "limit_users", None),
            lookback_days=getattr(args, "lookback_days", None),
        )
    except Exception:
        # Nothing was consumed; the next scheduled run retries the same window.
        logger.exception("reconciliation_aborted")
        return EXIT_FAILED

    if summary is not None:
        print(json.dumps(summary.to_dict(), indent=2, sort_keys=True))
        if summary.failed:
            logger.warning(
                "reconciliation_partial",
                extra={"failed": summary.failed, "failed_users": summary.failed_users},
            )
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Entitlement reconciliation jobs for Polaris"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Reconcile entitlements against the payment ledger",
    )
    reconcile_parser.add_argument(
        "--since",
        type=str,
        help="Start of the lookback window (ISO format); overrides --lookback-days",
    )
    reconcile_parser.add_argument(
        "--lookback-days",
        type=int,
        help="Lookback window in days (default: RECON_LOOKBACK_DAYS)",
    )
    reconcile_parser.add_argument(
        "--limit-users",
        type=int,
        help="Process at most this many users",
    )
    reconcile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report actions without changing entitlements",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point for the cron module."""
    args = build_parser().parse_args(argv)
    # No subcommand means the default nightly reconciliation.
    exit_code = asyncio.run(main_async(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
