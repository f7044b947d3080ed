"""Entitlement reconciliation run.

Compares the normalized payment ledger with current entitlements, then
proposes and applies fixes. The algorithm is intentionally conservative:

- trusts the latest subscription or payment success event per user
- downgrades on cancellation, or on a refund with no newer success
- never grants without a plan key
- downgrades paid entitlements with no supporting event in the window
- writes one deterministic correction per applied action

Runs are safe to repeat: nothing is consumed, and every write is idempotent.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Sequence

from backend.polaris.telemetry.metrics import (
    observe_reconciliation_run,
    record_apply_failure,
    record_reconciliation_action,
    record_skipped_events,
    set_billing_reconciliation_success,
)
from backend.polaris.utils.circuit_breaker import CircuitBreaker

from .applier import ActionApplier
from .deriver import derive_expected_state
from .diff import diff_state
from .orphans import find_orphans
from .store import ReconcileBackend, RunRecorder
from .types import Entitlement, NormalizedEvent, ReconcileAction, ReconcileSummary


logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 120
DEFAULT_MAX_CONCURRENCY = 8
METRICS_PROVIDER = "entitlements"


class ReconciliationError(ValueError):
    """Raised for invalid run options."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_since(since_iso: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    text = (since_iso or "").strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ReconciliationError(f"invalid since_iso: {since_iso!r}") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def group_by_user(
    events: Iterable[NormalizedEvent],
) -> tuple[dict[str, list[NormalizedEvent]], int]:
    """Group events by resolved user. Returns (groups, events_without_user)."""
    groups: dict[str, list[NormalizedEvent]] = defaultdict(list)
    skipped = 0
    for event in events:
        user_id = event.resolved_user_id
        if user_id is None:
            skipped += 1
            continue
        groups[user_id].append(event)
    return dict(groups), skipped


def plan_user_actions(
    grouped: dict[str, list[NormalizedEvent]],
    entitlements: dict[str, Optional[Entitlement]],
) -> list[ReconcileAction]:
    """Derive and diff every user in ``grouped``; pure, no I/O."""
    actions = []
    for user_id in grouped:
        expected = derive_expected_state(grouped[user_id])
        actions.append(diff_state(user_id, entitlements.get(user_id), expected))
    return actions


async def _apply_all(
    applier: ActionApplier,
    actions: Sequence[ReconcileAction],
    current: dict[str, Optional[Entitlement]],
    summary: ReconcileSummary,
    max_concurrency: int,
) -> None:
    semaphore = asyncio.Semaphore(max_concurrency)

    async def run_one(action: ReconcileAction) -> None:
        async with semaphore:
            try:
                written = await applier.apply(action, current.get(action.user_id))
            except Exception:
                # Retried automatically on the next scheduled run.
                logger.exception(
                    "reconciliation_apply_failed",
                    extra={"user_id": action.user_id, "kind": action.kind.value},
                )
                record_apply_failure(action.kind.value)
                summary.failed += 1
                summary.failed_users.append(action.user_id)
                return
            if written:
                summary.applied += 1

    await asyncio.gather(*(run_one(a) for a in actions if not a.is_noop))
    summary.failed_users.sort()


async def _record_run(store: Any, summary: ReconcileSummary) -> None:
    if not isinstance(store, RunRecorder):
        return
    try:
        await store.record_run(summary)
    except Exception:
        logger.exception("reconciliation_record_run_failed")


async def run_reconciliation(
    store: ReconcileBackend,
    *,
    since_iso: Optional[str] = None,
    dry_run: bool = False,
    limit_users: Optional[int] = None,
    lookback_days: Optional[int] = None,
    max_concurrency: Optional[int] = None,
    breaker: Optional[CircuitBreaker[Any]] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> ReconcileSummary:
    """Run one reconciliation pass over ``store``.

    Args:
        store: Event source and entitlement store (see ``billing.store``)
        since_iso: Start of the lookback window; defaults to now - lookback_days
        dry_run: Compute actions without writing anything but the run record
        limit_users: Cap on users acted upon (per-user pass first, then orphans)
        lookback_days: Window length when since_iso is not given
        max_concurrency: Upper bound on concurrent per-user applies
        breaker: Circuit breaker wrapped around entitlement store writes

    Returns:
        ReconcileSummary with every decided action and applied/failed counts.

    Raises:
        ReconciliationError: invalid options
        Exception: whatever the event source raised; the run is safe to retry
    """
    if limit_users is not None and limit_users < 0:
        raise ReconciliationError("limit_users must be >= 0")
    concurrency = (
        max_concurrency if max_concurrency is not None else DEFAULT_MAX_CONCURRENCY
    )
    if concurrency < 1:
        raise ReconciliationError("max_concurrency must be >= 1")

    if since_iso:
        since = parse_since(since_iso)
    else:
        days = lookback_days if lookback_days is not None else DEFAULT_LOOKBACK_DAYS
        if days < 0:
            raise ReconciliationError("lookback_days must be >= 0")
        since = clock() - timedelta(days=days)

    logger.info(
        "reconciliation_started",
        extra={"since": since.isoformat(), "dry_run": dry_run, "limit_users": limit_users},
    )
    start = time.perf_counter()
    summary = ReconcileSummary(since=since, dry_run=dry_run)

    try:
        events = await store.list_events_since(since)

        grouped, skipped = group_by_user(events)
        summary.skipped_events = skipped
        record_skipped_events(skipped)
        if skipped:
            logger.debug("reconciliation_events_without_user", extra={"count": skipped})

        user_ids = sorted(grouped)
        if limit_users is not None:
            user_ids = user_ids[:limit_users]
        grouped = {uid: grouped[uid] for uid in user_ids}
        summary.users_seen = len(user_ids)

        current = dict(await store.get_entitlements(user_ids)) if user_ids else {}
        user_actions = plan_user_actions(grouped, current)

        paid = await store.list_active_paid_entitlements()
        orphan_actions = find_orphans(paid, events, skip_user_ids=user_ids)
        if limit_users is not None:
            orphan_actions = orphan_actions[: max(0, limit_users - len(user_ids))]
        for ent in paid:
            current.setdefault(ent.user_id, ent)
        summary.orphans = len(orphan_actions)

        summary.actions = user_actions + orphan_actions
        for action in summary.actions:
            record_reconciliation_action(action.kind.value, action.source)

        if not dry_run:
            applier = ActionApplier(store, breaker=breaker)
            await _apply_all(applier, summary.actions, current, summary, concurrency)
    except Exception:
        logger.exception("reconciliation_failed", extra={"since": since.isoformat()})
        observe_reconciliation_run(dry_run, "failed", time.perf_counter() - start)
        raise

    await _record_run(store, summary)

    duration = time.perf_counter() - start
    observe_reconciliation_run(dry_run, "success", duration)
    if summary.failed == 0:
        # Partial runs must not advance the last-success timestamp.
        set_billing_reconciliation_success(provider=METRICS_PROVIDER)
    logger.info(
        "reconciliation_completed",
        extra={
            "users_seen": summary.users_seen,
            "actions": len(summary.actions),
            "orphans": summary.orphans,
            "applied": summary.applied,
            "failed": summary.failed,
            "duration_seconds": duration,
        },
    )
    return summary
