"""Collaborator interfaces for reconciliation and their Postgres implementation.

The engine only talks to an :class:`EventSource` and a
:class:`ReconcileStore`. :class:`SqlReconcileStore` implements both on top
of an injected async SQLAlchemy session factory.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence, runtime_checkable

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.polaris.models import (
    PaymentEvent,
    ReconciliationCorrection,
    ReconciliationRun,
    UserEntitlement,
)

from .legacy import normalize_event_type
from .types import (
    Correction,
    Entitlement,
    EntitlementStatus,
    NormalizedEvent,
    ReconcileSummary,
    Tier,
)


logger = logging.getLogger(__name__)


class EventSource(Protocol):
    async def list_events_since(self, since: datetime) -> list[NormalizedEvent]:
        """Normalized events created at or after ``since``, in any order."""
        ...


class ReconcileStore(Protocol):
    async def get_entitlements(
        self, user_ids: Sequence[str]
    ) -> dict[str, Optional[Entitlement]]:
        """Batch read; users without a row map to None (or are omitted)."""
        ...

    async def list_active_paid_entitlements(self) -> list[Entitlement]:
        ...

    async def set_entitlement(
        self,
        user_id: str,
        *,
        tier: Tier,
        plan_key: Optional[str],
        status: EntitlementStatus,
    ) -> None:
        """Idempotent grant or plan fix."""
        ...

    async def set_free(self, user_id: str) -> None:
        """Idempotent downgrade."""
        ...

    async def append_correction(self, correction: Correction) -> None:
        """Idempotent audit write; a duplicate correction_id is a no-op."""
        ...


class ReconcileBackend(EventSource, ReconcileStore, Protocol):
    """Both roles in one object, as SqlReconcileStore provides."""


@runtime_checkable
class RunRecorder(Protocol):
    async def record_run(self, summary: ReconcileSummary) -> None:
        ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def event_from_row(row: PaymentEvent) -> NormalizedEvent:
    return NormalizedEvent(
        id=row.provider_event_id,
        provider=row.provider,
        type=normalize_event_type(row.type, row.status),
        created_at=_as_utc(row.created_at),
        plan_key=row.plan_key,
        user_id=str(row.user_id) if row.user_id else None,
        amount_cents=row.amount_cents,
        currency=row.currency,
        customer_id=row.customer_id,
        subscription_id=row.subscription_id,
        invoice_id=row.invoice_id,
        request_id=row.request_id,
    )


def entitlement_from_row(row: UserEntitlement) -> Entitlement:
    try:
        tier = Tier(row.tier)
    except ValueError:
        logger.warning(
            "entitlement_unknown_tier",
            extra={"user_id": row.user_id, "tier": row.tier},
        )
        tier = Tier.FREE
    try:
        status = EntitlementStatus(row.status)
    except ValueError:
        status = EntitlementStatus.NONE
    return Entitlement(
        user_id=str(row.user_id),
        tier=tier,
        plan_key=row.plan_key,
        status=status,
        updated_at=row.updated_at,
    )


class SqlReconcileStore:
    """Event source, entitlement store and audit sink over Postgres.

    Every public method opens its own session so concurrent per-user applies
    never share a transaction.
    """

    SOURCE = "recon"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        batch_size: int = 500,
    ) -> None:
        self._session_factory = session_factory
        self._batch_size = batch_size

    async def list_events_since(self, since: datetime) -> list[NormalizedEvent]:
        stmt = (
            select(PaymentEvent)
            .where(PaymentEvent.created_at >= since)
            .order_by(PaymentEvent.created_at.asc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [event_from_row(row) for row in rows]

    async def get_entitlements(
        self, user_ids: Sequence[str]
    ) -> dict[str, Optional[Entitlement]]:
        result: dict[str, Optional[Entitlement]] = {uid: None for uid in user_ids}
        ids = list(user_ids)
        async with self._session_factory() as session:
            for start in range(0, len(ids), self._batch_size):
                chunk = ids[start:start + self._batch_size]
                stmt = select(UserEntitlement).where(UserEntitlement.user_id.in_(chunk))
                for row in (await session.execute(stmt)).scalars():
                    result[str(row.user_id)] = entitlement_from_row(row)
        return result

    async def list_active_paid_entitlements(self) -> list[Entitlement]:
        stmt = select(UserEntitlement).where(
            UserEntitlement.tier != Tier.FREE.value,
            UserEntitlement.status == EntitlementStatus.ACTIVE.value,
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [entitlement_from_row(row) for row in rows]

    async def _upsert_entitlement(
        self,
        user_id: str,
        *,
        tier: Tier,
        plan_key: Optional[str],
        status: EntitlementStatus,
    ) -> None:
        values = {
            "user_id": user_id,
            "tier": tier.value,
            "plan_key": plan_key,
            "status": status.value,
            "source": self.SOURCE,
        }
        stmt = pg_insert(UserEntitlement).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserEntitlement.user_id],
            set_={
                "tier": stmt.excluded.tier,
                "plan_key": stmt.excluded.plan_key,
                "status": stmt.excluded.status,
                "source": stmt.excluded.source,
                "updated_at": datetime.now(timezone.utc),
            },
        )
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(stmt)

    async def set_entitlement(
        self,
        user_id: str,
        *,
        tier: Tier,
        plan_key: Optional[str],
        status: EntitlementStatus,
    ) -> None:
        await self._upsert_entitlement(
            user_id, tier=tier, plan_key=plan_key, status=status
        )

    async def set_free(self, user_id: str) -> None:
        await self._upsert_entitlement(
            user_id,
            tier=Tier.FREE,
            plan_key=None,
            status=EntitlementStatus.NONE,
        )

    async def append_correction(self, correction: Correction) -> None:
        stmt = (
            pg_insert(ReconciliationCorrection)
            .values(
                correction_id=correction.correction_id,
                user_id=correction.user_id,
                reason=correction.reason,
                before=correction.before,
                after=correction.after,
                related_event_id=correction.related_event_id,
                created_at=correction.created_at,
            )
            .on_conflict_do_nothing(index_elements=[ReconciliationCorrection.correction_id])
        )
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(stmt)

    async def record_run(self, summary: ReconcileSummary) -> None:
        run = ReconciliationRun(
            since=summary.since,
            dry_run=summary.dry_run,
            users_seen=summary.users_seen,
            applied=summary.applied,
            failed=summary.failed,
            actions_json=[action.to_dict() for action in summary.actions],
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(run)
