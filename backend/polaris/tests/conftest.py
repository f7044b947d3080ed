from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Iterable, Optional, Sequence

import pytest

from backend.polaris.billing.types import (
    Correction,
    Entitlement,
    EntitlementStatus,
    EventType,
    NormalizedEvent,
    ReconcileSummary,
    Tier,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

_ids = count(1)


def at(step: int) -> datetime:
    """A timestamp inside the default lookback window; larger steps are newer."""
    return NOW - timedelta(days=1) + timedelta(minutes=step)


def event(
    type_: EventType | str,
    step: int,
    *,
    plan_key: Optional[str] = None,
    user_id: Optional[str] = "u1",
    event_id: Optional[str] = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        id=event_id or f"evt_{next(_ids)}",
        provider="paypal",
        type=EventType(type_),
        created_at=at(step),
        plan_key=plan_key,
        user_id=user_id,
    )


def paid(user_id: str, tier: Tier, plan_key: str) -> Entitlement:
    return Entitlement(
        user_id=user_id,
        tier=tier,
        plan_key=plan_key,
        status=EntitlementStatus.ACTIVE,
    )


def free(user_id: str) -> Entitlement:
    return Entitlement(user_id=user_id)


class StoreUnavailable(ConnectionError):
    pass


class FakeStore:
    """In-memory event source, entitlement store and audit sink."""

    def __init__(
        self,
        events: Iterable[NormalizedEvent] = (),
        entitlements: Iterable[Entitlement] = (),
    ) -> None:
        self.events = list(events)
        self.entitlements = {ent.user_id: ent for ent in entitlements}
        self.corrections: dict[str, Correction] = {}
        self.correction_attempts = 0
        self.mutations: list[tuple[str, str]] = []
        self.runs: list[ReconcileSummary] = []
        self.failing_users: set[str] = set()
        self.events_error: Optional[Exception] = None

    async def list_events_since(self, since: datetime) -> list[NormalizedEvent]:
        if self.events_error is not None:
            raise self.events_error
        return [e for e in self.events if e.created_at >= since]

    async def get_entitlements(
        self, user_ids: Sequence[str]
    ) -> dict[str, Optional[Entitlement]]:
        out: dict[str, Optional[Entitlement]] = {}
        for user_id in user_ids:
            ent = self.entitlements.get(user_id)
            out[user_id] = dataclasses.replace(ent) if ent is not None else None
        return out

    async def list_active_paid_entitlements(self) -> list[Entitlement]:
        return [
            dataclasses.replace(ent)
            for ent in self.entitlements.values()
            if ent.is_paid and ent.status is EntitlementStatus.ACTIVE
        ]

    def _check(self, user_id: str) -> None:
        if user_id in self.failing_users:
            raise StoreUnavailable(f"store unavailable for {user_id}")

    async def set_entitlement(
        self,
        user_id: str,
        *,
        tier: Tier,
        plan_key: Optional[str],
        status: EntitlementStatus,
    ) -> None:
        self._check(user_id)
        self.mutations.append(("set_entitlement", user_id))
        self.entitlements[user_id] = Entitlement(
            user_id=user_id, tier=tier, plan_key=plan_key, status=status, updated_at=NOW
        )

    async def set_free(self, user_id: str) -> None:
        self._check(user_id)
        self.mutations.append(("set_free", user_id))
        self.entitlements[user_id] = Entitlement(user_id=user_id, updated_at=NOW)

    async def append_correction(self, correction: Correction) -> None:
        self.correction_attempts += 1
        self.corrections.setdefault(correction.correction_id, correction)

    async def record_run(self, summary: ReconcileSummary) -> None:
        self.runs.append(summary)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()
