"""Domain types for entitlement reconciliation.

These are plain in-memory shapes shared by the deriver, diff engine,
applier and orchestrator. Persistence lives in ``backend.polaris.models``.
"""
from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    """Provider-agnostic billing event types."""
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_REFUNDED = "payment_refunded"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "EventType":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


# Event types that count as evidence of a live paid entitlement.
SUPPORTING_EVENT_TYPES = frozenset(
    {
        EventType.PAYMENT_SUCCEEDED,
        EventType.SUBSCRIPTION_CREATED,
        EventType.SUBSCRIPTION_UPDATED,
    }
)


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"
    VIP = "vip"


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    NONE = "none"


class ActionKind(str, Enum):
    GRANT = "grant"
    DOWNGRADE = "downgrade"
    FIX_PLAN_KEY = "fix_plan_key"
    NOOP = "noop"


@dataclass(frozen=True)
class NormalizedEvent:
    """An immutable fact about a billing occurrence.

    Attributes:
        id: Provider event id, the idempotency key for ingestion
        provider: Payment processor that emitted the event
        type: Normalized event type
        created_at: Event timestamp; the ordering key (not ingestion time)
        plan_key: Commercial plan, or None when the event carries no plan
        user_id: Resolved user, or None when the event cannot be attributed
    """
    id: str
    provider: str
    type: EventType
    created_at: datetime
    plan_key: Optional[str] = None
    user_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    request_id: Optional[str] = None

    @property
    def resolved_user_id(self) -> Optional[str]:
        user = (self.user_id or "").strip()
        return user or None


@dataclass
class Entitlement:
    """Materialized access record for one user."""
    user_id: str
    tier: Tier = Tier.FREE
    plan_key: Optional[str] = None
    status: EntitlementStatus = EntitlementStatus.NONE
    updated_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.tier is not Tier.FREE

    def snapshot(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "plan_key": self.plan_key,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class ExpectedState:
    """What the event history says a user should have."""
    status: EntitlementStatus
    tier: Tier
    plan_key: Optional[str] = None
    event_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is EntitlementStatus.ACTIVE

    @classmethod
    def canceled(cls, event_id: Optional[str] = None) -> "ExpectedState":
        return cls(status=EntitlementStatus.CANCELED, tier=Tier.FREE, event_id=event_id)

    @classmethod
    def none(cls, event_id: Optional[str] = None) -> "ExpectedState":
        return cls(status=EntitlementStatus.NONE, tier=Tier.FREE, event_id=event_id)


def correction_id_for(kind: ActionKind, user_id: str, plan_key: Optional[str]) -> str:
    """Deterministic correction id: sha1 of ``kind:user:plan`` as unpadded base64url."""
    base = f"{kind.value}:{user_id}:{plan_key or '-'}"
    digest = hashlib.sha1(base.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class ReconcileAction:
    """A single reconciliation decision for one user."""
    kind: ActionKind
    user_id: str
    reason: str
    plan_key: Optional[str] = None
    tier: Optional[Tier] = None
    event_id: Optional[str] = None
    source: str = "events"

    @classmethod
    def grant(
        cls,
        user_id: str,
        plan_key: str,
        tier: Tier,
        reason: str,
        event_id: Optional[str] = None,
    ) -> "ReconcileAction":
        return cls(ActionKind.GRANT, user_id, reason, plan_key, tier, event_id)

    @classmethod
    def fix_plan_key(
        cls,
        user_id: str,
        plan_key: str,
        tier: Tier,
        reason: str,
        event_id: Optional[str] = None,
    ) -> "ReconcileAction":
        return cls(ActionKind.FIX_PLAN_KEY, user_id, reason, plan_key, tier, event_id)

    @classmethod
    def downgrade(
        cls,
        user_id: str,
        reason: str,
        event_id: Optional[str] = None,
        source: str = "events",
    ) -> "ReconcileAction":
        return cls(ActionKind.DOWNGRADE, user_id, reason, event_id=event_id, source=source)

    @classmethod
    def noop(cls, user_id: str, reason: str) -> "ReconcileAction":
        return cls(ActionKind.NOOP, user_id, reason)

    @property
    def is_noop(self) -> bool:
        return self.kind is ActionKind.NOOP

    @property
    def correction_id(self) -> str:
        return correction_id_for(self.kind, self.user_id, self.plan_key)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "user_id": self.user_id,
            "reason": self.reason,
            "source": self.source,
        }
        if self.plan_key is not None:
            data["plan_key"] = self.plan_key
        if self.tier is not None:
            data["tier"] = self.tier.value
        if self.event_id is not None:
            data["event_id"] = self.event_id
        return data


@dataclass(frozen=True)
class Correction:
    """Append-only audit record of a reconciliation-driven mutation."""
    correction_id: str
    user_id: str
    reason: str
    created_at: datetime
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    related_event_id: Optional[str] = None


@dataclass
class ReconcileSummary:
    """Outcome of one reconciliation run."""
    since: datetime
    dry_run: bool = False
    users_seen: int = 0
    actions: list[ReconcileAction] = field(default_factory=list)
    applied: int = 0
    failed: int = 0
    skipped_events: int = 0
    orphans: int = 0
    failed_users: list[str] = field(default_factory=list)

    @property
    def since_iso(self) -> str:
        return self.since.isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "since_iso": self.since_iso,
            "dry_run": self.dry_run,
            "users_seen": self.users_seen,
            "actions": [action.to_dict() for action in self.actions],
            "applied": self.applied,
            "failed": self.failed,
            "skipped_events": self.skipped_events,
            "orphans": self.orphans,
            "failed_users": list(self.failed_users),
        }
