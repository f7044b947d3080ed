"""Billing ledger models - payment events, entitlements and reconciliation audit.

``payments_events`` is the append-only normalized ledger written by the
webhook path. ``entitlements`` is the materialized per-user access record.
``reconciliation_corrections`` and ``reconciliation_runs`` are written only by
the reconciliation job.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class PaymentEvent(Base):
    """Normalized provider event (append-only ledger row).

    Attributes:
        id: Auto-incrementing primary key
        provider: Payment processor (paypal, paymongo, system_recon)
        provider_event_id: Provider event id, unique per provider
        type: Normalized event type; legacy rows may hold provider types
        status: Legacy free-text status (entitlement_granted, refund, ...)
        plan_key: Commercial plan carried by the event, if any
        user_id: Resolved user, NULL when the event could not be attributed
        created_at: Event time at the provider (ordering key)
    """
    __tablename__ = "payments_events"

    id: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=True,
    )
    provider: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
    )
    provider_event_id: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
    )
    type: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    status: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    plan_key: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False),
        nullable=True,
    )
    amount_cents: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )
    currency: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    customer_id: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    subscription_id: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    invoice_id: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    request_id: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("payments_events_created_idx", "created_at"),
        Index("payments_events_user_time_idx", "user_id", "created_at"),
        Index(
            "payments_events_provider_event_uniq",
            "provider",
            "provider_event_id",
            unique=True,
        ),
    )

    def __repr__(self) -> str:
        return f"<PaymentEvent(id={self.id}, type={self.type}, user_id={self.user_id})>"


class UserEntitlement(Base, TimestampMixin):
    """Current paid tier per user (one row per user).

    Invariant: a non-free tier implies status 'active' and a plan_key.
    """
    __tablename__ = "entitlements"

    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
    )
    tier: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        server_default="free",
    )
    plan_key: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        server_default="none",
    )
    source: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
        server_default="webhook",
    )

    __table_args__ = (
        CheckConstraint("tier in ('free', 'pro', 'vip')", name="entitlements_tier_chk"),
        CheckConstraint(
            "status in ('active', 'canceled', 'none')", name="entitlements_status_chk"
        ),
        Index("entitlements_paid_active_idx", "tier", "status"),
    )

    def __repr__(self) -> str:
        return f"<UserEntitlement(user_id={self.user_id}, tier={self.tier}, status={self.status})>"


class ReconciliationCorrection(Base):
    """Append-only audit of every reconciliation-driven mutation.

    correction_id is deterministic per action, so replays never add rows.
    """
    __tablename__ = "reconciliation_corrections"

    correction_id: Mapped[str] = mapped_column(
        Text(),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        nullable=False,
        index=True,
    )
    reason: Mapped[str] = mapped_column(
        Text(),
        nullable=False,
    )
    before: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
    )
    after: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
    )
    related_event_id: Mapped[Optional[str]] = mapped_column(
        Text(),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ReconciliationCorrection(correction_id={self.correction_id}, user_id={self.user_id})>"


class ReconciliationRun(Base):
    """One row per reconciliation run with its decided actions."""
    __tablename__ = "reconciliation_runs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    since: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    dry_run: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
    )
    users_seen: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    applied: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    failed: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    actions_json: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        server_default="'[]'::jsonb",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ReconciliationRun(id={self.id}, applied={self.applied}, failed={self.failed})>"
