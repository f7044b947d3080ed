"""SQLAlchemy ORM models for the Polaris billing ledger.

This module exports all model classes for use throughout the application.
"""
from .base import Base, TimestampMixin
from .billing import (
    PaymentEvent,
    ReconciliationCorrection,
    ReconciliationRun,
    UserEntitlement,
)

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Billing
    "PaymentEvent",
    "ReconciliationCorrection",
    "ReconciliationRun",
    "UserEntitlement",
]
