"""Entitlement reconciliation.

Heals drift between the normalized payment ledger and the materialized
per-user entitlement record, leaving one audit correction per change.
"""
from .applier import ActionApplier, ApplyError
from .deriver import derive_expected_state
from .diff import diff_state
from .orphans import find_orphans
from .reconciliation import ReconciliationError, run_reconciliation
from .store import EventSource, ReconcileBackend, ReconcileStore, SqlReconcileStore
from .types import (
    ActionKind,
    Correction,
    Entitlement,
    EntitlementStatus,
    EventType,
    ExpectedState,
    NormalizedEvent,
    ReconcileAction,
    ReconcileSummary,
    Tier,
)

__all__ = [
    "ActionApplier",
    "ActionKind",
    "ApplyError",
    "Correction",
    "Entitlement",
    "EntitlementStatus",
    "EventSource",
    "EventType",
    "ExpectedState",
    "NormalizedEvent",
    "ReconcileAction",
    "ReconcileBackend",
    "ReconcileStore",
    "ReconcileSummary",
    "ReconciliationError",
    "SqlReconcileStore",
    "Tier",
    "derive_expected_state",
    "diff_state",
    "find_orphans",
    "run_reconciliation",
]
