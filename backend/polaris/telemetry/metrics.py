from __future__ import annotations

import logging
import os
import threading
import time
from typing import Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


_logger = logging.getLogger(__name__)


# Single process-wide registry for all Prometheus metrics in this service.
_REGISTRY: CollectorRegistry = CollectorRegistry()

_BASE_LABELS_LOCK = threading.Lock()
_BASE_LABELS: Optional[Dict[str, str]] = None


def _detect_service_and_env() -> Tuple[str, str]:
    """
    Determine the base `service` and `env` labels.

    Preference order:
    1. backend.polaris.config.get_settings() if it loads.
    2. Environment variables (SERVICE_NAME / APP_ENV, ENV).
    3. Safe defaults: service="polaris-recon", env="local".
    """
    service = os.getenv("SERVICE_NAME") or "polaris-recon"
    env = os.getenv("APP_ENV") or os.getenv("ENV") or "local"

    try:
        from backend.polaris.config import get_settings

        settings = get_settings()
    except Exception:
        # Metrics must not depend on a complete configuration (e.g. no DSN in tests).
        return service, env

    if settings.service.strip():
        service = settings.service.strip()
    if settings.env.strip():
        env = settings.env.strip()
    return service, env


def get_base_labels() -> Dict[str, str]:
    """
    Return the mandatory base labels for all metrics.

    Always includes:
    - service
    - env
    """
    global _BASE_LABELS
    if _BASE_LABELS is None:
        with _BASE_LABELS_LOCK:
            if _BASE_LABELS is None:
                service, env = _detect_service_and_env()
                _BASE_LABELS = {"service": service, "env": env}
                _logger.info(
                    "Initialized Prometheus base labels",
                    extra={"service": service, "env": env},
                )
    # Return a shallow copy to prevent accidental mutation.
    return dict(_BASE_LABELS)


def get_registry() -> CollectorRegistry:
    """
    Access the shared CollectorRegistry for this process.
    """
    return _REGISTRY


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

# 1) Reconciliation run metrics

BILLING_RECONCILIATION_LAST_SUCCESS_UNIXTIME = Gauge(
    "billing_reconciliation_last_success_timestamp",
    "Unix timestamp of the last successful billing reconciliation.",
    labelnames=["service", "env", "provider"],
    registry=_REGISTRY,
)

RECONCILIATION_RUN_DURATION_SECONDS = Histogram(
    "polaris_reconciliation_run_duration_seconds",
    "Entitlement reconciliation run duration in seconds.",
    labelnames=["service", "env", "dry_run", "outcome"],
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0],
    registry=_REGISTRY,
)

RECONCILIATION_ACTIONS_TOTAL = Counter(
    "polaris_reconciliation_actions_total",
    "Reconciliation actions decided, by kind and by the pass that produced them.",
    labelnames=["service", "env", "kind", "source"],
    registry=_REGISTRY,
)

RECONCILIATION_APPLY_FAILURES_TOTAL = Counter(
    "polaris_reconciliation_apply_failures_total",
    "Reconciliation actions that failed to apply.",
    labelnames=["service", "env", "kind"],
    registry=_REGISTRY,
)

RECONCILIATION_SKIPPED_EVENTS_TOTAL = Counter(
    "polaris_reconciliation_skipped_events_total",
    "Events dropped before grouping because no user could be resolved.",
    labelnames=["service", "env"],
    registry=_REGISTRY,
)


# 2) Circuit breaker metrics

CIRCUIT_BREAKER_STATE = Gauge(
    "circuit_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open).",
    labelnames=["service", "env", "breaker_name", "target"],
    registry=_REGISTRY,
)


# ---------------------------------------------------------------------------
# Helper APIs
# ---------------------------------------------------------------------------


def _coerce_non_negative_duration(duration_seconds: float) -> float:
    if duration_seconds < 0:
        _logger.warning(
            "Received negative duration_seconds; coercing to 0.0",
            extra={"duration_seconds": duration_seconds},
        )
        return 0.0
    return duration_seconds


def observe_reconciliation_run(
    dry_run: bool,
    outcome: str,
    duration_seconds: float,
) -> None:
    """
    Record the duration of one reconciliation run.

    outcome: "success" or "failed" (the run aborted before a summary existed)
    """
    duration = _coerce_non_negative_duration(float(duration_seconds))
    labels = {
        **get_base_labels(),
        "dry_run": "true" if dry_run else "false",
        "outcome": outcome,
    }
    RECONCILIATION_RUN_DURATION_SECONDS.labels(**labels).observe(duration)


def record_reconciliation_action(kind: str, source: str) -> None:
    labels = {**get_base_labels(), "kind": kind, "source": source}
    RECONCILIATION_ACTIONS_TOTAL.labels(**labels).inc()


def record_apply_failure(kind: str) -> None:
    labels = {**get_base_labels(), "kind": kind}
    RECONCILIATION_APPLY_FAILURES_TOTAL.labels(**labels).inc()


def record_skipped_events(count: int) -> None:
    if count <= 0:
        return
    RECONCILIATION_SKIPPED_EVENTS_TOTAL.labels(**get_base_labels()).inc(count)


def set_circuit_breaker_state(
    breaker_name: str,
    target_system: str,
    state: int,
) -> None:
    """
    Set the circuit breaker state.

    state: 0 = closed, 1 = open, 2 = half_open
    """
    if state not in (0, 1, 2):
        raise ValueError(f"Invalid circuit breaker state: {state}. Expected 0, 1, or 2.")

    base_labels = get_base_labels()
    labels = {
        **base_labels,
        "breaker_name": breaker_name,
        "target": target_system,
    }
    CIRCUIT_BREAKER_STATE.labels(**labels).set(int(state))


def set_billing_reconciliation_success(
    provider: str,
    timestamp: Optional[float] = None,
) -> None:
    """
    Record the timestamp of the last successful billing reconciliation.

    provider: which ledger was reconciled, e.g. "entitlements"
    timestamp: Unix epoch seconds; defaults to time.time() if omitted.
    """
    ts = float(timestamp) if timestamp is not None else time.time()
    if ts < 0:
        _logger.warning(
            "Received negative billing reconciliation timestamp; coercing to current time",
            extra={"timestamp": timestamp},
        )
        ts = time.time()

    base_labels = get_base_labels()
    labels = {
        **base_labels,
        "provider": provider,
    }
    BILLING_RECONCILIATION_LAST_SUCCESS_UNIXTIME.labels(**labels).set(ts)


__all__ = [
    "get_registry",
    "get_base_labels",
    "observe_reconciliation_run",
    "record_reconciliation_action",
    "record_apply_failure",
    "record_skipped_events",
    "set_circuit_breaker_state",
    "set_billing_reconciliation_success",
]
