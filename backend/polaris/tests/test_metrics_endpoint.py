from __future__ import annotations

from fastapi.testclient import TestClient

from backend.polaris.main import app
from backend.polaris.telemetry.metrics import (
    record_reconciliation_action,
    set_billing_reconciliation_success,
    set_circuit_breaker_state,
)


client = TestClient(app)


def test_metrics_endpoint_exposes_reconciliation_metrics() -> None:
    record_reconciliation_action("grant", "events")
    set_circuit_breaker_state("entitlement_store", "entitlement_store", 0)
    set_billing_reconciliation_success(provider="entitlements")

    response = client.get("/metrics")
    assert response.status_code == 200
    content_type = response.headers.get("content-type", "")
    assert content_type.startswith("text/plain")

    body = response.text
    assert body

    # Run metrics
    assert "polaris_reconciliation_run_duration_seconds" in body
    assert "polaris_reconciliation_actions_total" in body
    assert "polaris_reconciliation_apply_failures_total" in body
    assert "polaris_reconciliation_skipped_events_total" in body

    # Circuit breaker and billing metrics
    assert "circuit_state" in body
    assert "billing_reconciliation_last_success_timestamp" in body


def test_healthz() -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
