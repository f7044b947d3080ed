from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from backend.polaris.billing.reconciliation import (
    ReconciliationError,
    parse_since,
    run_reconciliation,
)
from backend.polaris.billing.types import ActionKind, EntitlementStatus, EventType, Tier
from backend.polaris.telemetry.metrics import get_base_labels, get_registry
from backend.polaris.utils.circuit_breaker import CircuitBreaker

from conftest import NOW, FakeStore, event, free, paid


def _run(store: FakeStore, **kwargs):
    return asyncio.run(run_reconciliation(store, clock=lambda: NOW, **kwargs))


def _last_success():
    return get_registry().get_sample_value(
        "billing_reconciliation_last_success_timestamp",
        {**get_base_labels(), "provider": "entitlements"},
    )


def test_grants_paid_plan_to_free_user() -> None:
    store = FakeStore(
        events=[event(EventType.PAYMENT_SUCCEEDED, 1, plan_key="vip_monthly", user_id="u1")],
        entitlements=[free("u1")],
    )

    summary = _run(store)

    assert summary.users_seen == 1
    assert [a.kind for a in summary.actions] == [ActionKind.GRANT]
    grant = summary.actions[0]
    assert (grant.user_id, grant.plan_key, grant.tier) == ("u1", "vip_monthly", Tier.VIP)
    assert summary.applied == 1
    assert summary.failed == 0
    assert store.entitlements["u1"].tier is Tier.VIP
    assert store.entitlements["u1"].status is EntitlementStatus.ACTIVE
    assert len(store.corrections) == 1
    assert store.runs == [summary]


def test_subscription_created_grants_vip_to_free_user() -> None:
    store = FakeStore(
        events=[event(EventType.SUBSCRIPTION_CREATED, 1, plan_key="vip_monthly", user_id="u1")],
        entitlements=[free("u1")],
    )

    summary = _run(store)

    assert [(a.kind, a.user_id, a.plan_key) for a in summary.actions] == [
        (ActionKind.GRANT, "u1", "vip_monthly")
    ]
    assert summary.applied == 1
    ent = store.entitlements["u1"]
    assert ent.tier is Tier.VIP
    assert ent.plan_key == "vip_monthly"
    assert ent.status is EntitlementStatus.ACTIVE
    assert len(store.corrections) == 1


def test_second_run_is_a_noop() -> None:
    store = FakeStore(
        events=[
            event(EventType.SUBSCRIPTION_CREATED, 1, plan_key="pro_monthly", user_id="a"),
            event(EventType.PAYMENT_SUCCEEDED, 2, plan_key="vip_yearly", user_id="b"),
            event(EventType.SUBSCRIPTION_CANCELED, 3, user_id="c"),
        ],
        entitlements=[
            free("a"),
            paid("b", Tier.PRO, "pro_monthly"),
            paid("c", Tier.VIP, "vip_monthly"),
            paid("d", Tier.PRO, "pro_yearly"),
        ],
    )

    first = _run(store)
    assert first.applied == 4
    corrections = dict(store.corrections)
    mutations = list(store.mutations)

    second = _run(store)

    assert all(action.is_noop for action in second.actions)
    assert second.applied == 0
    assert second.orphans == 0
    assert store.corrections == corrections
    assert store.mutations == mutations


def test_orphan_paid_entitlement_is_downgraded_once() -> None:
    store = FakeStore(entitlements=[paid("u9", Tier.VIP, "vip_monthly")])

    summary = _run(store)

    downgrades = [a for a in summary.actions if a.kind is ActionKind.DOWNGRADE]
    assert len(downgrades) == 1
    assert downgrades[0].user_id == "u9"
    assert downgrades[0].source == "orphan"
    assert summary.orphans == 1
    assert summary.users_seen == 0
    assert store.entitlements["u9"].tier is Tier.FREE
    correction = next(iter(store.corrections.values()))
    assert correction.before == {"tier": "vip", "plan_key": "vip_monthly", "status": "active"}


def test_support_older_than_the_window_does_not_count() -> None:
    old_success = event(
        EventType.PAYMENT_SUCCEEDED,
        -200 * 24 * 60,
        plan_key="pro_monthly",
        user_id="u5",
    )
    store = FakeStore(events=[old_success], entitlements=[paid("u5", Tier.PRO, "pro_monthly")])

    summary = _run(store)

    assert summary.orphans == 1
    assert store.entitlements["u5"].tier is Tier.FREE


def test_user_downgraded_by_events_is_not_also_an_orphan() -> None:
    store = FakeStore(
        events=[event(EventType.PAYMENT_REFUNDED, 1, user_id="u2")],
        entitlements=[paid("u2", Tier.PRO, "pro_monthly")],
    )

    summary = _run(store)

    assert [(a.kind, a.source) for a in summary.actions] == [(ActionKind.DOWNGRADE, "events")]
    assert summary.orphans == 0
    assert len(store.corrections) == 1


def test_failure_for_one_user_does_not_stop_the_others() -> None:
    store = FakeStore(
        events=[
            event(EventType.PAYMENT_SUCCEEDED, 1, plan_key="vip_monthly", user_id=uid)
            for uid in ("a", "b", "c")
        ],
        entitlements=[free("a"), free("b"), free("c")],
    )
    store.failing_users.add("b")

    summary = _run(store)

    assert summary.applied == 2
    assert summary.failed == 1
    assert summary.failed_users == ["b"]
    assert len(summary.actions) == 3
    assert store.entitlements["a"].tier is Tier.VIP
    assert store.entitlements["b"].tier is Tier.FREE
    assert store.entitlements["c"].tier is Tier.VIP


def test_last_success_timestamp_only_moves_on_clean_runs() -> None:
    store = FakeStore(
        events=[event(EventType.PAYMENT_SUCCEEDED, 1, plan_key="pro_monthly", user_id="x")],
        entitlements=[free("x")],
    )
    store.failing_users.add("x")
    before = _last_success()

    assert _run(store).failed == 1
    assert _last_success() == before

    store.failing_users.clear()
    assert _run(store).failed == 0
    assert _last_success() is not None


def test_open_breaker_fails_remaining_users_fast() -> None:
    breaker = CircuitBreaker(
        "entitlement_store_recon_test",
        failure_threshold=1,
        rolling_window_seconds=60,
        recovery_timeout_seconds=300,
        success_threshold=1,
        clock=lambda: 5.0,
    )
    store = FakeStore(
        events=[
            event(EventType.PAYMENT_SUCCEEDED, 1, plan_key="pro_monthly", user_id=uid)
            for uid in ("a", "b", "c")
        ],
    )
    store.failing_users.add("a")

    summary = _run(store, breaker=breaker, max_concurrency=1)

    assert summary.failed == 3
    assert summary.failed_users == ["a", "b", "c"]
    assert store.mutations == []


def test_dry_run_writes_nothing() -> None:
    store = FakeStore(
        events=[event(EventType.SUBSCRIPTION_UPDATED, 1, plan_key="pro_yearly", user_id="u1")],
        entitlements=[free("u1"), paid("u9", Tier.VIP, "vip_monthly")],
    )

    summary = _run(store, dry_run=True)

    assert summary.dry_run is True
    assert {a.kind for a in summary.actions} == {ActionKind.GRANT, ActionKind.DOWNGRADE}
    assert summary.applied == 0
    assert store.mutations == []
    assert store.corrections == {}
    assert store.runs[0].dry_run is True


def test_limit_users_caps_both_passes() -> None:
    events = [
        event(EventType.PAYMENT_SUCCEEDED, 1, plan_key="pro_monthly", user_id=uid)
        for uid in ("u3", "u1", "u2")
    ]
    orphan = paid("u9", Tier.VIP, "vip_monthly")

    summary = _run(FakeStore(events=events, entitlements=[orphan]), limit_users=2)
    assert summary.users_seen == 2
    assert [a.user_id for a in summary.actions] == ["u1", "u2"]
    assert summary.orphans == 0

    summary = _run(FakeStore(events=events[:1], entitlements=[orphan]), limit_users=2)
    assert [a.user_id for a in summary.actions] == ["u3", "u9"]
    assert summary.orphans == 1


def test_events_without_user_are_skipped() -> None:
    store = FakeStore(
        events=[
            event(EventType.PAYMENT_SUCCEEDED, 1, plan_key="pro_monthly", user_id=None),
            event(EventType.PAYMENT_SUCCEEDED, 2, plan_key="pro_monthly", user_id="   "),
            event(EventType.PAYMENT_SUCCEEDED, 3, plan_key="pro_monthly", user_id="u1"),
        ]
    )

    summary = _run(store)

    assert summary.skipped_events == 2
    assert summary.users_seen == 1


def test_since_iso_bounds_the_window() -> None:
    store = FakeStore(
        events=[
            event(EventType.PAYMENT_SUCCEEDED, -3 * 24 * 60, plan_key="pro_monthly", user_id="old"),
            event(EventType.PAYMENT_SUCCEEDED, 1, plan_key="pro_monthly", user_id="new"),
        ]
    )
    since = NOW - timedelta(days=2)

    summary = _run(store, since_iso=since.isoformat().replace("+00:00", "Z"))

    assert summary.since == since
    assert [a.user_id for a in summary.actions] == ["new"]


def test_event_source_failure_propagates() -> None:
    store = FakeStore()
    store.events_error = ConnectionError("ledger unavailable")

    with pytest.raises(ConnectionError):
        _run(store)
    assert store.runs == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit_users": -1},
        {"max_concurrency": 0},
        {"max_concurrency": -2},
        {"lookback_days": -1},
        {"since_iso": "yesterday"},
    ],
)
def test_invalid_options_are_rejected(kwargs) -> None:
    with pytest.raises(ReconciliationError):
        _run(FakeStore(), **kwargs)


def test_parse_since_treats_naive_values_as_utc() -> None:
    assert parse_since("2026-02-01T00:00:00") == parse_since("2026-02-01T00:00:00Z")
    assert parse_since("2026-02-01T02:00:00+02:00").isoformat() == "2026-02-01T00:00:00+00:00"


def test_summary_serializes_actions() -> None:
    store = FakeStore(
        events=[event(EventType.PAYMENT_SUCCEEDED, 1, plan_key="pro_monthly", user_id="u1")]
    )
    data = _run(store).to_dict()
    assert data["users_seen"] == 1
    assert data["actions"][0]["kind"] == "grant"
    assert data["actions"][0]["plan_key"] == "pro_monthly"
    assert data["since_iso"] == (NOW - timedelta(days=120)).isoformat()
