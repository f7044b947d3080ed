from __future__ import annotations

from backend.polaris.billing.orphans import find_orphans, supported_user_ids
from backend.polaris.billing.types import (
    ActionKind,
    Entitlement,
    EntitlementStatus,
    EventType,
    Tier,
)

from conftest import event, free, paid


def test_supported_users_only_count_success_and_subscription_events() -> None:
    events = [
        event(EventType.PAYMENT_SUCCEEDED, 1, user_id="a"),
        event(EventType.SUBSCRIPTION_UPDATED, 1, user_id="b"),
        event(EventType.PAYMENT_REFUNDED, 1, user_id="c"),
        event(EventType.SUBSCRIPTION_CANCELED, 1, user_id="d"),
        event(EventType.PAYMENT_SUCCEEDED, 1, user_id=None),
    ]
    assert supported_user_ids(events) == {"a", "b"}


def test_paid_entitlement_without_support_is_downgraded() -> None:
    actions = find_orphans([paid("u9", Tier.VIP, "vip_monthly")], [])
    assert len(actions) == 1
    action = actions[0]
    assert action.kind is ActionKind.DOWNGRADE
    assert action.user_id == "u9"
    assert action.source == "orphan"
    assert action.reason == "orphan vip entitlement with no supporting event"


def test_supported_free_and_inactive_entitlements_are_left_alone() -> None:
    entitlements = [
        paid("a", Tier.PRO, "pro_monthly"),
        free("b"),
        Entitlement(user_id="c", tier=Tier.PRO, status=EntitlementStatus.CANCELED),
    ]
    events = [event(EventType.PAYMENT_SUCCEEDED, 1, user_id="a", plan_key="pro_monthly")]
    assert find_orphans(entitlements, events) == []


def test_refund_alone_is_not_support() -> None:
    events = [event(EventType.PAYMENT_REFUNDED, 1, user_id="a")]
    actions = find_orphans([paid("a", Tier.PRO, "pro_monthly")], events)
    assert [a.user_id for a in actions] == ["a"]


def test_skipped_and_duplicate_users() -> None:
    entitlements = [
        paid("a", Tier.PRO, "pro_monthly"),
        paid("a", Tier.PRO, "pro_monthly"),
        paid("b", Tier.VIP, "vip_yearly"),
    ]
    actions = find_orphans(entitlements, [], skip_user_ids=["b"])
    assert [a.user_id for a in actions] == ["a"]
