from __future__ import annotations

from typing import Optional

from .types import (
    Entitlement,
    EntitlementStatus,
    ExpectedState,
    ReconcileAction,
)


def diff_state(
    user_id: str,
    current: Optional[Entitlement],
    expected: ExpectedState,
) -> ReconcileAction:
    """Compare the stored entitlement with the expected one and pick an action.

    Never grants without an explicit plan key in the expected state.
    """
    if not expected.is_active:
        if current is None:
            return ReconcileAction.noop(user_id, "no entitlement and none expected")
        if current.is_paid:
            return ReconcileAction.downgrade(
                user_id,
                f"expected {expected.status.value}, found {current.tier.value}",
                event_id=expected.event_id,
            )
        return ReconcileAction.noop(user_id, "already free")

    if expected.plan_key is None:
        return ReconcileAction.noop(user_id, "active without plan key")

    if current is None or not current.is_paid:
        return ReconcileAction.grant(
            user_id,
            expected.plan_key,
            expected.tier,
            "grant from latest provider event",
            event_id=expected.event_id,
        )

    if (
        current.plan_key != expected.plan_key
        or current.tier is not expected.tier
        or current.status is not EntitlementStatus.ACTIVE
    ):
        return ReconcileAction.fix_plan_key(
            user_id,
            expected.plan_key,
            expected.tier,
            f"align plan_key {current.plan_key or '-'} -> {expected.plan_key}",
            event_id=expected.event_id,
        )

    return ReconcileAction.noop(user_id, "entitlement matches events")
