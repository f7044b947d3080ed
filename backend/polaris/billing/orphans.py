from __future__ import annotations

from typing import Iterable

from .types import (
    SUPPORTING_EVENT_TYPES,
    Entitlement,
    EntitlementStatus,
    NormalizedEvent,
    ReconcileAction,
)


def supported_user_ids(events: Iterable[NormalizedEvent]) -> set[str]:
    """Users with at least one success/subscription event in the window."""
    users: set[str] = set()
    for event in events:
        user_id = event.resolved_user_id
        if user_id and event.type in SUPPORTING_EVENT_TYPES:
            users.add(user_id)
    return users


def find_orphans(
    entitlements: Iterable[Entitlement],
    events: Iterable[NormalizedEvent],
    skip_user_ids: Iterable[str] = (),
) -> list[ReconcileAction]:
    """Downgrade every active paid entitlement with no supporting event.

    Users in ``skip_user_ids`` were already decided by the per-user pass of
    the same run and are left alone.
    """
    supported = supported_user_ids(events)
    skipped = set(skip_user_ids)
    actions: list[ReconcileAction] = []
    seen: set[str] = set()
    for ent in entitlements:
        if not ent.is_paid or ent.status is not EntitlementStatus.ACTIVE:
            continue
        if ent.user_id in supported or ent.user_id in skipped or ent.user_id in seen:
            continue
        seen.add(ent.user_id)
        actions.append(
            ReconcileAction.downgrade(
                ent.user_id,
                f"orphan {ent.tier.value} entitlement with no supporting event",
                source="orphan",
            )
        )
    return actions
