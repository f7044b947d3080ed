"""Expected entitlement state from a user's event history.

Events are evaluated newest first and the first matching rule wins:

1. any cancellation makes the user canceled/free (sticky)
2. the newest refund with no strictly newer payment success makes the user free
3. the newest subscription created/updated event with a mapped plan grants it
4. the newest payment success with a mapped plan grants it
5. otherwise nothing is expected

Absence of decisive evidence never keeps a paid tier alive.
"""
from __future__ import annotations

from typing import Callable, Iterable, Optional, Sequence

from .plans import normalize_plan_key, tier_for_plan
from .types import EventType, ExpectedState, EntitlementStatus, NormalizedEvent, Tier


_SUBSCRIPTION_TYPES = frozenset(
    {EventType.SUBSCRIPTION_CREATED, EventType.SUBSCRIPTION_UPDATED}
)
_PAYMENT_TYPES = frozenset({EventType.PAYMENT_SUCCEEDED})


def sort_newest_first(events: Iterable[NormalizedEvent]) -> list[NormalizedEvent]:
    """Order by created_at descending; event id breaks ties so output is stable."""
    return sorted(events, key=lambda e: (e.created_at, e.id), reverse=True)


def _first(
    events: Sequence[NormalizedEvent],
    predicate: Callable[[NormalizedEvent], bool],
) -> Optional[NormalizedEvent]:
    for event in events:
        if predicate(event):
            return event
    return None


def _active_from(event: NormalizedEvent, tier: Tier) -> ExpectedState:
    return ExpectedState(
        status=EntitlementStatus.ACTIVE,
        tier=tier,
        plan_key=normalize_plan_key(event.plan_key),
        event_id=event.id,
    )


def _newest_with_plan(
    events: Sequence[NormalizedEvent],
    types: frozenset[EventType],
) -> Optional[ExpectedState]:
    for event in events:
        if event.type not in types:
            continue
        tier = tier_for_plan(event.plan_key)
        if tier is not None:
            return _active_from(event, tier)
    return None


def derive_expected_state(events: Iterable[NormalizedEvent]) -> ExpectedState:
    """Derive the expected entitlement for one user's events (any order)."""
    newest = sort_newest_first(events)

    cancel = _first(newest, lambda e: e.type is EventType.SUBSCRIPTION_CANCELED)
    if cancel is not None:
        return ExpectedState.canceled(event_id=cancel.id)

    refund = _first(newest, lambda e: e.type is EventType.PAYMENT_REFUNDED)
    if refund is not None:
        later_success = _first(
            newest,
            lambda e: e.type is EventType.PAYMENT_SUCCEEDED
            and e.created_at > refund.created_at,
        )
        if later_success is None:
            return ExpectedState.none(event_id=refund.id)

    expected = _newest_with_plan(newest, _SUBSCRIPTION_TYPES)
    if expected is None:
        expected = _newest_with_plan(newest, _PAYMENT_TYPES)
    return expected or ExpectedState.none()
