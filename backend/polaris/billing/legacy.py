"""Translation of legacy ledger rows into normalized event types.

Older ``payments_events`` rows carry free-text ``status`` strings written by
the webhook path and by earlier reconciliation runs (``entitlement_granted``,
``refund``, ``cancellation`` ...) and provider-specific ``type`` values.
Everything is mapped onto :class:`EventType` here, at the event source
boundary, so the deriver only ever sees the normalized vocabulary.
"""
from __future__ import annotations

import re
from typing import Optional

from .types import EventType


# Provider-specific type values that mean the same thing as a normalized type.
_TYPE_ALIASES = {
    "payment_captured": EventType.PAYMENT_SUCCEEDED,
    "invoice_paid": EventType.PAYMENT_SUCCEEDED,
    "subscription_cancelled": EventType.SUBSCRIPTION_CANCELED,
}

# Checked in order; revocations come before grants so "refund_succeeded"
# reads as a refund. Tokens match whole, so "unpaid" is not "paid".
_STATUS_TOKENS = (
    (frozenset({"revoked", "refund", "refunded"}), EventType.PAYMENT_REFUNDED),
    (
        frozenset({"cancel", "canceled", "cancelled", "cancellation"}),
        EventType.SUBSCRIPTION_CANCELED,
    ),
    (frozenset({"granted", "succeeded", "paid", "captured"}), EventType.PAYMENT_SUCCEEDED),
)

# A status saying something did not happen is never evidence.
_NEGATION_TOKENS = frozenset({"not", "no", "non", "failed", "declined", "pending"})

_TOKEN_SPLIT = re.compile(r"[\s_.\-]+")


def normalize_event_type(raw_type: Optional[str], status: Optional[str] = None) -> EventType:
    """Map a stored ``type``/``status`` pair onto the normalized vocabulary."""
    event_type = EventType.parse(raw_type)
    if event_type is not EventType.UNKNOWN:
        return event_type

    alias = _TYPE_ALIASES.get((raw_type or "").strip().lower())
    if alias is not None:
        return alias

    tokens = set(_TOKEN_SPLIT.split((status or "").strip().lower())) - {""}
    if not tokens or tokens & _NEGATION_TOKENS:
        return EventType.UNKNOWN
    for markers, mapped in _STATUS_TOKENS:
        if tokens & markers:
            return mapped
    return EventType.UNKNOWN
