"""Plan key to tier mapping.

Only plan keys that clearly belong to a paid tier map to one. Anything else
is treated as absent plan information; there is no default tier.
"""
from __future__ import annotations

from typing import Optional

from .types import Tier


_TIER_PREFIXES = {
    "vip": Tier.VIP,
    "pro": Tier.PRO,
}


def normalize_plan_key(plan_key: Optional[str]) -> Optional[str]:
    value = (plan_key or "").strip().lower()
    return value or None


def tier_for_plan(plan_key: Optional[str]) -> Optional[Tier]:
    """Return the paid tier for a plan key, or None if the key is unmapped.

    The tier is read from the first ``_``-separated token, so ``vip_monthly``
    and ``vip`` both map to VIP while ``provip_monthly`` maps to nothing.
    """
    key = normalize_plan_key(plan_key)
    if key is None:
        return None
    return _TIER_PREFIXES.get(key.split("_", 1)[0])

