from __future__ import annotations

import pytest

from backend.polaris.billing.plans import normalize_plan_key, tier_for_plan
from backend.polaris.billing.types import Tier


@pytest.mark.parametrize(
    ("plan_key", "tier"),
    [
        ("pro_monthly", Tier.PRO),
        ("pro_yearly", Tier.PRO),
        ("vip_monthly", Tier.VIP),
        ("vip_yearly", Tier.VIP),
        ("VIP_Monthly", Tier.VIP),
        ("vip", Tier.VIP),
    ],
)
def test_paid_plans_map_to_their_tier(plan_key: str, tier: Tier) -> None:
    assert tier_for_plan(plan_key) is tier


@pytest.mark.parametrize("plan_key", [None, "", "   ", "free", "enterprise_annual", "provip_monthly"])
def test_unmapped_plans_have_no_tier(plan_key) -> None:
    assert tier_for_plan(plan_key) is None


def test_normalize_plan_key() -> None:
    assert normalize_plan_key("  Pro_Yearly ") == "pro_yearly"
    assert normalize_plan_key("") is None
    assert normalize_plan_key(None) is None

