from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from sweatbook.errors import ValidationError
from sweatbook.refunds import (
    NO_REFUNDS,
    PRESETS,
    RefundTier,
    evaluate_refund,
    parse_refund_policy,
)

NOW = datetime(2025, 3, 1, 9, 0, 0)


def _evaluate(policy, *, days_before: float, charged: int = 2100, **kwargs):
    return evaluate_refund(
        policy,
        event_start=NOW + timedelta(days=days_before),
        now=NOW,
        charged=charged,
        **kwargs,
    )


def test_tiered_policy_gives_half_back_three_days_out():
    decision = _evaluate(PRESETS["TIERED"], days_before=3)
    assert decision.eligible is True
    assert decision.percent == 50
    assert decision.amount == 1050


def test_tiered_policy_full_refund_a_week_out():
    decision = _evaluate(PRESETS["TIERED"], days_before=7)
    assert decision.percent == 100
    assert decision.amount == 2100


def test_tiered_policy_nothing_on_the_day():
    decision = _evaluate(PRESETS["TIERED"], days_before=0.5)
    assert decision.eligible is False
    assert decision.amount == 0


def test_started_event_refunds_nothing():
    decision = _evaluate(PRESETS["FULL_24H"], days_before=-0.1)
    assert decision.eligible is False
    assert decision.amount == 0


def test_host_initiated_refund_is_always_full():
    decision = _evaluate(NO_REFUNDS, days_before=-2, is_host_initiated=True)
    assert decision.eligible is True
    assert decision.percent == 100
    assert decision.amount == 2100


def test_full_anytime_policy_overrides_tiers():
    decision = _evaluate(PRESETS["FULL_ANYTIME"], days_before=-1)
    assert decision.eligible is True
    assert decision.amount == 2100


def test_policy_without_tiers_refunds_nothing():
    decision = _evaluate(NO_REFUNDS, days_before=30)
    assert decision.eligible is False
    assert decision.reason == "No refund policy"


def test_nothing_charged_means_nothing_to_refund():
    decision = _evaluate(PRESETS["TIERED"], days_before=30, charged=0)
    assert decision.eligible is False


def test_custom_tiers_are_matched_largest_bound_first():
    policy = parse_refund_policy(
        {
            "tiers": [
                {"min_days": 2, "percent": 25},
                {"min_days": 14, "percent": 90},
            ]
        }
    )
    assert [tier.min_days for tier in policy.ordered_tiers()] == [14, 2]
    assert _evaluate(policy, days_before=5, charged=1000).amount == 250
    assert _evaluate(policy, days_before=20, charged=1000).amount == 900
    assert _evaluate(policy, days_before=1, charged=1000).eligible is False


def test_refund_amount_rounds_half_to_even():
    assert _evaluate(PRESETS["TIERED"], days_before=3, charged=1001).amount == 500
    assert _evaluate(PRESETS["TIERED"], days_before=3, charged=1003).amount == 502


def test_parse_accepts_presets_and_stored_descriptors():
    assert parse_refund_policy(None) is NO_REFUNDS
    assert parse_refund_policy("tiered") is PRESETS["TIERED"]
    stored = PRESETS["TIERED"].as_descriptor()
    restored = parse_refund_policy(stored)
    assert restored.ordered_tiers() == PRESETS["TIERED"].ordered_tiers()
    assert restored.name == "TIERED"


@pytest.mark.parametrize(
    "descriptor",
    [
        "SOMETIMES",
        {"tiers": [{"min_days": "soon", "percent": 50}]},
        {"tiers": [{"percent": 50}]},
        {"tiers": [{"min_days": 3, "percent": 120}]},
        42,
    ],
)
def test_parse_rejects_bad_descriptors(descriptor):
    with pytest.raises(ValidationError):
        parse_refund_policy(descriptor)


def test_tier_percent_must_be_a_percentage():
    with pytest.raises(ValidationError):
        RefundTier(1, -5)
