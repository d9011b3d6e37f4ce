"""Refund policy evaluation.

All refund paths (attendee cancellation, host refund, bulk refund and the
refund quote endpoint) use :func:`evaluate_refund`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping

from .errors import ValidationError
from .utils import days_between, round_minor_units


@dataclass(frozen=True, order=True)
class RefundTier:
    """Refund ``percent`` applies when at least ``min_days`` remain before start."""

    min_days: float
    percent: int

    def __post_init__(self) -> None:
        if not 0 <= self.percent <= 100:
            raise ValidationError("Refund percent must be between 0 and 100")


@dataclass(frozen=True)
class RefundPolicy:
    tiers: tuple[RefundTier, ...] = ()
    host_override: bool = False
    name: str = "CUSTOM"

    def ordered_tiers(self) -> tuple[RefundTier, ...]:
        return tuple(sorted(self.tiers, key=lambda tier: tier.min_days, reverse=True))

    def as_descriptor(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "host_override": self.host_override,
            "tiers": [
                {"min_days": tier.min_days, "percent": tier.percent}
                for tier in self.ordered_tiers()
            ],
        }


PRESETS: dict[str, RefundPolicy] = {
    "NONE": RefundPolicy(name="NONE"),
    "FULL_ANYTIME": RefundPolicy(host_override=True, name="FULL_ANYTIME"),
    "FULL_24H": RefundPolicy(tiers=(RefundTier(1, 100),), name="FULL_24H"),
    "TIERED": RefundPolicy(
        tiers=(RefundTier(7, 100), RefundTier(1, 50), RefundTier(0, 0)),
        name="TIERED",
    ),
}

NO_REFUNDS = PRESETS["NONE"]


def parse_refund_policy(descriptor: str | Mapping[str, Any] | None) -> RefundPolicy:
    """Build a policy from a preset name or a ``{"tiers": [...]}`` mapping.

    A missing descriptor yields the no-refund policy.
    """
    if descriptor is None or descriptor == "" or descriptor == {}:
        return NO_REFUNDS
    if isinstance(descriptor, str):
        preset = PRESETS.get(descriptor.strip().upper())
        if preset is None:
            raise ValidationError(f"Unknown refund policy preset {descriptor!r}")
        return preset
    if not isinstance(descriptor, Mapping):
        raise ValidationError("Refund policy must be a preset name or a mapping")

    name = str(descriptor.get("name") or "CUSTOM").upper()
    if name in PRESETS and "tiers" not in descriptor:
        return PRESETS[name]
    raw_tiers = descriptor.get("tiers") or []
    try:
        tiers = tuple(
            RefundTier(float(item["min_days"]), int(item["percent"])) for item in raw_tiers
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("Refund tiers need numeric min_days and percent") from exc
    return RefundPolicy(
        tiers=tiers, host_override=bool(descriptor.get("host_override")), name=name
    )


@dataclass(frozen=True)
class RefundDecision:
    eligible: bool
    percent: int
    amount: int
    reason: str = field(default="", compare=False)

    def as_dict(self) -> dict[str, Any]:
        return {
            "eligible": self.eligible,
            "percent": self.percent,
            "amount": self.amount,
            "reason": self.reason,
        }


def evaluate_refund(
    policy: RefundPolicy,
    *,
    event_start: datetime,
    now: datetime,
    charged: int,
    is_host_initiated: bool = False,
) -> RefundDecision:
    """Return how much of ``charged`` is refundable at ``now``.

    Host-initiated refunds and host-override policies always return 100%.
    Otherwise the first tier (largest bound first) whose ``min_days`` is at
    most the days remaining applies; past events and policies without tiers
    refund nothing.
    """
    charged = max(int(charged or 0), 0)
    if is_host_initiated:
        return RefundDecision(True, 100, charged, "Host-initiated refund - full refund")
    if policy.host_override:
        return RefundDecision(True, 100, charged, "Full refund anytime policy")
    if charged <= 0:
        return RefundDecision(False, 0, 0, "No payment to refund")
    if not policy.tiers:
        return RefundDecision(False, 0, 0, "No refund policy")

    days_until_event = days_between(now, event_start)
    for tier in policy.ordered_tiers():
        if tier.min_days <= days_until_event:
            amount = round_minor_units(Decimal(charged) * tier.percent / 100)
            if tier.percent == 0 or amount == 0:
                return RefundDecision(
                    False, 0, 0, f"No refund within {tier.min_days:g} days of the event"
                )
            return RefundDecision(
                True,
                tier.percent,
                amount,
                f"{tier.percent}% refund at least {tier.min_days:g} days before the event",
            )
    return RefundDecision(False, 0, 0, "No refund - event is too close or has started")
