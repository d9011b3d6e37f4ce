"""Ticket fee calculation.

Every fee number that is charged, displayed or recorded comes from
:func:`calculate_fees`; checkout creation and fee quotes agree to the minor
unit.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal

from .config import settings
from .errors import ValidationError
from .models import Event, FeePolicy
from .utils import round_minor_units


@dataclass(frozen=True)
class FeeSchedule:
    """Platform fee rate plus an optional fixed component per ticket."""

    rate: Decimal
    fixed_per_ticket: int = 0

    def __post_init__(self) -> None:
        if self.rate < 0:
            raise ValidationError("Fee rate cannot be negative")
        if self.fixed_per_ticket < 0:
            raise ValidationError("Fixed fee cannot be negative")


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: int
    service_fee: int
    platform_fee: int
    attendee_pays: int
    host_receives: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


ZERO_FEES = FeeBreakdown(
    subtotal=0, service_fee=0, platform_fee=0, attendee_pays=0, host_receives=0
)


def default_fee_schedule() -> FeeSchedule:
    return FeeSchedule(
        rate=settings.fee_rate, fixed_per_ticket=settings.fee_fixed_per_ticket
    )


def normalize_fee_policy(raw: str | FeePolicy | None) -> FeePolicy:
    value = (raw or settings.default_fee_policy).strip().upper()
    try:
        return FeePolicy(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown fee policy {raw!r}") from exc


def calculate_fees(
    base_price: int,
    quantity: int = 1,
    policy: FeePolicy | str = FeePolicy.ABSORB,
    schedule: FeeSchedule | None = None,
) -> FeeBreakdown:
    """Split a ticket purchase into attendee charge, platform fee and host payout.

    ``base_price`` is in integer minor units. The fee is computed on the whole
    subtotal and rounded once (half to even), so quantity never introduces
    per-ticket rounding drift. A zero price short-circuits before any rate
    math so free tickets never carry a fee.
    """
    if isinstance(base_price, bool) or not isinstance(base_price, int) or base_price < 0:
        raise ValidationError("Price must be a non-negative integer in minor units")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    policy = normalize_fee_policy(policy)

    if base_price == 0:
        return ZERO_FEES

    schedule = schedule or default_fee_schedule()
    subtotal = base_price * quantity
    raw_fee = Decimal(subtotal) * schedule.rate + Decimal(
        schedule.fixed_per_ticket * quantity
    )
    fee = min(round_minor_units(raw_fee), subtotal)

    if policy is FeePolicy.ABSORB:
        return FeeBreakdown(
            subtotal=subtotal,
            service_fee=0,
            platform_fee=fee,
            attendee_pays=subtotal,
            host_receives=subtotal - fee,
        )
    return FeeBreakdown(
        subtotal=subtotal,
        service_fee=fee,
        platform_fee=fee,
        attendee_pays=subtotal + fee,
        host_receives=subtotal,
    )


def quote_event_fees(
    event: Event, quantity: int = 1, schedule: FeeSchedule | None = None
) -> FeeBreakdown:
    """Fee breakdown for ``quantity`` tickets to ``event`` under its own policy."""
    if not event.is_paid_event:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        return ZERO_FEES
    return calculate_fees(event.price, quantity, event.fee_policy, schedule)
