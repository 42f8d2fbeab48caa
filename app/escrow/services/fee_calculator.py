"""
Fee computation for escrow releases.

All arithmetic happens in integer minor units (cents). The percentage is
a Decimal so no float ever touches a monetary value.

Usage:
    from escrow.services.fee_calculator import compute_fees

    fees = compute_fees(
        gross_cents=100000,
        platform_fee_pct=Decimal("7.00"),
        provider_fee_cents=3000,
    )
    fees.platform_fee_cents  # 7000
    fees.net_amount_cents    # 90000
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from escrow.exceptions import EscrowValidationError, FeeOverrunError

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeBreakdown:
    """
    Fee split of a gross amount.

    Conservation holds by construction:
        gross_amount_cents == platform + provider + net
    """

    gross_amount_cents: int
    platform_fee_cents: int
    provider_fee_cents: int
    net_amount_cents: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def platform_fee_for(gross_cents: int, platform_fee_pct: Decimal | str) -> int:
    """
    Platform share of ``gross_cents``, truncated to the minor unit.

    Truncation (ROUND_DOWN) never rounds a half-cent in the platform's favour.
    """
    try:
        pct = Decimal(str(platform_fee_pct))
    except InvalidOperation:
        raise EscrowValidationError(
            "Platform fee percentage is not a number",
            details={"platform_fee_pct": str(platform_fee_pct)},
        )
    if pct < 0 or pct > HUNDRED:
        raise EscrowValidationError(
            "Platform fee percentage must be between 0 and 100",
            details={"platform_fee_pct": str(pct)},
        )
    fee = (Decimal(gross_cents) * pct / HUNDRED).quantize(
        Decimal("1"), rounding=ROUND_DOWN
    )
    return int(fee)


def compute_fees(
    gross_cents: int,
    platform_fee_pct: Decimal | str,
    flat_adjustment_cents: int = 0,
    provider_fee_cents: int = 0,
) -> FeeBreakdown:
    """
    Split a gross amount into platform fee, provider fee and net amount.

    Args:
        gross_cents: Gross contract amount in cents
        platform_fee_pct: Platform percentage captured at contract creation
        flat_adjustment_cents: Flat amount added to the platform fee
        provider_fee_cents: Fee the provider charged on the deposit

    Returns:
        FeeBreakdown with the three parts summing to the gross

    Raises:
        EscrowValidationError: Negative inputs or percentage out of range
        FeeOverrunError: Fees exceed the gross amount
    """
    for name, value in (
        ("gross_cents", gross_cents),
        ("provider_fee_cents", provider_fee_cents),
    ):
        if value < 0:
            raise EscrowValidationError(
                f"{name} must not be negative",
                details={name: value},
            )

    platform_fee_cents = platform_fee_for(gross_cents, platform_fee_pct)
    platform_fee_cents += flat_adjustment_cents
    if platform_fee_cents < 0:
        raise EscrowValidationError(
            "Flat adjustment cannot make the platform fee negative",
            details={
                "flat_adjustment_cents": flat_adjustment_cents,
                "platform_fee_cents": platform_fee_cents,
            },
        )

    net_amount_cents = gross_cents - platform_fee_cents - provider_fee_cents
    if net_amount_cents < 0:
        raise FeeOverrunError(
            "Fees exceed the gross amount",
            details={
                "gross_cents": gross_cents,
                "platform_fee_cents": platform_fee_cents,
                "provider_fee_cents": provider_fee_cents,
                "net_amount_cents": net_amount_cents,
            },
        )

    return FeeBreakdown(
        gross_amount_cents=gross_cents,
        platform_fee_cents=platform_fee_cents,
        provider_fee_cents=provider_fee_cents,
        net_amount_cents=net_amount_cents,
    )
