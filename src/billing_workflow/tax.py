"""Sales tax computation for invoice totals.

Invoice creation, line-item resync and the nightly reconciliation pass all
call ``calculate_tax`` with the same inputs, so a drifted stored total can be
detected by recomputing and comparing.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from billing_workflow.config import get_settings
from billing_workflow.errors import ValidationError


@dataclass(frozen=True)
class TaxBreakdown:
    """Result of a tax calculation, all amounts in cents."""

    subtotal: int
    tax_amount: int
    total_amount: int
    tax_rate: Decimal
    is_exempt: bool


def configured_tax_rate() -> Decimal:
    """Return the system-wide tax rate from settings."""
    return get_settings().tax_rate


def round_half_up(value: Decimal) -> int:
    """Round a Decimal amount of cents to the nearest whole cent (half-up)."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_tax(
    subtotal: int,
    is_exempt: bool,
    tax_rate: Decimal | None = None,
) -> TaxBreakdown:
    """Compute tax and total for a subtotal.

    Args:
        subtotal: Pre-tax amount in cents.
        is_exempt: True for tax-exempt (government) customers.
        tax_rate: Override for the configured rate; tests use this.

    Returns:
        TaxBreakdown with ``total_amount == subtotal + tax_amount``.

    Raises:
        ValidationError: If the subtotal is not a non-negative integer or the
            exemption flag is not a boolean.
    """
    if isinstance(subtotal, bool) or not isinstance(subtotal, int):
        raise ValidationError(
            "subtotal must be an integer number of cents",
            details={"subtotal": repr(subtotal)},
        )
    if subtotal < 0:
        raise ValidationError("subtotal cannot be negative", details={"subtotal": subtotal})
    if not isinstance(is_exempt, bool):
        raise ValidationError(
            "is_exempt must be a boolean", details={"is_exempt": repr(is_exempt)}
        )

    rate = configured_tax_rate() if tax_rate is None else Decimal(str(tax_rate))
    if rate < 0:
        raise ValidationError("tax rate cannot be negative", details={"tax_rate": str(rate)})

    tax_amount = 0 if is_exempt else round_half_up(Decimal(subtotal) * rate)
    return TaxBreakdown(
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_amount=subtotal + tax_amount,
        tax_rate=rate,
        is_exempt=is_exempt,
    )
