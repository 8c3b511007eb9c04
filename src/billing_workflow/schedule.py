"""Tiered payment-milestone schedules derived from the event date.

The tier depends on the customer class and the number of calendar days
between the reference date and the event:

    GOVERNMENT    any lead time   100% Net-30 after the event
    RUSH          <= 14 days      100% due now
    SHORT_NOTICE  15 - 30 days    60% now, 40% seven days before
    MID_RANGE     31 - 44 days    60% now, 40% fourteen days before
    STANDARD      >= 45 days      10% now, 40% thirty days before,
                                  50% fourteen days before

Everything here is pure: "today" is always passed in as ``reference_date``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from billing_workflow.errors import IntegrityError, ValidationError
from billing_workflow.models import (
    ComplianceLevel,
    MilestoneStatus,
    MilestoneType,
    PaymentMilestone,
)
from billing_workflow.tax import round_half_up


class PaymentTier(str, Enum):
    RUSH = "RUSH"
    SHORT_NOTICE = "SHORT_NOTICE"
    MID_RANGE = "MID_RANGE"
    STANDARD = "STANDARD"
    GOVERNMENT = "GOVERNMENT"


RUSH_MAX_DAYS = 14
SHORT_NOTICE_MAX_DAYS = 30
MID_RANGE_MAX_DAYS = 44
NET_TERMS_DAYS = 30


@dataclass(frozen=True)
class _RuleTemplate:
    milestone_type: MilestoneType
    percentage: int
    # Days relative to the event date; None means due now.
    offset_days: int | None
    description: str
    is_net30: bool = False


TIER_TEMPLATES: dict[PaymentTier, tuple[_RuleTemplate, ...]] = {
    PaymentTier.GOVERNMENT: (
        _RuleTemplate(
            MilestoneType.FULL,
            100,
            NET_TERMS_DAYS,
            "Full payment due 30 days after event (Net 30)",
            is_net30=True,
        ),
    ),
    PaymentTier.RUSH: (
        _RuleTemplate(MilestoneType.FULL, 100, None, "Full payment due immediately (rush event)"),
    ),
    PaymentTier.SHORT_NOTICE: (
        _RuleTemplate(MilestoneType.DEPOSIT, 60, None, "60% deposit due now"),
        _RuleTemplate(MilestoneType.FINAL, 40, -7, "Final 40% due 7 days before event"),
    ),
    PaymentTier.MID_RANGE: (
        _RuleTemplate(MilestoneType.DEPOSIT, 60, None, "60% deposit due now"),
        _RuleTemplate(MilestoneType.FINAL, 40, -14, "Final 40% due 14 days before event"),
    ),
    PaymentTier.STANDARD: (
        _RuleTemplate(MilestoneType.DEPOSIT, 10, None, "10% booking deposit due now"),
        _RuleTemplate(MilestoneType.MILESTONE, 40, -30, "40% payment due 30 days before event"),
        _RuleTemplate(MilestoneType.FINAL, 50, -14, "Final 50% due 14 days before event"),
    ),
}


@dataclass(frozen=True)
class PaymentRule:
    """One payment obligation of a schedule."""

    milestone_type: MilestoneType
    percentage: int
    amount_cents: int
    due_date: date | None
    is_due_now: bool
    is_net30: bool = False
    description: str = ""


@dataclass(frozen=True)
class PaymentSchedule:
    tier: PaymentTier
    days_until_event: int
    rules: tuple[PaymentRule, ...]

    @property
    def total_cents(self) -> int:
        return sum(rule.amount_cents for rule in self.rules)


def _as_date(value: date | None, name: str) -> date:
    if value is None:
        raise ValidationError(f"{name} is required", details={"field": name})
    if isinstance(value, datetime):
        return value.date()
    if not isinstance(value, date):
        raise ValidationError(f"{name} must be a date", details={"field": name, "value": repr(value)})
    return value


def _as_compliance_level(value: ComplianceLevel | str) -> ComplianceLevel:
    try:
        return ComplianceLevel(value)
    except ValueError as e:
        raise ValidationError(
            f"unknown customer class '{value}'", details={"customer_class": str(value)}
        ) from e


def select_tier(days_until_event: int, customer_class: ComplianceLevel) -> PaymentTier:
    """Pick the payment tier; government terms win over lead time."""
    if customer_class == ComplianceLevel.GOVERNMENT:
        return PaymentTier.GOVERNMENT
    if days_until_event <= RUSH_MAX_DAYS:
        return PaymentTier.RUSH
    if days_until_event <= SHORT_NOTICE_MAX_DAYS:
        return PaymentTier.SHORT_NOTICE
    if days_until_event <= MID_RANGE_MAX_DAYS:
        return PaymentTier.MID_RANGE
    return PaymentTier.STANDARD


def split_amount(total_amount: int, percentages: Sequence[int]) -> list[int]:
    """Split a total by percentage; the last share absorbs the rounding remainder."""
    amounts = [
        round_half_up(Decimal(total_amount) * Decimal(pct) / Decimal(100))
        for pct in percentages[:-1]
    ]
    amounts.append(total_amount - sum(amounts))
    return amounts


def build_payment_schedule(
    event_date: date | None,
    reference_date: date,
    customer_class: ComplianceLevel | str,
    total_amount: int,
) -> PaymentSchedule:
    """Build the milestone schedule for an invoice total.

    Args:
        event_date: Date of the catered event.
        reference_date: "Today" for the purpose of the lead-time calculation.
        customer_class: Standard or government customer.
        total_amount: Invoice total in cents.

    Returns:
        PaymentSchedule whose rule amounts sum to ``total_amount`` exactly.

    Raises:
        ValidationError: On a missing date, an unknown customer class or a
            negative / non-integer total.
    """
    event = _as_date(event_date, "event_date")
    today = _as_date(reference_date, "reference_date")
    customer = _as_compliance_level(customer_class)
    if isinstance(total_amount, bool) or not isinstance(total_amount, int):
        raise ValidationError(
            "total_amount must be an integer number of cents",
            details={"total_amount": repr(total_amount)},
        )
    if total_amount < 0:
        raise ValidationError("total_amount cannot be negative", details={"total_amount": total_amount})

    days_until_event = (event - today).days
    tier = select_tier(days_until_event, customer)
    templates = TIER_TEMPLATES[tier]
    amounts = split_amount(total_amount, [t.percentage for t in templates])

    rules = tuple(
        PaymentRule(
            milestone_type=template.milestone_type,
            percentage=template.percentage,
            amount_cents=amount,
            due_date=None if template.offset_days is None else event + timedelta(days=template.offset_days),
            is_due_now=template.offset_days is None,
            is_net30=template.is_net30,
            description=template.description,
        )
        for template, amount in zip(templates, amounts, strict=True)
    )
    return PaymentSchedule(tier=tier, days_until_event=days_until_event, rules=rules)


def final_due_date(schedule: PaymentSchedule, reference_date: date) -> date:
    """Due date of the balance: the last rule's date, or today if it is due now."""
    last = schedule.rules[-1]
    return last.due_date or reference_date


def materialize_milestones(
    invoice_id: UUID,
    schedule: PaymentSchedule,
    paid_cents: int = 0,
) -> list[PaymentMilestone]:
    """Turn schedule rules into milestone rows.

    Money already received is applied to the earliest milestones first, so a
    regenerated schedule keeps fully-covered milestones marked as paid.
    """
    remaining = paid_cents
    milestones = []
    for rule in schedule.rules:
        status = MilestoneStatus.PENDING
        if remaining >= rule.amount_cents:
            status = MilestoneStatus.PAID
            remaining -= rule.amount_cents
        else:
            remaining = 0
        milestones.append(
            PaymentMilestone(
                invoice_id=invoice_id,
                milestone_type=rule.milestone_type,
                percentage=rule.percentage,
                amount_cents=rule.amount_cents,
                due_date=rule.due_date,
                is_due_now=rule.is_due_now,
                status=status,
                is_net30=rule.is_net30,
                description=rule.description,
            )
        )
    return milestones


def validate_milestones(milestones: Sequence[PaymentMilestone]) -> None:
    """Raise IntegrityError unless the milestone percentages sum to exactly 100."""
    if not milestones:
        raise IntegrityError("invoice has no payment milestones")
    total_pct = sum(m.percentage for m in milestones)
    if total_pct != 100:
        raise IntegrityError(
            f"milestone percentages sum to {total_pct}, expected 100",
            details={
                "invoice_id": str(milestones[0].invoice_id),
                "percentage_total": total_pct,
            },
        )
