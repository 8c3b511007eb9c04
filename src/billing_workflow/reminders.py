"""Idempotent, cooldown-aware reminder dispatch.

Every reminder category runs through the same pipeline:

    select candidates -> collapse duplicates -> resolve recipient ->
    ledger check -> cooldown check -> notifier.send -> append ReminderLog

Selection uses bulk queries only. Everything after it runs per
candidate inside the bounded worker, so a failed lookup or send is recorded
against that entity and the rest of the category still goes out.

The ReminderLog is the only dedup ledger. A row is appended only after the
notifier accepted the reminder, so a failed send is retried by the next sweep
and a crash between send and log can at worst repeat one reminder.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

import structlog

from billing_workflow.concurrency import SweepError, SweepLimits, run_bounded
from billing_workflow.config import get_settings
from billing_workflow.errors import NotFoundError, ValidationError
from billing_workflow.models import (
    EntityKind,
    Invoice,
    InvoiceStatus,
    MilestoneStatus,
    Quote,
    QuoteStatus,
    ReminderLog,
    ReminderType,
    Urgency,
)
from billing_workflow.notifier import Notifier
from billing_workflow.repository import BillingRepository

logger = structlog.get_logger(__name__)

# Invoice statuses during which a fresh status change suppresses reminders.
COOLDOWN_STATUSES = frozenset({InvoiceStatus.APPROVED, InvoiceStatus.PAYMENT_PENDING})
UNBILLABLE_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.PAID, InvoiceStatus.CANCELLED})
THANK_YOU_LOOKBACK_DAYS = 7


class DedupWindow(str, Enum):
    CALENDAR_DAY = "calendar_day"
    ONCE_EVER = "once_ever"


class DispatchStatus(str, Enum):
    SENT = "sent"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SKIPPED_NO_RECIPIENT = "skipped_no_recipient"


@dataclass(frozen=True)
class SweepWindow:
    """The sweep's notion of "now", in the business timezone."""

    reference_time: datetime
    reference_date: date

    @property
    def day_start(self) -> datetime:
        return datetime.combine(
            self.reference_date, datetime.min.time(), tzinfo=self.reference_time.tzinfo
        )


@dataclass
class ReminderCandidate:
    """A selected entity; ``quote_id`` is resolved to a recipient at dispatch."""

    entity_kind: EntityKind
    entity_id: UUID
    recipient: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    invoice_id: UUID | None = None
    quote_id: UUID | None = None

    @property
    def dedup_key(self) -> tuple[EntityKind, UUID]:
        return self.entity_kind, self.entity_id


Selector = Callable[[BillingRepository, SweepWindow], Awaitable[list[ReminderCandidate]]]


@dataclass(frozen=True)
class ReminderCategory:
    """One kind of reminder: who gets it, how urgent, how often."""

    reminder_type: ReminderType
    urgency: Urgency
    selector: Selector
    dedup_window: DedupWindow = DedupWindow.CALENDAR_DAY
    cooldown: bool = True

    def dedup_since(self, window: SweepWindow) -> datetime | None:
        if self.dedup_window == DedupWindow.ONCE_EVER:
            return None
        return window.day_start


def _quote_context(quote: Quote) -> dict[str, Any]:
    return {
        "contact_name": quote.contact_name,
        "event_name": quote.event_name,
        "event_date": quote.event_date.isoformat() if quote.event_date else None,
        "location": quote.location,
        "guest_count": quote.guest_count,
        "start_time": quote.start_time,
    }


def _invoice_context(invoice: Invoice) -> dict[str, Any]:
    return {
        "invoice_id": str(invoice.id),
        "total_amount": invoice.total_amount,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "access_token": invoice.customer_access_token,
    }


def _primary_invoices(invoices: list[Invoice]) -> dict[UUID, Invoice]:
    """The non-draft invoice per quote, else its first draft."""
    primary: dict[UUID, Invoice] = {}
    for invoice in invoices:
        current = primary.get(invoice.quote_id)
        if current is None or (current.is_draft and not invoice.is_draft):
            primary[invoice.quote_id] = invoice
    return primary


async def select_overdue_invoices(
    repo: BillingRepository, window: SweepWindow
) -> list[ReminderCandidate]:
    candidates = []
    for invoice in await repo.list_invoices(statuses=[InvoiceStatus.OVERDUE]):
        days_overdue = (window.reference_date - invoice.due_date).days if invoice.due_date else 0
        candidates.append(
            ReminderCandidate(
                entity_kind=EntityKind.INVOICE,
                entity_id=invoice.id,
                context={**_invoice_context(invoice), "days_overdue": days_overdue},
                invoice_id=invoice.id,
                quote_id=invoice.quote_id,
            )
        )
    return candidates


def milestones_due_within(days: int) -> Selector:
    """Pending milestones due between today and ``days`` from now."""

    async def select(repo: BillingRepository, window: SweepWindow) -> list[ReminderCandidate]:
        milestones = await repo.list_milestones(
            statuses=[MilestoneStatus.PENDING],
            due_from=window.reference_date,
            due_to=window.reference_date + timedelta(days=days),
        )
        billable = {
            invoice.id: invoice
            for invoice in await repo.list_invoices(
                statuses=[s for s in InvoiceStatus if s not in UNBILLABLE_STATUSES]
            )
        }
        candidates = []
        for milestone in sorted(milestones, key=lambda m: m.due_date or window.reference_date):
            invoice = billable.get(milestone.invoice_id)
            if invoice is None:
                continue
            candidates.append(
                ReminderCandidate(
                    entity_kind=EntityKind.INVOICE,
                    entity_id=invoice.id,
                    context={
                        **_invoice_context(invoice),
                        "milestone_type": milestone.milestone_type.value,
                        "milestone_amount": milestone.amount_cents,
                        "milestone_due_date": milestone.due_date.isoformat() if milestone.due_date else None,
                    },
                    invoice_id=invoice.id,
                    quote_id=invoice.quote_id,
                )
            )
        return candidates

    return select


def events_in(days: int) -> Selector:
    """Confirmed events taking place exactly ``days`` from today."""

    async def select(repo: BillingRepository, window: SweepWindow) -> list[ReminderCandidate]:
        quotes = await repo.list_quotes(
            statuses=[QuoteStatus.CONFIRMED],
            event_date=window.reference_date + timedelta(days=days),
        )
        if not quotes:
            return []
        primary = _primary_invoices(await repo.list_invoices())
        candidates = []
        for quote in quotes:
            invoice = primary.get(quote.id)
            candidates.append(
                ReminderCandidate(
                    entity_kind=EntityKind.QUOTE,
                    entity_id=quote.id,
                    recipient=quote.email or None,
                    context={**_quote_context(quote), "days_until_event": days},
                    invoice_id=invoice.id if invoice else None,
                )
            )
        return candidates

    return select


def recently_finished_events(lookback_days: int = THANK_YOU_LOOKBACK_DAYS) -> Selector:
    """Completed events from the last ``lookback_days`` days."""

    async def select(repo: BillingRepository, window: SweepWindow) -> list[ReminderCandidate]:
        earliest = window.reference_date - timedelta(days=lookback_days)
        quotes = await repo.list_quotes(
            statuses=[QuoteStatus.COMPLETED], event_before=window.reference_date
        )
        return [
            ReminderCandidate(
                entity_kind=EntityKind.QUOTE,
                entity_id=quote.id,
                recipient=quote.email or None,
                context=_quote_context(quote),
            )
            for quote in quotes
            if quote.event_date is not None and quote.event_date >= earliest
        ]

    return select


def default_categories() -> list[ReminderCategory]:
    """The five reminder categories, configured from settings."""
    settings = get_settings()
    week_out, days_out = settings.event_reminder_days
    return [
        ReminderCategory(ReminderType.OVERDUE_PAYMENT, Urgency.HIGH, select_overdue_invoices),
        ReminderCategory(
            ReminderType.PAYMENT_DUE_SOON,
            Urgency.MEDIUM,
            milestones_due_within(settings.milestone_reminder_days),
        ),
        ReminderCategory(ReminderType.EVENT_7_DAY, Urgency.HIGH, events_in(week_out)),
        ReminderCategory(ReminderType.EVENT_2_DAY, Urgency.URGENT, events_in(days_out)),
        ReminderCategory(
            ReminderType.POST_EVENT_THANKYOU,
            Urgency.LOW,
            recently_finished_events(),
            dedup_window=DedupWindow.ONCE_EVER,
            cooldown=False,
        ),
    ]


@dataclass
class CategoryCounts:
    candidates: int = 0
    sent: int = 0
    skipped_duplicate: int = 0
    skipped_cooldown: int = 0
    skipped_no_recipient: int = 0
    failed: int = 0

    def record(self, status: DispatchStatus) -> None:
        setattr(self, status.value, getattr(self, status.value) + 1)


@dataclass
class ReminderSweepResult:
    reference_time: datetime
    per_category: dict[ReminderType, CategoryCounts] = field(default_factory=dict)
    errors: list[SweepError] = field(default_factory=list)
    deferred: int = 0

    @property
    def total_sent(self) -> int:
        return sum(c.sent for c in self.per_category.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_time": self.reference_time.isoformat(),
            "per_category": {t.value: vars(c).copy() for t, c in self.per_category.items()},
            "total_sent": self.total_sent,
            "errors": [e.to_dict() for e in self.errors],
            "deferred": self.deferred,
        }


class ReminderDispatcher:
    """Decides, once per sweep, which reminders are due and sends them."""

    def __init__(
        self,
        repository: BillingRepository,
        notifier: Notifier,
        categories: list[ReminderCategory] | None = None,
        limits: SweepLimits | None = None,
        cooldown: timedelta | None = None,
    ):
        self._repo = repository
        self._notifier = notifier
        self._categories = categories if categories is not None else default_categories()
        self._limits = limits or SweepLimits.from_settings()
        self._cooldown = cooldown or timedelta(hours=get_settings().reminder_cooldown_hours)
        self._logger = logger.bind(component="reminders")

    @property
    def categories(self) -> list[ReminderCategory]:
        return list(self._categories)

    async def _in_cooldown(self, invoice_id: UUID, window: SweepWindow) -> bool:
        try:
            invoice = await self._repo.get_invoice(invoice_id)
        except NotFoundError:
            return False
        if invoice.workflow_status not in COOLDOWN_STATUSES or invoice.last_status_change is None:
            return False
        return window.reference_time - invoice.last_status_change < self._cooldown

    async def _dispatch_one(
        self,
        category: ReminderCategory,
        candidate: ReminderCandidate,
        window: SweepWindow,
    ) -> DispatchStatus:
        if candidate.quote_id is not None:
            quote = await self._repo.get_quote(candidate.quote_id)
            candidate = replace(
                candidate,
                recipient=quote.email or None,
                context={**_quote_context(quote), **candidate.context},
            )
        if not candidate.recipient:
            return DispatchStatus.SKIPPED_NO_RECIPIENT

        previous = await self._repo.find_reminder_logs(
            candidate.entity_id, category.reminder_type, since=category.dedup_since(window)
        )
        if previous:
            return DispatchStatus.SKIPPED_DUPLICATE

        if category.cooldown and candidate.invoice_id and await self._in_cooldown(candidate.invoice_id, window):
            return DispatchStatus.SKIPPED_COOLDOWN

        await self._notifier.send(
            candidate.recipient,
            category.reminder_type,
            {**candidate.context, "urgency": category.urgency.value},
        )
        await self._repo.append_reminder_log(
            ReminderLog(
                entity_kind=candidate.entity_kind,
                entity_id=candidate.entity_id,
                reminder_type=category.reminder_type,
                recipient=candidate.recipient,
                urgency=category.urgency,
                sent_at=window.reference_time,
                invoice_id=candidate.invoice_id,
            )
        )
        self._logger.info(
            "reminder_sent",
            reminder_type=category.reminder_type.value,
            entity_id=str(candidate.entity_id),
            urgency=category.urgency.value,
        )
        return DispatchStatus.SENT

    async def dispatch_category(
        self,
        category: ReminderCategory,
        window: SweepWindow,
        deadline: float | None = None,
    ) -> tuple[CategoryCounts, list[SweepError], int]:
        """Run one category; returns its counts, errors and deferred count."""
        counts = CategoryCounts()
        found = await category.selector(self._repo, window)

        # Collapse candidates sharing a dedup key, keeping the first.
        unique: dict[tuple[EntityKind, UUID], ReminderCandidate] = {}
        for candidate in found:
            unique.setdefault(candidate.dedup_key, candidate)
        candidates = list(unique.values())
        counts.candidates = len(candidates)

        async def dispatch(candidate: ReminderCandidate) -> DispatchStatus:
            return await self._dispatch_one(category, candidate, window)

        outcome = await run_bounded(
            candidates,
            dispatch,
            operation=f"reminder:{category.reminder_type.value}",
            entity_kind=candidates[0].entity_kind if candidates else None,
            entity_id=lambda c: c.entity_id,
            limits=self._limits,
            deadline=deadline,
        )
        for _, status in outcome.results:
            counts.record(status)
        counts.failed = len(outcome.errors)
        return counts, outcome.errors, outcome.deferred

    async def run_reminder_sweep(
        self,
        reference_time: datetime,
        reference_date: date | None = None,
    ) -> ReminderSweepResult:
        """Send every reminder that is due at ``reference_time``.

        Args:
            reference_time: Timezone-aware "now" in the business timezone.
            reference_date: Business "today"; defaults to the date of
                ``reference_time``.

        Raises:
            ValidationError: If ``reference_time`` is naive.
        """
        if reference_time.tzinfo is None:
            raise ValidationError("reference_time must be timezone-aware")
        window = SweepWindow(reference_time, reference_date or reference_time.date())
        result = ReminderSweepResult(reference_time=reference_time)
        started = time.monotonic()
        self._logger.info("reminder_sweep_starting", reference_time=reference_time.isoformat())

        for category in self._categories:
            remaining = self._limits.deadline - (time.monotonic() - started)
            operation = f"reminder:{category.reminder_type.value}"
            try:
                counts, errors, deferred = await self.dispatch_category(category, window, remaining)
            except Exception as e:
                # Candidate selection failed; the other categories still run.
                result.per_category[category.reminder_type] = CategoryCounts()
                result.errors.append(SweepError.from_exception(e, operation))
                self._logger.error("reminder_category_failed", operation=operation, error=str(e))
                continue
            result.per_category[category.reminder_type] = counts
            result.errors.extend(errors)
            result.deferred += deferred

        self._logger.info(
            "reminder_sweep_completed",
            total_sent=result.total_sent,
            errors=len(result.errors),
            deferred=result.deferred,
        )
        return result
