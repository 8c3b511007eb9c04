"""Invoice entry points: creation from a quote, resync, manual pricing and
nightly totals reconciliation."""

import secrets
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any
from uuid import UUID

import structlog

from billing_workflow.concurrency import SweepError, SweepLimits, run_bounded
from billing_workflow.errors import IntegrityError, ValidationError
from billing_workflow.line_items import (
    LineItemSynchronizer,
    generate_line_items,
    line_items_subtotal,
)
from billing_workflow.models import (
    AuditEntry,
    ComplianceLevel,
    DocumentType,
    EntityKind,
    Invoice,
    InvoiceStatus,
    PaymentMilestone,
    Quote,
)
from billing_workflow.payments import apply_waterfall
from billing_workflow.repository import BillingRepository
from billing_workflow.schedule import (
    build_payment_schedule,
    final_due_date,
    materialize_milestones,
    split_amount,
    validate_milestones,
)
from billing_workflow.tax import calculate_tax

logger = structlog.get_logger(__name__)

RECONCILIATION_ACTOR = "reconciliation"
ACCESS_TOKEN_BYTES = 32


@dataclass
class ResyncResult:
    invoice_id: UUID
    subtotal: int
    tax_amount: int
    total_amount: int
    line_item_count: int
    version: int


@dataclass
class ReconciliationResult:
    checked: int = 0
    corrected: int = 0
    audit_entries: int = 0
    flagged: list[SweepError] = field(default_factory=list)
    errors: list[SweepError] = field(default_factory=list)
    deferred: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "corrected": self.corrected,
            "audit_entries": self.audit_entries,
            "flagged": [e.to_dict() for e in self.flagged],
            "errors": [e.to_dict() for e in self.errors],
            "deferred": self.deferred,
        }


def generate_access_token() -> str:
    return secrets.token_urlsafe(ACCESS_TOKEN_BYTES)


class BillingService:
    """Synchronous (caller-facing) billing operations.

    Errors propagate to the caller unchanged in kind.
    """

    def __init__(self, repository: BillingRepository, limits: SweepLimits | None = None):
        self._repo = repository
        self._sync = LineItemSynchronizer(repository)
        self._limits = limits
        self._logger = logger.bind(component="billing")

    @staticmethod
    def _require_event_date(quote: Quote) -> None:
        if quote.event_date is None:
            raise ValidationError(
                "quote has no event date", details={"quote_id": str(quote.id)}
            )

    async def create_invoice_from_quote(self, quote_id: UUID, reference_date: date) -> UUID:
        """Create the draft estimate for a quote.

        Runs tax, payment schedule and first-time line-item generation and
        persists invoice, items and milestones in one repository call.

        Args:
            quote_id: Quote the invoice bills.
            reference_date: Business "today" for the payment schedule.

        Returns:
            Id of the new invoice, or of the quote's existing draft after
            resyncing it.

        Raises:
            NotFoundError: The quote does not exist.
            ValidationError: The quote has no event date or a bad guest count.
            IntegrityError: The quote already has a non-draft invoice.
        """
        quote = await self._repo.get_quote(quote_id)
        self._require_event_date(quote)

        existing = await self._repo.list_invoices(quote_id=quote_id)
        primary = [i for i in existing if not i.is_draft]
        if primary:
            raise IntegrityError(
                "quote already has a non-draft invoice",
                details={"quote_id": str(quote_id), "invoice_id": str(primary[0].id)},
            )
        if existing:
            draft = min(existing, key=lambda i: i.created_at)
            self._logger.info("draft_invoice_reused", invoice_id=str(draft.id), quote_id=str(quote_id))
            await self._sync.sync(draft.id, quote, reference_date)
            return draft.id

        line_items = generate_line_items(quote)
        totals = calculate_tax(line_items_subtotal(line_items), quote.is_government)
        customer_class = ComplianceLevel.GOVERNMENT if quote.is_government else ComplianceLevel.STANDARD
        schedule = build_payment_schedule(
            quote.event_date, reference_date, customer_class, totals.total_amount
        )

        invoice = Invoice(
            quote_id=quote_id,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            is_tax_exempt=totals.is_exempt,
            due_date=final_due_date(schedule, reference_date),
            document_type=DocumentType.ESTIMATE,
            workflow_status=InvoiceStatus.DRAFT,
            is_draft=True,
            customer_access_token=generate_access_token(),
            version=1,
        )
        milestones = materialize_milestones(invoice.id, schedule)
        validate_milestones(milestones)

        created = await self._repo.create_invoice(invoice, line_items, milestones)
        self._logger.info(
            "invoice_created",
            invoice_id=str(created.id),
            quote_id=str(quote_id),
            tier=schedule.tier.value,
            line_items=len(line_items),
            milestones=len(milestones),
            total_amount=created.total_amount,
        )
        return created.id

    async def resync_invoice(self, invoice_id: UUID, quote_id: UUID, reference_date: date) -> ResyncResult:
        """Regenerate an invoice's line items after the quote's menu changed.

        Raises:
            NotFoundError: Invoice or quote does not exist.
            ValidationError: The invoice does not belong to the quote, or the
                quote has no event date.
            IntegrityError: Persisted line items disagree with the subtotal.
            ConcurrencyError: The invoice was regenerated concurrently.
        """
        invoice = await self._repo.get_invoice(invoice_id)
        if invoice.quote_id != quote_id:
            raise ValidationError(
                "invoice does not belong to quote",
                details={"invoice_id": str(invoice_id), "quote_id": str(quote_id)},
            )
        quote = await self._repo.get_quote(quote_id)
        self._require_event_date(quote)

        updated, items = await self._sync.sync(invoice_id, quote, reference_date)
        return ResyncResult(
            invoice_id=invoice_id,
            subtotal=updated.subtotal,
            tax_amount=updated.tax_amount,
            total_amount=updated.total_amount,
            line_item_count=len(items),
            version=updated.version,
        )

    async def price_line_items(
        self,
        invoice_id: UUID,
        prices: dict[UUID, int],
        reference_date: date,
    ) -> Invoice:
        """Apply admin-entered unit prices and recompute totals and milestones.

        Args:
            invoice_id: Invoice being priced.
            prices: Unit price in cents per line item id.
            reference_date: Business "today" for the payment schedule.

        Raises:
            ValidationError: A price is negative or not an integer, or an id
                does not belong to the invoice.
        """
        invoice = await self._repo.get_invoice(invoice_id)
        quote = await self._repo.get_quote(invoice.quote_id)
        self._require_event_date(quote)
        items = await self._repo.list_line_items(invoice_id)

        known = {item.id for item in items}
        unknown = [str(i) for i in prices if i not in known]
        if unknown:
            raise ValidationError(
                "line items do not belong to invoice",
                details={"invoice_id": str(invoice_id), "line_item_ids": unknown},
            )
        for item_id, price in prices.items():
            if isinstance(price, bool) or not isinstance(price, int) or price < 0:
                raise ValidationError(
                    "unit price must be a non-negative integer number of cents",
                    details={"line_item_id": str(item_id), "unit_price": repr(price)},
                )

        priced = [
            replace(item, unit_price=prices[item.id], total_price=item.quantity * prices[item.id])
            if item.id in prices
            else item
            for item in items
        ]
        updated = await self._sync.apply(invoice, quote, priced, reference_date, bump_version=False)
        self._logger.info(
            "line_items_priced",
            invoice_id=str(invoice_id),
            priced=len(prices),
            subtotal=updated.subtotal,
            total_amount=updated.total_amount,
        )
        return updated

    async def _resplit_milestones(
        self, invoice_id: UUID, milestones: list[PaymentMilestone], total_amount: int
    ) -> list[PaymentMilestone]:
        """Re-split ``total_amount`` over the existing milestone percentages."""
        amounts = split_amount(total_amount, [m.percentage for m in milestones])
        resplit = [replace(m, amount_cents=a) for m, a in zip(milestones, amounts, strict=True)]
        statuses = apply_waterfall(resplit, await self._sync.paid_cents(invoice_id))
        return [replace(m, status=statuses[m.id]) for m in resplit]

    async def _reconcile_one(self, invoice: Invoice, reference_time: datetime) -> tuple[bool, int]:
        milestones = await self._repo.list_milestones(invoice_id=invoice.id)
        validate_milestones(milestones)

        items = await self._repo.list_line_items(invoice.id)
        expected = calculate_tax(line_items_subtotal(items), invoice.is_tax_exempt)
        drift = [
            (name, getattr(invoice, name), getattr(expected, name))
            for name in ("subtotal", "tax_amount", "total_amount")
            if getattr(invoice, name) != getattr(expected, name)
        ]
        resplit = await self._resplit_milestones(invoice.id, milestones, expected.total_amount)
        drift.extend(
            (f"milestones[{index}].amount_cents", old.amount_cents, new.amount_cents)
            for index, (old, new) in enumerate(zip(milestones, resplit, strict=True))
            if old.amount_cents != new.amount_cents
        )
        if not drift:
            return False, 0

        entries = [
            AuditEntry(
                invoice_id=invoice.id,
                field_name=name,
                old_value=old,
                new_value=new,
                actor=RECONCILIATION_ACTOR,
                reason="Stored total differs from line items",
                recorded_at=reference_time,
            )
            for name, old, new in drift
        ]
        await self._repo.correct_totals(
            invoice.id,
            expected_version=invoice.version,
            expected_revision=invoice.revision,
            totals=expected,
            audit_entries=entries,
            milestones=resplit,
        )
        self._logger.warning(
            "invoice_totals_corrected",
            invoice_id=str(invoice.id),
            fields=[name for name, _, _ in drift],
        )
        return True, len(entries)

    async def reconcile_totals(self, reference_time: datetime) -> ReconciliationResult:
        """Recompute every open invoice's totals from its line items.

        Drifted totals are rewritten with an audit trail, and milestone
        amounts are re-split over their unchanged percentages so they keep
        summing to the corrected total. Invoices whose milestone percentages
        do not sum to 100 are flagged and left alone.
        """
        result = ReconciliationResult()
        invoices = await self._repo.list_invoices(
            statuses=[s for s in InvoiceStatus if s != InvoiceStatus.CANCELLED]
        )
        result.checked = len(invoices)

        async def reconcile(invoice: Invoice) -> tuple[bool, int]:
            return await self._reconcile_one(invoice, reference_time)

        outcome = await run_bounded(
            invoices,
            reconcile,
            operation="reconcile_totals",
            entity_kind=EntityKind.INVOICE,
            entity_id=lambda i: i.id,
            limits=self._limits or SweepLimits.from_settings(),
        )
        for _, (corrected, entries) in outcome.results:
            result.corrected += int(corrected)
            result.audit_entries += entries
        for error in outcome.errors:
            (result.flagged if error.code == IntegrityError.code else result.errors).append(error)
        result.deferred = outcome.deferred

        self._logger.info(
            "reconciliation_completed",
            checked=result.checked,
            corrected=result.corrected,
            flagged=len(result.flagged),
            errors=len(result.errors),
        )
        return result
