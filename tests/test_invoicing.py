"""Tests for invoice creation, resync, pricing and reconciliation."""

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from factories import NOW, TODAY, make_menu, make_quote, seed_invoice

from billing_workflow.errors import IntegrityError, NotFoundError, ValidationError
from billing_workflow.invoicing import RECONCILIATION_ACTOR
from billing_workflow.models import (
    ComplianceLevel,
    DocumentType,
    Invoice,
    InvoiceStatus,
    LineItem,
    MilestoneStatus,
    MilestoneType,
    PaymentMilestone,
    PaymentTransaction,
)


class TestCreateInvoice:
    """Tests for BillingService.create_invoice_from_quote."""

    @pytest.mark.asyncio
    async def test_creates_draft_estimate(self, repo, billing):
        quote = await repo.add_quote(make_quote())

        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)

        invoice = await repo.get_invoice(invoice_id)
        assert invoice.workflow_status == InvoiceStatus.DRAFT
        assert invoice.is_draft is True
        assert invoice.document_type == DocumentType.ESTIMATE
        assert invoice.version == 1
        assert invoice.customer_access_token
        assert invoice.due_date == quote.event_date - timedelta(days=14)
        assert len(await repo.list_line_items(invoice_id)) == 8
        milestones = await repo.list_milestones(invoice_id=invoice_id)
        assert [m.milestone_type for m in milestones] == [
            MilestoneType.DEPOSIT,
            MilestoneType.MILESTONE,
            MilestoneType.FINAL,
        ]

    @pytest.mark.asyncio
    async def test_government_quote_is_tax_exempt_net30(self, repo, billing):
        quote = await repo.add_quote(
            make_quote(event_in_days=10, compliance_level=ComplianceLevel.GOVERNMENT)
        )
        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)
        items = await repo.list_line_items(invoice_id)

        invoice = await billing.price_line_items(invoice_id, {i.id: 1000 for i in items}, TODAY)

        assert invoice.is_tax_exempt is True
        assert invoice.tax_amount == 0
        assert invoice.total_amount == invoice.subtotal
        assert invoice.due_date == quote.event_date + timedelta(days=30)
        milestones = await repo.list_milestones(invoice_id=invoice_id)
        assert len(milestones) == 1
        assert milestones[0].is_net30 is True

    @pytest.mark.asyncio
    async def test_po_number_makes_quote_government(self, repo, billing):
        quote = await repo.add_quote(make_quote(requires_po_number=True))

        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)

        assert (await repo.get_invoice(invoice_id)).is_tax_exempt is True

    @pytest.mark.asyncio
    async def test_existing_draft_is_reused(self, repo, billing):
        quote = await repo.add_quote(make_quote())

        first = await billing.create_invoice_from_quote(quote.id, TODAY)
        second = await billing.create_invoice_from_quote(quote.id, TODAY)

        assert first == second
        assert len(await repo.list_invoices(quote_id=quote.id)) == 1
        assert (await repo.get_invoice(first)).version == 2

    @pytest.mark.asyncio
    async def test_non_draft_invoice_blocks_creation(self, repo, billing):
        quote = make_quote()
        await seed_invoice(repo, quote, status=InvoiceStatus.SENT)

        with pytest.raises(IntegrityError):
            await billing.create_invoice_from_quote(quote.id, TODAY)

    @pytest.mark.asyncio
    async def test_missing_event_date(self, repo, billing):
        quote = await repo.add_quote(make_quote(event_date=None))

        with pytest.raises(ValidationError):
            await billing.create_invoice_from_quote(quote.id, TODAY)

    @pytest.mark.asyncio
    async def test_unknown_quote(self, billing):
        with pytest.raises(NotFoundError):
            await billing.create_invoice_from_quote(uuid4(), TODAY)


class TestPriceAndResync:
    """Tests for manual pricing and quote-driven resync."""

    @pytest.mark.asyncio
    async def test_pricing_recomputes_totals_and_milestones(self, repo, billing):
        quote = await repo.add_quote(make_quote())
        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)
        items = await repo.list_line_items(invoice_id)

        invoice = await billing.price_line_items(invoice_id, {i.id: 1000 for i in items}, TODAY)

        subtotal = sum(i.quantity for i in items) * 1000
        assert invoice.subtotal == subtotal
        assert invoice.tax_amount == round(subtotal * 0.08)
        assert invoice.total_amount == invoice.subtotal + invoice.tax_amount
        assert invoice.version == 1
        milestones = await repo.list_milestones(invoice_id=invoice_id)
        assert sum(m.amount_cents for m in milestones) == invoice.total_amount

    @pytest.mark.asyncio
    async def test_partial_pricing_keeps_other_prices(self, repo, billing):
        quote = await repo.add_quote(make_quote())
        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)
        items = await repo.list_line_items(invoice_id)
        await billing.price_line_items(invoice_id, {items[0].id: 1800}, TODAY)

        await billing.price_line_items(invoice_id, {items[1].id: 600}, TODAY)

        priced = {i.id: i.unit_price for i in await repo.list_line_items(invoice_id)}
        assert priced[items[0].id] == 1800
        assert priced[items[1].id] == 600

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", [-1, 12.5, "1000", True])
    async def test_bad_price_rejected(self, repo, billing, price):
        quote = await repo.add_quote(make_quote())
        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)
        items = await repo.list_line_items(invoice_id)

        with pytest.raises(ValidationError):
            await billing.price_line_items(invoice_id, {items[0].id: price}, TODAY)

    @pytest.mark.asyncio
    async def test_foreign_line_item_rejected(self, repo, billing):
        quote = await repo.add_quote(make_quote())
        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)

        with pytest.raises(ValidationError) as exc_info:
            await billing.price_line_items(invoice_id, {uuid4(): 100}, TODAY)

        assert exc_info.value.details["invoice_id"] == str(invoice_id)

    @pytest.mark.asyncio
    async def test_resync_after_menu_change(self, repo, billing):
        quote = await repo.add_quote(make_quote())
        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)
        items = await repo.list_line_items(invoice_id)
        await billing.price_line_items(invoice_id, {i.id: 1000 for i in items}, TODAY)
        await repo.add_quote(replace(quote, menu=make_menu(desserts=[])))

        result = await billing.resync_invoice(invoice_id, quote.id, TODAY)

        assert result.line_item_count == 7
        assert result.version == 2
        assert result.total_amount == result.subtotal + result.tax_amount
        assert result.subtotal == sum(i.total_price for i in await repo.list_line_items(invoice_id))

    @pytest.mark.asyncio
    async def test_resync_with_wrong_quote(self, repo, billing):
        quote = await repo.add_quote(make_quote())
        other = await repo.add_quote(make_quote())
        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)

        with pytest.raises(ValidationError):
            await billing.resync_invoice(invoice_id, other.id, TODAY)


class TestReconcileTotals:
    """Tests for the nightly reconciliation."""

    @pytest.mark.asyncio
    async def test_consistent_invoices_untouched(self, repo, billing):
        await seed_invoice(repo, make_quote())

        result = await billing.reconcile_totals(NOW)

        assert result.checked == 1
        assert result.corrected == 0
        assert await repo.list_audit_entries() == []

    @pytest.mark.asyncio
    async def test_drifted_totals_corrected_with_audit(self, repo, billing):
        invoice = await seed_invoice(repo, make_quote(), total=100000, subtotal=90000, total_amount=90000)

        result = await billing.reconcile_totals(NOW)

        assert result.corrected == 1
        assert result.audit_entries == 3
        stored = await repo.get_invoice(invoice.id)
        assert (stored.subtotal, stored.total_amount) == (100000, 100000)
        entries = await repo.list_audit_entries(invoice.id)
        assert {(e.field_name, e.old_value, e.new_value) for e in entries} == {
            ("subtotal", 90000, 100000),
            ("total_amount", 90000, 100000),
            ("milestones[0].amount_cents", 90000, 100000),
        }
        assert all(e.actor == RECONCILIATION_ACTOR and e.recorded_at == NOW for e in entries)

        again = await billing.reconcile_totals(NOW)

        assert again.corrected == 0

    @pytest.mark.asyncio
    async def test_milestones_resplit_to_corrected_total(self, repo, billing):
        quote = await repo.add_quote(make_quote())
        invoice = Invoice(quote_id=quote.id, subtotal=90000, total_amount=90000, is_tax_exempt=True)
        milestones = [
            PaymentMilestone(
                invoice_id=invoice.id,
                milestone_type=milestone_type,
                percentage=percentage,
                amount_cents=amount,
                due_date=TODAY + timedelta(days=days),
                is_due_now=False,
            )
            for milestone_type, percentage, amount, days in (
                (MilestoneType.DEPOSIT, 25, 22500, 5),
                (MilestoneType.BALANCE, 75, 67500, 30),
            )
        ]
        item = LineItem(title="Entree Meals", category="package", quantity=1, unit_price=100000, total_price=100000)
        await repo.create_invoice(invoice, [item], milestones)
        await repo.add_payment(PaymentTransaction(invoice_id=invoice.id, amount_cents=30000, external_id="pi_1"))

        result = await billing.reconcile_totals(NOW)

        stored = await repo.list_milestones(invoice_id=invoice.id)
        assert result.corrected == 1
        assert (await repo.get_invoice(invoice.id)).total_amount == 100000
        assert [m.amount_cents for m in stored] == [25000, 75000]
        assert [m.percentage for m in stored] == [25, 75]
        assert [m.status for m in stored] == [MilestoneStatus.PAID, MilestoneStatus.PENDING]
        entries = {e.field_name: (e.old_value, e.new_value) for e in await repo.list_audit_entries(invoice.id)}
        assert entries["milestones[0].amount_cents"] == (22500, 25000)
        assert entries["milestones[1].amount_cents"] == (67500, 75000)

    @pytest.mark.asyncio
    async def test_resplit_reopens_milestone_no_longer_covered(self, repo, billing):
        invoice = await seed_invoice(repo, make_quote(), total=100000, subtotal=90000, total_amount=90000)
        await repo.add_payment(PaymentTransaction(invoice_id=invoice.id, amount_cents=90000, external_id="pi_1"))
        milestone = (await repo.list_milestones(invoice_id=invoice.id))[0]
        await repo.update_milestone_statuses(invoice.id, {milestone.id: MilestoneStatus.PAID})

        await billing.reconcile_totals(NOW)

        stored = (await repo.list_milestones(invoice_id=invoice.id))[0]
        assert stored.amount_cents == 100000
        assert stored.status == MilestoneStatus.PENDING

    @pytest.mark.asyncio
    async def test_correction_from_stale_read_is_rejected(self, repo, billing, monkeypatch):
        quote = await repo.add_quote(make_quote())
        invoice_id = await billing.create_invoice_from_quote(quote.id, TODAY)
        listed_before_pricing = await repo.list_invoices()
        items = await repo.list_line_items(invoice_id)
        priced = await billing.price_line_items(invoice_id, {i.id: 1000 for i in items}, TODAY)
        monkeypatch.setattr(repo, "list_invoices", AsyncMock(return_value=listed_before_pricing))

        result = await billing.reconcile_totals(NOW)

        assert result.corrected == 0
        assert [e.code for e in result.errors] == ["concurrency_error"]
        stored = await repo.get_invoice(invoice_id)
        assert stored.subtotal == priced.subtotal
        assert stored.subtotal == sum(i.total_price for i in await repo.list_line_items(invoice_id))
        assert sum(m.amount_cents for m in await repo.list_milestones(invoice_id=invoice_id)) == stored.total_amount
        assert await repo.list_audit_entries() == []

    @pytest.mark.asyncio
    async def test_taxable_invoice_recomputes_tax(self, repo, billing):
        invoice = await seed_invoice(repo, make_quote(), total=10000, is_tax_exempt=False)

        await billing.reconcile_totals(NOW)

        stored = await repo.get_invoice(invoice.id)
        assert stored.tax_amount == 800
        assert stored.total_amount == 10800

    @pytest.mark.asyncio
    async def test_bad_milestones_are_flagged_not_corrected(self, repo, billing):
        quote = await repo.add_quote(make_quote())
        invoice = Invoice(quote_id=quote.id, subtotal=1, total_amount=1, is_tax_exempt=True)
        milestone = PaymentMilestone(
            invoice_id=invoice.id,
            milestone_type=MilestoneType.FULL,
            percentage=95,
            amount_cents=500,
            due_date=None,
            is_due_now=True,
        )
        item = LineItem(title="Desserts", category="desserts", quantity=1, unit_price=500, total_price=500)
        await repo.create_invoice(invoice, [item], [milestone])

        result = await billing.reconcile_totals(NOW)

        assert result.corrected == 0
        assert len(result.flagged) == 1
        assert result.flagged[0].entity_id == invoice.id
        assert result.errors == []
        assert (await repo.get_invoice(invoice.id)).subtotal == 1

    @pytest.mark.asyncio
    async def test_cancelled_invoices_skipped(self, repo, billing):
        await seed_invoice(repo, make_quote(), status=InvoiceStatus.CANCELLED, subtotal=5)

        result = await billing.reconcile_totals(NOW)

        assert result.checked == 0
