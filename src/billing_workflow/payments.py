"""Reaction to the payment processor's "payment completed" signal.

The processor may deliver the same signal more than once; payments are keyed
by the processor's ``external_id`` so a redelivery changes nothing.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import structlog

from billing_workflow.errors import IntegrityError, ValidationError
from billing_workflow.models import (
    InvoiceStatus,
    MilestoneStatus,
    PaymentMilestone,
    PaymentStatus,
    PaymentTransaction,
)
from billing_workflow.repository import BillingRepository
from billing_workflow.workflow import (
    INVOICE_MACHINE,
    PAID_TOLERANCE_CENTS,
    ActorRole,
    WorkflowService,
)

logger = structlog.get_logger(__name__)

PAYMENT_ACTOR = "payment_processor"


@dataclass
class PaymentResult:
    invoice_id: UUID
    external_id: str
    duplicate: bool
    paid_cents: int
    invoice_status: InvoiceStatus
    milestones_paid: int = 0


def apply_waterfall(milestones: list[PaymentMilestone], paid_cents: int) -> dict[UUID, MilestoneStatus]:
    """Milestone statuses after applying ``paid_cents`` to the earliest first."""
    remaining = paid_cents
    statuses = {}
    for milestone in milestones:
        if remaining >= milestone.amount_cents:
            statuses[milestone.id] = MilestoneStatus.PAID
            remaining -= milestone.amount_cents
        else:
            statuses[milestone.id] = MilestoneStatus.PENDING
            remaining = 0
    return statuses


class PaymentProcessor:
    def __init__(self, repository: BillingRepository, workflow: WorkflowService | None = None):
        self._repo = repository
        self._workflow = workflow or WorkflowService(repository)
        self._logger = logger.bind(component="payments")

    async def _paid_cents(self, invoice_id: UUID) -> int:
        payments = await self._repo.list_payments(invoice_id)
        return sum(p.amount_cents for p in payments if p.status == PaymentStatus.COMPLETED)

    async def record_payment(
        self,
        invoice_id: UUID,
        amount_cents: int,
        external_id: str,
        reference_time: datetime,
    ) -> PaymentResult:
        """Record a completed payment and move the invoice accordingly.

        Milestones are marked paid earliest-first; the invoice becomes
        ``paid`` once completed payments reach the total (less one cent of
        rounding slack), otherwise ``partially_paid`` where the table allows.

        Raises:
            ValidationError: Bad amount or external id, or the invoice is
                cancelled.
            NotFoundError: The invoice does not exist.
            IntegrityError: ``external_id`` was already recorded for a
                different invoice.
        """
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationError(
                "payment amount must be a positive integer number of cents",
                details={"amount_cents": repr(amount_cents)},
            )
        if not external_id:
            raise ValidationError("payment external_id is required")

        existing = await self._repo.find_payment(external_id)
        if existing is not None:
            return await self._duplicate(existing, invoice_id)

        invoice = await self._repo.get_invoice(invoice_id)
        if invoice.workflow_status == InvoiceStatus.CANCELLED:
            raise ValidationError(
                "cannot record a payment against a cancelled invoice",
                details={"invoice_id": str(invoice_id), "external_id": external_id},
            )

        try:
            await self._repo.add_payment(
                PaymentTransaction(
                    invoice_id=invoice_id,
                    amount_cents=amount_cents,
                    external_id=external_id,
                    recorded_at=reference_time,
                )
            )
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same signal.
            existing = await self._repo.find_payment(external_id)
            if existing is None:
                raise
            return await self._duplicate(existing, invoice_id)

        paid = await self._paid_cents(invoice_id)
        milestones = await self._repo.list_milestones(invoice_id=invoice_id)
        statuses = apply_waterfall(milestones, paid)
        await self._repo.update_milestone_statuses(invoice_id, statuses)

        target = (
            InvoiceStatus.PAID
            if paid >= invoice.total_amount - PAID_TOLERANCE_CENTS
            else InvoiceStatus.PARTIALLY_PAID
        )
        status = invoice.workflow_status
        if target == status or target in INVOICE_MACHINE.allowed_targets(status, ActorRole.SYSTEM):
            outcome = await self._workflow.transition_invoice(
                invoice_id,
                target,
                actor=PAYMENT_ACTOR,
                role=ActorRole.SYSTEM,
                reason=f"Payment {external_id} received",
                reference_time=reference_time,
            )
            status = outcome.entity.workflow_status
        else:
            self._logger.warning(
                "payment_status_unchanged",
                invoice_id=str(invoice_id),
                status=status.value,
                wanted=target.value,
            )

        self._logger.info(
            "payment_recorded",
            invoice_id=str(invoice_id),
            external_id=external_id,
            amount_cents=amount_cents,
            paid_cents=paid,
            total_amount=invoice.total_amount,
            invoice_status=status.value,
        )
        return PaymentResult(
            invoice_id=invoice_id,
            external_id=external_id,
            duplicate=False,
            paid_cents=paid,
            invoice_status=status,
            milestones_paid=sum(1 for s in statuses.values() if s == MilestoneStatus.PAID),
        )

    async def _duplicate(self, existing: PaymentTransaction, invoice_id: UUID) -> PaymentResult:
        if existing.invoice_id != invoice_id:
            raise IntegrityError(
                "payment already recorded for a different invoice",
                details={
                    "external_id": existing.external_id,
                    "invoice_id": str(invoice_id),
                    "recorded_invoice_id": str(existing.invoice_id),
                },
            )
        invoice = await self._repo.get_invoice(invoice_id)
        milestones = await self._repo.list_milestones(invoice_id=invoice_id)
        self._logger.info(
            "payment_duplicate_ignored", invoice_id=str(invoice_id), external_id=existing.external_id
        )
        return PaymentResult(
            invoice_id=invoice_id,
            external_id=existing.external_id,
            duplicate=True,
            paid_cents=await self._paid_cents(invoice_id),
            invoice_status=invoice.workflow_status,
            milestones_paid=sum(1 for m in milestones if m.status == MilestoneStatus.PAID),
        )
