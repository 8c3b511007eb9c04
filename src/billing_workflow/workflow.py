"""Quote and invoice lifecycles as explicit transition tables.

A status change is legal only when the table holds a ``Transition`` for the
(source, target) pair that the actor's role may perform and whose guard
passes. ``WorkflowService`` is the only writer of ``workflow_status``: it
re-reads the entity, validates against the table and writes the new status
together with its StateLog row in one repository call.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import structlog

from billing_workflow.errors import InvalidTransitionError, ValidationError
from billing_workflow.models import (
    DocumentType,
    EntityKind,
    Invoice,
    InvoiceStatus,
    LineItem,
    PaymentStatus,
    Quote,
    QuoteStatus,
    StateLog,
)
from billing_workflow.repository import BillingRepository

logger = structlog.get_logger(__name__)

# Rounding slack when comparing money received against the invoice total.
PAID_TOLERANCE_CENTS = 1


class ActorRole(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"
    SYSTEM = "system"


ALL_ROLES = frozenset(ActorRole)
STAFF_ROLES = frozenset({ActorRole.ADMIN, ActorRole.SYSTEM})


@dataclass
class TransitionContext:
    """Everything a guard may look at besides the entity itself."""

    actor: str
    role: ActorRole
    reference_time: datetime
    reference_date: date
    reason: str | None = None
    line_items: list[LineItem] = field(default_factory=list)
    paid_cents: int = 0
    linked_invoice_paid: bool = False
    has_other_primary_invoice: bool = False


# A guard returns None when the transition may proceed, otherwise the reason.
Guard = Callable[[Any, TransitionContext], str | None]


@dataclass(frozen=True)
class Transition:
    source: str
    target: str
    roles: frozenset[ActorRole] = ALL_ROLES
    guard: Guard | None = None


def invoice_ready_to_send(invoice: Invoice, ctx: TransitionContext) -> str | None:
    if not invoice.customer_access_token:
        return "invoice has no customer access token"
    if not any(item.quantity > 0 for item in ctx.line_items):
        return "invoice has no line item with a non-zero quantity"
    if ctx.has_other_primary_invoice:
        return "quote already has a non-draft invoice"
    return None


def invoice_fully_paid(invoice: Invoice, ctx: TransitionContext) -> str | None:
    if ctx.paid_cents >= invoice.total_amount - PAID_TOLERANCE_CENTS:
        return None
    return f"completed payments {ctx.paid_cents} do not cover total {invoice.total_amount}"


def invoice_past_due(invoice: Invoice, ctx: TransitionContext) -> str | None:
    if invoice.due_date is None:
        return "invoice has no due date"
    if invoice.due_date >= ctx.reference_date:
        return f"invoice is not due before {ctx.reference_date.isoformat()}"
    return None


def quote_invoice_paid(quote: Quote, ctx: TransitionContext) -> str | None:
    if ctx.linked_invoice_paid:
        return None
    return "quote has no paid invoice"


def _expand(
    sources: Iterable[Enum],
    target: Enum,
    roles: frozenset[ActorRole] = ALL_ROLES,
    guard: Guard | None = None,
) -> list[Transition]:
    return [Transition(s.value, target.value, roles, guard) for s in sources if s != target]


INVOICE_TERMINAL = frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED})
INVOICE_OPEN = [s for s in InvoiceStatus if s not in INVOICE_TERMINAL]
INVOICE_OVERDUE_SOURCES = frozenset(
    {
        InvoiceStatus.SENT,
        InvoiceStatus.VIEWED,
        InvoiceStatus.APPROVED,
        InvoiceStatus.PAYMENT_PENDING,
        InvoiceStatus.PARTIALLY_PAID,
    }
)

INVOICE_TRANSITIONS: list[Transition] = [
    *_expand([InvoiceStatus.DRAFT], InvoiceStatus.SENT, STAFF_ROLES, invoice_ready_to_send),
    *_expand([InvoiceStatus.SENT], InvoiceStatus.VIEWED),
    *_expand(
        [InvoiceStatus.SENT, InvoiceStatus.VIEWED],
        InvoiceStatus.APPROVED,
        frozenset({ActorRole.CUSTOMER, ActorRole.ADMIN}),
    ),
    *_expand([InvoiceStatus.APPROVED], InvoiceStatus.PAYMENT_PENDING),
    *_expand(
        [
            InvoiceStatus.SENT,
            InvoiceStatus.VIEWED,
            InvoiceStatus.APPROVED,
            InvoiceStatus.PAYMENT_PENDING,
            InvoiceStatus.OVERDUE,
        ],
        InvoiceStatus.PARTIALLY_PAID,
        STAFF_ROLES,
    ),
    *_expand(INVOICE_OPEN, InvoiceStatus.PAID, STAFF_ROLES, invoice_fully_paid),
    *_expand(
        sorted(INVOICE_OVERDUE_SOURCES),
        InvoiceStatus.OVERDUE,
        frozenset({ActorRole.SYSTEM}),
        invoice_past_due,
    ),
    *_expand(INVOICE_OPEN, InvoiceStatus.CANCELLED, frozenset({ActorRole.ADMIN})),
]

QUOTE_TERMINAL = frozenset({QuoteStatus.COMPLETED, QuoteStatus.CANCELLED})
QUOTE_OPEN = [s for s in QuoteStatus if s not in QUOTE_TERMINAL]
QUOTE_PRE_CONFIRMED = frozenset(
    {
        QuoteStatus.PENDING,
        QuoteStatus.UNDER_REVIEW,
        QuoteStatus.QUOTED,
        QuoteStatus.ESTIMATED,
        QuoteStatus.APPROVED,
    }
)

QUOTE_TRANSITIONS: list[Transition] = [
    *_expand([QuoteStatus.PENDING], QuoteStatus.UNDER_REVIEW, STAFF_ROLES),
    *_expand([QuoteStatus.UNDER_REVIEW], QuoteStatus.QUOTED, STAFF_ROLES),
    *_expand([QuoteStatus.UNDER_REVIEW, QuoteStatus.QUOTED], QuoteStatus.ESTIMATED, STAFF_ROLES),
    *_expand(
        [QuoteStatus.QUOTED, QuoteStatus.ESTIMATED],
        QuoteStatus.APPROVED,
        frozenset({ActorRole.CUSTOMER, ActorRole.ADMIN}),
    ),
    *_expand([QuoteStatus.APPROVED], QuoteStatus.CONFIRMED, STAFF_ROLES),
    *_expand([QuoteStatus.CONFIRMED], QuoteStatus.IN_PROGRESS, STAFF_ROLES),
    *_expand([QuoteStatus.CONFIRMED, QuoteStatus.IN_PROGRESS], QuoteStatus.COMPLETED, STAFF_ROLES),
    *_expand(
        QUOTE_OPEN,
        QuoteStatus.CANCELLED,
        frozenset({ActorRole.ADMIN, ActorRole.CUSTOMER}),
    ),
    # Payment received confirms the booking whatever stage the quote was at.
    *_expand(
        sorted(QUOTE_PRE_CONFIRMED),
        QuoteStatus.CONFIRMED,
        frozenset({ActorRole.SYSTEM}),
        quote_invoice_paid,
    ),
]

INVOICE_LABELS = {
    InvoiceStatus.DRAFT: "Draft",
    InvoiceStatus.SENT: "Sent to Customer",
    InvoiceStatus.VIEWED: "Viewed by Customer",
    InvoiceStatus.APPROVED: "Approved",
    InvoiceStatus.PAYMENT_PENDING: "Awaiting Payment",
    InvoiceStatus.PARTIALLY_PAID: "Partially Paid",
    InvoiceStatus.PAID: "Paid in Full",
    InvoiceStatus.OVERDUE: "Overdue",
    InvoiceStatus.CANCELLED: "Cancelled",
}

QUOTE_LABELS = {
    QuoteStatus.PENDING: "Pending Review",
    QuoteStatus.UNDER_REVIEW: "Under Review",
    QuoteStatus.QUOTED: "Quote Sent",
    QuoteStatus.ESTIMATED: "Estimate Ready",
    QuoteStatus.APPROVED: "Approved by Customer",
    QuoteStatus.CONFIRMED: "Confirmed",
    QuoteStatus.IN_PROGRESS: "Event in Progress",
    QuoteStatus.COMPLETED: "Completed",
    QuoteStatus.CANCELLED: "Cancelled",
}


class WorkflowStateMachine:
    """Transition table for one entity kind."""

    def __init__(
        self,
        kind: EntityKind,
        status_type: type[Enum],
        transitions: Iterable[Transition],
        terminal: Iterable[Enum],
        labels: dict[Any, str],
    ):
        self.kind = kind
        self.status_type = status_type
        self._terminal = frozenset(status_type(s) for s in terminal)
        self._labels = labels
        self._table: dict[tuple[str, str], list[Transition]] = {}
        for transition in transitions:
            self._table.setdefault((transition.source, transition.target), []).append(transition)

    def coerce(self, status: Enum | str) -> Any:
        """Parse a status value, raising ValidationError for unknown values."""
        try:
            return self.status_type(status)
        except ValueError as e:
            raise ValidationError(
                f"unknown {self.kind.value} status '{status}'",
                details={"entity_kind": self.kind.value, "status": str(status)},
            ) from e

    def is_terminal(self, status: Enum | str) -> bool:
        return self.coerce(status) in self._terminal

    def status_label(self, status: Enum | str) -> str:
        return self._labels[self.coerce(status)]

    def allowed_targets(self, source: Enum | str, role: ActorRole | None = None) -> set[Any]:
        """Targets reachable from ``source`` by ``role`` (any role when None).

        Guards are not evaluated.
        """
        source_value = self.coerce(source).value
        return {
            self.status_type(target)
            for (src, target), transitions in self._table.items()
            if src == source_value and any(role is None or role in t.roles for t in transitions)
        }

    def validate(self, entity: Any, target: Enum | str, ctx: TransitionContext) -> Transition:
        """Return the transition that permits moving ``entity`` to ``target``.

        Raises:
            InvalidTransitionError: If no transition exists for the pair, the
                role may not perform it, or every matching guard fails.
        """
        source = self.coerce(entity.workflow_status)
        target_status = self.coerce(target)
        details = {
            "entity_kind": self.kind.value,
            "entity_id": str(entity.id),
            "from_status": source.value,
            "to_status": target_status.value,
            "role": ctx.role.value,
        }

        candidates = self._table.get((source.value, target_status.value), [])
        if not candidates:
            raise InvalidTransitionError(
                f"{self.kind.value} cannot move from {source.value} to {target_status.value}",
                details=details,
            )

        permitted = [t for t in candidates if ctx.role in t.roles]
        if not permitted:
            raise InvalidTransitionError(
                f"role {ctx.role.value} may not move {self.kind.value} "
                f"from {source.value} to {target_status.value}",
                details=details,
            )

        failures = []
        for transition in permitted:
            failure = transition.guard(entity, ctx) if transition.guard else None
            if failure is None:
                return transition
            failures.append(failure)
        raise InvalidTransitionError(
            f"guard rejected {self.kind.value} transition: {'; '.join(failures)}",
            details={**details, "guard_failures": failures},
        )


INVOICE_MACHINE = WorkflowStateMachine(
    EntityKind.INVOICE, InvoiceStatus, INVOICE_TRANSITIONS, INVOICE_TERMINAL, INVOICE_LABELS
)
QUOTE_MACHINE = WorkflowStateMachine(
    EntityKind.QUOTE, QuoteStatus, QUOTE_TRANSITIONS, QUOTE_TERMINAL, QUOTE_LABELS
)


@dataclass
class TransitionOutcome:
    """Result of a transition request; ``changed`` is False for no-ops."""

    entity: Any
    previous_status: str
    changed: bool
    log: StateLog | None = None


# Hooks run after the write commits: (entity, outcome, context).
TransitionHook = Callable[[Any, TransitionOutcome, TransitionContext], Awaitable[None] | None]


class WorkflowService:
    """Applies validated status changes through the repository."""

    def __init__(self, repository: BillingRepository):
        self._repo = repository
        self._hooks: dict[tuple[EntityKind, str], list[TransitionHook]] = {}
        self._logger = logger.bind(component="workflow")

    def register_hook(self, kind: EntityKind, status: Enum | str, callback: TransitionHook) -> None:
        """Run ``callback`` after an entity of ``kind`` enters ``status``."""
        machine = INVOICE_MACHINE if kind == EntityKind.INVOICE else QUOTE_MACHINE
        key = (kind, machine.coerce(status).value)
        self._hooks.setdefault(key, []).append(callback)
        self._logger.debug("hook_registered", entity_kind=kind.value, status=key[1])

    async def _run_hooks(self, kind: EntityKind, outcome: TransitionOutcome, ctx: TransitionContext) -> None:
        status = outcome.entity.workflow_status.value
        for hook in self._hooks.get((kind, status), []):
            try:
                result = hook(outcome.entity, outcome, ctx)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # The transition is already committed.
                self._logger.error(
                    "transition_hook_failed",
                    entity_kind=kind.value,
                    entity_id=str(outcome.entity.id),
                    status=status,
                    error=str(e),
                )

    def _context(
        self,
        actor: str,
        role: ActorRole | str,
        reason: str | None,
        reference_time: datetime,
        reference_date: date | None,
    ) -> TransitionContext:
        try:
            parsed_role = ActorRole(role)
        except ValueError as e:
            raise ValidationError(f"unknown actor role '{role}'", details={"role": str(role)}) from e
        return TransitionContext(
            actor=actor,
            role=parsed_role,
            reason=reason,
            reference_time=reference_time,
            reference_date=reference_date or reference_time.date(),
        )

    async def _commit(
        self,
        machine: WorkflowStateMachine,
        current: Any,
        updated: Any,
        ctx: TransitionContext,
    ) -> TransitionOutcome:
        previous = current.workflow_status
        log = StateLog(
            entity_kind=machine.kind,
            entity_id=current.id,
            previous_status=previous.value,
            new_status=updated.workflow_status.value,
            changed_by=ctx.actor,
            change_reason=ctx.reason,
            changed_at=ctx.reference_time,
        )
        saved = await self._repo.save_transition(machine.kind, updated, previous, log)
        outcome = TransitionOutcome(entity=saved, previous_status=previous.value, changed=True, log=log)
        self._logger.info(
            "status_changed",
            entity_kind=machine.kind.value,
            entity_id=str(current.id),
            from_status=previous.value,
            to_status=updated.workflow_status.value,
            actor=ctx.actor,
            role=ctx.role.value,
        )
        await self._run_hooks(machine.kind, outcome, ctx)
        return outcome

    async def transition_invoice(
        self,
        invoice_id: UUID,
        target: InvoiceStatus | str,
        *,
        actor: str,
        role: ActorRole | str,
        reference_time: datetime,
        reason: str | None = None,
        reference_date: date | None = None,
        only_from: Iterable[InvoiceStatus] | None = None,
    ) -> TransitionOutcome:
        """Move an invoice to ``target``.

        Args:
            invoice_id: Invoice to change.
            target: Requested status.
            actor: Who asked for the change; stored on the StateLog row.
            role: Role of the actor, checked against the table.
            reference_time: Timestamp for the change and the StateLog row.
            reason: Optional free-text reason.
            reference_date: Business "today" for date guards; defaults to
                the date of ``reference_time``.
            only_from: When given, the change is skipped (not rejected)
                unless the freshly read status is one of these.

        Returns:
            TransitionOutcome; same-state requests return ``changed=False``
            and write nothing.
        """
        target_status = INVOICE_MACHINE.coerce(target)
        ctx = self._context(actor, role, reason, reference_time, reference_date)

        invoice = await self._repo.get_invoice(invoice_id)
        current = invoice.workflow_status
        if current == target_status or (only_from is not None and current not in set(only_from)):
            return TransitionOutcome(entity=invoice, previous_status=current.value, changed=False)

        if target_status == InvoiceStatus.SENT:
            ctx.line_items = await self._repo.list_line_items(invoice_id)
            siblings = await self._repo.list_invoices(quote_id=invoice.quote_id)
            ctx.has_other_primary_invoice = any(
                not other.is_draft and other.id != invoice.id for other in siblings
            )
        if target_status == InvoiceStatus.PAID:
            payments = await self._repo.list_payments(invoice_id)
            ctx.paid_cents = sum(p.amount_cents for p in payments if p.status == PaymentStatus.COMPLETED)

        INVOICE_MACHINE.validate(invoice, target_status, ctx)

        updated = replace(
            invoice,
            workflow_status=target_status,
            last_status_change=reference_time,
            status_changed_by=actor,
        )
        if target_status == InvoiceStatus.SENT:
            updated.is_draft = False
            updated.document_type = DocumentType.INVOICE
        return await self._commit(INVOICE_MACHINE, invoice, updated, ctx)

    async def transition_quote(
        self,
        quote_id: UUID,
        target: QuoteStatus | str,
        *,
        actor: str,
        role: ActorRole | str,
        reference_time: datetime,
        reason: str | None = None,
        reference_date: date | None = None,
        only_from: Iterable[QuoteStatus] | None = None,
    ) -> TransitionOutcome:
        """Move a quote to ``target``; same arguments as ``transition_invoice``."""
        target_status = QUOTE_MACHINE.coerce(target)
        ctx = self._context(actor, role, reason, reference_time, reference_date)

        quote = await self._repo.get_quote(quote_id)
        current = quote.workflow_status
        if current == target_status or (only_from is not None and current not in set(only_from)):
            return TransitionOutcome(entity=quote, previous_status=current.value, changed=False)

        if target_status == QuoteStatus.CONFIRMED:
            invoices = await self._repo.list_invoices(quote_id=quote_id)
            ctx.linked_invoice_paid = any(i.workflow_status == InvoiceStatus.PAID for i in invoices)

        QUOTE_MACHINE.validate(quote, target_status, ctx)

        updated = replace(
            quote,
            workflow_status=target_status,
            last_status_change=reference_time,
            status_changed_by=actor,
        )
        return await self._commit(QUOTE_MACHINE, quote, updated, ctx)
