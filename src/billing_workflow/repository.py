"""Persistence boundary for the billing engine.

``BillingRepository`` is the narrow contract the engine needs from the
database. Multi-row changes that must land together (a status change and its
StateLog row, a line-item regeneration and the invoice totals) are single
methods so an implementation can wrap each in one transaction.

Every invoice write bumps the row's ``revision``. Writes that replace totals
(regeneration, reconciliation) compare both ``version`` and ``revision`` with
the values the caller read, so a correction computed from stale rows fails
with ConcurrencyError instead of overwriting newer pricing.

``InMemoryRepository`` is the reference implementation used by the tests and
by the command-line runner's JSON state file.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Protocol, TypeVar
from uuid import UUID

import structlog
from pydantic import TypeAdapter

from billing_workflow.errors import ConcurrencyError, IntegrityError, NotFoundError
from billing_workflow.models import (
    AuditEntry,
    EntityKind,
    Invoice,
    InvoiceStatus,
    LineItem,
    MilestoneStatus,
    PaymentMilestone,
    PaymentTransaction,
    Quote,
    QuoteStatus,
    ReminderLog,
    ReminderType,
    StateLog,
)
from billing_workflow.tax import TaxBreakdown

logger = structlog.get_logger(__name__)

T = TypeVar("T")
StatusEntity = TypeVar("StatusEntity", Quote, Invoice)

QUOTE_STATUS_FIELDS = ("workflow_status", "last_status_change", "status_changed_by")
INVOICE_STATUS_FIELDS = QUOTE_STATUS_FIELDS + ("is_draft", "document_type")


class BillingRepository(Protocol):
    """Async persistence operations consumed by the engine."""

    async def get_quote(self, quote_id: UUID) -> Quote: ...

    async def list_quotes(
        self,
        statuses: Iterable[QuoteStatus] | None = None,
        event_date: date | None = None,
        event_before: date | None = None,
    ) -> list[Quote]: ...

    async def get_invoice(self, invoice_id: UUID) -> Invoice: ...

    async def list_invoices(
        self,
        statuses: Iterable[InvoiceStatus] | None = None,
        due_before: date | None = None,
        quote_id: UUID | None = None,
    ) -> list[Invoice]: ...

    async def list_line_items(self, invoice_id: UUID) -> list[LineItem]: ...

    async def list_milestones(
        self,
        invoice_id: UUID | None = None,
        statuses: Iterable[MilestoneStatus] | None = None,
        due_from: date | None = None,
        due_to: date | None = None,
    ) -> list[PaymentMilestone]: ...

    async def create_invoice(
        self,
        invoice: Invoice,
        line_items: list[LineItem],
        milestones: list[PaymentMilestone],
    ) -> Invoice: ...

    async def regenerate_invoice(
        self,
        invoice_id: UUID,
        *,
        expected_version: int,
        expected_revision: int,
        line_items: list[LineItem],
        totals: TaxBreakdown,
        milestones: list[PaymentMilestone],
        due_date: date | None,
        bump_version: bool = True,
    ) -> Invoice: ...

    async def save_transition(
        self,
        kind: EntityKind,
        entity: StatusEntity,
        expected_status: str,
        log: StateLog,
    ) -> StatusEntity: ...

    async def list_state_logs(self, entity_id: UUID | None = None) -> list[StateLog]: ...

    async def add_payment(self, payment: PaymentTransaction) -> PaymentTransaction: ...

    async def find_payment(self, external_id: str) -> PaymentTransaction | None: ...

    async def list_payments(self, invoice_id: UUID) -> list[PaymentTransaction]: ...

    async def update_milestone_statuses(
        self, invoice_id: UUID, statuses: dict[UUID, MilestoneStatus]
    ) -> None: ...

    async def find_reminder_logs(
        self,
        entity_id: UUID,
        reminder_type: ReminderType,
        since: datetime | None = None,
    ) -> list[ReminderLog]: ...

    async def append_reminder_log(self, log: ReminderLog) -> ReminderLog: ...

    async def correct_totals(
        self,
        invoice_id: UUID,
        *,
        expected_version: int,
        expected_revision: int,
        totals: TaxBreakdown,
        audit_entries: list[AuditEntry],
        milestones: list[PaymentMilestone] | None = None,
    ) -> Invoice: ...

    async def list_audit_entries(self, invoice_id: UUID | None = None) -> list[AuditEntry]: ...


@dataclass
class RepositorySnapshot:
    """Serializable dump of every collection in an InMemoryRepository."""

    quotes: list[Quote] = field(default_factory=list)
    invoices: list[Invoice] = field(default_factory=list)
    line_items: list[LineItem] = field(default_factory=list)
    milestones: list[PaymentMilestone] = field(default_factory=list)
    payments: list[PaymentTransaction] = field(default_factory=list)
    state_logs: list[StateLog] = field(default_factory=list)
    reminder_logs: list[ReminderLog] = field(default_factory=list)
    audit_entries: list[AuditEntry] = field(default_factory=list)


_SNAPSHOT_ADAPTER = TypeAdapter(RepositorySnapshot)


class InMemoryRepository:
    """Dict-backed BillingRepository.

    One asyncio lock serializes every write unit; reads and writes hand out
    deep copies so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._quotes: dict[UUID, Quote] = {}
        self._invoices: dict[UUID, Invoice] = {}
        self._line_items: dict[UUID, list[LineItem]] = {}
        self._milestones: dict[UUID, list[PaymentMilestone]] = {}
        self._payments: list[PaymentTransaction] = []
        self._state_logs: list[StateLog] = []
        self._reminder_logs: list[ReminderLog] = []
        self._audit_entries: list[AuditEntry] = []
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(value: T) -> T:
        return copy.deepcopy(value)

    # === Snapshots ===

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> InMemoryRepository:
        """Build a repository from JSON-compatible snapshot data."""
        snapshot = _SNAPSHOT_ADAPTER.validate_python(data)
        repo = cls()
        repo._quotes = {q.id: q for q in snapshot.quotes}
        repo._invoices = {i.id: i for i in snapshot.invoices}
        for item in snapshot.line_items:
            if item.invoice_id is not None:
                repo._line_items.setdefault(item.invoice_id, []).append(item)
        for milestone in snapshot.milestones:
            repo._milestones.setdefault(milestone.invoice_id, []).append(milestone)
        repo._payments = list(snapshot.payments)
        repo._state_logs = list(snapshot.state_logs)
        repo._reminder_logs = list(snapshot.reminder_logs)
        repo._audit_entries = list(snapshot.audit_entries)
        return repo

    def snapshot(self) -> dict[str, Any]:
        """Dump the store to JSON-compatible data."""
        snapshot = RepositorySnapshot(
            quotes=list(self._quotes.values()),
            invoices=list(self._invoices.values()),
            line_items=[i for items in self._line_items.values() for i in items],
            milestones=[m for ms in self._milestones.values() for m in ms],
            payments=self._payments,
            state_logs=self._state_logs,
            reminder_logs=self._reminder_logs,
            audit_entries=self._audit_entries,
        )
        return _SNAPSHOT_ADAPTER.dump_python(snapshot, mode="json")

    # === Quotes ===

    async def add_quote(self, quote: Quote) -> Quote:
        async with self._lock:
            self._quotes[quote.id] = self._copy(quote)
        return self._copy(quote)

    async def get_quote(self, quote_id: UUID) -> Quote:
        quote = self._quotes.get(quote_id)
        if quote is None:
            raise NotFoundError(f"Quote {quote_id} not found", details={"quote_id": str(quote_id)})
        return self._copy(quote)

    async def list_quotes(
        self,
        statuses: Iterable[QuoteStatus] | None = None,
        event_date: date | None = None,
        event_before: date | None = None,
    ) -> list[Quote]:
        wanted = set(statuses) if statuses is not None else None
        result = []
        for quote in self._quotes.values():
            if wanted is not None and quote.workflow_status not in wanted:
                continue
            if event_date is not None and quote.event_date != event_date:
                continue
            if event_before is not None and (quote.event_date is None or quote.event_date >= event_before):
                continue
            result.append(self._copy(quote))
        return result

    # === Invoices ===

    async def get_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise NotFoundError(
                f"Invoice {invoice_id} not found", details={"invoice_id": str(invoice_id)}
            )
        return self._copy(invoice)

    async def list_invoices(
        self,
        statuses: Iterable[InvoiceStatus] | None = None,
        due_before: date | None = None,
        quote_id: UUID | None = None,
    ) -> list[Invoice]:
        wanted = set(statuses) if statuses is not None else None
        result = []
        for invoice in self._invoices.values():
            if wanted is not None and invoice.workflow_status not in wanted:
                continue
            if due_before is not None and (invoice.due_date is None or invoice.due_date >= due_before):
                continue
            if quote_id is not None and invoice.quote_id != quote_id:
                continue
            result.append(self._copy(invoice))
        return result

    async def list_line_items(self, invoice_id: UUID) -> list[LineItem]:
        items = self._line_items.get(invoice_id, [])
        return [self._copy(i) for i in sorted(items, key=lambda i: i.sort_order)]

    async def list_milestones(
        self,
        invoice_id: UUID | None = None,
        statuses: Iterable[MilestoneStatus] | None = None,
        due_from: date | None = None,
        due_to: date | None = None,
    ) -> list[PaymentMilestone]:
        wanted = set(statuses) if statuses is not None else None
        if invoice_id is not None:
            pool = self._milestones.get(invoice_id, [])
        else:
            pool = [m for ms in self._milestones.values() for m in ms]
        result = []
        for milestone in pool:
            if wanted is not None and milestone.status not in wanted:
                continue
            if due_from is not None and (milestone.due_date is None or milestone.due_date < due_from):
                continue
            if due_to is not None and (milestone.due_date is None or milestone.due_date > due_to):
                continue
            result.append(self._copy(milestone))
        return result

    def _has_other_primary_invoice(self, quote_id: UUID, invoice_id: UUID) -> bool:
        return any(
            other.quote_id == quote_id and not other.is_draft and other.id != invoice_id
            for other in self._invoices.values()
        )

    async def create_invoice(
        self,
        invoice: Invoice,
        line_items: list[LineItem],
        milestones: list[PaymentMilestone],
    ) -> Invoice:
        async with self._lock:
            if invoice.quote_id not in self._quotes:
                raise NotFoundError(
                    f"Quote {invoice.quote_id} not found",
                    details={"quote_id": str(invoice.quote_id)},
                )
            if not invoice.is_draft and self._has_other_primary_invoice(invoice.quote_id, invoice.id):
                raise IntegrityError(
                    "quote already has a non-draft invoice",
                    details={"quote_id": str(invoice.quote_id)},
                )
            self._invoices[invoice.id] = self._copy(invoice)
            self._line_items[invoice.id] = [
                replace(self._copy(item), invoice_id=invoice.id) for item in line_items
            ]
            self._milestones[invoice.id] = [
                replace(self._copy(m), invoice_id=invoice.id) for m in milestones
            ]
        logger.debug("invoice_created", invoice_id=str(invoice.id), quote_id=str(invoice.quote_id))
        return self._copy(invoice)

    def _check_version(self, invoice_id: UUID, expected_version: int, expected_revision: int) -> Invoice:
        current = self._invoices.get(invoice_id)
        if current is None:
            raise NotFoundError(
                f"Invoice {invoice_id} not found", details={"invoice_id": str(invoice_id)}
            )
        if current.version != expected_version or current.revision != expected_revision:
            raise ConcurrencyError(
                f"Invoice {invoice_id} changed concurrently",
                details={
                    "invoice_id": str(invoice_id),
                    "expected_version": expected_version,
                    "actual_version": current.version,
                    "expected_revision": expected_revision,
                    "actual_revision": current.revision,
                },
            )
        return current

    async def regenerate_invoice(
        self,
        invoice_id: UUID,
        *,
        expected_version: int,
        expected_revision: int,
        line_items: list[LineItem],
        totals: TaxBreakdown,
        milestones: list[PaymentMilestone],
        due_date: date | None,
        bump_version: bool = True,
    ) -> Invoice:
        async with self._lock:
            current = self._check_version(invoice_id, expected_version, expected_revision)
            updated = replace(
                current,
                subtotal=totals.subtotal,
                tax_amount=totals.tax_amount,
                total_amount=totals.total_amount,
                is_tax_exempt=totals.is_exempt,
                due_date=due_date,
                version=current.version + 1 if bump_version else current.version,
                revision=current.revision + 1,
            )
            self._line_items[invoice_id] = [
                replace(self._copy(item), invoice_id=invoice_id) for item in line_items
            ]
            self._milestones[invoice_id] = [
                replace(self._copy(m), invoice_id=invoice_id) for m in milestones
            ]
            self._invoices[invoice_id] = updated
        return self._copy(updated)

    async def save_transition(
        self,
        kind: EntityKind,
        entity: StatusEntity,
        expected_status: str,
        log: StateLog,
    ) -> StatusEntity:
        store: dict[UUID, Any] = self._quotes if kind == EntityKind.QUOTE else self._invoices
        async with self._lock:
            current = store.get(entity.id)
            if current is None:
                raise NotFoundError(
                    f"{kind.value.title()} {entity.id} not found",
                    details={"entity_id": str(entity.id)},
                )
            if current.workflow_status != expected_status:
                raise ConcurrencyError(
                    f"{kind.value.title()} {entity.id} status changed concurrently",
                    details={
                        "entity_id": str(entity.id),
                        "expected_status": str(expected_status),
                        "actual_status": current.workflow_status.value,
                    },
                )
            if (
                kind == EntityKind.INVOICE
                and not entity.is_draft
                and self._has_other_primary_invoice(entity.quote_id, entity.id)
            ):
                raise IntegrityError(
                    "quote already has a non-draft invoice",
                    details={"quote_id": str(entity.quote_id)},
                )
            # Only the status columns come from the caller's copy; anything
            # else written since it was read stays as stored.
            fields = INVOICE_STATUS_FIELDS if kind == EntityKind.INVOICE else QUOTE_STATUS_FIELDS
            updated = replace(current, **{name: getattr(entity, name) for name in fields})
            if kind == EntityKind.INVOICE:
                updated.revision = current.revision + 1
            store[entity.id] = updated
            self._state_logs.append(self._copy(log))
        return self._copy(updated)

    async def list_state_logs(self, entity_id: UUID | None = None) -> list[StateLog]:
        return [
            self._copy(log)
            for log in self._state_logs
            if entity_id is None or log.entity_id == entity_id
        ]

    # === Payments ===

    async def add_payment(self, payment: PaymentTransaction) -> PaymentTransaction:
        async with self._lock:
            if any(p.external_id == payment.external_id for p in self._payments):
                raise IntegrityError(
                    "payment already recorded",
                    details={"external_id": payment.external_id},
                )
            self._payments.append(self._copy(payment))
        return self._copy(payment)

    async def find_payment(self, external_id: str) -> PaymentTransaction | None:
        for payment in self._payments:
            if payment.external_id == external_id:
                return self._copy(payment)
        return None

    async def list_payments(self, invoice_id: UUID) -> list[PaymentTransaction]:
        return [self._copy(p) for p in self._payments if p.invoice_id == invoice_id]

    async def update_milestone_statuses(
        self, invoice_id: UUID, statuses: dict[UUID, MilestoneStatus]
    ) -> None:
        async with self._lock:
            for milestone in self._milestones.get(invoice_id, []):
                if milestone.id in statuses:
                    milestone.status = statuses[milestone.id]
            invoice = self._invoices.get(invoice_id)
            if invoice is not None:
                invoice.revision += 1

    # === Reminders ===

    async def find_reminder_logs(
        self,
        entity_id: UUID,
        reminder_type: ReminderType,
        since: datetime | None = None,
    ) -> list[ReminderLog]:
        return [
            self._copy(log)
            for log in self._reminder_logs
            if log.entity_id == entity_id
            and log.reminder_type == reminder_type
            and (since is None or log.sent_at >= since)
        ]

    async def append_reminder_log(self, log: ReminderLog) -> ReminderLog:
        async with self._lock:
            self._reminder_logs.append(self._copy(log))
            invoice = self._invoices.get(log.invoice_id) if log.invoice_id else None
            if invoice is not None:
                invoice.reminder_count += 1
                invoice.last_reminder_sent_at = log.sent_at
                invoice.revision += 1
        return self._copy(log)

    async def list_reminder_logs(self) -> list[ReminderLog]:
        return [self._copy(log) for log in self._reminder_logs]

    # === Reconciliation ===

    async def correct_totals(
        self,
        invoice_id: UUID,
        *,
        expected_version: int,
        expected_revision: int,
        totals: TaxBreakdown,
        audit_entries: list[AuditEntry],
        milestones: list[PaymentMilestone] | None = None,
    ) -> Invoice:
        async with self._lock:
            current = self._check_version(invoice_id, expected_version, expected_revision)
            updated = replace(
                current,
                subtotal=totals.subtotal,
                tax_amount=totals.tax_amount,
                total_amount=totals.total_amount,
                revision=current.revision + 1,
            )
            if milestones is not None:
                self._milestones[invoice_id] = [
                    replace(self._copy(m), invoice_id=invoice_id) for m in milestones
                ]
            self._invoices[invoice_id] = updated
            self._audit_entries.extend(self._copy(entry) for entry in audit_entries)
        return self._copy(updated)

    async def list_audit_entries(self, invoice_id: UUID | None = None) -> list[AuditEntry]:
        return [
            self._copy(entry)
            for entry in self._audit_entries
            if invoice_id is None or entry.invoice_id == invoice_id
        ]
