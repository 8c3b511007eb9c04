"""Domain records for quotes, invoices and their billing artifacts.

Money is always an ``int`` count of minor currency units (cents).
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from uuid import UUID, uuid4


def utcnow() -> datetime:
    return datetime.now(UTC)


class EntityKind(str, Enum):
    """Entities that carry a workflow status."""

    QUOTE = "quote"
    INVOICE = "invoice"


class QuoteStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    QUOTED = "quoted"
    ESTIMATED = "estimated"
    APPROVED = "approved"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    APPROVED = "approved"
    PAYMENT_PENDING = "payment_pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ComplianceLevel(str, Enum):
    STANDARD = "standard"
    GOVERNMENT = "government"


class DocumentType(str, Enum):
    ESTIMATE = "estimate"
    INVOICE = "invoice"


class MilestoneType(str, Enum):
    DEPOSIT = "DEPOSIT"
    MILESTONE = "MILESTONE"
    BALANCE = "BALANCE"
    FULL = "FULL"
    FINAL = "FINAL"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ReminderType(str, Enum):
    OVERDUE_PAYMENT = "overdue_payment"
    PAYMENT_DUE_SOON = "payment_due_soon"
    EVENT_7_DAY = "event_7_day"
    EVENT_2_DAY = "event_2_day"
    POST_EVENT_THANKYOU = "post_event_thankyou"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass
class MenuSelection:
    """The customer's menu choices, in the order they were picked."""

    proteins: list[str] = field(default_factory=list)
    sides: list[str] = field(default_factory=list)
    appetizers: list[str] = field(default_factory=list)
    desserts: list[str] = field(default_factory=list)
    drinks: list[str] = field(default_factory=list)
    dietary: list[str] = field(default_factory=list)
    supplies: list[str] = field(default_factory=list)
    wait_staff: bool = False
    bussing_tables: bool = False
    ceremony: bool = False
    cocktail_hour: bool = False


@dataclass
class Quote:
    """A customer's event request."""

    contact_name: str
    email: str
    event_name: str
    event_date: date | None
    guest_count: int
    service_type: str
    id: UUID = field(default_factory=uuid4)
    compliance_level: ComplianceLevel = ComplianceLevel.STANDARD
    requires_po_number: bool = False
    menu: MenuSelection = field(default_factory=MenuSelection)
    location: str = ""
    start_time: str | None = None
    workflow_status: QuoteStatus = QuoteStatus.PENDING
    last_status_change: datetime | None = None
    status_changed_by: str | None = None

    @property
    def is_government(self) -> bool:
        return self.compliance_level == ComplianceLevel.GOVERNMENT or self.requires_po_number


@dataclass
class Invoice:
    """Billing document for a quote; an estimate until it is sent."""

    quote_id: UUID
    id: UUID = field(default_factory=uuid4)
    subtotal: int = 0
    tax_amount: int = 0
    total_amount: int = 0
    is_tax_exempt: bool = False
    due_date: date | None = None
    document_type: DocumentType = DocumentType.ESTIMATE
    workflow_status: InvoiceStatus = InvoiceStatus.DRAFT
    is_draft: bool = True
    customer_access_token: str | None = None
    version: int = 1
    # Bumped by every stored write to the row, including status changes.
    revision: int = 0
    reminder_count: int = 0
    last_reminder_sent_at: datetime | None = None
    last_status_change: datetime | None = None
    status_changed_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LineItem:
    title: str
    category: str
    quantity: int
    unit_price: int = 0
    total_price: int = 0
    description: str = ""
    sort_order: int = 0
    id: UUID = field(default_factory=uuid4)
    invoice_id: UUID | None = None


@dataclass
class PaymentMilestone:
    invoice_id: UUID
    milestone_type: MilestoneType
    percentage: int
    amount_cents: int
    due_date: date | None
    is_due_now: bool
    status: MilestoneStatus = MilestoneStatus.PENDING
    is_net30: bool = False
    description: str = ""
    id: UUID = field(default_factory=uuid4)


@dataclass
class PaymentTransaction:
    """A payment the processor reported as completed (or failed)."""

    invoice_id: UUID
    amount_cents: int
    external_id: str
    status: PaymentStatus = PaymentStatus.COMPLETED
    recorded_at: datetime = field(default_factory=utcnow)
    id: UUID = field(default_factory=uuid4)


@dataclass
class StateLog:
    """Audit row written with every workflow status change."""

    entity_kind: EntityKind
    entity_id: UUID
    previous_status: str
    new_status: str
    changed_by: str
    change_reason: str | None = None
    changed_at: datetime = field(default_factory=utcnow)
    id: UUID = field(default_factory=uuid4)


@dataclass
class ReminderLog:
    """Append-only ledger row for a delivered reminder."""

    entity_kind: EntityKind
    entity_id: UUID
    reminder_type: ReminderType
    recipient: str
    urgency: Urgency
    sent_at: datetime = field(default_factory=utcnow)
    invoice_id: UUID | None = None
    id: UUID = field(default_factory=uuid4)


@dataclass
class AuditEntry:
    """Record of a stored value corrected outside the normal workflow."""

    invoice_id: UUID
    field_name: str
    old_value: int
    new_value: int
    actor: str
    reason: str = ""
    recorded_at: datetime = field(default_factory=utcnow)
    id: UUID = field(default_factory=uuid4)
