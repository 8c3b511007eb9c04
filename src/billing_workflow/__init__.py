"""Billing Workflow - tax, payment schedules, lifecycle automation and reminders
for a catering quote-to-cash system."""

__version__ = "0.1.0"

from billing_workflow.automation import AutomationScheduler, AutomationSweepResult
from billing_workflow.config import configure_logging, get_settings
from billing_workflow.errors import (
    BillingError,
    ConcurrencyError,
    ExternalServiceError,
    IntegrityError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from billing_workflow.invoicing import BillingService, ReconciliationResult, ResyncResult
from billing_workflow.line_items import LineItemSynchronizer, generate_line_items
from billing_workflow.notifier import HttpNotifier, LoggingNotifier, Notifier
from billing_workflow.payments import PaymentProcessor
from billing_workflow.reminders import ReminderCategory, ReminderDispatcher, ReminderSweepResult
from billing_workflow.repository import BillingRepository, InMemoryRepository
from billing_workflow.schedule import PaymentSchedule, PaymentTier, build_payment_schedule
from billing_workflow.scheduler import ScheduledSweep, SweepScheduler
from billing_workflow.tax import TaxBreakdown, calculate_tax
from billing_workflow.workflow import (
    INVOICE_MACHINE,
    QUOTE_MACHINE,
    ActorRole,
    WorkflowService,
    WorkflowStateMachine,
)

__all__ = [
    # Version
    "__version__",
    # Calculators
    "calculate_tax",
    "TaxBreakdown",
    "build_payment_schedule",
    "PaymentSchedule",
    "PaymentTier",
    "generate_line_items",
    "LineItemSynchronizer",
    # Workflow
    "ActorRole",
    "WorkflowStateMachine",
    "WorkflowService",
    "INVOICE_MACHINE",
    "QUOTE_MACHINE",
    # Sweeps
    "AutomationScheduler",
    "AutomationSweepResult",
    "ReminderCategory",
    "ReminderDispatcher",
    "ReminderSweepResult",
    "SweepScheduler",
    "ScheduledSweep",
    # Services
    "BillingService",
    "ResyncResult",
    "ReconciliationResult",
    "PaymentProcessor",
    # Boundaries
    "BillingRepository",
    "InMemoryRepository",
    "Notifier",
    "HttpNotifier",
    "LoggingNotifier",
    # Errors
    "BillingError",
    "ValidationError",
    "InvalidTransitionError",
    "NotFoundError",
    "IntegrityError",
    "ExternalServiceError",
    "ConcurrencyError",
    # Config
    "get_settings",
    "configure_logging",
]
