"""Time-triggered status sweep.

Three independent steps, each selecting its candidates and then changing
every candidate through ``WorkflowService`` with a fresh read:

1. open invoices past their due date become ``overdue``;
2. quotes whose invoice is ``paid`` become ``confirmed``;
3. confirmed quotes whose event ended before yesterday become ``completed``.

Re-running the sweep is harmless: entities that already moved are skipped
by the ``only_from`` check before anything is written.
"""

import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog

from billing_workflow.concurrency import BatchOutcome, SweepError, SweepLimits, run_bounded
from billing_workflow.models import EntityKind, InvoiceStatus, QuoteStatus
from billing_workflow.repository import BillingRepository
from billing_workflow.workflow import (
    INVOICE_OVERDUE_SOURCES,
    QUOTE_PRE_CONFIRMED,
    ActorRole,
    WorkflowService,
)

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"


@dataclass
class StepResult:
    changed: int = 0
    errors: list[SweepError] = field(default_factory=list)
    deferred: int = 0


@dataclass
class AutomationSweepResult:
    reference_date: date
    marked_overdue: int = 0
    auto_confirmed: int = 0
    auto_completed: int = 0
    errors: list[SweepError] = field(default_factory=list)
    deferred: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_date": self.reference_date.isoformat(),
            "marked_overdue": self.marked_overdue,
            "auto_confirmed": self.auto_confirmed,
            "auto_completed": self.auto_completed,
            "errors": [e.to_dict() for e in self.errors],
            "deferred": self.deferred,
        }


def _step_result(outcome: BatchOutcome[UUID, bool]) -> StepResult:
    return StepResult(
        changed=sum(1 for _, changed in outcome.results if changed),
        errors=outcome.errors,
        deferred=outcome.deferred,
    )


class AutomationScheduler:
    """Stateless, re-entrant sweep over invoice and quote statuses."""

    def __init__(
        self,
        repository: BillingRepository,
        workflow: WorkflowService | None = None,
        limits: SweepLimits | None = None,
    ):
        self._repo = repository
        self._workflow = workflow or WorkflowService(repository)
        self._limits = limits or SweepLimits.from_settings()
        self._logger = logger.bind(component="automation")

    @staticmethod
    def _start_of_day(reference_date: date) -> datetime:
        return datetime.combine(reference_date, datetime.min.time(), tzinfo=UTC)

    async def mark_overdue_invoices(
        self,
        reference_date: date,
        reference_time: datetime | None = None,
        deadline: float | None = None,
    ) -> StepResult:
        """Move open invoices with ``due_date < reference_date`` to overdue."""
        stamp = reference_time or self._start_of_day(reference_date)
        candidates = await self._repo.list_invoices(
            statuses=INVOICE_OVERDUE_SOURCES, due_before=reference_date
        )

        async def mark(invoice_id: UUID) -> bool:
            outcome = await self._workflow.transition_invoice(
                invoice_id,
                InvoiceStatus.OVERDUE,
                actor=SYSTEM_ACTOR,
                role=ActorRole.SYSTEM,
                reason="Payment due date passed",
                reference_time=stamp,
                reference_date=reference_date,
                only_from=INVOICE_OVERDUE_SOURCES,
            )
            if outcome.changed:
                self._logger.info(
                    "invoice_marked_overdue",
                    invoice_id=str(invoice_id),
                    previous_status=outcome.previous_status,
                )
            return outcome.changed

        outcome = await run_bounded(
            [i.id for i in candidates],
            mark,
            operation="mark_overdue",
            entity_kind=EntityKind.INVOICE,
            entity_id=lambda i: i,
            limits=self._limits,
            deadline=deadline,
        )
        return _step_result(outcome)

    async def auto_confirm_paid_quotes(
        self,
        reference_date: date,
        reference_time: datetime | None = None,
        deadline: float | None = None,
    ) -> StepResult:
        """Confirm quotes that have a paid invoice but are not yet confirmed."""
        stamp = reference_time or self._start_of_day(reference_date)
        paid = await self._repo.list_invoices(statuses=[InvoiceStatus.PAID])
        quote_ids = list(dict.fromkeys(i.quote_id for i in paid))

        async def confirm(quote_id: UUID) -> bool:
            outcome = await self._workflow.transition_quote(
                quote_id,
                QuoteStatus.CONFIRMED,
                actor=SYSTEM_ACTOR,
                role=ActorRole.SYSTEM,
                reason="Invoice paid in full",
                reference_time=stamp,
                reference_date=reference_date,
                only_from=QUOTE_PRE_CONFIRMED,
            )
            if outcome.changed:
                self._logger.info(
                    "quote_auto_confirmed",
                    quote_id=str(quote_id),
                    previous_status=outcome.previous_status,
                )
            return outcome.changed

        outcome = await run_bounded(
            quote_ids,
            confirm,
            operation="auto_confirm",
            entity_kind=EntityKind.QUOTE,
            entity_id=lambda q: q,
            limits=self._limits,
            deadline=deadline,
        )
        return _step_result(outcome)

    async def auto_complete_past_events(
        self,
        reference_date: date,
        reference_time: datetime | None = None,
        deadline: float | None = None,
    ) -> StepResult:
        """Complete confirmed quotes whose event date is before yesterday."""
        stamp = reference_time or self._start_of_day(reference_date)
        yesterday = reference_date - timedelta(days=1)
        candidates = await self._repo.list_quotes(
            statuses=[QuoteStatus.CONFIRMED], event_before=yesterday
        )

        async def complete(quote_id: UUID) -> bool:
            outcome = await self._workflow.transition_quote(
                quote_id,
                QuoteStatus.COMPLETED,
                actor=SYSTEM_ACTOR,
                role=ActorRole.SYSTEM,
                reason="Event date passed",
                reference_time=stamp,
                reference_date=reference_date,
                only_from=[QuoteStatus.CONFIRMED],
            )
            if outcome.changed:
                self._logger.info("quote_auto_completed", quote_id=str(quote_id))
            return outcome.changed

        outcome = await run_bounded(
            [q.id for q in candidates],
            complete,
            operation="auto_complete",
            entity_kind=EntityKind.QUOTE,
            entity_id=lambda q: q,
            limits=self._limits,
            deadline=deadline,
        )
        return _step_result(outcome)

    async def run_automation_sweep(
        self,
        reference_date: date,
        reference_time: datetime | None = None,
    ) -> AutomationSweepResult:
        """Run all three steps; a failing step never blocks the others.

        Args:
            reference_date: Business "today".
            reference_time: Timestamp stored on StateLog rows; defaults to
                midnight UTC of ``reference_date``.

        Returns:
            Counts of changed entities, per-entity errors and the number of
            entities deferred by the sweep deadline.
        """
        result = AutomationSweepResult(reference_date=reference_date)
        started = time.monotonic()
        self._logger.info("automation_sweep_starting", reference_date=reference_date.isoformat())

        steps = (
            ("mark_overdue", self.mark_overdue_invoices, "marked_overdue"),
            ("auto_confirm", self.auto_confirm_paid_quotes, "auto_confirmed"),
            ("auto_complete", self.auto_complete_past_events, "auto_completed"),
        )
        for operation, step, counter in steps:
            remaining = self._limits.deadline - (time.monotonic() - started)
            try:
                step_result = await step(reference_date, reference_time, deadline=remaining)
            except Exception as e:
                # Candidate selection failed; the other steps still run.
                result.errors.append(SweepError.from_exception(e, operation))
                self._logger.error("automation_step_failed", operation=operation, error=str(e))
                continue
            setattr(result, counter, step_result.changed)
            result.errors.extend(step_result.errors)
            result.deferred += step_result.deferred

        self._logger.info(
            "automation_sweep_completed",
            reference_date=reference_date.isoformat(),
            marked_overdue=result.marked_overdue,
            auto_confirmed=result.auto_confirmed,
            auto_completed=result.auto_completed,
            errors=len(result.errors),
            deferred=result.deferred,
        )
        return result
