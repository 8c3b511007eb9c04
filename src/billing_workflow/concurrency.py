"""Bounded fan-out for per-entity sweep work.

Each entity is processed by its own task behind a semaphore. A single entity
failing (or timing out) becomes a ``SweepError`` and never cancels its
siblings. When the sweep deadline passes, unfinished tasks are cancelled and
counted as deferred; the next scheduled sweep picks them up.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Generic, TypeVar
from uuid import UUID

import structlog

from billing_workflow.config import get_settings
from billing_workflow.errors import BillingError
from billing_workflow.models import EntityKind

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class SweepError:
    """One entity that could not be processed during a sweep."""

    operation: str
    code: str
    message: str
    entity_kind: EntityKind | None = None
    entity_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["entity_kind"] = self.entity_kind.value if self.entity_kind else None
        data["entity_id"] = str(self.entity_id) if self.entity_id else None
        return data

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        operation: str,
        entity_kind: EntityKind | None = None,
        entity_id: UUID | None = None,
    ) -> SweepError:
        if isinstance(exc, BillingError):
            code, message = exc.code, exc.message
        elif isinstance(exc, TimeoutError):
            code, message = "timeout", "operation timed out"
        else:
            code, message = "unexpected_error", f"{type(exc).__name__}: {exc}"
        return cls(
            operation=operation,
            code=code,
            message=message,
            entity_kind=entity_kind,
            entity_id=entity_id,
        )


@dataclass(frozen=True)
class SweepLimits:
    concurrency: int
    item_timeout: float
    deadline: float

    @classmethod
    def from_settings(cls) -> SweepLimits:
        settings = get_settings()
        return cls(
            concurrency=settings.sweep_concurrency,
            item_timeout=settings.external_call_timeout,
            deadline=settings.sweep_deadline_seconds,
        )


@dataclass
class BatchOutcome(Generic[T, R]):
    results: list[tuple[T, R]] = field(default_factory=list)
    errors: list[SweepError] = field(default_factory=list)
    deferred: int = 0


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    operation: str,
    entity_kind: EntityKind | None,
    entity_id: Callable[[T], UUID | None],
    limits: SweepLimits,
    deadline: float | None = None,
) -> BatchOutcome[T, R]:
    """Run ``worker`` over ``items`` with bounded concurrency.

    Args:
        items: Entities (or ids) to process.
        worker: Coroutine function handling one item.
        operation: Name recorded on every SweepError.
        entity_kind: Kind recorded on every SweepError.
        entity_id: Extracts the id recorded on a SweepError.
        limits: Concurrency bound and per-item timeout.
        deadline: Seconds left for the whole batch; defaults to
            ``limits.deadline``.

    Returns:
        BatchOutcome with results in input order, per-item errors and the
        number of items left unfinished at the deadline.
    """
    outcome: BatchOutcome[T, R] = BatchOutcome()
    if not items:
        return outcome

    semaphore = asyncio.Semaphore(limits.concurrency)

    async def run_one(item: T) -> R:
        async with semaphore:
            return await asyncio.wait_for(worker(item), timeout=limits.item_timeout)

    tasks = [asyncio.create_task(run_one(item)) for item in items]
    budget = limits.deadline if deadline is None else max(deadline, 0.0)
    _, pending = await asyncio.wait(tasks, timeout=budget)

    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        logger.warning("sweep_deadline_reached", operation=operation, deferred=len(pending))

    for item, task in zip(items, tasks, strict=True):
        if task in pending or task.cancelled():
            outcome.deferred += 1
            continue
        exc = task.exception()
        if exc is None:
            outcome.results.append((item, task.result()))
            continue
        error = SweepError.from_exception(exc, operation, entity_kind, entity_id(item))
        outcome.errors.append(error)
        log = logger.warning if isinstance(exc, BillingError | TimeoutError) else logger.error
        log(
            "sweep_entity_failed",
            operation=operation,
            entity_id=str(error.entity_id) if error.entity_id else None,
            code=error.code,
            error=error.message,
        )
    return outcome
