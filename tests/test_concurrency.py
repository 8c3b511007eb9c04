"""Tests for bounded sweep execution."""

import asyncio
from uuid import uuid4

import pytest

from billing_workflow.concurrency import SweepError, SweepLimits, run_bounded
from billing_workflow.errors import NotFoundError
from billing_workflow.models import EntityKind


def limits(**overrides):
    values = {"concurrency": 2, "item_timeout": 1.0, "deadline": 5.0}
    values.update(overrides)
    return SweepLimits(**values)


class TestRunBounded:
    """Tests for run_bounded."""

    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        async def double(n):
            await asyncio.sleep(0.01 * (5 - n))
            return n * 2

        outcome = await run_bounded(
            [1, 2, 3, 4], double, operation="double", entity_kind=None,
            entity_id=lambda n: None, limits=limits(),
        )

        assert outcome.results == [(1, 2), (2, 4), (3, 6), (4, 8)]
        assert outcome.errors == []
        assert outcome.deferred == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        async def work(n):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        await run_bounded(
            list(range(10)), work, operation="work", entity_kind=None,
            entity_id=lambda n: None, limits=limits(concurrency=3),
        )

        assert peak == 3

    @pytest.mark.asyncio
    async def test_errors_are_collected_per_item(self):
        ids = [uuid4(), uuid4()]

        async def lookup(entity_id):
            if entity_id == ids[0]:
                raise NotFoundError("gone")
            return True

        outcome = await run_bounded(
            ids, lookup, operation="lookup", entity_kind=EntityKind.INVOICE,
            entity_id=lambda i: i, limits=limits(),
        )

        assert outcome.results == [(ids[1], True)]
        assert len(outcome.errors) == 1
        error = outcome.errors[0]
        assert (error.code, error.entity_id, error.entity_kind) == ("not_found", ids[0], EntityKind.INVOICE)

    @pytest.mark.asyncio
    async def test_item_timeout(self):
        async def hang(n):
            await asyncio.sleep(10)

        outcome = await run_bounded(
            [1], hang, operation="hang", entity_kind=None,
            entity_id=lambda n: None, limits=limits(item_timeout=0.01),
        )

        assert outcome.errors[0].code == "timeout"

    @pytest.mark.asyncio
    async def test_deadline_defers_unfinished(self):
        async def maybe_hang(n):
            if n > 1:
                await asyncio.sleep(10)
            return n

        outcome = await run_bounded(
            [1, 2, 3], maybe_hang, operation="hang", entity_kind=None,
            entity_id=lambda n: None, limits=limits(concurrency=3, item_timeout=30.0), deadline=0.05,
        )

        assert outcome.results == [(1, 1)]
        assert outcome.deferred == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        outcome = await run_bounded(
            [], asyncio.sleep, operation="noop", entity_kind=None,
            entity_id=lambda n: None, limits=limits(),
        )

        assert outcome.results == []


def test_sweep_error_from_unexpected_exception():
    error = SweepError.from_exception(KeyError("quote_id"), "reconcile_totals")

    assert error.code == "unexpected_error"
    assert error.message.startswith("KeyError")
    assert error.to_dict()["entity_id"] is None
