"""Pytest configuration and fixtures."""

import os
from unittest.mock import AsyncMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("BILLING_TAX_RATE", "0.08")
os.environ.setdefault("BUSINESS_TIMEZONE", "UTC")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("NOTIFIER_URL", None)

from billing_workflow.concurrency import SweepLimits  # noqa: E402
from billing_workflow.config import configure_logging  # noqa: E402
from billing_workflow.invoicing import BillingService  # noqa: E402
from billing_workflow.notifier import LoggingNotifier  # noqa: E402
from billing_workflow.repository import InMemoryRepository  # noqa: E402
from billing_workflow.workflow import WorkflowService  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def stderr_logging():
    """Route structlog through stdlib logging so stdout stays clean."""
    configure_logging("WARNING")


@pytest.fixture
def repo():
    """Empty in-memory repository."""
    return InMemoryRepository()


@pytest.fixture
def limits():
    """Small sweep limits that keep tests fast."""
    return SweepLimits(concurrency=4, item_timeout=5.0, deadline=30.0)


@pytest.fixture
def workflow(repo):
    return WorkflowService(repo)


@pytest.fixture
def billing(repo, limits):
    return BillingService(repo, limits=limits)


@pytest.fixture
def notifier():
    """Dry-run notifier that records every send."""
    return LoggingNotifier()


@pytest.fixture
def failing_notifier():
    """Notifier whose send always raises."""
    from billing_workflow.errors import ExternalServiceError

    notifier = AsyncMock()
    notifier.send = AsyncMock(side_effect=ExternalServiceError("relay unavailable", status_code=503))
    return notifier


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.post = AsyncMock()
    client.aclose = AsyncMock()
    return client
