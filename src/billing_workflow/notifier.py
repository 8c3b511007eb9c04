"""Notifier adapters for reminder delivery.

The engine decides whether to remind and with what structured context; the
mail relay behind ``HttpNotifier`` owns templates and transport.
"""

import asyncio
from typing import Any, Protocol

import httpx
import structlog

from billing_workflow.config import get_settings
from billing_workflow.errors import ExternalServiceError
from billing_workflow.models import ReminderType

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def send(
        self,
        recipient: str,
        reminder_type: ReminderType,
        context: dict[str, Any],
    ) -> None:
        """Deliver one reminder; raise ExternalServiceError on failure."""
        ...


class HttpNotifier:
    """Async client for the mail relay's send endpoint."""

    SEND_PATH = "/send"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ):
        settings = get_settings()
        url = base_url or settings.notifier_url
        if not url:
            raise ExternalServiceError("notifier URL is not configured")
        self.base_url = url.rstrip("/")
        if api_key is None and settings.notifier_api_key is not None:
            api_key = settings.notifier_api_key.get_secret_value()
        self._api_key = api_key
        self._timeout = timeout or settings.external_call_timeout
        self._max_retries = settings.notifier_max_retries if max_retries is None else max_retries
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpNotifier":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def send(
        self,
        recipient: str,
        reminder_type: ReminderType,
        context: dict[str, Any],
        retry_count: int = 0,
    ) -> None:
        """POST one reminder to the relay, retrying transport errors with backoff."""
        client = await self._get_client()
        payload = {
            "to": recipient,
            "reminder_type": ReminderType(reminder_type).value,
            "context": context,
        }

        try:
            response = await client.post(self.SEND_PATH, json=payload, headers=self._get_headers())
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)
                return await self.send(recipient, reminder_type, context, retry_count + 1)
            raise ExternalServiceError(
                f"Notifier request failed: {e}",
                details={"reminder_type": payload["reminder_type"], "attempts": retry_count + 1},
            ) from e

        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", "60"))
            raise ExternalServiceError(
                f"Notifier rate limited, retry after {retry_after}s",
                details={"retry_after": retry_after},
                status_code=429,
            )
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Notifier error: {response.status_code}",
                details={"body": response.text[:500] if response.text else "empty response"},
                status_code=response.status_code,
            )

        logger.debug(
            "notification_delivered",
            reminder_type=payload["reminder_type"],
            status_code=response.status_code,
        )


class LoggingNotifier:
    """Dry-run notifier: logs each reminder and keeps it in ``sent``."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, ReminderType, dict[str, Any]]] = []
        self._logger = logger.bind(component="logging_notifier")

    async def send(
        self,
        recipient: str,
        reminder_type: ReminderType,
        context: dict[str, Any],
    ) -> None:
        self.sent.append((recipient, reminder_type, context))
        self._logger.info(
            "notification_dry_run",
            recipient=recipient,
            reminder_type=ReminderType(reminder_type).value,
            context_keys=sorted(context),
        )
