"""Typed errors raised by the billing workflow engine.

Callers catch by type, never by message. Every error carries a
machine-readable ``code`` and a ``details`` dict so sweeps can report
failures without parsing strings.
"""

from typing import Any


class BillingError(Exception):
    """Base exception for billing workflow errors."""

    code = "billing_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BillingError):
    """Malformed or missing required input."""

    code = "validation_error"


class InvalidTransitionError(ValidationError):
    """A status change that is not in the transition table or fails its guard."""

    code = "invalid_transition"


class NotFoundError(BillingError):
    """A referenced quote or invoice does not exist."""

    code = "not_found"


class IntegrityError(BillingError):
    """A stored invariant does not hold."""

    code = "integrity_error"


class ExternalServiceError(BillingError):
    """The notifier or another external collaborator failed."""

    code = "external_service_error"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code


class ConcurrencyError(BillingError):
    """An optimistic write lost against a concurrent writer."""

    code = "concurrency_error"
