"""
Exceptions for billing app.

Each error carries the HTTP status it maps to and a ``context`` dict that
the API exception handler merges into the JSON error body.
"""

from typing import Any


class BillingError(Exception):
    """Base exception for billing errors."""

    status_code = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, **self.context}


class OrganizationContextRequired(BillingError):
    """No organization could be resolved for the request."""

    status_code = 400


class NotFoundError(BillingError):
    """Feature, plan, subscription or payment request does not exist."""

    status_code = 404


class FeatureAccessDenied(BillingError):
    """Feature is disabled or requires a plan/add-on the organization lacks."""

    status_code = 403


class PaymentRequiredError(BillingError):
    """Subscription is not in a status that allows use of the platform."""

    status_code = 402


class UsageLimitExceeded(BillingError):
    """Usage reached the feature's limit."""

    status_code = 429


class ConflictError(BillingError):
    """Operation conflicts with a business rule (e.g. disabling a core feature)."""

    status_code = 409


class InvalidTransitionError(ConflictError):
    """State machine does not allow this transition from the current status."""

    pass


class MaintenanceModeError(BillingError):
    """Organization is in maintenance mode (suspended or expired)."""

    status_code = 503
