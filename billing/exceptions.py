"""Exception hierarchy for billing operations."""

from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for billing failures surfaced to callers."""


class BillingValidationError(BillingError):
    """Administrative input failed validation before any remote call."""


class PlanValidationError(BillingValidationError):
    """A plan definition is inconsistent, e.g. its original price is too low."""


class PlanNotFoundError(BillingError):
    """No plan exists for the requested key."""


class PlanAlreadyExistsError(BillingError):
    """A plan with the same key is already registered."""


class PlanInUseError(BillingError):
    """The plan is still referenced by at least one active business."""


class BusinessNotFoundError(BillingError):
    """No business exists for the requested id."""


class SubscriptionNotFoundError(BillingError):
    """The business has no remote subscription to act upon."""


class RemoteBillingError(BillingError):
    """Stripe rejected or failed an operation.

    ``code`` and ``http_status`` mirror what Stripe reported, when available,
    so operators can diagnose declines or invalid tax ids without the Stripe
    dashboard.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        not_found: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.not_found = not_found


class WebhookSignatureError(BillingError):
    """The webhook signature could not be verified."""


class WebhookPayloadError(BillingError):
    """The webhook body is not a valid Stripe event envelope."""
