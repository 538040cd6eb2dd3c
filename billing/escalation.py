"""Escalate repeated payment failures into account suspension."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.datetime_utils import utcnow
from models import Business

from . import activity
from .business_state import WriteResult, is_stale, write_subscription_state
from .config import DEFAULT_MAX_PAYMENT_FAILURES

logger = logging.getLogger(__name__)


class PaymentFailureEscalator:
    """Count consecutive payment failures per business and suspend at the limit."""

    def __init__(self, session: Session, *, max_failures: int = DEFAULT_MAX_PAYMENT_FAILURES) -> None:
        self._session = session
        self._max_failures = max_failures

    def on_failure(
        self,
        business_id: int,
        max_failures: Optional[int] = None,
        event_at: Optional[datetime] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> WriteResult:
        """Count one failed payment, suspending the business at the limit.

        Failures are counted in whatever order Stripe delivers them; reaching
        the limit writes the suspension in place of the counter.
        """

        limit = max_failures if max_failures is not None else self._max_failures
        attempted_at = utcnow()
        counted: Dict[str, int] = {}

        def build(business: Business) -> Dict[str, Any]:
            failures = (business.payment_failures or 0) + 1
            counted["failures"] = failures
            if failures >= limit:
                return {"subscription_status": "suspended", "active": False}
            return {"payment_failures": failures, "last_payment_attempt": attempted_at}

        result = write_subscription_state(
            self._session, business_id, build, event_at=event_at, enforce_order=False
        )
        if not result.applied:
            logger.warning("Payment failure for business %s not recorded (%s)", business_id, result.outcome.value)
            return result

        failures = counted["failures"]
        metadata = dict(details or {})
        metadata.update({"paymentFailures": failures, "maxFailures": limit})

        if result.values.get("subscription_status") == "suspended":
            activity.record_activity(
                self._session,
                business_id,
                activity.ACCOUNT_SUSPENDED,
                f"Account suspended after {failures} failed payments",
                metadata,
            )
            logger.warning("Business %s suspended after %d failed payments", business_id, failures)
        else:
            activity.record_activity(
                self._session,
                business_id,
                activity.PAYMENT_FAILED,
                f"Payment failed ({failures}/{limit})",
                metadata,
            )
            logger.info("Business %s: payment failure %d/%d", business_id, failures, limit)

        self._session.commit()
        return result

    def on_success(
        self,
        business_id: int,
        event_at: Optional[datetime] = None,
        updates: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> WriteResult:
        """Reset the failure counter and reactivate the business.

        ``updates`` carries extra subscription columns the caller wants written
        in the same guarded update, e.g. the new status and period end. They
        and the reactivation only apply when the event is the newest seen;
        the counter is reset either way.
        """

        attempted_at = utcnow()

        def build(business: Business) -> Dict[str, Any]:
            values: Dict[str, Any] = {"payment_failures": 0, "last_payment_attempt": attempted_at}
            if not is_stale(business, event_at):
                values.update(updates or {})
                values["active"] = True
            return values

        result = write_subscription_state(
            self._session, business_id, build, event_at=event_at, enforce_order=False
        )
        if not result.applied:
            logger.warning("Payment success for business %s not recorded (%s)", business_id, result.outcome.value)
            return result

        activity.record_activity(
            self._session,
            business_id,
            activity.PAYMENT_SUCCEEDED,
            "Payment succeeded",
            dict(details or {}),
        )
        self._session.commit()
        return result
