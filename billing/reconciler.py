"""Reconcile Stripe subscription lifecycle events into local business state."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from core.numeric_utils import cents_to_euros, euros_to_cents
from models import ENTITLED_STATUSES, TRIAL_PLAN_KEY, Business, SubscriptionPlan

from . import activity
from .business_state import WriteOutcome, WriteResult, write_subscription_state
from .catalog import ensure_plan_synced
from .config import DEFAULT_MAX_PAYMENT_FAILURES
from .escalation import PaymentFailureEscalator
from .events import (
    BUSINESS_ID_KEY,
    PLAN_KEY_KEY,
    USER_EMAIL_KEY,
    CheckoutSessionObject,
    DisputeObject,
    EventKind,
    InformationalObject,
    InvoiceObject,
    SetupIntentObject,
    SubscriptionObject,
    WebhookEnvelope,
    parse_business_id,
)
from .exceptions import RemoteBillingError
from .plan_sync import PlanSynchronizer
from .plans import find_plan_by_price_id, get_plan_by_key
from .stripe_client import StripeGateway

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP: Dict[str, str] = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "suspended",
    "paused": "suspended",
    "incomplete": "inactive",
    "incomplete_expired": "inactive",
}

# Statuses under which a business still has a subscription worth keeping.
LIVE_STATUSES = frozenset({"active", "trialing", "past_due", "suspended"})

_INFORMATIONAL_ACTIVITY: Dict[EventKind, Tuple[str, str]] = {
    EventKind.PAYMENT_SUCCEEDED: (activity.PAYMENT_SUCCEEDED, "One-off payment succeeded"),
    EventKind.PAYMENT_FAILED: (activity.PAYMENT_FAILED, "One-off payment failed"),
    EventKind.PAYMENT_METHOD_ATTACHED: (activity.PAYMENT_METHOD_CHANGED, "Payment method attached"),
    EventKind.PAYMENT_METHOD_DETACHED: (activity.PAYMENT_METHOD_CHANGED, "Payment method detached"),
    EventKind.PAYMENT_METHOD_UPDATED: (activity.PAYMENT_METHOD_CHANGED, "Payment method updated"),
}


def map_stripe_status(subscription: SubscriptionObject) -> str:
    """Translate a Stripe subscription status into the local vocabulary."""

    # Stripe keeps a collection-paused subscription "active"; locally it is not entitled.
    if subscription.pause_collection:
        return "suspended"
    status = STRIPE_STATUS_MAP.get(subscription.status)
    if status is None:
        logger.warning("Unrecognised Stripe subscription status %r on %s", subscription.status, subscription.id)
        return "inactive"
    return status


class SubscriptionReconciler:
    """Apply one verified, de-duplicated webhook event to local state.

    Handlers never raise for missing correlation data or remote failures:
    both are logged and the event is acknowledged. Every state change goes
    through :func:`~billing.business_state.write_subscription_state`.
    """

    def __init__(
        self,
        session: Session,
        gateway: StripeGateway,
        *,
        max_payment_failures: int = DEFAULT_MAX_PAYMENT_FAILURES,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.escalator = PaymentFailureEscalator(session, max_failures=max_payment_failures)
        self.synchronizer = PlanSynchronizer(gateway)

    # -- shared helpers ----------------------------------------------------

    def _business_exists(self, business_id: int) -> bool:
        return self.session.get(Business, business_id) is not None

    def _audit(self, business_id: int, type: str, description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        if not self._business_exists(business_id):
            logger.warning("Skipping %s audit entry: business %s not found", type, business_id)
            return
        activity.record_activity(self.session, business_id, type, description, metadata)
        self.session.commit()

    def _finish(self, result: WriteResult, business_id: int, type: str, description: str, metadata: Dict[str, Any]) -> WriteResult:
        if result.applied:
            activity.record_activity(self.session, business_id, type, description, metadata)
            self.session.commit()
        elif result.outcome is WriteOutcome.MISSING:
            logger.warning("Event references unknown business %s", business_id)
        else:
            self.session.rollback()
        return result

    def _resolve_plan_key(self, subscription: SubscriptionObject) -> Optional[str]:
        hint = subscription.plan_key_hint
        if hint:
            return hint
        if subscription.price_id:
            plan = find_plan_by_price_id(self.session, subscription.price_id)
            if plan is not None:
                return plan.key
        return None

    def upsert_subscription(
        self,
        subscription: SubscriptionObject,
        event: WebhookEnvelope,
        *,
        reset_failures_when_active: bool = False,
    ) -> Optional[WriteResult]:
        """Copy plan, status, period and ids from a Stripe subscription."""

        business_id = subscription.business_id
        if business_id is None:
            logger.warning("Subscription %s carries no %s metadata; ignoring %s", subscription.id, BUSINESS_ID_KEY, event.type)
            return None

        status = map_stripe_status(subscription)
        plan_key = self._resolve_plan_key(subscription)

        def build(business: Business) -> Optional[Dict[str, Any]]:
            current = business.stripe_subscription_id
            if current and current != subscription.id and business.subscription_status in LIVE_STATUSES:
                if status not in LIVE_STATUSES:
                    logger.info(
                        "Ignoring %s for superseded subscription %s on business %s (current %s)",
                        status,
                        subscription.id,
                        business.id,
                        current,
                    )
                    return None

            values: Dict[str, Any] = {
                "subscription_status": status,
                "active": status in ENTITLED_STATUSES,
                "stripe_subscription_id": subscription.id,
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "current_period_end": subscription.period_end,
                "trial_end": subscription.trial_end_at,
            }
            if subscription.customer:
                values["stripe_customer_id"] = subscription.customer
            if subscription.price_id:
                values["stripe_price_id"] = subscription.price_id
            if plan_key:
                values["subscription_plan"] = plan_key
            if reset_failures_when_active and status == "active":
                values["payment_failures"] = 0
            return values

        result = write_subscription_state(self.session, business_id, build, event_at=event.occurred_at)
        return self._finish(
            result,
            business_id,
            activity.SUBSCRIPTION_UPDATED if event.kind is not EventKind.SUBSCRIPTION_CREATED else activity.SUBSCRIPTION_CREATED,
            f"Subscription {subscription.id} is {status}",
            {"eventId": event.id, "stripeStatus": subscription.status, "planKey": plan_key, "status": status},
        )

    def _set_status(
        self,
        subscription: SubscriptionObject,
        event: WebhookEnvelope,
        *,
        status: str,
        type: str,
        description: str,
        reset_failures: bool = False,
    ) -> Optional[WriteResult]:
        business_id = subscription.business_id
        if business_id is None:
            logger.warning("Subscription %s carries no %s metadata; ignoring %s", subscription.id, BUSINESS_ID_KEY, event.type)
            return None

        def build(business: Business) -> Optional[Dict[str, Any]]:
            current = business.stripe_subscription_id
            if current and current != subscription.id:
                logger.info("Ignoring %s for subscription %s; business %s now uses %s", event.type, subscription.id, business.id, current)
                return None
            values: Dict[str, Any] = {"subscription_status": status, "active": status in ENTITLED_STATUSES}
            if reset_failures:
                values["payment_failures"] = 0
            return values

        result = write_subscription_state(self.session, business_id, build, event_at=event.occurred_at)
        return self._finish(result, business_id, type, description, {"eventId": event.id, "subscriptionId": subscription.id})

    # -- handlers ----------------------------------------------------------

    def handle_checkout_completed(self, checkout: CheckoutSessionObject, event: WebhookEnvelope) -> None:
        if not checkout.subscription:
            logger.info("Checkout session %s completed without a subscription", checkout.id)
            return

        try:
            payload = self.gateway.retrieve_subscription(checkout.subscription)
        except RemoteBillingError as exc:
            logger.error("Unable to retrieve subscription %s after checkout: %s", checkout.subscription, exc)
            return

        try:
            subscription = SubscriptionObject.model_validate(payload)
        except ValidationError as exc:
            logger.error("Subscription %s returned by Stripe failed validation: %s", checkout.subscription, exc)
            return

        # The checkout session carries the correlation when the subscription itself does not.
        for key in (BUSINESS_ID_KEY, PLAN_KEY_KEY):
            if key not in subscription.metadata and checkout.metadata.get(key):
                subscription.metadata[key] = checkout.metadata[key]

        self.upsert_subscription(subscription, event)

    def handle_setup_completed(self, intent: SetupIntentObject, event: WebhookEnvelope) -> None:
        business_id = intent.business_id
        if business_id is None:
            logger.warning("SetupIntent %s carries no %s metadata; ignoring", intent.id, BUSINESS_ID_KEY)
            return

        business = self.session.get(Business, business_id)
        if business is None:
            logger.warning("SetupIntent %s references unknown business %s", intent.id, business_id)
            return

        self._audit(
            business_id,
            activity.PAYMENT_METHOD_CHANGED,
            "Payment method saved",
            {"eventId": event.id, "setupIntentId": intent.id, "paymentMethod": intent.payment_method},
        )

        plan_key = intent.metadata.get(PLAN_KEY_KEY)
        if not plan_key:
            return

        if business.stripe_subscription_id and business.subscription_status in LIVE_STATUSES:
            logger.info(
                "Business %s already has subscription %s; not creating another from SetupIntent %s",
                business_id,
                business.stripe_subscription_id,
                intent.id,
            )
            return

        plan = get_plan_by_key(self.session, plan_key)
        if plan is None or not plan.active or plan.key == TRIAL_PLAN_KEY:
            logger.warning("SetupIntent %s names unavailable plan %r", intent.id, plan_key)
            return

        customer_id = intent.customer or business.stripe_customer_id
        if not customer_id:
            logger.warning("SetupIntent %s has no customer; cannot subscribe business %s", intent.id, business_id)
            return

        try:
            plan = ensure_plan_synced(self.session, self.synchronizer, plan)
            payload = self.gateway.create_subscription(
                idempotency_key=f"setup-intent-{intent.id}",
                **self._subscription_params(plan, customer_id, intent, business_id),
            )
        except RemoteBillingError as exc:
            logger.error("Could not create subscription for business %s from SetupIntent %s: %s", business_id, intent.id, exc)
            return

        try:
            subscription = SubscriptionObject.model_validate(payload)
        except ValidationError as exc:
            logger.error("Subscription created for business %s failed validation: %s", business_id, exc)
            return

        self.upsert_subscription(subscription, event)

    def _subscription_params(
        self,
        plan: SubscriptionPlan,
        customer_id: str,
        intent: SetupIntentObject,
        business_id: int,
    ) -> Dict[str, Any]:
        metadata = {BUSINESS_ID_KEY: str(business_id), PLAN_KEY_KEY: plan.key}
        if intent.metadata.get(USER_EMAIL_KEY):
            metadata[USER_EMAIL_KEY] = str(intent.metadata[USER_EMAIL_KEY])

        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": plan.stripe_price_id}],
            "metadata": metadata,
        }
        if intent.payment_method:
            params["default_payment_method"] = intent.payment_method
        if plan.trial_days and plan.trial_days > 0:
            params["trial_period_days"] = plan.trial_days
        if plan.setup_price and euros_to_cents(plan.setup_price) > 0:
            params["add_invoice_items"] = [
                {
                    "price_data": {
                        "currency": (plan.currency or "EUR").lower(),
                        "product": plan.stripe_product_id,
                        "unit_amount": euros_to_cents(plan.setup_price),
                    }
                }
            ]
        return params

    def handle_subscription_created(self, subscription: SubscriptionObject, event: WebhookEnvelope) -> None:
        self.upsert_subscription(subscription, event)

    def handle_subscription_updated(self, subscription: SubscriptionObject, event: WebhookEnvelope) -> None:
        self.upsert_subscription(subscription, event, reset_failures_when_active=True)

    def handle_subscription_deleted(self, subscription: SubscriptionObject, event: WebhookEnvelope) -> None:
        self._set_status(
            subscription,
            event,
            status="canceled",
            type=activity.SUBSCRIPTION_CANCELED,
            description="Subscription canceled",
        )

    def handle_subscription_paused(self, subscription: SubscriptionObject, event: WebhookEnvelope) -> None:
        self._set_status(
            subscription,
            event,
            status="suspended",
            type=activity.SUBSCRIPTION_PAUSED,
            description="Subscription paused",
        )

    def handle_subscription_resumed(self, subscription: SubscriptionObject, event: WebhookEnvelope) -> None:
        self._set_status(
            subscription,
            event,
            status="active",
            type=activity.SUBSCRIPTION_RESUMED,
            description="Subscription resumed",
            reset_failures=True,
        )

    def handle_trial_will_end(self, subscription: SubscriptionObject, event: WebhookEnvelope) -> None:
        business_id = subscription.business_id
        if business_id is None:
            logger.warning("Trial ending for subscription %s without %s metadata", subscription.id, BUSINESS_ID_KEY)
            return
        trial_end = subscription.trial_end_at
        self._audit(
            business_id,
            activity.TRIAL_ENDING,
            "Trial period ends soon",
            {"eventId": event.id, "trialEnd": trial_end.isoformat() if trial_end else None},
        )

    def handle_invoice_paid(self, invoice: InvoiceObject, event: WebhookEnvelope) -> None:
        business_id = invoice.business_id
        if business_id is None:
            logger.warning("Invoice %s carries no %s metadata; ignoring", invoice.id, BUSINESS_ID_KEY)
            return

        updates: Dict[str, Any] = {"subscription_status": "active"}
        period_end = invoice.service_period_end
        if period_end is not None:
            updates["current_period_end"] = period_end

        self.escalator.on_success(
            business_id,
            event_at=event.occurred_at,
            updates=updates,
            details={
                "eventId": event.id,
                "invoiceId": invoice.id,
                "amount": str(cents_to_euros(invoice.amount_paid)),
                "currency": invoice.currency,
            },
        )

    def handle_invoice_payment_failed(self, invoice: InvoiceObject, event: WebhookEnvelope) -> None:
        business_id = invoice.business_id
        if business_id is None:
            logger.warning("Failed invoice %s carries no %s metadata; ignoring", invoice.id, BUSINESS_ID_KEY)
            return

        self.escalator.on_failure(
            business_id,
            event_at=event.occurred_at,
            details={
                "eventId": event.id,
                "invoiceId": invoice.id,
                "amount": str(cents_to_euros(invoice.amount_due)),
                "attemptCount": invoice.attempt_count,
            },
        )

    def handle_invoice_upcoming(self, invoice: InvoiceObject, event: WebhookEnvelope) -> None:
        business_id = invoice.business_id
        if business_id is None:
            logger.info("Upcoming invoice without %s metadata; ignoring", BUSINESS_ID_KEY)
            return
        self._audit(
            business_id,
            activity.INVOICE_UPCOMING,
            "Upcoming invoice",
            {"eventId": event.id, "amount": str(cents_to_euros(invoice.amount_due)), "currency": invoice.currency},
        )

    def handle_informational(self, obj: InformationalObject, event: WebhookEnvelope) -> None:
        business_id = obj.business_id
        if business_id is None:
            logger.info("%s for %s has no %s metadata; nothing to record", event.type, obj.id, BUSINESS_ID_KEY)
            return
        type, description = _INFORMATIONAL_ACTIVITY.get(event.kind, (event.kind.value, event.type))
        self._audit(
            business_id,
            type,
            description,
            {"eventId": event.id, "objectId": obj.id, "status": obj.status},
        )

    def handle_dispute_created(self, dispute: DisputeObject, event: WebhookEnvelope) -> None:
        business_id = dispute.business_id or self._business_for_charge(dispute.charge)
        if business_id is None:
            logger.warning("Dispute %s could not be correlated with a business; ignoring", dispute.id)
            return

        def build(business: Business) -> Dict[str, Any]:
            return {"subscription_status": "suspended", "active": False}

        # Disputes are not part of the subscription timeline, so they are not ordered against it.
        result = write_subscription_state(self.session, business_id, build)
        self._finish(
            result,
            business_id,
            activity.DISPUTE_CREATED,
            "Payment disputed; account suspended",
            {
                "eventId": event.id,
                "disputeId": dispute.id,
                "amount": str(cents_to_euros(dispute.amount)),
                "reason": dispute.reason,
            },
        )
        if result.applied:
            logger.warning("Business %s suspended after dispute %s", business_id, dispute.id)

    def _business_for_charge(self, charge_id: Optional[str]) -> Optional[int]:
        if not charge_id:
            return None
        try:
            charge = self.gateway.retrieve_charge(charge_id)
        except RemoteBillingError as exc:
            logger.error("Unable to retrieve disputed charge %s: %s", charge_id, exc)
            return None

        return parse_business_id(charge.get("metadata"))
