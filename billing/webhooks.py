"""Stripe webhook dispatch for subscription lifecycle management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Tuple, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.datetime_utils import utcnow
from models import ProcessedWebhookEvent

from .config import DEFAULT_EVENT_RETENTION_DAYS, DEFAULT_MAX_PAYMENT_FAILURES
from .events import (
    CheckoutSessionObject,
    DisputeObject,
    EventKind,
    InformationalObject,
    InvoiceObject,
    SetupIntentObject,
    SubscriptionObject,
    WebhookEnvelope,
)
from .exceptions import WebhookPayloadError
from .reconciler import SubscriptionReconciler
from .stripe_client import StripeGateway

logger = logging.getLogger(__name__)

Handler = Callable[[SubscriptionReconciler, Any, WebhookEnvelope], None]

EVENT_HANDLERS: Dict[EventKind, Tuple[Type[BaseModel], Handler]] = {
    EventKind.CHECKOUT_COMPLETED: (CheckoutSessionObject, SubscriptionReconciler.handle_checkout_completed),
    EventKind.SETUP_COMPLETED: (SetupIntentObject, SubscriptionReconciler.handle_setup_completed),
    EventKind.SUBSCRIPTION_CREATED: (SubscriptionObject, SubscriptionReconciler.handle_subscription_created),
    EventKind.SUBSCRIPTION_UPDATED: (SubscriptionObject, SubscriptionReconciler.handle_subscription_updated),
    EventKind.SUBSCRIPTION_DELETED: (SubscriptionObject, SubscriptionReconciler.handle_subscription_deleted),
    EventKind.SUBSCRIPTION_PAUSED: (SubscriptionObject, SubscriptionReconciler.handle_subscription_paused),
    EventKind.SUBSCRIPTION_RESUMED: (SubscriptionObject, SubscriptionReconciler.handle_subscription_resumed),
    EventKind.TRIAL_WILL_END: (SubscriptionObject, SubscriptionReconciler.handle_trial_will_end),
    EventKind.INVOICE_PAID: (InvoiceObject, SubscriptionReconciler.handle_invoice_paid),
    EventKind.INVOICE_PAYMENT_FAILED: (InvoiceObject, SubscriptionReconciler.handle_invoice_payment_failed),
    EventKind.INVOICE_UPCOMING: (InvoiceObject, SubscriptionReconciler.handle_invoice_upcoming),
    EventKind.PAYMENT_SUCCEEDED: (InformationalObject, SubscriptionReconciler.handle_informational),
    EventKind.PAYMENT_FAILED: (InformationalObject, SubscriptionReconciler.handle_informational),
    EventKind.PAYMENT_METHOD_ATTACHED: (InformationalObject, SubscriptionReconciler.handle_informational),
    EventKind.PAYMENT_METHOD_DETACHED: (InformationalObject, SubscriptionReconciler.handle_informational),
    EventKind.PAYMENT_METHOD_UPDATED: (InformationalObject, SubscriptionReconciler.handle_informational),
    EventKind.DISPUTE_CREATED: (DisputeObject, SubscriptionReconciler.handle_dispute_created),
}

_unhandled = set(EventKind) - set(EVENT_HANDLERS) - {EventKind.UNKNOWN}
if _unhandled:
    raise RuntimeError(f"No webhook handler registered for: {sorted(kind.value for kind in _unhandled)}")


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    kind: EventKind
    duplicate: bool = False
    handled: bool = False


def parse_envelope(event: Dict[str, Any]) -> WebhookEnvelope:
    """Validate the decoded event body, raising :class:`WebhookPayloadError`."""

    try:
        return WebhookEnvelope.model_validate(event)
    except ValidationError as exc:
        logger.warning("Rejecting malformed Stripe event envelope: %s", exc)
        raise WebhookPayloadError("Invalid event envelope") from exc


class WebhookDispatcher:
    """Claim, route and acknowledge verified Stripe events.

    Each event id is claimed in ``processed_webhook_events`` before any
    handler runs, so a redelivered event is acknowledged without being applied
    a second time. The claim is released when a handler fails unexpectedly,
    letting Stripe's retry reprocess the event.
    """

    def __init__(
        self,
        session: Session,
        gateway: StripeGateway,
        *,
        max_payment_failures: int = DEFAULT_MAX_PAYMENT_FAILURES,
        retention_days: int = DEFAULT_EVENT_RETENTION_DAYS,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._retention = timedelta(days=retention_days)
        self._reconciler = SubscriptionReconciler(session, gateway, max_payment_failures=max_payment_failures)

    def handle_payload(self, payload: bytes, signature_header: str) -> DispatchResult:
        """Verify, parse and dispatch one raw webhook request body."""

        event = self._gateway.parse_webhook(payload, signature_header)
        return self.dispatch(parse_envelope(event))

    def dispatch(self, envelope: WebhookEnvelope) -> DispatchResult:
        kind = envelope.kind

        if kind is EventKind.UNKNOWN:
            logger.info("Ignoring unhandled Stripe event %s (%s)", envelope.id, envelope.type)
            return DispatchResult(event_id=envelope.id, kind=kind)

        if not self._claim(envelope):
            logger.info("Stripe event %s (%s) already processed; skipping", envelope.id, envelope.type)
            return DispatchResult(event_id=envelope.id, kind=kind, duplicate=True)

        model, handler = EVENT_HANDLERS[kind]
        try:
            obj = model.model_validate(envelope.data.object)
        except ValidationError as exc:
            logger.warning("Stripe event %s (%s) failed schema validation: %s", envelope.id, envelope.type, exc)
            return DispatchResult(event_id=envelope.id, kind=kind)

        try:
            handler(self._reconciler, obj, envelope)
        except Exception:
            self._session.rollback()
            self._release(envelope.id)
            raise

        self._purge_expired()
        return DispatchResult(event_id=envelope.id, kind=kind, handled=True)

    def _claim(self, envelope: WebhookEnvelope) -> bool:
        self._session.add(
            ProcessedWebhookEvent(
                event_id=envelope.id,
                event_type=envelope.type,
                received_at=utcnow(),
            )
        )
        try:
            self._session.commit()
        except IntegrityError:
            self._session.rollback()
            return False
        return True

    def _release(self, event_id: str) -> None:
        self._session.query(ProcessedWebhookEvent).filter(ProcessedWebhookEvent.event_id == event_id).delete(
            synchronize_session=False
        )
        self._session.commit()
        logger.warning("Released claim on Stripe event %s after handler failure", event_id)

    def _purge_expired(self) -> None:
        cutoff = utcnow() - self._retention
        removed = (
            self._session.query(ProcessedWebhookEvent)
            .filter(ProcessedWebhookEvent.received_at < cutoff)
            .delete(synchronize_session=False)
        )
        self._session.commit()
        if removed:
            logger.info("Purged %d processed webhook events older than %s", removed, cutoff)
