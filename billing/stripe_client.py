"""Stripe integration helpers for subscription billing.

All outbound Stripe traffic goes through a :class:`StripeGateway` instance
built from :class:`~billing.config.BillingConfig` at startup and handed to
each component. Every call passes the gateway's own API key, so nothing
depends on ``stripe.api_key`` being set globally and tests can swap in a fake
with the same method surface.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import stripe

from .config import BillingConfig
from .exceptions import RemoteBillingError, WebhookPayloadError, WebhookSignatureError

logger = logging.getLogger(__name__)

APP_NAME = "Business Billing Sync"
WEBHOOK_TOLERANCE_SECONDS = 300


def _plain(obj: Any) -> Dict[str, Any]:
    # StripeObject renders itself as JSON; round-tripping gives plain dicts/lists.
    return json.loads(str(obj))


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except stripe.StripeError as exc:
        code = getattr(exc, "code", None)
        message = getattr(exc, "user_message", None) or str(exc) or operation
        logger.warning("Stripe %s failed (code=%s): %s", operation, code, message)
        raise RemoteBillingError(
            message,
            code=code,
            http_status=getattr(exc, "http_status", None),
            not_found=code == "resource_missing",
        ) from exc


class StripeGateway:
    """Thin, explicitly-configured facade over the Stripe resources we use."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        *,
        api_version: Optional[str] = None,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._options: Dict[str, Any] = {"api_key": api_key}
        if api_version:
            self._options["stripe_version"] = api_version

    # -- products & prices -------------------------------------------------

    def retrieve_product(self, product_id: str) -> str:
        with _translate_errors("product retrieve"):
            return stripe.Product.retrieve(product_id, **self._options).id

    def create_product(self, **params: Any) -> str:
        with _translate_errors("product create"):
            return stripe.Product.create(**params, **self._options).id

    def update_product(self, product_id: str, **params: Any) -> str:
        with _translate_errors("product update"):
            return stripe.Product.modify(product_id, **params, **self._options).id

    def create_price(self, **params: Any) -> str:
        with _translate_errors("price create"):
            return stripe.Price.create(**params, **self._options).id

    def deactivate_price(self, price_id: str) -> None:
        with _translate_errors("price deactivate"):
            stripe.Price.modify(price_id, active=False, **self._options)

    # -- customers ---------------------------------------------------------

    def find_customer_by_email(self, email: str) -> Optional[str]:
        with _translate_errors("customer lookup"):
            result = stripe.Customer.list(email=email, limit=1, **self._options)
        customers = result.data
        return customers[0].id if customers else None

    def create_customer(self, **params: Any) -> str:
        with _translate_errors("customer create"):
            return stripe.Customer.create(**params, **self._options).id

    def update_customer(self, customer_id: str, **params: Any) -> str:
        with _translate_errors("customer update"):
            return stripe.Customer.modify(customer_id, **params, **self._options).id

    def list_tax_ids(self, customer_id: str) -> List[Dict[str, Any]]:
        with _translate_errors("tax id list"):
            result = stripe.Customer.list_tax_ids(customer_id, limit=100, **self._options)
        return [{"id": item.id, "type": item.type, "value": item.value} for item in result.data]

    def create_tax_id(self, customer_id: str, *, type: str, value: str) -> str:
        with _translate_errors("tax id create"):
            return stripe.Customer.create_tax_id(customer_id, type=type, value=value, **self._options).id

    # -- setup & subscriptions ---------------------------------------------

    def create_setup_intent(self, **params: Any) -> Dict[str, Any]:
        with _translate_errors("setup intent create"):
            intent = stripe.SetupIntent.create(**params, **self._options)
        return {"id": intent.id, "client_secret": intent.client_secret}

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        with _translate_errors("subscription retrieve"):
            return _plain(stripe.Subscription.retrieve(subscription_id, **self._options))

    def create_subscription(self, *, idempotency_key: Optional[str] = None, **params: Any) -> Dict[str, Any]:
        options = dict(self._options)
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        with _translate_errors("subscription create"):
            return _plain(stripe.Subscription.create(**params, **options))

    def update_subscription(self, subscription_id: str, **params: Any) -> Dict[str, Any]:
        with _translate_errors("subscription update"):
            return _plain(stripe.Subscription.modify(subscription_id, **params, **self._options))

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        with _translate_errors("subscription cancel"):
            return _plain(stripe.Subscription.cancel(subscription_id, **self._options))

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        with _translate_errors("charge retrieve"):
            return _plain(stripe.Charge.retrieve(charge_id, **self._options))

    def list_invoices(self, customer_id: str, *, limit: int = 10) -> List[Dict[str, Any]]:
        with _translate_errors("invoice list"):
            result = stripe.Invoice.list(customer=customer_id, limit=limit, **self._options)
        return [_plain(invoice) for invoice in result.data]

    # -- webhooks ----------------------------------------------------------

    def parse_webhook(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """Verify the signature over the raw body, then decode it."""

        if not signature_header:
            raise WebhookSignatureError("Missing Stripe signature header.")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as exc:
            raise WebhookPayloadError("Invalid payload") from exc

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature_header,
                self._webhook_secret,
                WEBHOOK_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Invalid Stripe signature: %s", exc)
            raise WebhookSignatureError("Invalid signature") from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise WebhookPayloadError("Invalid payload") from exc
        if not isinstance(event, dict):
            raise WebhookPayloadError("Invalid payload")
        return event


def build_gateway(config: BillingConfig) -> StripeGateway:
    """Create the process-wide gateway from validated configuration."""

    stripe.set_app_info(APP_NAME, version="1.0.0")
    stripe.max_network_retries = config.max_network_retries
    return StripeGateway(
        config.stripe_secret_key,
        config.webhook_signing_secret,
        api_version=config.stripe_api_version,
    )
