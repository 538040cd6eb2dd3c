"""Typed view of the Stripe webhook events the engine reacts to.

Stripe type strings are folded onto the closed :class:`EventKind` set. Each
handler validates the event's data object into one of the models below, so
reconciliation code works with typed fields instead of probing raw dicts.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.datetime_utils import from_unix_timestamp

BUSINESS_ID_KEY = "businessId"
PLAN_KEY_KEY = "planKey"
USER_EMAIL_KEY = "userEmail"


class EventKind(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SETUP_COMPLETED = "setup_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    TRIAL_WILL_END = "trial_will_end"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    INVOICE_UPCOMING = "invoice_upcoming"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_METHOD_ATTACHED = "payment_method_attached"
    PAYMENT_METHOD_DETACHED = "payment_method_detached"
    PAYMENT_METHOD_UPDATED = "payment_method_updated"
    DISPUTE_CREATED = "dispute_created"
    UNKNOWN = "unknown"


STRIPE_EVENT_KINDS: Dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "setup_intent.succeeded": EventKind.SETUP_COMPLETED,
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "customer.subscription.paused": EventKind.SUBSCRIPTION_PAUSED,
    "customer.subscription.resumed": EventKind.SUBSCRIPTION_RESUMED,
    "customer.subscription.trial_will_end": EventKind.TRIAL_WILL_END,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
    "invoice.upcoming": EventKind.INVOICE_UPCOMING,
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "payment_method.attached": EventKind.PAYMENT_METHOD_ATTACHED,
    "payment_method.detached": EventKind.PAYMENT_METHOD_DETACHED,
    "payment_method.updated": EventKind.PAYMENT_METHOD_UPDATED,
    "charge.dispute.created": EventKind.DISPUTE_CREATED,
}


def classify_event_type(event_type: str) -> EventKind:
    return STRIPE_EVENT_KINDS.get(event_type, EventKind.UNKNOWN)


def parse_business_id(metadata: Optional[Dict[str, Any]]) -> Optional[int]:
    """Return the correlated business id, or None when absent or malformed."""

    if not metadata:
        return None
    raw = metadata.get(BUSINESS_ID_KEY)
    if raw is None:
        return None
    try:
        business_id = int(str(raw).strip())
    except ValueError:
        return None
    return business_id if business_id > 0 else None


def object_id(value: Any) -> Any:
    # Expanded references arrive as objects; we only ever need their id.
    if isinstance(value, dict):
        return value.get("id")
    return value


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return value or {}

    @property
    def business_id(self) -> Optional[int]:
        return parse_business_id(self.metadata)


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Dict[str, Any]


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int
    livemode: bool = False
    data: EventData

    @property
    def kind(self) -> EventKind:
        return classify_event_type(self.type)

    @property
    def occurred_at(self) -> datetime:
        return from_unix_timestamp(self.created)


class PriceRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    price: Optional[PriceRef] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(_StripeObject):
    id: str
    status: str
    customer: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[int] = None
    trial_end: Optional[int] = None
    pause_collection: Optional[Dict[str, Any]] = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)

    @field_validator("customer", mode="before")
    @classmethod
    def reference_ids(cls, value: Any) -> Any:
        return object_id(value)

    @property
    def first_item(self) -> Optional[SubscriptionItem]:
        return self.items.data[0] if self.items.data else None

    @property
    def price_id(self) -> Optional[str]:
        item = self.first_item
        return item.price.id if item and item.price else None

    @property
    def plan_key_hint(self) -> Optional[str]:
        if self.metadata.get(PLAN_KEY_KEY):
            return str(self.metadata[PLAN_KEY_KEY])
        item = self.first_item
        if item and item.price and item.price.metadata.get(PLAN_KEY_KEY):
            return str(item.price.metadata[PLAN_KEY_KEY])
        return None

    @property
    def period_end(self) -> Optional[datetime]:
        # Newer API versions moved billing periods onto subscription items.
        if self.current_period_end is not None:
            return from_unix_timestamp(self.current_period_end)
        item = self.first_item
        return from_unix_timestamp(item.current_period_end) if item else None

    @property
    def trial_end_at(self) -> Optional[datetime]:
        return from_unix_timestamp(self.trial_end)


class _SubscriptionDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("subscription", mode="before")
    @classmethod
    def reference_ids(cls, value: Any) -> Any:
        return object_id(value)


class _InvoiceParent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription_details: Optional[_SubscriptionDetails] = None


class _LinePeriod(BaseModel):
    model_config = ConfigDict(extra="ignore")

    start: Optional[int] = None
    end: Optional[int] = None


class _InvoiceLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    period: Optional[_LinePeriod] = None


class _InvoiceLines(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[_InvoiceLine] = Field(default_factory=list)


class InvoiceObject(_StripeObject):
    id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    status: Optional[str] = None
    currency: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    attempt_count: int = 0
    billing_reason: Optional[str] = None
    next_payment_attempt: Optional[int] = None
    hosted_invoice_url: Optional[str] = None
    subscription_details: Optional[_SubscriptionDetails] = None
    parent: Optional[_InvoiceParent] = None
    lines: _InvoiceLines = Field(default_factory=_InvoiceLines)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def reference_ids(cls, value: Any) -> Any:
        return object_id(value)

    @property
    def _details(self) -> Optional[_SubscriptionDetails]:
        if self.subscription_details is not None:
            return self.subscription_details
        if self.parent is not None:
            return self.parent.subscription_details
        return None

    @property
    def business_id(self) -> Optional[int]:
        direct = parse_business_id(self.metadata)
        if direct is not None:
            return direct
        details = self._details
        return parse_business_id(details.metadata) if details else None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = self._details
        return details.subscription if details else None

    @property
    def service_period_end(self) -> Optional[datetime]:
        for line in self.lines.data:
            if line.period and line.period.end:
                return from_unix_timestamp(line.period.end)
        return None


class CheckoutSessionObject(_StripeObject):
    id: str
    mode: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def reference_ids(cls, value: Any) -> Any:
        return object_id(value)


class SetupIntentObject(_StripeObject):
    id: str
    status: Optional[str] = None
    customer: Optional[str] = None
    payment_method: Optional[str] = None

    @field_validator("customer", "payment_method", mode="before")
    @classmethod
    def reference_ids(cls, value: Any) -> Any:
        return object_id(value)


class DisputeObject(_StripeObject):
    id: str
    charge: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    reason: Optional[str] = None
    status: Optional[str] = None

    @field_validator("charge", mode="before")
    @classmethod
    def reference_ids(cls, value: Any) -> Any:
        return object_id(value)


class InformationalObject(_StripeObject):
    """Payment intents and payment methods: only logged, never reconciled."""

    id: Optional[str] = None
    object: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    customer: Optional[str] = None

    @field_validator("customer", mode="before")
    @classmethod
    def reference_ids(cls, value: Any) -> Any:
        return object_id(value)
