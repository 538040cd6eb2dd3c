"""Billing utilities for syncing subscription plans and business state with Stripe."""

from .catalog import create_plan, deactivate_plan, sync_all_plans, update_plan
from .config import BillingConfig, load_billing_config
from .customers import CustomerResolver, ResolvedCustomer
from .escalation import PaymentFailureEscalator
from .events import EventKind, WebhookEnvelope, classify_event_type
from .payment_setup import SetupInitiator, SetupResult
from .plan_sync import PlanSynchronizer, SyncResult, normalize_interval
from .plans import (
    DEFAULT_PLAN_DEFINITIONS,
    create_business,
    get_plan_by_key,
    list_plans,
    seed_plan_catalogue,
)
from .reconciler import SubscriptionReconciler, map_stripe_status
from .stripe_client import StripeGateway, build_gateway
from .subscriptions import SubscriptionService
from .webhooks import EVENT_HANDLERS, WebhookDispatcher

__all__ = [
    "BillingConfig",
    "CustomerResolver",
    "DEFAULT_PLAN_DEFINITIONS",
    "EVENT_HANDLERS",
    "EventKind",
    "PaymentFailureEscalator",
    "PlanSynchronizer",
    "ResolvedCustomer",
    "SetupInitiator",
    "SetupResult",
    "StripeGateway",
    "SubscriptionReconciler",
    "SubscriptionService",
    "SyncResult",
    "WebhookDispatcher",
    "WebhookEnvelope",
    "build_gateway",
    "classify_event_type",
    "create_business",
    "create_plan",
    "deactivate_plan",
    "get_plan_by_key",
    "list_plans",
    "load_billing_config",
    "map_stripe_status",
    "normalize_interval",
    "seed_plan_catalogue",
    "sync_all_plans",
    "update_plan",
]
