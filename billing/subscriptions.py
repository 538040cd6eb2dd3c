"""Administrative operations on a business' subscription.

Actions that change the remote subscription (plan change, pause, resume,
cancel) only talk to Stripe and write an audit entry. The local subscription
columns follow when the resulting webhook arrives, so there is a single
writer for them.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.datetime_utils import ensure_aware, from_unix_timestamp
from core.numeric_utils import cents_to_euros
from models import ENTITLED_STATUSES, TRIAL_PLAN_KEY, Business

from . import activity
from .catalog import ensure_plan_synced
from .customers import CustomerResolver
from .events import PLAN_KEY_KEY
from .exceptions import BillingValidationError, RemoteBillingError, SubscriptionNotFoundError
from .payment_setup import SetupInitiator
from .plan_sync import PlanSynchronizer
from .plans import get_business, get_plan_by_key, require_plan, serialize_plan
from .reconciler import LIVE_STATUSES
from .schemas import BillingInfo
from .stripe_client import StripeGateway

logger = logging.getLogger(__name__)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return ensure_aware(value).isoformat() if value else None


def serialize_subscription(business: Business) -> Dict[str, Any]:
    view = business.subscription
    return {
        "plan": view.plan,
        "status": view.status,
        "stripe_customer_id": view.stripe_customer_id,
        "stripe_subscription_id": view.stripe_subscription_id,
        "stripe_price_id": view.stripe_price_id,
        "current_period_end": _isoformat(view.current_period_end),
        "cancel_at_period_end": view.cancel_at_period_end,
        "trial_end": _isoformat(view.trial_end),
        "payment_failures": view.payment_failures,
        "last_payment_attempt": _isoformat(view.last_payment_attempt),
        "revision": view.revision,
    }


def _serialize_invoice(invoice: Dict[str, Any]) -> Dict[str, Any]:
    created = from_unix_timestamp(invoice.get("created"))
    return {
        "id": invoice.get("id"),
        "number": invoice.get("number"),
        "status": invoice.get("status"),
        "currency": invoice.get("currency"),
        "amount_due": str(cents_to_euros(invoice.get("amount_due") or 0)),
        "amount_paid": str(cents_to_euros(invoice.get("amount_paid") or 0)),
        "created": created.isoformat() if created else None,
        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
        "invoice_pdf": invoice.get("invoice_pdf"),
    }


class SubscriptionService:
    def __init__(self, session: Session, gateway: StripeGateway) -> None:
        self._session = session
        self._gateway = gateway
        self._synchronizer = PlanSynchronizer(gateway)
        self._resolver = CustomerResolver(gateway)

    def _live_subscription_id(self, business: Business) -> str:
        if not business.stripe_subscription_id or business.subscription_status not in LIVE_STATUSES:
            raise SubscriptionNotFoundError(f"Business {business.id} has no live subscription.")
        return business.stripe_subscription_id

    def _audit(self, business_id: int, type: str, description: str, metadata: Dict[str, Any]) -> None:
        activity.record_activity(self._session, business_id, type, description, metadata)
        self._session.commit()

    def get_subscription(
        self,
        business_id: int,
        *,
        include_remote: bool = False,
        invoice_limit: int = 10,
    ) -> Dict[str, Any]:
        """Local subscription view, optionally enriched with live Stripe data.

        Remote failures do not fail the read; they are reported under
        ``remote_error`` next to whatever local state is available.
        """

        business = get_business(self._session, business_id)
        plan = get_plan_by_key(self._session, business.subscription_plan)

        result: Dict[str, Any] = {
            "business_id": business.id,
            "business_name": business.name,
            "active": bool(business.active),
            "subscription": serialize_subscription(business),
            "plan": serialize_plan(plan) if plan is not None else None,
        }
        if not include_remote:
            return result

        try:
            if business.stripe_subscription_id:
                remote = self._gateway.retrieve_subscription(business.stripe_subscription_id)
                result["remote"] = {
                    "status": remote.get("status"),
                    "cancel_at_period_end": remote.get("cancel_at_period_end"),
                    "pause_collection": remote.get("pause_collection"),
                    "trial_end": _isoformat(from_unix_timestamp(remote.get("trial_end"))),
                }
            if business.stripe_customer_id:
                invoices = self._gateway.list_invoices(business.stripe_customer_id, limit=invoice_limit)
                result["invoices"] = [_serialize_invoice(invoice) for invoice in invoices]
        except RemoteBillingError as exc:
            logger.warning("Could not load remote billing data for business %s: %s", business_id, exc)
            result["remote_error"] = {"message": exc.message, "code": exc.code}

        return result

    def start_subscription(
        self,
        business_id: int,
        plan_key: str,
        user_email: str,
        user_name: Optional[str] = None,
        billing_info: Optional[BillingInfo] = None,
        *,
        prorate: bool = True,
    ) -> Dict[str, Any]:
        """Begin a subscription, or switch plans when one is already live."""

        business = get_business(self._session, business_id)
        if business.stripe_subscription_id and business.subscription_status in LIVE_STATUSES:
            changed = self.change_plan(business_id, plan_key, prorate=prorate)
            return {"mode": "plan_change", **changed}

        setup = SetupInitiator(self._session, self._gateway, self._resolver).start_setup(
            user_email,
            business_id,
            user_name=user_name,
            billing_info=billing_info,
            plan_key=plan_key,
        )
        return {
            "mode": "setup",
            "client_secret": setup.client_secret,
            "customer_id": setup.customer_id,
            "tax_id_ref": setup.tax_id_ref,
            "setup_intent_id": setup.setup_intent_id,
        }

    def change_plan(self, business_id: int, plan_key: str, *, prorate: bool = True) -> Dict[str, Any]:
        business = get_business(self._session, business_id)
        subscription_id = self._live_subscription_id(business)

        plan = require_plan(self._session, plan_key, active=True)
        if plan.key == TRIAL_PLAN_KEY:
            raise BillingValidationError("Cannot switch a paid subscription to the trial plan.")
        plan = ensure_plan_synced(self._session, self._synchronizer, plan)

        remote = self._gateway.retrieve_subscription(subscription_id)
        items: List[Dict[str, Any]] = (remote.get("items") or {}).get("data") or []
        if not items:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} has no items to update.")

        metadata = dict(remote.get("metadata") or {})
        metadata[PLAN_KEY_KEY] = plan.key
        updated = self._gateway.update_subscription(
            subscription_id,
            items=[{"id": items[0]["id"], "price": plan.stripe_price_id}],
            proration_behavior="create_prorations" if prorate else "none",
            metadata=metadata,
        )

        previous_plan = business.subscription_plan
        self._audit(
            business_id,
            activity.PLAN_CHANGED,
            f"Plan change requested: {previous_plan} -> {plan.key}",
            {"from": previous_plan, "to": plan.key, "prorate": prorate, "subscriptionId": subscription_id},
        )
        logger.info("Business %s switching from %s to %s", business_id, previous_plan, plan.key)
        return {"subscription_id": updated.get("id"), "status": updated.get("status"), "plan_key": plan.key}

    def pause(self, business_id: int, resume_at: Optional[datetime] = None) -> Dict[str, Any]:
        business = get_business(self._session, business_id)
        subscription_id = self._live_subscription_id(business)

        pause_collection: Dict[str, Any] = {"behavior": "mark_uncollectible"}
        if resume_at is not None:
            pause_collection["resumes_at"] = int(ensure_aware(resume_at).timestamp())

        updated = self._gateway.update_subscription(subscription_id, pause_collection=pause_collection)
        self._audit(
            business_id,
            activity.SUBSCRIPTION_PAUSED,
            "Subscription pause requested",
            {"subscriptionId": subscription_id, "resumesAt": _isoformat(resume_at)},
        )
        return {"subscription_id": subscription_id, "status": updated.get("status"), "paused": True}

    def resume(self, business_id: int) -> Dict[str, Any]:
        business = get_business(self._session, business_id)
        subscription_id = self._live_subscription_id(business)

        # An empty string unsets the field on Stripe's side.
        updated = self._gateway.update_subscription(subscription_id, pause_collection="")
        self._audit(
            business_id,
            activity.SUBSCRIPTION_RESUMED,
            "Subscription resume requested",
            {"subscriptionId": subscription_id},
        )
        return {"subscription_id": subscription_id, "status": updated.get("status"), "paused": False}

    def cancel(self, business_id: int, *, immediately: bool = False) -> Dict[str, Any]:
        business = get_business(self._session, business_id)
        subscription_id = self._live_subscription_id(business)

        if immediately:
            updated = self._gateway.cancel_subscription(subscription_id)
        else:
            updated = self._gateway.update_subscription(subscription_id, cancel_at_period_end=True)

        self._audit(
            business_id,
            activity.SUBSCRIPTION_CANCELED,
            "Subscription canceled immediately" if immediately else "Subscription set to cancel at period end",
            {"subscriptionId": subscription_id, "immediately": immediately},
        )
        return {
            "subscription_id": subscription_id,
            "status": updated.get("status"),
            "cancel_at_period_end": bool(updated.get("cancel_at_period_end")),
        }

    def update_billing_info(self, business_id: int, billing_info: BillingInfo) -> Dict[str, Any]:
        business = get_business(self._session, business_id)
        email = billing_info.email or business.contact_email
        if not email:
            raise BillingValidationError("A billing email is required.")

        customer = self._resolver.resolve(email, business_id, billing_info.legal_name, billing_info)
        business.stripe_customer_id = customer.customer_id
        self._audit(
            business_id,
            activity.BILLING_INFO_UPDATED,
            "Billing information updated",
            {"customerId": customer.customer_id, "taxIdRef": customer.tax_id_ref},
        )
        return {"customer_id": customer.customer_id, "tax_id_ref": customer.tax_id_ref}

    def validate_business_access(self, business_id: int) -> bool:
        """True only while the business is active and entitled by its status."""

        business = self._session.get(Business, business_id)
        if business is None:
            return False
        return bool(business.active) and business.subscription_status in ENTITLED_STATUSES
