"""Mirror local plan definitions into Stripe products and prices."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from core.datetime_utils import utcnow
from core.numeric_utils import euros_to_cents
from models import TRIAL_PLAN_KEY, SubscriptionPlan

from .events import PLAN_KEY_KEY
from .exceptions import RemoteBillingError
from .stripe_client import StripeGateway

logger = logging.getLogger(__name__)

TRIAL_PRODUCT_SENTINEL = "local_trial_product"
TRIAL_PRICE_SENTINEL = "local_trial_price"

_INTERVALS: Dict[str, Tuple[str, int]] = {
    "month": ("month", 1),
    "quarter": ("month", 3),
    "semester": ("month", 6),
    "year": ("year", 1),
}


@dataclass(frozen=True)
class SyncResult:
    product_id: str
    price_id: str


def normalize_interval(interval: str) -> Tuple[str, int]:
    """Map a plan interval onto Stripe's ``(interval, interval_count)``."""

    try:
        return _INTERVALS[(interval or "month").lower()]
    except KeyError as exc:
        raise ValueError(f"Unsupported billing interval: {interval!r}") from exc


def _product_params(plan: SubscriptionPlan) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "name": plan.name,
        "active": bool(plan.active),
        "metadata": {
            PLAN_KEY_KEY: plan.key,
            "icon": plan.icon or "",
            "color": plan.color or "",
            "popular": "true" if plan.popular else "false",
        },
    }
    if plan.description:
        params["description"] = plan.description
    return params


class PlanSynchronizer:
    """Create or update the Stripe product for a plan and version its price."""

    def __init__(self, gateway: StripeGateway) -> None:
        self._gateway = gateway

    def sync(self, plan: SubscriptionPlan, *, force_new_price: bool = True) -> SyncResult:
        """Return the remote identifiers for ``plan``; the caller persists them.

        Prices are immutable once created: a pricing change always mints a new
        price so existing subscribers keep what they signed up for, and the
        superseded price is deactivated for new sign-ups only.
        """

        if plan.key == TRIAL_PLAN_KEY:
            return SyncResult(product_id=TRIAL_PRODUCT_SENTINEL, price_id=TRIAL_PRICE_SENTINEL)

        product_id = self._sync_product(plan)

        if not force_new_price and plan.stripe_price_id:
            return SyncResult(product_id=product_id, price_id=plan.stripe_price_id)

        price_id = self._create_price(plan, product_id)

        previous = plan.stripe_price_id
        if previous and previous != price_id and previous != TRIAL_PRICE_SENTINEL:
            try:
                self._gateway.deactivate_price(previous)
            except RemoteBillingError as exc:
                logger.warning("Could not deactivate previous price %s for plan %s: %s", previous, plan.key, exc)

        logger.info("Synced plan %s to Stripe (product=%s, price=%s)", plan.key, product_id, price_id)
        return SyncResult(product_id=product_id, price_id=price_id)

    def _sync_product(self, plan: SubscriptionPlan) -> str:
        params = _product_params(plan)

        if plan.stripe_product_id:
            try:
                self._gateway.retrieve_product(plan.stripe_product_id)
            except RemoteBillingError as exc:
                if not exc.not_found:
                    raise
                logger.info("Stripe product %s not found, creating a new one", plan.stripe_product_id)
            else:
                return self._gateway.update_product(plan.stripe_product_id, **params)

        return self._gateway.create_product(**params)

    def _create_price(self, plan: SubscriptionPlan, product_id: str) -> str:
        interval, interval_count = normalize_interval(plan.interval)
        recurring: Dict[str, Any] = {"interval": interval, "interval_count": interval_count}
        if plan.trial_days and plan.trial_days > 0:
            recurring["trial_period_days"] = plan.trial_days

        return self._gateway.create_price(
            product=product_id,
            currency=(plan.currency or "EUR").lower(),
            unit_amount=euros_to_cents(plan.recurring_price),
            active=bool(plan.active),
            nickname=f"{plan.name} - {utcnow().isoformat()}",
            recurring=recurring,
            metadata={
                PLAN_KEY_KEY: plan.key,
                "setupPrice": str(plan.setup_price if plan.setup_price is not None else "0.00"),
            },
        )
