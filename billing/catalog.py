"""Administrative plan lifecycle: create, edit, deactivate and bulk re-sync.

Every operation validates its input before the first Stripe call and only
commits local changes once the remote side has accepted them, so the plan
table never points at identifiers Stripe does not know about.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from pydantic import ValidationError
from sqlalchemy.orm import Session

from core.datetime_utils import utcnow
from models import TRIAL_PLAN_KEY, SubscriptionPlan

from .exceptions import PlanAlreadyExistsError, PlanInUseError, PlanValidationError, RemoteBillingError
from .plan_sync import TRIAL_PRICE_SENTINEL, TRIAL_PRODUCT_SENTINEL, PlanSynchronizer, SyncResult
from .plans import active_business_count, get_plan_by_key, list_plans, require_plan
from .schemas import PRICING_FIELDS, PlanCreate, PlanUpdate
from .stripe_client import StripeGateway

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = tuple(field for field in PlanCreate.model_fields if field != "key")


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid plan definition."


def _apply_sync_result(plan: SubscriptionPlan, result: SyncResult) -> None:
    plan.stripe_product_id = result.product_id
    plan.stripe_price_id = result.price_id


def create_plan(session: Session, synchronizer: PlanSynchronizer, data: PlanCreate) -> SubscriptionPlan:
    """Persist a new plan and mirror it into Stripe, or leave no trace."""

    if get_plan_by_key(session, data.key) is not None:
        raise PlanAlreadyExistsError(f"Subscription plan '{data.key}' already exists.")

    values = data.model_dump()
    values["features"] = list(values.get("features") or [])
    plan = SubscriptionPlan(**values)
    session.add(plan)
    session.flush()

    if not plan.active:
        # Inactive plans stay local until they are switched on.
        session.commit()
        session.refresh(plan)
        logger.info("Created inactive plan %s without Stripe sync", plan.key)
        return plan

    try:
        result = synchronizer.sync(plan)
    except RemoteBillingError:
        session.rollback()
        logger.warning("Plan %s was not created: Stripe sync failed", data.key)
        raise

    _apply_sync_result(plan, result)
    session.commit()
    session.refresh(plan)
    logger.info("Created plan %s (price=%s)", plan.key, plan.stripe_price_id)
    return plan


def update_plan(
    session: Session,
    synchronizer: PlanSynchronizer,
    key: str,
    changes: PlanUpdate,
) -> SubscriptionPlan:
    """Apply a partial edit, re-syncing Stripe before anything is committed.

    A new Stripe price is only minted when a pricing-relevant field actually
    changes, the plan is reactivated or it has no price yet; other edits
    update the product. Inactive plans are saved without touching Stripe.
    """

    plan = require_plan(session, key)
    updates = changes.model_dump(exclude_unset=True)

    merged: Dict[str, Any] = {field: getattr(plan, field) for field in _EDITABLE_FIELDS}
    merged.update(updates)
    merged["key"] = plan.key
    try:
        validated = PlanCreate.model_validate(merged)
    except ValidationError as exc:
        raise PlanValidationError(_validation_message(exc)) from exc

    normalized = validated.model_dump()
    pricing_changed = any(normalized[field] != getattr(plan, field) for field in PRICING_FIELDS)
    reactivated = normalized["active"] and not plan.active

    for field in _EDITABLE_FIELDS:
        setattr(plan, field, normalized[field])
    plan.features = list(normalized.get("features") or [])

    if not plan.active:
        session.commit()
        session.refresh(plan)
        logger.info("Updated inactive plan %s without Stripe sync", key)
        return plan

    # Deactivation archived the old price, so a reactivated plan needs a fresh one.
    force_new_price = pricing_changed or reactivated or not plan.stripe_price_id
    try:
        result = synchronizer.sync(plan, force_new_price=force_new_price)
    except RemoteBillingError:
        session.rollback()
        logger.warning("Plan %s was not updated: Stripe sync failed", key)
        raise

    _apply_sync_result(plan, result)
    session.commit()
    session.refresh(plan)
    logger.info("Updated plan %s (new_price=%s)", key, pricing_changed)
    return plan


def deactivate_plan(session: Session, gateway: StripeGateway, key: str) -> SubscriptionPlan:
    """Soft-delete a plan that no active business is using.

    Archiving the Stripe product and price afterwards is best-effort: the
    local plan is already retired for new sign-ups either way.
    """

    plan = require_plan(session, key)

    in_use = active_business_count(session, key)
    if in_use:
        raise PlanInUseError(f"Subscription plan '{key}' is still used by {in_use} active business(es).")

    plan.active = False
    session.commit()
    session.refresh(plan)

    if plan.stripe_product_id and plan.stripe_product_id != TRIAL_PRODUCT_SENTINEL:
        try:
            gateway.update_product(
                plan.stripe_product_id,
                active=False,
                metadata={"archivedAt": utcnow().isoformat(), "archivedReason": "Plan deactivated"},
            )
        except RemoteBillingError as exc:
            logger.warning("Could not archive Stripe product %s for plan %s: %s", plan.stripe_product_id, key, exc)

    if plan.stripe_price_id and plan.stripe_price_id != TRIAL_PRICE_SENTINEL:
        try:
            gateway.deactivate_price(plan.stripe_price_id)
        except RemoteBillingError as exc:
            logger.warning("Could not archive Stripe price %s for plan %s: %s", plan.stripe_price_id, key, exc)

    logger.info("Deactivated plan %s", key)
    return plan


def ensure_plan_synced(session: Session, synchronizer: PlanSynchronizer, plan: SubscriptionPlan) -> SubscriptionPlan:
    """Sync a plan that has never been pushed to Stripe; no-op otherwise."""

    if plan.stripe_price_id:
        return plan

    try:
        result = synchronizer.sync(plan)
    except RemoteBillingError:
        session.rollback()
        raise

    _apply_sync_result(plan, result)
    session.commit()
    session.refresh(plan)
    return plan


def sync_all_plans(
    session: Session,
    synchronizer: PlanSynchronizer,
    *,
    force_new_price: bool = False,
) -> List[Dict[str, Any]]:
    """Re-sync every active paid plan, reporting the outcome per plan."""

    results: List[Dict[str, Any]] = []

    for plan in list_plans(session, active_only=True):
        if plan.key == TRIAL_PLAN_KEY:
            continue

        key = plan.key
        try:
            result = synchronizer.sync(plan, force_new_price=force_new_price or not plan.stripe_price_id)
        except RemoteBillingError as exc:
            session.rollback()
            results.append({"key": key, "status": "error", "error": exc.message, "code": exc.code})
            continue

        _apply_sync_result(plan, result)
        session.commit()
        results.append(
            {
                "key": key,
                "status": "synced",
                "product_id": result.product_id,
                "price_id": result.price_id,
            }
        )

    failed = sum(1 for item in results if item["status"] == "error")
    logger.info("Plan re-sync finished: %d synced, %d failed", len(results) - failed, failed)
    return results
