"""FastAPI router for plan catalogue and subscription administration."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billing import activity
from billing.catalog import create_plan, deactivate_plan, sync_all_plans, update_plan
from billing.plan_sync import PlanSynchronizer
from billing.plans import get_business, list_plans, serialize_plan
from billing.schemas import (
    BillingInfo,
    CancelRequest,
    PauseRequest,
    PlanCreate,
    PlanUpdate,
    StartSubscriptionRequest,
)
from billing.stripe_client import StripeGateway
from billing.subscriptions import SubscriptionService
from routers.dependencies import get_gateway, get_session, require_admin

router = APIRouter(prefix="/api/admin", tags=["billing-admin"], dependencies=[Depends(require_admin)])


##############################################################################################
# Subscription plans
##############################################################################################


@router.get("/subscription-plans")
def list_subscription_plans(
    active_only: bool = Query(False),
    session: Session = Depends(get_session),
):
    plans = list_plans(session, active_only=active_only)
    return {"plans": [serialize_plan(plan) for plan in plans]}


@router.post("/subscription-plans", status_code=status.HTTP_201_CREATED)
def create_subscription_plan(
    payload: PlanCreate,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
):
    plan = create_plan(session, PlanSynchronizer(gateway), payload)
    return {"plan": serialize_plan(plan)}


@router.post("/subscription-plans/sync")
def sync_subscription_plans(
    force_new_price: bool = Query(False),
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
):
    results = sync_all_plans(session, PlanSynchronizer(gateway), force_new_price=force_new_price)
    failed = [item for item in results if item["status"] == "error"]
    content = {"results": results, "synced": len(results) - len(failed), "failed": len(failed)}
    # 207 tells the caller some plans synced while others did not.
    return JSONResponse(status_code=207 if failed else status.HTTP_200_OK, content=content)


@router.put("/subscription-plans/{key}")
def update_subscription_plan(
    key: str,
    payload: PlanUpdate,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
):
    plan = update_plan(session, PlanSynchronizer(gateway), key, payload)
    return {"plan": serialize_plan(plan)}


@router.delete("/subscription-plans/{key}")
def delete_subscription_plan(
    key: str,
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
):
    plan = deactivate_plan(session, gateway, key)
    return {"plan": serialize_plan(plan)}


##############################################################################################
# Business subscriptions
##############################################################################################


def _service(
    session: Session = Depends(get_session),
    gateway: StripeGateway = Depends(get_gateway),
) -> SubscriptionService:
    return SubscriptionService(session, gateway)


@router.get("/subscriptions/{business_id}")
def get_business_subscription(
    business_id: int,
    include_remote: bool = Query(False),
    invoice_limit: int = Query(10, ge=1, le=100),
    service: SubscriptionService = Depends(_service),
):
    return service.get_subscription(business_id, include_remote=include_remote, invoice_limit=invoice_limit)


@router.post("/subscriptions/{business_id}")
def start_business_subscription(
    business_id: int,
    payload: StartSubscriptionRequest,
    service: SubscriptionService = Depends(_service),
):
    return service.start_subscription(
        business_id,
        payload.plan_key,
        payload.user_email,
        user_name=payload.user_name,
        billing_info=payload.billing_info,
        prorate=payload.prorate,
    )


@router.post("/subscriptions/{business_id}/pause")
def pause_business_subscription(
    business_id: int,
    payload: Optional[PauseRequest] = None,
    service: SubscriptionService = Depends(_service),
):
    return service.pause(business_id, resume_at=payload.resume_at if payload else None)


@router.post("/subscriptions/{business_id}/resume")
def resume_business_subscription(
    business_id: int,
    service: SubscriptionService = Depends(_service),
):
    return service.resume(business_id)


@router.post("/subscriptions/{business_id}/cancel")
def cancel_business_subscription(
    business_id: int,
    payload: Optional[CancelRequest] = None,
    service: SubscriptionService = Depends(_service),
):
    return service.cancel(business_id, immediately=payload.immediately if payload else False)


@router.put("/subscriptions/{business_id}/billing")
def update_business_billing(
    business_id: int,
    payload: BillingInfo,
    service: SubscriptionService = Depends(_service),
):
    return service.update_billing_info(business_id, payload)


@router.get("/subscriptions/{business_id}/access")
def get_business_access(
    business_id: int,
    service: SubscriptionService = Depends(_service),
):
    return {"business_id": business_id, "has_access": service.validate_business_access(business_id)}


@router.get("/subscriptions/{business_id}/activity")
def list_business_activity(
    business_id: int,
    types: Optional[List[str]] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
):
    get_business(session, business_id)
    entries = activity.list_activity(session, business_id, types=types, limit=limit)
    return {"activity": [activity.serialize_activity(entry) for entry in entries]}
