"""Subscription plan registry and default catalogue."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from models import ENTITLED_STATUSES, TRIAL_PLAN_KEY, Business, SubscriptionPlan

from .exceptions import BusinessNotFoundError, PlanNotFoundError


@dataclass(frozen=True)
class PlanDefinition:
    key: str
    name: str
    description: str
    recurring_price: Decimal
    setup_price: Decimal = Decimal("0.00")
    currency: str = "EUR"
    interval: str = "month"
    trial_days: int = 0
    features: Tuple[str, ...] = field(default_factory=tuple)
    icon: Optional[str] = None
    color: Optional[str] = None
    popular: bool = False


DEFAULT_PLAN_DEFINITIONS: List[PlanDefinition] = [
    PlanDefinition(
        key=TRIAL_PLAN_KEY,
        name="Free Trial",
        description="Seven day trial period.",
        recurring_price=Decimal("0.00"),
        trial_days=7,
        features=(
            "Up to 100 reviews",
            "Basic reward system",
            "Email support",
            "No credit card required",
        ),
        icon="🎁",
        color="green",
    ),
    PlanDefinition(
        key="basic",
        name="Basic Plan",
        description="Ideal for growing businesses.",
        recurring_price=Decimal("29.00"),
        features=(
            "Up to 500 reviews",
            "Full reward system",
            "Advanced statistics",
            "Priority support",
            "Basic customization",
        ),
        icon="🚀",
        color="blue",
    ),
    PlanDefinition(
        key="premium",
        name="Premium Plan",
        description="For businesses that want it all.",
        recurring_price=Decimal("59.00"),
        features=(
            "Unlimited reviews",
            "Multiple locations",
            "Custom API",
            "24/7 support",
            "Full customization",
            "Advanced analytics",
            "CRM integration",
        ),
        icon="👑",
        color="purple",
        popular=True,
    ),
]


def get_plan_definitions() -> Iterable[PlanDefinition]:
    """Return the immutable list of default plan definitions."""

    return tuple(DEFAULT_PLAN_DEFINITIONS)


def get_plan_by_key(session: Session, key: str) -> Optional[SubscriptionPlan]:
    return session.query(SubscriptionPlan).filter(SubscriptionPlan.key == key).one_or_none()


def require_plan(session: Session, key: str, *, active: bool = False) -> SubscriptionPlan:
    """Return the plan or raise :class:`PlanNotFoundError`.

    With ``active=True`` an inactive plan is treated as missing, which is what
    callers selling the plan want.
    """

    plan = get_plan_by_key(session, key)
    if plan is None or (active and not plan.active):
        raise PlanNotFoundError(f"Subscription plan '{key}' not found.")
    return plan


def list_plans(session: Session, *, active_only: bool = True) -> List[SubscriptionPlan]:
    query = session.query(SubscriptionPlan)
    if active_only:
        query = query.filter(SubscriptionPlan.active.is_(True))
    return query.order_by(SubscriptionPlan.recurring_price.asc(), SubscriptionPlan.id.asc()).all()


def find_plan_by_price_id(session: Session, stripe_price_id: str) -> Optional[SubscriptionPlan]:
    if not stripe_price_id:
        return None
    return (
        session.query(SubscriptionPlan)
        .filter(SubscriptionPlan.stripe_price_id == stripe_price_id)
        .one_or_none()
    )


def active_business_count(session: Session, key: str) -> int:
    """Count active businesses still entitled through the given plan."""

    return (
        session.query(Business)
        .filter(
            Business.subscription_plan == key,
            Business.active.is_(True),
            Business.subscription_status.in_(list(ENTITLED_STATUSES)),
        )
        .count()
    )


def get_business(session: Session, business_id: int) -> Business:
    business = session.get(Business, business_id)
    if business is None:
        raise BusinessNotFoundError(f"Business {business_id} not found.")
    return business


def create_business(
    session: Session,
    name: str,
    *,
    subdomain: Optional[str] = None,
    contact_email: Optional[str] = None,
    commit: bool = True,
) -> Business:
    """Register a business on the trial plan with no billing identity yet."""

    business = Business(
        name=name,
        subdomain=subdomain,
        contact_email=contact_email,
        active=False,
        subscription_plan=TRIAL_PLAN_KEY,
        subscription_status="inactive",
        payment_failures=0,
        subscription_revision=0,
        cancel_at_period_end=False,
    )
    session.add(business)

    if commit:
        session.commit()
    else:
        session.flush()

    return business


def seed_plan_catalogue(
    session: Session,
    *,
    allow_updates: bool = False,
    commit: bool = True,
) -> List[SubscriptionPlan]:
    """Ensure each default plan definition exists in the database.

    Parameters
    ----------
    session:
        Open SQLAlchemy session.
    allow_updates:
        When True, existing plans are reset to match their definitions.
        Stripe identifiers are never touched; run a plan sync afterwards.
    commit:
        Whether to commit the session before returning.

    Returns
    -------
    List[SubscriptionPlan]
        The persisted plan records, ordered like ``DEFAULT_PLAN_DEFINITIONS``.
    """

    persisted: List[SubscriptionPlan] = []

    for definition in DEFAULT_PLAN_DEFINITIONS:
        plan = get_plan_by_key(session, definition.key)

        if plan is None:
            plan = SubscriptionPlan(key=definition.key, active=True)
            session.add(plan)
        elif not allow_updates:
            persisted.append(plan)
            continue

        plan.name = definition.name
        plan.description = definition.description
        plan.setup_price = definition.setup_price
        plan.recurring_price = definition.recurring_price
        plan.currency = definition.currency
        plan.interval = definition.interval
        plan.trial_days = definition.trial_days
        plan.features = list(definition.features)
        plan.icon = definition.icon
        plan.color = definition.color
        plan.popular = definition.popular
        plan.active = True

        persisted.append(plan)

    if commit:
        session.commit()
    else:
        session.flush()

    return persisted


def serialize_plan(plan: SubscriptionPlan) -> dict:
    return {
        "key": plan.key,
        "name": plan.name,
        "description": plan.description,
        "setup_price": str(plan.setup_price) if plan.setup_price is not None else None,
        "recurring_price": str(plan.recurring_price) if plan.recurring_price is not None else None,
        "original_price": str(plan.original_price) if plan.original_price is not None else None,
        "currency": plan.currency,
        "interval": plan.interval,
        "trial_days": plan.trial_days,
        "features": list(plan.features or []),
        "active": bool(plan.active),
        "popular": bool(plan.popular),
        "icon": plan.icon,
        "color": plan.color,
        "stripe_product_id": plan.stripe_product_id,
        "stripe_price_id": plan.stripe_price_id,
    }
