"""Database helpers for the per-business billing audit trail."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from models import ActivityLog

SUBSCRIPTION_CREATED = "subscription_created"
SUBSCRIPTION_UPDATED = "subscription_updated"
SUBSCRIPTION_CANCELED = "subscription_canceled"
SUBSCRIPTION_PAUSED = "subscription_paused"
SUBSCRIPTION_RESUMED = "subscription_resumed"
TRIAL_ENDING = "trial_will_end"
PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
PAYMENT_METHOD_CHANGED = "payment_method_changed"
INVOICE_UPCOMING = "invoice_upcoming"
DISPUTE_CREATED = "dispute_created"
ACCOUNT_SUSPENDED = "account_suspended"
PLAN_CHANGED = "plan_changed"
PAYMENT_SETUP_STARTED = "payment_setup_started"
BILLING_INFO_UPDATED = "billing_info_updated"


def record_activity(
    session: Session,
    business_id: int,
    type: str,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> ActivityLog:
    """Append an audit entry; the caller owns the commit."""

    entry = ActivityLog(
        business_id=business_id,
        type=type,
        description=description,
        details=dict(metadata or {}),
    )
    session.add(entry)
    return entry


def list_activity(
    session: Session,
    business_id: int,
    *,
    types: Optional[Iterable[str]] = None,
    limit: int = 50,
) -> List[ActivityLog]:
    """Return the business' audit entries, newest first."""

    query = session.query(ActivityLog).filter(ActivityLog.business_id == business_id)
    if types:
        query = query.filter(ActivityLog.type.in_(list(types)))

    return (
        query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(max(limit, 1))
        .all()
    )


def serialize_activity(entry: ActivityLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "business_id": entry.business_id,
        "type": entry.type,
        "description": entry.description,
        "metadata": entry.details or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
