"""Conditional writes to the subscription columns embedded in a business.

Webhook deliveries for the same business can race each other and can arrive
out of order. Every write therefore reads the business, computes its changes
from that snapshot and applies them with an UPDATE guarded on the revision it
read. By default the guard also refuses events older than the newest one
already applied. A revision conflict re-reads and tries again; an older event
is reported as stale and dropped.

Writes that accumulate rather than overwrite, like the payment failure
counter, pass ``enforce_order=False``: every event is applied, and the event
time is only recorded when it moves the timeline forward.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from core.datetime_utils import ensure_aware
from models import Business

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3

ChangeBuilder = Callable[[Business], Optional[Dict[str, Any]]]


class WriteOutcome(str, enum.Enum):
    APPLIED = "applied"
    STALE = "stale"
    MISSING = "missing"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


@dataclass
class WriteResult:
    outcome: WriteOutcome
    values: Dict[str, Any] = field(default_factory=dict)
    previous_status: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome is WriteOutcome.APPLIED


def is_stale(business: Business, event_at: Optional[datetime]) -> bool:
    if event_at is None or business.subscription_event_at is None:
        return False
    return ensure_aware(business.subscription_event_at) > ensure_aware(event_at)


def write_subscription_state(
    session: Session,
    business_id: int,
    build_changes: ChangeBuilder,
    *,
    event_at: Optional[datetime] = None,
    enforce_order: bool = True,
    max_attempts: int = MAX_WRITE_ATTEMPTS,
) -> WriteResult:
    """Apply ``build_changes(business)`` under optimistic concurrency control.

    ``build_changes`` returns the column values to write, or ``None`` to leave
    the business untouched. The UPDATE is executed but not committed; callers
    commit it together with their audit entries.
    """

    if event_at is not None:
        event_at = ensure_aware(event_at)

    for attempt in range(1, max_attempts + 1):
        business = session.get(Business, business_id, populate_existing=True)
        if business is None:
            return WriteResult(WriteOutcome.MISSING)

        stale = is_stale(business, event_at)
        if stale and enforce_order:
            logger.info(
                "Ignoring stale event for business %s (event=%s, newest applied=%s)",
                business_id,
                event_at,
                business.subscription_event_at,
            )
            return WriteResult(WriteOutcome.STALE, previous_status=business.subscription_status)

        previous_status = business.subscription_status
        revision = business.subscription_revision or 0
        changes = build_changes(business)
        if changes is None:
            return WriteResult(WriteOutcome.SKIPPED, previous_status=previous_status)

        values = dict(changes)
        values["subscription_revision"] = revision + 1
        if event_at is not None and not stale:
            values["subscription_event_at"] = event_at

        stmt = (
            update(Business)
            .where(Business.id == business_id, Business.subscription_revision == revision)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if event_at is not None and enforce_order:
            stmt = stmt.where(
                or_(Business.subscription_event_at.is_(None), Business.subscription_event_at <= event_at)
            )

        result = session.execute(stmt)
        if result.rowcount == 1:
            return WriteResult(WriteOutcome.APPLIED, values=values, previous_status=previous_status)

        logger.info("Revision conflict on business %s (attempt %d/%d)", business_id, attempt, max_attempts)

    logger.warning("Giving up on business %s after %d conflicting writes", business_id, max_attempts)
    return WriteResult(WriteOutcome.CONFLICT)
