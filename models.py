from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
	JSON,
	Boolean,
	Column,
	DateTime,
	ForeignKey,
	Index,
	Integer,
	Numeric,
	String,
	Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


class TimestampMixin:
	"""Reusable timestamp columns for created/updated tracking."""

	created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
	updated_at = Column(
		DateTime(timezone=True),
		nullable=False,
		server_default=func.now(),
		onupdate=func.now(),
	)

Base = declarative_base()

TRIAL_PLAN_KEY = "trial"

SUBSCRIPTION_STATUSES = ("active", "inactive", "suspended", "canceled", "past_due", "trialing")
ENTITLED_STATUSES = frozenset({"active", "trialing"})
BILLING_INTERVALS = ("month", "quarter", "semester", "year")


class SubscriptionPlan(TimestampMixin, Base):
	"""Locally authored plan definition mirrored into Stripe."""

	__tablename__ = "subscription_plans"

	id = Column(Integer, primary_key=True, index=True)
	key = Column(String(50), unique=True, nullable=False)
	name = Column(String(100), nullable=False)
	description = Column(Text, nullable=True)
	setup_price = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
	recurring_price = Column(Numeric(10, 2), nullable=False)
	original_price = Column(Numeric(10, 2), nullable=True)
	currency = Column(String(3), nullable=False, default="EUR")
	interval = Column(String(16), nullable=False, default="month")
	trial_days = Column(Integer, nullable=False, default=0)
	features = Column(JSON, nullable=False, default=list)
	active = Column(Boolean, nullable=False, default=True)
	popular = Column(Boolean, nullable=False, default=False)
	icon = Column(String(32), nullable=True)
	color = Column(String(32), nullable=True)
	stripe_product_id = Column(String(128), nullable=True)
	stripe_price_id = Column(String(128), nullable=True)

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return (
			f"<SubscriptionPlan key={self.key!r} price={self.recurring_price} "
			f"interval={self.interval!r} active={self.active}>"
		)


@dataclass(frozen=True)
class BusinessSubscription:
	"""Read-only view over the subscription columns embedded in a business."""

	plan: str
	status: str
	stripe_customer_id: Optional[str]
	stripe_subscription_id: Optional[str]
	stripe_price_id: Optional[str]
	current_period_end: Optional[datetime]
	cancel_at_period_end: bool
	trial_end: Optional[datetime]
	payment_failures: int
	last_payment_attempt: Optional[datetime]
	revision: int


class Business(TimestampMixin, Base):
	"""Tenant account; its subscription state lives in the ``subscription_*`` columns."""

	__tablename__ = "businesses"

	id = Column(Integer, primary_key=True, index=True)
	name = Column(String(200), nullable=False)
	subdomain = Column(String(100), unique=True, nullable=True)
	contact_email = Column(String(255), nullable=True)
	active = Column(Boolean, nullable=False, default=False)

	subscription_plan = Column(String(50), nullable=False, default=TRIAL_PLAN_KEY, index=True)
	subscription_status = Column(String(20), nullable=False, default="inactive")
	stripe_customer_id = Column(String(255), nullable=True)
	stripe_subscription_id = Column(String(255), nullable=True, index=True)
	stripe_price_id = Column(String(128), nullable=True)
	current_period_end = Column(DateTime(timezone=True), nullable=True)
	cancel_at_period_end = Column(Boolean, nullable=False, default=False)
	trial_end = Column(DateTime(timezone=True), nullable=True)
	payment_failures = Column(Integer, nullable=False, default=0)
	last_payment_attempt = Column(DateTime(timezone=True), nullable=True)
	subscription_revision = Column(Integer, nullable=False, default=0)
	subscription_event_at = Column(DateTime(timezone=True), nullable=True)

	activity = relationship(
		"ActivityLog",
		back_populates="business",
		order_by="ActivityLog.id",
	)

	@property
	def subscription(self) -> BusinessSubscription:
		return BusinessSubscription(
			plan=self.subscription_plan,
			status=self.subscription_status,
			stripe_customer_id=self.stripe_customer_id,
			stripe_subscription_id=self.stripe_subscription_id,
			stripe_price_id=self.stripe_price_id,
			current_period_end=self.current_period_end,
			cancel_at_period_end=bool(self.cancel_at_period_end),
			trial_end=self.trial_end,
			payment_failures=self.payment_failures or 0,
			last_payment_attempt=self.last_payment_attempt,
			revision=self.subscription_revision or 0,
		)

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return (
			f"<Business id={self.id} plan={self.subscription_plan!r} "
			f"status={self.subscription_status!r} active={self.active}>"
		)


class ActivityLog(Base):
	"""Append-only audit trail of billing events per business."""

	__tablename__ = "activity_logs"
	__table_args__ = (Index("ix_activity_logs_business_created", "business_id", "created_at"),)

	id = Column(Integer, primary_key=True, index=True)
	business_id = Column(Integer, ForeignKey("businesses.id"), nullable=False)
	type = Column(String(64), nullable=False, index=True)
	description = Column(Text, nullable=False)
	# "metadata" is reserved on declarative classes.
	details = Column("metadata", JSON, nullable=False, default=dict)
	created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

	business = relationship("Business", back_populates="activity")

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return f"<ActivityLog business_id={self.business_id} type={self.type!r}>"


class ProcessedWebhookEvent(Base):
	"""Stripe event ids already claimed by the dispatcher."""

	__tablename__ = "processed_webhook_events"

	id = Column(Integer, primary_key=True, index=True)
	event_id = Column(String(255), unique=True, nullable=False)
	event_type = Column(String(100), nullable=False)
	received_at = Column(DateTime(timezone=True), nullable=False, index=True)

	def __repr__(self) -> str:  # pragma: no cover - debug helper
		return f"<ProcessedWebhookEvent event_id={self.event_id!r} type={self.event_type!r}>"
