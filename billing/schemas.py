"""Validated administrative inputs for plans and subscriptions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PlanInterval = Literal["month", "quarter", "semester", "year"]

# Fields whose change requires a new Stripe price rather than a product edit.
PRICING_FIELDS = frozenset({"setup_price", "recurring_price", "currency", "interval", "trial_days"})


class PlanCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    key: str = Field(min_length=1, max_length=50, pattern=r"^[a-z0-9][a-z0-9_-]*$")
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    setup_price: Decimal = Field(default=Decimal("0.00"), ge=0, max_digits=10, decimal_places=2)
    recurring_price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    original_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    currency: str = Field(default="EUR", pattern=r"^[A-Za-z]{3}$")
    interval: PlanInterval = "month"
    trial_days: int = Field(default=0, ge=0, le=730)
    features: List[str] = Field(default_factory=list)
    active: bool = True
    popular: bool = False
    icon: Optional[str] = Field(default=None, max_length=32)
    color: Optional[str] = Field(default=None, max_length=32)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def check_original_price(self) -> "PlanCreate":
        if self.original_price is not None and self.original_price <= self.recurring_price:
            raise ValueError("original_price must be greater than recurring_price")
        return self


class PlanUpdate(BaseModel):
    """Partial edit; ``key`` is immutable and therefore not accepted."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    setup_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    recurring_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    original_price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    currency: Optional[str] = Field(default=None, pattern=r"^[A-Za-z]{3}$")
    interval: Optional[PlanInterval] = None
    trial_days: Optional[int] = Field(default=None, ge=0, le=730)
    features: Optional[List[str]] = None
    active: Optional[bool] = None
    popular: Optional[bool] = None
    icon: Optional[str] = Field(default=None, max_length=32)
    color: Optional[str] = Field(default=None, max_length=32)


class BillingAddress(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = Field(default="ES", pattern=r"^[A-Za-z]{2}$")


class BillingInfo(BaseModel):
    """Billing contact details pushed onto the Stripe customer."""

    legal_name: Optional[str] = None
    customer_type: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[BillingAddress] = None
    tax_id: Optional[str] = None
    tax_id_type: str = "es_cif"


class StartSubscriptionRequest(BaseModel):
    plan_key: str
    user_email: str = Field(min_length=3)
    user_name: Optional[str] = None
    billing_info: Optional[BillingInfo] = None
    prorate: bool = True


class PauseRequest(BaseModel):
    resume_at: Optional[datetime] = None


class CancelRequest(BaseModel):
    immediately: bool = False
