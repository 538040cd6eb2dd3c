"""Resolve the Stripe customer that carries a business' billing identity."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .events import BUSINESS_ID_KEY
from .exceptions import RemoteBillingError
from .schemas import BillingInfo
from .stripe_client import StripeGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedCustomer:
    customer_id: str
    tax_id_ref: Optional[str] = None


def _normalize_tax_value(value: str) -> str:
    return "".join(value.split()).upper()


def _customer_params(
    email: str,
    business_id: int,
    name: Optional[str],
    billing_info: Optional[BillingInfo],
) -> Dict[str, Any]:
    metadata: Dict[str, str] = {BUSINESS_ID_KEY: str(business_id)}
    params: Dict[str, Any] = {"email": email}

    display_name = name
    if billing_info is not None:
        if billing_info.legal_name:
            metadata["legalName"] = billing_info.legal_name
            display_name = billing_info.legal_name
        if billing_info.customer_type:
            metadata["customerType"] = billing_info.customer_type
        if billing_info.phone:
            params["phone"] = billing_info.phone
        if billing_info.address is not None:
            params["address"] = billing_info.address.model_dump(exclude_none=True)

    if display_name:
        params["name"] = display_name
    params["metadata"] = metadata
    return params


class CustomerResolver:
    """Find-or-create a Stripe customer by email and keep its details current."""

    def __init__(self, gateway: StripeGateway) -> None:
        self._gateway = gateway

    def resolve(
        self,
        email: str,
        business_id: int,
        name: Optional[str] = None,
        billing_info: Optional[BillingInfo] = None,
    ) -> ResolvedCustomer:
        params = _customer_params(email, business_id, name, billing_info)

        customer_id = self._gateway.find_customer_by_email(email)
        if customer_id:
            update = {key: value for key, value in params.items() if key != "email"}
            self._gateway.update_customer(customer_id, **update)
            logger.info("Reusing Stripe customer %s for business %s", customer_id, business_id)
        else:
            customer_id = self._gateway.create_customer(**params)
            logger.info("Created Stripe customer %s for business %s", customer_id, business_id)

        tax_id_ref = None
        if billing_info is not None and billing_info.tax_id:
            tax_id_ref = self._attach_tax_id(customer_id, billing_info)

        return ResolvedCustomer(customer_id=customer_id, tax_id_ref=tax_id_ref)

    def _attach_tax_id(self, customer_id: str, billing_info: BillingInfo) -> Optional[str]:
        # Stripe rejects tax ids it cannot validate; that must not block payment setup.
        wanted = _normalize_tax_value(billing_info.tax_id or "")
        try:
            for existing in self._gateway.list_tax_ids(customer_id):
                if _normalize_tax_value(existing.get("value") or "") == wanted:
                    return existing.get("id")
            return self._gateway.create_tax_id(customer_id, type=billing_info.tax_id_type, value=wanted)
        except RemoteBillingError as exc:
            logger.warning("Could not attach tax id to customer %s (code=%s): %s", customer_id, exc.code, exc.message)
            return None
