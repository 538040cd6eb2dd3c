"""Start the payment-method handshake for a business."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from models import TRIAL_PLAN_KEY

from . import activity
from .customers import CustomerResolver
from .events import BUSINESS_ID_KEY, PLAN_KEY_KEY, USER_EMAIL_KEY
from .exceptions import BillingValidationError, RemoteBillingError
from .plans import get_business, require_plan
from .schemas import BillingInfo
from .stripe_client import StripeGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupResult:
    client_secret: str
    customer_id: str
    tax_id_ref: Optional[str] = None
    setup_intent_id: Optional[str] = None


class SetupInitiator:
    """Collect a reusable payment method; the subscription follows by webhook.

    No subscription is created here. When Stripe reports the SetupIntent as
    succeeded, the reconciler creates it from the ``planKey`` carried in the
    intent's metadata.
    """

    def __init__(self, session: Session, gateway: StripeGateway, resolver: Optional[CustomerResolver] = None) -> None:
        self._session = session
        self._gateway = gateway
        self._resolver = resolver or CustomerResolver(gateway)

    def start_setup(
        self,
        user_email: str,
        business_id: int,
        user_name: Optional[str] = None,
        billing_info: Optional[BillingInfo] = None,
        plan_key: Optional[str] = None,
    ) -> SetupResult:
        if plan_key is not None:
            require_plan(self._session, plan_key, active=True)
            if plan_key == TRIAL_PLAN_KEY:
                raise BillingValidationError("The trial plan cannot be purchased.")

        business = get_business(self._session, business_id)

        customer = self._resolver.resolve(user_email, business_id, user_name, billing_info)
        business.stripe_customer_id = customer.customer_id

        metadata = {BUSINESS_ID_KEY: str(business_id), USER_EMAIL_KEY: user_email}
        if plan_key:
            metadata[PLAN_KEY_KEY] = plan_key

        try:
            intent = self._gateway.create_setup_intent(
                customer=customer.customer_id,
                usage="off_session",
                payment_method_types=["card"],
                metadata=metadata,
            )
        except RemoteBillingError:
            # Keep the customer link even if the intent could not be created.
            self._session.commit()
            raise

        activity.record_activity(
            self._session,
            business_id,
            activity.PAYMENT_SETUP_STARTED,
            "Payment method setup started",
            {"setupIntentId": intent["id"], "planKey": plan_key, "customerId": customer.customer_id},
        )
        self._session.commit()

        logger.info("Created SetupIntent %s for business %s (plan=%s)", intent["id"], business_id, plan_key)
        return SetupResult(
            client_secret=intent["client_secret"],
            customer_id=customer.customer_id,
            tax_id_ref=customer.tax_id_ref,
            setup_intent_id=intent["id"],
        )
