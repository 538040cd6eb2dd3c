import itertools
import json
import os
import sys
import time
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault('DATABASE_URL', 'sqlite://')
os.environ.setdefault('STRIPE_SECRET_KEY', 'sk_test_dummy')
os.environ.setdefault('STRIPE_WEBHOOK_SECRET', 'whsec_test_secret')
os.environ.setdefault('ADMIN_JWT_SECRET', 'admin-test-secret-0123456789abcdef')

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from billing.config import BillingConfig  # noqa: E402
from billing.exceptions import RemoteBillingError  # noqa: E402
from billing.plans import create_business  # noqa: E402
from billing.stripe_client import StripeGateway  # noqa: E402
from models import Base, SubscriptionPlan  # noqa: E402
from tests.factories import ADMIN_SECRET, WEBHOOK_SECRET  # noqa: E402


class FakeStripeGateway:
    """In-memory stand-in for StripeGateway that records every call."""

    # Signature checks run for real against the shared test secret.
    parse_webhook = StripeGateway.parse_webhook

    def __init__(self):
        self._webhook_secret = WEBHOOK_SECRET
        self._ids = itertools.count(1)
        self.calls = []
        self.failures = {}
        self.products = {}
        self.prices = {}
        self.customers = {}
        self.tax_ids = {}
        self.subscriptions = {}
        self.charges = {}
        self.invoices = {}
        self.setup_intents = {}

    def _next(self, prefix):
        return f'{prefix}_{next(self._ids)}'

    def _record(self, method, /, *args, **kwargs):
        self.calls.append((method, args, kwargs))
        error = self.failures.get(method)
        if error is not None:
            raise error

    def fail(self, name, message='Stripe is unavailable', code=None, not_found=False):
        self.failures[name] = RemoteBillingError(message, code=code, not_found=not_found)

    def calls_named(self, name):
        return [call for call in self.calls if call[0] == name]

    def retrieve_product(self, product_id):
        self._record('retrieve_product', product_id)
        if product_id not in self.products:
            raise RemoteBillingError('No such product', code='resource_missing', not_found=True)
        return product_id

    def create_product(self, **params):
        self._record('create_product', **params)
        product_id = self._next('prod')
        self.products[product_id] = dict(params)
        return product_id

    def update_product(self, product_id, **params):
        self._record('update_product', product_id, **params)
        self.products.setdefault(product_id, {}).update(params)
        return product_id

    def create_price(self, **params):
        self._record('create_price', **params)
        price_id = self._next('price')
        self.prices[price_id] = dict(params, active=params.get('active', True))
        return price_id

    def deactivate_price(self, price_id):
        self._record('deactivate_price', price_id)
        self.prices.setdefault(price_id, {})['active'] = False

    def find_customer_by_email(self, email):
        self._record('find_customer_by_email', email)
        for customer_id, customer in self.customers.items():
            if customer.get('email') == email:
                return customer_id
        return None

    def create_customer(self, **params):
        self._record('create_customer', **params)
        customer_id = self._next('cus')
        self.customers[customer_id] = dict(params)
        return customer_id

    def update_customer(self, customer_id, **params):
        self._record('update_customer', customer_id, **params)
        self.customers.setdefault(customer_id, {}).update(params)
        return customer_id

    def list_tax_ids(self, customer_id):
        self._record('list_tax_ids', customer_id)
        return list(self.tax_ids.get(customer_id, []))

    def create_tax_id(self, customer_id, *, type, value):
        self._record('create_tax_id', customer_id, type=type, value=value)
        tax_id = self._next('txi')
        self.tax_ids.setdefault(customer_id, []).append({'id': tax_id, 'type': type, 'value': value})
        return tax_id

    def create_setup_intent(self, **params):
        self._record('create_setup_intent', **params)
        intent_id = self._next('seti')
        self.setup_intents[intent_id] = dict(params)
        return {'id': intent_id, 'client_secret': f'{intent_id}_secret'}

    def retrieve_subscription(self, subscription_id):
        self._record('retrieve_subscription', subscription_id)
        if subscription_id not in self.subscriptions:
            raise RemoteBillingError('No such subscription', code='resource_missing', not_found=True)
        return json.loads(json.dumps(self.subscriptions[subscription_id]))

    def create_subscription(self, *, idempotency_key=None, **params):
        self._record('create_subscription', idempotency_key=idempotency_key, **params)
        for existing in self.subscriptions.values():
            if idempotency_key and existing.get('_idempotency_key') == idempotency_key:
                return json.loads(json.dumps(existing))
        subscription_id = self._next('sub')
        price_id = params['items'][0]['price']
        subscription = {
            'id': subscription_id,
            'object': 'subscription',
            'status': 'trialing' if params.get('trial_period_days') else 'active',
            'customer': params.get('customer'),
            'cancel_at_period_end': False,
            'current_period_end': int(time.time()) + 30 * 86400,
            'trial_end': None,
            'pause_collection': None,
            'metadata': dict(params.get('metadata') or {}),
            'items': {'data': [{'id': self._next('si'), 'price': {'id': price_id, 'metadata': {}}}]},
            '_idempotency_key': idempotency_key,
        }
        self.subscriptions[subscription_id] = subscription
        return json.loads(json.dumps(subscription))

    def update_subscription(self, subscription_id, **params):
        self._record('update_subscription', subscription_id, **params)
        subscription = self.subscriptions[subscription_id]
        if 'items' in params:
            subscription['items']['data'][0]['price'] = {'id': params['items'][0]['price'], 'metadata': {}}
        if 'metadata' in params:
            subscription['metadata'] = dict(params['metadata'])
        if 'cancel_at_period_end' in params:
            subscription['cancel_at_period_end'] = params['cancel_at_period_end']
        if 'pause_collection' in params:
            subscription['pause_collection'] = params['pause_collection'] or None
        return json.loads(json.dumps(subscription))

    def cancel_subscription(self, subscription_id):
        self._record('cancel_subscription', subscription_id)
        self.subscriptions[subscription_id]['status'] = 'canceled'
        return json.loads(json.dumps(self.subscriptions[subscription_id]))

    def retrieve_charge(self, charge_id):
        self._record('retrieve_charge', charge_id)
        if charge_id not in self.charges:
            raise RemoteBillingError('No such charge', code='resource_missing', not_found=True)
        return dict(self.charges[charge_id])

    def list_invoices(self, customer_id, *, limit=10):
        self._record('list_invoices', customer_id, limit=limit)
        return list(self.invoices.get(customer_id, []))[:limit]


@pytest.fixture
def engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def billing_config():
    return BillingConfig(
        stripe_secret_key='sk_test_dummy',
        webhook_signing_secret=WEBHOOK_SECRET,
        max_payment_failures=3,
        admin_jwt_secret=ADMIN_SECRET,
    )


@pytest.fixture
def business(session):
    return create_business(session, 'Cafe Central', subdomain='cafe-central', contact_email='owner@example.com')


@pytest.fixture
def make_plan(session):
    def _make_plan(key='basic', recurring_price='29.00', **fields):
        plan = SubscriptionPlan(
            key=key,
            name=fields.pop('name', key.title()),
            recurring_price=Decimal(recurring_price),
            setup_price=Decimal(fields.pop('setup_price', '0.00')),
            currency=fields.pop('currency', 'EUR'),
            interval=fields.pop('interval', 'month'),
            trial_days=fields.pop('trial_days', 0),
            features=fields.pop('features', []),
            active=fields.pop('active', True),
            **fields,
        )
        session.add(plan)
        session.commit()
        return plan

    return _make_plan


@pytest.fixture
def client(billing_config, gateway, session_factory):
    from fastapi.testclient import TestClient

    from app import create_app

    application = create_app(
        config=billing_config,
        gateway=gateway,
        session_factory=session_factory,
        initialise_database=False,
    )
    return TestClient(application)


@pytest.fixture
def admin_headers():
    import jwt

    token = jwt.encode({'sub': '1', 'role': 'admin'}, ADMIN_SECRET, algorithm='HS256')
    return {'Authorization': f'Bearer {token}'}
