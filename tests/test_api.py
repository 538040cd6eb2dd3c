import json

import jwt
from fastapi.testclient import TestClient

from app import create_app
from billing.config import BillingConfig
from models import Business
from tests.factories import ADMIN_SECRET, WEBHOOK_SECRET, make_event, sign_payload, subscription_payload

WEBHOOK_PATH = '/api/billing/stripe/webhook'


def _post_event(client, event, header=None):
    body = json.dumps(event).encode('utf-8')
    headers = {'Content-Type': 'application/json', 'Stripe-Signature': header or sign_payload(body)}
    return client.post(WEBHOOK_PATH, content=body, headers=headers)


def _token(role):
    return {'Authorization': f"Bearer {jwt.encode({'sub': '1', 'role': role}, ADMIN_SECRET, algorithm='HS256')}"}


def test_healthz(client):
    assert client.get('/healthz').json() == {'status': 'ok'}


def test_webhook_with_bad_signature_is_rejected(client):
    response = _post_event(client, make_event('invoice.paid', {}), header='t=1,v1=deadbeef')

    assert response.status_code == 400
    assert response.json()['error']['type'] == 'invalid_request'


def test_webhook_without_signature_is_rejected(client):
    response = client.post(WEBHOOK_PATH, content=b'{}')

    assert response.status_code == 400


def test_webhook_applies_verified_event(client, session, business):
    response = _post_event(client, make_event('customer.subscription.updated', subscription_payload(business.id)))

    assert response.status_code == 200
    assert response.json() == {'received': True}
    current = session.get(Business, business.id, populate_existing=True)
    assert current.subscription_status == 'active'


def test_webhook_acknowledges_duplicates_and_unknown_events(client, business):
    event = make_event('customer.subscription.updated', subscription_payload(business.id))

    assert _post_event(client, event).json() == {'received': True}
    assert _post_event(client, event).json() == {'received': True}
    assert _post_event(client, make_event('customer.created', {'id': 'cus_1'})).status_code == 200


def test_webhook_reports_handler_crash_for_retry(client, gateway, business):
    gateway.failures['retrieve_subscription'] = RuntimeError('boom')

    response = _post_event(client, make_event('checkout.session.completed', {'id': 'cs_1', 'subscription': 'sub_1'}))

    assert response.status_code == 500
    assert response.json() == {'received': False}


def test_malformed_envelope_is_rejected(client):
    response = _post_event(client, {'type': 'invoice.paid', 'data': {'object': {}}})

    assert response.status_code == 400
    assert response.json()['error']['type'] == 'invalid_request'


def test_admin_routes_require_a_token(client):
    assert client.get('/api/admin/subscription-plans').status_code == 401
    assert client.get('/api/admin/subscription-plans', headers={'Authorization': 'Bearer nope'}).status_code == 401
    assert client.get('/api/admin/subscription-plans', headers=_token('member')).status_code == 403
    assert client.get('/api/admin/subscription-plans', headers=_token('super_admin')).status_code == 200


def test_admin_routes_unavailable_without_secret(gateway, session_factory):
    config = BillingConfig(stripe_secret_key='sk_test_dummy', webhook_signing_secret=WEBHOOK_SECRET)
    client = TestClient(create_app(config=config, gateway=gateway, session_factory=session_factory, initialise_database=False))

    assert client.get('/api/admin/subscription-plans', headers=_token('admin')).status_code == 503


def test_plan_crud(client, admin_headers, gateway):
    created = client.post(
        '/api/admin/subscription-plans',
        json={'key': 'growth', 'name': 'Growth', 'recurring_price': '39.00', 'interval': 'quarter'},
        headers=admin_headers,
    )
    assert created.status_code == 201
    plan = created.json()['plan']
    assert plan['recurring_price'] == '39.00'
    assert plan['stripe_price_id'] in gateway.prices

    duplicate = client.post(
        '/api/admin/subscription-plans',
        json={'key': 'growth', 'name': 'Growth', 'recurring_price': '39.00'},
        headers=admin_headers,
    )
    assert duplicate.status_code == 409
    assert duplicate.json()['error']['type'] == 'conflict'

    updated = client.put('/api/admin/subscription-plans/growth', json={'recurring_price': '45.00'}, headers=admin_headers)
    assert updated.status_code == 200
    assert updated.json()['plan']['stripe_price_id'] != plan['stripe_price_id']

    listed = client.get('/api/admin/subscription-plans', headers=admin_headers).json()['plans']
    assert [item['key'] for item in listed] == ['growth']

    deleted = client.delete('/api/admin/subscription-plans/growth', headers=admin_headers)
    assert deleted.status_code == 200
    assert deleted.json()['plan']['active'] is False
    assert client.get('/api/admin/subscription-plans?active_only=true', headers=admin_headers).json()['plans'] == []


def test_invalid_plan_is_rejected_before_remote_calls(client, admin_headers, gateway):
    response = client.post(
        '/api/admin/subscription-plans',
        json={'key': 'growth', 'name': 'Growth', 'recurring_price': '39.00', 'original_price': '30.00'},
        headers=admin_headers,
    )

    assert response.status_code == 422
    assert response.json()['error']['type'] == 'validation_error'
    assert gateway.calls == []


def test_remote_failure_maps_to_bad_gateway(client, admin_headers, gateway):
    gateway.fail('create_product', message='Stripe is down', code='api_error')

    response = client.post(
        '/api/admin/subscription-plans',
        json={'key': 'growth', 'name': 'Growth', 'recurring_price': '39.00'},
        headers=admin_headers,
    )

    assert response.status_code == 502
    assert response.json() == {'error': {'type': 'remote_error', 'message': 'Stripe is down', 'code': 'api_error'}}


def test_unknown_plan_is_not_found(client, admin_headers):
    response = client.put('/api/admin/subscription-plans/missing', json={'name': 'x'}, headers=admin_headers)

    assert response.status_code == 404
    assert response.json()['error']['type'] == 'not_found'


def test_bulk_sync_reports_partial_failure(client, admin_headers, gateway, make_plan):
    make_plan('basic', '29.00')
    gateway.fail('create_product')

    response = client.post('/api/admin/subscription-plans/sync', headers=admin_headers)

    assert response.status_code == 207
    assert response.json()['failed'] == 1


def test_subscription_endpoints(client, admin_headers, business, make_plan):
    make_plan('basic', '29.00')
    base = f'/api/admin/subscriptions/{business.id}'

    assert client.get(base, headers=admin_headers).json()['subscription']['status'] == 'inactive'

    started = client.post(base, json={'plan_key': 'basic', 'user_email': 'owner@example.com'}, headers=admin_headers)
    assert started.status_code == 200
    assert started.json()['mode'] == 'setup'

    assert client.get(f'{base}/access', headers=admin_headers).json() == {'business_id': business.id, 'has_access': False}
    assert client.post(f'{base}/pause', headers=admin_headers).status_code == 404

    entries = client.get(f'{base}/activity', headers=admin_headers).json()['activity']
    assert [entry['type'] for entry in entries] == ['payment_setup_started']


def test_unknown_business_is_not_found(client, admin_headers):
    assert client.get('/api/admin/subscriptions/999', headers=admin_headers).status_code == 404
    assert client.get('/api/admin/subscriptions/999/activity', headers=admin_headers).status_code == 404


def test_billing_update(client, admin_headers, business, gateway):
    response = client.put(
        f'/api/admin/subscriptions/{business.id}/billing',
        json={'legal_name': 'Cafe Central SL', 'tax_id': 'B12345678'},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()['customer_id'] in gateway.customers
