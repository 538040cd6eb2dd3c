import hashlib
import hmac
import itertools
import time

WEBHOOK_SECRET = 'whsec_test_secret'
ADMIN_SECRET = 'admin-test-secret-0123456789abcdef'

_event_ids = itertools.count(1)


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header the way Stripe does."""

    timestamp = int(timestamp if timestamp is not None else time.time())
    body = payload.decode('utf-8') if isinstance(payload, bytes) else payload
    signature = hmac.new(secret.encode('utf-8'), f'{timestamp}.{body}'.encode('utf-8'), hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


def make_event(event_type, obj, created=None, event_id=None):
    return {
        'id': event_id or f'evt_{next(_event_ids)}',
        'object': 'event',
        'type': event_type,
        'created': int(created if created is not None else time.time()),
        'livemode': False,
        'data': {'object': obj},
    }


def subscription_payload(business_id, subscription_id='sub_1', status='active', price_id='price_basic', **overrides):
    payload = {
        'id': subscription_id,
        'object': 'subscription',
        'status': status,
        'customer': 'cus_1',
        'cancel_at_period_end': False,
        'current_period_end': 1893456000,
        'trial_end': None,
        'pause_collection': None,
        'metadata': {'businessId': str(business_id)} if business_id is not None else {},
        'items': {'data': [{'id': 'si_1', 'price': {'id': price_id, 'metadata': {}}}]},
    }
    payload.update(overrides)
    return payload


def invoice_payload(business_id, invoice_id='in_1', subscription_id='sub_1', **overrides):
    payload = {
        'id': invoice_id,
        'object': 'invoice',
        'customer': 'cus_1',
        'currency': 'eur',
        'amount_due': 2900,
        'amount_paid': 2900,
        'attempt_count': 1,
        'metadata': {},
        'parent': {
            'subscription_details': {
                'subscription': subscription_id,
                'metadata': {'businessId': str(business_id)} if business_id is not None else {},
            }
        },
        'lines': {'data': [{'period': {'start': 1890777600, 'end': 1893456000}}]},
    }
    payload.update(overrides)
    return payload
