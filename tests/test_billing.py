"""Stripe checkout sessions, webhook verification and subscriptions."""

import hashlib
import hmac
import json
import os
import time

import stripe
from sqlalchemy import select

from kebilo import billing
from kebilo.db.models import CheckoutSession, Subscription

import pytest


def _signed(payload: dict, secret: str = None):
    body = json.dumps(payload)
    timestamp = int(time.time())
    secret = secret or os.environ['STRIPE_WEBHOOK_SECRET']
    signature = hmac.new(secret.encode('utf-8'), f'{timestamp}.{body}'.encode('utf-8'), hashlib.sha256).hexdigest()
    return body, f't={timestamp},v1={signature}'


def _completed_event(session_id, **checkout):
    obj = {'id': session_id, 'object': 'checkout.session', 'amount_total': 4900, 'customer': 'cus_1'}
    obj.update(checkout)
    return {'id': 'evt_1', 'type': 'checkout.session.completed', 'data': {'object': obj}}


@pytest.fixture
def fake_stripe(monkeypatch):
    calls = []

    def _create(**kwargs):
        calls.append(kwargs)
        return {'id': f'cs_test_{len(calls)}', 'url': f'https://checkout.stripe.test/{len(calls)}'}

    monkeypatch.setattr(stripe.checkout.Session, 'create', _create)
    return calls


def test_validate_checkout():
    billing.validate_checkout('pro', 49)
    with pytest.raises(billing.BillingError):
        billing.validate_checkout('gold', 49)
    with pytest.raises(billing.BillingError):
        billing.validate_checkout('pro', True)
    with pytest.raises(billing.BillingError):
        billing.validate_checkout('pro', '49')
    with pytest.raises(billing.BillingError):
        billing.validate_checkout('pro', 0)


def test_checkout_session_created(client, db_session, physician, physician_headers, fake_stripe):
    resp = client.post('/api/checkout_sessions', json={'plan': 'pro', 'price': 49.99}, headers=physician_headers)
    assert resp.status_code == 200
    assert resp.json() == {'url': 'https://checkout.stripe.test/1', 'sessionId': 'cs_test_1'}

    call = fake_stripe[0]
    assert call['api_key'] == os.environ['STRIPE_SECRET_KEY']
    assert call['line_items'][0]['price_data']['unit_amount'] == 4999
    assert call['metadata']['physicianId'] == physician.id
    assert call['client_reference_id'] == physician.id

    record = db_session.execute(select(CheckoutSession)).scalar_one()
    assert record.status == 'pending'
    assert record.amount == 4999


def test_checkout_rejects_bad_input_and_missing_key(client, physician_headers, fake_stripe, monkeypatch):
    assert client.post('/api/checkout_sessions', json={'plan': 'pro', 'price': 1}).status_code == 401

    resp = client.post('/api/checkout_sessions', json={'plan': 'gold', 'price': 10}, headers=physician_headers)
    assert resp.status_code == 400

    monkeypatch.delenv('STRIPE_SECRET_KEY')
    from kebilo.config import get_settings

    get_settings.cache_clear()
    resp = client.post('/api/checkout_sessions', json={'plan': 'pro', 'price': 10}, headers=physician_headers)
    assert resp.status_code == 500
    assert resp.json() == {'error': 'Failed to create checkout session'}
    assert fake_stripe == []


def test_webhook_requires_valid_signature(client):
    body, _ = _signed(_completed_event('cs_x'))

    resp = client.post('/api/webhook', content=body)
    assert resp.status_code == 400
    assert resp.json() == {'error': 'No signature'}

    _, bad_header = _signed(_completed_event('cs_x'), secret='whsec_wrong')
    resp = client.post('/api/webhook', content=body, headers={'stripe-signature': bad_header})
    assert resp.status_code == 400
    assert resp.json()['error']


def test_webhook_activates_subscription(client, db_session, physician, physician_headers, fake_stripe):
    client.post('/api/checkout_sessions', json={'plan': 'premium', 'price': 99}, headers=physician_headers)

    body, header = _signed(_completed_event('cs_test_1', amount_total=9900))
    resp = client.post('/api/webhook', content=body, headers={'stripe-signature': header})
    assert resp.status_code == 200
    assert resp.json() == {'received': True}

    subscription = db_session.execute(select(Subscription)).scalar_one()
    assert subscription.plan == 'premium'
    assert subscription.status == 'active'
    assert subscription.stripe_customer_id == 'cus_1'
    db_session.expire_all()
    assert db_session.execute(select(CheckoutSession)).scalar_one().status == 'completed'

    resp = client.get('/api/subscription', headers=physician_headers)
    assert resp.json()['subscription']['plan'] == 'premium'

    resp = client.post('/api/checkout_sessions', json={'plan': 'pro', 'price': 49}, headers=physician_headers)
    assert resp.status_code == 400
    assert resp.json() == {'error': 'You already have an active subscription'}


def test_webhook_falls_back_to_metadata(client, db_session, physician):
    event = _completed_event(
        'cs_unknown',
        metadata={'physicianId': physician.id, 'plan': 'basic'},
        amount_total=1900,
    )
    body, header = _signed(event)
    resp = client.post('/api/webhook', content=body, headers={'stripe-signature': header})
    assert resp.status_code == 200
    subscription = db_session.execute(select(Subscription)).scalar_one()
    assert subscription.physician_id == physician.id
    assert subscription.amount_total == 1900


def test_webhook_ignores_other_events(client, db_session):
    body, header = _signed({'id': 'evt_2', 'type': 'invoice.paid', 'data': {'object': {}}})
    resp = client.post('/api/webhook', content=body, headers={'stripe-signature': header})
    assert resp.status_code == 200
    assert db_session.execute(select(Subscription)).first() is None
