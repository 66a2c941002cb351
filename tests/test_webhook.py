import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest

from app import app
from conftest import make_testimonial, make_widget

SECRET = 'whsec_test_secret'


def sign(payload, secret=SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = f'{timestamp}.{payload}'.encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={signature}'


def post_event(client, event, secret=SECRET, signature=None):
    payload = json.dumps(event)
    headers = {'Content-Type': 'application/json'}
    if signature is None and secret:
        signature = sign(payload, secret)
    if signature:
        headers['Stripe-Signature'] = signature
    return client.post('/stripe-webhook', data=payload, headers=headers)


def checkout_event(user_id, event_id='evt_checkout', amount=15000, testimonial_id=None, widget_id=None,
                   payment_intent='pi_100'):
    metadata = {'user_id': user_id}
    if testimonial_id:
        metadata['testimonial_id'] = testimonial_id
    if widget_id:
        metadata['widget_id'] = widget_id
    return {
        'id': event_id,
        'type': 'checkout.session.completed',
        'data': {'object': {
            'id': 'cs_100',
            'amount_total': amount,
            'currency': 'usd',
            'payment_intent': payment_intent,
            'customer_email': 'buyer@example.com',
            'metadata': metadata,
        }},
    }


@pytest.fixture
def signed(client):
    app.config.update(STRIPE_WEBHOOK_SECRET=SECRET)
    yield
    app.config.update(STRIPE_WEBHOOK_SECRET=None)


def test_webhook_disabled_without_secret(client, owner):
    resp = post_event(client, checkout_event(owner['id']), secret=None)
    assert resp.status_code == 204


def test_missing_signature_rejected(client, owner, signed):
    resp = post_event(client, checkout_event(owner['id']), secret=None)
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'Invalid signature'}


def test_bad_signature_rejected(client, owner, signed):
    resp = post_event(client, checkout_event(owner['id']), signature=sign('tampered', SECRET))
    assert resp.status_code == 400


def test_wrong_secret_rejected(client, owner, signed):
    payload_event = checkout_event(owner['id'])
    resp = post_event(client, payload_event, signature=sign(json.dumps(payload_event), 'whsec_other'))
    assert resp.status_code == 400


def test_checkout_completed_attributes_revenue(client, db, owner, signed):
    testimonial = make_testimonial(client)
    resp = post_event(client, checkout_event(owner['id'], testimonial_id=testimonial['id']))

    assert resp.status_code == 200
    body = resp.get_json()
    assert body['received'] is True
    assert body['attributed'] is True

    event = db.execute('SELECT * FROM revenue_events').fetchone()
    assert event['amount'] == 150.0
    assert event['stripe_payment_id'] == 'pi_100'
    assert event['source'] == 'stripe'
    assert event['customer_email'] == 'buyer@example.com'
    revenue = db.execute('SELECT revenue_attributed FROM testimonials WHERE id = ?', (testimonial['id'],)).fetchone()[0]
    assert revenue == 150.0
    action = db.execute("SELECT entity_type FROM activity_log WHERE action = 'revenue_attributed'").fetchone()
    assert action['entity_type'] == 'testimonial'


def test_redelivered_event_is_ignored(client, db, owner, signed):
    widget = make_widget(client)
    event = checkout_event(owner['id'], widget_id=widget['id'])

    assert post_event(client, event).get_json()['attributed'] is True
    second = post_event(client, event)
    assert second.status_code == 200
    assert second.get_json() == {'received': True, 'duplicate': True}

    row = db.execute('SELECT revenue_attributed, conversions FROM widgets WHERE id = ?', (widget['id'],)).fetchone()
    assert tuple(row) == (150.0, 1)


def test_checkout_and_payment_intent_count_once(client, db, owner, signed):
    testimonial = make_testimonial(client)
    post_event(client, checkout_event(owner['id'], testimonial_id=testimonial['id']))
    intent_event = {
        'id': 'evt_intent',
        'type': 'payment_intent.succeeded',
        'data': {'object': {
            'id': 'pi_100',
            'amount_received': 15000,
            'currency': 'usd',
            'metadata': {'user_id': owner['id'], 'testimonial_id': testimonial['id']},
        }},
    }
    resp = post_event(client, intent_event)

    assert resp.status_code == 200
    assert resp.get_json()['attributed'] is False
    assert db.execute('SELECT COUNT(*) FROM revenue_events').fetchone()[0] == 1
    revenue = db.execute('SELECT revenue_attributed FROM testimonials WHERE id = ?', (testimonial['id'],)).fetchone()[0]
    assert revenue == 150.0


def test_payment_without_user_is_acknowledged(client, db, signed):
    event = {
        'id': 'evt_anon',
        'type': 'payment_intent.succeeded',
        'data': {'object': {'id': 'pi_anon', 'amount_received': 500, 'currency': 'usd'}},
    }
    resp = post_event(client, event)
    assert resp.status_code == 200
    assert resp.get_json()['attributed'] is False
    assert db.execute('SELECT COUNT(*) FROM revenue_events').fetchone()[0] == 0


def test_subscription_events_update_user(client, db, owner, signed):
    subscription = {
        'id': 'sub_1',
        'customer': 'cus_1',
        'status': 'active',
        'metadata': {'user_id': owner['id']},
    }
    post_event(client, {'id': 'evt_sub_1', 'type': 'customer.subscription.created',
                        'data': {'object': subscription}})
    user = db.execute('SELECT * FROM users WHERE id = ?', (owner['id'],)).fetchone()
    assert user['subscription_status'] == 'active'
    assert user['stripe_customer_id'] == 'cus_1'

    post_event(client, {'id': 'evt_sub_2', 'type': 'customer.subscription.deleted',
                        'data': {'object': {'id': 'sub_1', 'status': 'canceled'}}})
    user = db.execute('SELECT subscription_status FROM users WHERE id = ?', (owner['id'],)).fetchone()
    assert user['subscription_status'] == 'canceled'


def test_processing_error_releases_event_claim(client, db, owner, signed):
    event = checkout_event(owner['id'])
    with patch('app._handle_stripe_event', side_effect=RuntimeError('database unavailable')):
        resp = post_event(client, event)
    assert resp.status_code == 500
    assert resp.get_json() == {'error': 'database unavailable'}
    assert db.execute('SELECT COUNT(*) FROM stripe_events').fetchone()[0] == 0

    retry = post_event(client, event)
    assert retry.status_code == 200
    assert retry.get_json()['attributed'] is True


def test_unsigned_events_when_explicitly_allowed(client, owner):
    app.config.update(STRIPE_ALLOW_UNSIGNED=True)
    resp = post_event(client, checkout_event(owner['id']), secret=None)
    assert resp.status_code == 200

    bad = client.post('/stripe-webhook', data='{not json', headers={'Content-Type': 'application/json'})
    assert bad.status_code == 400


def test_unhandled_event_type_acknowledged(client, signed):
    resp = post_event(client, {'id': 'evt_other', 'type': 'invoice.created', 'data': {'object': {}}})
    assert resp.status_code == 200
    assert resp.get_json() == {'received': True}


def test_payment_for_unknown_user_is_acknowledged(client, db, signed):
    event = checkout_event('no-such-user')
    first = post_event(client, event)
    assert first.status_code == 200
    assert first.get_json() == {'received': True, 'attributed': False}
    assert db.execute('SELECT COUNT(*) FROM revenue_events').fetchone()[0] == 0
    assert db.execute('SELECT COUNT(*) FROM stripe_events').fetchone()[0] == 1

    redelivery = post_event(client, event)
    assert redelivery.get_json() == {'received': True, 'duplicate': True}


@pytest.mark.parametrize('event', [
    {'id': 'evt_bad_type', 'type': 1, 'data': {'object': {}}},
    {'id': 'evt_empty_type', 'type': '', 'data': {'object': {}}},
    {'id': {'nested': True}, 'type': 'invoice.created', 'data': {'object': {}}},
    ['not', 'an', 'object'],
])
def test_malformed_event_rejected(client, signed, event):
    resp = post_event(client, event)
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'Invalid payload'}
