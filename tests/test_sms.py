from unittest.mock import MagicMock, patch

import pytest
from twilio.base.exceptions import TwilioRestException

from app import app
from services.sms_service import SMSConfigurationError, SMSDeliveryError, send_sms

TWILIO = dict(
    TWILIO_ACCOUNT_SID='AC123',
    TWILIO_AUTH_TOKEN='token',
    TWILIO_PHONE_NUMBER='+15550000000',
)


def fake_twilio(sid='SM123', status='queued'):
    client = MagicMock()
    client.messages.create.return_value = MagicMock(sid=sid, status=status)
    return client


def test_send_sms_uses_twilio_client():
    client = fake_twilio()
    result = send_sms('+15551234567', 'Hi there', account_sid='AC1', auth_token='t',
                      from_number='+15550000000', client=client)
    assert (result.sid, result.status) == ('SM123', 'queued')
    client.messages.create.assert_called_once_with(to='+15551234567', from_='+15550000000', body='Hi there')


def test_send_sms_requires_credentials():
    with pytest.raises(SMSConfigurationError):
        send_sms('+15551234567', 'Hi', account_sid=None, auth_token='t', from_number='+1555')


def test_send_sms_wraps_twilio_errors():
    client = MagicMock()
    client.messages.create.side_effect = TwilioRestException(400, '/Messages', msg='Invalid To number')
    with pytest.raises(SMSDeliveryError) as excinfo:
        send_sms('+15551234567', 'Hi', account_sid='AC1', auth_token='t', from_number='+1555', client=client)
    assert excinfo.value.status_code == 400
    assert excinfo.value.message == 'Invalid To number'


def test_route_without_credentials(client, owner):
    resp = client.post('/api/sms/send', json={'to': '+15551234567', 'message': 'hi'})
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'Twilio credentials not configured'}


def test_route_requires_phone_and_message(client, owner):
    app.config.update(**TWILIO)
    resp = client.post('/api/sms/send', json={'message': 'hi'})
    assert resp.status_code == 400
    assert resp.get_json() == {'error': 'Phone number and message are required'}


def test_route_sends_and_counts_campaign(client, db, owner):
    app.config.update(**TWILIO)
    campaign = client.post('/api/campaigns', json={'name': 'Ask for reviews'}).get_json()['campaign']

    with patch('services.sms_service.Client', return_value=fake_twilio()) as client_cls:
        resp = client.post('/api/sms/send', json={
            'to': '+1 (555) 123-4567',
            'message': 'Would you share a quick testimonial?',
            'campaign_id': campaign['id'],
        })

    assert resp.status_code == 200
    assert resp.get_json() == {'success': True, 'message_sid': 'SM123', 'status': 'queued'}
    client_cls.assert_called_once_with('AC123', 'token')
    sent = db.execute('SELECT sent_count FROM campaigns WHERE id = ?', (campaign['id'],)).fetchone()[0]
    assert sent == 1


def test_route_passes_through_twilio_status(client, owner):
    app.config.update(**TWILIO)
    failing = MagicMock()
    failing.messages.create.side_effect = TwilioRestException(401, '/Messages', msg='Authenticate')
    with patch('services.sms_service.Client', return_value=failing):
        resp = client.post('/api/sms/send', json={'to': '+15551234567', 'message': 'hi'})
    assert resp.status_code == 401
    assert resp.get_json() == {'error': 'Authenticate'}
