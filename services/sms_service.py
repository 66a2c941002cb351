"""Outbound SMS through Twilio for testimonial request campaigns."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

logger = logging.getLogger(__name__)


class SMSConfigurationError(Exception):
    pass


class SMSDeliveryError(Exception):
    def __init__(self, message, status_code=502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class SMSResult:
    sid: str
    status: str


def send_sms(to, body, *, account_sid, auth_token, from_number, client=None) -> SMSResult:
    if not (account_sid and auth_token and from_number):
        raise SMSConfigurationError('Twilio credentials not configured')

    client = client or Client(account_sid, auth_token)
    try:
        message = client.messages.create(to=to, from_=from_number, body=body)
    except TwilioRestException as exc:
        logger.error('Twilio error: status=%s code=%s msg=%s', exc.status, exc.code, exc.msg)
        raise SMSDeliveryError(exc.msg or 'Failed to send SMS', status_code=exc.status or 502) from exc

    logger.info('SMS sent: sid=%s status=%s', message.sid, message.status)
    return SMSResult(sid=message.sid, status=message.status)
