"""SMS, WhatsApp and outbound voice delivery through Twilio."""

from __future__ import annotations

import logging
from typing import Optional

from flask import current_app
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from services.delivery import DeliveryResult

logger = logging.getLogger(__name__)

NOT_CONFIGURED = 'Twilio credentials not configured'


def twilio_configured() -> bool:
    cfg = current_app.config
    return bool(cfg.get('TWILIO_ACCOUNT_SID') and cfg.get('TWILIO_AUTH_TOKEN') and cfg.get('TWILIO_PHONE_NUMBER'))


def get_client() -> Client:
    cfg = current_app.config
    return Client(cfg['TWILIO_ACCOUNT_SID'], cfg['TWILIO_AUTH_TOKEN'])


def _send_message(to: str, body: str, *, whatsapp: bool) -> DeliveryResult:
    if not twilio_configured():
        return DeliveryResult(success=False, error=NOT_CONFIGURED)

    from_number = current_app.config['TWILIO_PHONE_NUMBER']
    if whatsapp:
        to, from_number = f'whatsapp:{to}', f'whatsapp:{from_number}'

    try:
        message = get_client().messages.create(to=to, from_=from_number, body=body)
        logger.info('Message queued sid=%s to=%s', message.sid, to)
        return DeliveryResult(success=True, external_id=message.sid)
    except TwilioRestException as exc:
        logger.error('Twilio message failed to=%s status=%s: %s', to, exc.status, exc.msg)
        return DeliveryResult(success=False, error=exc.msg)
    except Exception as exc:  # noqa: BLE001
        logger.exception('Twilio message failed to=%s', to)
        return DeliveryResult(success=False, error=str(exc))


def send_sms(to: str, body: str) -> DeliveryResult:
    return _send_message(to, body, whatsapp=False)


def send_whatsapp(to: str, body: str) -> DeliveryResult:
    return _send_message(to, body, whatsapp=True)


def place_call(to: str, twiml: str, status_callback: str) -> DeliveryResult:
    """Start an outbound call that plays the given TwiML."""
    if not twilio_configured():
        return DeliveryResult(success=False, error=NOT_CONFIGURED)

    try:
        call = get_client().calls.create(
            to=to,
            from_=current_app.config['TWILIO_PHONE_NUMBER'],
            twiml=twiml,
            status_callback=status_callback,
            status_callback_event=['initiated', 'ringing', 'answered', 'completed'],
            status_callback_method='POST',
        )
        logger.info('Call placed sid=%s to=%s', call.sid, to)
        return DeliveryResult(success=True, external_id=call.sid)
    except TwilioRestException as exc:
        logger.error('Twilio call failed to=%s status=%s: %s', to, exc.status, exc.msg)
        return DeliveryResult(success=False, error=exc.msg)
    except Exception as exc:  # noqa: BLE001
        logger.exception('Twilio call failed to=%s', to)
        return DeliveryResult(success=False, error=str(exc))


def is_valid_webhook(url: str, params: dict, signature: Optional[str]) -> bool:
    """Check a Twilio webhook signature. Always true when validation is off."""
    if not current_app.config.get('TWILIO_VALIDATE_SIGNATURES'):
        return True
    auth_token = current_app.config.get('TWILIO_AUTH_TOKEN')
    if not auth_token or not signature:
        return False
    return RequestValidator(auth_token).validate(url, params, signature)
