"""SMS dispatch through the messaging backend, plus in-app notification rows.

Nothing here raises on delivery problems: callers get ``{'success': False,
'error': ...}`` back and the failure is logged.
"""
import logging
import re
import threading

import requests

from models import db, Notification

logger = logging.getLogger(__name__)


class SmsClient:

    def __init__(self, backend_url=None, timeout=10):
        self.backend_url = backend_url
        self.timeout = timeout

    def init_app(self, app):
        self.backend_url = app.config.get('SMS_BACKEND_URL')
        self.timeout = app.config.get('SMS_TIMEOUT', 10)

    @staticmethod
    def validate_phone(to):
        """Error string for numbers not in E.164 form, else None."""
        if not to or not to.startswith('+'):
            return 'Phone number must be in E.164 format (e.g., +1234567890)'
        if len(re.sub(r'\D', '', to)) < 10:
            return 'Phone number must have at least 10 digits'
        return None

    def send(self, to, message):
        error = self.validate_phone(to)
        if error:
            logger.error('Invalid phone number %r: %s', to, error)
            return {'success': False, 'error': error}

        if not self.backend_url:
            logger.warning('SMS backend not configured, dropping message to %s', to)
            return {'success': False, 'error': 'SMS backend not configured'}

        logger.info('Sending SMS to %s', to)
        try:
            resp = requests.post(f'{self.backend_url.rstrip("/")}/send-sms',
                                 json={'to': to, 'message': message},
                                 timeout=self.timeout)
        except requests.RequestException as e:
            logger.error('SMS request failed: %s', e)
            return {'success': False, 'error': str(e)}

        try:
            data = resp.json()
        except ValueError:
            logger.error('SMS backend returned non-JSON response (%s): %s',
                         resp.status_code, resp.text[:300])
            return {'success': False,
                    'error': f'Backend error ({resp.status_code}): {resp.text[:150]}'}

        if not resp.ok:
            error = data.get('error') or data.get('message') or 'Failed to send SMS'
            logger.error('SMS backend rejected message: %s', error)
            return {'success': False, 'error': error}

        return {'success': True, 'error': None, 'data': data}


sms_client = SmsClient()


def send_responder_confirmation_sms(responder_phone, emergency):
    message = (f"Raksetu: Response confirmed for {emergency['blood_type']} at "
               f"{emergency['hospital']}. Contact ASAP. Thank you!")
    return sms_client.send(responder_phone, message)


def send_creator_notification_sms(creator_phone, responder, emergency):
    name = responder.get('name') or 'A donor'
    phone = responder.get('phone') or 'Not provided'
    blood_type = responder.get('blood_group') or emergency['blood_type']
    message = f'Raksetu: {name} ({blood_type}) will help! Contact: {phone}'
    return sms_client.send(creator_phone, message)


def send_urgent_emergency_sms(donor_phone, emergency):
    message = (
        'URGENT BLOOD NEEDED\n\n'
        f"Blood Type: {emergency['blood_type']}\n"
        f"Hospital: {emergency['hospital']}\n"
        f"Location: {emergency.get('location') or 'N/A'}\n"
        f"Units: {emergency.get('units') or 1}\n"
        f"Urgency: {emergency.get('urgency')}\n\n"
        'Can you help? Open Raksetu app to respond.'
    )
    return sms_client.send(donor_phone, message)


def _send_urgent_batch(phones, emergency):
    for phone in phones:
        try:
            result = send_urgent_emergency_sms(phone, emergency)
        except Exception:
            logger.exception('Urgent SMS to %s failed', phone)
            continue
        if not result['success']:
            logger.warning('Urgent SMS to %s not delivered: %s', phone, result['error'])


def alert_matched_donors(donors, emergency, background=True):
    """SMS every matched donor with a phone about a new emergency.

    Delivery happens off the request thread when ``background`` is set;
    failures are logged and never reach the caller.
    """
    phones = [donor['phone'] for donor in donors if donor.get('phone')]
    if not phones:
        return 0
    if background:
        threading.Thread(target=_send_urgent_batch, args=(phones, emergency), daemon=True).start()
    else:
        _send_urgent_batch(phones, emergency)
    return len(phones)


def create_notification(user_id, message, type, **fields):
    """Queue an in-app notification; the caller commits."""
    notification = Notification(user_id=user_id, message=message, type=type, **fields)
    db.session.add(notification)
    return notification
