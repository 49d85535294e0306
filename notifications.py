import logging
import re
from dataclasses import dataclass

import phonenumbers
import requests
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from errors import ConfigurationError, Err, Ok
from persistence import utc_now_iso

logger = logging.getLogger(__name__)

TEXTBELT_URL = 'https://textbelt.com/text'
TEXTBELT_TIMEOUT_SECONDS = 15

PROVIDER_NOT_CONFIGURED = 'PROVIDER_NOT_CONFIGURED'
PROVIDER_ERROR = 'PROVIDER_ERROR'
INVALID_PHONE = 'INVALID_PHONE'


def normalize_phone(raw_phone, country_code='1'):
    """Turn free-form input into a +E.164-looking string.

    US/Canada heuristic only: it knows one default country code and nothing
    about other numbering plans.
    """
    raw_phone = (raw_phone or '').strip()
    digits = re.sub(r'\D', '', raw_phone)
    if len(digits) < 10:
        raise ValueError('Phone number must contain at least 10 digits.')

    if len(digits) == 10:
        return f'+{country_code}{digits}'
    if len(digits) == 11 and digits.startswith(country_code):
        return f'+{digits}'
    if raw_phone.startswith('+'):
        return f'+{digits}'
    return f'+{country_code}{digits[-10:]}'


def mask_phone(phone):
    if not phone:
        return ''
    if len(phone) <= 4:
        return '*' * len(phone)
    return f"{phone[:2]}{'*' * (len(phone) - 6)}{phone[-4:]}"


def format_phone_for_display(phone, country_code='1'):
    if not phone:
        return ''
    try:
        parsed = phonenumbers.parse(normalize_phone(phone, country_code), None)
    except (ValueError, phonenumbers.NumberParseException):
        return phone
    if not phonenumbers.is_possible_number(parsed):
        return phone
    if parsed.country_code == int(country_code):
        return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.NATIONAL)
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.INTERNATIONAL)


@dataclass(frozen=True)
class SmsReceipt:
    provider: str
    provider_message_id: str
    raw_status: str = ''


class NotificationGateway:
    provider_name = 'unknown'
    configured = True

    def send(self, to_phone, body):
        raise NotImplementedError


class TwilioNotificationGateway(NotificationGateway):
    provider_name = 'twilio'

    def __init__(self, account_sid, auth_token, from_number, client=None):
        if not account_sid or not auth_token or not from_number:
            raise ConfigurationError(
                'notifications',
                'Twilio not configured. Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER.',
            )
        self.from_number = from_number
        self.client = client or TwilioClient(account_sid, auth_token)

    def send(self, to_phone, body):
        try:
            response = self.client.messages.create(body=body, from_=self.from_number, to=to_phone)
        except (TwilioException, requests.RequestException) as exc:
            logger.warning('twilio_send_failed to=%s error=%s', mask_phone(to_phone), exc)
            return Err(PROVIDER_ERROR, 'Unable to send SMS through provider.')
        return Ok(SmsReceipt(self.provider_name, response.sid, response.status or ''))


class TextBeltNotificationGateway(NotificationGateway):
    provider_name = 'textbelt'

    def __init__(self, api_key, url=TEXTBELT_URL, session=None):
        if not api_key:
            raise ConfigurationError('notifications', 'TextBelt not configured. Set TEXTBELT_API_KEY.')
        self.api_key = api_key
        self.url = url
        self.session = session or requests.Session()

    def send(self, to_phone, body):
        try:
            response = self.session.post(
                self.url,
                json={'phone': to_phone, 'message': body, 'key': self.api_key},
                timeout=TEXTBELT_TIMEOUT_SECONDS,
            )
            result = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning('textbelt_send_failed to=%s error=%s', mask_phone(to_phone), exc)
            return Err(PROVIDER_ERROR, 'Unable to send SMS through provider.')

        if not result.get('success'):
            return Err(PROVIDER_ERROR, result.get('error') or 'TextBelt SMS failed')
        return Ok(SmsReceipt(self.provider_name, str(result.get('textId') or ''), 'sent'))


class DisabledNotificationGateway(NotificationGateway):
    provider_name = 'disabled'
    configured = False

    def __init__(self, reason='SMS provider not configured. Contact administrator.'):
        self.reason = reason

    def send(self, to_phone, body):
        return Err(PROVIDER_NOT_CONFIGURED, self.reason)


def build_notification_gateway(config):
    sms = config.sms
    if sms.provider == 'twilio':
        return TwilioNotificationGateway(sms.twilio_account_sid, sms.twilio_auth_token, sms.twilio_from_number)
    if sms.provider == 'textbelt':
        return TextBeltNotificationGateway(sms.textbelt_api_key)
    if sms.provider in {'', 'none', 'disabled'}:
        raise ConfigurationError('notifications', 'SMS notifications are disabled (SMS_PROVIDER=none).')
    raise ConfigurationError('notifications', f'Unknown SMS_PROVIDER: {sms.provider}')


# ----------------- MESSAGES ------------------------

def build_ride_started_message(shop, return_time_text):
    location = shop.address or 'the shop'
    return (
        f'Your {shop.display_name} test ride has started! Please return by {return_time_text}. '
        f'Location: {location}. Questions? Reply to this message.'
    )


def build_ride_reminder_message(shop, return_time_text):
    return f'Reminder: your {shop.display_name} test ride ends at {return_time_text}. Please return the bike on time.'


def build_ride_overdue_message(shop, return_time_text):
    contact = f' or call {shop.phone}' if shop.phone else ''
    return (
        f'Your {shop.display_name} test ride was due back at {return_time_text}. '
        f'Please return the bike as soon as possible{contact}.'
    )


def build_ride_completed_message(shop):
    return f'Thank you for your {shop.display_name} test ride! We hope you enjoyed it. Come back soon for another ride!'


# ----------------- DISPATCH ------------------------

def dispatch_notification(persistence, notifier, *, shop_id, customer_id, test_drive_id,
                          phone, body, message_type, country_code='1'):
    """Send one SMS and record the attempt. Never raises for delivery problems.

    Returns the stored notification record (or the record that failed to
    store) with its ``delivery_status``.
    """
    record = {
        'shop_id': shop_id,
        'customer_id': customer_id,
        'test_drive_id': test_drive_id,
        'customer_phone': phone,
        'message_content': body,
        'message_type': message_type,
        'provider': notifier.provider_name,
    }

    try:
        to_e164 = normalize_phone(phone, country_code)
    except ValueError:
        result = Err(INVALID_PHONE, 'Customer phone number is invalid.')
    else:
        record['customer_phone'] = to_e164
        result = notifier.send(to_e164, body)

    if result.ok:
        record.update(
            delivery_status='sent',
            provider_message_id=result.value.provider_message_id,
            sent_at=utc_now_iso(),
        )
        logger.info(
            'sms_%s_sent test_drive_id=%s provider=%s provider_message_id=%s to=%s',
            message_type,
            test_drive_id,
            notifier.provider_name,
            result.value.provider_message_id,
            mask_phone(record['customer_phone']),
        )
    else:
        record.update(delivery_status='failed', error=f'{result.kind}: {result.message}')
        logger.warning(
            'sms_%s_failed test_drive_id=%s provider=%s errorCode=%s to=%s error=%s',
            message_type,
            test_drive_id,
            notifier.provider_name,
            result.kind,
            mask_phone(record['customer_phone']),
            result.message,
        )

    stored = persistence.insert_or_update('notifications', record)
    if not stored.ok:
        logger.error(
            'notification_record_failed test_drive_id=%s delivery_status=%s error=%s',
            test_drive_id,
            record['delivery_status'],
            stored.message,
        )
        return record
    return stored.value
