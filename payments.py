import json
import logging
from dataclasses import dataclass

import stripe

from errors import ConfigurationError, Err, Ok

logger = logging.getLogger(__name__)

HOLD_TYPE = 'test_ride_hold'
AUTHORIZED_STATUSES = {'requires_capture', 'succeeded'}

PAYMENT_NOT_CONFIGURED = 'PAYMENT_NOT_CONFIGURED'
PAYMENT_ERROR = 'PAYMENT_ERROR'
PAYMENT_DECLINED = 'PAYMENT_DECLINED'
PAYMENT_PENDING = 'PAYMENT_PENDING'
INVALID_SIGNATURE = 'INVALID_SIGNATURE'

HOLD_STATUS_MESSAGES = {
    'processing': 'Payment is being processed. Please wait...',
    'requires_action': 'Payment requires additional verification. Please complete the authentication.',
    'requires_payment_method': 'Payment failed. Please check your card details.',
    'requires_confirmation': 'Payment has not been confirmed yet. Please submit your card details.',
    'canceled': 'Payment was canceled. Please try again.',
}


@dataclass(frozen=True)
class PaymentHold:
    intent_id: str
    client_secret: str
    amount_cents: int
    currency: str = 'usd'
    status: str = 'requires_payment_method'

    @property
    def authorized(self):
        return self.status in AUTHORIZED_STATUSES


def hold_status_error(status):
    """Map a non-authorized PaymentIntent status to an Err the wizard can surface."""
    message = HOLD_STATUS_MESSAGES.get(status, f'Unexpected payment status: {status}. Please check with support.')
    kind = PAYMENT_PENDING if status in {'processing', 'requires_action', 'requires_confirmation'} else PAYMENT_DECLINED
    return Err(kind, message)


def _hold_from_intent(intent, currency):
    return PaymentHold(
        intent_id=intent.id,
        client_secret=getattr(intent, 'client_secret', '') or '',
        amount_cents=int(getattr(intent, 'amount', 0) or 0),
        currency=getattr(intent, 'currency', None) or currency,
        status=intent.status,
    )


class StripePaymentGateway:
    configured = True

    def __init__(self, secret_key, webhook_secret='', currency='usd'):
        if not secret_key:
            raise ConfigurationError('payments', 'Stripe not configured. Set STRIPE_SECRET_KEY.')
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def create_hold(self, amount_cents, currency, metadata):
        description = f"Test Ride Hold - {metadata.get('customer_email') or metadata.get('customer_id', '')}"
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=int(amount_cents),
                currency=currency or self.currency,
                payment_method_types=['card'],
                capture_method='manual',
                metadata={**metadata, 'type': HOLD_TYPE},
                description=description.strip(' -'),
            )
        except stripe.StripeError as exc:
            logger.error('stripe_hold_create_failed amount_cents=%s error=%s', amount_cents, exc)
            return Err(PAYMENT_ERROR, 'Failed to create payment authorization. Please try again.')
        return Ok(_hold_from_intent(intent, currency or self.currency))

    def get_hold(self, intent_id):
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.StripeError as exc:
            logger.error('stripe_hold_retrieve_failed payment_intent_id=%s error=%s', intent_id, exc)
            return Err(PAYMENT_ERROR, 'Unable to verify payment authorization. Please try again.')
        return Ok(_hold_from_intent(intent, self.currency))

    def capture_hold(self, intent_id, amount_cents=None):
        params = {'api_key': self.secret_key}
        if amount_cents is not None:
            params['amount_to_capture'] = int(amount_cents)
        try:
            intent = stripe.PaymentIntent.capture(intent_id, **params)
        except stripe.StripeError as exc:
            logger.error('stripe_hold_capture_failed payment_intent_id=%s error=%s', intent_id, exc)
            return Err(PAYMENT_ERROR, f'Failed to capture payment: {exc}')
        return Ok(_hold_from_intent(intent, self.currency))

    def cancel_hold(self, intent_id):
        try:
            intent = stripe.PaymentIntent.cancel(intent_id, api_key=self.secret_key)
        except stripe.StripeError as exc:
            logger.error('stripe_hold_cancel_failed payment_intent_id=%s error=%s', intent_id, exc)
            return Err(PAYMENT_ERROR, f'Failed to cancel payment authorization: {exc}')
        return Ok(_hold_from_intent(intent, self.currency))

    def construct_event(self, payload, signature):
        if not self.webhook_secret:
            return Err(PAYMENT_NOT_CONFIGURED, 'Webhook secret not configured')
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning('stripe_webhook_signature_failed error=%s', exc)
            return Err(INVALID_SIGNATURE, 'Invalid signature')
        return Ok(json.loads(payload))


class DisabledPaymentGateway:
    configured = False

    def __init__(self, reason='Payments are not configured.'):
        self.reason = reason

    def _err(self):
        return Err(PAYMENT_NOT_CONFIGURED, self.reason)

    def create_hold(self, amount_cents, currency, metadata):
        return self._err()

    def get_hold(self, intent_id):
        return self._err()

    def capture_hold(self, intent_id, amount_cents=None):
        return self._err()

    def cancel_hold(self, intent_id):
        return self._err()

    def construct_event(self, payload, signature):
        return Err(PAYMENT_NOT_CONFIGURED, 'Webhook secret not configured')


def build_payment_gateway(config):
    return StripePaymentGateway(config.stripe.secret_key, config.stripe.webhook_secret, config.stripe.currency)


# ----------------- WEBHOOKS ------------------------

def _mark_drives(persistence, intent_id, payment_status):
    result = persistence.update(
        'test_drives',
        {'stripe_payment_intent_id': intent_id},
        {'payment_status': payment_status},
    )
    if not result.ok:
        logger.error(
            'stripe_webhook_drive_update_failed payment_intent_id=%s payment_status=%s error=%s',
            intent_id,
            payment_status,
            result.message,
        )
        return 0
    return len(result.value)


def handle_webhook_event(event, payments, persistence):
    """Apply a verified Stripe event. Returns a small summary for logging/tests."""
    event_type = event.get('type', '')
    intent = (event.get('data') or {}).get('object') or {}
    intent_id = intent.get('id')
    metadata = intent.get('metadata') or {}
    is_ride_hold = metadata.get('type') == HOLD_TYPE

    if event_type in {'payment_intent.succeeded', 'payment_intent.amount_capturable_updated'}:
        if is_ride_hold and intent.get('status') == 'requires_capture':
            amount = intent.get('amount_capturable') or intent.get('amount')
            captured = payments.capture_hold(intent_id, amount)
            if not captured.ok:
                logger.error('stripe_hold_auto_capture_failed payment_intent_id=%s error=%s', intent_id, captured.message)
                return {'event': event_type, 'action': 'capture_failed', 'payment_intent_id': intent_id}
            updated = _mark_drives(persistence, intent_id, 'captured')
            logger.info('stripe_hold_captured payment_intent_id=%s amount=%s drives=%s', intent_id, amount, updated)
            return {'event': event_type, 'action': 'captured', 'payment_intent_id': intent_id}

        if event_type == 'payment_intent.succeeded' and is_ride_hold:
            updated = _mark_drives(persistence, intent_id, 'captured')
            logger.info('stripe_payment_succeeded payment_intent_id=%s drives=%s', intent_id, updated)
            return {'event': event_type, 'action': 'marked_captured', 'payment_intent_id': intent_id}

    elif event_type == 'payment_intent.payment_failed':
        updated = _mark_drives(persistence, intent_id, 'failed')
        logger.info('stripe_payment_failed payment_intent_id=%s drives=%s', intent_id, updated)
        return {'event': event_type, 'action': 'marked_failed', 'payment_intent_id': intent_id}

    elif event_type == 'payment_intent.canceled':
        updated = _mark_drives(persistence, intent_id, 'cancelled')
        logger.info('stripe_payment_canceled payment_intent_id=%s drives=%s', intent_id, updated)
        return {'event': event_type, 'action': 'marked_cancelled', 'payment_intent_id': intent_id}

    logger.info('stripe_event_ignored type=%s payment_intent_id=%s', event_type, intent_id)
    return {'event': event_type, 'action': 'ignored', 'payment_intent_id': intent_id}
