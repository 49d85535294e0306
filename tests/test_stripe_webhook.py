import json
import shutil
import tempfile
import unittest
from unittest import mock

import stripe

from app import create_app
from config import StripeConfig
from payments import StripePaymentGateway, handle_webhook_event
from services import get_services

from fakes import FakeNotifier, FakePayments, make_config, rows, seed_shop


def _intent(intent_id='pi_test_1', status='succeeded', amount=100):
    return mock.Mock(id=intent_id, client_secret=f'{intent_id}_secret', amount=amount, currency='usd', status=status)


def _event(event_type, intent_id='pi_test_1', status='requires_capture', ride_hold=True):
    metadata = {'type': 'test_ride_hold', 'test_ride_id': 'ride-1'} if ride_hold else {}
    return {
        'id': 'evt_1',
        'type': event_type,
        'data': {
            'object': {
                'id': intent_id,
                'object': 'payment_intent',
                'status': status,
                'amount': 100,
                'amount_capturable': 100 if status == 'requires_capture' else 0,
                'metadata': metadata,
            }
        },
    }


class StripeWebhookTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        config = make_config(self._tmpdir)
        config.stripe = StripeConfig(secret_key='sk_test_123', webhook_secret='whsec_test')
        self.app = create_app(config, notifications=FakeNotifier())
        self.app.config['TESTING'] = True
        self.client = self.app.test_client()

        with self.app.app_context():
            self.services = get_services()
        persistence = self.services.persistence
        shop = seed_shop(persistence)
        customer = persistence.insert_or_update(
            'customers', {'shop_id': shop['id'], 'name': 'Jane Rider', 'phone': '+18585550100'}
        ).value
        self.drive = persistence.insert_or_update(
            'test_drives',
            {
                'shop_id': shop['id'],
                'customer_id': customer['id'],
                'bike_model': 'Aventon Pace 500.3',
                'status': 'active',
                'stripe_payment_intent_id': 'pi_test_1',
                'authorization_amount_cents': 100,
                'payment_status': 'authorized',
            },
        ).value

    def tearDown(self):
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def _post(self, event, signature='t=1,v1=abc'):
        return self.client.post(
            '/webhooks/stripe',
            data=json.dumps(event),
            headers={'Stripe-Signature': signature},
            content_type='application/json',
        )

    def _payment_status(self):
        return rows(self.services.persistence, 'test_drives', {'id': self.drive['id']})[0]['payment_status']

    @mock.patch('payments.stripe.PaymentIntent.capture')
    @mock.patch('payments.stripe.Webhook.construct_event')
    def test_capturable_ride_hold_is_captured(self, construct_event, capture):
        capture.return_value = _intent()

        response = self._post(_event('payment_intent.amount_capturable_updated'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {'received': True, 'action': 'captured'})
        construct_event.assert_called_once()
        self.assertEqual(construct_event.call_args[0][2], 'whsec_test')
        capture.assert_called_once_with('pi_test_1', api_key='sk_test_123', amount_to_capture=100)
        self.assertEqual(self._payment_status(), 'captured')

    @mock.patch('payments.stripe.PaymentIntent.capture')
    @mock.patch('payments.stripe.Webhook.construct_event')
    def test_capture_failure_leaves_drive_authorized(self, construct_event, capture):
        capture.side_effect = stripe.StripeError('card declined')

        response = self._post(_event('payment_intent.succeeded'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()['action'], 'capture_failed')
        self.assertEqual(self._payment_status(), 'authorized')

    @mock.patch('payments.stripe.PaymentIntent.capture')
    @mock.patch('payments.stripe.Webhook.construct_event')
    def test_already_captured_success_marks_captured(self, construct_event, capture):
        response = self._post(_event('payment_intent.succeeded', status='succeeded'))

        self.assertEqual(response.get_json()['action'], 'marked_captured')
        capture.assert_not_called()
        self.assertEqual(self._payment_status(), 'captured')

    @mock.patch('payments.stripe.Webhook.construct_event')
    def test_failed_and_canceled_events(self, construct_event):
        self._post(_event('payment_intent.payment_failed', status='requires_payment_method'))
        self.assertEqual(self._payment_status(), 'failed')

        self._post(_event('payment_intent.canceled', status='canceled'))
        self.assertEqual(self._payment_status(), 'cancelled')

    @mock.patch('payments.stripe.PaymentIntent.capture')
    @mock.patch('payments.stripe.Webhook.construct_event')
    def test_other_holds_and_events_are_ignored(self, construct_event, capture):
        response = self._post(_event('payment_intent.amount_capturable_updated', ride_hold=False))
        self.assertEqual(response.get_json()['action'], 'ignored')

        response = self._post(_event('charge.refunded'))
        self.assertEqual(response.get_json()['action'], 'ignored')

        capture.assert_not_called()
        self.assertEqual(self._payment_status(), 'authorized')

    @mock.patch('payments.stripe.Webhook.construct_event')
    def test_invalid_signature(self, construct_event):
        construct_event.side_effect = stripe.SignatureVerificationError('No signatures found', 'bad')

        response = self._post(_event('payment_intent.succeeded'), signature='bad')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {'error': 'Invalid signature'})
        self.assertEqual(self._payment_status(), 'authorized')

    def test_missing_webhook_secret(self):
        self.services.payments = StripePaymentGateway('sk_test_123', webhook_secret='')

        response = self._post(_event('payment_intent.succeeded'))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {'error': 'Webhook secret not configured'})


class StripePaymentGatewayTests(unittest.TestCase):
    def test_requires_secret_key(self):
        from errors import ConfigurationError

        with self.assertRaises(ConfigurationError):
            StripePaymentGateway('')

    @mock.patch('payments.stripe.PaymentIntent.create')
    def test_create_hold_uses_manual_capture(self, create):
        create.return_value = _intent(status='requires_payment_method')
        gateway = StripePaymentGateway('sk_test_123', 'whsec_test')

        result = gateway.create_hold(100, 'usd', {'test_ride_id': 'ride-1', 'customer_email': 'jane@example.com'})

        self.assertTrue(result.ok)
        self.assertEqual(result.value.client_secret, 'pi_test_1_secret')
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs['api_key'], 'sk_test_123')
        self.assertEqual(kwargs['amount'], 100)
        self.assertEqual(kwargs['capture_method'], 'manual')
        self.assertEqual(kwargs['payment_method_types'], ['card'])
        self.assertEqual(kwargs['metadata']['type'], 'test_ride_hold')
        self.assertEqual(kwargs['description'], 'Test Ride Hold - jane@example.com')

    @mock.patch('payments.stripe.PaymentIntent.create')
    def test_stripe_errors_become_err(self, create):
        create.side_effect = stripe.StripeError('Invalid API Key provided')

        result = StripePaymentGateway('sk_test_bad').create_hold(100, 'usd', {})

        self.assertFalse(result.ok)
        self.assertEqual(result.kind, 'PAYMENT_ERROR')

    @mock.patch('payments.stripe.PaymentIntent.retrieve')
    def test_get_hold_reports_status(self, retrieve):
        retrieve.return_value = _intent(status='requires_capture')

        hold = StripePaymentGateway('sk_test_123').get_hold('pi_test_1').value

        self.assertTrue(hold.authorized)
        retrieve.assert_called_once_with('pi_test_1', api_key='sk_test_123')

    def test_webhook_handler_with_fake_gateway(self):
        payments = FakePayments()
        persistence = mock.Mock()
        persistence.update.return_value = mock.Mock(ok=True, value=[{'id': 'drive-1'}])

        summary = handle_webhook_event(_event('payment_intent.amount_capturable_updated'), payments, persistence)

        self.assertEqual(summary['action'], 'captured')
        self.assertEqual(payments.captured, [('pi_test_1', 100)])
        persistence.update.assert_called_once_with(
            'test_drives', {'stripe_payment_intent_id': 'pi_test_1'}, {'payment_status': 'captured'}
        )


if __name__ == '__main__':
    unittest.main()
