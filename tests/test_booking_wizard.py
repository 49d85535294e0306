import os
import shutil
import tempfile
import threading
import unittest

from errors import Err, GatewayError, InvalidTransition, RideStartInProgress, ValidationError
from notifications import DisabledNotificationGateway
from persistence import Shop, SqliteGateway, load_shop
from wizard import (
    ActiveStep,
    BikeSelectionStep,
    BookingWizard,
    ConfirmationStep,
    ContactStep,
    PaymentStep,
    VerificationStep,
    WizardStore,
)

from fakes import PNG_BYTES, SIGNATURE, FakeNotifier, FakePayments, FixedClock, rows, seed_bike, seed_shop


class BlockingPersistence:
    """Wraps a gateway and parks the first test_drives write until released."""

    def __init__(self, inner):
        self.inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def insert_or_update(self, table, fields, match=None):
        if table == 'test_drives':
            self.entered.set()
            self.release.wait(5)
        return self.inner.insert_or_update(table, fields, match)


class FailingRidePersistence:
    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def insert_or_update(self, table, fields, match=None):
        if table == 'test_drives':
            return Err('persistence_error', 'database is unavailable')
        return self.inner.insert_or_update(table, fields, match)


class BookingWizardTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        self.persistence = SqliteGateway(
            os.path.join(self._tmpdir, 'test_rides.db'), os.path.join(self._tmpdir, 'uploads')
        )
        self.persistence.init_schema()
        shop_row = seed_shop(self.persistence)
        self.shop = load_shop(self.persistence, shop_row['slug'])
        self.bike = seed_bike(self.persistence, self.shop.id)
        self.unavailable_bike = seed_bike(self.persistence, self.shop.id, model='RadRover 6 Plus', available=False)
        self.payments = FakePayments()
        self.notifier = FakeNotifier()
        self.clock = FixedClock()

    def tearDown(self):
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def _wizard(self, persistence=None, notifier=None):
        return BookingWizard(
            self.shop,
            persistence or self.persistence,
            self.payments,
            notifier or self.notifier,
            clock=self.clock,
        )

    def _to_verification(self, wizard):
        wizard.submit_contact('Jane Rider', '(858) 555-0100', 'jane@example.com')
        wizard.select_bike(self.bike['id'])

    def _complete_verification_inputs(self, wizard):
        wizard.upload_id_photo(PNG_BYTES, 'image/png')
        wizard.open_waiver()
        wizard.acknowledge_waiver(True)
        wizard.set_signature(SIGNATURE)

    def _to_confirmation(self, wizard):
        self._to_verification(wizard)
        self._complete_verification_inputs(wizard)
        wizard.submit_verification()
        wizard.request_hold()
        wizard.confirm_payment()

    def test_empty_contact_reports_name_and_phone(self):
        wizard = self._wizard()
        with self.assertRaises(ValidationError) as ctx:
            wizard.submit_contact('', '', '')

        self.assertEqual(ctx.exception.errors['name'], 'Full name is required')
        self.assertEqual(ctx.exception.errors['phone'], 'Phone number is required')
        self.assertIsInstance(wizard.state, ContactStep)

    def test_short_phone_is_rejected(self):
        wizard = self._wizard()
        with self.assertRaises(ValidationError) as ctx:
            wizard.submit_contact('Jane Rider', '123')

        self.assertEqual(ctx.exception.errors, {'phone': 'Please enter a valid phone number'})
        self.assertIsInstance(wizard.state, ContactStep)

    def test_phone_with_letters_is_rejected(self):
        wizard = self._wizard()
        with self.assertRaises(ValidationError) as ctx:
            wizard.submit_contact('Jane Rider', '858-555-CALL-NOW')
        self.assertIn('phone', ctx.exception.errors)

    def test_email_is_optional_but_must_be_well_formed(self):
        wizard = self._wizard()
        with self.assertRaises(ValidationError) as ctx:
            wizard.submit_contact('Jane Rider', '8585550100', 'jane@example')
        self.assertEqual(ctx.exception.errors, {'email': 'Please enter a valid email address'})

        state = wizard.submit_contact('Jane Rider', '8585550100', '')
        self.assertIsInstance(state, BikeSelectionStep)
        self.assertIsNone(state.contact.email)

    def test_bike_must_be_selected_and_available(self):
        wizard = self._wizard()
        wizard.submit_contact('Jane Rider', '8585550100')

        with self.assertRaises(ValidationError) as ctx:
            wizard.select_bike('')
        self.assertEqual(ctx.exception.errors['bike'], 'Please select a bike')

        with self.assertRaises(ValidationError) as ctx:
            wizard.select_bike(self.unavailable_bike['id'])
        self.assertEqual(ctx.exception.errors['bike'], 'Selected bike is not available')

        available = [bike['id'] for bike in wizard.available_bikes()]
        self.assertEqual(available, [self.bike['id']])

        state = wizard.select_bike(self.bike['id'])
        self.assertIsInstance(state, VerificationStep)
        self.assertEqual(state.bike.label, 'Aventon Pace 500.3 Step-Through')

    def test_verification_gate_requires_all_three_inputs(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        self.assertFalse(wizard.can_continue)

        wizard.upload_id_photo(PNG_BYTES, 'image/png')
        self.assertFalse(wizard.can_continue)
        wizard.open_waiver()
        wizard.acknowledge_waiver(True)
        self.assertFalse(wizard.can_continue)
        wizard.set_signature(SIGNATURE)
        self.assertTrue(wizard.can_continue)

        wizard.clear_signature()
        self.assertFalse(wizard.can_continue)
        wizard.set_signature(SIGNATURE)
        wizard.acknowledge_waiver(False)
        self.assertFalse(wizard.can_continue)
        wizard.acknowledge_waiver(True)
        self.assertTrue(wizard.can_continue)

        with self.assertRaises(ValidationError):
            wizard.upload_id_photo(b'GIF89a', 'image/gif')
        self.assertFalse(wizard.can_continue)

    def test_submit_verification_reports_missing_inputs(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        with self.assertRaises(ValidationError) as ctx:
            wizard.submit_verification()

        self.assertEqual(set(ctx.exception.errors), {'id_photo', 'waiver', 'signature'})
        self.assertEqual(rows(self.persistence, 'customers'), [])

    def test_waiver_must_be_opened_before_acknowledging(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        with self.assertRaises(ValidationError) as ctx:
            wizard.acknowledge_waiver(True)
        self.assertIn('waiver', ctx.exception.errors)

        terms = wizard.open_waiver()
        self.assertTrue(any('SD Electric Bike' in paragraph for paragraph in terms))
        wizard.acknowledge_waiver(True)
        self.assertTrue(wizard.draft.waiver_acknowledged)

    def test_id_photo_limits(self):
        wizard = self._wizard()
        self._to_verification(wizard)

        with self.assertRaises(ValidationError):
            wizard.upload_id_photo(b'%PDF-1.4', 'application/pdf')
        with self.assertRaises(ValidationError) as ctx:
            wizard.upload_id_photo(b'\x00' * (5 * 1024 * 1024 + 1), 'image/jpeg')
        self.assertEqual(ctx.exception.errors['id_photo'], 'File size must be less than 5MB')

        url = wizard.upload_id_photo(PNG_BYTES, 'image/png')
        self.assertTrue(url.startswith('/files/customer-files/id-photos/'))
        self.assertTrue(url.endswith('.png'))

    def test_signature_must_be_an_image_data_url(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        with self.assertRaises(ValidationError):
            wizard.set_signature('')
        with self.assertRaises(ValidationError):
            wizard.set_signature('javascript:alert(1)')

    def test_happy_path_creates_one_customer_ride_and_sent_notification(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        self._complete_verification_inputs(wizard)

        state = wizard.submit_verification()
        self.assertIsInstance(state, PaymentStep)
        customer = rows(self.persistence, 'customers')
        self.assertEqual(len(customer), 1)
        self.assertTrue(customer[0]['waiver_signed'])
        self.assertEqual(customer[0]['shop_id'], self.shop.id)
        self.assertTrue(customer[0]['waiver_url'].endswith(f"waivers/{customer[0]['id']}.html"))

        hold = wizard.request_hold()
        self.assertEqual(hold.amount_cents, 100)
        metadata = self.payments.created[0]['metadata']
        self.assertEqual(metadata['type'], 'test_ride_hold')
        self.assertEqual(metadata['test_ride_id'], wizard.ride_id)
        self.assertEqual(metadata['customer_id'], customer[0]['id'])
        self.assertEqual(metadata['customer_email'], 'jane@example.com')

        self.assertIsInstance(wizard.confirm_payment(), ConfirmationStep)
        self.assertEqual(wizard.preview_return_time(), '12:30 PM')

        ride = wizard.start_ride()
        self.assertIsInstance(wizard.state, ActiveStep)
        self.assertEqual(wizard.state.sms_status, 'sent')
        self.assertEqual(ride.return_time_text, '12:30 PM')

        drives = rows(self.persistence, 'test_drives')
        self.assertEqual(len(drives), 1)
        self.assertEqual(drives[0]['id'], wizard.ride_id)
        self.assertEqual(drives[0]['status'], 'active')
        self.assertEqual(drives[0]['payment_status'], 'authorized')
        self.assertEqual(drives[0]['stripe_payment_intent_id'], hold.intent_id)
        self.assertEqual(drives[0]['duration_minutes'], 30)

        notifications = rows(self.persistence, 'notifications')
        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0]['delivery_status'], 'sent')
        self.assertEqual(notifications[0]['message_type'], 'confirmation')
        self.assertEqual(notifications[0]['customer_phone'], '+18585550100')

        to_phone, body = self.notifier.sent[0]
        self.assertEqual(to_phone, '+18585550100')
        self.assertIn('12:30 PM', body)
        self.assertIn('101 S. Hwy 101, Solana Beach, CA 92075', body)

    def test_sms_failure_still_reaches_active_with_one_failed_record(self):
        wizard = self._wizard(notifier=FakeNotifier(fail=True))
        self._to_confirmation(wizard)

        wizard.start_ride()

        self.assertIsInstance(wizard.state, ActiveStep)
        self.assertEqual(wizard.state.sms_status, 'failed')
        self.assertEqual(len(rows(self.persistence, 'test_drives')), 1)
        notifications = rows(self.persistence, 'notifications')
        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0]['delivery_status'], 'failed')
        self.assertIn('PROVIDER_ERROR', notifications[0]['error'])

    def test_missing_sms_provider_is_recorded_not_raised(self):
        wizard = self._wizard(notifier=DisabledNotificationGateway())
        self._to_confirmation(wizard)

        wizard.start_ride()

        notifications = rows(self.persistence, 'notifications')
        self.assertEqual(notifications[0]['delivery_status'], 'failed')
        self.assertIn('PROVIDER_NOT_CONFIGURED', notifications[0]['error'])

    def test_second_start_returns_existing_ride(self):
        wizard = self._wizard()
        self._to_confirmation(wizard)

        first = wizard.start_ride()
        second = wizard.start_ride()

        self.assertEqual(first.id, second.id)
        self.assertEqual(len(rows(self.persistence, 'test_drives')), 1)
        self.assertEqual(len(self.notifier.sent), 1)

    def test_concurrent_start_creates_exactly_one_ride(self):
        blocking = BlockingPersistence(self.persistence)
        wizard = self._wizard(persistence=blocking)
        self._to_confirmation(wizard)

        results = []
        worker = threading.Thread(target=lambda: results.append(wizard.start_ride()))
        worker.start()
        self.assertTrue(blocking.entered.wait(5))

        with self.assertRaises(RideStartInProgress):
            wizard.start_ride()

        blocking.release.set()
        worker.join(5)

        self.assertEqual(len(results), 1)
        self.assertEqual(len(rows(self.persistence, 'test_drives')), 1)
        self.assertEqual(wizard.start_ride().id, results[0].id)

    def test_ride_row_failure_keeps_confirmation_and_skips_sms(self):
        wizard = self._wizard(persistence=FailingRidePersistence(self.persistence))
        self._to_confirmation(wizard)

        with self.assertRaises(GatewayError) as ctx:
            wizard.start_ride()

        self.assertEqual(ctx.exception.gateway, 'persistence')
        self.assertIsInstance(wizard.state, ConfirmationStep)
        self.assertEqual(self.notifier.sent, [])
        self.assertEqual(rows(self.persistence, 'notifications'), [])

    def test_payment_not_authorized_stays_on_payment(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        self._complete_verification_inputs(wizard)
        wizard.submit_verification()

        with self.assertRaises(ValidationError):
            wizard.confirm_payment()

        wizard.request_hold()
        self.payments.status = 'requires_action'
        with self.assertRaises(GatewayError) as ctx:
            wizard.confirm_payment()
        self.assertEqual(ctx.exception.kind, 'PAYMENT_PENDING')
        self.assertIsInstance(wizard.state, PaymentStep)

        self.payments.status = 'canceled'
        with self.assertRaises(GatewayError) as ctx:
            wizard.confirm_payment()
        self.assertEqual(ctx.exception.message, 'Payment was canceled. Please try again.')

    def test_hold_failure_does_not_advance(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        self._complete_verification_inputs(wizard)
        wizard.submit_verification()
        self.payments.fail_create = True

        with self.assertRaises(GatewayError) as ctx:
            wizard.request_hold()

        self.assertEqual(ctx.exception.gateway, 'payments')
        self.assertIsInstance(wizard.state, PaymentStep)
        self.assertIsNone(wizard.state.hold)

    def test_repeated_hold_reuses_intent_until_canceled(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        self._complete_verification_inputs(wizard)
        wizard.submit_verification()

        first = wizard.request_hold()
        again = wizard.request_hold()
        self.assertEqual(again.intent_id, first.intent_id)
        self.assertEqual(again.client_secret, first.client_secret)
        self.assertEqual(len(self.payments.created), 1)

        self.payments.status = 'canceled'
        replacement = wizard.request_hold()

        self.assertEqual(len(self.payments.created), 2)
        self.assertEqual(replacement.intent_id, 'pi_test_2')
        self.assertEqual(wizard.state.hold.intent_id, 'pi_test_2')

    def test_back_preserves_values_and_reverification_updates_customer(self):
        wizard = self._wizard()
        self._to_verification(wizard)
        self._complete_verification_inputs(wizard)
        wizard.submit_verification()
        wizard.request_hold()
        wizard.confirm_payment()

        self.assertIsInstance(wizard.back(), PaymentStep)
        self.assertIsNotNone(wizard.state.hold)
        self.assertIsInstance(wizard.back(), VerificationStep)
        self.assertTrue(wizard.can_continue)
        wizard.submit_verification()
        self.assertIsInstance(wizard.back(), VerificationStep)
        self.assertIsInstance(wizard.back(), BikeSelectionStep)
        self.assertIsInstance(wizard.back(), ContactStep)
        self.assertEqual(wizard.draft.name, 'Jane Rider')
        self.assertEqual(wizard.draft.bike_id, self.bike['id'])

        self.assertEqual(len(rows(self.persistence, 'customers')), 1)

        with self.assertRaises(InvalidTransition):
            wizard.back()

    def test_steps_cannot_be_skipped(self):
        wizard = self._wizard()
        with self.assertRaises(InvalidTransition):
            wizard.select_bike(self.bike['id'])
        with self.assertRaises(InvalidTransition):
            wizard.start_ride()

    def test_active_is_terminal_until_reset(self):
        wizard = self._wizard()
        self._to_confirmation(wizard)
        first_ride_id = wizard.ride_id
        wizard.start_ride()

        with self.assertRaises(InvalidTransition):
            wizard.back()

        self.assertIsInstance(wizard.reset(), ContactStep)
        self.assertEqual(wizard.draft.name, '')
        self.assertNotEqual(wizard.ride_id, first_ride_id)

    def test_snapshot_exposes_step_data(self):
        wizard = self._wizard()
        self._to_confirmation(wizard)

        snapshot = wizard.snapshot()
        self.assertEqual(snapshot['step'], 'confirmation')
        self.assertEqual(snapshot['stepIndex'], 4)
        self.assertEqual(snapshot['returnTime'], '12:30 PM')
        self.assertEqual(snapshot['payment']['clientSecret'], 'pi_test_1_secret_abc')
        self.assertTrue(snapshot['draft']['has_signature'])
        self.assertNotIn('signature_data', snapshot['draft'])

    def test_unknown_shop_timezone_falls_back_to_default(self):
        shop = Shop(id=self.shop.id, slug=self.shop.slug, name=self.shop.name, timezone='Mars/Olympus_Mons')
        wizard = BookingWizard(shop, self.persistence, self.payments, self.notifier, clock=self.clock)
        self.assertEqual(wizard.preview_return_time(), '12:30 PM')


class WizardStoreTests(unittest.TestCase):
    def setUp(self):
        self.now = 1000.0
        self.store = WizardStore(idle_seconds=60, clock=lambda: self.now)

    def test_idle_wizards_are_dropped(self):
        stale = self.store.add(object())
        self.now += 45
        fresh = self.store.add(object())
        self.now += 30

        self.assertIsNone(self.store.get(stale))
        self.assertIsNotNone(self.store.get(fresh))
        self.assertEqual(len(self.store), 1)

    def test_get_refreshes_last_seen(self):
        wizard_id = self.store.add(object())
        self.now += 50
        self.assertIsNotNone(self.store.get(wizard_id))
        self.now += 50

        self.assertIsNotNone(self.store.get(wizard_id))

    def test_discard(self):
        wizard_id = self.store.add(object())
        self.store.discard(wizard_id)
        self.store.discard(None)

        self.assertIsNone(self.store.get(wizard_id))
        self.assertEqual(len(self.store), 0)


if __name__ == '__main__':
    unittest.main()
