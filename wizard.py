import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import ClassVar, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import FieldErrors, GatewayError, InvalidTransition, RideStartInProgress, ValidationError
from notifications import build_ride_started_message, dispatch_notification
from payments import HOLD_TYPE, PaymentHold, hold_status_error
from persistence import new_id
from waiver import is_valid_signature, render_waiver, waiver_terms

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'^\+?[\d\s\-\(\)]{10,}$')
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

ID_PHOTO_TYPES = {'image/jpeg': 'jpg', 'image/png': 'png', 'image/webp': 'webp'}
ID_PHOTO_MAX_BYTES = 5 * 1024 * 1024


# ---------------------- STEP DATA ----------------------

@dataclass(frozen=True)
class ContactInfo:
    name: str
    phone: str
    email: Optional[str] = None


@dataclass(frozen=True)
class BikeChoice:
    id: str
    model: str
    brand: str = ''

    @property
    def label(self):
        return f'{self.brand} {self.model}'.strip()


@dataclass(frozen=True)
class VerifiedCustomer:
    id: str
    id_photo_url: str
    waiver_url: str
    submitted_at: str


@dataclass(frozen=True)
class Ride:
    id: str
    customer_id: str
    bike_model: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    return_time_text: str
    payment_intent_id: str
    payment_status: str = 'authorized'


@dataclass(frozen=True)
class ContactStep:
    step: ClassVar[str] = 'contact'


@dataclass(frozen=True)
class BikeSelectionStep:
    contact: ContactInfo
    step: ClassVar[str] = 'bike_selection'


@dataclass(frozen=True)
class VerificationStep:
    contact: ContactInfo
    bike: BikeChoice
    step: ClassVar[str] = 'verification'


@dataclass(frozen=True)
class PaymentStep:
    contact: ContactInfo
    bike: BikeChoice
    customer: VerifiedCustomer
    hold: Optional[PaymentHold] = None
    step: ClassVar[str] = 'payment'


@dataclass(frozen=True)
class ConfirmationStep:
    contact: ContactInfo
    bike: BikeChoice
    customer: VerifiedCustomer
    hold: PaymentHold
    step: ClassVar[str] = 'confirmation'


@dataclass(frozen=True)
class ActiveStep:
    contact: ContactInfo
    bike: BikeChoice
    customer: VerifiedCustomer
    hold: PaymentHold
    ride: Ride
    sms_status: str
    step: ClassVar[str] = 'active'


STEP_ORDER = ('contact', 'bike_selection', 'verification', 'payment', 'confirmation', 'active')


@dataclass
class FormDraft:
    """What the customer has typed or uploaded so far. Survives back navigation."""

    name: str = ''
    phone: str = ''
    email: str = ''
    bike_id: str = ''
    id_photo_url: str = ''
    waiver_opened: bool = False
    waiver_acknowledged: bool = False
    signature_data: str = ''


# ---------------------- HELPERS ----------------------

def validate_contact(name, phone, email):
    errors = FieldErrors()
    if not (name or '').strip():
        errors.add('name', 'Full name is required')

    phone = (phone or '').strip()
    if not phone:
        errors.add('phone', 'Phone number is required')
    elif not PHONE_PATTERN.match(phone) or len(re.sub(r'\D', '', phone)) < 10:
        errors.add('phone', 'Please enter a valid phone number')

    email = (email or '').strip()
    if email and not EMAIL_PATTERN.match(email):
        errors.add('email', 'Please enter a valid email address')
    return errors


def resolve_timezone(name, fallback='America/Los_Angeles'):
    for candidate in (name, fallback):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except ZoneInfoNotFoundError:
            logger.warning('unknown_timezone timezone=%s', candidate)
    return timezone.utc


def format_clock_time(moment, tz):
    return moment.astimezone(tz).strftime('%I:%M %p').lstrip('0')


def list_available_bikes(persistence, shop_id):
    result = persistence.query(
        'bike_inventory',
        {'shop_id': shop_id, 'is_available': True},
        order_by='model',
    )
    if not result.ok:
        raise GatewayError.from_err('persistence', result)
    return result.value


def _utc_now():
    return datetime.now(timezone.utc)


# ---------------------- WIZARD ----------------------

class BookingWizard:
    """One customer's pass through the test ride booking steps for one shop."""

    def __init__(self, shop, persistence, payments, notifier, *, bucket='customer-files',
                 currency='usd', country_code='1', default_timezone='America/Los_Angeles', clock=None):
        self.shop = shop
        self.persistence = persistence
        self.payments = payments
        self.notifier = notifier
        self.bucket = bucket
        self.currency = currency
        self.country_code = country_code
        self.tz = resolve_timezone(shop.timezone, default_timezone)
        self.clock = clock or _utc_now
        self._start_lock = threading.Lock()
        self._begin()

    def _begin(self):
        self.state = ContactStep()
        self.draft = FormDraft()
        self.ride_id = new_id()
        self.customer_id = None
        self._hold = None

    def _expect(self, *step_types):
        if not isinstance(self.state, step_types):
            expected = ', '.join(step_type.step for step_type in step_types)
            raise InvalidTransition(f'Action not allowed on step {self.state.step} (expected {expected})')
        return self.state

    # Contact

    def submit_contact(self, name, phone, email=''):
        self._expect(ContactStep)
        self.draft.name, self.draft.phone, self.draft.email = name or '', phone or '', email or ''
        validate_contact(name, phone, email).raise_if_any()

        contact = ContactInfo(name.strip(), phone.strip(), (email or '').strip() or None)
        self.state = BikeSelectionStep(contact)
        return self.state

    # Bike selection

    def available_bikes(self):
        return list_available_bikes(self.persistence, self.shop.id)

    def select_bike(self, bike_id):
        state = self._expect(BikeSelectionStep)
        self.draft.bike_id = bike_id or ''
        if not bike_id:
            raise ValidationError({'bike': 'Please select a bike'})

        bike = next((row for row in self.available_bikes() if row['id'] == bike_id), None)
        if bike is None:
            raise ValidationError({'bike': 'Selected bike is not available'})

        self.state = VerificationStep(state.contact, BikeChoice(bike['id'], bike['model'], bike.get('brand') or ''))
        return self.state

    # Verification

    def upload_id_photo(self, data, content_type):
        self._expect(VerificationStep)
        self.draft.id_photo_url = ''
        content_type = (content_type or '').split(';')[0].strip().lower()
        if content_type not in ID_PHOTO_TYPES:
            raise ValidationError({'id_photo': 'Please upload a JPEG, PNG, or WebP image'})
        if not data:
            raise ValidationError({'id_photo': 'The uploaded file is empty'})
        if len(data) > ID_PHOTO_MAX_BYTES:
            raise ValidationError({'id_photo': 'File size must be less than 5MB'})

        path = f'id-photos/{uuid.uuid4().hex}.{ID_PHOTO_TYPES[content_type]}'
        result = self.persistence.upload_file(self.bucket, path, data, content_type)
        if not result.ok:
            raise GatewayError.from_err('persistence', result)

        self.draft.id_photo_url = result.value
        return result.value

    def open_waiver(self):
        self._expect(VerificationStep)
        self.draft.waiver_opened = True
        return waiver_terms(self.shop.display_name)

    def acknowledge_waiver(self, accepted=True):
        self._expect(VerificationStep)
        if accepted and not self.draft.waiver_opened:
            raise ValidationError({'waiver': 'Please read the waiver before accepting it'})
        self.draft.waiver_acknowledged = bool(accepted)

    def set_signature(self, signature_data):
        self._expect(VerificationStep)
        if not is_valid_signature(signature_data):
            raise ValidationError({'signature': 'Please provide your signature'})
        self.draft.signature_data = signature_data

    def clear_signature(self):
        self._expect(VerificationStep)
        self.draft.signature_data = ''

    @property
    def can_continue(self):
        if isinstance(self.state, VerificationStep):
            return bool(
                self.draft.id_photo_url
                and self.draft.waiver_acknowledged
                and is_valid_signature(self.draft.signature_data)
            )
        if isinstance(self.state, PaymentStep):
            return self.state.hold is not None
        return not isinstance(self.state, ActiveStep)

    def submit_verification(self):
        state = self._expect(VerificationStep)
        errors = FieldErrors()
        if not self.draft.id_photo_url:
            errors.add('id_photo', 'Please upload a photo of your ID')
        if not self.draft.waiver_acknowledged:
            errors.add('waiver', 'Please read and accept the waiver')
        if not is_valid_signature(self.draft.signature_data):
            errors.add('signature', 'Please provide your signature')
        errors.raise_if_any()

        signed_at = self.clock()
        customer_id = self.customer_id or new_id()
        waiver_html = render_waiver(
            self.shop.display_name,
            state.contact.name,
            state.contact.phone,
            signed_at,
            self.draft.signature_data,
            timezone_name=getattr(self.tz, 'key', None),
        )
        uploaded = self.persistence.upload_file(
            self.bucket, f'waivers/{customer_id}.html', waiver_html.encode('utf-8'), 'text/html'
        )
        if not uploaded.ok:
            raise GatewayError.from_err('persistence', uploaded)

        fields = {
            'id': customer_id,
            'shop_id': self.shop.id,
            'name': state.contact.name,
            'phone': state.contact.phone,
            'email': state.contact.email,
            'id_photo_url': self.draft.id_photo_url,
            'signature_data': self.draft.signature_data,
            'waiver_url': uploaded.value,
            'waiver_signed': True,
            'submitted_at': signed_at.isoformat(),
        }
        stored = self.persistence.insert_or_update('customers', fields, match={'id': customer_id})
        if not stored.ok:
            raise GatewayError.from_err('persistence', stored)

        self.customer_id = customer_id
        logger.info('customer_verified shop=%s customer_id=%s', self.shop.slug, customer_id)
        customer = VerifiedCustomer(customer_id, self.draft.id_photo_url, uploaded.value, fields['submitted_at'])
        self.state = PaymentStep(state.contact, state.bike, customer, self._hold)
        return self.state

    # Payment

    def request_hold(self):
        state = self._expect(PaymentStep)
        if state.hold is not None:
            current = self.payments.get_hold(state.hold.intent_id)
            if not current.ok:
                raise GatewayError.from_err('payments', current)
            if current.value.status != 'canceled':
                # One intent per wizard until Stripe cancels it.
                self._hold = replace(current.value, client_secret=current.value.client_secret or state.hold.client_secret)
                self.state = PaymentStep(state.contact, state.bike, state.customer, self._hold)
                return self._hold
            logger.info('payment_hold_replaced shop=%s payment_intent_id=%s', self.shop.slug, state.hold.intent_id)

        metadata = {
            'type': HOLD_TYPE,
            'test_ride_id': self.ride_id,
            'shop_id': self.shop.id,
            'customer_id': state.customer.id,
            'customer_email': state.contact.email or '',
        }
        result = self.payments.create_hold(self.shop.hold_amount_cents, self.currency, metadata)
        if not result.ok:
            raise GatewayError.from_err('payments', result)

        self._hold = result.value
        self.state = PaymentStep(state.contact, state.bike, state.customer, self._hold)
        logger.info(
            'payment_hold_created shop=%s test_ride_id=%s payment_intent_id=%s amount_cents=%s',
            self.shop.slug,
            self.ride_id,
            self._hold.intent_id,
            self._hold.amount_cents,
        )
        return self._hold

    def confirm_payment(self):
        state = self._expect(PaymentStep)
        if state.hold is None:
            raise ValidationError({'payment': 'Please authorize the payment hold first'})

        result = self.payments.get_hold(state.hold.intent_id)
        if not result.ok:
            raise GatewayError.from_err('payments', result)
        hold = result.value
        if not hold.authorized:
            raise GatewayError.from_err('payments', hold_status_error(hold.status))

        self._hold = hold
        self.state = ConfirmationStep(state.contact, state.bike, state.customer, hold)
        return self.state

    # Confirmation

    def preview_return_time(self):
        return format_clock_time(self.clock() + timedelta(minutes=self.shop.ride_minutes), self.tz)

    def start_ride(self):
        if not self._start_lock.acquire(blocking=False):
            raise RideStartInProgress('Test ride is already starting')
        try:
            if isinstance(self.state, ActiveStep):
                return self.state.ride
            state = self._expect(ConfirmationStep)
            return self._start(state)
        finally:
            self._start_lock.release()

    def _start(self, state):
        minutes = self.shop.ride_minutes
        start_time = self.clock()
        end_time = start_time + timedelta(minutes=minutes)
        stored = self.persistence.insert_or_update(
            'test_drives',
            {
                'id': self.ride_id,
                'shop_id': self.shop.id,
                'customer_id': state.customer.id,
                'bike_model': state.bike.label,
                'start_time': start_time,
                'end_time': end_time,
                'duration_minutes': minutes,
                'status': 'active',
                'stripe_payment_intent_id': state.hold.intent_id,
                'authorization_amount_cents': state.hold.amount_cents,
                'payment_status': 'authorized',
            },
            match={'id': self.ride_id},
        )
        if not stored.ok:
            logger.error('ride_start_failed shop=%s test_ride_id=%s error=%s', self.shop.slug, self.ride_id, stored.message)
            raise GatewayError.from_err('persistence', stored)

        return_time_text = format_clock_time(end_time, self.tz)
        ride = Ride(
            id=self.ride_id,
            customer_id=state.customer.id,
            bike_model=state.bike.label,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=minutes,
            return_time_text=return_time_text,
            payment_intent_id=state.hold.intent_id,
        )
        logger.info(
            'ride_started shop=%s test_ride_id=%s customer_id=%s bike=%s end_time=%s',
            self.shop.slug,
            ride.id,
            ride.customer_id,
            ride.bike_model,
            end_time.isoformat(),
        )

        notification = dispatch_notification(
            self.persistence,
            self.notifier,
            shop_id=self.shop.id,
            customer_id=state.customer.id,
            test_drive_id=ride.id,
            phone=state.contact.phone,
            body=build_ride_started_message(self.shop, return_time_text),
            message_type='confirmation',
            country_code=self.country_code,
        )
        self.state = ActiveStep(
            state.contact, state.bike, state.customer, state.hold, ride, notification['delivery_status']
        )
        return ride

    # Navigation

    def back(self):
        state = self.state
        if isinstance(state, BikeSelectionStep):
            self.state = ContactStep()
        elif isinstance(state, VerificationStep):
            self.state = BikeSelectionStep(state.contact)
        elif isinstance(state, PaymentStep):
            self.state = VerificationStep(state.contact, state.bike)
        elif isinstance(state, ConfirmationStep):
            self.state = PaymentStep(state.contact, state.bike, state.customer, state.hold)
        else:
            raise InvalidTransition(f'Cannot go back from step {state.step}')
        return self.state

    def reset(self):
        with self._start_lock:
            self._begin()
        return self.state

    def snapshot(self):
        state = self.state
        payload = {
            'step': state.step,
            'stepIndex': STEP_ORDER.index(state.step),
            'canContinue': self.can_continue,
            'draft': {
                'name': self.draft.name,
                'phone': self.draft.phone,
                'email': self.draft.email,
                'bike_id': self.draft.bike_id,
                'id_photo_url': self.draft.id_photo_url,
                'waiver_opened': self.draft.waiver_opened,
                'waiver_acknowledged': self.draft.waiver_acknowledged,
                'has_signature': bool(self.draft.signature_data),
            },
        }
        contact = getattr(state, 'contact', None)
        if contact:
            payload['contact'] = {'name': contact.name, 'phone': contact.phone, 'email': contact.email}
        bike = getattr(state, 'bike', None)
        if bike:
            payload['bike'] = {'id': bike.id, 'model': bike.model, 'brand': bike.brand}
        customer = getattr(state, 'customer', None)
        if customer:
            payload['customer'] = {'id': customer.id, 'waiver_url': customer.waiver_url}
        hold = getattr(state, 'hold', None)
        if hold:
            payload['payment'] = {
                'paymentIntentId': hold.intent_id,
                'clientSecret': hold.client_secret,
                'amountCents': hold.amount_cents,
                'status': hold.status,
            }
        if isinstance(state, ConfirmationStep):
            payload['returnTime'] = self.preview_return_time()
            payload['location'] = self.shop.address
        if isinstance(state, ActiveStep):
            payload['ride'] = {
                'id': state.ride.id,
                'bike_model': state.ride.bike_model,
                'start_time': state.ride.start_time.isoformat(),
                'end_time': state.ride.end_time.isoformat(),
                'returnTime': state.ride.return_time_text,
                'location': self.shop.address,
            }
            payload['smsStatus'] = state.sms_status
        return payload


class WizardStore:
    """In-process registry of live wizards, keyed by an opaque id kept in the session cookie.

    Wizards untouched for ``idle_seconds`` are dropped on the next ``get`` or ``add``.
    """

    def __init__(self, idle_seconds=30 * 60, clock=time.monotonic):
        self.idle_seconds = idle_seconds
        self.clock = clock
        self._wizards = {}
        self._lock = threading.Lock()

    def _evict_idle(self, now):
        cutoff = now - self.idle_seconds
        expired = [wizard_id for wizard_id, (_, last_seen) in self._wizards.items() if last_seen < cutoff]
        for wizard_id in expired:
            del self._wizards[wizard_id]
        if expired:
            logger.info('wizards_expired count=%s remaining=%s', len(expired), len(self._wizards))

    def get(self, wizard_id):
        if not wizard_id:
            return None
        with self._lock:
            now = self.clock()
            self._evict_idle(now)
            entry = self._wizards.get(wizard_id)
            if entry is None:
                return None
            self._wizards[wizard_id] = (entry[0], now)
            return entry[0]

    def add(self, wizard):
        wizard_id = uuid.uuid4().hex
        with self._lock:
            now = self.clock()
            self._evict_idle(now)
            self._wizards[wizard_id] = (wizard, now)
        return wizard_id

    def discard(self, wizard_id):
        with self._lock:
            self._wizards.pop(wizard_id, None)

    def __len__(self):
        with self._lock:
            return len(self._wizards)
