from functools import wraps
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from flask import Blueprint, abort, current_app, jsonify, redirect, render_template, request, session, url_for

from config import to_boolean
from errors import GatewayError
from notifications import (
    build_ride_completed_message,
    build_ride_overdue_message,
    build_ride_reminder_message,
    dispatch_notification,
    format_phone_for_display,
)
from persistence import ADMIN_ROLES, RIDE_STATUSES, load_shop, parse_timestamp, utc_now_iso
from services import get_services
from wizard import format_clock_time, resolve_timezone

ROLE_OWNER = 'owner'
ROLE_ADMIN = 'admin'
ROLE_STAFF = 'staff'

RIDE_STATUS_TRANSITIONS = {
    'active': {'completed', 'cancelled'},
    'completed': set(),
    'cancelled': set(),
}

SETTINGS_FIELDS = (
    'name', 'business_name', 'description', 'email', 'phone', 'address', 'website_url', 'logo_url',
    'primary_color', 'secondary_color', 'default_test_duration_minutes', 'authorization_amount_cents',
    'require_id_photo', 'require_waiver', 'timezone',
)
INVENTORY_FIELDS = ('model', 'brand', 'description', 'image_url', 'is_available', 'maintenance_notes')

admin_bp = Blueprint('admin', __name__)


# ---------------------- PASSWORDS ----------------------

def hash_password(plain_password):
    iterations = 600000
    salt = secrets.token_hex(16)
    password_hash = hashlib.pbkdf2_hmac(
        'sha256',
        plain_password.encode('utf-8'),
        salt.encode('utf-8'),
        iterations,
    ).hex()
    return f"pbkdf2_sha256${iterations}${salt}${password_hash}"


def verify_password(plain_password, password_hash):
    if not (password_hash or '').startswith('pbkdf2_sha256$'):
        return False
    try:
        _, iterations_raw, salt, expected_hash = password_hash.split('$', 3)
        calculated_hash = hashlib.pbkdf2_hmac(
            'sha256',
            plain_password.encode('utf-8'),
            salt.encode('utf-8'),
            int(iterations_raw),
        ).hex()
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(calculated_hash, expected_hash)


# ---------------------- SESSIONS ----------------------

def _unauthenticated():
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'error': 'Authentication required'}), 401
    return redirect(url_for('admin.login_page', shop=request.view_args.get('slug', '')))


def admin_required(*allowed_roles):
    """Require a logged-in admin of the shop named by the ``slug`` URL argument."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not session.get('admin_id'):
                return _unauthenticated()

            if session.get('shop_slug') != kwargs.get('slug'):
                if request.path.startswith('/api/'):
                    return jsonify({'success': False, 'error': 'Forbidden'}), 403
                abort(403)

            if allowed_roles and session.get('role') not in allowed_roles:
                if request.path.startswith('/api/'):
                    return jsonify({'success': False, 'error': 'Forbidden'}), 403
                return redirect(url_for('admin.dashboard', slug=kwargs.get('slug')))

            return func(*args, **kwargs)

        return wrapper

    return decorator


def _shop_or_404(slug):
    shop = load_shop(get_services().persistence, slug, include_inactive=True)
    if shop is None:
        abort(404)
    return shop


def _rows(result):
    if not result.ok:
        raise GatewayError.from_err('persistence', result)
    return result.value


def _clean_fields(data, allowed):
    fields = {}
    for name in allowed:
        if name not in data:
            continue
        value = data[name]
        if name in {'require_id_photo', 'require_waiver', 'is_available'}:
            value = to_boolean(value, default=True)
        elif name in {'default_test_duration_minutes', 'authorization_amount_cents'}:
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValueError(f'{name} must be a whole number')
            if value <= 0:
                raise ValueError(f'{name} must be positive')
        elif isinstance(value, str):
            value = value.strip()
        fields[name] = value
    return fields


# ---------------------- AUTH ROUTES ----------------------

@admin_bp.route('/login', methods=['GET'])
def login_page():
    slug = request.args.get('shop', '')
    if session.get('admin_id'):
        return redirect(url_for('admin.dashboard', slug=session['shop_slug']))
    message = None
    if request.args.get('logged_out') == '1':
        message = 'You have been logged out successfully.'
    elif request.args.get('session_expired') == '1':
        message = 'Your session has expired due to inactivity. Please log in again.'
    return render_template('login.html', message=message, shop_slug=slug)


@admin_bp.route('/auth/login', methods=['POST'])
def login():
    email = (request.form.get('email') or '').strip().lower()
    password = request.form.get('password') or ''
    slug = (request.form.get('shop') or '').strip().lower()

    if not email or not password or not slug:
        return render_template('login.html', error='Invalid credentials', shop_slug=slug), 400

    services = get_services()
    shop = load_shop(services.persistence, slug)
    admin = None
    if shop is not None:
        found = _rows(services.persistence.query('shop_admins', {'email': email, 'shop_id': shop.id}, limit=1))
        admin = found[0] if found else None

    if not admin or not admin.get('is_active') or not verify_password(password, admin['password_hash']):
        current_app.logger.info('admin_login_failed shop=%s email=%s', slug, email)
        return render_template('login.html', error='Invalid credentials', shop_slug=slug), 401

    services.persistence.update('shop_admins', {'id': admin['id']}, {'last_login_at': utc_now_iso()})

    session.clear()
    session['admin_id'] = admin['id']
    session['shop_id'] = shop.id
    session['shop_slug'] = shop.slug
    session['role'] = admin['role'] if admin['role'] in ADMIN_ROLES else ROLE_STAFF
    session['name'] = admin['full_name']
    session['last_activity_at'] = datetime.now(timezone.utc).timestamp()
    current_app.logger.info('admin_login shop=%s admin_id=%s role=%s', shop.slug, admin['id'], session['role'])
    return redirect(url_for('admin.dashboard', slug=shop.slug))


@admin_bp.route('/logout', methods=['GET'])
def logout():
    slug = session.get('shop_slug', '')
    session.clear()
    return redirect(url_for('admin.login_page', logged_out='1', shop=slug))


# ---------------------- DASHBOARD ----------------------

def _drives_with_customers(shop, status=None, limit=None):
    persistence = get_services().persistence
    match = {'shop_id': shop.id}
    if status:
        match['status'] = status
    drives = _rows(persistence.query('test_drives', match, order_by='-created_at', limit=limit))
    customer_ids = sorted({drive['customer_id'] for drive in drives if drive.get('customer_id')})
    customers = {}
    if customer_ids:
        customers = {row['id']: row for row in _rows(persistence.query('customers', {'id': customer_ids}))}

    country_code = get_services().config.sms.default_country_code
    for drive in drives:
        customer = customers.get(drive['customer_id']) or {}
        drive['customer'] = {
            'id': customer.get('id'),
            'name': customer.get('name') or 'Unknown',
            'phone': format_phone_for_display(customer.get('phone'), country_code),
            'email': customer.get('email'),
            'waiver_url': customer.get('waiver_url'),
            'id_photo_url': customer.get('id_photo_url'),
        }
    return drives


@admin_bp.route('/admin/<slug>', methods=['GET'])
@admin_required()
def dashboard(slug):
    shop = _shop_or_404(slug)
    drives = _drives_with_customers(shop, limit=50)
    active = [drive for drive in drives if drive['status'] == 'active']
    tz = resolve_timezone(shop.timezone, get_services().config.default_timezone)
    for drive in drives:
        end_time = parse_timestamp(drive.get('end_time'))
        drive['return_time_text'] = format_clock_time(end_time, tz) if end_time else ''
    return render_template(
        'admin_dashboard.html',
        shop=shop,
        drives=drives,
        active_drives=active,
        user_name=session.get('name', 'User'),
        role=session.get('role'),
    )


@admin_bp.route('/api/admin/<slug>/test-drives', methods=['GET'])
@admin_required()
def list_test_drives(slug):
    shop = _shop_or_404(slug)
    status = (request.args.get('status') or '').strip().lower() or None
    if status and status not in RIDE_STATUSES:
        return jsonify({'success': False, 'error': 'Invalid status'}), 400
    drives = _drives_with_customers(shop, status=status)
    return jsonify({'success': True, 'testDrives': drives, 'count': len(drives)})


def is_valid_ride_status_transition(current_status, next_status):
    if current_status == next_status:
        return True
    return next_status in RIDE_STATUS_TRANSITIONS.get(current_status, set())


@admin_bp.route('/api/admin/<slug>/test-drives/<drive_id>', methods=['PUT'])
@admin_required()
def update_test_drive(slug, drive_id):
    shop = _shop_or_404(slug)
    services = get_services()
    data = request.get_json(silent=True) or {}

    found = _rows(services.persistence.query('test_drives', {'id': drive_id, 'shop_id': shop.id}, limit=1))
    if not found:
        return jsonify({'success': False, 'error': 'Test drive not found'}), 404
    drive = found[0]

    fields = {}
    if 'notes' in data:
        fields['notes'] = (data.get('notes') or '').strip()

    next_status = (str(data.get('status') or '')).strip().lower()
    if next_status:
        if next_status not in RIDE_STATUSES:
            return jsonify({'success': False, 'error': 'Invalid status'}), 400
        if not is_valid_ride_status_transition(drive['status'], next_status):
            return jsonify({'success': False, 'error': 'Invalid status transition.'}), 400
        if next_status != drive['status']:
            fields['status'] = next_status

    if not fields:
        return jsonify({'success': False, 'error': 'No fields to update'}), 400

    if fields.get('status') == 'cancelled' and drive.get('payment_status') == 'authorized':
        intent_id = drive.get('stripe_payment_intent_id')
        cancelled = services.payments.cancel_hold(intent_id) if intent_id else None
        if cancelled is not None and cancelled.ok:
            fields['payment_status'] = 'cancelled'
        else:
            current_app.logger.warning(
                'ride_hold_cancel_failed test_drive_id=%s payment_intent_id=%s error=%s',
                drive_id,
                intent_id,
                cancelled.message if cancelled is not None else 'missing payment intent',
            )

    updated = _rows(services.persistence.update('test_drives', {'id': drive_id}, fields))[0]
    current_app.logger.info(
        'ride_updated shop=%s test_drive_id=%s status=%s admin_id=%s',
        shop.slug,
        drive_id,
        updated['status'],
        session.get('admin_id'),
    )

    notification = None
    if fields.get('status') == 'completed':
        customer = _rows(services.persistence.query('customers', {'id': drive['customer_id']}, limit=1))
        if customer:
            notification = dispatch_notification(
                services.persistence,
                services.notifier,
                shop_id=shop.id,
                customer_id=drive['customer_id'],
                test_drive_id=drive_id,
                phone=customer[0]['phone'],
                body=build_ride_completed_message(shop),
                message_type='completion',
                country_code=services.config.sms.default_country_code,
            )

    return jsonify({
        'success': True,
        'message': 'Test drive updated successfully',
        'testDrive': updated,
        'smsStatus': notification['delivery_status'] if notification else None,
    })


@admin_bp.route('/api/admin/<slug>/customers', methods=['GET'])
@admin_required()
def list_customers(slug):
    shop = _shop_or_404(slug)
    customers = _rows(get_services().persistence.query('customers', {'shop_id': shop.id}, order_by='-created_at'))
    for customer in customers:
        customer.pop('signature_data', None)
    return jsonify({'success': True, 'customers': customers, 'count': len(customers)})


@admin_bp.route('/api/admin/<slug>/notifications', methods=['GET'])
@admin_required()
def list_notifications(slug):
    shop = _shop_or_404(slug)
    match = {'shop_id': shop.id}
    if request.args.get('test_drive_id'):
        match['test_drive_id'] = request.args['test_drive_id']
    notifications = _rows(get_services().persistence.query('notifications', match, order_by='-created_at'))
    return jsonify({'success': True, 'notifications': notifications, 'count': len(notifications)})


# ---------------------- SETTINGS & INVENTORY ----------------------

@admin_bp.route('/api/admin/<slug>/settings', methods=['GET'])
@admin_required(ROLE_OWNER, ROLE_ADMIN)
def get_settings(slug):
    rows = _rows(get_services().persistence.query('shops', {'slug': slug}, limit=1))
    if not rows:
        abort(404)
    return jsonify({'success': True, 'settings': {name: rows[0].get(name) for name in SETTINGS_FIELDS}})


@admin_bp.route('/api/admin/<slug>/settings', methods=['PUT'])
@admin_required(ROLE_OWNER, ROLE_ADMIN)
def update_settings(slug):
    shop = _shop_or_404(slug)
    try:
        fields = _clean_fields(request.get_json(silent=True) or {}, SETTINGS_FIELDS)
    except ValueError as exc:
        return jsonify({'success': False, 'error': str(exc)}), 400
    if not fields:
        return jsonify({'success': False, 'error': 'No fields to update'}), 400

    updated = _rows(get_services().persistence.update('shops', {'id': shop.id}, fields))[0]
    current_app.logger.info('shop_settings_updated shop=%s fields=%s', shop.slug, ','.join(sorted(fields)))
    return jsonify({'success': True, 'settings': {name: updated.get(name) for name in SETTINGS_FIELDS}})


@admin_bp.route('/api/admin/<slug>/inventory', methods=['GET'])
@admin_required()
def list_inventory(slug):
    shop = _shop_or_404(slug)
    bikes = _rows(get_services().persistence.query('bike_inventory', {'shop_id': shop.id}, order_by='model'))
    return jsonify({'success': True, 'bikes': bikes, 'count': len(bikes)})


@admin_bp.route('/api/admin/<slug>/inventory', methods=['POST'])
@admin_required()
def create_bike(slug):
    shop = _shop_or_404(slug)
    try:
        fields = _clean_fields(request.get_json(silent=True) or {}, INVENTORY_FIELDS)
    except ValueError as exc:
        return jsonify({'success': False, 'error': str(exc)}), 400
    if not fields.get('model') or not fields.get('brand'):
        return jsonify({'success': False, 'error': 'Model and brand are required'}), 400

    fields['shop_id'] = shop.id
    fields.setdefault('is_available', True)
    bike = _rows(get_services().persistence.insert_or_update('bike_inventory', fields))
    return jsonify({'success': True, 'bike': bike}), 201


@admin_bp.route('/api/admin/<slug>/inventory/<bike_id>', methods=['PUT'])
@admin_required()
def update_bike(slug, bike_id):
    shop = _shop_or_404(slug)
    try:
        fields = _clean_fields(request.get_json(silent=True) or {}, INVENTORY_FIELDS)
    except ValueError as exc:
        return jsonify({'success': False, 'error': str(exc)}), 400
    if not fields:
        return jsonify({'success': False, 'error': 'No fields to update'}), 400

    updated = _rows(get_services().persistence.update('bike_inventory', {'id': bike_id, 'shop_id': shop.id}, fields))
    if not updated:
        return jsonify({'success': False, 'error': 'Bike not found'}), 404
    return jsonify({'success': True, 'bike': updated[0]})


# ---------------------- REMINDERS ----------------------

@admin_bp.route('/api/admin/<slug>/reminders/process', methods=['POST'])
@admin_required()
def process_due_reminders(slug):
    shop = _shop_or_404(slug)
    services = get_services()
    now = services.clock()
    lead = timedelta(minutes=services.config.reminder_lead_minutes)
    tz = resolve_timezone(shop.timezone, services.config.default_timezone)

    drives = _drives_with_customers(shop, status='active')
    drive_ids = [drive['id'] for drive in drives]
    already_sent = set()
    if drive_ids:
        for row in _rows(services.persistence.query(
            'notifications',
            {'test_drive_id': drive_ids, 'message_type': ['reminder', 'overdue']},
        )):
            already_sent.add((row['test_drive_id'], row['message_type']))

    processed = []
    for drive in drives:
        end_time = parse_timestamp(drive.get('end_time'))
        if end_time is None:
            continue
        return_time_text = format_clock_time(end_time, tz)
        if end_time <= now:
            message_type = 'overdue'
            body = build_ride_overdue_message(shop, return_time_text)
        elif end_time <= now + lead:
            message_type = 'reminder'
            body = build_ride_reminder_message(shop, return_time_text)
        else:
            continue
        if (drive['id'], message_type) in already_sent:
            continue

        customer = _rows(services.persistence.query('customers', {'id': drive['customer_id']}, limit=1))
        if not customer:
            continue
        notification = dispatch_notification(
            services.persistence,
            services.notifier,
            shop_id=shop.id,
            customer_id=drive['customer_id'],
            test_drive_id=drive['id'],
            phone=customer[0]['phone'],
            body=body,
            message_type=message_type,
            country_code=services.config.sms.default_country_code,
        )
        processed.append({
            'test_drive_id': drive['id'],
            'message_type': message_type,
            'delivery_status': notification['delivery_status'],
        })

    current_app.logger.info('reminders_processed shop=%s count=%s', shop.slug, len(processed))
    return jsonify({'success': True, 'processed': processed, 'count': len(processed)})
