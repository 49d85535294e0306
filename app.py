import logging
from datetime import datetime, timezone

from flask import (
    Blueprint,
    Flask,
    abort,
    current_app,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    session,
    url_for,
)
from flask_cors import CORS

from admin import admin_bp
from config import load_config, to_boolean
from errors import GatewayError, InvalidTransition, RideStartInProgress, ValidationError
from notifications import PROVIDER_NOT_CONFIGURED
from payments import INVALID_SIGNATURE, PAYMENT_NOT_CONFIGURED, handle_webhook_event
from persistence import load_shop
from services import EXTENSION_KEY, build_services, get_services
from wizard import list_available_bikes

NOT_CONFIGURED_KINDS = {PAYMENT_NOT_CONFIGURED, PROVIDER_NOT_CONFIGURED}
PUBLIC_PREFIXES = ('/api/shops/', '/shop/', '/webhooks/', '/files/')
PUBLIC_ENDPOINTS = {'admin.login_page', 'admin.login', 'admin.logout', 'public.health_check', 'public.home', 'static'}

shop_bp = Blueprint('shop', __name__)
public_bp = Blueprint('public', __name__)


# ---------------------- SESSIONS ----------------------

def _current_timestamp():
    return datetime.now(timezone.utc).timestamp()


def _is_inactivity_timeout(last_activity_ts, current_ts=None, timeout_seconds=None):
    if last_activity_ts is None:
        return False

    now_ts = current_ts if current_ts is not None else _current_timestamp()
    timeout_window = (
        timeout_seconds if timeout_seconds is not None else current_app.config['SESSION_TIMEOUT_MINUTES'] * 60
    )
    return (now_ts - float(last_activity_ts)) > timeout_window


def _clear_session_and_cookie(response):
    session.clear()
    response.delete_cookie(
        current_app.config.get('SESSION_COOKIE_NAME', 'session'),
        path=current_app.config.get('SESSION_COOKIE_PATH', '/'),
        domain=current_app.config.get('SESSION_COOKIE_DOMAIN'),
        secure=current_app.config.get('SESSION_COOKIE_SECURE', False),
        httponly=current_app.config.get('SESSION_COOKIE_HTTPONLY', True),
        samesite=current_app.config.get('SESSION_COOKIE_SAMESITE', 'Lax'),
    )
    return response


def _session_expired_response():
    message = 'Your session has expired due to inactivity. Please log in again.'
    if request.path.startswith('/api/'):
        response = jsonify({'success': False, 'error': message})
        response.status_code = 401
    else:
        response = redirect(url_for('admin.login_page', session_expired='1', shop=session.get('shop_slug', '')))
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    response.headers['Expires'] = '0'
    return _clear_session_and_cookie(response)


def enforce_session_timeout():
    if request.endpoint in PUBLIC_ENDPOINTS or request.path.startswith(PUBLIC_PREFIXES):
        return None

    if not session.get('admin_id'):
        return None

    if _is_inactivity_timeout(session.get('last_activity_at')):
        return _session_expired_response()

    session['last_activity_at'] = _current_timestamp()
    g.disable_authenticated_cache = True
    return None


def apply_no_cache_headers(response):
    if getattr(g, 'disable_authenticated_cache', False):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['Pragma'] = 'no-cache'
        response.headers['Expires'] = '0'
    return response


# ---------------------- ERRORS ----------------------

def handle_validation_error(exc):
    return jsonify({'success': False, 'error': exc.message, 'errors': exc.errors}), 400


def handle_gateway_error(exc):
    status = 503 if exc.kind in NOT_CONFIGURED_KINDS else 502
    current_app.logger.warning(
        'gateway_error gateway=%s errorCode=%s path=%s message=%s', exc.gateway, exc.kind, request.path, exc.message
    )
    return jsonify({'success': False, 'errorCode': exc.kind, 'message': exc.message}), status


def handle_conflict(exc):
    return jsonify({'success': False, 'error': str(exc)}), 409


def handle_not_found(exc):
    if request.path.startswith('/api/'):
        return jsonify({'success': False, 'error': 'Not found'}), 404
    return exc


# ---------------------- CUSTOMER WIZARD ----------------------

def _shop_or_404(slug):
    shop = load_shop(get_services().persistence, slug)
    if shop is None:
        abort(404)
    return shop


def _wizard_for(shop, create=True):
    services = get_services()
    wizard_ids = dict(session.get('wizards') or {})
    wizard_id = wizard_ids.get(shop.slug)
    wizard = services.wizards.get(wizard_id)
    if wizard is not None and wizard.shop.id == shop.id:
        return wizard
    if wizard is not None:
        services.wizards.discard(wizard_id)
    if not create:
        return None

    wizard = services.new_wizard(shop)
    wizard_ids[shop.slug] = services.wizards.add(wizard)
    session['wizards'] = wizard_ids
    return wizard


def _wizard_response(wizard, status=200, **extra):
    return jsonify({'success': True, 'wizard': wizard.snapshot(), **extra}), status


@shop_bp.route('/shop/<slug>', methods=['GET'])
def shop_page(slug):
    shop = _shop_or_404(slug)
    return render_template(
        'shop.html',
        shop=shop,
        stripe_publishable_key=get_services().config.stripe.publishable_key,
    )


@shop_bp.route('/api/shops/<slug>', methods=['GET'])
def get_shop(slug):
    shop = _shop_or_404(slug)
    bikes = list_available_bikes(get_services().persistence, shop.id)
    return jsonify({'success': True, 'shop': shop.public_payload(), 'bikes': bikes})


@shop_bp.route('/api/shops/<slug>/wizard', methods=['GET'])
def get_wizard(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    if wizard.state.step == 'bike_selection':
        return _wizard_response(wizard, bikes=wizard.available_bikes())
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/contact', methods=['POST'])
def submit_contact(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    data = request.get_json(silent=True) or {}
    wizard.submit_contact(data.get('name'), data.get('phone'), data.get('email'))
    return _wizard_response(wizard, bikes=wizard.available_bikes())


@shop_bp.route('/api/shops/<slug>/wizard/bike', methods=['POST'])
def select_bike(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    data = request.get_json(silent=True) or {}
    wizard.select_bike(data.get('bike_id'))
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/id-photo', methods=['POST'])
def upload_id_photo(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    upload = request.files.get('file')
    if upload is None:
        raise ValidationError({'id_photo': 'Please choose a photo of your ID'})
    url = wizard.upload_id_photo(upload.read(), upload.mimetype)
    return _wizard_response(wizard, url=url)


@shop_bp.route('/api/shops/<slug>/wizard/waiver', methods=['GET'])
def open_waiver(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    terms = wizard.open_waiver()
    return _wizard_response(wizard, waiver={'businessName': wizard.shop.display_name, 'terms': terms})


@shop_bp.route('/api/shops/<slug>/wizard/waiver', methods=['POST'])
def acknowledge_waiver(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    data = request.get_json(silent=True) or {}
    wizard.acknowledge_waiver(to_boolean(data.get('accepted'), default=True))
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/signature', methods=['POST'])
def set_signature(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    data = request.get_json(silent=True) or {}
    wizard.set_signature(data.get('signature'))
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/signature', methods=['DELETE'])
def clear_signature(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    wizard.clear_signature()
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/verification', methods=['POST'])
def submit_verification(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    wizard.submit_verification()
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/payment/hold', methods=['POST'])
def request_hold(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    hold = wizard.request_hold()
    return _wizard_response(wizard, clientSecret=hold.client_secret, paymentIntentId=hold.intent_id)


@shop_bp.route('/api/shops/<slug>/wizard/payment/confirm', methods=['POST'])
def confirm_payment(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    wizard.confirm_payment()
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/start', methods=['POST'])
def start_ride(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    wizard.start_ride()
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/back', methods=['POST'])
def go_back(slug):
    wizard = _wizard_for(_shop_or_404(slug))
    wizard.back()
    return _wizard_response(wizard)


@shop_bp.route('/api/shops/<slug>/wizard/reset', methods=['POST'])
def reset_wizard(slug):
    shop = _shop_or_404(slug)
    wizard_ids = dict(session.get('wizards') or {})
    get_services().wizards.discard(wizard_ids.pop(shop.slug, None))
    session['wizards'] = wizard_ids
    wizard = _wizard_for(shop)
    return _wizard_response(wizard)


# ---------------------- WEBHOOKS & FILES ----------------------

@public_bp.route('/webhooks/stripe', methods=['POST'])
def stripe_webhook():
    services = get_services()
    result = services.payments.construct_event(request.get_data(), request.headers.get('Stripe-Signature', ''))
    if not result.ok:
        if result.kind == INVALID_SIGNATURE:
            return jsonify({'error': 'Invalid signature'}), 400
        current_app.logger.error('stripe_webhook_rejected errorCode=%s message=%s', result.kind, result.message)
        return jsonify({'error': 'Webhook secret not configured'}), 500

    summary = handle_webhook_event(result.value, services.payments, services.persistence)
    return jsonify({'received': True, 'action': summary['action']})


@public_bp.route('/files/<bucket>/<path:path>', methods=['GET'])
def serve_file(bucket, path):
    persistence = get_services().persistence
    if not hasattr(persistence, 'resolve_file'):
        abort(404)
    try:
        bucket_root, relative_path = persistence.resolve_file(bucket, path)
    except ValueError:
        abort(404)
    return send_from_directory(bucket_root, relative_path)


@public_bp.route('/api/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    services = get_services()
    return jsonify({
        'success': True,
        'message': 'API is running',
        'timestamp': datetime.now().isoformat(),
        'gateways': {
            'persistence': getattr(services.persistence, 'backend_name', 'custom'),
            'payments': services.payments.configured,
            'sms': services.notifier.provider_name,
        },
    })


@public_bp.route('/', methods=['GET'])
def home():
    """Redirect visitors to the default shop's booking page."""
    return redirect(url_for('shop.shop_page', slug=get_services().config.default_shop_slug))


# ---------------------- APP FACTORY ----------------------

def configure_logging(level):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )


def create_app(config=None, persistence=None, payments=None, notifications=None, clock=None):
    config = config or load_config()
    configure_logging(config.log_level)

    app = Flask(__name__)
    CORS(app)
    app.secret_key = config.secret_key
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE='Lax',
        SESSION_COOKIE_SECURE=config.session_cookie_secure,
        SESSION_TIMEOUT_MINUTES=config.session_timeout_minutes,
        MAX_CONTENT_LENGTH=6 * 1024 * 1024,
    )

    services = build_services(config, persistence, payments, notifications, clock)
    if hasattr(services.persistence, 'init_schema'):
        services.persistence.init_schema()
    app.extensions[EXTENSION_KEY] = services

    app.before_request(enforce_session_timeout)
    app.after_request(apply_no_cache_headers)
    app.register_error_handler(ValidationError, handle_validation_error)
    app.register_error_handler(GatewayError, handle_gateway_error)
    app.register_error_handler(InvalidTransition, handle_conflict)
    app.register_error_handler(RideStartInProgress, handle_conflict)
    app.register_error_handler(404, handle_not_found)

    app.register_blueprint(public_bp)
    app.register_blueprint(shop_bp)
    app.register_blueprint(admin_bp)

    app.logger.info(
        'app_configured persistence=%s payments_configured=%s sms_provider=%s',
        getattr(services.persistence, 'backend_name', 'custom'),
        services.payments.configured,
        services.notifier.provider_name,
    )
    return app


if __name__ == '__main__':
    app = create_app()

    print("\n" + "="*50)
    print(" Digital Test Ride Server")
    print("="*50)
    print("Server running on: http://localhost:5000")
    print("Health check: http://localhost:5000/api/health")
    print("="*50 + "\n")

    app.run(debug=True, host='0.0.0.0', port=5000)
