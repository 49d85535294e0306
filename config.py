from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv


# ---------------------- DATA CLASSES ----------------------

@dataclass
class PersistenceConfig:
    backend: str = 'sqlite'
    database_path: str = 'test_rides.db'
    upload_dir: str = 'uploads'
    storage_bucket: str = 'customer-files'
    supabase_url: str = ''
    supabase_service_key: str = ''


@dataclass
class StripeConfig:
    secret_key: str = ''
    publishable_key: str = ''
    webhook_secret: str = ''
    currency: str = 'usd'


@dataclass
class SmsConfig:
    provider: str = 'textbelt'
    twilio_account_sid: str = ''
    twilio_auth_token: str = ''
    twilio_from_number: str = ''
    textbelt_api_key: str = ''
    default_country_code: str = '1'


@dataclass
class AppConfig:
    secret_key: str = 'dev-only-secret-change-me'
    session_cookie_secure: bool = False
    session_timeout_minutes: int = 30
    default_timezone: str = 'America/Los_Angeles'
    default_shop_slug: str = 'sd-electric-bike'
    reminder_lead_minutes: int = 5
    log_level: str = 'INFO'
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    stripe: StripeConfig = field(default_factory=StripeConfig)
    sms: SmsConfig = field(default_factory=SmsConfig)


# ---------------------- LOADING ----------------------

def to_boolean(value, default=False):
    """Read a flag from env vars, form fields or JSON, where "false" and "0" arrive as strings."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


def _get(env, name, default=''):
    return (env.get(name) or default).strip()


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    if env is None:
        load_dotenv()
        env = os.environ

    persistence_cfg = PersistenceConfig(
        backend=_get(env, 'PERSISTENCE_BACKEND', 'sqlite').lower(),
        database_path=_get(env, 'DATABASE_PATH', 'test_rides.db'),
        upload_dir=_get(env, 'UPLOAD_DIR', 'uploads'),
        storage_bucket=_get(env, 'STORAGE_BUCKET', 'customer-files'),
        supabase_url=_get(env, 'SUPABASE_URL'),
        supabase_service_key=_get(env, 'SUPABASE_SERVICE_ROLE_KEY'),
    )

    stripe_cfg = StripeConfig(
        secret_key=_get(env, 'STRIPE_SECRET_KEY'),
        publishable_key=_get(env, 'STRIPE_PUBLISHABLE_KEY'),
        webhook_secret=_get(env, 'STRIPE_WEBHOOK_SECRET'),
        currency=_get(env, 'STRIPE_CURRENCY', 'usd').lower(),
    )

    sms_cfg = SmsConfig(
        provider=_get(env, 'SMS_PROVIDER', 'textbelt').lower(),
        twilio_account_sid=_get(env, 'TWILIO_ACCOUNT_SID'),
        twilio_auth_token=_get(env, 'TWILIO_AUTH_TOKEN'),
        twilio_from_number=_get(env, 'TWILIO_FROM_NUMBER'),
        textbelt_api_key=_get(env, 'TEXTBELT_API_KEY'),
        default_country_code=_get(env, 'DEFAULT_COUNTRY_CODE', '1').lstrip('+'),
    )

    return AppConfig(
        secret_key=_get(env, 'SECRET_KEY', 'dev-only-secret-change-me'),
        session_cookie_secure=to_boolean(env.get('SESSION_COOKIE_SECURE')),
        session_timeout_minutes=int(_get(env, 'SESSION_TIMEOUT_MINUTES', '30')),
        default_timezone=_get(env, 'DEFAULT_TIMEZONE', 'America/Los_Angeles'),
        default_shop_slug=_get(env, 'DEFAULT_SHOP_SLUG', 'sd-electric-bike'),
        reminder_lead_minutes=int(_get(env, 'REMINDER_LEAD_MINUTES', '5')),
        log_level=_get(env, 'LOG_LEVEL', 'INFO').upper(),
        persistence=persistence_cfg,
        stripe=stripe_cfg,
        sms=sms_cfg,
    )
