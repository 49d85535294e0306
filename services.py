import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from flask import current_app

from errors import ConfigurationError
from notifications import DisabledNotificationGateway, build_notification_gateway
from payments import DisabledPaymentGateway, build_payment_gateway
from persistence import build_persistence_gateway
from wizard import BookingWizard, WizardStore

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'test_ride'


def _utc_now():
    return datetime.now(timezone.utc)


@dataclass
class Services:
    config: Any
    persistence: Any
    payments: Any
    notifier: Any
    wizards: WizardStore = field(default_factory=WizardStore)
    clock: Callable[[], datetime] = _utc_now

    def new_wizard(self, shop):
        return BookingWizard(
            shop,
            self.persistence,
            self.payments,
            self.notifier,
            bucket=self.config.persistence.storage_bucket,
            currency=self.config.stripe.currency,
            country_code=self.config.sms.default_country_code,
            default_timezone=self.config.default_timezone,
            clock=self.clock,
        )


def build_services(config, persistence=None, payments=None, notifier=None, clock=None):
    """Construct every gateway once. Missing credentials disable only that gateway."""
    if persistence is None:
        persistence = build_persistence_gateway(config)

    if payments is None:
        try:
            payments = build_payment_gateway(config)
        except ConfigurationError as exc:
            logger.warning('gateway_disabled gateway=%s reason=%s', exc.gateway, exc.message)
            payments = DisabledPaymentGateway(exc.message)

    if notifier is None:
        try:
            notifier = build_notification_gateway(config)
        except ConfigurationError as exc:
            logger.warning('gateway_disabled gateway=%s reason=%s', exc.gateway, exc.message)
            notifier = DisabledNotificationGateway(exc.message)

    wizards = WizardStore(idle_seconds=config.session_timeout_minutes * 60)
    return Services(config, persistence, payments, notifier, wizards=wizards, clock=clock or _utc_now)


def get_services():
    return current_app.extensions[EXTENSION_KEY]
