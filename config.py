"""
Fulfillment configuration for the DomainDesk registrar core
Environment-driven settings for the registrar client, balance guard and push protocol
"""

import os
import logging
from decimal import Decimal
from typing import Optional

from models import RegistrarMode

logger = logging.getLogger(__name__)


def _decimal_env(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw))
    except Exception:
        logger.warning(f"⚠️ Invalid decimal for {name}: {raw!r} - using {default}")
        return Decimal(default)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}: {raw!r} - using {default}")
        return default


class FulfillmentConfig:
    """Configuration for fulfillment, registrar balance and push handling"""

    def __init__(self):
        # Registrar
        self.default_registrar_mode = RegistrarMode.parse(os.getenv('REGISTRAR_DEFAULT_MODE', 'test'))
        self.registrar_timeout = float(_int_env('REGISTRAR_TIMEOUT_SECONDS', 30))
        self.item_timeout = float(_int_env('FULFILLMENT_ITEM_TIMEOUT_SECONDS', 120))
        self.stale_item_seconds = _int_env('FULFILLMENT_STALE_ITEM_SECONDS', 900)

        # Balance guard
        self.safety_margin = _decimal_env('REGISTRAR_SAFETY_MARGIN', '5.00')
        self.refill_increment = _decimal_env('REGISTRAR_REFILL_INCREMENT', '25.00')
        self.min_refill = _decimal_env('REGISTRAR_MIN_REFILL', '25.00')
        self.refill_fee_percent = _decimal_env('REGISTRAR_REFILL_FEE_PERCENT', '0.05')
        self.auto_refill_enabled = os.getenv('REGISTRAR_AUTO_REFILL_ENABLED', 'true').lower() == 'true'
        self.low_balance_alert = _decimal_env('REGISTRAR_LOW_BALANCE_ALERT', '25.00')

        # Push protocol
        self.push_timeout_days = _int_env('PUSH_TIMEOUT_DAYS', 7)

        # Stripe
        self.stripe_secret_key = os.getenv('STRIPE_SECRET_KEY')
        self.stripe_webhook_secret = os.getenv('STRIPE_WEBHOOK_SECRET')
        self.stripe_webhook_tolerance = _int_env('STRIPE_WEBHOOK_TOLERANCE', 300)

        # Notifier
        self.notifier_url = os.getenv('NOTIFIER_URL')
        self.notifier_api_key = os.getenv('NOTIFIER_API_KEY')

        # Auto-renewal
        self.auto_renew_window_days = _int_env('AUTO_RENEW_WINDOW_DAYS', 30)
        self.default_renew_price = _decimal_env('DEFAULT_RENEW_PRICE', '15.00')
        self.renewal_batch_delay = float(os.getenv('RENEWAL_BATCH_DELAY', '2'))

        if self.refill_fee_percent >= 1:
            raise ValueError("REGISTRAR_REFILL_FEE_PERCENT must be below 1")
        if self.refill_increment <= 0:
            raise ValueError("REGISTRAR_REFILL_INCREMENT must be positive")
        if self.stale_item_seconds <= self.item_timeout:
            raise ValueError("FULFILLMENT_STALE_ITEM_SECONDS must exceed FULFILLMENT_ITEM_TIMEOUT_SECONDS")

        logger.debug(f"✅ Fulfillment config: mode={self.default_registrar_mode.value}, "
                     f"margin={self.safety_margin}, increment={self.refill_increment}, "
                     f"min_refill={self.min_refill}, auto_refill={self.auto_refill_enabled}")


_config: Optional[FulfillmentConfig] = None


def get_config() -> FulfillmentConfig:
    """Get or create the process-wide fulfillment configuration"""
    global _config
    if _config is None:
        _config = FulfillmentConfig()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next access re-reads the environment"""
    global _config
    _config = None
