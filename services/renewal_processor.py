"""
Domain Auto-Renewal Processor
Charges saved cards for auto-renew domains nearing expiry; fulfillment follows the normal payment webhook
"""

import asyncio
import logging
import secrets
from datetime import datetime
from typing import Dict, Optional, Any

from config import FulfillmentConfig, get_config
from database import (
    get_auto_renew_candidates, get_tld_renew_price, get_latest_contact_snapshot,
    create_order_with_items, set_order_payment_reference, mark_order_payment_failed,
    disable_domain_auto_renew, log_activity
)
from models import ItemType, RegistrarMode, RegistrantContact, ContactValidationError, format_domain
from admin_alerts import send_error_alert, send_warning_alert
from services.notifier import NotifierService, get_notifier
from services.stripe_payments import StripeService, get_stripe_service

logger = logging.getLogger(__name__)


class DomainRenewalProcessor:
    """
    Daily auto-renewal run.

    Each due domain gets its own single-item renew order, charged off-session.
    The registrar renewal itself happens when the payment_intent.succeeded
    webhook reaches the fulfillment orchestrator.
    """

    def __init__(self, stripe: Optional[StripeService] = None, notifier: Optional[NotifierService] = None,
                 config: Optional[FulfillmentConfig] = None):
        self.stripe = stripe or get_stripe_service()
        self.notifier = notifier or get_notifier()
        self.config = config or get_config()
        self.stats = self._empty_stats()

        logger.info(f"🔄 DomainRenewalProcessor initialized: window={self.config.auto_renew_window_days}d")

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            'processed': 0,
            'charged': 0,
            'declined': 0,
            'failed': 0,
            'no_payment_method': 0,
            'errors': 0,
        }

    async def process_auto_renewals(self) -> Dict[str, Any]:
        """Main entry point for the daily renewal job"""
        self.stats = self._empty_stats()

        if not self.stripe.is_available():
            logger.warning("⚠️ RENEWAL: Stripe not configured - auto-renewal skipped")
            return {'status': 'disabled', 'reason': 'Stripe not configured', 'stats': self.stats}

        try:
            candidates = await get_auto_renew_candidates(self.config.auto_renew_window_days)
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ RENEWAL: Could not load renewal candidates: {e}")
            return {'status': 'error', 'error': str(e), 'stats': self.stats}

        if not candidates:
            logger.info("✅ RENEWAL: No domains due for auto-renewal")
            return {'status': 'success', 'message': 'No renewals needed', 'stats': self.stats}

        logger.info(f"📊 RENEWAL: {len(candidates)} domain(s) due for auto-renewal")
        results = []
        for index, domain in enumerate(candidates):
            results.append(await self.process_domain_renewal(domain))
            if index < len(candidates) - 1 and self.config.renewal_batch_delay > 0:
                await asyncio.sleep(self.config.renewal_batch_delay)

        logger.info(f"✅ RENEWAL: Run finished - {self.stats['charged']}/{self.stats['processed']} charged, "
                    f"{self.stats['declined']} declined, {self.stats['no_payment_method']} without card")
        if self.stats['errors']:
            await send_warning_alert(
                "RenewalProcessor",
                f"Auto-renewal run finished with {self.stats['errors']} error(s)",
                "payment_processing",
                dict(self.stats)
            )
        return {'status': 'success', 'stats': dict(self.stats), 'results': results}

    async def process_domain_renewal(self, domain: Dict) -> Dict[str, Any]:
        """Create and charge the renewal order for one domain row (joined with its owner)"""
        self.stats['processed'] += 1
        full_name = format_domain(domain['domain_name'], domain['tld'])
        recipient = domain.get('email')

        try:
            if not domain.get('stripe_customer_id') or not domain.get('payment_method_id'):
                self.stats['no_payment_method'] += 1
                logger.info(f"💳 RENEWAL: {full_name} has no saved payment method")
                await self.notifier.send_renewal_failed(
                    domain['id'], full_name, recipient,
                    'No saved payment method for automatic renewal', domain.get('expiration_date')
                )
                return {'domain': full_name, 'status': 'no_payment_method'}

            try:
                contact = await self._renewal_contact(domain)
                mode = RegistrarMode.parse(domain.get('registrar_mode'))
            except ValueError as e:
                self.stats['failed'] += 1
                logger.warning(f"⚠️ RENEWAL: Cannot renew {full_name}: {e}")
                await self.notifier.send_renewal_failed(domain['id'], full_name, recipient, str(e),
                                                        domain.get('expiration_date'))
                return {'domain': full_name, 'status': 'invalid_contact', 'error': str(e)}

            price = await get_tld_renew_price(domain['tld']) or self.config.default_renew_price
            order = await create_order_with_items(
                user_id=domain['user_id'],
                order_number=self._order_number(),
                items=[{
                    'item_type': ItemType.RENEW.value,
                    'domain_name': domain['domain_name'],
                    'tld': domain['tld'],
                    'years': 1,
                    'unit_price': price,
                    'total_price': price,
                }],
                registrant_contact=contact.to_dict(),
                registrar_mode=mode.value,
                auto_renew=True,
                notes=f"Automatic renewal of {full_name}"
            )

            charge = await self.stripe.charge_off_session(
                domain['stripe_customer_id'], domain['payment_method_id'], price,
                metadata={
                    'order_id': order['id'],
                    'order_type': 'auto_renew',
                    'user_id': domain['user_id'],
                    'domain': full_name,
                },
                description=f"Automatic renewal: {full_name} (1 year)",
                idempotency_key=f"auto-renew-{order['id']}"
            )

            if charge.get('payment_intent_id'):
                await set_order_payment_reference(order['id'], charge['payment_intent_id'])

            if charge['success']:
                self.stats['charged'] += 1
                logger.info(f"✅ RENEWAL: Charged ${price} for {full_name} (order {order['id']})")
                await log_activity(domain['user_id'], 'auto_renew_charged', 'domain', domain['id'], {
                    'order_id': order['id'],
                    'amount': str(price),
                    'payment_intent_id': charge.get('payment_intent_id'),
                })
                return {'domain': full_name, 'status': 'charged', 'order_id': order['id']}

            return await self._handle_failed_charge(domain, order, charge, full_name)

        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ RENEWAL: Error renewing {full_name}: {e}")
            await send_error_alert(
                "RenewalProcessor",
                f"Auto-renewal of {full_name} raised an error",
                "payment_processing",
                {'domain_id': domain.get('id'), 'error': str(e)}
            )
            return {'domain': full_name, 'status': 'error', 'error': str(e)}

    async def _handle_failed_charge(self, domain: Dict, order: Dict, charge: Dict[str, Any],
                                    full_name: str) -> Dict[str, Any]:
        await mark_order_payment_failed(order['id'])
        error = charge.get('error') or 'Payment failed'

        if charge.get('card_declined'):
            self.stats['declined'] += 1
            await disable_domain_auto_renew(domain['id'])
            logger.warning(f"💳 RENEWAL: Card declined for {full_name} - auto-renew disabled")
        else:
            self.stats['failed'] += 1
            logger.warning(f"💳 RENEWAL: Charge for {full_name} not completed: {error}")

        await log_activity(domain['user_id'], 'auto_renew_failed', 'domain', domain['id'], {
            'order_id': order['id'],
            'error': error,
            'card_declined': bool(charge.get('card_declined')),
            'requires_action': bool(charge.get('requires_action')),
        })
        await self.notifier.send_renewal_failed(order['id'], full_name, domain.get('email'), error,
                                                domain.get('expiration_date'))
        return {
            'domain': full_name,
            'status': 'declined' if charge.get('card_declined') else 'failed',
            'order_id': order['id'],
            'error': error,
        }

    async def _renewal_contact(self, domain: Dict) -> RegistrantContact:
        """Latest checkout contact for the owner, falling back to the account profile"""
        snapshot = await get_latest_contact_snapshot(domain['user_id'])
        if snapshot:
            try:
                return RegistrantContact.from_snapshot(snapshot)
            except ContactValidationError as e:
                logger.info(f"📇 RENEWAL: Stored contact unusable ({e}) - trying account profile")
        return RegistrantContact.from_snapshot({
            'name': domain.get('full_name'),
            'email': domain.get('email'),
            'phone': domain.get('phone'),
        })

    @staticmethod
    def _order_number() -> str:
        return f"RN-{datetime.utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)


_renewal_processor: Optional[DomainRenewalProcessor] = None

def get_renewal_processor() -> DomainRenewalProcessor:
    global _renewal_processor
    if _renewal_processor is None:
        _renewal_processor = DomainRenewalProcessor()
    return _renewal_processor

async def process_auto_renewals() -> Dict[str, Any]:
    return await get_renewal_processor().process_auto_renewals()
