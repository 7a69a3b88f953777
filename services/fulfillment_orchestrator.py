"""
Fulfillment Orchestrator - turns confirmed payments into registrar state changes

One payment event → one order → one registrar operation per line item, each
routed through the balance guard and isolated from its siblings.

Architecture:
- Atomic per-item claim: pending → processing → completed/failed
- Replayed payment events find nothing to claim and change nothing
- Aggregate order status recomputed under the order row lock from item statuses
- Notification ledger prevents duplicate customer emails
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable

from config import FulfillmentConfig, get_config
from database import (
    get_order_by_id, get_order_by_payment_reference, get_order_items, get_order_item,
    mark_order_paid, mark_order_payment_failed, flag_order_for_review, finalize_order_status,
    record_order_refund, claim_order_item, record_item_success, record_item_failure, fail_stale_items,
    get_domain_by_name, get_user_by_id, log_activity
)
from models import (
    ItemType, ItemStatus, OrderStatus, PaymentStatus, DomainStatus, RegistrarMode,
    RegistrantContact, ExtendedAttributes, format_domain
)
from admin_alerts import send_critical_alert, send_error_alert
from services.balance_guard import BalanceGuard, OperationDescriptor, get_balance_guard
from services.enom import EnomService, get_registrar, parse_registrar_date
from services.notifier import NotifierService, get_notifier
from services.stripe_payments import StripeService, get_stripe_service

logger = logging.getLogger(__name__)

# ====================================================================
# ERRORS
# ====================================================================

class OrderIntegrityError(Exception):
    """A paid order cannot be fulfilled because its own data is invalid"""

    def __init__(self, message: str, order_id: Optional[int] = None):
        super().__init__(message)
        self.order_id = order_id

class OrderNotFoundError(Exception):
    """Raised when an order or order item does not exist"""
    pass

class ItemRetryError(Exception):
    """Raised when an item is not in a retryable state"""
    pass

class RefundError(Exception):
    """Raised when an order cannot be refunded"""
    pass

class FulfillmentItemError(Exception):
    """Per-item precondition failure; recorded on the item, never raised to callers"""
    pass


def compute_order_status(item_statuses: List[str]) -> str:
    """
    Derive the aggregate order status from its items.

    Any item still pending or processing keeps the order processing.
    """
    if any(s in (ItemStatus.PENDING.value, ItemStatus.PROCESSING.value) for s in item_statuses):
        return OrderStatus.PROCESSING.value
    completed = sum(1 for s in item_statuses if s == ItemStatus.COMPLETED.value)
    if completed == len(item_statuses):
        return OrderStatus.COMPLETED.value
    if completed == 0:
        return OrderStatus.FAILED.value
    return OrderStatus.PARTIAL.value


class FulfillmentOrchestrator:
    """
    Single entry point for payment-triggered fulfillment.

    Every item is processed independently: a failure is recorded on that
    item and never aborts the rest of the order. Only a missing or invalid
    registrant contact fails the whole order, before any item is touched.
    """

    def __init__(
        self,
        guard: Optional[BalanceGuard] = None,
        notifier: Optional[NotifierService] = None,
        stripe: Optional[StripeService] = None,
        registrar_factory: Callable[[RegistrarMode], EnomService] = get_registrar,
        config: Optional[FulfillmentConfig] = None
    ):
        self.guard = guard or get_balance_guard()
        self.notifier = notifier or get_notifier()
        self.stripe = stripe or get_stripe_service()
        self.registrar_factory = registrar_factory
        self.config = config or get_config()

    # ================================================================
    # PAYMENT EVENTS
    # ================================================================

    async def process_payment_success(
        self,
        payment_reference: str,
        charge_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Fulfill the order paid by payment_reference.

        Safe to call any number of times for the same event: items already
        claimed by an earlier delivery are reported as skipped.

        Raises:
            OrderIntegrityError: the order's contact snapshot or registrar mode is unusable
        """
        logger.info(f"💳 ORCHESTRATOR: Payment succeeded for {payment_reference}")

        order = await self._resolve_order(payment_reference, metadata)
        if not order:
            logger.error(f"❌ ORCHESTRATOR: No order for payment {payment_reference}")
            await send_critical_alert(
                "FulfillmentOrchestrator",
                f"Payment {payment_reference} succeeded but no matching order exists",
                "payment_processing",
                {'payment_reference': payment_reference, 'charge_id': charge_id, 'metadata': metadata or {}}
            )
            return {'status': 'order_not_found', 'payment_reference': payment_reference}

        order_id = order['id']
        await mark_order_paid(order_id, charge_id)

        if order.get('status') == OrderStatus.REFUNDED.value:
            logger.warning(f"🚫 ORCHESTRATOR: Order {order_id} already refunded - nothing to fulfill")
            return {'status': OrderStatus.REFUNDED.value, 'order_id': order_id, 'items': []}

        contact, attributes, mode = await self._load_fulfillment_inputs(order)

        items = await get_order_items(order_id)
        outcomes: List[Dict[str, Any]] = []
        for item in items:
            claimed = await claim_order_item(item['id'])
            if not claimed:
                logger.info(f"🚫 ORCHESTRATOR: Item {item['id']} ({item['status']}) already handled - skipping")
                outcomes.append({
                    'item_id': item['id'],
                    'domain': format_domain(item['domain_name'], item['tld']),
                    'item_type': item['item_type'],
                    'status': 'skipped',
                    'current_status': item['status'],
                })
                continue
            outcomes.append(await self._process_item(order, claimed, contact, attributes, mode))

        processed = [o for o in outcomes if o['status'] != 'skipped']
        order_status = await self._finalize_order(order_id)

        if processed:
            await log_activity(order['user_id'], 'payment_processed', 'order', order_id, {
                'payment_reference': payment_reference,
                'order_status': order_status,
                'items': processed,
            })
            await self._send_notifications(order, items, processed, order_status, contact)
        else:
            logger.info(f"🔁 ORCHESTRATOR: Replay for order {order_id} - no items claimed")

        logger.info(f"✅ ORCHESTRATOR: Order {order_id} → {order_status} "
                    f"({len(processed)} processed, {len(outcomes) - len(processed)} skipped)")
        return {'status': order_status, 'order_id': order_id, 'items': outcomes}

    async def process_payment_failure(self, payment_reference: str,
                                      reason: Optional[str] = None,
                                      metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        order = await self._resolve_order(payment_reference, metadata)
        if not order:
            logger.warning(f"⚠️ ORCHESTRATOR: Payment failure for unknown order ({payment_reference})")
            return {'status': 'order_not_found', 'payment_reference': payment_reference}

        await mark_order_payment_failed(order['id'])
        await log_activity(order['user_id'], 'payment_failed', 'order', order['id'],
                           {'payment_reference': payment_reference, 'reason': reason})
        logger.info(f"💳 ORCHESTRATOR: Payment failed for order {order['id']}: {reason}")
        return {'status': 'payment_failed', 'order_id': order['id']}

    async def process_charge_refunded(self, payment_reference: str, amount: int,
                                      amount_refunded: int) -> Dict[str, Any]:
        """Record a refund reported by the payment processor (amounts in cents)"""
        order = await get_order_by_payment_reference(payment_reference)
        if not order:
            logger.warning(f"⚠️ ORCHESTRATOR: Refund for unknown order ({payment_reference})")
            return {'status': 'order_not_found', 'payment_reference': payment_reference}

        full_refund = amount_refunded >= amount
        if full_refund and order.get('payment_status') == PaymentStatus.REFUNDED.value:
            return {'status': 'already_refunded', 'order_id': order['id']}

        note = f"Refunded ${Decimal(amount_refunded) / 100:.2f} of ${Decimal(amount) / 100:.2f}"
        await record_order_refund(order['id'], full_refund, note)
        await log_activity(None, 'charge_refunded', 'order', order['id'], {
            'payment_reference': payment_reference,
            'amount_refunded_cents': amount_refunded,
            'full_refund': full_refund,
        })
        return {'status': 'refunded' if full_refund else 'partial_refund', 'order_id': order['id']}

    # ================================================================
    # STAFF OPERATIONS
    # ================================================================

    async def retry_order_item(self, order_id: int, item_id: int, actor_id: Optional[int]) -> Dict[str, Any]:
        """
        Re-run a failed item.

        Only failed items of paid orders are retryable; the failed → processing
        claim is atomic so two concurrent retries cannot both run.
        """
        order = await get_order_by_id(order_id)
        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")
        if order.get('payment_status') != PaymentStatus.PAID.value:
            raise ItemRetryError(f"Order {order_id} is not paid (payment status {order.get('payment_status')})")

        item = await get_order_item(order_id, item_id)
        if not item:
            raise OrderNotFoundError(f"Item {item_id} not found on order {order_id}")
        if item['status'] != ItemStatus.FAILED.value:
            raise ItemRetryError(f"Only failed items can be retried (item {item_id} is {item['status']})")

        contact, attributes, mode = await self._load_fulfillment_inputs(order)

        claimed = await claim_order_item(item_id, from_statuses=(ItemStatus.FAILED.value,))
        if not claimed:
            raise ItemRetryError(f"Item {item_id} is already being retried")

        logger.info(f"🔄 ORCHESTRATOR: Retrying item {item_id} of order {order_id} (actor {actor_id})")
        outcome = await self._process_item(order, claimed, contact, attributes, mode)
        order_status = await self._finalize_order(order_id)

        await log_activity(actor_id, 'order_item_retried', 'order_item', item_id, {
            'order_id': order_id,
            'previous_error': item.get('error_message'),
            'outcome': outcome,
            'order_status': order_status,
        })
        await self._send_notifications(order, [item], [outcome], order_status, contact, include_confirmation=False)

        return {
            'success': outcome['status'] == ItemStatus.COMPLETED.value,
            'order_status': order_status,
            'item': outcome,
        }

    async def refund_order(self, order_id: int, amount: Optional[Decimal] = None,
                           reason: Optional[str] = None, actor_id: Optional[int] = None) -> Dict[str, Any]:
        """Refund an order in full, or partially when amount is given"""
        order = await get_order_by_id(order_id)
        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")
        if order.get('payment_status') not in (PaymentStatus.PAID.value, PaymentStatus.PARTIAL_REFUND.value):
            raise RefundError(f"Order {order_id} cannot be refunded (payment status {order.get('payment_status')})")
        if not order.get('stripe_payment_intent_id'):
            raise RefundError(f"Order {order_id} has no payment reference")

        total = Decimal(str(order.get('total') or 0))
        if amount is not None:
            amount = Decimal(str(amount))
            if amount <= 0 or amount > total:
                raise RefundError(f"Refund amount must be between $0.01 and ${total}")

        refund = await self.stripe.create_refund(
            order['stripe_payment_intent_id'], amount, reason,
            metadata={'order_id': order_id, 'actor_id': actor_id or ''}
        )

        full_refund = amount is None or amount >= total
        refunded_amount = total if amount is None else amount
        note = f"Admin refund ${refunded_amount}" + (f": {reason}" if reason else "")
        await record_order_refund(order_id, full_refund, note)
        await log_activity(actor_id, 'order_refunded', 'order', order_id, {
            'refund_id': refund.get('id'),
            'amount': str(refunded_amount),
            'full_refund': full_refund,
            'reason': reason,
        })

        logger.info(f"💸 ORCHESTRATOR: Order {order_id} refunded ${refunded_amount} (full={full_refund})")
        return {
            'success': True,
            'order_id': order_id,
            'refund_id': refund.get('id'),
            'amount': refunded_amount,
            'full_refund': full_refund,
        }

    # ================================================================
    # RECOVERY
    # ================================================================

    async def reap_stale_items(self) -> Dict[str, Any]:
        """
        Fail items stuck in processing past the stale threshold.

        An item claimed by a delivery that crashed, or whose outcome could not
        be saved, would otherwise block its order forever. Reaped items become
        failed, which makes them visible to staff retry; the registrar may
        already have acted on them, so every reap raises a critical alert.
        """
        stale_after = self.config.stale_item_seconds
        reaped = await fail_stale_items(
            stale_after,
            f"Processing interrupted (no outcome recorded within {stale_after}s) - "
            f"verify registrar state before retrying"
        )
        if not reaped:
            return {'reaped': 0, 'orders': {}}

        order_statuses: Dict[int, str] = {}
        for item in reaped:
            await log_activity(None, 'order_item_interrupted', 'order_item', item['id'], {
                'order_id': item['order_id'],
                'domain': format_domain(item['domain_name'], item['tld']),
                'item_type': item['item_type'],
                'requires_manual_review': True,
            })
            if item['order_id'] not in order_statuses:
                order_statuses[item['order_id']] = await self._finalize_order(item['order_id'])

        logger.warning(f"⚠️ ORCHESTRATOR: Reaped {len(reaped)} stale processing item(s) "
                       f"across {len(order_statuses)} order(s)")
        await send_critical_alert(
            "FulfillmentOrchestrator",
            f"{len(reaped)} order item(s) were stuck in processing and have been failed",
            "fulfillment",
            {'items': [{'item_id': i['id'], 'order_id': i['order_id'],
                        'domain': format_domain(i['domain_name'], i['tld']),
                        'item_type': i['item_type']} for i in reaped]}
        )
        return {'reaped': len(reaped), 'orders': order_statuses}

    # ================================================================
    # INTERNALS
    # ================================================================

    async def _resolve_order(self, payment_reference: str, metadata: Optional[Dict[str, Any]]) -> Optional[Dict]:
        order = await get_order_by_payment_reference(payment_reference) if payment_reference else None
        if order:
            return order

        raw_id = (metadata or {}).get('order_id')
        if raw_id is None:
            return None
        try:
            order = await get_order_by_id(int(raw_id))
        except (TypeError, ValueError):
            logger.warning(f"⚠️ ORCHESTRATOR: Ignoring non-numeric order_id in metadata: {raw_id!r}")
            return None

        # A metadata match must not hijack an order paid by a different intent
        if order and order.get('stripe_payment_intent_id') not in (None, payment_reference):
            logger.error(f"❌ ORCHESTRATOR: Order {raw_id} belongs to {order['stripe_payment_intent_id']}, "
                         f"not {payment_reference}")
            return None
        return order

    async def _load_fulfillment_inputs(self, order: Dict):
        """Validate the order-level inputs every item depends on; abort the order if unusable"""
        try:
            contact = RegistrantContact.from_snapshot(order.get('registrant_contact'))
            attributes = ExtendedAttributes.from_snapshot(order.get('extended_attributes'))
            mode = RegistrarMode.parse(order.get('registrar_mode'))
        except ValueError as e:
            await self._abort_order(order, str(e))
            raise OrderIntegrityError(f"Order {order['id']} cannot be fulfilled: {e}", order['id']) from e
        return contact, attributes, mode

    async def _abort_order(self, order: Dict, reason: str):
        order_id = order['id']
        logger.error(f"🚨 ORCHESTRATOR: Aborting paid order {order_id} - {reason}")
        await flag_order_for_review(order_id, f"Fulfillment aborted: {reason}")
        await log_activity(order.get('user_id'), 'fulfillment_aborted', 'order', order_id, {
            'reason': reason,
            'payment_reference': order.get('stripe_payment_intent_id'),
            'requires_manual_review': True,
        })
        await send_critical_alert(
            "FulfillmentOrchestrator",
            f"Paid order {order.get('order_number', order_id)} aborted: {reason}",
            "fulfillment",
            {'order_id': order_id, 'user_id': order.get('user_id')}
        )

    async def _process_item(self, order: Dict, item: Dict, contact: RegistrantContact,
                            attributes: ExtendedAttributes, mode: RegistrarMode) -> Dict[str, Any]:
        """Run one claimed item to a terminal status; never raises"""
        sld, tld = item['domain_name'], item['tld']
        domain = format_domain(sld, tld)
        item_type = ItemType(item['item_type'])
        years = int(item.get('years') or 1)
        outcome: Dict[str, Any] = {'item_id': item['id'], 'domain': domain, 'item_type': item_type.value}

        try:
            registrar = self.registrar_factory(mode)
            existing = None

            if item_type == ItemType.REGISTER:
                perform = lambda: registrar.register_domain(sld, tld, years, contact, attributes)
            elif item_type == ItemType.TRANSFER:
                perform = lambda: registrar.initiate_transfer(sld, tld, item.get('auth_code'), contact, years)
            else:
                existing = await get_domain_by_name(sld, tld)
                if not existing:
                    raise FulfillmentItemError(f"Domain {domain} not found for renewal")
                stored_mode = RegistrarMode.parse(existing.get('registrar_mode'))
                if stored_mode != mode:
                    raise FulfillmentItemError(
                        f"Domain {domain} is held in {stored_mode.value} mode, order is {mode.value}"
                    )
                perform = lambda: registrar.renew_domain(sld, tld, years)

            descriptor = OperationDescriptor(item_type, domain, years, Decimal(str(item['total_price'])))
            guarded = await self.guard.run(descriptor, perform, registrar, order['id'],
                                           timeout=self.config.item_timeout)
        except Exception as e:
            return await self._fail_item(item, outcome, str(e) or type(e).__name__)

        result = guarded.operation_result
        registrar_order_id = str(result.get('order_id')) if result.get('order_id') else None
        outcome['registrar_order_id'] = registrar_order_id
        if guarded.refill_record:
            outcome['auto_refill_id'] = guarded.refill_record.get('id')

        try:
            if item_type == ItemType.RENEW:
                new_expiration = await self._renewed_expiration(registrar, sld, tld, result)
                outcome['expiration_date'] = new_expiration
                await record_item_success(item['id'], registrar_order_id, domain_expiration={
                    'domain_id': existing['id'],
                    'expiration_date': new_expiration,
                })
            else:
                expiration = parse_registrar_date(result.get('expiration_date'))
                if item_type == ItemType.REGISTER and expiration is None:
                    expiration = datetime.utcnow() + timedelta(days=365 * years)
                status = DomainStatus.ACTIVE if item_type == ItemType.REGISTER else DomainStatus.TRANSFER_PENDING
                outcome['expiration_date'] = expiration
                await record_item_success(item['id'], registrar_order_id, domain_upsert={
                    'user_id': order['user_id'],
                    'domain_name': sld,
                    'tld': tld,
                    'status': status.value,
                    'expiration_date': expiration,
                    'auto_renew': order.get('auto_renew'),
                    'registrar_mode': mode.value,
                    'registrar_transfer_id': result.get('transfer_order_id'),
                })
        except Exception as e:
            logger.error(f"🚨 ORCHESTRATOR: {item_type.value} of {domain} succeeded at registrar "
                         f"(order {registrar_order_id}) but could not be recorded: {e}")
            await send_critical_alert(
                "FulfillmentOrchestrator",
                f"{item_type.value} of {domain} succeeded at the registrar but the result was not saved",
                "fulfillment",
                {'order_id': order['id'], 'item_id': item['id'], 'registrar_order_id': registrar_order_id,
                 'error': str(e)}
            )
            return await self._fail_item(
                item, outcome, f"Registrar succeeded (order {registrar_order_id}) but saving failed: {e}"
            )

        outcome['status'] = ItemStatus.COMPLETED.value
        logger.info(f"✅ ORCHESTRATOR: {item_type.value} {domain} completed (registrar order {registrar_order_id})")
        return outcome

    async def _renewed_expiration(self, registrar: EnomService, sld: str, tld: str,
                                  result: Dict[str, Any]) -> Optional[datetime]:
        expiration = parse_registrar_date(result.get('new_expiration'))
        if expiration:
            return expiration
        try:
            info = await registrar.get_domain_info(sld, tld)
            return parse_registrar_date(info.get('expiration_date'))
        except Exception as e:
            logger.warning(f"⚠️ ORCHESTRATOR: Could not refresh expiration for {sld}.{tld}: {e}")
            return None

    async def _fail_item(self, item: Dict, outcome: Dict[str, Any], error: str) -> Dict[str, Any]:
        logger.error(f"❌ ORCHESTRATOR: {outcome['item_type']} {outcome['domain']} failed: {error}")
        try:
            await record_item_failure(item['id'], error)
        except Exception as e:
            logger.error(f"❌ ORCHESTRATOR: Could not record failure for item {item['id']}: {e}")
        outcome['status'] = ItemStatus.FAILED.value
        outcome['error'] = error
        return outcome

    async def _finalize_order(self, order_id: int) -> str:
        """Recompute the aggregate status under the order row lock from freshly read items"""
        return await finalize_order_status(order_id, compute_order_status)

    async def _send_notifications(self, order: Dict, items: List[Dict], processed: List[Dict[str, Any]],
                                  order_status: str, contact: RegistrantContact,
                                  include_confirmation: bool = True):
        try:
            user = await get_user_by_id(order['user_id'])
            recipient = (user or {}).get('email') or contact.email
            order_id = order['id']

            if include_confirmation:
                await self.notifier.send_order_confirmation(order, items, recipient)

            for outcome in processed:
                if outcome['status'] != ItemStatus.COMPLETED.value:
                    continue
                if outcome['item_type'] == ItemType.REGISTER.value:
                    await self.notifier.send_domain_registered(order_id, outcome['domain'], recipient,
                                                               outcome.get('expiration_date'))
                elif outcome['item_type'] == ItemType.TRANSFER.value:
                    await self.notifier.send_transfer_initiated(order_id, outcome['domain'], recipient)
                else:
                    years = next((i.get('years') for i in items if i['id'] == outcome['item_id']), 1)
                    await self.notifier.send_renewal_confirmation(order_id, outcome['domain'], recipient,
                                                                  years, outcome.get('expiration_date'))

            failed = [o for o in processed if o['status'] == ItemStatus.FAILED.value]
            if failed:
                await self.notifier.send_order_failed(order, failed, recipient)
                await send_error_alert(
                    "FulfillmentOrchestrator",
                    f"Order {order.get('order_number', order_id)} {order_status}: "
                    f"{len(failed)} item(s) failed",
                    "fulfillment",
                    {'order_id': order_id, 'failed': [{'domain': f['domain'], 'error': f.get('error')} for f in failed]}
                )
        except Exception as e:
            logger.error(f"❌ ORCHESTRATOR: Notification dispatch failed for order {order['id']}: {e}")


# ====================================================================
# GLOBAL ORCHESTRATOR INSTANCE
# ====================================================================

_orchestrator: Optional[FulfillmentOrchestrator] = None

def get_orchestrator() -> FulfillmentOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = FulfillmentOrchestrator()
    return _orchestrator

async def process_payment_success(payment_reference: str, charge_id: Optional[str] = None,
                                  metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Main entry point for confirmed payments"""
    return await get_orchestrator().process_payment_success(payment_reference, charge_id, metadata)

async def process_payment_failure(payment_reference: str, reason: Optional[str] = None,
                                  metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return await get_orchestrator().process_payment_failure(payment_reference, reason, metadata)

async def process_charge_refunded(payment_reference: str, amount: int, amount_refunded: int) -> Dict[str, Any]:
    return await get_orchestrator().process_charge_refunded(payment_reference, amount, amount_refunded)

async def retry_order_item(order_id: int, item_id: int, actor_id: Optional[int]) -> Dict[str, Any]:
    return await get_orchestrator().retry_order_item(order_id, item_id, actor_id)

async def refund_order(order_id: int, amount: Optional[Decimal] = None, reason: Optional[str] = None,
                       actor_id: Optional[int] = None) -> Dict[str, Any]:
    return await get_orchestrator().refund_order(order_id, amount, reason, actor_id)

async def reap_stale_items() -> Dict[str, Any]:
    return await get_orchestrator().reap_stale_items()
