"""
Customer notifier
Fire-and-forget templated email requests with a dedupe ledger; failures never propagate
"""

import logging
import httpx
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional, List

from config import FulfillmentConfig, get_config
from database import claim_notification

logger = logging.getLogger(__name__)


def _plain(value: Any) -> Any:
    """Reduce Decimals and datetimes to JSON-friendly values"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class NotifierService:
    """Sends customer emails through the external notifier endpoint"""

    def __init__(self, config: Optional[FulfillmentConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client

    def is_available(self) -> bool:
        return bool(self.config.notifier_url)

    async def notify(self, message_type: str, reference_id: int, recipient: Optional[str],
                     data: Dict[str, Any], domain_name: str = '') -> bool:
        """
        Send one notification at most once per (reference, message type, domain).

        Returns True only when the notifier accepted the message.
        """
        try:
            if not recipient:
                logger.warning(f"⚠️ NOTIFIER: No recipient for {message_type} (ref {reference_id})")
                return False

            if not await claim_notification(reference_id, message_type, domain_name, recipient):
                logger.info(f"🚫 NOTIFIER: {message_type} already sent for ref {reference_id} {domain_name}".rstrip())
                return False

            if not self.is_available():
                logger.warning(f"⚠️ NOTIFIER: NOTIFIER_URL not configured - {message_type} for ref {reference_id} not sent")
                return False

            payload = {'template': message_type, 'to': recipient, 'data': _plain(data)}
            headers = {'content-type': 'application/json'}
            if self.config.notifier_api_key:
                headers['Authorization'] = f"Bearer {self.config.notifier_api_key}"

            if self._client is not None:
                response = await self._client.post(self.config.notifier_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(self.config.notifier_url, json=payload, headers=headers)

            if response.status_code >= 400:
                logger.error(f"❌ NOTIFIER: {message_type} rejected with HTTP {response.status_code}")
                return False

            logger.info(f"📧 NOTIFIER: {message_type} sent to {recipient} (ref {reference_id})")
            return True

        except Exception as e:
            logger.error(f"❌ NOTIFIER: Failed to send {message_type} for ref {reference_id}: {e}")
            return False

    # ================================================================
    # ORDER NOTIFICATIONS
    # ================================================================

    async def send_order_confirmation(self, order: Dict, items: List[Dict], recipient: str) -> bool:
        return await self.notify('order_confirmation', order['id'], recipient, {
            'order_number': order.get('order_number'),
            'total': order.get('total'),
            'items': [
                {'domain': item['domain_name'], 'type': item['item_type'],
                 'years': item.get('years'), 'price': item.get('total_price')}
                for item in items
            ],
        })

    async def send_domain_registered(self, order_id: int, domain_name: str, recipient: str,
                                     expiration_date: Optional[datetime]) -> bool:
        return await self.notify('domain_registered', order_id, recipient,
                                 {'domain': domain_name, 'expiration_date': expiration_date},
                                 domain_name=domain_name)

    async def send_transfer_initiated(self, order_id: int, domain_name: str, recipient: str) -> bool:
        return await self.notify('transfer_initiated', order_id, recipient,
                                 {'domain': domain_name}, domain_name=domain_name)

    async def send_transfer_completed(self, domain_id: int, domain_name: str, recipient: str,
                                      expiration_date: Optional[datetime]) -> bool:
        return await self.notify('transfer_completed', domain_id, recipient,
                                 {'domain': domain_name, 'expiration_date': expiration_date},
                                 domain_name=domain_name)

    async def send_transfer_failed(self, domain_id: int, domain_name: str, recipient: str,
                                   reason: Optional[str]) -> bool:
        return await self.notify('transfer_failed', domain_id, recipient,
                                 {'domain': domain_name, 'reason': reason}, domain_name=domain_name)

    async def send_order_failed(self, order: Dict, failed_items: List[Dict], recipient: str) -> bool:
        return await self.notify('order_failed', order['id'], recipient, {
            'order_number': order.get('order_number'),
            'items': [
                {'domain': item['domain_name'], 'error': item.get('error')}
                for item in failed_items
            ],
        })

    async def send_renewal_confirmation(self, order_id: int, domain_name: str, recipient: str,
                                        years: int, new_expiration: Optional[datetime]) -> bool:
        return await self.notify('renewal_confirmation', order_id, recipient,
                                 {'domain': domain_name, 'years': years, 'new_expiration': new_expiration},
                                 domain_name=domain_name)

    async def send_renewal_failed(self, reference_id: int, domain_name: str, recipient: str,
                                  error: str, expiration_date: Optional[datetime] = None) -> bool:
        return await self.notify('renewal_failed', reference_id, recipient,
                                 {'domain': domain_name, 'error': error, 'expiration_date': expiration_date},
                                 domain_name=domain_name)

    # ================================================================
    # PUSH NOTIFICATIONS
    # ================================================================

    async def send_push_request_received(self, push_request: Dict, domain_name: str, from_email: str) -> bool:
        return await self.notify('push_request_received', push_request['id'], push_request.get('to_email'), {
            'domain': domain_name,
            'from': from_email,
            'expires_at': push_request.get('expires_at'),
            'note': push_request.get('notes'),
        }, domain_name=domain_name)


_notifier: Optional[NotifierService] = None

def get_notifier() -> NotifierService:
    global _notifier
    if _notifier is None:
        _notifier = NotifierService()
    return _notifier
