"""
Inbound Transfer Status Sync
Settles transfer_pending domains once the registrar reports the transfer outcome
"""

import logging
from typing import Callable, Dict, Optional, Any

from database import get_pending_transfers, complete_domain_transfer, fail_domain_transfer, log_activity
from models import format_domain
from admin_alerts import send_error_alert, send_warning_alert
from services.enom import EnomService, get_registrar, parse_registrar_date
from services.notifier import NotifierService, get_notifier

logger = logging.getLogger(__name__)


class TransferStatusSync:
    """
    Periodic check of domains waiting on an inbound transfer.

    A completed transfer marks the domain active and refreshes its expiry from
    the registrar; a cancelled or rejected one moves it to transfer_failed and
    turns auto-renew off. Pending transfers are left for the next run.
    """

    def __init__(self, notifier: Optional[NotifierService] = None,
                 registrar_factory: Callable[[Any], EnomService] = get_registrar):
        self.notifier = notifier or get_notifier()
        self.registrar_factory = registrar_factory
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {'checked': 0, 'completed': 0, 'failed': 0, 'pending': 0, 'skipped': 0, 'errors': 0}

    async def sync_pending_transfers(self) -> Dict[str, Any]:
        self.stats = self._empty_stats()

        try:
            domains = await get_pending_transfers()
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ TRANSFER SYNC: Could not load pending transfers: {e}")
            return {'status': 'error', 'error': str(e), 'stats': self.stats}

        if not domains:
            logger.info("✅ TRANSFER SYNC: No pending transfers")
            return {'status': 'success', 'stats': self.stats}

        logger.info(f"📊 TRANSFER SYNC: Checking {len(domains)} pending transfer(s)")
        results = [await self.sync_transfer(domain) for domain in domains]

        logger.info(f"✅ TRANSFER SYNC: {self.stats['completed']} completed, {self.stats['failed']} failed, "
                    f"{self.stats['pending']} still pending")
        if self.stats['errors']:
            await send_warning_alert(
                "TransferSync",
                f"Transfer status sync finished with {self.stats['errors']} error(s)",
                "external_api",
                dict(self.stats)
            )
        return {'status': 'success', 'stats': dict(self.stats), 'results': results}

    async def sync_transfer(self, domain: Dict) -> Dict[str, Any]:
        """Check one transfer_pending domain row (joined with its owner's email)"""
        full_name = format_domain(domain['domain_name'], domain['tld'])
        transfer_order_id = domain.get('registrar_transfer_id')
        if not transfer_order_id:
            self.stats['skipped'] += 1
            logger.warning(f"⚠️ TRANSFER SYNC: {full_name} has no registrar transfer id")
            return {'domain': full_name, 'status': 'skipped'}

        self.stats['checked'] += 1
        try:
            registrar = self.registrar_factory(domain.get('registrar_mode'))
            status = await registrar.get_transfer_status(transfer_order_id)

            if status['state'] == 'completed':
                return await self._complete(domain, registrar, full_name, status)
            if status['state'] == 'failed':
                return await self._fail(domain, full_name, status)

            self.stats['pending'] += 1
            logger.info(f"⏳ TRANSFER SYNC: {full_name} still {status['status']}")
            return {'domain': full_name, 'status': 'pending'}

        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"❌ TRANSFER SYNC: Error checking {full_name}: {e}")
            return {'domain': full_name, 'status': 'error', 'error': str(e)}

    async def _complete(self, domain: Dict, registrar: EnomService, full_name: str,
                        status: Dict[str, Any]) -> Dict[str, Any]:
        try:
            info = await registrar.get_domain_info(domain['domain_name'], domain['tld'])
            expiration = parse_registrar_date(info.get('expiration_date'))
        except Exception as e:
            logger.warning(f"⚠️ TRANSFER SYNC: Could not refresh expiry for {full_name}: {e}")
            expiration = None

        if not await complete_domain_transfer(domain['id'], expiration):
            # Settled by another run between the read and this update
            return {'domain': full_name, 'status': 'unchanged'}

        self.stats['completed'] += 1
        logger.info(f"✅ TRANSFER SYNC: {full_name} transfer completed")
        await log_activity(domain['user_id'], 'domain_transfer_completed', 'domain', domain['id'], {
            'transfer_order_id': status['transfer_order_id'],
            'expiration_date': expiration.isoformat() if expiration else None,
        })
        await self.notifier.send_transfer_completed(domain['id'], full_name, domain.get('email'), expiration)
        return {'domain': full_name, 'status': 'completed', 'expiration_date': expiration}

    async def _fail(self, domain: Dict, full_name: str, status: Dict[str, Any]) -> Dict[str, Any]:
        if not await fail_domain_transfer(domain['id']):
            return {'domain': full_name, 'status': 'unchanged'}

        self.stats['failed'] += 1
        reason = status.get('description') or status['status']
        logger.warning(f"❌ TRANSFER SYNC: {full_name} transfer failed: {reason}")
        await log_activity(domain['user_id'], 'domain_transfer_failed', 'domain', domain['id'], {
            'transfer_order_id': status['transfer_order_id'],
            'registrar_status': status['status'],
            'reason': reason,
        })
        await send_error_alert(
            "TransferSync",
            f"Inbound transfer of {full_name} failed",
            "fulfillment",
            {'domain_id': domain['id'], 'transfer_order_id': status['transfer_order_id'], 'reason': reason}
        )
        await self.notifier.send_transfer_failed(domain['id'], full_name, domain.get('email'), reason)
        return {'domain': full_name, 'status': 'failed', 'reason': reason}

    def get_stats(self) -> Dict[str, int]:
        return dict(self.stats)


_transfer_sync: Optional[TransferStatusSync] = None

def get_transfer_sync() -> TransferStatusSync:
    global _transfer_sync
    if _transfer_sync is None:
        _transfer_sync = TransferStatusSync()
    return _transfer_sync

async def sync_pending_transfers() -> Dict[str, Any]:
    return await get_transfer_sync().sync_pending_transfers()
