"""
Domain push (ownership transfer between accounts)

State machine: pending → accepted | rejected | cancelled | expired

Every transition is a conditional UPDATE on a row locked FOR UPDATE, so only
one terminal transition can ever succeed for a request. Acceptance flips the
request and the domain owner in one transaction. Expiry is evaluated lazily on
every read; the hourly sweep is housekeeping only.
"""

import logging
import psycopg2
from typing import Dict, Any, Optional, List

from config import get_config
from database import (
    run_in_transaction, execute_query, execute_update,
    get_user_by_id, get_user_by_email, get_app_setting, log_activity
)
from models import PushStatus, DomainStatus, format_domain
from services.notifier import get_notifier

logger = logging.getLogger(__name__)

# ====================================================================
# ERRORS
# ====================================================================

class PushRequestError(Exception):
    """Base class for push protocol failures"""
    status_code = 400

class PushValidationError(PushRequestError):
    """Request arguments are invalid"""
    status_code = 400

class PushPermissionError(PushRequestError):
    """Caller is not allowed to act on this request or domain"""
    status_code = 403

class PushNotFoundError(PushRequestError):
    """Request, domain or recipient does not exist"""
    status_code = 404

class PushStateError(PushRequestError):
    """Request is not pending, or a pending request already exists"""
    status_code = 409

class PushExpiredError(PushRequestError):
    """Request passed its expiry; it has been marked expired"""
    status_code = 410

# ====================================================================
# SQL
# ====================================================================

_LOCK_DOMAIN_SQL = """
    SELECT id, user_id, domain_name, tld, status
    FROM domains WHERE id = %s FOR UPDATE
"""

_EXPIRE_DOMAIN_STALE_SQL = """
    UPDATE domain_push_requests
    SET status = 'expired', responded_at = CURRENT_TIMESTAMP
    WHERE domain_id = %s AND status = 'pending' AND expires_at <= CURRENT_TIMESTAMP
"""

_FIND_DOMAIN_PENDING_SQL = """
    SELECT id FROM domain_push_requests
    WHERE domain_id = %s AND status = 'pending'
"""

_INSERT_PENDING_SQL = """
    INSERT INTO domain_push_requests
        (domain_id, from_user_id, to_user_id, to_email, status, initiated_by_admin, notes, expires_at)
    VALUES (%s, %s, %s, %s, 'pending', FALSE, %s, CURRENT_TIMESTAMP + make_interval(days => %s))
    RETURNING *
"""

_INSERT_ADMIN_ACCEPTED_SQL = """
    INSERT INTO domain_push_requests
        (domain_id, from_user_id, to_user_id, to_email, status, initiated_by_admin, notes,
         expires_at, responded_at)
    VALUES (%s, %s, %s, %s, 'accepted', TRUE, %s, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
    RETURNING *
"""

_CANCEL_DOMAIN_PENDING_SQL = """
    UPDATE domain_push_requests
    SET status = 'cancelled', responded_at = CURRENT_TIMESTAMP
    WHERE domain_id = %s AND status = 'pending'
"""

_LOCK_REQUEST_SQL = """
    SELECT *, (expires_at IS NOT NULL AND expires_at <= CURRENT_TIMESTAMP) AS is_expired
    FROM domain_push_requests WHERE id = %s FOR UPDATE
"""

_TRANSITION_SQL = """
    UPDATE domain_push_requests
    SET status = %s, responded_at = CURRENT_TIMESTAMP
    WHERE id = %s AND status = 'pending'
    RETURNING *
"""

_REASSIGN_DOMAIN_SQL = """
    UPDATE domains
    SET user_id = %s, auto_renew_payment_method_id = NULL, updated_at = CURRENT_TIMESTAMP
    WHERE id = %s AND user_id = %s
"""

_EXPIRE_REQUEST_SQL = """
    UPDATE domain_push_requests
    SET status = 'expired', responded_at = CURRENT_TIMESTAMP
    WHERE id = %s AND status = 'pending' AND expires_at <= CURRENT_TIMESTAMP
"""

_EXPIRE_ACCOUNT_SQL = """
    UPDATE domain_push_requests
    SET status = 'expired', responded_at = CURRENT_TIMESTAMP
    WHERE (from_user_id = %s OR to_user_id = %s)
      AND status = 'pending' AND expires_at <= CURRENT_TIMESTAMP
"""

_EXPIRE_ALL_SQL = """
    UPDATE domain_push_requests
    SET status = 'expired', responded_at = CURRENT_TIMESTAMP
    WHERE status = 'pending' AND expires_at <= CURRENT_TIMESTAMP
"""

_SELECT_REQUEST_SQL = """
    SELECT r.*, d.domain_name, d.tld, fu.email AS from_email
    FROM domain_push_requests r
    JOIN domains d ON d.id = r.domain_id
    JOIN users fu ON fu.id = r.from_user_id
    WHERE r.id = %s
"""

_LIST_ACCOUNT_SQL = """
    SELECT r.*, d.domain_name, d.tld, fu.email AS from_email
    FROM domain_push_requests r
    JOIN domains d ON d.id = r.domain_id
    JOIN users fu ON fu.id = r.from_user_id
    WHERE r.from_user_id = %s OR r.to_user_id = %s
    ORDER BY r.created_at DESC, r.id DESC
"""

# ====================================================================
# TRANSACTION BODIES
# ====================================================================

def _create_in_transaction(conn, domain_id: int, owner_id: int, recipient_id: int,
                           to_email: str, note: Optional[str], timeout_days: int) -> Dict:
    with conn.cursor() as cursor:
        cursor.execute(_LOCK_DOMAIN_SQL, (domain_id,))
        domain = cursor.fetchone()
        if not domain:
            raise PushNotFoundError(f"Domain {domain_id} not found")
        if domain['user_id'] != owner_id:
            raise PushPermissionError("Only the domain owner can push this domain")
        if domain['status'] == DomainStatus.SUSPENDED.value:
            raise PushStateError("Suspended domains cannot be pushed")

        cursor.execute(_EXPIRE_DOMAIN_STALE_SQL, (domain_id,))
        cursor.execute(_FIND_DOMAIN_PENDING_SQL, (domain_id,))
        if cursor.fetchone():
            raise PushStateError("A push request is already pending for this domain")

        cursor.execute(_INSERT_PENDING_SQL, (domain_id, owner_id, recipient_id, to_email, note, timeout_days))
        request = dict(cursor.fetchone())
        request['domain_name'] = domain['domain_name']
        request['tld'] = domain['tld']
        return request


def _accept_in_transaction(conn, request_id: int, account_id: int) -> Dict[str, Any]:
    with conn.cursor() as cursor:
        cursor.execute(_LOCK_REQUEST_SQL, (request_id,))
        request = cursor.fetchone()
        if not request:
            raise PushNotFoundError(f"Push request {request_id} not found")
        if request['to_user_id'] != account_id:
            raise PushPermissionError("Only the recipient can accept this push request")
        if request['status'] != PushStatus.PENDING.value:
            raise PushStateError(f"Push request is already {request['status']}")

        if request['is_expired']:
            cursor.execute(_TRANSITION_SQL, (PushStatus.EXPIRED.value, request_id))
            return {'expired': True, 'request': dict(cursor.fetchone())}

        cursor.execute(_TRANSITION_SQL, (PushStatus.ACCEPTED.value, request_id))
        accepted = dict(cursor.fetchone())

        cursor.execute(_REASSIGN_DOMAIN_SQL, (request['to_user_id'], request['domain_id'], request['from_user_id']))
        if cursor.rowcount != 1:
            raise PushStateError("Domain ownership changed since the push request was created")

        return {'expired': False, 'request': accepted}


def _respond_in_transaction(conn, request_id: int, account_id: int, new_status: PushStatus) -> Dict:
    """Reject (recipient) or cancel (sender) a pending request"""
    actor_field = 'to_user_id' if new_status == PushStatus.REJECTED else 'from_user_id'
    with conn.cursor() as cursor:
        cursor.execute(_LOCK_REQUEST_SQL, (request_id,))
        request = cursor.fetchone()
        if not request:
            raise PushNotFoundError(f"Push request {request_id} not found")
        if request[actor_field] != account_id:
            if new_status == PushStatus.REJECTED:
                raise PushPermissionError("Only the recipient can reject this push request")
            raise PushPermissionError("Only the sender can cancel this push request")
        if request['status'] != PushStatus.PENDING.value:
            raise PushStateError(f"Push request is already {request['status']}")

        if request['is_expired']:
            cursor.execute(_TRANSITION_SQL, (PushStatus.EXPIRED.value, request_id))
            return {'expired': True, 'request': dict(cursor.fetchone())}

        cursor.execute(_TRANSITION_SQL, (new_status.value, request_id))
        return {'expired': False, 'request': dict(cursor.fetchone())}


def _admin_push_in_transaction(conn, domain_id: int, recipient_id: int, to_email: str,
                               note: Optional[str]) -> Dict:
    with conn.cursor() as cursor:
        cursor.execute(_LOCK_DOMAIN_SQL, (domain_id,))
        domain = cursor.fetchone()
        if not domain:
            raise PushNotFoundError(f"Domain {domain_id} not found")
        if domain['user_id'] == recipient_id:
            raise PushValidationError("Domain already belongs to this account")

        cursor.execute(_CANCEL_DOMAIN_PENDING_SQL, (domain_id,))
        cancelled = cursor.rowcount
        cursor.execute(_INSERT_ADMIN_ACCEPTED_SQL, (domain_id, domain['user_id'], recipient_id, to_email, note))
        request = dict(cursor.fetchone())
        cursor.execute(_REASSIGN_DOMAIN_SQL, (recipient_id, domain_id, domain['user_id']))

        request['domain_name'] = domain['domain_name']
        request['tld'] = domain['tld']
        request['cancelled_pending'] = cancelled
        return request

# ====================================================================
# SERVICE
# ====================================================================

class PushProtocol:
    """Ownership transfer between accounts"""

    async def _timeout_days(self) -> int:
        raw = await get_app_setting('push_timeout_days')
        try:
            days = int(raw) if raw is not None else get_config().push_timeout_days
        except ValueError:
            logger.warning(f"⚠️ PUSH: Invalid push_timeout_days setting {raw!r} - using config default")
            days = get_config().push_timeout_days
        return max(days, 1)

    async def _resolve_recipient(self, to_email: Optional[str]) -> Dict:
        email = (to_email or '').strip()
        if not email or '@' not in email:
            raise PushValidationError("A valid recipient email is required")
        recipient = await get_user_by_email(email)
        if not recipient:
            raise PushNotFoundError(f"No account found for {email}")
        return recipient

    async def create_push_request(self, domain_id: int, owner_id: int, to_email: str,
                                  note: Optional[str] = None) -> Dict:
        """Propose moving a domain to another account"""
        recipient = await self._resolve_recipient(to_email)
        if recipient['id'] == owner_id:
            raise PushValidationError("Cannot push a domain to yourself")

        timeout_days = await self._timeout_days()
        try:
            request = await run_in_transaction(
                _create_in_transaction, domain_id, owner_id, recipient['id'], to_email.strip(), note, timeout_days
            )
        except psycopg2.IntegrityError:
            raise PushStateError("A push request is already pending for this domain")

        domain = format_domain(request['domain_name'], request['tld'])
        logger.info(f"📤 PUSH: Request {request['id']} created for {domain} "
                    f"({owner_id} → {recipient['id']}, expires {request.get('expires_at')})")
        await log_activity(owner_id, 'domain_push_initiated', 'domain', domain_id, {
            'push_request_id': request['id'],
            'to_user_id': recipient['id'],
            'to_email': to_email.strip(),
        })

        owner = await get_user_by_id(owner_id)
        await get_notifier().send_push_request_received(request, domain, (owner or {}).get('email', ''))
        return request

    async def accept_push_request(self, request_id: int, account_id: int) -> Dict:
        """
        Accept a pending push; the request and the domain owner change together.

        Raises PushExpiredError after committing the expired status when the
        request ran out of time.
        """
        result = await run_in_transaction(_accept_in_transaction, request_id, account_id)
        request = result['request']

        if result['expired']:
            logger.info(f"⌛ PUSH: Request {request_id} expired on accept")
            raise PushExpiredError("Push request has expired")

        logger.info(f"✅ PUSH: Request {request_id} accepted - domain {request['domain_id']} "
                    f"moved {request['from_user_id']} → {request['to_user_id']}")
        await log_activity(account_id, 'domain_push_accepted', 'domain', request['domain_id'], {
            'push_request_id': request_id,
            'from_user_id': request['from_user_id'],
        })
        return request

    async def reject_push_request(self, request_id: int, account_id: int) -> Dict:
        return await self._respond(request_id, account_id, PushStatus.REJECTED)

    async def cancel_push_request(self, request_id: int, account_id: int) -> Dict:
        return await self._respond(request_id, account_id, PushStatus.CANCELLED)

    async def _respond(self, request_id: int, account_id: int, new_status: PushStatus) -> Dict:
        result = await run_in_transaction(_respond_in_transaction, request_id, account_id, new_status)
        request = result['request']
        if result['expired']:
            raise PushExpiredError("Push request has expired")

        logger.info(f"📭 PUSH: Request {request_id} {new_status.value} by {account_id}")
        await log_activity(account_id, f"domain_push_{new_status.value}", 'domain', request['domain_id'],
                           {'push_request_id': request_id})
        return request

    async def get_push_request(self, request_id: int, account_id: Optional[int] = None) -> Dict:
        await execute_update(_EXPIRE_REQUEST_SQL, (request_id,))
        rows = await execute_query(_SELECT_REQUEST_SQL, (request_id,))
        if not rows:
            raise PushNotFoundError(f"Push request {request_id} not found")
        request = rows[0]
        if account_id is not None and account_id not in (request['from_user_id'], request['to_user_id']):
            raise PushPermissionError("Not a party to this push request")
        return request

    async def list_push_requests(self, account_id: int) -> Dict[str, List[Dict]]:
        await execute_update(_EXPIRE_ACCOUNT_SQL, (account_id, account_id))
        rows = await execute_query(_LIST_ACCOUNT_SQL, (account_id, account_id))
        return {
            'incoming': [r for r in rows if r['to_user_id'] == account_id],
            'outgoing': [r for r in rows if r['from_user_id'] == account_id],
        }

    async def admin_push_domain(self, domain_id: int, to_email: str, admin_id: int,
                                note: Optional[str] = None) -> Dict:
        """Move a domain immediately on staff authority; any pending request is cancelled"""
        recipient = await self._resolve_recipient(to_email)
        request = await run_in_transaction(
            _admin_push_in_transaction, domain_id, recipient['id'], to_email.strip(), note
        )
        logger.info(f"🛠️ PUSH: Admin {admin_id} moved domain {domain_id} to {recipient['id']} "
                    f"(cancelled {request['cancelled_pending']} pending)")
        await log_activity(admin_id, 'admin_domain_push', 'domain', domain_id, {
            'push_request_id': request['id'],
            'from_user_id': request['from_user_id'],
            'to_user_id': recipient['id'],
            'note': note,
        })
        return request

    async def expire_stale_push_requests(self) -> int:
        expired = await execute_update(_EXPIRE_ALL_SQL)
        if expired:
            logger.info(f"⌛ PUSH: Expired {expired} stale push request(s)")
        return expired


_push_protocol = PushProtocol()

def get_push_protocol() -> PushProtocol:
    return _push_protocol

async def create_push_request(domain_id: int, owner_id: int, to_email: str, note: Optional[str] = None) -> Dict:
    return await _push_protocol.create_push_request(domain_id, owner_id, to_email, note)

async def accept_push_request(request_id: int, account_id: int) -> Dict:
    return await _push_protocol.accept_push_request(request_id, account_id)

async def reject_push_request(request_id: int, account_id: int) -> Dict:
    return await _push_protocol.reject_push_request(request_id, account_id)

async def cancel_push_request(request_id: int, account_id: int) -> Dict:
    return await _push_protocol.cancel_push_request(request_id, account_id)

async def get_push_request(request_id: int, account_id: Optional[int] = None) -> Dict:
    return await _push_protocol.get_push_request(request_id, account_id)

async def list_push_requests(account_id: int) -> Dict[str, List[Dict]]:
    return await _push_protocol.list_push_requests(account_id)

async def admin_push_domain(domain_id: int, to_email: str, admin_id: int, note: Optional[str] = None) -> Dict:
    return await _push_protocol.admin_push_domain(domain_id, to_email, admin_id, note)

async def expire_stale_push_requests() -> int:
    return await _push_protocol.expire_stale_push_requests()
