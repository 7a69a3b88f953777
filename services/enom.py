"""
eNom reseller API integration
Registrar client for balance, refill, registration, renewal and transfer commands

One client exists per registrar mode. The mode always comes from the caller
(the domain's or order's stored mode), never from process-wide state.
"""

import os
import re
import asyncio
import logging
import httpx
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Optional, Any

from config import get_config
from models import RegistrarMode, RegistrantContact, ExtendedAttributes

logger = logging.getLogger(__name__)

ENOM_HOSTS = {
    RegistrarMode.PRODUCTION: 'https://reseller.enom.com',
    RegistrarMode.TEST: 'https://resellertest.enom.com',
}

# Commands that move money or create registrar orders are never resent after the
# request may have reached eNom
SPENDING_COMMANDS = frozenset({'Purchase', 'Extend', 'TP_CreateOrder', 'RefillAccount'})

_CENT = Decimal('0.01')


class RegistrarError(Exception):
    """Raised when eNom reports an error or returns an unusable response"""

    def __init__(self, message: str, command: Optional[str] = None, errors: Optional[list] = None):
        super().__init__(message)
        self.command = command
        self.errors = errors or []


class RegistrarTimeoutError(RegistrarError):
    """Raised when an eNom call exceeds its time bound"""
    pass


def parse_text_response(text: str) -> Dict[str, str]:
    """Parse eNom's key=value text format; ';' lines are comments"""
    result: Dict[str, str] = {}
    for line in text.splitlines():
        if line.startswith(';') or '=' not in line:
            continue
        key, value = line.split('=', 1)
        key = key.strip()
        if key:
            result[key] = value.strip()
    return result


def _to_decimal(value: Any, default: str = '0') -> Decimal:
    if value in (None, ''):
        return Decimal(default)
    try:
        return Decimal(str(value).replace(',', ''))
    except InvalidOperation:
        raise RegistrarError(f"Unparseable amount from registrar: {value!r}")


def _redact(params: Dict[str, Any]) -> Dict[str, Any]:
    redacted = dict(params)
    for key in ('uid', 'pw', 'AuthInfo', 'DomainPassword'):
        if key in redacted:
            redacted[key] = '***'
    return redacted


class EnomService:
    """eNom reseller API client bound to a single registrar mode"""

    def __init__(self, mode: RegistrarMode, client: Optional[httpx.AsyncClient] = None):
        self.mode = RegistrarMode.parse(mode)
        config = get_config()
        self.timeout = config.registrar_timeout
        self.refill_fee_percent = config.refill_fee_percent
        self.min_refill = config.min_refill

        if self.mode == RegistrarMode.PRODUCTION:
            self.uid = os.getenv('ENOM_UID')
            self.pw = os.getenv('ENOM_PW')
        else:
            self.uid = os.getenv('ENOM_TEST_UID') or os.getenv('ENOM_UID')
            self.pw = os.getenv('ENOM_TEST_PW') or os.getenv('ENOM_PW')

        self.base_url = ENOM_HOSTS[self.mode]
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.uid and self.pw)

    def _init_client(self):
        """Initialize pooled HTTP client with bounded timeouts"""
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=30.0
            )
            timeout = httpx.Timeout(
                connect=5.0,
                read=self.timeout,
                write=10.0,
                pool=5.0
            )
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                limits=limits,
                timeout=timeout,
                headers={'User-Agent': 'DomainDesk/1.0'}
            )
            logger.info(f"🚀 ENOM: HTTP client initialized for {self.mode.value} ({self.base_url})")

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def _request(self, command: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """
        Execute an eNom command and return the parsed response.

        Read-only commands retry on any timeout. Spending commands retry only
        when the connection was never established.
        """
        if not self.is_configured():
            raise RegistrarError(f"eNom credentials not configured for {self.mode.value} mode", command)

        self._init_client()
        query = {'command': command, 'uid': self.uid, 'pw': self.pw, 'responsetype': 'text'}
        query.update({k: v for k, v in (params or {}).items() if v is not None})

        spending = command in SPENDING_COMMANDS
        retryable = (httpx.ConnectTimeout, httpx.PoolTimeout, httpx.ConnectError) if spending else \
            (httpx.TimeoutException, httpx.ConnectError)
        max_retries = 3
        base_delay = 1.0

        for attempt in range(max_retries):
            try:
                logger.debug(f"📡 ENOM: {command} ({self.mode.value}) params={_redact(query)}")
                response = await self._client.get('/interface.asp', params=query)
                break
            except retryable as e:
                if attempt + 1 >= max_retries:
                    logger.error(f"❌ ENOM: {command} failed after {max_retries} attempts: {e}")
                    raise RegistrarTimeoutError(f"eNom {command} timed out", command) from e
                delay = base_delay * (2 ** attempt)
                logger.warning(f"⚠️ ENOM: {command} attempt {attempt + 1}/{max_retries} failed ({type(e).__name__}), retrying in {delay}s")
                await asyncio.sleep(delay)
            except httpx.TimeoutException as e:
                logger.error(f"❌ ENOM: {command} timed out after the request was sent - not retrying")
                raise RegistrarTimeoutError(f"eNom {command} timed out", command) from e
            except httpx.HTTPError as e:
                raise RegistrarError(f"eNom request failed: {e}", command) from e

        if response.status_code >= 400:
            raise RegistrarError(f"eNom HTTP {response.status_code} for {command}", command)

        parsed = parse_text_response(response.text)
        if not parsed:
            raise RegistrarError(f"Empty or unparseable eNom response for {command}", command)

        try:
            err_count = int(parsed.get('ErrCount', '0') or 0)
        except ValueError:
            err_count = 0
        if err_count > 0:
            errors = [parsed[f'Err{i}'] for i in range(1, err_count + 1) if parsed.get(f'Err{i}')]
            message = ', '.join(errors) or 'Unknown eNom error'
            logger.warning(f"⚠️ ENOM: {command} rejected: {message}")
            raise RegistrarError(message, command, errors)

        return parsed

    # ----------------------------------------------------------------
    # Balance
    # ----------------------------------------------------------------

    async def check_balance(self) -> Decimal:
        """Available prepaid balance"""
        response = await self._request('GetBalance')
        raw = response.get('AvailableBalance') or response.get('Balance')
        balance = _to_decimal(raw)
        logger.info(f"💰 ENOM: Available balance ({self.mode.value}): ${balance}")
        return balance

    async def refill_balance(self, amount: Decimal) -> Dict[str, Any]:
        """
        Top up the prepaid balance from the card on file at eNom.

        Returns:
            Dict with net_amount, fee_amount, transaction_id
        """
        amount = Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)
        if amount < self.min_refill:
            raise RegistrarError(f"Minimum refill amount is ${self.min_refill}", 'RefillAccount')

        response = await self._request('RefillAccount', {'Amount': f"{amount:.2f}"})

        fee_amount = (amount * self.refill_fee_percent).quantize(_CENT, rounding=ROUND_HALF_UP)
        net_amount = amount - fee_amount
        transaction_id = response.get('TransactionID') or response.get('OrderID')
        logger.info(f"💰 ENOM: Refilled ${amount} (fee ${fee_amount}, net ${net_amount}) txn={transaction_id}")
        return {
            'amount': amount,
            'fee_amount': fee_amount,
            'net_amount': net_amount,
            'transaction_id': transaction_id,
        }

    # ----------------------------------------------------------------
    # Domain operations
    # ----------------------------------------------------------------

    def _contact_params(self, contact: RegistrantContact) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for prefix in ('Registrant', 'Admin', 'Tech', 'AuxBilling'):
            params.update(contact.to_registrar_params(prefix))
        return params

    async def register_domain(self, domain_name: str, tld: str, years: int,
                              contact: RegistrantContact,
                              extended_attributes: Optional[ExtendedAttributes] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {'sld': domain_name, 'tld': tld, 'NumYears': years, 'UseDNS': 'default'}
        params.update(self._contact_params(contact))
        if extended_attributes:
            params.update(extended_attributes.for_tld(tld))

        response = await self._request('Purchase', params)
        order_id = response.get('OrderID')
        if not order_id:
            raise RegistrarError(f"eNom returned no OrderID for {domain_name}.{tld}", 'Purchase')

        logger.info(f"✅ ENOM: Registered {domain_name}.{tld} for {years}y (order {order_id})")
        return {
            'order_id': order_id,
            'expiration_date': response.get('ExpirationDate') or None,
            'status': response.get('DomainStatus') or 'registered',
        }

    async def renew_domain(self, domain_name: str, tld: str, years: int) -> Dict[str, Any]:
        response = await self._request('Extend', {'sld': domain_name, 'tld': tld, 'NumYears': years})
        order_id = response.get('OrderID')
        if not order_id:
            raise RegistrarError(f"eNom returned no OrderID for renewal of {domain_name}.{tld}", 'Extend')

        logger.info(f"✅ ENOM: Renewed {domain_name}.{tld} for {years}y (order {order_id})")
        return {
            'order_id': order_id,
            'new_expiration': response.get('ExpirationDate') or None,
        }

    async def initiate_transfer(self, domain_name: str, tld: str, auth_code: str,
                                contact: RegistrantContact, years: int = 1) -> Dict[str, Any]:
        if not auth_code:
            raise RegistrarError(f"Authorization code required to transfer {domain_name}.{tld}", 'TP_CreateOrder')

        params: Dict[str, Any] = {
            'sld': domain_name,
            'tld': tld,
            'AuthInfo': auth_code,
            'DomainPassword': auth_code,
            'NumYears': years,
            'OrderType': 'AutoVerification',
        }
        params.update(self._contact_params(contact))

        response = await self._request('TP_CreateOrder', params)
        transfer_order_id = response.get('TransferOrderID') or response.get('transferorderid')
        order_id = response.get('OrderID') or transfer_order_id
        if not order_id:
            raise RegistrarError(f"eNom returned no order id for transfer of {domain_name}.{tld}", 'TP_CreateOrder')

        logger.info(f"✅ ENOM: Transfer initiated for {domain_name}.{tld} (transfer order {transfer_order_id})")
        return {
            'order_id': order_id,
            'transfer_order_id': transfer_order_id,
            'status': response.get('TransferStatus') or 'pending',
        }

    async def get_domain_info(self, domain_name: str, tld: str) -> Dict[str, Any]:
        response = await self._request('GetDomainInfo', {'sld': domain_name, 'tld': tld})
        lowered = {k.lower(): v for k, v in response.items()}
        return {
            'expiration_date': lowered.get('expiration') or None,
            'status': lowered.get('registrationstatus') or 'Unknown',
            'registrar_domain_id': lowered.get('domainnameid'),
        }

    async def get_transfer_status(self, transfer_order_id: str) -> Dict[str, Any]:
        """
        Status of an inbound transfer order.

        state is normalized to completed, failed or pending; the raw eNom
        status and description are kept for logging and alerts.
        """
        response = await self._request('TP_GetOrderDetail', {'TransferOrderID': transfer_order_id})
        lowered = {k.lower(): v for k, v in response.items()}
        raw_status = (lowered.get('transferstatus') or lowered.get('status') or '').strip()

        normalized = raw_status.lower()
        if normalized.startswith('complete'):
            state = 'completed'
        elif normalized.startswith(('cancel', 'fail', 'reject')):
            state = 'failed'
        else:
            state = 'pending'

        return {
            'transfer_order_id': transfer_order_id,
            'state': state,
            'status': raw_status or 'Unknown',
            'description': lowered.get('statusdesc') or lowered.get('statusdescription'),
        }


# ====================================================================
# PER-MODE CLIENT REGISTRY
# ====================================================================

_registrars: Dict[RegistrarMode, EnomService] = {}

def get_registrar(mode) -> EnomService:
    """Get the client for an explicit registrar mode"""
    parsed = RegistrarMode.parse(mode)
    service = _registrars.get(parsed)
    if service is None:
        service = EnomService(parsed)
        _registrars[parsed] = service
    return service

async def close_registrars():
    for service in list(_registrars.values()):
        await service.close()
    _registrars.clear()

_DATE_PATTERNS = ('%m/%d/%Y %I:%M:%S %p', '%m/%d/%Y', '%Y-%m-%d %H:%M:%S', '%Y-%m-%d')

def parse_registrar_date(value: Optional[str]):
    """Parse the date formats eNom returns; None when absent or unrecognized"""
    if not value:
        return None
    cleaned = re.sub(r'\s+', ' ', str(value).strip())
    for pattern in _DATE_PATTERNS:
        try:
            return datetime.strptime(cleaned, pattern)
        except ValueError:
            continue
    logger.warning(f"⚠️ ENOM: Unrecognized date format: {value}")
    return None
