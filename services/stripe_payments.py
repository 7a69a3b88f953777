"""
Stripe payment processor integration
Webhook signature verification, off-session renewal charges and refunds over the Stripe REST API
"""

import hashlib
import hmac
import json
import logging
import time
import httpx
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, Optional, List, Tuple

from config import FulfillmentConfig, get_config

logger = logging.getLogger(__name__)

STRIPE_API_BASE = 'https://api.stripe.com/v1'

# Event types the fulfillment core acts on
PAYMENT_SUCCEEDED = 'payment_intent.succeeded'
PAYMENT_FAILED = 'payment_intent.payment_failed'
CHARGE_REFUNDED = 'charge.refunded'


class StripeSignatureError(Exception):
    """Webhook payload could not be authenticated"""
    pass

class StripeConfigurationError(Exception):
    """Stripe secret key or webhook secret is not configured"""
    pass

class StripeAPIError(Exception):
    """Stripe rejected an API request"""

    def __init__(self, message: str, status_code: int = 0, code: Optional[str] = None,
                 error: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.error = error or {}


def to_cents(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))

def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(Decimal('0.01'))

# ====================================================================
# WEBHOOK SIGNATURES
# ====================================================================

def _parse_signature_header(header: str) -> Tuple[int, List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(','):
        key, _, value = part.strip().partition('=')
        if key == 't':
            try:
                timestamp = int(value)
            except ValueError:
                raise StripeSignatureError("Malformed timestamp in Stripe-Signature header")
        elif key == 'v1' and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise StripeSignatureError("Stripe-Signature header missing timestamp or v1 signature")
    return timestamp, signatures

def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode('utf-8') + payload
    return hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()

def verify_webhook_signature(payload: bytes, sig_header: Optional[str], secret: Optional[str],
                             tolerance: int = 300, now: Optional[float] = None) -> bool:
    """
    Verify a Stripe-Signature header against the raw request body.

    Raises StripeConfigurationError when no secret is configured and
    StripeSignatureError for a missing, stale or mismatched signature.
    """
    if not secret:
        raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise StripeSignatureError("Missing Stripe-Signature header")

    timestamp, signatures = _parse_signature_header(sig_header)
    expected = compute_signature(payload, timestamp, secret)

    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise StripeSignatureError("No matching v1 signature")

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        raise StripeSignatureError(f"Signature timestamp outside tolerance ({tolerance}s)")

    return True

def construct_event(payload: bytes, sig_header: Optional[str], secret: Optional[str],
                    tolerance: int = 300) -> Dict[str, Any]:
    """Verify then decode a webhook event"""
    verify_webhook_signature(payload, sig_header, secret, tolerance)
    try:
        event = json.loads(payload.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StripeSignatureError(f"Signed payload is not valid JSON: {e}")
    if not isinstance(event, dict) or 'type' not in event:
        raise StripeSignatureError("Signed payload is not a Stripe event")
    return event

# ====================================================================
# API CLIENT
# ====================================================================

class StripeService:
    """Minimal Stripe REST client for charges and refunds"""

    def __init__(self, config: Optional[FulfillmentConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client

    def is_available(self) -> bool:
        return bool(self.config.stripe_secret_key)

    async def _post(self, path: str, data: Dict[str, Any],
                    idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if not self.is_available():
            raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured")

        headers = {'Authorization': f"Bearer {self.config.stripe_secret_key}"}
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key

        url = f"{STRIPE_API_BASE}{path}"
        if self._client is not None:
            response = await self._client.post(url, data=data, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0)) as client:
                response = await client.post(url, data=data, headers=headers)

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get('error', {}) if isinstance(body, dict) else {}
            message = error.get('message') or f"Stripe HTTP {response.status_code}"
            raise StripeAPIError(message, response.status_code, error.get('code'), error)

        return body

    @staticmethod
    def _metadata_fields(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
        return {f"metadata[{key}]": str(value) for key, value in (metadata or {}).items()}

    async def charge_off_session(self, customer_id: str, payment_method_id: str, amount: Decimal,
                                 metadata: Optional[Dict[str, Any]] = None,
                                 description: Optional[str] = None,
                                 idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Confirm a PaymentIntent against a saved card without the customer present.

        Card declines come back as a result, not an exception:
        {'success', 'payment_intent_id', 'status', 'card_declined', 'requires_action', 'error'}
        """
        data = {
            'amount': to_cents(amount),
            'currency': 'usd',
            'customer': customer_id,
            'payment_method': payment_method_id,
            'off_session': 'true',
            'confirm': 'true',
        }
        if description:
            data['description'] = description
        data.update(self._metadata_fields(metadata))

        try:
            intent = await self._post('/payment_intents', data, idempotency_key)
        except StripeAPIError as e:
            intent = e.error.get('payment_intent') or {}
            declined = e.code in ('card_declined', 'expired_card', 'insufficient_funds') or \
                e.error.get('type') == 'card_error'
            logger.warning(f"💳 STRIPE: Off-session charge for {customer_id} failed: {e} (code={e.code})")
            return {
                'success': False,
                'payment_intent_id': intent.get('id'),
                'status': intent.get('status', 'failed'),
                'card_declined': declined,
                'requires_action': e.code == 'authentication_required',
                'error': str(e),
            }

        status = intent.get('status')
        logger.info(f"💳 STRIPE: Off-session charge {intent.get('id')} for ${amount} → {status}")
        return {
            'success': status in ('succeeded', 'processing'),
            'payment_intent_id': intent.get('id'),
            'status': status,
            'card_declined': False,
            'requires_action': status == 'requires_action',
            'error': None if status in ('succeeded', 'processing') else f"PaymentIntent status {status}",
        }

    async def create_refund(self, payment_intent_id: str, amount: Optional[Decimal] = None,
                            reason: Optional[str] = None,
                            metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Refund a PaymentIntent in full, or partially when amount is given"""
        data: Dict[str, Any] = {'payment_intent': payment_intent_id}
        if amount is not None:
            data['amount'] = to_cents(amount)
        if reason in ('duplicate', 'fraudulent', 'requested_by_customer'):
            data['reason'] = reason
        data.update(self._metadata_fields(metadata))

        refund = await self._post('/refunds', data)
        logger.info(f"💸 STRIPE: Refund {refund.get('id')} for {payment_intent_id} "
                    f"(${from_cents(refund.get('amount', 0))}) → {refund.get('status')}")
        return refund


_stripe: Optional[StripeService] = None

def get_stripe_service() -> StripeService:
    global _stripe
    if _stripe is None:
        _stripe = StripeService()
    return _stripe
