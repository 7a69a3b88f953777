"""
Webhook and API handler for the fulfillment core
aiohttp server for Stripe payment events, domain push requests and staff operations
"""

import json
import logging
import time
import asyncio
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Dict, Any, Optional
from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from config import get_config
from database import check_database_health, is_admin_user
from admin_alerts import send_critical_alert
from services.balance_guard import calculate_refill, get_balance_guard
from services.enom import RegistrarError, get_registrar
from services.fulfillment_orchestrator import (
    OrderIntegrityError, OrderNotFoundError, ItemRetryError, RefundError,
    process_payment_success, process_payment_failure, process_charge_refunded,
    retry_order_item, refund_order
)
from services.push_protocol import (
    PushRequestError, create_push_request, accept_push_request, reject_push_request,
    cancel_push_request, get_push_request, list_push_requests, admin_push_domain
)
from services.stripe_payments import (
    StripeSignatureError, StripeConfigurationError, StripeAPIError, construct_event,
    PAYMENT_SUCCEEDED, PAYMENT_FAILED, CHARGE_REFUNDED
)

logger = logging.getLogger(__name__)

# Suppress aiohttp access logs for successful requests but keep errors
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

# Webhook failure tracking for alerting
_webhook_failure_count = 0
_last_successful_webhook = 0.0
_webhook_failure_threshold = 5  # Alert after 5 consecutive failures

_webhook_server: Optional[web.AppRunner] = None


def _json_default(value: Any):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

_dumps = partial(json.dumps, default=_json_default)

def json_response(data: Any, status: int = 200) -> Response:
    return web.json_response(data, status=status, dumps=_dumps)

# ====================================================================
# WEBHOOK AUTH TRACKING
# ====================================================================

def alert_webhook_authentication_failure():
    """Alert administrators about repeated webhook signature failures"""
    global _webhook_failure_count
    _webhook_failure_count += 1

    if _webhook_failure_count >= _webhook_failure_threshold:
        logger.error(f"🚨 CRITICAL: Stripe webhook authentication failure threshold reached "
                     f"({_webhook_failure_count} failures)")
        if _webhook_failure_count == _webhook_failure_threshold:
            asyncio.create_task(send_critical_alert(
                "StripeWebhook",
                f"Stripe webhook signature verification failed {_webhook_failure_count} times consecutively. "
                f"Paid orders are not being fulfilled. Check STRIPE_WEBHOOK_SECRET.",
                "security"
            ))
    elif _webhook_failure_count % 2 == 0:
        logger.warning(f"⚠️ Webhook authentication failures: {_webhook_failure_count} "
                       f"(threshold: {_webhook_failure_threshold})")

def record_successful_webhook():
    """Record a successful webhook authentication"""
    global _webhook_failure_count, _last_successful_webhook

    if _webhook_failure_count > 0:
        logger.info(f"✅ Webhook authentication recovered after {_webhook_failure_count} failures")
        _webhook_failure_count = 0

    _last_successful_webhook = time.time()

# ====================================================================
# REQUEST HELPERS
# ====================================================================

def _error(message: str, status: int) -> Response:
    return json_response({'success': False, 'error': message}, status=status)

def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(text=_dumps({'success': False, 'error': message}), content_type='application/json')

def _account_id(request: Request) -> int:
    """Caller identity as established by the upstream auth layer"""
    raw = request.headers.get('X-Account-Id')
    if not raw:
        raise web.HTTPUnauthorized(text=_dumps({'success': False, 'error': 'Authentication required'}),
                                   content_type='application/json')
    try:
        return int(raw)
    except ValueError:
        raise _bad_request('Invalid X-Account-Id header')

async def _admin_id(request: Request) -> int:
    account_id = _account_id(request)
    if not await is_admin_user(account_id):
        raise web.HTTPForbidden(text=_dumps({'success': False, 'error': 'Admin access required'}),
                                content_type='application/json')
    return account_id

def _int_param(request: Request, name: str) -> int:
    try:
        return int(request.match_info[name])
    except (KeyError, ValueError):
        raise _bad_request(f"Invalid {name}")

async def _read_json(request: Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise _bad_request('Request body must be JSON')
    if not isinstance(body, dict):
        raise _bad_request('Request body must be a JSON object')
    return body

def _decimal_field(body: Dict[str, Any], name: str, required: bool = False) -> Optional[Decimal]:
    raw = body.get(name)
    if raw is None or raw == '':
        if required:
            raise _bad_request(f"{name} is required")
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise _bad_request(f"{name} must be a number")
    if value <= 0:
        raise _bad_request(f"{name} must be positive")
    return value

# ====================================================================
# ERROR MAPPING
# ====================================================================

@web.middleware
async def error_middleware(request: Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except PushRequestError as e:
        return _error(str(e), e.status_code)
    except OrderIntegrityError as e:
        return _error(str(e), 422)
    except OrderNotFoundError as e:
        return _error(str(e), 404)
    except (ItemRetryError, RefundError) as e:
        return _error(str(e), 409)
    except (StripeAPIError, RegistrarError) as e:
        logger.error(f"❌ Upstream error on {request.method} {request.path}: {e}")
        return _error(str(e), 502)
    except Exception as e:
        logger.error(f"❌ Error handling {request.method} {request.path}: {e}", exc_info=True)
        return _error('Internal server error', 500)

# ====================================================================
# HEALTH
# ====================================================================

async def health_handler(request: Request) -> Response:
    """Liveness plus database and configuration checks"""
    config = get_config()
    database_ok = await check_database_health()
    registrar = get_registrar(config.default_registrar_mode)

    issues = []
    if not config.stripe_webhook_secret:
        issues.append('STRIPE_WEBHOOK_SECRET not configured')
    if not registrar.is_configured():
        issues.append(f'Registrar credentials missing for {config.default_registrar_mode.value} mode')

    response_data = {
        'status': 'healthy' if database_ok else 'degraded',
        'service': 'domaindesk_fulfillment',
        'timestamp': time.time(),
        'checks': {
            'database': database_ok,
            'registrar_mode': config.default_registrar_mode.value,
            'issues': issues,
            'webhook_failures': _webhook_failure_count,
        },
    }
    return json_response(response_data, status=200 if database_ok else 503)

# ====================================================================
# STRIPE WEBHOOK
# ====================================================================

async def stripe_webhook_handler(request: Request) -> Response:
    """
    Verify and dispatch a Stripe event.

    Unverifiable payloads are rejected before anything is read from them.
    Per-item fulfillment failures still acknowledge with 200; only integrity
    and transport failures return an error status.
    """
    config = get_config()
    payload = await request.read()

    try:
        event = construct_event(payload, request.headers.get('Stripe-Signature'),
                                config.stripe_webhook_secret, config.stripe_webhook_tolerance)
    except StripeConfigurationError as e:
        logger.error(f"🛡️ WEBHOOK AUTH FAILURE: {e}")
        alert_webhook_authentication_failure()
        return _error('Webhook verification unavailable', 503)
    except StripeSignatureError as e:
        logger.error(f"🛡️ WEBHOOK AUTH FAILURE: {e}")
        alert_webhook_authentication_failure()
        return _error('Invalid signature', 400)

    record_successful_webhook()
    logger.info(f"📦 Stripe event {event.get('id')} received: {event['type']}")

    result = await _dispatch_stripe_event(event)
    return json_response({'received': True, **result})

async def _dispatch_stripe_event(event: Dict[str, Any]) -> Dict[str, Any]:
    event_type = event['type']
    obj = (event.get('data') or {}).get('object') or {}

    if event_type == PAYMENT_SUCCEEDED:
        return await process_payment_success(obj.get('id'), obj.get('latest_charge'), obj.get('metadata') or {})

    if event_type == PAYMENT_FAILED:
        reason = (obj.get('last_payment_error') or {}).get('message')
        return await process_payment_failure(obj.get('id'), reason, obj.get('metadata') or {})

    if event_type == CHARGE_REFUNDED:
        return await process_charge_refunded(obj.get('payment_intent'), int(obj.get('amount') or 0),
                                             int(obj.get('amount_refunded') or 0))

    logger.info(f"ℹ️ Unhandled Stripe event type: {event_type}")
    return {'status': 'ignored'}

# ====================================================================
# PUSH REQUESTS
# ====================================================================

async def list_push_requests_handler(request: Request) -> Response:
    account_id = _account_id(request)
    return json_response({'success': True, **await list_push_requests(account_id)})

async def create_push_request_handler(request: Request) -> Response:
    account_id = _account_id(request)
    body = await _read_json(request)
    try:
        domain_id = int(body.get('domain_id'))
    except (TypeError, ValueError):
        raise _bad_request('domain_id is required')

    push_request = await create_push_request(domain_id, account_id, body.get('to_email'), body.get('note'))
    return json_response({'success': True, 'push_request': push_request}, status=201)

async def get_push_request_handler(request: Request) -> Response:
    account_id = _account_id(request)
    push_request = await get_push_request(_int_param(request, 'request_id'), account_id)
    return json_response({'success': True, 'push_request': push_request})

async def accept_push_request_handler(request: Request) -> Response:
    account_id = _account_id(request)
    push_request = await accept_push_request(_int_param(request, 'request_id'), account_id)
    return json_response({'success': True, 'push_request': push_request})

async def reject_push_request_handler(request: Request) -> Response:
    account_id = _account_id(request)
    push_request = await reject_push_request(_int_param(request, 'request_id'), account_id)
    return json_response({'success': True, 'push_request': push_request})

async def cancel_push_request_handler(request: Request) -> Response:
    account_id = _account_id(request)
    push_request = await cancel_push_request(_int_param(request, 'request_id'), account_id)
    return json_response({'success': True, 'push_request': push_request})

# ====================================================================
# STAFF OPERATIONS
# ====================================================================

async def retry_item_handler(request: Request) -> Response:
    admin_id = await _admin_id(request)
    result = await retry_order_item(_int_param(request, 'order_id'), _int_param(request, 'item_id'), admin_id)
    return json_response(result)

async def refund_order_handler(request: Request) -> Response:
    admin_id = await _admin_id(request)
    body = await _read_json(request)
    result = await refund_order(_int_param(request, 'order_id'), _decimal_field(body, 'amount'),
                                body.get('reason'), admin_id)
    return json_response(result)

async def admin_push_handler(request: Request) -> Response:
    admin_id = await _admin_id(request)
    body = await _read_json(request)
    push_request = await admin_push_domain(_int_param(request, 'domain_id'), body.get('to_email'),
                                           admin_id, body.get('note'))
    return json_response({'success': True, 'push_request': push_request})

def _registrar_for(request: Request, body: Optional[Dict[str, Any]] = None):
    raw_mode = (body or {}).get('mode') or request.query.get('mode') or get_config().default_registrar_mode
    try:
        return get_registrar(raw_mode)
    except ValueError as e:
        raise _bad_request(str(e))

async def registrar_balance_handler(request: Request) -> Response:
    """Current registrar balance, optionally with the refill an operation of ?cost= would need"""
    await _admin_id(request)
    registrar = _registrar_for(request)
    config = get_config()
    balance = await registrar.check_balance()

    response_data: Dict[str, Any] = {
        'success': True,
        'mode': registrar.mode.value,
        'balance': balance,
        'low_balance_threshold': config.low_balance_alert,
        'low_balance': balance < config.low_balance_alert,
    }
    if request.query.get('cost'):
        cost = _decimal_field(dict(request.query), 'cost')
        plan = calculate_refill(cost, balance, config)
        response_data['refill'] = {
            'needs_refill': plan.needs_refill,
            'shortfall': plan.shortfall,
            'refill_amount': plan.refill_amount,
            'fee_amount': plan.fee_amount,
            'net_amount': plan.net_amount,
        }
    return json_response(response_data)

async def registrar_refill_handler(request: Request) -> Response:
    admin_id = await _admin_id(request)
    body = await _read_json(request)
    amount = _decimal_field(body, 'amount', required=True)
    config = get_config()
    if amount < config.min_refill:
        raise _bad_request(f"Minimum refill amount is ${config.min_refill}")

    registrar = _registrar_for(request, body)
    result = await get_balance_guard().manual_refill(amount, admin_id, registrar)
    return json_response(result)

# ====================================================================
# SERVER
# ====================================================================

def create_app() -> web.Application:
    app = web.Application(middlewares=[error_middleware])

    app.router.add_get('/', health_handler)
    app.router.add_get('/health', health_handler)
    app.router.add_get('/healthz', health_handler)

    app.router.add_post('/webhook/stripe', stripe_webhook_handler)

    app.router.add_get('/api/push-requests', list_push_requests_handler)
    app.router.add_post('/api/push-requests', create_push_request_handler)
    app.router.add_get('/api/push-requests/{request_id}', get_push_request_handler)
    app.router.add_post('/api/push-requests/{request_id}/accept', accept_push_request_handler)
    app.router.add_post('/api/push-requests/{request_id}/reject', reject_push_request_handler)
    app.router.add_post('/api/push-requests/{request_id}/cancel', cancel_push_request_handler)

    app.router.add_post('/api/admin/orders/{order_id}/items/{item_id}/retry', retry_item_handler)
    app.router.add_post('/api/admin/orders/{order_id}/refund', refund_order_handler)
    app.router.add_post('/api/admin/domains/{domain_id}/push', admin_push_handler)
    app.router.add_get('/api/admin/registrar/balance', registrar_balance_handler)
    app.router.add_post('/api/admin/registrar/refill', registrar_refill_handler)

    return app

async def start_webhook_server(port: int = 5000, host: str = '0.0.0.0') -> web.AppRunner:
    """Start the aiohttp server in the running event loop"""
    global _webhook_server

    try:
        runner = web.AppRunner(create_app())
        await runner.setup()

        site = web.TCPSite(runner, host, port)
        await site.start()

        _webhook_server = runner
        logger.info(f"✅ Webhook server started on http://{host}:{port}")
        logger.info("🔗 Stripe webhook endpoint: /webhook/stripe")
        return runner

    except Exception as e:
        logger.error(f"❌ Failed to start webhook server: {e}")
        raise

async def stop_webhook_server():
    global _webhook_server

    if _webhook_server:
        await _webhook_server.cleanup()
        _webhook_server = None

    logger.info("✅ Webhook server stopped")
