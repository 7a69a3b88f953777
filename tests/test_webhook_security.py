"""
Webhook security and HTTP surface tests
Stripe signature verification, event dispatch and error-to-status mapping for the API routes
"""

import json
import time
import pytest
import pytest_asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from aiohttp.test_utils import TestClient, TestServer

import webhook_handler
from services.fulfillment_orchestrator import OrderIntegrityError, ItemRetryError
from services.push_protocol import PushExpiredError, PushPermissionError
from services.stripe_payments import (
    compute_signature, verify_webhook_signature, construct_event,
    StripeSignatureError, StripeConfigurationError
)

SECRET = 'whsec_test_domaindesk'


def sign(payload: bytes, secret: str = SECRET, timestamp=None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"


def event_payload(event_type='payment_intent.succeeded', obj=None) -> bytes:
    return json.dumps({
        'id': 'evt_test_1',
        'type': event_type,
        'data': {'object': obj or {'id': 'pi_test_1', 'latest_charge': 'ch_test_1',
                                   'metadata': {'order_id': '1001'}}},
    }).encode('utf-8')


class TestSignatureVerification:
    """verify_webhook_signature and construct_event"""

    def test_valid_signature(self):
        payload = event_payload()
        assert verify_webhook_signature(payload, sign(payload), SECRET) is True

    def test_any_matching_v1_signature_is_accepted(self):
        payload = event_payload()
        timestamp = int(time.time())
        header = f"t={timestamp},v1=deadbeef,v1={compute_signature(payload, timestamp, SECRET)}"
        assert verify_webhook_signature(payload, header, SECRET) is True

    def test_tampered_payload_rejected(self):
        payload = event_payload()
        header = sign(payload)
        with pytest.raises(StripeSignatureError):
            verify_webhook_signature(payload.replace(b'pi_test_1', b'pi_evil_1'), header, SECRET)

    def test_wrong_secret_rejected(self):
        payload = event_payload()
        with pytest.raises(StripeSignatureError):
            verify_webhook_signature(payload, sign(payload, 'whsec_other'), SECRET)

    def test_missing_header_rejected(self):
        with pytest.raises(StripeSignatureError):
            verify_webhook_signature(event_payload(), None, SECRET)

    def test_malformed_header_rejected(self):
        with pytest.raises(StripeSignatureError):
            verify_webhook_signature(event_payload(), 'garbage', SECRET)

    def test_stale_timestamp_rejected(self):
        payload = event_payload()
        stale = int(time.time()) - 3600
        with pytest.raises(StripeSignatureError):
            verify_webhook_signature(payload, sign(payload, timestamp=stale), SECRET, tolerance=300)

    def test_missing_secret_is_configuration_error(self):
        payload = event_payload()
        with pytest.raises(StripeConfigurationError):
            verify_webhook_signature(payload, sign(payload), None)

    def test_construct_event_requires_event_shape(self):
        payload = b'{"not": "an event"}'
        with pytest.raises(StripeSignatureError):
            construct_event(payload, sign(payload), SECRET)


@pytest_asyncio.fixture
async def client():
    webhook_handler._webhook_failure_count = 0
    async with TestClient(TestServer(webhook_handler.create_app())) as test_client:
        yield test_client


@pytest.fixture
def orchestration(monkeypatch):
    """Mocked orchestrator entry points as imported by the handler"""
    mocks = {
        'process_payment_success': AsyncMock(return_value={'status': 'completed', 'order_id': 1001, 'items': []}),
        'process_payment_failure': AsyncMock(return_value={'status': 'payment_failed', 'order_id': 1001}),
        'process_charge_refunded': AsyncMock(return_value={'status': 'refunded', 'order_id': 1001}),
        'retry_order_item': AsyncMock(),
        'refund_order': AsyncMock(),
    }
    for name, mock in mocks.items():
        monkeypatch.setattr(webhook_handler, name, mock)
    return mocks


@pytest.mark.asyncio
class TestStripeWebhookEndpoint:
    """POST /webhook/stripe"""

    async def test_valid_payment_event_dispatched(self, client, orchestration):
        payload = event_payload()

        response = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})

        assert response.status == 200
        body = await response.json()
        assert body['received'] is True
        assert body['status'] == 'completed'
        orchestration['process_payment_success'].assert_awaited_once_with(
            'pi_test_1', 'ch_test_1', {'order_id': '1001'}
        )

    async def test_invalid_signature_rejected_before_dispatch(self, client, orchestration):
        payload = event_payload()

        response = await client.post('/webhook/stripe', data=payload,
                                     headers={'Stripe-Signature': sign(payload, 'whsec_forged')})

        assert response.status == 400
        orchestration['process_payment_success'].assert_not_awaited()
        assert webhook_handler._webhook_failure_count == 1

    async def test_missing_signature_rejected(self, client, orchestration):
        response = await client.post('/webhook/stripe', data=event_payload())

        assert response.status == 400
        orchestration['process_payment_success'].assert_not_awaited()

    async def test_unconfigured_secret_returns_503(self, client, orchestration, monkeypatch):
        import config
        monkeypatch.delenv('STRIPE_WEBHOOK_SECRET')
        config.reset_config()
        payload = event_payload()

        response = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})

        assert response.status == 503
        orchestration['process_payment_success'].assert_not_awaited()

    async def test_repeated_failures_alert_once(self, client, orchestration, alerts):
        payload = event_payload()
        for _ in range(webhook_handler._webhook_failure_threshold):
            await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': 't=1,v1=bad'})

        await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})

        assert alerts.send_alert.await_count == 1
        assert webhook_handler._webhook_failure_count == 0

    async def test_payment_failed_event(self, client, orchestration):
        payload = event_payload('payment_intent.payment_failed', {
            'id': 'pi_test_2', 'last_payment_error': {'message': 'Your card was declined.'}, 'metadata': {}
        })

        response = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})

        assert response.status == 200
        orchestration['process_payment_failure'].assert_awaited_once_with('pi_test_2', 'Your card was declined.', {})

    async def test_charge_refunded_event(self, client, orchestration):
        payload = event_payload('charge.refunded', {
            'id': 'ch_test_3', 'payment_intent': 'pi_test_3', 'amount': 2400, 'amount_refunded': 2400
        })

        response = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})

        assert response.status == 200
        orchestration['process_charge_refunded'].assert_awaited_once_with('pi_test_3', 2400, 2400)

    async def test_unhandled_event_acknowledged(self, client, orchestration):
        payload = event_payload('customer.created', {'id': 'cus_1'})

        response = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})

        assert response.status == 200
        assert (await response.json())['status'] == 'ignored'

    async def test_integrity_error_returns_422(self, client, orchestration):
        orchestration['process_payment_success'].side_effect = OrderIntegrityError("contact missing", 1001)
        payload = event_payload()

        response = await client.post('/webhook/stripe', data=payload, headers={'Stripe-Signature': sign(payload)})

        assert response.status == 422


@pytest.mark.asyncio
class TestPushEndpoints:
    """Push request routes map protocol errors to HTTP statuses"""

    async def test_identity_required(self, client):
        response = await client.post('/api/push-requests/5/accept')
        assert response.status == 401

    async def test_expired_request_returns_410(self, client, monkeypatch):
        monkeypatch.setattr(webhook_handler, 'accept_push_request',
                            AsyncMock(side_effect=PushExpiredError("Push request has expired")))

        response = await client.post('/api/push-requests/5/accept', headers={'X-Account-Id': '2'})

        assert response.status == 410
        assert (await response.json())['success'] is False

    async def test_permission_error_returns_403(self, client, monkeypatch):
        monkeypatch.setattr(webhook_handler, 'cancel_push_request',
                            AsyncMock(side_effect=PushPermissionError("Only the sender can cancel")))

        response = await client.post('/api/push-requests/5/cancel', headers={'X-Account-Id': '2'})

        assert response.status == 403

    async def test_create_returns_201(self, client, monkeypatch):
        create = AsyncMock(return_value={'id': 9, 'status': 'pending'})
        monkeypatch.setattr(webhook_handler, 'create_push_request', create)

        response = await client.post('/api/push-requests', headers={'X-Account-Id': '2'},
                                     json={'domain_id': 300, 'to_email': 'friend@example.com'})

        assert response.status == 201
        create.assert_awaited_once_with(300, 2, 'friend@example.com', None)


@pytest.mark.asyncio
class TestAdminEndpoints:
    """Staff routes require an admin account"""

    async def test_non_admin_forbidden(self, client, orchestration, monkeypatch):
        monkeypatch.setattr(webhook_handler, 'is_admin_user', AsyncMock(return_value=False))

        response = await client.post('/api/admin/orders/1/items/2/retry', headers={'X-Account-Id': '3'})

        assert response.status == 403
        orchestration['retry_order_item'].assert_not_awaited()

    async def test_retry_conflict_returns_409(self, client, orchestration, monkeypatch):
        monkeypatch.setattr(webhook_handler, 'is_admin_user', AsyncMock(return_value=True))
        orchestration['retry_order_item'].side_effect = ItemRetryError("Only failed items can be retried")

        response = await client.post('/api/admin/orders/1/items/2/retry', headers={'X-Account-Id': '3'})

        assert response.status == 409
        orchestration['retry_order_item'].assert_awaited_once_with(1, 2, 3)

    async def test_refund_amount_validation(self, client, orchestration, monkeypatch):
        monkeypatch.setattr(webhook_handler, 'is_admin_user', AsyncMock(return_value=True))

        response = await client.post('/api/admin/orders/1/refund', headers={'X-Account-Id': '3'},
                                     json={'amount': 'lots'})

        assert response.status == 400
        orchestration['refund_order'].assert_not_awaited()

    async def test_registrar_balance_with_refill_preview(self, client, registrar, monkeypatch):
        monkeypatch.setattr(webhook_handler, 'is_admin_user', AsyncMock(return_value=True))
        monkeypatch.setattr(webhook_handler, 'get_registrar', lambda mode: registrar)
        registrar.balance = Decimal('10.00')

        response = await client.get('/api/admin/registrar/balance?cost=35.00', headers={'X-Account-Id': '3'})

        assert response.status == 200
        body = await response.json()
        assert body['balance'] == '10.00'
        assert body['refill']['refill_amount'] == '50.00'
        assert body['refill']['net_amount'] == '47.50'

    async def test_manual_refill_below_minimum(self, client, monkeypatch):
        monkeypatch.setattr(webhook_handler, 'is_admin_user', AsyncMock(return_value=True))
        guard = MagicMock()
        guard.manual_refill = AsyncMock()
        monkeypatch.setattr(webhook_handler, 'get_balance_guard', lambda: guard)

        response = await client.post('/api/admin/registrar/refill', headers={'X-Account-Id': '3'},
                                     json={'amount': '10.00'})

        assert response.status == 400
        guard.manual_refill.assert_not_awaited()
