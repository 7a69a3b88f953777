"""
eNom registrar client tests
Text response parsing, error reporting, refill fees and request construction over a mock transport
"""

import pytest
import httpx
from datetime import datetime
from decimal import Decimal
from urllib.parse import parse_qs

from models import RegistrarMode, RegistrantContact, ExtendedAttributes
from services.enom import (
    EnomService, RegistrarError, RegistrarTimeoutError, parse_text_response, parse_registrar_date,
    get_registrar
)


class RecordingTransport:
    """Answers eNom commands from a dict and remembers every query"""

    def __init__(self, responses):
        self.responses = responses
        self.queries = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        query = {k: v[0] for k, v in parse_qs(request.url.query.decode()).items()}
        self.queries.append(query)
        answer = self.responses[query['command']]
        if isinstance(answer, Exception):
            raise answer
        return httpx.Response(200, text=answer)


@pytest.fixture
def credentials(monkeypatch):
    monkeypatch.setenv('ENOM_TEST_UID', 'reseller')
    monkeypatch.setenv('ENOM_TEST_PW', 'secret')


def make_service(transport: RecordingTransport) -> EnomService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(transport),
                               base_url='https://resellertest.enom.com')
    return EnomService(RegistrarMode.TEST, client=client)


class TestResponseParsing:

    def test_comments_and_blank_lines_ignored(self):
        parsed = parse_text_response(";URL Interface\n\nCommand=GETBALANCE\nErrCount=0\nBalance = 12.50\n")

        assert parsed == {'Command': 'GETBALANCE', 'ErrCount': '0', 'Balance': '12.50'}

    def test_values_may_contain_equals(self):
        assert parse_text_response("Err1=a=b")['Err1'] == 'a=b'

    @pytest.mark.parametrize('raw, expected', [
        ('1/15/2027 10:30:00 AM', datetime(2027, 1, 15, 10, 30)),
        ('01/15/2027', datetime(2027, 1, 15)),
        ('2027-01-15', datetime(2027, 1, 15)),
        ('', None),
        ('soon', None),
    ])
    def test_registrar_dates(self, raw, expected):
        assert parse_registrar_date(raw) == expected


@pytest.mark.asyncio
class TestEnomService:
    """EnomService over httpx.MockTransport"""

    async def test_balance(self, credentials):
        transport = RecordingTransport({'GetBalance': "AvailableBalance=1,234.56\nErrCount=0"})
        service = make_service(transport)

        assert await service.check_balance() == Decimal('1234.56')
        assert transport.queries[0]['uid'] == 'reseller'
        assert transport.queries[0]['responsetype'] == 'text'

    async def test_error_response_raises(self, credentials):
        transport = RecordingTransport({'Purchase': "ErrCount=1\nErr1=Domain not available"})
        service = make_service(transport)
        contact = RegistrantContact('Ada', 'Lovelace', 'ada@example.com', '+44.1')

        with pytest.raises(RegistrarError) as exc_info:
            await service.register_domain('taken', 'com', 1, contact)

        assert exc_info.value.errors == ['Domain not available']
        assert exc_info.value.command == 'Purchase'

    async def test_register_sends_contacts_and_tld_attributes(self, credentials):
        transport = RecordingTransport({'Purchase': "OrderID=555\nErrCount=0"})
        service = make_service(transport)
        contact = RegistrantContact('Ada', 'Lovelace', 'ada@example.com', '+44.1', country='GB')
        attributes = ExtendedAttributes({'uk_legal_type': 'IND', 'in_aadhaar': '1234'})

        result = await service.register_domain('ada', 'uk', 2, contact, attributes)

        query = transport.queries[0]
        assert result['order_id'] == '555'
        assert query['NumYears'] == '2'
        assert query['RegistrantFirstName'] == 'Ada'
        assert query['TechEmailAddress'] == 'ada@example.com'
        assert query['uk_legal_type'] == 'IND'
        assert 'in_aadhaar' not in query

    async def test_refill_reports_fee_and_net(self, credentials):
        transport = RecordingTransport({'RefillAccount': "TransactionID=T-1\nErrCount=0"})
        service = make_service(transport)

        refill = await service.refill_balance(Decimal('50'))

        assert transport.queries[0]['Amount'] == '50.00'
        assert refill == {'amount': Decimal('50.00'), 'fee_amount': Decimal('2.50'),
                          'net_amount': Decimal('47.50'), 'transaction_id': 'T-1'}

    async def test_refill_below_minimum_not_sent(self, credentials):
        transport = RecordingTransport({})
        service = make_service(transport)

        with pytest.raises(RegistrarError):
            await service.refill_balance(Decimal('10.00'))

        assert transport.queries == []

    async def test_spending_command_not_resent_after_read_timeout(self, credentials):
        transport = RecordingTransport({'Extend': httpx.ReadTimeout("read timed out")})
        service = make_service(transport)

        with pytest.raises(RegistrarTimeoutError):
            await service.renew_domain('example', 'com', 1)

        assert len(transport.queries) == 1

    async def test_transfer_requires_auth_code(self, credentials):
        transport = RecordingTransport({})
        service = make_service(transport)
        contact = RegistrantContact('Ada', 'Lovelace', 'ada@example.com', '+44.1')

        with pytest.raises(RegistrarError):
            await service.initiate_transfer('example', 'com', '', contact)

        assert transport.queries == []

    @pytest.mark.parametrize('raw, state', [
        ('Completed', 'completed'),
        ('Cancelled', 'failed'),
        ('Rejected by registrant', 'failed'),
        ('Awaiting auto verification', 'pending'),
    ])
    async def test_transfer_status_normalized(self, credentials, raw, state):
        transport = RecordingTransport({'TP_GetOrderDetail': f"TransferStatus={raw}\nStatusDesc=detail\nErrCount=0"})
        service = make_service(transport)

        status = await service.get_transfer_status('T-77')

        assert status == {'transfer_order_id': 'T-77', 'state': state, 'status': raw, 'description': 'detail'}
        assert transport.queries[0]['TransferOrderID'] == 'T-77'

    async def test_missing_credentials(self, monkeypatch):
        for name in ('ENOM_TEST_UID', 'ENOM_TEST_PW', 'ENOM_UID', 'ENOM_PW'):
            monkeypatch.delenv(name, raising=False)
        service = make_service(RecordingTransport({}))

        assert service.is_configured() is False
        with pytest.raises(RegistrarError):
            await service.check_balance()


class TestRegistrarRegistry:

    def test_one_client_per_mode(self):
        assert get_registrar('test') is get_registrar(RegistrarMode.TEST)
        assert get_registrar('production') is not get_registrar('test')
        assert get_registrar('production').base_url == 'https://reseller.enom.com'
