"""
Shared test fixtures for the DomainDesk fulfillment core test suite
Provides factories, an in-memory order store, a fake registrar and a fake push-request database
"""

import os
import copy
import asyncio
import threading
import itertools
import pytest
import psycopg2
import factory
from factory.faker import Faker
from factory.declarations import Sequence, LazyFunction
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Any, Optional, List
from unittest.mock import AsyncMock, MagicMock
import logging

# Configure test logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

# Test environment configuration
test_env_vars = {
    'REGISTRAR_DEFAULT_MODE': 'test',
    'REGISTRAR_SAFETY_MARGIN': '5.00',
    'REGISTRAR_REFILL_INCREMENT': '25.00',
    'REGISTRAR_MIN_REFILL': '25.00',
    'REGISTRAR_REFILL_FEE_PERCENT': '0.05',
    'REGISTRAR_AUTO_REFILL_ENABLED': 'true',
    'REGISTRAR_LOW_BALANCE_ALERT': '0',
    'FULFILLMENT_ITEM_TIMEOUT_SECONDS': '5',
    'PUSH_TIMEOUT_DAYS': '7',
    'STRIPE_SECRET_KEY': 'sk_test_domaindesk',
    'STRIPE_WEBHOOK_SECRET': 'whsec_test_domaindesk',
    'RENEWAL_BATCH_DELAY': '0',
    'TELEGRAM_BOT_TOKEN': 'test_token',
}
for key, value in test_env_vars.items():
    os.environ[key] = value
os.environ.pop('NOTIFIER_URL', None)

import admin_alerts
import config as config_module
from models import RegistrarMode
from services import push_protocol
from services.balance_ledger import BalanceLedger, LedgerWriteError
from services.enom import RegistrarError
from services.notifier import NotifierService

# ====================================================================
# FACTORIES
# ====================================================================

class UserFactory(factory.Factory):
    """Factory for account rows"""
    class Meta:
        model = dict

    id = Sequence(lambda n: n + 1)  # type: ignore[misc]
    email = Faker('email')  # type: ignore[misc]
    full_name = Faker('name')  # type: ignore[misc]
    phone = '+1.5555550100'
    is_admin = False
    stripe_customer_id = Sequence(lambda n: f'cus_test_{n:04d}')  # type: ignore[misc]
    default_payment_method_id = Sequence(lambda n: f'pm_test_{n:04d}')  # type: ignore[misc]


class ContactFactory(factory.Factory):
    """Factory for registrant contact snapshots as stored on orders"""
    class Meta:
        model = dict

    first_name = Faker('first_name')  # type: ignore[misc]
    last_name = Faker('last_name')  # type: ignore[misc]
    email = Faker('email')  # type: ignore[misc]
    phone = '+1.5555550123'
    address1 = Faker('street_address')  # type: ignore[misc]
    city = Faker('city')  # type: ignore[misc]
    state = 'CA'
    postal_code = '94107'
    country = 'US'


class OrderFactory(factory.Factory):
    """Factory for paid-checkout order rows"""
    class Meta:
        model = dict

    id = Sequence(lambda n: 1000 + n)  # type: ignore[misc]
    user_id = 1
    order_number = Sequence(lambda n: f'DD-20260101-{n:06d}')  # type: ignore[misc]
    status = 'pending'
    payment_status = 'pending'
    stripe_payment_intent_id = Sequence(lambda n: f'pi_test_{n:06d}')  # type: ignore[misc]
    stripe_charge_id = None
    total = Decimal('0.00')
    registrant_contact = factory.SubFactory(ContactFactory)
    extended_attributes = LazyFunction(dict)  # type: ignore[misc]
    registrar_mode = 'test'
    auto_renew = False
    requires_manual_review = False
    notes = None
    created_at = LazyFunction(datetime.utcnow)  # type: ignore[misc]


class OrderItemFactory(factory.Factory):
    """Factory for order line items"""
    class Meta:
        model = dict

    id = Sequence(lambda n: 5000 + n)  # type: ignore[misc]
    order_id = 1000
    item_type = 'register'
    domain_name = Sequence(lambda n: f'example{n}')  # type: ignore[misc]
    tld = 'com'
    years = 1
    unit_price = Decimal('12.00')
    total_price = Decimal('12.00')
    auth_code = None
    status = 'pending'
    registrar_order_id = None
    error_message = None
    claimed_at = None


class DomainFactory(factory.Factory):
    """Factory for registered domain rows"""
    class Meta:
        model = dict

    id = Sequence(lambda n: 300 + n)  # type: ignore[misc]
    user_id = 1
    domain_name = Sequence(lambda n: f'owned{n}')  # type: ignore[misc]
    tld = 'com'
    status = 'active'
    registrar_mode = 'test'
    expiration_date = LazyFunction(lambda: datetime.utcnow() + timedelta(days=20))  # type: ignore[misc]
    auto_renew = True
    auto_renew_payment_method_id = None

# ====================================================================
# GLOBAL FIXTURES
# ====================================================================

@pytest.fixture(autouse=True)
def fresh_config():
    """Re-read the environment for every test"""
    config_module.reset_config()
    yield config_module.get_config()
    config_module.reset_config()


@pytest.fixture(autouse=True)
def alerts():
    """Replace the Telegram alert system with a recorder"""
    original = admin_alerts._admin_alert_system
    system = MagicMock()
    system.send_alert = AsyncMock(return_value=True)
    system.cleanup_old_alerts = AsyncMock(return_value=0)
    admin_alerts._admin_alert_system = system
    yield system
    admin_alerts._admin_alert_system = original

# ====================================================================
# FAKE REGISTRAR
# ====================================================================

class FakeRegistrar:
    """Stands in for EnomService; records every call and tracks a prepaid balance"""

    def __init__(self, balance='100.00', mode: RegistrarMode = RegistrarMode.TEST,
                 fee_percent='0.05'):
        self.mode = mode
        self.balance = Decimal(balance)
        self.fee_percent = Decimal(fee_percent)
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}
        self.delay = 0.0
        self.operation_cost = Decimal('0.00')
        self._orders = itertools.count(9000)

    def is_configured(self) -> bool:
        return True

    def _maybe_fail(self, method: str, sld: Optional[str] = None):
        error = self.fail_on.get(method) or (self.fail_on.get(sld) if sld else None)
        if error is not None:
            raise error

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def check_balance(self) -> Decimal:
        self.calls.append(('check_balance',))
        self._maybe_fail('check_balance')
        return self.balance

    async def refill_balance(self, amount: Decimal) -> Dict[str, Any]:
        self.calls.append(('refill_balance', amount))
        self._maybe_fail('refill_balance')
        fee = (amount * self.fee_percent).quantize(Decimal('0.01'))
        self.balance += amount - fee
        return {'amount': amount, 'fee_amount': fee, 'net_amount': amount - fee,
                'transaction_id': f'RF-{next(self._orders)}'}

    async def _spend(self, method: str, sld: str):
        if self.delay:
            await asyncio.sleep(self.delay)
        self._maybe_fail(method, sld)
        self.balance -= self.operation_cost
        return str(next(self._orders))

    async def register_domain(self, sld, tld, years, contact, extended_attributes=None):
        self.calls.append(('register_domain', sld, tld, years, contact, extended_attributes))
        order_id = await self._spend('register_domain', sld)
        return {'order_id': order_id, 'expiration_date': '01/15/2027', 'status': 'registered'}

    async def renew_domain(self, sld, tld, years):
        self.calls.append(('renew_domain', sld, tld, years))
        order_id = await self._spend('renew_domain', sld)
        return {'order_id': order_id, 'new_expiration': '01/15/2028'}

    async def initiate_transfer(self, sld, tld, auth_code, contact, years=1):
        self.calls.append(('initiate_transfer', sld, tld, auth_code))
        if not auth_code:
            raise RegistrarError(f"Authorization code required to transfer {sld}.{tld}", 'TP_CreateOrder')
        order_id = await self._spend('initiate_transfer', sld)
        return {'order_id': order_id, 'transfer_order_id': order_id, 'status': 'pending'}

    async def get_domain_info(self, sld, tld):
        self.calls.append(('get_domain_info', sld, tld))
        return {'expiration_date': '01/15/2028', 'status': 'Registered', 'registrar_domain_id': '1'}


@pytest.fixture
def registrar():
    return FakeRegistrar()

# ====================================================================
# IN-MEMORY LEDGER
# ====================================================================

class InMemoryLedger(BalanceLedger):
    """BalanceLedger that keeps rows in a list instead of balance_transactions"""

    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self.fail = False

    async def record_transaction(self, transaction_type, amount, fee_amount=Decimal('0'),
                                 net_amount=None, **fields):
        if self.fail:
            raise LedgerWriteError("ledger unavailable")
        if net_amount is None:
            net_amount = Decimal(str(amount)) - Decimal(str(fee_amount))
        row = {
            'id': len(self.rows) + 1,
            'transaction_type': transaction_type.value,
            'amount': amount,
            'fee_amount': fee_amount,
            'net_amount': net_amount,
            **fields,
        }
        self.rows.append(row)
        return row


@pytest.fixture
def ledger():
    return InMemoryLedger()

# ====================================================================
# IN-MEMORY ORDER STORE
# ====================================================================

class InMemoryOrderStore:
    """Implements the database functions the orchestrator imports, over plain dicts"""

    def __init__(self):
        self.users: Dict[int, Dict] = {}
        self.orders: Dict[int, Dict] = {}
        self.items: Dict[int, Dict] = {}
        self.domains: Dict[int, Dict] = {}
        self.activity: List[Dict] = []
        self.fail_item_success = False
        self.finalize_delay = 0.0
        self._finalize_lock: Optional[asyncio.Lock] = None
        self._domain_ids = itertools.count(800)

    # Seeding helpers

    def add_user(self, **kwargs) -> Dict:
        user = UserFactory(**kwargs)
        self.users[user['id']] = user
        return user

    def add_order(self, items: List[Dict], **kwargs) -> Dict:
        order = OrderFactory(**kwargs)
        order['total'] = sum((Decimal(str(i.get('total_price', '12.00'))) for i in items), Decimal('0.00'))
        self.orders[order['id']] = order
        for fields in items:
            item = OrderItemFactory(order_id=order['id'], **fields)
            self.items[item['id']] = item
        return order

    def add_domain(self, **kwargs) -> Dict:
        domain = DomainFactory(**kwargs)
        self.domains[domain['id']] = domain
        return domain

    def items_for(self, order_id: int) -> List[Dict]:
        return sorted((i for i in self.items.values() if i['order_id'] == order_id), key=lambda i: i['id'])

    def actions(self, action: str) -> List[Dict]:
        return [a for a in self.activity if a['action'] == action]

    # Database API

    async def get_order_by_payment_reference(self, reference):
        for order in self.orders.values():
            if order['stripe_payment_intent_id'] == reference:
                return dict(order)
        return None

    async def get_order_by_id(self, order_id):
        order = self.orders.get(order_id)
        return dict(order) if order else None

    async def get_order_items(self, order_id):
        return [dict(i) for i in self.items_for(order_id)]

    async def get_order_item(self, order_id, item_id):
        item = self.items.get(item_id)
        return dict(item) if item and item['order_id'] == order_id else None

    async def mark_order_paid(self, order_id, charge_id=None):
        order = self.orders[order_id]
        if order['payment_status'] not in ('refunded', 'partial_refund'):
            order['payment_status'] = 'paid'
        if order['status'] in ('pending', 'processing'):
            order['status'] = 'processing'
        order['stripe_charge_id'] = order['stripe_charge_id'] or charge_id
        return True

    async def mark_order_payment_failed(self, order_id):
        order = self.orders[order_id]
        if order['payment_status'] == 'pending':
            order['payment_status'] = 'failed'
        return True

    async def flag_order_for_review(self, order_id, reason):
        order = self.orders[order_id]
        order['status'] = 'failed'
        order['requires_manual_review'] = True
        order['notes'] = reason
        return True

    async def finalize_order_status(self, order_id, derive_status):
        # Stands in for the order row lock; created lazily so it binds to the test loop
        if self._finalize_lock is None:
            self._finalize_lock = asyncio.Lock()
        async with self._finalize_lock:
            order = self.orders.get(order_id)
            if not order:
                return None
            if order['status'] == 'refunded':
                return order['status']
            if self.finalize_delay:
                await asyncio.sleep(self.finalize_delay)
            order['status'] = derive_status([i['status'] for i in self.items_for(order_id)])
            return order['status']

    async def record_order_refund(self, order_id, full_refund, note=None):
        order = self.orders[order_id]
        order['payment_status'] = 'refunded' if full_refund else 'partial_refund'
        if full_refund:
            order['status'] = 'refunded'
        order['notes'] = note
        return True

    async def claim_order_item(self, item_id, from_statuses=('pending',)):
        item = self.items.get(item_id)
        if not item or item['status'] not in from_statuses:
            return None
        item['status'] = 'processing'
        item['error_message'] = None
        item['claimed_at'] = datetime.utcnow()
        return dict(item)

    async def record_item_failure(self, item_id, error_message):
        item = self.items[item_id]
        if item['status'] == 'processing':
            item['status'] = 'failed'
            item['error_message'] = error_message
        return True

    async def fail_stale_items(self, stale_seconds, error_message):
        cutoff = datetime.utcnow() - timedelta(seconds=stale_seconds)
        reaped = []
        for item in sorted(self.items.values(), key=lambda i: i['id']):
            if item['status'] == 'processing' and (item['claimed_at'] or cutoff) < cutoff:
                item['status'] = 'failed'
                item['error_message'] = error_message
                reaped.append({k: item[k] for k in ('id', 'order_id', 'item_type', 'domain_name', 'tld')})
        return reaped

    async def record_item_success(self, item_id, registrar_order_id, domain_upsert=None, domain_expiration=None):
        if self.fail_item_success:
            raise psycopg2.OperationalError("connection closed")
        item = self.items[item_id]
        item['status'] = 'completed'
        item['registrar_order_id'] = registrar_order_id
        item['error_message'] = None

        domain_id = None
        if domain_upsert:
            existing = next((d for d in self.domains.values()
                             if d['domain_name'] == domain_upsert['domain_name']
                             and d['tld'] == domain_upsert['tld']), None)
            if existing:
                existing.update(domain_upsert)
                domain_id = existing['id']
            else:
                domain_id = next(self._domain_ids)
                self.domains[domain_id] = dict(domain_upsert, id=domain_id)
        if domain_expiration:
            domain_id = domain_expiration['domain_id']
            if domain_expiration.get('expiration_date'):
                self.domains[domain_id]['expiration_date'] = domain_expiration['expiration_date']
        return domain_id

    async def get_domain_by_name(self, domain_name, tld):
        for domain in self.domains.values():
            if domain['domain_name'] == domain_name and domain['tld'] == tld:
                return dict(domain)
        return None

    async def get_user_by_id(self, user_id):
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def log_activity(self, user_id, action, entity_type=None, entity_id=None, details=None):
        self.activity.append({'user_id': user_id, 'action': action, 'entity_type': entity_type,
                              'entity_id': entity_id, 'details': details or {}})
        return True


_ORCHESTRATOR_DB_FUNCTIONS = (
    'get_order_by_id', 'get_order_by_payment_reference', 'get_order_items', 'get_order_item',
    'mark_order_paid', 'mark_order_payment_failed', 'flag_order_for_review', 'finalize_order_status',
    'record_order_refund', 'claim_order_item', 'record_item_success', 'record_item_failure',
    'fail_stale_items',
    'get_domain_by_name', 'get_user_by_id', 'log_activity',
)


@pytest.fixture
def store(monkeypatch):
    """In-memory store patched over the orchestrator's and balance guard's database imports"""
    from services import fulfillment_orchestrator, balance_guard

    memory = InMemoryOrderStore()
    for name in _ORCHESTRATOR_DB_FUNCTIONS:
        monkeypatch.setattr(fulfillment_orchestrator, name, getattr(memory, name))
    monkeypatch.setattr(balance_guard, 'log_activity', memory.log_activity)
    return memory


@pytest.fixture
def notifier():
    return MagicMock(spec=NotifierService)

# ====================================================================
# FAKE PUSH DATABASE
# ====================================================================

class FakePushCursor:
    """Cursor that answers the push protocol's SQL statements against in-memory tables"""

    def __init__(self, db: 'FakePushDatabase'):
        self.db = db
        self._rows: List[Dict] = []
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def execute(self, sql, params=()):
        self._rows, self.rowcount = self.db.run(sql, params)


class FakePushConnection:
    def __init__(self, db: 'FakePushDatabase'):
        self.db = db

    def cursor(self):
        return FakePushCursor(self.db)


class FakePushDatabase:
    """
    users, domains and domain_push_requests tables for the push protocol.

    Transactions are serialized by a lock and rolled back on error, which is
    what the FOR UPDATE row locks guarantee for the statements involved.
    """

    def __init__(self):
        self.users: Dict[int, Dict] = {}
        self.domains: Dict[int, Dict] = {}
        self.requests: Dict[int, Dict] = {}
        self.settings: Dict[str, str] = {}
        self.activity: List[Dict] = []
        self.now = datetime.utcnow()
        self._request_ids = itertools.count(1)
        self._tx_lock = threading.Lock()

    # Seeding helpers

    def add_user(self, **kwargs) -> Dict:
        user = UserFactory(**kwargs)
        self.users[user['id']] = user
        return user

    def add_domain(self, **kwargs) -> Dict:
        domain = DomainFactory(**kwargs)
        self.domains[domain['id']] = domain
        return domain

    def expire(self, request_id: int):
        self.requests[request_id]['expires_at'] = self.now - timedelta(seconds=1)

    # Statement dispatch

    def _pending_for_domain(self, domain_id):
        return [r for r in self.requests.values() if r['domain_id'] == domain_id and r['status'] == 'pending']

    def _is_stale(self, request):
        return request['status'] == 'pending' and request['expires_at'] <= self.now

    def _expire_where(self, predicate) -> int:
        count = 0
        for request in self.requests.values():
            if self._is_stale(request) and predicate(request):
                request['status'] = 'expired'
                request['responded_at'] = self.now
                count += 1
        return count

    def _joined(self, request):
        domain = self.domains[request['domain_id']]
        return dict(request, domain_name=domain['domain_name'], tld=domain['tld'],
                    from_email=self.users[request['from_user_id']]['email'])

    def _insert(self, domain_id, from_id, to_id, to_email, note, status, admin, expires_at):
        request = {
            'id': next(self._request_ids),
            'domain_id': domain_id,
            'from_user_id': from_id,
            'to_user_id': to_id,
            'to_email': to_email,
            'status': status,
            'initiated_by_admin': admin,
            'notes': note,
            'expires_at': expires_at,
            'created_at': self.now,
            'responded_at': None if status == 'pending' else self.now,
        }
        self.requests[request['id']] = request
        return request

    def run(self, sql, params):
        p = push_protocol

        if sql is p._LOCK_DOMAIN_SQL:
            domain = self.domains.get(params[0])
            if not domain:
                return [], 0
            return [{k: domain[k] for k in ('id', 'user_id', 'domain_name', 'tld', 'status')}], 1

        if sql is p._EXPIRE_DOMAIN_STALE_SQL:
            return [], self._expire_where(lambda r: r['domain_id'] == params[0])

        if sql is p._FIND_DOMAIN_PENDING_SQL:
            return [{'id': r['id']} for r in self._pending_for_domain(params[0])], 0

        if sql is p._INSERT_PENDING_SQL:
            domain_id, from_id, to_id, to_email, note, days = params
            if self._pending_for_domain(domain_id):
                raise psycopg2.IntegrityError("duplicate key value violates unique constraint")
            request = self._insert(domain_id, from_id, to_id, to_email, note, 'pending', False,
                                   self.now + timedelta(days=days))
            return [dict(request)], 1

        if sql is p._INSERT_ADMIN_ACCEPTED_SQL:
            domain_id, from_id, to_id, to_email, note = params
            request = self._insert(domain_id, from_id, to_id, to_email, note, 'accepted', True, self.now)
            return [dict(request)], 1

        if sql is p._CANCEL_DOMAIN_PENDING_SQL:
            pending = self._pending_for_domain(params[0])
            for request in pending:
                request['status'] = 'cancelled'
                request['responded_at'] = self.now
            return [], len(pending)

        if sql is p._LOCK_REQUEST_SQL:
            request = self.requests.get(params[0])
            if not request:
                return [], 0
            return [dict(request, is_expired=request['expires_at'] <= self.now)], 1

        if sql is p._TRANSITION_SQL:
            new_status, request_id = params
            request = self.requests.get(request_id)
            if not request or request['status'] != 'pending':
                return [], 0
            request['status'] = new_status
            request['responded_at'] = self.now
            return [dict(request)], 1

        if sql is p._REASSIGN_DOMAIN_SQL:
            to_id, domain_id, from_id = params
            domain = self.domains.get(domain_id)
            if not domain or domain['user_id'] != from_id:
                return [], 0
            domain['user_id'] = to_id
            domain['auto_renew_payment_method_id'] = None
            return [], 1

        if sql is p._EXPIRE_REQUEST_SQL:
            return [], self._expire_where(lambda r: r['id'] == params[0])

        if sql is p._EXPIRE_ACCOUNT_SQL:
            return [], self._expire_where(lambda r: params[0] in (r['from_user_id'], r['to_user_id']))

        if sql is p._EXPIRE_ALL_SQL:
            return [], self._expire_where(lambda r: True)

        if sql is p._SELECT_REQUEST_SQL:
            request = self.requests.get(params[0])
            return ([self._joined(request)], 1) if request else ([], 0)

        if sql is p._LIST_ACCOUNT_SQL:
            rows = [self._joined(r) for r in self.requests.values()
                    if params[0] in (r['from_user_id'], r['to_user_id'])]
            rows.sort(key=lambda r: (r['created_at'], r['id']), reverse=True)
            return rows, len(rows)

        raise AssertionError(f"Unexpected SQL in push protocol test: {sql}")

    # Database API

    async def run_in_transaction(self, func, *args, **kwargs):
        def _transaction():
            with self._tx_lock:
                snapshot = copy.deepcopy((self.domains, self.requests))
                try:
                    return func(FakePushConnection(self), *args, **kwargs)
                except Exception:
                    self.domains, self.requests = snapshot
                    raise
        return await asyncio.to_thread(_transaction)

    async def execute_query(self, sql, params=None):
        with self._tx_lock:
            return self.run(sql, params or ())[0]

    async def execute_update(self, sql, params=None):
        with self._tx_lock:
            return self.run(sql, params or ())[1]

    async def get_user_by_email(self, email):
        for user in self.users.values():
            if user['email'].lower() == email.strip().lower():
                return dict(user)
        return None

    async def get_user_by_id(self, user_id):
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def get_app_setting(self, key, default=None):
        return self.settings.get(key, default)

    async def log_activity(self, user_id, action, entity_type=None, entity_id=None, details=None):
        self.activity.append({'user_id': user_id, 'action': action, 'entity_type': entity_type,
                              'entity_id': entity_id, 'details': details or {}})
        return True


@pytest.fixture
def push_db(monkeypatch, notifier):
    """Fake push database patched over services.push_protocol's database imports"""
    db = FakePushDatabase()
    for name in ('run_in_transaction', 'execute_query', 'execute_update', 'get_user_by_email',
                 'get_user_by_id', 'get_app_setting', 'log_activity'):
        monkeypatch.setattr(push_protocol, name, getattr(db, name))
    monkeypatch.setattr(push_protocol, 'get_notifier', lambda: notifier)
    return db
