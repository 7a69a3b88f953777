"""
PostgreSQL database functions for the DomainDesk fulfillment core
Direct database connections with raw SQL queries for transparency and performance
"""

import os
import json
import asyncio
import logging
import threading
import time
import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List, Any, Sequence, Callable

logger = logging.getLogger(__name__)

_connection_pool = None
_pool_lock = threading.Lock()
_last_pool_recreation = 0.0

# Connection-level failures worth recreating the pool for
_DEAD_CONNECTION_MARKERS = ('connection closed', 'server closed', 'ssl connection', 'timeout', 'broken pipe')

# ====================================================================
# CONNECTION POOL
# ====================================================================

def _create_pool(minconn: int) -> psycopg2.pool.ThreadedConnectionPool:
    database_url = os.getenv('DATABASE_URL')
    if not database_url:
        raise ValueError("DATABASE_URL environment variable not found")

    return psycopg2.pool.ThreadedConnectionPool(
        minconn=minconn,
        maxconn=int(os.getenv('DB_POOL_MAX', '40')),
        dsn=database_url,
        cursor_factory=RealDictCursor,
        connect_timeout=5,
        keepalives_idle=600,
        keepalives_interval=30,
        keepalives_count=3,
        sslmode=os.getenv('DB_SSLMODE', 'prefer')
    )

def get_connection_pool():
    """Get or create the shared connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                try:
                    _connection_pool = _create_pool(minconn=int(os.getenv('DB_POOL_MIN', '2')))
                    logger.info("✅ Connection pool created")
                except Exception as e:
                    logger.error(f"Failed to create connection pool: {e}")
                    raise
    return _connection_pool

def recreate_connection_pool() -> bool:
    """Recreate the pool to recover from dead connections (rate limited to once per 10s)"""
    global _connection_pool, _last_pool_recreation

    now = time.time()
    if now - _last_pool_recreation < 10:
        logger.debug("🔄 Pool recreation rate limited - skipping")
        return False

    with _pool_lock:
        try:
            if _connection_pool is not None:
                try:
                    _connection_pool.closeall()
                except Exception as close_error:
                    logger.warning(f"⚠️ Error closing existing pool: {close_error}")
            _connection_pool = _create_pool(minconn=1)
            _last_pool_recreation = now
            logger.info("✅ Connection pool recreated after dead connection")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to recreate connection pool: {e}")
            _connection_pool = None
            return False

def get_connection():
    """Get a healthy pooled connection in autocommit mode"""
    attempts = 3
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        conn = None
        try:
            conn = get_connection_pool().getconn()
            conn.autocommit = True
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            return conn
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            last_error = e
            if conn is not None:
                return_connection(conn, is_broken=True)
            logger.warning(f"🔄 Pool connection {attempt + 1}/{attempts} unhealthy: {e}")
            if any(marker in str(e).lower() for marker in _DEAD_CONNECTION_MARKERS):
                recreate_connection_pool()
            time.sleep(0.1 * (attempt + 1))

    logger.error(f"❌ Database connection error after {attempts} attempts: {last_error}")
    raise psycopg2.OperationalError(f"Could not obtain a healthy connection: {last_error}")

def return_connection(conn, is_broken: bool = False):
    """Return a connection to the pool, closing it when broken"""
    try:
        pool = get_connection_pool()
        pool.putconn(conn, close=is_broken)
    except Exception:
        try:
            conn.close()
        except Exception:
            pass

async def execute_query(query: str, params: Optional[Sequence] = None) -> List[Dict]:
    """Execute a SELECT query and return rows as dicts (retries connection-level failures)"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    rows = cursor.fetchall()
                    return [dict(row) for row in rows] if rows else []
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                if conn:
                    return_connection(conn, is_broken=True)
                    conn = None
                if attempt < max_retries - 1:
                    logger.warning(f"🔄 Database query retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + attempt * 0.5)
                    continue
                logger.error(f"💥 Database query failed after {max_retries} attempts: {e}")
                raise
            except Exception as e:
                logger.error(f"❌ Database query error: {e}")
                raise
            finally:
                if conn:
                    return_connection(conn)
        return []

    return await asyncio.to_thread(_execute)

async def execute_update(query: str, params: Optional[Sequence] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return affected rows (never retried to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            if any(marker in str(e).lower() for marker in _DEAD_CONNECTION_MARKERS):
                recreate_connection_pool()
            logger.error(f"💥 Database update connection failed: {e}")
            raise
        except Exception as e:
            logger.error(f"💥 Database update failed: {e}")
            raise
        finally:
            if conn:
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)

async def execute_returning(query: str, params: Optional[Sequence] = None) -> Optional[Dict]:
    """Execute a write with a RETURNING clause and return the first row"""

    def _execute() -> Optional[Dict]:
        conn = None
        try:
            conn = get_connection()
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
                return dict(row) if row else None
        finally:
            if conn:
                return_connection(conn)

    return await asyncio.to_thread(_execute)

async def run_in_transaction(func, *args, **kwargs):
    """Run func(conn, *args, **kwargs) inside a single transaction in a worker thread"""

    def _execute_in_transaction():
        conn = get_connection()
        try:
            conn.autocommit = False
            try:
                result = func(conn, *args, **kwargs)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.autocommit = True
        finally:
            return_connection(conn)

    return await asyncio.to_thread(_execute_in_transaction)

async def check_database_health() -> bool:
    """Lightweight connectivity check used by the health endpoint"""
    try:
        rows = await execute_query("SELECT 1 AS ok")
        return bool(rows and rows[0].get('ok') == 1)
    except Exception as e:
        logger.warning(f"⚠️ Database health check failed: {e}")
        return False

def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=_json_default)

def _json_default(value: Any):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

# ====================================================================
# SCHEMA
# ====================================================================

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        email VARCHAR(255) UNIQUE NOT NULL,
        username VARCHAR(255),
        full_name VARCHAR(255),
        phone VARCHAR(50),
        stripe_customer_id VARCHAR(255),
        default_payment_method_id VARCHAR(255),
        is_admin BOOLEAN DEFAULT FALSE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id),
        order_number VARCHAR(50) UNIQUE NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'completed', 'partial', 'failed', 'refunded')),
        payment_status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (payment_status IN ('pending', 'paid', 'failed', 'refunded', 'partial_refund')),
        subtotal DECIMAL(10,2) NOT NULL DEFAULT 0,
        tax DECIMAL(10,2) NOT NULL DEFAULT 0,
        total DECIMAL(10,2) NOT NULL DEFAULT 0,
        stripe_payment_intent_id VARCHAR(255) UNIQUE,
        stripe_charge_id VARCHAR(255),
        registrant_contact JSONB,
        extended_attributes JSONB DEFAULT '{}',
        registrar_mode VARCHAR(20) NOT NULL DEFAULT 'test',
        auto_renew BOOLEAN DEFAULT FALSE,
        requires_manual_review BOOLEAN DEFAULT FALSE,
        notes TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        completed_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id SERIAL PRIMARY KEY,
        order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        item_type VARCHAR(20) NOT NULL CHECK (item_type IN ('register', 'transfer', 'renew')),
        domain_name VARCHAR(255) NOT NULL,
        tld VARCHAR(63) NOT NULL,
        years INTEGER NOT NULL DEFAULT 1,
        auth_code VARCHAR(255),
        unit_price DECIMAL(10,2) NOT NULL DEFAULT 0,
        total_price DECIMAL(10,2) NOT NULL DEFAULT 0,
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
        registrar_order_id VARCHAR(255),
        error_message TEXT,
        claimed_at TIMESTAMP,
        processed_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)",
    """
    CREATE TABLE IF NOT EXISTS domains (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id),
        domain_name VARCHAR(255) NOT NULL,
        tld VARCHAR(63) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'transfer_pending', 'transfer_failed', 'suspended', 'expired')),
        expiration_date TIMESTAMP,
        auto_renew BOOLEAN DEFAULT FALSE,
        auto_renew_payment_method_id VARCHAR(255),
        is_locked BOOLEAN DEFAULT TRUE,
        registrar_mode VARCHAR(20) NOT NULL DEFAULT 'test',
        registrar_order_id VARCHAR(255),
        registrar_transfer_id VARCHAR(255),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (domain_name, tld)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_domains_user ON domains(user_id)",
    "ALTER TABLE order_items ADD COLUMN IF NOT EXISTS claimed_at TIMESTAMP",
    "ALTER TABLE domains ADD COLUMN IF NOT EXISTS registrar_transfer_id VARCHAR(255)",
    """
    CREATE INDEX IF NOT EXISTS idx_order_items_processing
    ON order_items(claimed_at) WHERE status = 'processing'
    """,
    """
    CREATE TABLE IF NOT EXISTS balance_transactions (
        id SERIAL PRIMARY KEY,
        transaction_type VARCHAR(50) NOT NULL,
        amount DECIMAL(10,2) NOT NULL,
        fee_amount DECIMAL(10,2) DEFAULT 0,
        net_amount DECIMAL(10,2),
        balance_before DECIMAL(10,2),
        balance_after DECIMAL(10,2),
        domain_name VARCHAR(255),
        order_id INTEGER REFERENCES orders(id) ON DELETE SET NULL,
        initiated_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
        auto_refill BOOLEAN DEFAULT FALSE,
        registrar_transaction_id VARCHAR(255),
        notes TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_balance_transactions_created ON balance_transactions(created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS domain_push_requests (
        id SERIAL PRIMARY KEY,
        domain_id INTEGER NOT NULL REFERENCES domains(id) ON DELETE CASCADE,
        from_user_id INTEGER NOT NULL REFERENCES users(id),
        to_user_id INTEGER NOT NULL REFERENCES users(id),
        to_email VARCHAR(255),
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'accepted', 'rejected', 'cancelled', 'expired')),
        initiated_by_admin BOOLEAN DEFAULT FALSE,
        notes TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        responded_at TIMESTAMP,
        expires_at TIMESTAMP
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_domain_push_pending_unique
    ON domain_push_requests(domain_id) WHERE status = 'pending'
    """,
    "CREATE INDEX IF NOT EXISTS idx_domain_push_to_user ON domain_push_requests(to_user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_domain_push_from_user ON domain_push_requests(from_user_id, status)",
    """
    CREATE INDEX IF NOT EXISTS idx_domain_push_expires
    ON domain_push_requests(expires_at) WHERE status = 'pending'
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id SERIAL PRIMARY KEY,
        user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
        action VARCHAR(100) NOT NULL,
        entity_type VARCHAR(50),
        entity_id INTEGER,
        details JSONB,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key VARCHAR(100) PRIMARY KEY,
        value TEXT,
        description TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    INSERT INTO app_settings (key, value, description)
    VALUES ('push_timeout_days', '7', 'Number of days before a pending domain push request expires')
    ON CONFLICT (key) DO NOTHING
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_ledger (
        id SERIAL PRIMARY KEY,
        reference_id INTEGER NOT NULL,
        message_type VARCHAR(50) NOT NULL,
        domain_name VARCHAR(255) NOT NULL DEFAULT '',
        recipient VARCHAR(255),
        sent_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (reference_id, message_type, domain_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tld_pricing (
        tld VARCHAR(63) PRIMARY KEY,
        price_register DECIMAL(10,2),
        price_renew DECIMAL(10,2),
        price_transfer DECIMAL(10,2),
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]

async def init_database():
    """Initialize database tables if they don't exist"""
    def _init():
        conn = get_connection()
        try:
            with conn.cursor() as cursor:
                for statement in _SCHEMA_STATEMENTS:
                    cursor.execute(statement)
            logger.info(f"✅ Database schema ready ({len(_SCHEMA_STATEMENTS)} statements applied)")
        finally:
            return_connection(conn)

    await asyncio.to_thread(_init)

# ====================================================================
# USERS & SETTINGS
# ====================================================================

async def get_user_by_id(user_id: int) -> Optional[Dict]:
    rows = await execute_query("SELECT * FROM users WHERE id = %s", (user_id,))
    return rows[0] if rows else None

async def get_user_by_email(email: str) -> Optional[Dict]:
    """Resolve an account by email (case-insensitive)"""
    rows = await execute_query(
        "SELECT * FROM users WHERE LOWER(email) = LOWER(%s)",
        (email.strip(),)
    )
    return rows[0] if rows else None

async def is_admin_user(user_id: int) -> bool:
    rows = await execute_query("SELECT is_admin FROM users WHERE id = %s", (user_id,))
    return bool(rows and rows[0].get('is_admin'))

async def get_app_setting(key: str, default: Optional[str] = None) -> Optional[str]:
    rows = await execute_query("SELECT value FROM app_settings WHERE key = %s", (key,))
    if rows and rows[0].get('value') is not None:
        return rows[0]['value']
    return default

async def log_activity(user_id: Optional[int], action: str, entity_type: str,
                       entity_id: Optional[int], details: Optional[Dict[str, Any]] = None) -> bool:
    """Append an activity log entry; failures are logged, never raised"""
    try:
        await execute_update(
            """INSERT INTO activity_logs (user_id, action, entity_type, entity_id, details)
               VALUES (%s, %s, %s, %s, %s)""",
            (user_id, action, entity_type, entity_id, _json(details))
        )
        return True
    except Exception as e:
        logger.error(f"❌ Failed to write activity log {action} for {entity_type}:{entity_id}: {e}")
        return False

# ====================================================================
# ORDERS & ORDER ITEMS
# ====================================================================

async def get_order_by_id(order_id: int) -> Optional[Dict]:
    rows = await execute_query("SELECT * FROM orders WHERE id = %s", (order_id,))
    return rows[0] if rows else None

async def get_order_by_payment_reference(payment_reference: str) -> Optional[Dict]:
    rows = await execute_query(
        "SELECT * FROM orders WHERE stripe_payment_intent_id = %s",
        (payment_reference,)
    )
    return rows[0] if rows else None

async def get_order_items(order_id: int) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM order_items WHERE order_id = %s ORDER BY id",
        (order_id,)
    )

async def get_order_item(order_id: int, item_id: int) -> Optional[Dict]:
    rows = await execute_query(
        "SELECT * FROM order_items WHERE id = %s AND order_id = %s",
        (item_id, order_id)
    )
    return rows[0] if rows else None

async def mark_order_paid(order_id: int, charge_id: Optional[str] = None) -> int:
    """
    Record a confirmed payment.

    Only orders still pending/processing move to processing; finished or
    refunded orders keep their status so a replayed event cannot regress them.
    """
    return await execute_update(
        """UPDATE orders
           SET payment_status = CASE WHEN payment_status IN ('refunded', 'partial_refund')
                                     THEN payment_status ELSE 'paid' END,
               status = CASE WHEN status IN ('pending', 'processing') THEN 'processing' ELSE status END,
               stripe_charge_id = COALESCE(%s, stripe_charge_id),
               updated_at = CURRENT_TIMESTAMP
           WHERE id = %s""",
        (charge_id, order_id)
    )

async def mark_order_payment_failed(order_id: int) -> int:
    return await execute_update(
        """UPDATE orders
           SET payment_status = 'failed',
               status = CASE WHEN status = 'pending' THEN 'failed' ELSE status END,
               updated_at = CURRENT_TIMESTAMP
           WHERE id = %s AND payment_status IN ('pending', 'failed')""",
        (order_id,)
    )

async def flag_order_for_review(order_id: int, reason: str) -> int:
    """Fail an order outright and flag it for manual resolution"""
    return await execute_update(
        """UPDATE orders
           SET status = 'failed',
               requires_manual_review = TRUE,
               notes = CONCAT_WS(E'\\n', notes, %s),
               updated_at = CURRENT_TIMESTAMP
           WHERE id = %s""",
        (reason, order_id)
    )

async def finalize_order_status(order_id: int, derive_status: Callable[[List[str]], str]) -> Optional[str]:
    """
    Recompute and store the aggregate order status.

    The order row is locked before its items are read, so concurrent
    finalizers serialize and the last writer always sees every item outcome
    committed before it took the lock. Refunded orders keep their status.
    Returns the stored status, or None when the order does not exist.
    """

    def _finalize(conn) -> Optional[str]:
        with conn.cursor() as cursor:
            cursor.execute("SELECT status FROM orders WHERE id = %s FOR UPDATE", (order_id,))
            order = cursor.fetchone()
            if not order:
                return None
            if order['status'] == 'refunded':
                return order['status']

            cursor.execute("SELECT status FROM order_items WHERE order_id = %s", (order_id,))
            status = derive_status([row['status'] for row in cursor.fetchall()])
            cursor.execute(
                """UPDATE orders
                   SET status = %s,
                       updated_at = CURRENT_TIMESTAMP,
                       completed_at = CASE WHEN %s IN ('completed', 'partial', 'failed')
                                           THEN COALESCE(completed_at, CURRENT_TIMESTAMP) ELSE completed_at END
                   WHERE id = %s""",
                (status, status, order_id)
            )
        return status

    return await run_in_transaction(_finalize)

async def record_order_refund(order_id: int, full_refund: bool, note: Optional[str] = None) -> int:
    if full_refund:
        return await execute_update(
            """UPDATE orders
               SET payment_status = 'refunded', status = 'refunded',
                   notes = CONCAT_WS(E'\\n', notes, %s),
                   updated_at = CURRENT_TIMESTAMP
               WHERE id = %s""",
            (note, order_id)
        )
    return await execute_update(
        """UPDATE orders
           SET payment_status = 'partial_refund',
               notes = CONCAT_WS(E'\\n', notes, %s),
               updated_at = CURRENT_TIMESTAMP
           WHERE id = %s""",
        (note, order_id)
    )

async def claim_order_item(item_id: int, from_statuses: Sequence[str] = ('pending',)) -> Optional[Dict]:
    """
    Atomically move an item to processing.

    Returns the claimed row, or None when another delivery already owns it
    or it has reached a terminal status.
    """
    return await execute_returning(
        """UPDATE order_items
           SET status = 'processing', error_message = NULL, claimed_at = CURRENT_TIMESTAMP
           WHERE id = %s AND status = ANY(%s)
           RETURNING *""",
        (item_id, list(from_statuses))
    )

async def record_item_failure(item_id: int, error_message: str) -> int:
    return await execute_update(
        """UPDATE order_items
           SET status = 'failed', error_message = %s, processed_at = CURRENT_TIMESTAMP
           WHERE id = %s AND status = 'processing'""",
        (error_message[:2000], item_id)
    )

async def fail_stale_items(stale_seconds: int, error_message: str) -> List[Dict]:
    """Fail items left in processing longer than stale_seconds; returns the reaped rows"""

    def _reap(conn) -> List[Dict]:
        with conn.cursor() as cursor:
            cursor.execute(
                """UPDATE order_items
                   SET status = 'failed', error_message = %s, processed_at = CURRENT_TIMESTAMP
                   WHERE status = 'processing'
                     AND COALESCE(claimed_at, created_at) < CURRENT_TIMESTAMP - make_interval(secs => %s)
                   RETURNING id, order_id, item_type, domain_name, tld""",
                (error_message[:2000], stale_seconds)
            )
            return [dict(row) for row in cursor.fetchall()]

    return await run_in_transaction(_reap)

async def record_item_success(item_id: int, registrar_order_id: Optional[str],
                              domain_upsert: Optional[Dict[str, Any]] = None,
                              domain_expiration: Optional[Dict[str, Any]] = None) -> Optional[int]:
    """
    Complete an item and apply its domain change in one transaction.

    domain_upsert inserts or refreshes the (name, tld) row for register and
    transfer; domain_expiration moves an existing domain's expiry for renew.
    Returns the affected domain id.
    """

    def _record(conn) -> Optional[int]:
        domain_id = None
        with conn.cursor() as cursor:
            if domain_upsert:
                cursor.execute(
                    """INSERT INTO domains
                       (user_id, domain_name, tld, status, expiration_date, auto_renew,
                        registrar_mode, registrar_order_id, registrar_transfer_id)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                       ON CONFLICT (domain_name, tld) DO UPDATE SET
                           user_id = EXCLUDED.user_id,
                           status = EXCLUDED.status,
                           expiration_date = COALESCE(EXCLUDED.expiration_date, domains.expiration_date),
                           auto_renew = EXCLUDED.auto_renew,
                           registrar_mode = EXCLUDED.registrar_mode,
                           registrar_order_id = EXCLUDED.registrar_order_id,
                           registrar_transfer_id = EXCLUDED.registrar_transfer_id,
                           updated_at = CURRENT_TIMESTAMP
                       RETURNING id""",
                    (
                        domain_upsert['user_id'], domain_upsert['domain_name'], domain_upsert['tld'],
                        domain_upsert['status'], domain_upsert.get('expiration_date'),
                        bool(domain_upsert.get('auto_renew')), domain_upsert['registrar_mode'],
                        registrar_order_id, domain_upsert.get('registrar_transfer_id')
                    )
                )
                row = cursor.fetchone()
                domain_id = row['id'] if row else None
            elif domain_expiration:
                cursor.execute(
                    """UPDATE domains
                       SET expiration_date = COALESCE(%s, expiration_date),
                           status = CASE WHEN status = 'expired' THEN 'active' ELSE status END,
                           updated_at = CURRENT_TIMESTAMP
                       WHERE id = %s
                       RETURNING id""",
                    (domain_expiration.get('expiration_date'), domain_expiration['domain_id'])
                )
                row = cursor.fetchone()
                domain_id = row['id'] if row else None

            cursor.execute(
                """UPDATE order_items
                   SET status = 'completed', registrar_order_id = %s,
                       error_message = NULL, processed_at = CURRENT_TIMESTAMP
                   WHERE id = %s AND status = 'processing'""",
                (registrar_order_id, item_id)
            )
        return domain_id

    return await run_in_transaction(_record)

async def create_order_with_items(user_id: int, order_number: str, items: List[Dict[str, Any]],
                                  registrant_contact: Optional[Dict[str, Any]], registrar_mode: str,
                                  extended_attributes: Optional[Dict[str, Any]] = None,
                                  auto_renew: bool = False, notes: Optional[str] = None) -> Dict:
    """Create an order and its items atomically; returns the order row"""

    def _create(conn) -> Dict:
        subtotal = sum((Decimal(str(item['total_price'])) for item in items), Decimal('0'))
        with conn.cursor() as cursor:
            cursor.execute(
                """INSERT INTO orders
                   (user_id, order_number, subtotal, tax, total, registrant_contact,
                    extended_attributes, registrar_mode, auto_renew, notes)
                   VALUES (%s, %s, %s, 0, %s, %s, %s, %s, %s, %s)
                   RETURNING *""",
                (user_id, order_number, subtotal, subtotal, _json(registrant_contact),
                 _json(extended_attributes or {}), registrar_mode, auto_renew, notes)
            )
            order = dict(cursor.fetchone())
            for item in items:
                cursor.execute(
                    """INSERT INTO order_items
                       (order_id, item_type, domain_name, tld, years, auth_code, unit_price, total_price)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s)""",
                    (order['id'], item['item_type'], item['domain_name'], item['tld'],
                     item.get('years', 1), item.get('auth_code'), item['unit_price'], item['total_price'])
                )
        return order

    return await run_in_transaction(_create)

async def get_latest_contact_snapshot(user_id: int) -> Optional[Dict]:
    """Most recent registrant contact the account checked out with"""
    rows = await execute_query(
        """SELECT registrant_contact FROM orders
           WHERE user_id = %s AND registrant_contact IS NOT NULL
           ORDER BY created_at DESC, id DESC LIMIT 1""",
        (user_id,)
    )
    return rows[0]['registrant_contact'] if rows else None

async def set_order_payment_reference(order_id: int, payment_reference: str) -> int:
    return await execute_update(
        "UPDATE orders SET stripe_payment_intent_id = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
        (payment_reference, order_id)
    )

# ====================================================================
# DOMAINS
# ====================================================================

async def get_domain_by_name(domain_name: str, tld: str) -> Optional[Dict]:
    rows = await execute_query(
        "SELECT * FROM domains WHERE domain_name = %s AND tld = %s",
        (domain_name.lower(), tld.lower())
    )
    return rows[0] if rows else None

async def get_pending_transfers() -> List[Dict]:
    """Domains whose inbound registrar transfer has not settled yet"""
    return await execute_query(
        """SELECT d.*, u.email
           FROM domains d
           JOIN users u ON u.id = d.user_id
           WHERE d.status = 'transfer_pending'
           ORDER BY d.updated_at ASC"""
    )

async def complete_domain_transfer(domain_id: int, expiration_date: Optional[datetime]) -> int:
    return await execute_update(
        """UPDATE domains
           SET status = 'active',
               expiration_date = COALESCE(%s, expiration_date),
               updated_at = CURRENT_TIMESTAMP
           WHERE id = %s AND status = 'transfer_pending'""",
        (expiration_date, domain_id)
    )

async def fail_domain_transfer(domain_id: int) -> int:
    return await execute_update(
        """UPDATE domains
           SET status = 'transfer_failed', auto_renew = FALSE, updated_at = CURRENT_TIMESTAMP
           WHERE id = %s AND status = 'transfer_pending'""",
        (domain_id,)
    )

async def disable_domain_auto_renew(domain_id: int) -> int:
    return await execute_update(
        "UPDATE domains SET auto_renew = FALSE, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
        (domain_id,)
    )

async def get_tld_renew_price(tld: str) -> Optional[Decimal]:
    rows = await execute_query("SELECT price_renew FROM tld_pricing WHERE tld = %s", (tld.lower(),))
    if rows and rows[0].get('price_renew') is not None:
        return Decimal(str(rows[0]['price_renew']))
    return None

async def get_auto_renew_candidates(window_days: int) -> List[Dict]:
    """
    Active auto-renew domains expiring inside the window.

    Domains with a renew item already pending or in progress are skipped so
    a daily run never charges twice for the same renewal.
    """
    return await execute_query(
        """SELECT d.*, u.email, u.full_name, u.phone, u.stripe_customer_id,
                  COALESCE(d.auto_renew_payment_method_id, u.default_payment_method_id) AS payment_method_id
           FROM domains d
           JOIN users u ON u.id = d.user_id
           WHERE d.auto_renew = TRUE
             AND d.status = 'active'
             AND d.expiration_date IS NOT NULL
             AND d.expiration_date <= CURRENT_TIMESTAMP + make_interval(days => %s)
             AND NOT EXISTS (
                 SELECT 1 FROM order_items oi
                 JOIN orders o ON o.id = oi.order_id
                 WHERE oi.item_type = 'renew'
                   AND oi.domain_name = d.domain_name AND oi.tld = d.tld
                   AND oi.status IN ('pending', 'processing')
                   AND o.payment_status IN ('pending', 'paid')
             )
           ORDER BY d.expiration_date ASC""",
        (window_days,)
    )

# ====================================================================
# NOTIFICATION LEDGER
# ====================================================================

async def claim_notification(reference_id: int, message_type: str, domain_name: str = '',
                             recipient: Optional[str] = None) -> bool:
    """
    Reserve a (reference, message type, domain) notification slot.

    Returns False when the same notification was already sent.
    """
    row = await execute_returning(
        """INSERT INTO notification_ledger (reference_id, message_type, domain_name, recipient)
           VALUES (%s, %s, %s, %s)
           ON CONFLICT (reference_id, message_type, domain_name) DO NOTHING
           RETURNING id""",
        (reference_id, message_type, domain_name or '', recipient)
    )
    return row is not None
