"""
Operator alerting for the DomainDesk fulfillment core

Alerts that need a human (unreconciled refills, orders flagged for manual
review, webhook signature failures) are pushed to the operators' Telegram
chats and persisted in the admin_alerts table.

Features:
- Severity levels with a configurable minimum
- Rate limiting per window and fingerprint-based suppression of repeats
- Delivery through a dedicated Telegram bot token; logging-only when unset
"""

import os
import json
import hashlib
import logging
from datetime import datetime, timedelta
from enum import Enum
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Any, Union

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from database import execute_update

logger = logging.getLogger(__name__)

# ====================================================================
# ALERT SEVERITY LEVELS AND CATEGORIES
# ====================================================================

class AlertSeverity(Enum):
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"

_SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]

class AlertCategory(Enum):
    """Alert categories for filtering and organization"""
    FULFILLMENT = "fulfillment"
    PAYMENT_PROCESSING = "payment_processing"
    REGISTRAR_BALANCE = "registrar_balance"
    DOMAIN_PUSH = "domain_push"
    SECURITY = "security"
    EXTERNAL_API = "external_api"
    DATABASE = "database"
    WEBHOOK = "webhook"
    SYSTEM_HEALTH = "system_health"

@dataclass
class Alert:
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow()
        if self.fingerprint is None:
            content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
            self.fingerprint = hashlib.md5(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['severity'] = self.severity.value
        data['category'] = self.category.value
        data['timestamp'] = self.timestamp.isoformat() if self.timestamp else None
        return data

# ====================================================================
# ADMIN ALERT CONFIGURATION
# ====================================================================

class AdminAlertConfig:
    """Configuration for operator alerts"""

    def __init__(self):
        self.rate_limit_window = int(os.getenv('ALERT_RATE_LIMIT_WINDOW', '300'))
        self.max_alerts_per_window = int(os.getenv('ALERT_MAX_PER_WINDOW', '10'))
        self.suppression_window = int(os.getenv('ALERT_SUPPRESSION_WINDOW', '3600'))
        self.bot_token = os.getenv('ADMIN_ALERT_BOT_TOKEN')
        self.admin_chat_ids = self._parse_admin_chats()
        self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())
        self.alerts_enabled = os.getenv('ADMIN_ALERTS_ENABLED', 'true').lower() == 'true'

        logger.info(f"✅ Admin Alert Config: enabled={self.alerts_enabled}, "
                    f"admins={len(self.admin_chat_ids)}, min_severity={self.min_severity.value}")

    def _parse_admin_chats(self) -> List[int]:
        chat_ids = []
        raw_ids = [os.getenv('ADMIN_USER_ID', '')] + os.getenv('ADDITIONAL_ADMIN_USER_IDS', '').split(',')
        for raw in raw_ids:
            raw = raw.strip()
            if not raw:
                continue
            try:
                chat_ids.append(int(raw))
            except ValueError:
                logger.warning(f"Invalid admin chat id format: {raw}")

        if not chat_ids:
            logger.warning("⚠️ No admin chat ids configured - alerts will be logged only")
        return chat_ids

# ====================================================================
# ADMIN ALERT SYSTEM
# ====================================================================

class AdminAlertSystem:
    """Rate-limited, deduplicated alert delivery"""

    def __init__(self, config: Optional[AdminAlertConfig] = None, bot: Optional[Bot] = None):
        self.config = config or AdminAlertConfig()
        self._suppressed_alerts: Dict[str, datetime] = {}
        self._rate_limit_tracker: List[datetime] = []
        self._bot = bot
        if self._bot is None and self.config.bot_token:
            self._bot = Bot(token=self.config.bot_token)
        self._storage_initialized = False

    async def _init_alert_storage(self):
        try:
            await execute_update("""
                CREATE TABLE IF NOT EXISTS admin_alerts (
                    id SERIAL PRIMARY KEY,
                    severity VARCHAR(20) NOT NULL,
                    category VARCHAR(50) NOT NULL,
                    component VARCHAR(100) NOT NULL,
                    message TEXT NOT NULL,
                    details JSONB,
                    fingerprint VARCHAR(32) NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    sent_at TIMESTAMP,
                    suppressed BOOLEAN DEFAULT FALSE
                )
            """)
            await execute_update(
                "CREATE INDEX IF NOT EXISTS idx_admin_alerts_created_at ON admin_alerts(created_at)"
            )
            self._storage_initialized = True
        except Exception as e:
            logger.error(f"❌ Failed to initialize admin alert storage: {e}")

    def _is_rate_limited(self) -> bool:
        cutoff = datetime.utcnow() - timedelta(seconds=self.config.rate_limit_window)
        self._rate_limit_tracker = [ts for ts in self._rate_limit_tracker if ts > cutoff]
        return len(self._rate_limit_tracker) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str) -> bool:
        suppressed_until = self._suppressed_alerts.get(fingerprint)
        if suppressed_until is None:
            return False
        if datetime.utcnow() > suppressed_until:
            del self._suppressed_alerts[fingerprint]
            return False
        return True

    def _format_alert_message(self, alert: Alert) -> str:
        icons = {
            AlertSeverity.CRITICAL: "🔴",
            AlertSeverity.ERROR: "🟠",
            AlertSeverity.WARNING: "🟡",
            AlertSeverity.INFO: "🔵",
        }
        timestamp_str = alert.timestamp.strftime("%Y-%m-%d %H:%M:%S UTC") if alert.timestamp else "Unknown"
        lines = [
            f"{icons.get(alert.severity, '⚠️')} <b>ADMIN ALERT - {alert.severity.value}</b>",
            f"📋 <b>Category:</b> {alert.category.value.replace('_', ' ').title()}",
            f"🔧 <b>Component:</b> {alert.component}",
            f"📝 <b>Message:</b> {alert.message}",
            f"🕐 <b>Time:</b> {timestamp_str}",
        ]
        if alert.details:
            lines.append("📊 <b>Details:</b>")
            for key, value in alert.details.items():
                if isinstance(value, dict):
                    value = json.dumps(value, default=str)
                elif isinstance(value, (list, tuple)):
                    value = ", ".join(str(v) for v in value)
                lines.append(f"   • <b>{key}:</b> {value}")
        return "\n".join(lines)

    async def _send_to_admin(self, chat_id: int, alert: Alert) -> bool:
        if self._bot is None:
            return False
        try:
            await self._bot.send_message(
                chat_id=chat_id,
                text=self._format_alert_message(alert),
                parse_mode=ParseMode.HTML
            )
            return True
        except TelegramError as e:
            logger.error(f"❌ Failed to send admin alert to {chat_id}: {e}")
            return False

    async def _store_alert(self, alert: Alert, sent: bool):
        try:
            await execute_update("""
                INSERT INTO admin_alerts
                (severity, category, component, message, details, fingerprint, sent_at, suppressed)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                alert.severity.value,
                alert.category.value,
                alert.component,
                alert.message,
                json.dumps(alert.details, default=str) if alert.details else None,
                alert.fingerprint,
                alert.timestamp if sent else None,
                not sent
            ))
        except Exception as e:
            logger.error(f"❌ Failed to store admin alert: {e}")

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send an operator alert. Never raises.

        Returns:
            bool: True if at least one operator received it
        """
        try:
            if not self.config.alerts_enabled:
                logger.debug(f"Admin alerts disabled - skipping: {component}: {message}")
                return False

            if isinstance(severity, str):
                severity = AlertSeverity(severity.upper())
            if isinstance(category, str):
                category = AlertCategory(category.lower())

            # Operators always see the alert in the logs, even below the delivery threshold
            log_level = logging.CRITICAL if severity == AlertSeverity.CRITICAL else getattr(logging, severity.value, logging.WARNING)
            logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")

            if _SEVERITY_ORDER.index(severity) < _SEVERITY_ORDER.index(self.config.min_severity):
                return False

            if not self._storage_initialized:
                await self._init_alert_storage()

            alert = Alert(severity=severity, category=category, component=component,
                          message=message, details=details)

            if alert.fingerprint and self._is_suppressed(alert.fingerprint):
                await self._store_alert(alert, sent=False)
                return False

            if self._is_rate_limited():
                logger.warning(f"⚠️ Admin alerts rate limited - dropping: {component}: {message}")
                await self._store_alert(alert, sent=False)
                return False

            sent_count = 0
            for chat_id in self.config.admin_chat_ids:
                if await self._send_to_admin(chat_id, alert):
                    sent_count += 1

            if sent_count:
                self._rate_limit_tracker.append(datetime.utcnow())
                self._suppressed_alerts[alert.fingerprint] = (
                    datetime.utcnow() + timedelta(seconds=self.config.suppression_window)
                )
            await self._store_alert(alert, sent=sent_count > 0)
            return sent_count > 0

        except Exception as e:
            logger.error(f"❌ Admin alert system error: {e}")
            logger.error(f"🚨 ALERT (failed to send): [{component}] {message}")
            return False

    async def cleanup_old_alerts(self, days_old: int = 30) -> int:
        try:
            return await execute_update(
                "DELETE FROM admin_alerts WHERE created_at < CURRENT_TIMESTAMP - make_interval(days => %s)",
                (days_old,)
            )
        except Exception as e:
            logger.error(f"❌ Failed to cleanup old admin alerts: {e}")
            return 0

# ====================================================================
# GLOBAL INSTANCE AND CONVENIENCE FUNCTIONS
# ====================================================================

_admin_alert_system: Optional[AdminAlertSystem] = None

def get_admin_alert_system() -> AdminAlertSystem:
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
    return _admin_alert_system

async def send_critical_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    return await get_admin_alert_system().send_alert(AlertSeverity.CRITICAL, category, component, message, details)

async def send_error_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    return await get_admin_alert_system().send_alert(AlertSeverity.ERROR, category, component, message, details)

async def send_warning_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    return await get_admin_alert_system().send_alert(AlertSeverity.WARNING, category, component, message, details)
