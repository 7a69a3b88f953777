"""
Domain model for the fulfillment core
Status enumerations and the immutable value types captured at checkout
"""

import re
import json
import logging
from enum import Enum
from decimal import Decimal
from dataclasses import dataclass, field, asdict
from types import MappingProxyType
from typing import Dict, Any, Optional, Mapping, Union

logger = logging.getLogger(__name__)

# ====================================================================
# STATUS ENUMERATIONS
# ====================================================================

class OrderStatus(Enum):
    """Aggregate order lifecycle"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    REFUNDED = "refunded"

class PaymentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"

class ItemStatus(Enum):
    """Per-item lifecycle; completed and failed are terminal outside staff retry"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class ItemType(Enum):
    REGISTER = "register"
    TRANSFER = "transfer"
    RENEW = "renew"

class DomainStatus(Enum):
    ACTIVE = "active"
    TRANSFER_PENDING = "transfer_pending"
    TRANSFER_FAILED = "transfer_failed"
    SUSPENDED = "suspended"
    EXPIRED = "expired"

class PushStatus(Enum):
    """Push request lifecycle; everything except pending is terminal"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

class BalanceTransactionType(Enum):
    REFILL = "refill"
    AUTO_REFILL = "auto_refill"
    PRIVACY_PURCHASE = "privacy_purchase"

class RegistrarMode(Enum):
    """Registrar environment a domain lives in"""
    TEST = "test"
    PRODUCTION = "production"

    @classmethod
    def parse(cls, value: Union[str, 'RegistrarMode', None]) -> 'RegistrarMode':
        """Parse a stored mode tag; unknown or empty values are rejected"""
        if isinstance(value, cls):
            return value
        if not value:
            raise ValueError("Registrar mode is required")
        normalized = str(value).strip().lower()
        if normalized == 'live':
            normalized = 'production'
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown registrar mode: {value}")


def format_domain(sld: str, tld: str) -> str:
    return f"{sld}.{tld}"


# ====================================================================
# VALUE TYPES
# ====================================================================

class ContactValidationError(ValueError):
    """Raised when a registrant contact snapshot lacks required fields"""

    def __init__(self, missing_fields):
        self.missing_fields = tuple(missing_fields)
        super().__init__(f"Registrant contact missing required fields: {', '.join(self.missing_fields)}")


_EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Accepted spellings in stored snapshots, keyed by canonical field name
_CONTACT_ALIASES = {
    'first_name': ('first_name', 'firstName'),
    'last_name': ('last_name', 'lastName'),
    'organization': ('organization', 'company', 'org_name'),
    'address1': ('address1', 'address_line1'),
    'address2': ('address2', 'address_line2'),
    'city': ('city',),
    'state': ('state', 'province', 'state_province'),
    'postal_code': ('postal_code', 'postalCode', 'zip'),
    'country': ('country',),
    'email': ('email', 'email_address'),
    'phone': ('phone', 'phone_number'),
}


@dataclass(frozen=True)
class RegistrantContact:
    """ICANN registrant contact captured with the order; never mutated after checkout"""
    first_name: str
    last_name: str
    email: str
    phone: str
    organization: str = ''
    address1: str = ''
    address2: str = ''
    city: str = ''
    state: str = ''
    postal_code: str = ''
    country: str = 'US'

    @classmethod
    def from_snapshot(cls, snapshot: Union[Mapping[str, Any], str, None]) -> 'RegistrantContact':
        """
        Build a contact from the JSON snapshot stored on the order.

        Raises ContactValidationError when name, email or phone is absent.
        """
        if isinstance(snapshot, str):
            try:
                snapshot = json.loads(snapshot)
            except (TypeError, ValueError):
                raise ContactValidationError(['first_name', 'last_name', 'email', 'phone'])
        if not snapshot or not isinstance(snapshot, Mapping):
            raise ContactValidationError(['first_name', 'last_name', 'email', 'phone'])

        values: Dict[str, str] = {}
        for canonical, aliases in _CONTACT_ALIASES.items():
            for alias in aliases:
                raw = snapshot.get(alias)
                if raw is not None and str(raw).strip():
                    values[canonical] = str(raw).strip()
                    break

        # A single "name" field is split when first/last are not provided
        if 'first_name' not in values and snapshot.get('name'):
            name_parts = str(snapshot['name']).strip().split(None, 1)
            if name_parts:
                values['first_name'] = name_parts[0]
                if len(name_parts) > 1:
                    values.setdefault('last_name', name_parts[1])

        missing = [f for f in ('first_name', 'last_name', 'email', 'phone') if not values.get(f)]
        if missing:
            raise ContactValidationError(missing)

        if not _EMAIL_PATTERN.match(values['email']):
            raise ContactValidationError(['email'])

        if 'country' in values:
            values['country'] = values['country'].upper()

        return cls(**values)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_registrar_params(self, prefix: str) -> Dict[str, str]:
        """Render eNom contact parameters for one contact role"""
        return {
            f'{prefix}FirstName': self.first_name,
            f'{prefix}LastName': self.last_name,
            f'{prefix}Organization': self.organization,
            f'{prefix}Address1': self.address1,
            f'{prefix}Address2': self.address2,
            f'{prefix}City': self.city,
            f'{prefix}StateProvince': self.state,
            f'{prefix}PostalCode': self.postal_code,
            f'{prefix}Country': self.country or 'US',
            f'{prefix}EmailAddress': self.email,
            f'{prefix}Phone': self.phone,
        }

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


_ATTRIBUTE_KEY = re.compile(r'^[a-z][a-z0-9_]{0,63}$')


@dataclass(frozen=True)
class ExtendedAttributes:
    """ccTLD-specific registration attributes (e.g. uk_legal_type)"""
    values: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        cleaned = {}
        for key, value in dict(self.values).items():
            normalized = str(key).strip().lower()
            if not _ATTRIBUTE_KEY.match(normalized):
                raise ValueError(f"Invalid extended attribute name: {key}")
            if value is None:
                continue
            cleaned[normalized] = str(value).strip()
        object.__setattr__(self, 'values', MappingProxyType(cleaned))

    @classmethod
    def from_snapshot(cls, snapshot: Union[Mapping[str, Any], str, None]) -> 'ExtendedAttributes':
        if isinstance(snapshot, str):
            snapshot = json.loads(snapshot) if snapshot.strip() else {}
        return cls(dict(snapshot or {}))

    def for_tld(self, tld: str) -> Dict[str, str]:
        """
        Attributes relevant to a TLD.

        Keys prefixed with another ccTLD (uk_, in_, ...) are dropped so a
        multi-domain order does not leak one registry's fields into another.
        """
        tld = tld.lower()
        result = {}
        for key, value in self.values.items():
            prefix = key.split('_', 1)[0]
            if '_' in key and len(prefix) == 2 and prefix != tld:
                continue
            result[key] = value
        return result

    def __bool__(self) -> bool:
        return bool(self.values)


@dataclass(frozen=True)
class RefillPlan:
    """Outcome of the refill calculation"""
    needs_refill: bool
    shortfall: Decimal
    refill_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
