"""
Registrar Balance Ledger
Append-only audit trail of every event that changes the prepaid registrar balance
"""

import logging
from decimal import Decimal
from typing import Dict, Any, Optional

from database import execute_returning
from models import BalanceTransactionType

logger = logging.getLogger(__name__)


class LedgerWriteError(Exception):
    """Raised when a balance transaction could not be persisted"""
    pass


class BalanceLedger:
    """
    Records refills and auto-refills with before/after balances.

    Rows are insert-only.
    """

    async def record_transaction(
        self,
        transaction_type: BalanceTransactionType,
        amount: Decimal,
        fee_amount: Decimal = Decimal('0'),
        net_amount: Optional[Decimal] = None,
        balance_before: Optional[Decimal] = None,
        balance_after: Optional[Decimal] = None,
        domain_name: Optional[str] = None,
        order_id: Optional[int] = None,
        initiated_by: Optional[int] = None,
        auto_refill: bool = False,
        registrar_transaction_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        if net_amount is None:
            net_amount = Decimal(str(amount)) - Decimal(str(fee_amount))

        try:
            row = await execute_returning(
                """INSERT INTO balance_transactions
                   (transaction_type, amount, fee_amount, net_amount, balance_before, balance_after,
                    domain_name, order_id, initiated_by, auto_refill, registrar_transaction_id, notes)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                   RETURNING *""",
                (transaction_type.value, amount, fee_amount, net_amount, balance_before, balance_after,
                 domain_name, order_id, initiated_by, auto_refill, registrar_transaction_id, notes)
            )
        except Exception as e:
            logger.error(f"❌ LEDGER: Failed to record {transaction_type.value} of ${amount}: {e}")
            raise LedgerWriteError(str(e)) from e

        if not row:
            raise LedgerWriteError(f"No row returned recording {transaction_type.value}")

        logger.info(f"📒 LEDGER: {transaction_type.value} ${amount} (fee ${fee_amount}) "
                    f"balance ${balance_before} → ${balance_after} [txn #{row.get('id')}]")
        return row

    async def record_auto_refill(self, refill: Dict[str, Any], balance_before: Decimal,
                                 domain_name: Optional[str], order_id: Optional[int],
                                 notes: Optional[str] = None) -> Dict[str, Any]:
        """Record a refill the balance guard performed ahead of a registrar operation"""
        balance_after = Decimal(str(balance_before)) + Decimal(str(refill['net_amount']))
        return await self.record_transaction(
            BalanceTransactionType.AUTO_REFILL,
            amount=refill['amount'],
            fee_amount=refill['fee_amount'],
            net_amount=refill['net_amount'],
            balance_before=balance_before,
            balance_after=balance_after,
            domain_name=domain_name,
            order_id=order_id,
            auto_refill=True,
            registrar_transaction_id=refill.get('transaction_id'),
            notes=notes or f"Auto-refill before operation on {domain_name}"
        )

    async def record_manual_refill(self, refill: Dict[str, Any], balance_before: Decimal,
                                   balance_after: Decimal, initiated_by: int) -> Dict[str, Any]:
        return await self.record_transaction(
            BalanceTransactionType.REFILL,
            amount=refill['amount'],
            fee_amount=refill['fee_amount'],
            net_amount=refill['net_amount'],
            balance_before=balance_before,
            balance_after=balance_after,
            initiated_by=initiated_by,
            registrar_transaction_id=refill.get('transaction_id'),
            notes='Manual refill from admin panel'
        )


_ledger = BalanceLedger()

def get_balance_ledger() -> BalanceLedger:
    return _ledger
