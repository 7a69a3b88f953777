"""
Registrar Balance Guard - "smart operation" wrapper

Guarantees a registrar operation costing C is attempted only when the prepaid
registrar balance covers C, topping the balance up through the registrar's
refill command first when it does not.

Flow:
1. Check available balance
2. Sufficient → perform the operation
3. Insufficient → compute refill, refill, record auto-refill in the ledger, perform

A failed refill fails closed: the operation is never attempted.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import Dict, Any, Optional, Callable, Awaitable

from config import FulfillmentConfig, get_config
from database import log_activity
from models import RefillPlan, ItemType
from admin_alerts import send_warning_alert, send_critical_alert
from services.balance_ledger import BalanceLedger, LedgerWriteError, get_balance_ledger
from services.enom import EnomService, RegistrarError

logger = logging.getLogger(__name__)

_CENT = Decimal('0.01')

# ====================================================================
# ERRORS
# ====================================================================

class BalanceGuardError(Exception):
    """Base class for balance guard failures"""
    pass

class BalanceCheckError(BalanceGuardError):
    """The registrar balance could not be read"""
    pass

class InsufficientBalanceError(BalanceGuardError):
    """Balance is short and auto-refill is disabled"""
    pass

class RefillFailedError(BalanceGuardError):
    """The registrar refill call failed; the operation was not attempted"""
    pass

class OperationTimeoutError(BalanceGuardError):
    """The registrar operation did not finish inside its time limit"""
    pass

class OperationAfterRefillError(BalanceGuardError):
    """The operation failed after a refill had already been spent at the registrar"""

    def __init__(self, message: str, original: Exception, refill_record: Dict[str, Any]):
        super().__init__(message)
        self.original = original
        self.refill_record = refill_record

# ====================================================================
# REFILL CALCULATION
# ====================================================================

def calculate_refill(cost: Decimal, balance: Decimal,
                     config: Optional[FulfillmentConfig] = None) -> RefillPlan:
    """
    Compute the refill needed before spending cost against balance.

    needed = cost - balance + safety margin, grossed up so the amount left
    after the registrar's card fee still covers it, rounded up to the refill
    increment and never below the minimum refill.
    """
    config = config or get_config()
    cost = Decimal(str(cost))
    balance = Decimal(str(balance))
    zero = Decimal('0.00')

    if balance >= cost:
        return RefillPlan(needs_refill=False, shortfall=zero, refill_amount=zero,
                          fee_amount=zero, net_amount=zero)

    shortfall = (cost - balance + config.safety_margin).quantize(_CENT, rounding=ROUND_HALF_UP)
    gross = shortfall / (Decimal('1') - config.refill_fee_percent)

    increments = (gross / config.refill_increment).to_integral_value(rounding=ROUND_CEILING)
    refill_amount = max(increments * config.refill_increment, config.min_refill).quantize(_CENT)

    fee_amount = (refill_amount * config.refill_fee_percent).quantize(_CENT, rounding=ROUND_HALF_UP)
    net_amount = refill_amount - fee_amount

    return RefillPlan(needs_refill=True, shortfall=shortfall, refill_amount=refill_amount,
                      fee_amount=fee_amount, net_amount=net_amount)

# ====================================================================
# GUARD
# ====================================================================

@dataclass(frozen=True)
class OperationDescriptor:
    """What is about to be spent at the registrar"""
    operation: ItemType
    domain_name: str
    years: int
    cost: Decimal

@dataclass
class GuardResult:
    operation_result: Dict[str, Any]
    refill_record: Optional[Dict[str, Any]] = None


class BalanceGuard:
    """Wraps registrar operations with a balance check and auto-refill"""

    def __init__(self, ledger: Optional[BalanceLedger] = None, config: Optional[FulfillmentConfig] = None):
        self.ledger = ledger or get_balance_ledger()
        self.config = config or get_config()

    async def run(
        self,
        descriptor: OperationDescriptor,
        perform: Callable[[], Awaitable[Dict[str, Any]]],
        registrar: EnomService,
        order_id: Optional[int] = None,
        timeout: Optional[float] = None
    ) -> GuardResult:
        """
        Run perform() once the registrar balance covers the descriptor's cost.

        timeout bounds perform() only. A refill already spent when the
        operation fails, times out or is cancelled is flagged for manual
        reconciliation before the error propagates.
        """
        label = f"{descriptor.operation.value} {descriptor.domain_name}"
        logger.info(f"🛡️ BALANCE GUARD: {label} cost=${descriptor.cost} mode={registrar.mode.value}")

        try:
            balance = await registrar.check_balance()
        except RegistrarError as e:
            raise BalanceCheckError(f"Could not read registrar balance: {e}") from e

        refill_record: Optional[Dict[str, Any]] = None
        plan = calculate_refill(descriptor.cost, balance, self.config)

        if plan.needs_refill:
            if not self.config.auto_refill_enabled:
                raise InsufficientBalanceError(
                    f"Registrar balance ${balance} below cost ${descriptor.cost} and auto-refill is disabled"
                )
            refill_record = await self._refill(plan, balance, descriptor, order_id, registrar)

        try:
            if timeout:
                operation_result = await asyncio.wait_for(perform(), timeout=timeout)
            else:
                operation_result = await perform()
        except asyncio.CancelledError:
            if refill_record is not None:
                await self._flag_unreconciled_refill(
                    refill_record, descriptor, order_id,
                    BalanceGuardError(f"{descriptor.operation.value} cancelled before completing")
                )
            raise
        except asyncio.TimeoutError as e:
            timed_out = OperationTimeoutError(f"Registrar operation timed out after {timeout:g}s")
            if refill_record is not None:
                await self._flag_unreconciled_refill(refill_record, descriptor, order_id, timed_out)
                raise OperationAfterRefillError(str(timed_out), timed_out, refill_record) from e
            raise timed_out from e
        except Exception as e:
            if refill_record is not None:
                await self._flag_unreconciled_refill(refill_record, descriptor, order_id, e)
                raise OperationAfterRefillError(str(e), e, refill_record) from e
            raise

        expected_balance = balance + (plan.net_amount if plan.needs_refill else 0) - descriptor.cost
        if expected_balance < self.config.low_balance_alert:
            await send_warning_alert(
                "RegistrarBalance",
                f"Registrar balance low (~${expected_balance}) after {label}",
                "registrar_balance",
                {'mode': registrar.mode.value, 'threshold': str(self.config.low_balance_alert)}
            )

        return GuardResult(operation_result=operation_result, refill_record=refill_record)

    async def _refill(self, plan: RefillPlan, balance: Decimal, descriptor: OperationDescriptor,
                      order_id: Optional[int], registrar: EnomService) -> Dict[str, Any]:
        logger.info(f"💰 BALANCE GUARD: Balance ${balance} short for {descriptor.domain_name} "
                    f"(cost ${descriptor.cost}) - refilling ${plan.refill_amount}")
        try:
            refill = await registrar.refill_balance(plan.refill_amount)
        except RegistrarError as e:
            logger.error(f"❌ BALANCE GUARD: Refill of ${plan.refill_amount} failed: {e}")
            raise RefillFailedError(f"Registrar refill failed: {e}") from e

        try:
            record = await self.ledger.record_auto_refill(
                refill, balance_before=balance,
                domain_name=descriptor.domain_name, order_id=order_id
            )
        except LedgerWriteError as e:
            # The money moved at the registrar; continue, but make sure a human sees it
            await send_critical_alert(
                "BalanceLedger",
                f"Auto-refill of ${refill['amount']} succeeded but could not be recorded",
                "registrar_balance",
                {'domain': descriptor.domain_name, 'order_id': order_id,
                 'transaction_id': refill.get('transaction_id'), 'error': str(e)}
            )
            record = dict(refill, id=None, ledger_error=str(e))

        return record

    async def _flag_unreconciled_refill(self, refill_record: Dict[str, Any], descriptor: OperationDescriptor,
                                        order_id: Optional[int], error: Exception):
        logger.error(f"⚠️ BALANCE GUARD: {descriptor.operation.value} {descriptor.domain_name} failed after "
                     f"auto-refill #{refill_record.get('id')} - needs manual reconciliation")
        details = {
            'domain': descriptor.domain_name,
            'operation': descriptor.operation.value,
            'order_id': order_id,
            'refill_amount': str(refill_record.get('amount')),
            'refill_transaction_id': refill_record.get('id'),
            'error': str(error),
            'requires_manual_reconciliation': True,
        }
        await log_activity(None, 'auto_refill_unreconciled', 'balance_transaction',
                           refill_record.get('id'), details)
        await send_warning_alert(
            "BalanceGuard",
            f"Auto-refill spent but {descriptor.operation.value} of {descriptor.domain_name} failed",
            "registrar_balance",
            details
        )

    async def manual_refill(self, amount: Decimal, staff_id: int, registrar: EnomService) -> Dict[str, Any]:
        """Staff-initiated top-up; records before/after balances as reported by the registrar"""
        balance_before = await registrar.check_balance()
        refill = await registrar.refill_balance(Decimal(str(amount)))
        balance_after = await registrar.check_balance()
        record = await self.ledger.record_manual_refill(refill, balance_before, balance_after, staff_id)
        return {
            'success': True,
            'refill': record,
            'balance_before': balance_before,
            'balance_after': balance_after,
        }


_guard: Optional[BalanceGuard] = None

def get_balance_guard() -> BalanceGuard:
    global _guard
    if _guard is None:
        _guard = BalanceGuard()
    return _guard
