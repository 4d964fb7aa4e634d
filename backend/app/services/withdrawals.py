# backend/app/services/withdrawals.py
"""
Withdrawal service - referrers cash out their wallet balance.

Funds are reserved (debited) when the request is made, not when the payout
completes. A payout marked FAILED gives the reserved amount back once.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    VALID_WITHDRAWAL_STATUSES,
    TERMINAL_WITHDRAWAL_STATUSES,
    WITHDRAWAL_PENDING,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_FAILED,
    to_money,
)
from backend.app.core.exceptions import ServiceError, NotFoundError, InvalidArgumentError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import withdrawal_requests_total, withdrawal_status_updates_total
from backend.app.models.withdrawal import CommissionWithdrawal
from backend.app.services.wallet import WalletService, InsufficientBalanceError

logger = get_logger(__name__)


class WithdrawalServiceError(ServiceError):
    """Base exception for withdrawal service errors."""


class WithdrawalNotFoundError(NotFoundError):
    def __init__(self, withdrawal_id: int):
        super().__init__(f"Withdrawal {withdrawal_id} not found")


class InvalidWithdrawalStatusError(InvalidArgumentError):
    def __init__(self, status: str):
        super().__init__(
            f"Invalid status value '{status}', expected one of {', '.join(VALID_WITHDRAWAL_STATUSES)}"
        )


class InvalidWithdrawalAmountError(InvalidArgumentError):
    pass


class WithdrawalTransitionError(InvalidArgumentError):
    def __init__(self, withdrawal_id: int, current_status: str, new_status: str):
        super().__init__(
            f"Withdrawal {withdrawal_id} is already {current_status}, cannot change to {new_status}",
            409,
        )


def serialize_withdrawal(w: CommissionWithdrawal) -> Dict[str, Any]:
    return {
        "id": w.id,
        "user_id": w.user_id,
        "amount": float(w.amount or 0),
        "payment_method": w.payment_method,
        "payment_details": w.payment_details or {},
        "status": w.status,
        "transaction_id": w.transaction_id,
        "requested_at": w.created_at.isoformat() if w.created_at else None,
        "processed_at": w.processed_at.isoformat() if w.processed_at else None,
        "refunded_at": w.refunded_at.isoformat() if w.refunded_at else None,
    }


class WithdrawalService:
    """Service class for withdrawal requests and admin status changes."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.wallet = WalletService(session)

    async def request_withdrawal(
        self,
        user_id: int,
        amount,
        payment_method: str,
        payment_details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Create a PENDING withdrawal and reserve its amount.

        Not enough balance is an expected outcome, reported as
        {"success": False, ...} rather than raised.

        Raises:
            UserNotFoundError: If the user does not exist
            InvalidWithdrawalAmountError: If amount is not a positive number of whole cents
        """
        now = now or datetime.utcnow()
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidWithdrawalAmountError(f"Invalid withdrawal amount: {amount!r}")
        if not value.is_finite():
            raise InvalidWithdrawalAmountError(f"Invalid withdrawal amount: {amount!r}")
        if value != to_money(value):
            raise InvalidWithdrawalAmountError("Withdrawal amount cannot have more than two decimal places")
        amount = to_money(value)
        if amount <= 0:
            raise InvalidWithdrawalAmountError("Withdrawal amount must be positive")
        if not payment_method:
            raise InvalidWithdrawalAmountError("Payment method is required")

        # Lock first: check and debit must see the same balance
        user = await self.wallet.get_user_for_update(user_id)

        try:
            tx = self.wallet.debit_withdrawal(user, amount, description="Withdrawal request", now=now)
        except InsufficientBalanceError as e:
            # Nothing was written; rolling back only releases the row lock
            await self.session.rollback()
            withdrawal_requests_total.labels(result="insufficient_balance").inc()
            logger.info(
                "Withdrawal rejected: insufficient balance",
                user_id=user_id,
                requested=float(e.requested),
                balance=float(e.balance),
            )
            return {
                "success": False,
                "message": "Withdrawal request failed: Insufficient balance.",
                "error": "insufficient_balance",
                "withdrawal": None,
            }

        withdrawal = CommissionWithdrawal(
            user_id=user_id,
            amount=amount,
            payment_method=payment_method,
            payment_details=payment_details or {},
            status=WITHDRAWAL_PENDING,
            created_at=now,
            updated_at=now,
        )
        self.session.add(withdrawal)
        await self.session.flush()
        tx.description = f"Withdrawal request #{withdrawal.id}"

        await self.session.commit()
        withdrawal_requests_total.labels(result="accepted").inc()
        logger.info(
            "Withdrawal requested",
            withdrawal_id=withdrawal.id,
            user_id=user_id,
            amount=float(amount),
            payment_method=payment_method,
        )
        return {
            "success": True,
            "message": "Withdrawal request submitted successfully.",
            "withdrawal": serialize_withdrawal(withdrawal),
        }

    async def update_withdrawal_status(
        self,
        withdrawal_id: int,
        status: str,
        transaction_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CommissionWithdrawal:
        """
        Admin status change.

        COMPLETED stamps processed_at; FAILED returns the reserved funds.
        Neither touches the wallet otherwise: the debit happened at request time.

        Raises:
            InvalidWithdrawalStatusError: If status is not a known value
            WithdrawalNotFoundError: If the withdrawal does not exist
            WithdrawalTransitionError: If the withdrawal is already COMPLETED or FAILED
        """
        if status not in VALID_WITHDRAWAL_STATUSES:
            raise InvalidWithdrawalStatusError(status)
        now = now or datetime.utcnow()

        result = await self.session.execute(
            select(CommissionWithdrawal)
            .where(CommissionWithdrawal.id == withdrawal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        withdrawal = result.scalar_one_or_none()
        if not withdrawal:
            raise WithdrawalNotFoundError(withdrawal_id)

        if withdrawal.status in TERMINAL_WITHDRAWAL_STATUSES and withdrawal.status != status:
            raise WithdrawalTransitionError(withdrawal_id, withdrawal.status, status)

        previous = withdrawal.status
        withdrawal.status = status
        withdrawal.updated_at = now
        if transaction_id:
            withdrawal.transaction_id = transaction_id
        if status == WITHDRAWAL_COMPLETED and previous != WITHDRAWAL_COMPLETED:
            withdrawal.processed_at = now

        if status == WITHDRAWAL_FAILED and withdrawal.refunded_at is None:
            user = await self.wallet.get_user_for_update(withdrawal.user_id)
            self.wallet.reverse_withdrawal(
                user,
                withdrawal.amount,
                description=f"Reversal of failed withdrawal #{withdrawal.id}",
                now=now,
            )
            withdrawal.refunded_at = now

        await self.session.commit()
        withdrawal_status_updates_total.labels(status=status).inc()
        logger.info(
            "Withdrawal status updated",
            withdrawal_id=withdrawal_id,
            previous_status=previous,
            status=status,
            refunded=status == WITHDRAWAL_FAILED,
        )
        return withdrawal

    async def list_withdrawals(
        self,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if status is not None and status not in VALID_WITHDRAWAL_STATUSES:
            raise InvalidWithdrawalStatusError(status)
        q = select(CommissionWithdrawal).order_by(CommissionWithdrawal.created_at.desc(), CommissionWithdrawal.id.desc())
        if user_id is not None:
            q = q.where(CommissionWithdrawal.user_id == user_id)
        if status is not None:
            q = q.where(CommissionWithdrawal.status == status)
        result = await self.session.execute(q)
        return [serialize_withdrawal(w) for w in result.scalars().all()]
