# backend/app/services/wallet.py
"""
Wallet service - every change to a user's balances goes through here.

Callers lock the user row first (`get_user_for_update`) so an accrual credit
and a withdrawal debit on the same user are serialized by the database.
The service never commits; the caller owns the transaction.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    TX_REFERRAL_COMMISSION,
    TX_WITHDRAWAL,
    TX_WITHDRAWAL_REVERSAL,
    ZERO,
    to_money,
)
from backend.app.core.exceptions import ServiceError, NotFoundError
from backend.app.models.user import User, WalletTransaction


class WalletServiceError(ServiceError):
    """Base exception for wallet errors."""


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} not found")


class InsufficientBalanceError(WalletServiceError):
    def __init__(self, user_id: int, requested: Decimal, balance: Decimal):
        self.user_id = user_id
        self.requested = requested
        self.balance = balance
        super().__init__(
            f"Insufficient balance: requested {requested}, available {balance}",
            400,
        )


class WalletService:
    """Service class for wallet balance operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user(self, user_id: int) -> User:
        user = await self.session.get(User, user_id)
        if not user:
            raise UserNotFoundError(user_id)
        return user

    async def get_user_for_update(self, user_id: int) -> User:
        """Get user with row-level lock for atomic balance updates."""
        result = await self.session.execute(
            select(User).where(User.id == user_id).with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError(user_id)
        return user

    def _record(
        self,
        user: User,
        tx_type: str,
        amount: Decimal,
        description: str,
        now: Optional[datetime],
    ) -> WalletTransaction:
        tx = WalletTransaction(
            user_id=user.id,
            type=tx_type,
            amount=amount,
            description=description,
            created_at=now or datetime.utcnow(),
        )
        self.session.add(tx)
        return tx

    def credit_commission(
        self,
        user: User,
        amount: Decimal,
        description: str,
        now: Optional[datetime] = None,
    ) -> WalletTransaction:
        """Credit an earned commission: raises earnings and both balances."""
        amount = to_money(amount)
        user.total_earnings = to_money(user.total_earnings) + amount
        user.available_balance = to_money(user.available_balance) + amount
        user.wallet_balance = to_money(user.wallet_balance) + amount
        return self._record(user, TX_REFERRAL_COMMISSION, amount, description, now)

    def debit_withdrawal(
        self,
        user: User,
        amount: Decimal,
        description: str,
        now: Optional[datetime] = None,
    ) -> WalletTransaction:
        """
        Reserve funds for a withdrawal.

        Raises:
            InsufficientBalanceError: If wallet balance is below the amount
        """
        amount = to_money(amount)
        balance = to_money(user.wallet_balance)
        if balance < amount:
            raise InsufficientBalanceError(user.id, amount, balance)
        user.available_balance = to_money(user.available_balance) - amount
        user.wallet_balance = balance - amount
        return self._record(user, TX_WITHDRAWAL, ZERO - amount, description, now)

    def reverse_withdrawal(
        self,
        user: User,
        amount: Decimal,
        description: str,
        now: Optional[datetime] = None,
    ) -> WalletTransaction:
        """Give back funds reserved by a withdrawal that failed. Earnings stay untouched."""
        amount = to_money(amount)
        user.available_balance = to_money(user.available_balance) + amount
        user.wallet_balance = to_money(user.wallet_balance) + amount
        return self._record(user, TX_WITHDRAWAL_REVERSAL, amount, description, now)
