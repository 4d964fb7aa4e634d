from sqlalchemy import String, DateTime, ForeignKey, DECIMAL, Integer, Index, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from backend.app.core.base import Base


class User(Base):
    """Platform user as seen by the referral engine (profile is owned elsewhere)."""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    profile_picture: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    referral_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, unique=True)
    # Set once, on the first referred purchase; never overwritten
    referred_by_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True)
    referral_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Кошелёк: wallet_balance is spendable, available_balance is the withdrawable view
    wallet_balance: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0"))
    available_balance: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0"))
    total_earnings: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_users_referred_by_id', 'referred_by_id'),
        Index('ix_users_phone', 'phone'),
        Index('ix_users_email', 'email'),
    )


class WalletTransaction(Base):
    """Wallet history row; appended on every balance change."""
    __tablename__ = 'wallet_transactions'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    # Negative for debits
    amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_wallet_transactions_user_id', 'user_id'),
    )
