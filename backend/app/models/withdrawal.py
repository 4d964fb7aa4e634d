from sqlalchemy import String, DateTime, ForeignKey, DECIMAL, Integer, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from decimal import Decimal
from typing import Optional
from backend.app.core.base import Base
from backend.app.core.constants import WITHDRAWAL_PENDING


class CommissionWithdrawal(Base):
    """Referrer's request to pay out wallet balance; funds are reserved on creation."""
    __tablename__ = 'commission_withdrawals'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=WITHDRAWAL_PENDING, nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    # Stamped only when the payout is COMPLETED
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Stamped when a FAILED payout returned the reserved funds
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_commission_withdrawals_user_id', 'user_id'),
        Index('ix_commission_withdrawals_status', 'status'),
    )
