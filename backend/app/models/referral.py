"""Referral program models: referrals, their purchases and the daily commission ledger."""
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    String,
    ForeignKey,
    Integer,
    Date,
    DateTime,
    DECIMAL,
    Index,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.base import Base
from backend.app.core.constants import REFERRAL_ACTIVE, PURCHASE_ACTIVE, COMMISSION_PAID


class Referral(Base):
    """One referrer -> referred user relationship with its commission aggregates."""
    __tablename__ = 'referrals'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Кто пригласил
    referrer_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    # Кого пригласили
    referred_user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)

    status: Mapped[str] = mapped_column(String(16), default=REFERRAL_ACTIVE, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Defaults for purchases that do not carry their own terms
    daily_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    days: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0"))
    commission_percentage: Mapped[Decimal] = mapped_column(DECIMAL(5, 2), nullable=False)
    plan_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Derived from purchases by recompute_referral_aggregates()
    commission_earned: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0"))
    days_paid: Mapped[int] = mapped_column(Integer, default=0)
    pending_days: Mapped[int] = mapped_column(Integer, default=0)
    last_paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    purchases: Mapped[List["ReferralPurchase"]] = relationship(
        back_populates="referral",
        cascade="all, delete-orphan",
        order_by="ReferralPurchase.id",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint('referrer_id', 'referred_user_id', name='uq_referrals_pair'),
        Index('ix_referrals_referrer_id', 'referrer_id'),
        Index('ix_referrals_referred_user_id', 'referred_user_id'),
        Index('ix_referrals_status', 'status'),
    )


class ReferralPurchase(Base):
    """A referred user's installment purchase; paid off one day at a time."""
    __tablename__ = 'referral_purchases'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(ForeignKey('referrals.id', ondelete='CASCADE'), nullable=False)

    order_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    product_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # {"product_id": ..., "product_name": ...} captured once at registration
    product_snapshot: Mapped[Optional[dict]] = mapped_column(JSON(), nullable=True)

    amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), default=Decimal("0"))
    purchased_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Per-purchase overrides; NULL means "use the referral's value"
    daily_amount: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(12, 2), nullable=True)
    days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    commission_percentage: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(5, 2), nullable=True)

    paid_days: Mapped[int] = mapped_column(Integer, default=0)
    pending_days: Mapped[int] = mapped_column(Integer, default=0)
    last_paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=PURCHASE_ACTIVE, nullable=False)

    referral: Mapped["Referral"] = relationship(back_populates="purchases")

    __table_args__ = (
        Index('ix_referral_purchases_referral_id', 'referral_id'),
        Index('ix_referral_purchases_product_ref', 'product_ref'),
    )


class DailyCommission(Base):
    """Ledger row: one credited day of one purchase. Never updated or deleted."""
    __tablename__ = 'daily_commissions'

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    referral_id: Mapped[int] = mapped_column(ForeignKey('referrals.id'), nullable=False)
    referrer_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False)
    purchase_id: Mapped[int] = mapped_column(ForeignKey('referral_purchases.id'), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    accrual_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=COMMISSION_PAID, nullable=False)

    __table_args__ = (
        UniqueConstraint('purchase_id', 'accrual_date', name='uq_daily_commissions_purchase_day'),
        Index('ix_daily_commissions_referrer_id', 'referrer_id'),
        Index('ix_daily_commissions_referral_id', 'referral_id'),
    )
