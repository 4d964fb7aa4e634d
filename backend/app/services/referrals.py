# backend/app/services/referrals.py
"""
Referral service - referral records, their purchases and aggregate upkeep.

A referral is one (referrer, referred user) pair. Every confirmed installment
purchase of the referred user is appended to it as a ReferralPurchase; the
daily accrual job then pays the referrer a share of each installment day.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    REFERRAL_ACTIVE,
    REFERRAL_COMPLETED,
    REFERRAL_CANCELLED,
    PURCHASE_ACTIVE,
    PURCHASE_COMPLETED,
    PERCENT_BASE,
    ZERO,
    to_money,
)
from backend.app.core.exceptions import ServiceError, NotFoundError, InvalidArgumentError
from backend.app.core.logging import get_logger
from backend.app.core.metrics import referral_purchases_registered_total
from backend.app.core.settings import get_settings
from backend.app.models.referral import Referral, ReferralPurchase
from backend.app.services.products import ProductCatalog
from backend.app.services.wallet import WalletService

logger = get_logger(__name__)


class ReferralServiceError(ServiceError):
    """Base exception for referral service errors."""


class ReferralNotFoundError(NotFoundError):
    def __init__(self, referral_id: int):
        super().__init__(f"Referral {referral_id} not found")


class PurchaseNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found in referral history")


class InvalidPurchaseDetailsError(InvalidArgumentError):
    pass


@dataclass(frozen=True)
class PurchaseTerms:
    """Effective installment terms of a purchase after falling back to the referral."""
    daily_amount: Decimal
    days: int
    commission_percentage: Decimal

    @property
    def commission_per_day(self) -> Decimal:
        return to_money(self.daily_amount * self.commission_percentage / PERCENT_BASE)


def purchase_terms(purchase: ReferralPurchase, referral: Referral) -> PurchaseTerms:
    """Per-purchase values win; NULL falls back to the referral defaults."""
    daily_amount = purchase.daily_amount if purchase.daily_amount is not None else referral.daily_amount
    days = purchase.days if purchase.days is not None else referral.days
    percentage = (
        purchase.commission_percentage
        if purchase.commission_percentage is not None
        else referral.commission_percentage
    )
    return PurchaseTerms(
        daily_amount=Decimal(str(daily_amount or 0)),
        days=int(days or 0),
        commission_percentage=Decimal(str(percentage or 0)),
    )


def recompute_referral_aggregates(referral: Referral, now: Optional[datetime] = None) -> bool:
    """
    Derive every aggregate of a referral from its purchases.

    Idempotent: calling it twice in a row changes nothing the second time,
    so it doubles as a repair tool for drifted rows.

    Returns:
        True if any field of the referral or its purchases changed
    """
    now = now or datetime.utcnow()
    changed = False

    pending_total = 0
    paid_total = 0
    earned = ZERO
    for purchase in referral.purchases:
        terms = purchase_terms(purchase, referral)
        paid = purchase.paid_days or 0
        pending = max(0, terms.days - paid)
        if purchase.pending_days != pending:
            purchase.pending_days = pending
            changed = True
        if paid >= terms.days and purchase.status != PURCHASE_COMPLETED:
            purchase.status = PURCHASE_COMPLETED
            changed = True
        pending_total += pending
        paid_total += paid
        earned += terms.commission_per_day * paid

    earned = to_money(earned)
    if referral.pending_days != pending_total:
        referral.pending_days = pending_total
        changed = True
    if referral.days_paid != paid_total:
        referral.days_paid = paid_total
        changed = True
    if to_money(referral.commission_earned) != earned:
        referral.commission_earned = earned
        changed = True

    if referral.status != REFERRAL_CANCELLED:
        all_completed = bool(referral.purchases) and all(
            p.status == PURCHASE_COMPLETED for p in referral.purchases
        )
        status = REFERRAL_COMPLETED if all_completed else REFERRAL_ACTIVE
        if referral.status != status:
            referral.status = status
            changed = True
        if all_completed and referral.end_date is None:
            referral.end_date = now
            changed = True

    return changed


def _parse_decimal(name: str, value: Any) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidPurchaseDetailsError(f"{name} must be a number, got {value!r}")
    if not result.is_finite():
        raise InvalidPurchaseDetailsError(f"{name} must be a finite number")
    return result


def _parse_cents(name: str, value: Any) -> Decimal:
    # Terms are stored with two decimals
    result = _parse_decimal(name, value)
    if result != to_money(result):
        raise InvalidPurchaseDetailsError(f"{name} cannot have more than two decimal places")
    return result


def normalize_purchase_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Apply schema defaults to absent terms and validate present ones.

    Raises:
        InvalidPurchaseDetailsError: If a present value is malformed
    """
    details = dict(details or {})
    settings = get_settings()

    raw_daily = details.get("daily_amount")
    daily_amount = (
        settings.REFERRAL_DEFAULT_DAILY_AMOUNT if raw_daily is None
        else _parse_cents("daily_amount", raw_daily)
    )
    if daily_amount <= 0:
        raise InvalidPurchaseDetailsError("daily_amount must be positive")

    raw_days = details.get("days")
    if raw_days is None:
        days = settings.REFERRAL_DEFAULT_DAYS
    else:
        days_value = _parse_decimal("days", raw_days)
        if days_value != days_value.to_integral_value():
            raise InvalidPurchaseDetailsError("days must be a whole number")
        days = int(days_value)
    if days < 1:
        raise InvalidPurchaseDetailsError("days must be at least 1")

    raw_pct = details.get("commission_percentage")
    percentage = (
        settings.REFERRAL_DEFAULT_COMMISSION_PERCENT if raw_pct is None
        else _parse_cents("commission_percentage", raw_pct)
    )
    if percentage < 0 or percentage > PERCENT_BASE:
        raise InvalidPurchaseDetailsError("commission_percentage must be between 0 and 100")

    raw_total = details.get("total_amount")
    if raw_total is None:
        total_amount = to_money(daily_amount * days)
    else:
        total_amount = to_money(_parse_decimal("total_amount", raw_total))
        if total_amount < 0:
            raise InvalidPurchaseDetailsError("total_amount cannot be negative")

    product_id = details.get("product_id")
    order_id = details.get("order_id")
    return {
        "daily_amount": to_money(daily_amount),
        "days": days,
        "commission_percentage": to_money(percentage),
        "total_amount": total_amount,
        "product_id": str(product_id) if product_id is not None else None,
        "order_id": str(order_id) if order_id is not None else None,
        "name": details.get("name") or "Default Plan",
    }


class ReferralService:
    """Service class for referral lifecycle operations."""

    def __init__(self, session: AsyncSession, catalog: Optional[ProductCatalog] = None):
        self.session = session
        self.catalog = catalog or ProductCatalog(session)

    async def get_referral(self, referral_id: int) -> Referral:
        referral = await self.session.get(Referral, referral_id)
        if not referral:
            raise ReferralNotFoundError(referral_id)
        return referral

    async def find_referral(
        self,
        referrer_id: int,
        referred_user_id: int,
        for_update: bool = False,
    ) -> Optional[Referral]:
        q = select(Referral).where(
            Referral.referrer_id == referrer_id,
            Referral.referred_user_id == referred_user_id,
        )
        if for_update:
            # Serialize with the accrual pass over the same referral; reload what we hold
            q = q.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(q)
        return result.scalar_one_or_none()

    async def register_referral_purchase(
        self,
        referrer_id: int,
        referred_user_id: int,
        purchase_details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Referral, ReferralPurchase]:
        """
        Record a confirmed purchase of a referred user.

        Creates the referral on the first purchase of the pair, otherwise
        appends to the existing one. Links the referred user to the referrer
        the first time only.

        Returns:
            (referral, new purchase)

        Raises:
            UserNotFoundError: If either user does not exist
            InvalidPurchaseDetailsError: If terms are malformed or the pair is invalid
        """
        now = now or datetime.utcnow()
        if referrer_id == referred_user_id:
            raise InvalidPurchaseDetailsError("A user cannot refer themselves")

        terms = normalize_purchase_details(purchase_details)

        wallet = WalletService(self.session)
        await wallet.get_user(referrer_id)
        await wallet.get_user(referred_user_id)

        snapshot = await self.catalog.find_product_snapshot(terms["product_id"])

        try:
            referral, purchase, is_new = await self._attach_purchase(
                referrer_id, referred_user_id, terms, snapshot, now
            )
        except IntegrityError:
            # Another request created the pair between our read and commit
            await self.session.rollback()
            logger.warning(
                "Referral created concurrently, appending purchase",
                referrer_id=referrer_id,
                referred_user_id=referred_user_id,
            )
            referral, purchase, is_new = await self._attach_purchase(
                referrer_id, referred_user_id, terms, snapshot, now
            )

        referral_purchases_registered_total.labels(new_referral=str(is_new).lower()).inc()
        logger.info(
            "Referral purchase registered",
            referral_id=referral.id,
            purchase_id=purchase.id,
            referrer_id=referrer_id,
            referred_user_id=referred_user_id,
            new_referral=is_new,
            product_ref=terms["product_id"],
        )
        return referral, purchase

    async def _attach_purchase(
        self,
        referrer_id: int,
        referred_user_id: int,
        terms: Dict[str, Any],
        snapshot: Optional[Dict[str, Any]],
        now: datetime,
    ) -> Tuple[Referral, ReferralPurchase, bool]:
        """Create or extend the pair's referral with one purchase and commit."""
        referred_user = await WalletService(self.session).get_user(referred_user_id)
        referral = await self.find_referral(referrer_id, referred_user_id, for_update=True)
        is_new = referral is None
        if is_new:
            referral = Referral(
                referrer_id=referrer_id,
                referred_user_id=referred_user_id,
                status=REFERRAL_ACTIVE,
                start_date=now,
                end_date=now + timedelta(days=terms["days"]),
                daily_amount=terms["daily_amount"],
                days=terms["days"],
                total_amount=terms["total_amount"],
                commission_percentage=terms["commission_percentage"],
                plan_name=terms["name"],
                commission_earned=ZERO,
                days_paid=0,
                pending_days=0,
                purchases=[],
            )
            self.session.add(referral)
        elif referral.status == REFERRAL_CANCELLED:
            raise InvalidPurchaseDetailsError(f"Referral {referral.id} is cancelled")

        purchase = ReferralPurchase(
            order_ref=terms["order_id"],
            product_ref=terms["product_id"],
            product_snapshot=snapshot or {},
            amount=terms["total_amount"],
            purchased_at=now,
            daily_amount=terms["daily_amount"],
            days=terms["days"],
            commission_percentage=terms["commission_percentage"],
            paid_days=0,
            pending_days=terms["days"],
            status=PURCHASE_ACTIVE,
        )
        referral.purchases.append(purchase)

        if not is_new:
            # A new purchase reopens a finished referral; the reducer flips status back
            purchase_end = now + timedelta(days=terms["days"])
            if referral.end_date is None or referral.end_date < purchase_end:
                referral.end_date = purchase_end
        recompute_referral_aggregates(referral, now)

        if referred_user.referred_by_id is None:
            referred_user.referred_by_id = referrer_id

        await self.session.commit()
        return referral, purchase, is_new

    async def repair_aggregates(self, referral_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Recompute stored aggregates of one referral from its purchases."""
        referral = await self.get_referral(referral_id)
        changed = recompute_referral_aggregates(referral, now)
        if changed:
            await self.session.commit()
            logger.info("Referral aggregates repaired", referral_id=referral_id)
        return {
            "referral_id": referral.id,
            "changed": changed,
            "status": referral.status,
            "pending_days": referral.pending_days,
            "days_paid": referral.days_paid,
            "commission_earned": float(referral.commission_earned or 0),
        }

    async def repair_all_aggregates(self, now: Optional[datetime] = None) -> int:
        """Backfill pass over every referral. Returns number of repaired rows."""
        result = await self.session.execute(select(Referral).order_by(Referral.id))
        referrals: List[Referral] = list(result.scalars().all())
        fixed = 0
        for referral in referrals:
            if recompute_referral_aggregates(referral, now):
                fixed += 1
        if fixed:
            await self.session.commit()
        return fixed
