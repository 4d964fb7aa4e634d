# backend/app/services/stats.py
"""
Read-side referral reporting: totals, friend lists and per-product views.

Nothing here writes; every figure is derived from referrals, their purchases,
the commission ledger and withdrawals.
"""
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    REFERRAL_ACTIVE,
    REFERRAL_COMPLETED,
    REFERRAL_CANCELLED,
    PURCHASE_PENDING_LABEL,
    COUNTED_WITHDRAWAL_STATUSES,
    ZERO,
    to_money,
)
from backend.app.core.exceptions import InvalidArgumentError
from backend.app.core.settings import get_settings
from backend.app.models.referral import Referral, ReferralPurchase, DailyCommission
from backend.app.models.user import User
from backend.app.models.withdrawal import CommissionWithdrawal
from backend.app.services.referrals import (
    ReferralNotFoundError,
    PurchaseNotFoundError,
    purchase_terms,
)
from backend.app.services.wallet import UserNotFoundError
from backend.app.services.withdrawals import serialize_withdrawal


def _money(value) -> float:
    return float(to_money(value))


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _snapshot(purchase: ReferralPurchase) -> Dict[str, Optional[str]]:
    snap = purchase.product_snapshot or {}
    return {
        "product_id": snap.get("product_id") or purchase.product_ref,
        "product_name": snap.get("product_name"),
    }


def _pending_status(purchase: ReferralPurchase) -> str:
    return PURCHASE_PENDING_LABEL if (purchase.pending_days or 0) > 0 else purchase.status


def _earned(purchase: ReferralPurchase, referral: Referral) -> Decimal:
    return purchase_terms(purchase, referral).commission_per_day * (purchase.paid_days or 0)


def _referral_commission(referral: Optional[Referral]) -> Decimal:
    if referral is None:
        return ZERO
    return sum((_earned(p, referral) for p in referral.purchases), ZERO)


def _product_row(purchase: ReferralPurchase) -> Dict[str, Any]:
    return {
        **_snapshot(purchase),
        "pending_status": _pending_status(purchase),
        "total_amount": _money(purchase.amount),
        "date_of_purchase": _iso(purchase.purchased_at),
    }


def _product_detail_row(purchase: ReferralPurchase, referral: Referral) -> Dict[str, Any]:
    terms = purchase_terms(purchase, referral)
    return {
        **_product_row(purchase),
        "days": terms.days,
        "commission_per_day": _money(terms.commission_per_day),
        "paid_days": purchase.paid_days or 0,
        "pending_days": purchase.pending_days or 0,
        "status": purchase.status,
    }


class ReferralStatsService:
    """Service class for referral reporting."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_user(self, user_id: int) -> User:
        user = await self.session.get(User, user_id)
        if not user:
            raise UserNotFoundError(user_id)
        return user

    async def _referrals_of(self, referrer_id: int) -> List[Referral]:
        result = await self.session.execute(
            select(Referral).where(Referral.referrer_id == referrer_id).order_by(Referral.id)
        )
        return list(result.scalars().all())

    async def _referred_users(self, referrer_id: int) -> List[User]:
        result = await self.session.execute(
            select(User)
            .where(User.referred_by_id == referrer_id)
            .order_by(User.created_at.desc(), User.id.desc())
        )
        return list(result.scalars().all())

    async def _total_earnings(self, user_id: int) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(DailyCommission.amount), 0))
            .where(DailyCommission.referrer_id == user_id)
        )
        return to_money(result.scalar())

    async def _withdrawals(self, user_id: int) -> List[CommissionWithdrawal]:
        result = await self.session.execute(
            select(CommissionWithdrawal)
            .where(CommissionWithdrawal.user_id == user_id)
            .order_by(CommissionWithdrawal.created_at.desc(), CommissionWithdrawal.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    def _total_withdrawn(withdrawals: List[CommissionWithdrawal]) -> Decimal:
        return to_money(sum(
            (to_money(w.amount) for w in withdrawals if w.status in COUNTED_WITHDRAWAL_STATUSES),
            ZERO,
        ))

    async def _referral_for_pair(self, referrer_id: int, referred_user_id: int) -> Optional[Referral]:
        result = await self.session.execute(
            select(Referral).where(
                Referral.referrer_id == referrer_id,
                Referral.referred_user_id == referred_user_id,
            )
        )
        return result.scalar_one_or_none()

    async def _referral_of_referred(self, referred_user: User) -> Optional[Referral]:
        result = await self.session.execute(
            select(Referral)
            .where(Referral.referred_user_id == referred_user.id)
            .order_by(Referral.id)
        )
        referrals = list(result.scalars().all())
        for referral in referrals:
            if referral.referrer_id == referred_user.referred_by_id:
                return referral
        return referrals[0] if referrals else None

    async def get_referral_stats(self, user_id: int) -> Dict[str, Any]:
        """
        Headline numbers for a referrer.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        await self._get_user(user_id)
        referrals = await self._referrals_of(user_id)
        withdrawals = await self._withdrawals(user_id)

        total_earnings = await self._total_earnings(user_id)
        total_withdrawn = self._total_withdrawn(withdrawals)

        return {
            "total_referrals": len(referrals),
            "active_referrals": sum(1 for r in referrals if r.status == REFERRAL_ACTIVE),
            "total_products": sum(len(r.purchases) for r in referrals),
            "total_commission": _money(sum((to_money(r.commission_earned) for r in referrals), ZERO)),
            "total_earnings": _money(total_earnings),
            "total_withdrawn": _money(total_withdrawn),
            "available_balance": _money(total_earnings - total_withdrawn),
        }

    async def get_comprehensive_referral_stats(self, user_id: int, detailed: bool = False) -> Dict[str, Any]:
        """Referral limit, status breakdown, earnings and purchase totals for the referrer screen."""
        user = await self._get_user(user_id)
        referrals = await self._referrals_of(user_id)
        referred_users = await self._referred_users(user_id)
        withdrawals = await self._withdrawals(user_id)

        total_earnings = await self._total_earnings(user_id)
        total_withdrawn = self._total_withdrawn(withdrawals)
        referral_limit = user.referral_limit or get_settings().REFERRAL_LIMIT
        total_referrals = len(referred_users)

        data: Dict[str, Any] = {
            "referral_code": user.referral_code,
            "total_referrals": total_referrals,
            "referral_limit": referral_limit,
            "remaining_referrals": max(0, referral_limit - total_referrals),
            "referral_limit_reached": total_referrals >= referral_limit,
            "referral_stats": {
                "active_referrals": sum(1 for r in referrals if r.status == REFERRAL_ACTIVE),
                "completed_referrals": sum(1 for r in referrals if r.status == REFERRAL_COMPLETED),
                "cancelled_referrals": sum(1 for r in referrals if r.status == REFERRAL_CANCELLED),
            },
            "earnings": {
                "total_earnings": _money(total_earnings),
                "total_commission": _money(sum((to_money(r.commission_earned) for r in referrals), ZERO)),
                "available_balance": _money(total_earnings - total_withdrawn),
                "total_withdrawn": _money(total_withdrawn),
            },
            "purchases": {
                "total_products": sum(len(r.purchases) for r in referrals),
                "total_purchase_value": _money(sum(
                    (to_money(p.amount) for r in referrals for p in r.purchases), ZERO
                )),
            },
        }

        if detailed:
            by_referred = {r.referred_user_id: r for r in referrals}
            rows = []
            for ref_user in referred_users:
                referral = by_referred.get(ref_user.id)
                rows.append({
                    "id": ref_user.id,
                    "name": ref_user.name,
                    "email": ref_user.email,
                    "profile_picture": ref_user.profile_picture or "",
                    "joined_at": _iso(ref_user.created_at),
                    # Signed up through the link but nothing purchased yet
                    "status": referral.status if referral else "PENDING",
                    "total_products": len(referral.purchases) if referral else 0,
                    "total_commission": _money(_referral_commission(referral)),
                })
            data["referred_users"] = rows

        return data

    async def get_referral_list(self, referrer_id: int) -> Dict[str, Any]:
        """Every user this referrer brought in, with their purchases (newest signup first)."""
        referrals = {r.referred_user_id: r for r in await self._referrals_of(referrer_id)}
        rows = []
        for user in await self._referred_users(referrer_id):
            referral = referrals.get(user.id)
            purchases = referral.purchases if referral else []
            rows.append({
                "id": referral.id if referral else None,
                "referred_user": {
                    "id": user.id,
                    "name": user.name,
                    "profile_picture": user.profile_picture or "",
                },
                "total_products": len(purchases),
                "total_commission": _money(_referral_commission(referral)),
                "product_list": [_product_row(p) for p in purchases],
                "joined_at": _iso(user.created_at),
            })
        return {"success": True, "referrals": rows}

    async def get_referred_user_details(self, referred_user_id: int) -> Dict[str, Any]:
        """
        Friend screen: one referred user and all of their referred purchases.

        Raises:
            UserNotFoundError: If the referred user does not exist
        """
        user = await self._get_user(referred_user_id)
        referral = await self._referral_of_referred(user)

        products = []
        if referral is not None:
            products = [_product_detail_row(p, referral) for p in referral.purchases]

        return {
            "success": True,
            "friend_details": {
                "id": user.id,
                "name": user.name,
                "email": user.email,
                "profile_picture": user.profile_picture or "",
                "total_products": len(products),
                "total_commission": _money(_referral_commission(referral)),
                "products": products,
            },
        }

    async def get_referral_product_details(self, referred_user_id: int, product_id: str) -> Dict[str, Any]:
        """
        Commission breakdown of one product a friend is paying off.

        Raises:
            ReferralNotFoundError: If the user has no referral
            PurchaseNotFoundError: If no purchase matches the product
        """
        user = await self._get_user(referred_user_id)
        referral = await self._referral_of_referred(user)
        if referral is None:
            raise ReferralNotFoundError(referred_user_id)

        purchase = next(
            (p for p in referral.purchases if product_id in (_snapshot(p)["product_id"], p.product_ref)),
            None,
        )
        if purchase is None:
            raise PurchaseNotFoundError(product_id)

        terms = purchase_terms(purchase, referral)
        per_day = terms.commission_per_day
        pending_days = max(0, terms.days - (purchase.paid_days or 0))

        return {
            "success": True,
            "product_details": {
                **_snapshot(purchase),
                "date_of_purchase": _iso(purchase.purchased_at),
                "total_price": _money(purchase.amount),
                "commission_per_day": _money(per_day),
                "total_commission": _money(per_day * terms.days),
                "earned_commission": _money(per_day * (purchase.paid_days or 0)),
                "pending_days": pending_days,
                "pending_investment_amount": _money(per_day * pending_days),
                "status": purchase.status,
                "daily_sip": _money(terms.daily_amount),
            },
        }

    async def get_referrer_info(self, user_id: int) -> Optional[Dict[str, Any]]:
        """Who referred this user, or None."""
        user = await self._get_user(user_id)
        if user.referred_by_id is None:
            return None
        referrer = await self.session.get(User, user.referred_by_id)
        if referrer is None:
            return None
        return {
            "user_id": referrer.id,
            "name": referrer.name or "",
            "email": referrer.email or "",
            "profile_picture": referrer.profile_picture or "",
            "referral_code": referrer.referral_code or "",
        }

    # ----- Admin views -----

    async def get_user_referral_details(self, user_id: int) -> Dict[str, Any]:
        """Everything the admin panel shows about one referrer."""
        user = await self._get_user(user_id)
        referrals = await self._referrals_of(user.id)
        referred_users = await self._referred_users(user.id)
        withdrawals = await self._withdrawals(user.id)

        total_earnings = await self._total_earnings(user.id)
        total_withdrawn = self._total_withdrawn(withdrawals)
        referral_limit = user.referral_limit or get_settings().REFERRAL_LIMIT

        by_referred = {r.referred_user_id: r for r in referrals}
        referred_rows = []
        for ref_user in referred_users:
            referral = by_referred.get(ref_user.id)
            referred_rows.append({
                "user_id": ref_user.id,
                "name": ref_user.name,
                "email": ref_user.email,
                "phone": ref_user.phone,
                "profile_picture": ref_user.profile_picture or "",
                "joined_at": _iso(ref_user.created_at),
                "status": referral.status if referral else "PENDING",
                "total_products": len(referral.purchases) if referral else 0,
                "total_commission": _money(_referral_commission(referral)),
                "products": [_product_detail_row(p, referral) for p in referral.purchases] if referral else [],
            })

        return {
            "user_info": {
                "user_id": user.id,
                "name": user.name,
                "email": user.email,
                "phone": user.phone,
                "profile_picture": user.profile_picture,
                "referral_code": user.referral_code,
                "created_at": _iso(user.created_at),
            },
            "referral_stats": {
                "total_referrals": len(referred_users),
                "referral_limit": referral_limit,
                "remaining_referrals": max(0, referral_limit - len(referred_users)),
                "referral_limit_reached": len(referred_users) >= referral_limit,
                "active_referrals": sum(1 for r in referrals if r.status == REFERRAL_ACTIVE),
                "completed_referrals": sum(1 for r in referrals if r.status == REFERRAL_COMPLETED),
                "total_products": sum(len(r.purchases) for r in referrals),
            },
            "earnings": {
                "total_earnings": _money(total_earnings),
                "total_commission": _money(sum((to_money(r.commission_earned) for r in referrals), ZERO)),
                "available_balance": _money(total_earnings - total_withdrawn),
                "total_withdrawn": _money(total_withdrawn),
            },
            "referred_users": referred_rows,
            "withdrawals": [serialize_withdrawal(w) for w in withdrawals],
        }

    async def find_user_referral_details(
        self,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Admin lookup by phone number or email."""
        if not phone and not email:
            raise InvalidArgumentError("Please provide either phone number or email")
        if phone:
            q = select(User).where(User.phone == phone)
        else:
            q = select(User).where(User.email == email)
        result = await self.session.execute(q.limit(1))
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFoundError(phone or email)
        return await self.get_user_referral_details(user.id)

    async def list_users_with_referrals(
        self,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Paginated users with referred count, active referrals and ledger earnings."""
        page = max(1, page)
        limit = max(1, min(limit, 100))

        base = select(User)
        if search:
            pattern = f"%{search}%"
            base = base.where(or_(
                User.name.ilike(pattern),
                User.email.ilike(pattern),
                User.phone.ilike(pattern),
                User.referral_code.ilike(pattern),
            ))

        total_q = select(func.count()).select_from(base.subquery())
        total_users = (await self.session.execute(total_q)).scalar() or 0

        referred_subq = (
            select(User.referred_by_id.label("user_id"), func.count(User.id).label("cnt"))
            .where(User.referred_by_id.is_not(None))
            .group_by(User.referred_by_id)
            .subquery()
        )
        active_subq = (
            select(Referral.referrer_id.label("user_id"), func.count(Referral.id).label("cnt"))
            .where(Referral.status == REFERRAL_ACTIVE)
            .group_by(Referral.referrer_id)
            .subquery()
        )
        earned_subq = (
            select(DailyCommission.referrer_id.label("user_id"), func.sum(DailyCommission.amount).label("total"))
            .group_by(DailyCommission.referrer_id)
            .subquery()
        )

        result = await self.session.execute(
            base.add_columns(
                func.coalesce(referred_subq.c.cnt, 0).label("total_referrals"),
                func.coalesce(active_subq.c.cnt, 0).label("active_referrals"),
                func.coalesce(earned_subq.c.total, 0).label("total_earnings"),
            )
            .outerjoin(referred_subq, User.id == referred_subq.c.user_id)
            .outerjoin(active_subq, User.id == active_subq.c.user_id)
            .outerjoin(earned_subq, User.id == earned_subq.c.user_id)
            .order_by(User.created_at.desc(), User.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        rows = []
        for row in result.all():
            user = row[0]
            rows.append({
                "user_id": user.id,
                "name": user.name,
                "email": user.email,
                "phone": user.phone,
                "referral_code": user.referral_code,
                "joined_at": _iso(user.created_at),
                "total_referrals": row.total_referrals,
                "active_referrals": row.active_referrals,
                "total_earnings": _money(row.total_earnings),
            })

        return {
            "users": rows,
            "pagination": {
                "current_page": page,
                "total_pages": (total_users + limit - 1) // limit,
                "total_users": total_users,
                "limit": limit,
            },
        }
