# backend/app/services/missed_payments.py
"""
Missed-payment calculator: how many installment days each purchase is behind.

Read-only; safe to call at any time, including on completed purchases.
"""
import math
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.referral import Referral, ReferralPurchase
from backend.app.services.referrals import ReferralService, purchase_terms

SECONDS_PER_DAY = 24 * 60 * 60


def compute_missed_days(
    purchase: ReferralPurchase,
    referral: Referral,
    now: datetime,
) -> Dict[str, Any]:
    """Expected vs. actually paid days for one purchase at `now`."""
    start = purchase.purchased_at or referral.start_date
    if start is None:
        return {"purchase_id": purchase.id, "message": "No start date available"}

    days = purchase_terms(purchase, referral).days
    paid_days = purchase.paid_days or 0
    total_days_since_start = math.ceil((now - start).total_seconds() / SECONDS_PER_DAY)
    expected_payment_days = min(total_days_since_start, days)
    missed_days = max(0, expected_payment_days - paid_days)

    return {
        "purchase_id": purchase.id,
        "product": purchase.product_snapshot or {},
        "total_days_since_start": total_days_since_start,
        "expected_payment_days": expected_payment_days,
        "actual_paid_days": paid_days,
        "missed_days": missed_days,
        "last_paid_date": purchase.last_paid_date.isoformat() if purchase.last_paid_date else None,
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=days)).isoformat(),
    }


async def get_missed_payment_days(
    session: AsyncSession,
    referral_id: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Per-purchase missed days plus referral totals.

    Raises:
        ReferralNotFoundError: If the referral does not exist
    """
    now = now or datetime.utcnow()
    referral = await ReferralService(session).get_referral(referral_id)

    purchases = [compute_missed_days(p, referral, now) for p in referral.purchases]
    return {
        "referral_id": referral.id,
        "total_missed": sum(p.get("missed_days", 0) for p in purchases),
        "total_paid": sum(p.paid_days or 0 for p in referral.purchases),
        "purchases": purchases,
    }
