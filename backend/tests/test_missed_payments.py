"""Tests for the missed-payment calculator."""
import pytest
from datetime import timedelta
from decimal import Decimal

from backend.app.core.run_lock import RunLock
from backend.app.models.referral import Referral, ReferralPurchase
from backend.app.services.accrual import CommissionAccrualEngine
from backend.app.services.missed_payments import compute_missed_days, get_missed_payment_days
from backend.app.services.referrals import ReferralNotFoundError
from backend.tests.factories import DAY_ONE


def _referral(days: int = 20) -> Referral:
    return Referral(
        referrer_id=1,
        referred_user_id=2,
        status="ACTIVE",
        start_date=DAY_ONE,
        daily_amount=Decimal("100"),
        days=days,
        commission_percentage=Decimal("30"),
        purchases=[],
    )


def test_ten_days_in_with_four_paid_is_six_behind():
    referral = _referral(days=20)
    purchase = ReferralPurchase(purchased_at=DAY_ONE, paid_days=4, status="ACTIVE")
    referral.purchases.append(purchase)

    result = compute_missed_days(purchase, referral, DAY_ONE + timedelta(days=10))

    assert result["total_days_since_start"] == 10
    assert result["expected_payment_days"] == 10
    assert result["actual_paid_days"] == 4
    assert result["missed_days"] == 6
    assert result["start_date"] == DAY_ONE.isoformat()
    assert result["end_date"] == (DAY_ONE + timedelta(days=20)).isoformat()
    assert result["last_paid_date"] is None


def test_partial_day_counts_as_a_day():
    referral = _referral(days=20)
    purchase = ReferralPurchase(purchased_at=DAY_ONE, paid_days=0, status="ACTIVE")
    referral.purchases.append(purchase)

    result = compute_missed_days(purchase, referral, DAY_ONE + timedelta(days=2, hours=1))

    assert result["total_days_since_start"] == 3
    assert result["missed_days"] == 3


def test_expected_days_capped_at_plan_length():
    referral = _referral(days=5)
    purchase = ReferralPurchase(purchased_at=DAY_ONE, paid_days=5, status="COMPLETED")
    referral.purchases.append(purchase)

    result = compute_missed_days(purchase, referral, DAY_ONE + timedelta(days=40))

    assert result["expected_payment_days"] == 5
    assert result["missed_days"] == 0


def test_paid_ahead_is_never_negative():
    referral = _referral(days=10)
    purchase = ReferralPurchase(purchased_at=DAY_ONE, paid_days=3, status="ACTIVE")
    referral.purchases.append(purchase)

    result = compute_missed_days(purchase, referral, DAY_ONE + timedelta(hours=1))

    assert result["expected_payment_days"] == 1
    assert result["missed_days"] == 0


def test_purchase_without_date_uses_referral_start():
    referral = _referral(days=20)
    purchase = ReferralPurchase(paid_days=1, status="ACTIVE")
    referral.purchases.append(purchase)

    result = compute_missed_days(purchase, referral, DAY_ONE + timedelta(days=3))

    assert result["start_date"] == DAY_ONE.isoformat()
    assert result["missed_days"] == 2


@pytest.mark.asyncio
async def test_missed_days_for_stored_referral(session_factory, test_session, active_referral):
    engine = CommissionAccrualEngine(session_factory, RunLock())
    await engine.run(now=DAY_ONE)
    await engine.run(now=DAY_ONE + timedelta(days=1))

    async with session_factory() as session:
        data = await get_missed_payment_days(session, active_referral.id, now=DAY_ONE + timedelta(days=4))

    assert data["referral_id"] == active_referral.id
    assert data["total_paid"] == 2
    assert data["total_missed"] == 2
    purchase = data["purchases"][0]
    assert purchase["expected_payment_days"] == 4
    assert purchase["product"]["product_id"] == "PROD-001"
    assert purchase["last_paid_date"] == (DAY_ONE + timedelta(days=1)).isoformat()


@pytest.mark.asyncio
async def test_missed_days_unknown_referral(test_session):
    with pytest.raises(ReferralNotFoundError):
        await get_missed_payment_days(test_session, 4242, now=DAY_ONE)
