"""
Tests for the daily commission accrual job.

Tests cover:
- Crediting one day per active purchase and the 5-day payoff scenario
- Same-day re-runs (no double credit)
- Ledger / wallet / aggregate agreement
- Lazy completion and termination
- Run-lock (process-local and Redis)
- Per-referral failures not stopping the batch
"""
import pytest
from datetime import timedelta, date
from decimal import Decimal

from sqlalchemy import select, func, delete

from backend.app.core.run_lock import RunLock
from backend.app.models.referral import Referral, ReferralPurchase, DailyCommission
from backend.app.models.user import User, WalletTransaction
from backend.app.services.accrual import CommissionAccrualEngine, process_daily_commissions
from backend.app.services.referrals import PurchaseTerms
from backend.tests.factories import DAY_ONE, FakeRedis, create_user, register_purchase


async def _load_referral(session_factory, referral_id: int) -> Referral:
    async with session_factory() as session:
        return await session.get(Referral, referral_id)


async def _load_user(session_factory, user_id: int) -> User:
    async with session_factory() as session:
        return await session.get(User, user_id)


async def _ledger(session_factory, referrer_id: int):
    async with session_factory() as session:
        result = await session.execute(
            select(DailyCommission)
            .where(DailyCommission.referrer_id == referrer_id)
            .order_by(DailyCommission.id)
        )
        return list(result.scalars().all())


def _engine(session_factory, run_lock=None) -> CommissionAccrualEngine:
    return CommissionAccrualEngine(session_factory, run_lock or RunLock(), lock_timeout=60)


# ============================================
# CREDITING
# ============================================

@pytest.mark.asyncio
async def test_first_run_credits_one_day(session_factory, active_referral, referrer):
    """One run credits commission_per_day once and updates purchase, referral and wallet."""
    report = await _engine(session_factory).run(now=DAY_ONE)

    assert report.lock_acquired is True
    assert report.referrals_scanned == 1
    assert report.commissions_credited == 1
    assert report.total_amount == Decimal("20.00")
    assert report.failures == []

    referral = await _load_referral(session_factory, active_referral.id)
    purchase = referral.purchases[0]
    assert purchase.paid_days == 1
    assert purchase.pending_days == 4
    assert purchase.last_paid_date == DAY_ONE
    assert referral.days_paid == 1
    assert referral.pending_days == 4
    assert referral.commission_earned == Decimal("20.00")
    assert referral.status == "ACTIVE"

    user = await _load_user(session_factory, referrer.id)
    assert user.total_earnings == Decimal("20.00")
    assert user.available_balance == Decimal("20.00")
    assert user.wallet_balance == Decimal("20.00")

    ledger = await _ledger(session_factory, referrer.id)
    assert len(ledger) == 1
    assert ledger[0].amount == Decimal("20.00")
    assert ledger[0].status == "PAID"
    assert ledger[0].accrual_date == date(2026, 3, 1)


@pytest.mark.asyncio
async def test_five_day_plan_pays_off_and_completes(session_factory, active_referral, referrer):
    """100/day at 20% over 5 days: 5 ledger rows, 100 earned, referral COMPLETED."""
    engine = _engine(session_factory)
    for day in range(5):
        await engine.run(now=DAY_ONE + timedelta(days=day))

    referral = await _load_referral(session_factory, active_referral.id)
    assert referral.status == "COMPLETED"
    assert referral.commission_earned == Decimal("100.00")
    assert referral.days_paid == 5
    assert referral.pending_days == 0
    assert referral.end_date is not None
    assert referral.purchases[0].status == "COMPLETED"

    ledger = await _ledger(session_factory, referrer.id)
    assert len(ledger) == 5
    assert sum(row.amount for row in ledger) == Decimal("100.00")

    user = await _load_user(session_factory, referrer.id)
    assert user.total_earnings == Decimal("100.00")


@pytest.mark.asyncio
async def test_completed_referral_is_not_credited_again(session_factory, active_referral, referrer):
    engine = _engine(session_factory)
    for day in range(5):
        await engine.run(now=DAY_ONE + timedelta(days=day))

    report = await engine.run(now=DAY_ONE + timedelta(days=6))

    assert report.referrals_scanned == 0
    assert report.commissions_credited == 0
    assert len(await _ledger(session_factory, referrer.id)) == 5


@pytest.mark.asyncio
async def test_commission_per_day_rounds_half_up(session_factory, test_session, referrer, referred_user):
    """
    Per-day commission is rounded half-up to cents, not kept exact.

    daily_amount * commission_percentage / 100 can have more than two
    decimals; the credited amount is that value rounded to cents. Here
    333.33 at 7.5% is 24.99975 per day and is credited as 25.00. The
    ledger, the wallet and the referral aggregates all use the rounded
    figure, so they stay consistent with each other.
    """
    await register_purchase(
        test_session,
        referrer.id,
        referred_user.id,
        {"daily_amount": "333.33", "days": 3, "commission_percentage": "7.5"},
    )

    report = await _engine(session_factory).run(now=DAY_ONE)

    assert report.total_amount == Decimal("25.00")
    ledger = await _ledger(session_factory, referrer.id)
    assert ledger[0].amount == Decimal("25.00")


@pytest.mark.parametrize("daily_amount, percentage, expected", [
    ("10.05", "12.5", Decimal("1.26")),  # 1.25625
    ("333.33", "7.5", Decimal("25.00")),  # 24.99975
    ("100", "20", Decimal("20.00")),
])
def test_commission_per_day_is_cent_rounded(daily_amount, percentage, expected):
    terms = PurchaseTerms(Decimal(daily_amount), 5, Decimal(percentage))

    assert terms.commission_per_day == expected


# ============================================
# IDEMPOTENCY
# ============================================

@pytest.mark.asyncio
async def test_second_run_same_day_credits_nothing(session_factory, active_referral, referrer):
    engine = _engine(session_factory)
    await engine.run(now=DAY_ONE)
    report = await engine.run(now=DAY_ONE + timedelta(hours=5))

    assert report.commissions_credited == 0
    assert report.referrals_updated == 0
    assert len(await _ledger(session_factory, referrer.id)) == 1

    user = await _load_user(session_factory, referrer.id)
    assert user.total_earnings == Decimal("20.00")


@pytest.mark.asyncio
async def test_paid_days_never_decrease(session_factory, active_referral):
    engine = _engine(session_factory)
    seen = []
    for now in (DAY_ONE, DAY_ONE, DAY_ONE + timedelta(days=1), DAY_ONE + timedelta(days=1, hours=3)):
        await engine.run(now=now)
        referral = await _load_referral(session_factory, active_referral.id)
        seen.append(referral.purchases[0].paid_days)

    assert seen == sorted(seen)
    assert seen[-1] == 2


@pytest.mark.asyncio
async def test_ledger_wallet_and_aggregates_agree(session_factory, test_session, referrer, referred_user):
    """Sum of ledger rows equals wallet earnings equals stored commission_earned."""
    other = await create_user(test_session, name="Clara Friend")
    await register_purchase(test_session, referrer.id, referred_user.id,
                            {"daily_amount": 100, "days": 3, "commission_percentage": 30})
    await register_purchase(test_session, referrer.id, other.id,
                            {"daily_amount": 50, "days": 10, "commission_percentage": 10})

    engine = _engine(session_factory)
    for day in range(4):
        await engine.run(now=DAY_ONE + timedelta(days=day))

    ledger_total = sum(row.amount for row in await _ledger(session_factory, referrer.id))
    user = await _load_user(session_factory, referrer.id)

    async with session_factory() as session:
        result = await session.execute(select(Referral).where(Referral.referrer_id == referrer.id))
        earned = sum(r.commission_earned for r in result.scalars().all())

    # 3 days x 30 + 4 days x 5
    assert ledger_total == Decimal("110.00")
    assert user.total_earnings == ledger_total
    assert earned == ledger_total


@pytest.mark.asyncio
async def test_second_purchase_runs_on_its_own_schedule(session_factory, test_session, active_referral, referrer, referred_user):
    engine = _engine(session_factory)
    await engine.run(now=DAY_ONE)
    await engine.run(now=DAY_ONE + timedelta(days=1))

    await register_purchase(
        test_session,
        referrer.id,
        referred_user.id,
        {"daily_amount": 200, "days": 2, "commission_percentage": 10},
        now=DAY_ONE + timedelta(days=2),
    )
    report = await engine.run(now=DAY_ONE + timedelta(days=2))

    assert report.commissions_credited == 2
    referral = await _load_referral(session_factory, active_referral.id)
    first, second = referral.purchases
    assert first.paid_days == 3
    assert second.paid_days == 1
    # 3 x 20 + 1 x 20
    assert referral.commission_earned == Decimal("80.00")
    assert referral.pending_days == 2 + 1


# ============================================
# COMPLETION
# ============================================

@pytest.mark.asyncio
async def test_fully_paid_active_purchase_is_completed_without_credit(session_factory, test_session, active_referral, referrer):
    """A purchase whose paid_days already reached days is closed, not paid again."""
    purchase = (await test_session.execute(
        select(ReferralPurchase).where(ReferralPurchase.referral_id == active_referral.id)
    )).scalar_one()
    purchase.paid_days = 5
    purchase.status = "ACTIVE"
    await test_session.commit()

    report = await _engine(session_factory).run(now=DAY_ONE)

    assert report.commissions_credited == 0
    assert report.referrals_updated == 1
    referral = await _load_referral(session_factory, active_referral.id)
    assert referral.purchases[0].status == "COMPLETED"
    assert referral.status == "COMPLETED"
    assert await _ledger(session_factory, referrer.id) == []


@pytest.mark.asyncio
async def test_cancelled_referral_is_skipped(session_factory, test_session, active_referral, referrer):
    referral = await test_session.get(Referral, active_referral.id)
    referral.status = "CANCELLED"
    await test_session.commit()

    report = await _engine(session_factory).run(now=DAY_ONE)

    assert report.referrals_scanned == 0
    assert await _ledger(session_factory, referrer.id) == []


# ============================================
# RUN LOCK
# ============================================

@pytest.mark.asyncio
async def test_run_is_skipped_while_lock_is_held(session_factory, active_referral, referrer):
    run_lock = RunLock()
    engine = _engine(session_factory, run_lock)

    async with run_lock.hold(CommissionAccrualEngine.LOCK_NAME, 60) as acquired:
        assert acquired is True
        report = await engine.run(now=DAY_ONE)

    assert report.lock_acquired is False
    assert report.referrals_scanned == 0
    assert await _ledger(session_factory, referrer.id) == []

    # Lock released: the next run works
    report = await engine.run(now=DAY_ONE)
    assert report.commissions_credited == 1


@pytest.mark.asyncio
async def test_redis_lock_busy_skips_run(session_factory, active_referral, referrer):
    redis = FakeRedis()
    await redis.set(f"{RunLock.KEY_PREFIX}{CommissionAccrualEngine.LOCK_NAME}", "other-worker")

    report = await _engine(session_factory, RunLock(redis)).run(now=DAY_ONE)

    assert report.lock_acquired is False
    assert await _ledger(session_factory, referrer.id) == []
    # Someone else's lock is left alone
    assert await redis.get(f"{RunLock.KEY_PREFIX}{CommissionAccrualEngine.LOCK_NAME}") == "other-worker"


@pytest.mark.asyncio
async def test_redis_lock_released_after_run(session_factory, active_referral):
    redis = FakeRedis()

    report = await process_daily_commissions(session_factory, RunLock(redis), now=DAY_ONE)

    assert report.lock_acquired is True
    assert report.commissions_credited == 1
    assert redis.set_calls == 1
    assert await redis.get(f"{RunLock.KEY_PREFIX}{CommissionAccrualEngine.LOCK_NAME}") is None


# ============================================
# FAILURES
# ============================================

@pytest.mark.asyncio
async def test_missing_referrer_is_reported_and_batch_continues(session_factory, test_session, referrer, referred_user):
    ghost = await create_user(test_session, name="Gone Referrer")
    other = await create_user(test_session, name="Dora Friend")
    broken, _ = await register_purchase(test_session, ghost.id, other.id, {"days": 3})
    healthy, _ = await register_purchase(test_session, referrer.id, referred_user.id, {"days": 3})

    await test_session.execute(delete(User).where(User.id == ghost.id))
    await test_session.commit()

    report = await _engine(session_factory).run(now=DAY_ONE)

    assert report.referrals_scanned == 2
    assert report.commissions_credited == 1
    assert len(report.failures) == 1
    assert report.failures[0].referral_id == broken.id
    assert "not found" in report.failures[0].reason

    # The failed referral rolled back as a whole
    referral = await _load_referral(session_factory, broken.id)
    assert referral.purchases[0].paid_days == 0
    assert (await _load_referral(session_factory, healthy.id)).purchases[0].paid_days == 1


@pytest.mark.asyncio
async def test_duplicate_ledger_row_rolls_back_referral(session_factory, test_session, active_referral, referrer):
    """A ledger row for today that the purchase does not know about blocks a second credit."""
    purchase = (await test_session.execute(
        select(ReferralPurchase).where(ReferralPurchase.referral_id == active_referral.id)
    )).scalar_one()
    test_session.add(DailyCommission(
        referral_id=active_referral.id,
        referrer_id=referrer.id,
        purchase_id=purchase.id,
        amount=Decimal("20.00"),
        date=DAY_ONE,
        accrual_date=DAY_ONE.date(),
        status="PAID",
    ))
    await test_session.commit()

    report = await _engine(session_factory).run(now=DAY_ONE)

    assert report.commissions_credited == 0
    assert len(report.failures) == 1
    assert "already credited" in report.failures[0].reason

    user = await _load_user(session_factory, referrer.id)
    assert user.total_earnings == Decimal("0.00")
    referral = await _load_referral(session_factory, active_referral.id)
    assert referral.purchases[0].paid_days == 0

    async with session_factory() as session:
        tx_count = (await session.execute(
            select(func.count()).select_from(WalletTransaction)
        )).scalar()
    assert tx_count == 0
