"""
Tests for referral reporting.

Scenario used by most tests: Anna referred Boris (one 5-day plan at 20/day)
and Clara (two 3-day plans at 30/day). Two accrual days have run, and Anna
has a pending, a completed and a failed withdrawal.
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from backend.app.core.exceptions import InvalidArgumentError
from backend.app.core.run_lock import RunLock
from backend.app.services.accrual import CommissionAccrualEngine
from backend.app.services.referrals import ReferralNotFoundError, PurchaseNotFoundError
from backend.app.services.stats import ReferralStatsService
from backend.app.services.wallet import UserNotFoundError
from backend.app.services.withdrawals import WithdrawalService
from backend.tests.factories import DAY_ONE, create_user, register_purchase


@pytest.fixture
async def scenario(session_factory, test_session, referrer, referred_user, active_referral):
    clara = await create_user(test_session, name="Clara Friend", email="clara@example.com", phone="+15550000003")
    plan = {"daily_amount": 100, "days": 3, "commission_percentage": 30}
    await register_purchase(test_session, referrer.id, clara.id, {**plan, "product_id": "PROD-002"})
    await register_purchase(test_session, referrer.id, clara.id, {**plan, "product_id": "PROD-003"})

    engine = CommissionAccrualEngine(session_factory, RunLock())
    await engine.run(now=DAY_ONE)
    await engine.run(now=DAY_ONE + timedelta(days=1))

    async with session_factory() as session:
        service = WithdrawalService(session)
        await service.request_withdrawal(referrer.id, 50, "upi", now=DAY_ONE + timedelta(days=2))
        done = await service.request_withdrawal(referrer.id, 30, "upi", now=DAY_ONE + timedelta(days=2))
        failed = await service.request_withdrawal(referrer.id, 20, "upi", now=DAY_ONE + timedelta(days=2))
        await service.update_withdrawal_status(done["withdrawal"]["id"], "COMPLETED")
        await service.update_withdrawal_status(failed["withdrawal"]["id"], "FAILED")

    return {"referrer": referrer, "boris": referred_user, "clara": clara}


@pytest.fixture
async def stats(session_factory):
    async with session_factory() as session:
        yield ReferralStatsService(session)


# ============================================
# REFERRER STATS
# ============================================

@pytest.mark.asyncio
async def test_referral_stats_totals(scenario, stats):
    data = await stats.get_referral_stats(scenario["referrer"].id)

    # Boris 2 x 20, Clara 2 purchases x 2 days x 30
    assert data == {
        "total_referrals": 2,
        "active_referrals": 2,
        "total_products": 3,
        "total_commission": 160.0,
        "total_earnings": 160.0,
        "total_withdrawn": 80.0,  # pending 50 + completed 30, failed excluded
        "available_balance": 80.0,
    }


@pytest.mark.asyncio
async def test_referral_stats_for_user_without_referrals(scenario, stats):
    data = await stats.get_referral_stats(scenario["boris"].id)

    assert data["total_referrals"] == 0
    assert data["total_earnings"] == 0.0
    assert data["available_balance"] == 0.0


@pytest.mark.asyncio
async def test_referral_stats_unknown_user(test_session):
    with pytest.raises(UserNotFoundError):
        await ReferralStatsService(test_session).get_referral_stats(31337)


@pytest.mark.asyncio
async def test_comprehensive_stats(scenario, stats):
    data = await stats.get_comprehensive_referral_stats(scenario["referrer"].id, detailed=True)

    assert data["referral_code"] == "ANNA2026"
    assert data["total_referrals"] == 2
    assert data["referral_limit"] == 50
    assert data["remaining_referrals"] == 48
    assert data["referral_limit_reached"] is False
    assert data["referral_stats"] == {
        "active_referrals": 2,
        "completed_referrals": 0,
        "cancelled_referrals": 0,
    }
    assert data["earnings"]["total_earnings"] == 160.0
    assert data["purchases"] == {"total_products": 3, "total_purchase_value": 1100.0}

    rows = {row["name"]: row for row in data["referred_users"]}
    assert rows["Boris Friend"]["total_products"] == 1
    assert rows["Boris Friend"]["total_commission"] == 40.0
    assert rows["Clara Friend"]["total_commission"] == 120.0


@pytest.mark.asyncio
async def test_comprehensive_stats_without_detail_has_no_user_list(scenario, stats):
    data = await stats.get_comprehensive_referral_stats(scenario["referrer"].id)

    assert "referred_users" not in data


# ============================================
# FRIEND SCREENS
# ============================================

@pytest.mark.asyncio
async def test_referral_list(scenario, stats):
    data = await stats.get_referral_list(scenario["referrer"].id)

    assert data["success"] is True
    names = [row["referred_user"]["name"] for row in data["referrals"]]
    # Same signup time: newest id first
    assert names == ["Clara Friend", "Boris Friend"]

    boris = data["referrals"][1]
    assert boris["total_products"] == 1
    assert boris["product_list"] == [{
        "product_id": "PROD-001",
        "product_name": "Gold Savings Plan",
        "pending_status": "PENDING",
        "total_amount": 500.0,
        "date_of_purchase": DAY_ONE.isoformat(),
    }]


@pytest.mark.asyncio
async def test_referred_user_details(scenario, stats):
    data = await stats.get_referred_user_details(scenario["clara"].id)

    details = data["friend_details"]
    assert details["name"] == "Clara Friend"
    assert details["total_products"] == 2
    assert details["total_commission"] == 120.0
    assert [p["product_id"] for p in details["products"]] == ["PROD-002", "PROD-003"]
    assert details["products"][0]["paid_days"] == 2
    assert details["products"][0]["pending_days"] == 1


@pytest.mark.asyncio
async def test_referral_product_details(scenario, stats):
    data = await stats.get_referral_product_details(scenario["boris"].id, "PROD-001")

    details = data["product_details"]
    assert details["product_name"] == "Gold Savings Plan"
    assert details["commission_per_day"] == 20.0
    assert details["total_commission"] == 100.0
    assert details["earned_commission"] == 40.0
    assert details["pending_days"] == 3
    assert details["pending_investment_amount"] == 60.0
    assert details["daily_sip"] == 100.0
    assert details["status"] == "ACTIVE"


@pytest.mark.asyncio
async def test_referral_product_details_unknown_product(scenario, stats):
    with pytest.raises(PurchaseNotFoundError):
        await stats.get_referral_product_details(scenario["boris"].id, "PROD-999")


@pytest.mark.asyncio
async def test_referral_product_details_without_referral(scenario, stats):
    with pytest.raises(ReferralNotFoundError):
        await stats.get_referral_product_details(scenario["referrer"].id, "PROD-001")


@pytest.mark.asyncio
async def test_referrer_info(scenario, stats):
    info = await stats.get_referrer_info(scenario["boris"].id)

    assert info["user_id"] == scenario["referrer"].id
    assert info["referral_code"] == "ANNA2026"
    assert await stats.get_referrer_info(scenario["referrer"].id) is None


# ============================================
# ADMIN VIEWS
# ============================================

@pytest.mark.asyncio
async def test_user_referral_details(scenario, stats):
    data = await stats.get_user_referral_details(scenario["referrer"].id)

    assert data["user_info"]["email"] == "anna@example.com"
    assert data["referral_stats"]["total_referrals"] == 2
    assert data["referral_stats"]["total_products"] == 3
    assert data["earnings"]["total_withdrawn"] == 80.0
    assert len(data["referred_users"]) == 2
    assert sorted(w["status"] for w in data["withdrawals"]) == ["COMPLETED", "FAILED", "PENDING"]


@pytest.mark.asyncio
async def test_find_user_by_phone_or_email(scenario, stats):
    by_phone = await stats.find_user_referral_details(phone="+15550000001")
    by_email = await stats.find_user_referral_details(email="anna@example.com")

    assert by_phone["user_info"]["user_id"] == scenario["referrer"].id
    assert by_email["user_info"]["user_id"] == scenario["referrer"].id


@pytest.mark.asyncio
async def test_find_user_requires_phone_or_email(stats):
    with pytest.raises(InvalidArgumentError):
        await stats.find_user_referral_details()


@pytest.mark.asyncio
async def test_find_user_unknown(scenario, stats):
    with pytest.raises(UserNotFoundError):
        await stats.find_user_referral_details(email="nobody@example.com")


@pytest.mark.asyncio
async def test_list_users_with_referrals(scenario, stats):
    data = await stats.list_users_with_referrals(page=1, limit=2)

    assert data["pagination"] == {"current_page": 1, "total_pages": 2, "total_users": 3, "limit": 2}
    assert len(data["users"]) == 2

    found = await stats.list_users_with_referrals(search="anna")
    assert [u["name"] for u in found["users"]] == ["Anna Referrer"]
    anna = found["users"][0]
    assert anna["total_referrals"] == 2
    assert anna["active_referrals"] == 2
    assert anna["total_earnings"] == 160.0


@pytest.mark.asyncio
async def test_list_users_counts_per_row(scenario, stats):
    last_page = await stats.list_users_with_referrals(page=2, limit=2)

    # Oldest account lands on the last page with its own totals
    assert [u["name"] for u in last_page["users"]] == ["Anna Referrer"]
    assert last_page["users"][0]["total_referrals"] == 2
    assert last_page["users"][0]["total_earnings"] == 160.0

    friends = await stats.list_users_with_referrals(search="friend")
    for row in friends["users"]:
        assert row["total_referrals"] == 0
        assert row["active_referrals"] == 0
        assert row["total_earnings"] == 0.0
    assert sorted(u["name"] for u in friends["users"]) == ["Boris Friend", "Clara Friend"]
