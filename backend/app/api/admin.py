from fastapi import APIRouter, Depends, HTTPException, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List, Callable

from backend.app.api.deps import get_session, get_session_factory, get_run_lock
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.core.run_lock import RunLock
from backend.app.core.settings import get_settings
from backend.app.schemas import (
    ReferralPurchaseCreate,
    ReferralPurchaseResponse,
    WithdrawalStatusUpdate,
    WithdrawalResponse,
)
from backend.app.services.accrual import CommissionAccrualEngine
from backend.app.services.referrals import ReferralService
from backend.app.services.stats import ReferralStatsService
from backend.app.services.withdrawals import WithdrawalService, serialize_withdrawal

router = APIRouter()
logger = get_logger(__name__)


async def require_admin_token(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    """Require admin token. If ADMIN_SECRET is not configured, reject all requests (fail-closed)."""
    admin_secret = get_settings().ADMIN_SECRET
    if not admin_secret:
        logger.warning("ADMIN_SECRET not configured, admin endpoints are blocked")
        raise HTTPException(status_code=503, detail="Admin panel not configured (ADMIN_SECRET missing)")
    if not x_admin_token or x_admin_token != admin_secret:
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")


def _handle_service_error(e: ServiceError):
    """Convert service exceptions to HTTP exceptions."""
    raise HTTPException(status_code=e.status_code, detail=e.message)


# ============================================
# REFERRAL LEDGER
# ============================================

@router.post("/referrals/purchases", response_model=ReferralPurchaseResponse)
async def register_referral_purchase(
    data: ReferralPurchaseCreate,
    session: AsyncSession = Depends(get_session),
):
    """Called by the order flow once a referred user's installment purchase is confirmed."""
    details = data.purchase_details.model_dump(exclude_none=True) if data.purchase_details else None
    try:
        referral, purchase = await ReferralService(session).register_referral_purchase(
            referrer_id=data.referrer_id,
            referred_user_id=data.referred_user_id,
            purchase_details=details,
        )
    except ServiceError as e:
        _handle_service_error(e)
    return {
        "referral_id": referral.id,
        "purchase_id": purchase.id,
        "status": referral.status,
        "pending_days": referral.pending_days,
        "days_paid": referral.days_paid,
        "commission_earned": float(referral.commission_earned or 0),
    }


@router.post("/referrals/{referral_id}/recompute")
async def recompute_referral(referral_id: int, session: AsyncSession = Depends(get_session)):
    """Repair stored aggregates of one referral from its purchases."""
    try:
        return await ReferralService(session).repair_aggregates(referral_id)
    except ServiceError as e:
        _handle_service_error(e)


@router.post("/accrual/run")
async def run_accrual(
    session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
    run_lock: RunLock = Depends(get_run_lock),
):
    """Run the daily commission accrual now. Safe to repeat: a purchase is credited once per day."""
    engine = CommissionAccrualEngine(session_factory, run_lock)
    report = await engine.run()
    if not report.lock_acquired:
        raise HTTPException(status_code=409, detail="Accrual run already in progress")
    logger.info("Manual accrual run finished", credited=report.commissions_credited)
    return report.to_dict()


# ============================================
# WITHDRAWALS
# ============================================

@router.get("/withdrawals", response_model=List[WithdrawalResponse])
async def list_withdrawals(
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await WithdrawalService(session).list_withdrawals(user_id=user_id, status=status)
    except ServiceError as e:
        _handle_service_error(e)


@router.patch("/withdrawals/{withdrawal_id}", response_model=WithdrawalResponse)
async def update_withdrawal_status(
    withdrawal_id: int,
    data: WithdrawalStatusUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        withdrawal = await WithdrawalService(session).update_withdrawal_status(
            withdrawal_id,
            data.status,
            transaction_id=data.transaction_id,
        )
    except ServiceError as e:
        _handle_service_error(e)
    return serialize_withdrawal(withdrawal)


# ============================================
# USER REFERRAL OVERVIEW
# ============================================

@router.get("/referrals/users")
async def list_users_with_referrals(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    return await ReferralStatsService(session).list_users_with_referrals(page=page, limit=limit, search=search)


@router.get("/referrals/user")
async def find_user_referral_details(
    phone: Optional[str] = None,
    email: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    try:
        data = await ReferralStatsService(session).find_user_referral_details(phone=phone, email=email)
    except ServiceError as e:
        _handle_service_error(e)
    return {"success": True, "data": data}


@router.get("/referrals/user/{user_id}")
async def get_user_referral_details(user_id: int, session: AsyncSession = Depends(get_session)):
    try:
        data = await ReferralStatsService(session).get_user_referral_details(user_id)
    except ServiceError as e:
        _handle_service_error(e)
    return {"success": True, "data": data}
