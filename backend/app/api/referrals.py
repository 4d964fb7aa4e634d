from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List

from backend.app.api.deps import get_session
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.schemas import WithdrawalCreate, WithdrawalResponse, ReferralStatsResponse
from backend.app.services.missed_payments import get_missed_payment_days
from backend.app.services.stats import ReferralStatsService
from backend.app.services.withdrawals import WithdrawalService

router = APIRouter()
logger = get_logger(__name__)


def _handle_service_error(e: ServiceError):
    """Convert service exceptions to HTTP exceptions."""
    raise HTTPException(status_code=e.status_code, detail=e.message)


# ============================================
# REFERRER SCREENS
# ============================================

@router.get("/users/{user_id}/stats", response_model=ReferralStatsResponse)
async def get_referral_stats(user_id: int, session: AsyncSession = Depends(get_session)):
    """Headline referral numbers of a user."""
    try:
        return await ReferralStatsService(session).get_referral_stats(user_id)
    except ServiceError as e:
        _handle_service_error(e)


@router.get("/users/{user_id}/summary")
async def get_referral_summary(
    user_id: int,
    detailed: bool = False,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await ReferralStatsService(session).get_comprehensive_referral_stats(user_id, detailed=detailed)
    except ServiceError as e:
        _handle_service_error(e)


@router.get("/users/{user_id}/referrer")
async def get_referrer(user_id: int, session: AsyncSession = Depends(get_session)):
    """Who referred this user. `referrer` is null when nobody did."""
    try:
        info = await ReferralStatsService(session).get_referrer_info(user_id)
    except ServiceError as e:
        _handle_service_error(e)
    return {"success": True, "referrer": info}


@router.get("/users/{referrer_id}/list")
async def get_referral_list(referrer_id: int, session: AsyncSession = Depends(get_session)):
    return await ReferralStatsService(session).get_referral_list(referrer_id)


@router.get("/friends/{referred_user_id}")
async def get_referred_user_details(referred_user_id: int, session: AsyncSession = Depends(get_session)):
    try:
        return await ReferralStatsService(session).get_referred_user_details(referred_user_id)
    except ServiceError as e:
        _handle_service_error(e)


@router.get("/friends/{referred_user_id}/products/{product_id}")
async def get_referral_product_details(
    referred_user_id: int,
    product_id: str,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await ReferralStatsService(session).get_referral_product_details(referred_user_id, product_id)
    except ServiceError as e:
        _handle_service_error(e)


@router.get("/{referral_id}/missed-days")
async def get_missed_days(referral_id: int, session: AsyncSession = Depends(get_session)):
    """Installment days each purchase of the referral is behind."""
    try:
        data = await get_missed_payment_days(session, referral_id)
    except ServiceError as e:
        _handle_service_error(e)
    return {"success": True, "data": data}


# ============================================
# WITHDRAWALS
# ============================================

@router.post("/withdrawals")
async def request_withdrawal(data: WithdrawalCreate, session: AsyncSession = Depends(get_session)):
    """
    Ask for a payout of the wallet balance.

    Insufficient balance answers 400 with the failure body; the wallet is untouched.
    """
    try:
        result = await WithdrawalService(session).request_withdrawal(
            user_id=data.user_id,
            amount=data.amount,
            payment_method=data.payment_method,
            payment_details=data.payment_details,
        )
    except ServiceError as e:
        _handle_service_error(e)
    if not result["success"]:
        raise HTTPException(status_code=400, detail=result["message"])
    return result


@router.get("/users/{user_id}/withdrawals", response_model=List[WithdrawalResponse])
async def list_user_withdrawals(
    user_id: int,
    status: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await WithdrawalService(session).list_withdrawals(user_id=user_id, status=status)
    except ServiceError as e:
        _handle_service_error(e)
