from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, Union
from decimal import Decimal


# --- Referral purchases ---
class PurchaseDetails(BaseModel):
    """Installment terms of one purchase; absent values take plan defaults."""
    daily_amount: Optional[Decimal] = None
    days: Optional[Decimal] = None
    commission_percentage: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    product_id: Optional[Union[int, str]] = None
    order_id: Optional[Union[int, str]] = None
    name: Optional[str] = None


class ReferralPurchaseCreate(BaseModel):
    referrer_id: int
    referred_user_id: int
    purchase_details: Optional[PurchaseDetails] = None


class ReferralPurchaseResponse(BaseModel):
    referral_id: int
    purchase_id: int
    status: str
    pending_days: int
    days_paid: int
    commission_earned: float


# --- Withdrawals ---
class WithdrawalCreate(BaseModel):
    user_id: int
    amount: Decimal
    payment_method: str = Field(min_length=1, max_length=32)
    payment_details: Optional[Dict[str, Any]] = None

    @field_validator("payment_method")
    @classmethod
    def strip_payment_method(cls, v: str) -> str:
        return v.strip()


class WithdrawalStatusUpdate(BaseModel):
    status: str
    transaction_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("status")
    @classmethod
    def strip_status(cls, v: str) -> str:
        return v.strip()


class WithdrawalResponse(BaseModel):
    id: int
    user_id: int
    amount: float
    payment_method: str
    payment_details: Dict[str, Any] = {}
    status: str
    transaction_id: Optional[str] = None
    requested_at: Optional[str] = None
    processed_at: Optional[str] = None
    refunded_at: Optional[str] = None


# --- Stats ---
class ReferralStatsResponse(BaseModel):
    total_referrals: int
    active_referrals: int
    total_products: int
    total_commission: float
    total_earnings: float
    total_withdrawn: float
    available_balance: float
