# backend/app/services/__init__.py
"""
Services layer for business logic.
Keeps API endpoints thin and business logic testable and reusable.
"""

from backend.app.services.wallet import (
    WalletService,
    WalletServiceError,
    UserNotFoundError,
    InsufficientBalanceError,
)
from backend.app.services.products import ProductCatalog
from backend.app.services.referrals import (
    ReferralService,
    ReferralServiceError,
    ReferralNotFoundError,
    PurchaseNotFoundError,
    InvalidPurchaseDetailsError,
    recompute_referral_aggregates,
)
from backend.app.services.accrual import (
    CommissionAccrualEngine,
    AccrualReport,
    AccrualError,
    DuplicateAccrualError,
    PartialBatchFailure,
    process_daily_commissions,
)
from backend.app.services.missed_payments import get_missed_payment_days
from backend.app.services.withdrawals import (
    WithdrawalService,
    WithdrawalServiceError,
    WithdrawalNotFoundError,
    InvalidWithdrawalStatusError,
    InvalidWithdrawalAmountError,
    WithdrawalTransitionError,
)
from backend.app.services.stats import ReferralStatsService

__all__ = [
    # Wallet
    "WalletService",
    "WalletServiceError",
    "UserNotFoundError",
    "InsufficientBalanceError",
    # Products
    "ProductCatalog",
    # Referral service
    "ReferralService",
    "ReferralServiceError",
    "ReferralNotFoundError",
    "PurchaseNotFoundError",
    "InvalidPurchaseDetailsError",
    "recompute_referral_aggregates",
    # Accrual job
    "CommissionAccrualEngine",
    "AccrualReport",
    "AccrualError",
    "DuplicateAccrualError",
    "PartialBatchFailure",
    "process_daily_commissions",
    # Missed payments
    "get_missed_payment_days",
    # Withdrawals
    "WithdrawalService",
    "WithdrawalServiceError",
    "WithdrawalNotFoundError",
    "InvalidWithdrawalStatusError",
    "InvalidWithdrawalAmountError",
    "WithdrawalTransitionError",
    # Stats
    "ReferralStatsService",
]
