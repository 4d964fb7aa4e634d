"""
Shared constants for the referral commission engine.
"""
from decimal import Decimal, ROUND_HALF_UP

# ---------------------------------------------------------------------------
# Referral statuses
# ---------------------------------------------------------------------------
REFERRAL_ACTIVE = "ACTIVE"
REFERRAL_COMPLETED = "COMPLETED"
REFERRAL_CANCELLED = "CANCELLED"
REFERRAL_STATUSES = (REFERRAL_ACTIVE, REFERRAL_COMPLETED, REFERRAL_CANCELLED)

# Purchase statuses (COMPLETED is terminal)
PURCHASE_ACTIVE = "ACTIVE"
PURCHASE_COMPLETED = "COMPLETED"

# Pending flag shown on reporting screens while days remain
PURCHASE_PENDING_LABEL = "PENDING"

# Ledger rows are only ever written as paid
COMMISSION_PAID = "PAID"

# ---------------------------------------------------------------------------
# Withdrawal statuses
# ---------------------------------------------------------------------------
WITHDRAWAL_PENDING = "PENDING"
WITHDRAWAL_PROCESSING = "PROCESSING"
WITHDRAWAL_COMPLETED = "COMPLETED"
WITHDRAWAL_FAILED = "FAILED"
VALID_WITHDRAWAL_STATUSES = [
    WITHDRAWAL_PENDING,
    WITHDRAWAL_PROCESSING,
    WITHDRAWAL_COMPLETED,
    WITHDRAWAL_FAILED,
]
TERMINAL_WITHDRAWAL_STATUSES = (WITHDRAWAL_COMPLETED, WITHDRAWAL_FAILED)

# Withdrawals that count against the referral balance in stats
COUNTED_WITHDRAWAL_STATUSES = (WITHDRAWAL_COMPLETED, WITHDRAWAL_PENDING)

# ---------------------------------------------------------------------------
# Wallet transaction types
# ---------------------------------------------------------------------------
TX_REFERRAL_COMMISSION = "referral_commission"
TX_WITHDRAWAL = "withdrawal"
TX_WITHDRAWAL_REVERSAL = "withdrawal_reversal"

# ---------------------------------------------------------------------------
# Decimal helpers
# ---------------------------------------------------------------------------
ZERO = Decimal("0")
ONE_CENT = Decimal("0.01")
PERCENT_BASE = Decimal("100")


def to_money(value) -> Decimal:
    """Coerce a number to Decimal rounded to cents."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(ONE_CENT, rounding=ROUND_HALF_UP)
