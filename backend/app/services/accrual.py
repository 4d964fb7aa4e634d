# backend/app/services/accrual.py
"""
Daily commission accrual job.

Walks every ACTIVE referral once per scheduling cycle and, for each ACTIVE
purchase not yet credited today, writes one ledger row, advances the
purchase and credits the referrer's wallet.

Guarantees:
- one run at a time (RunLock);
- at most one credit per purchase per calendar day (last_paid_date guard,
  backed by the unique (purchase_id, accrual_date) ledger constraint);
- each referral is its own transaction: ledger rows, purchase counters and
  the wallet credit commit together or not at all;
- a failing referral is logged, reported and skipped; the batch goes on.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Dict, Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    REFERRAL_ACTIVE,
    PURCHASE_ACTIVE,
    PURCHASE_COMPLETED,
    COMMISSION_PAID,
    ZERO,
)
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger, bind_context
from backend.app.core.metrics import (
    accrual_runs_total,
    accrual_record_failures_total,
    accrual_run_duration_seconds,
    referral_commissions_credited_total,
    referral_commission_amount_total,
)
from backend.app.core.run_lock import RunLock
from backend.app.core.settings import get_settings
from backend.app.models.referral import Referral, DailyCommission
from backend.app.models.user import User
from backend.app.services.referrals import purchase_terms, recompute_referral_aggregates
from backend.app.services.wallet import WalletService

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


class AccrualError(ServiceError):
    """Base exception for accrual errors."""


class DuplicateAccrualError(AccrualError):
    def __init__(self, referral_id: int):
        super().__init__(
            f"Referral {referral_id}: a purchase was already credited for this day",
            409,
        )


class PartialBatchFailure(AccrualError):
    """One referral's pass failed; carried in the run report instead of raised."""

    def __init__(self, referral_id: int, reason: str):
        self.referral_id = referral_id
        self.reason = reason
        super().__init__(f"Referral {referral_id} accrual failed: {reason}", 500)


@dataclass
class AccrualReport:
    run_date: date
    lock_acquired: bool = True
    referrals_scanned: int = 0
    referrals_updated: int = 0
    commissions_credited: int = 0
    total_amount: Decimal = ZERO
    failures: List[PartialBatchFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date.isoformat(),
            "lock_acquired": self.lock_acquired,
            "referrals_scanned": self.referrals_scanned,
            "referrals_updated": self.referrals_updated,
            "commissions_credited": self.commissions_credited,
            "total_amount": float(self.total_amount),
            "failures": [
                {"referral_id": f.referral_id, "reason": f.reason} for f in self.failures
            ],
        }


@dataclass
class _ReferralOutcome:
    changed: bool = False
    credited: int = 0
    amount: Decimal = ZERO


class CommissionAccrualEngine:
    """Runs the daily accrual over all active referrals."""

    LOCK_NAME = "daily_commission"

    def __init__(
        self,
        session_factory: SessionFactory,
        run_lock: Optional[RunLock] = None,
        lock_timeout: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.run_lock = run_lock or RunLock()
        self.lock_timeout = lock_timeout or get_settings().ACCRUAL_LOCK_TIMEOUT

    async def run(self, now: Optional[datetime] = None) -> AccrualReport:
        """
        Process one accrual cycle.

        Never raises for a single referral; failures end up in the report.
        """
        now = now or datetime.utcnow()
        report = AccrualReport(run_date=now.date())

        with bind_context(run_date=report.run_date.isoformat()):
            async with self.run_lock.hold(self.LOCK_NAME, self.lock_timeout) as acquired:
                if not acquired:
                    report.lock_acquired = False
                    accrual_runs_total.labels(result="skipped").inc()
                    logger.warning("Daily accrual skipped: another run holds the lock")
                    return report

                started = time.monotonic()
                logger.info("Daily accrual started")
                for referral_id in await self._active_referral_ids():
                    report.referrals_scanned += 1
                    try:
                        outcome = await self._process_referral(referral_id, now)
                    except Exception as e:
                        failure = PartialBatchFailure(referral_id, str(e))
                        report.failures.append(failure)
                        accrual_record_failures_total.inc()
                        logger.error("Referral accrual failed", referral_id=referral_id, error=str(e))
                        continue

                    if outcome.changed:
                        report.referrals_updated += 1
                    report.commissions_credited += outcome.credited
                    report.total_amount += outcome.amount

                accrual_run_duration_seconds.observe(time.monotonic() - started)
                accrual_runs_total.labels(result="partial" if report.failures else "ok").inc()
                logger.info(
                    "Daily accrual finished",
                    scanned=report.referrals_scanned,
                    updated=report.referrals_updated,
                    credited=report.commissions_credited,
                    total_amount=float(report.total_amount),
                    failures=len(report.failures),
                )
        return report

    async def _active_referral_ids(self) -> List[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Referral.id)
                .where(Referral.status == REFERRAL_ACTIVE)
                .order_by(Referral.id)
            )
            return [row[0] for row in result.all()]

    async def _process_referral(self, referral_id: int, now: datetime) -> _ReferralOutcome:
        async with self.session_factory() as session:
            try:
                outcome = await self._accrue_referral(session, referral_id, now)
                if outcome.changed:
                    await session.commit()
                else:
                    await session.rollback()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateAccrualError(referral_id) from e
            except Exception:
                await session.rollback()
                raise

        if outcome.credited:
            referral_commissions_credited_total.inc(outcome.credited)
            referral_commission_amount_total.inc(float(outcome.amount))
        return outcome

    async def _accrue_referral(
        self,
        session: AsyncSession,
        referral_id: int,
        now: datetime,
    ) -> _ReferralOutcome:
        outcome = _ReferralOutcome()
        today = now.date()

        # Fresh, locked copy: the id list may be stale by now
        result = await session.execute(
            select(Referral).where(Referral.id == referral_id).with_for_update()
        )
        referral = result.scalar_one_or_none()
        if referral is None or referral.status != REFERRAL_ACTIVE:
            return outcome

        wallet = WalletService(session)
        referrer: Optional[User] = None

        for purchase in referral.purchases:
            if purchase.status != PURCHASE_ACTIVE:
                continue

            terms = purchase_terms(purchase, referral)
            if (purchase.paid_days or 0) >= terms.days:
                purchase.status = PURCHASE_COMPLETED
                outcome.changed = True
                continue

            if purchase.last_paid_date is not None and purchase.last_paid_date.date() == today:
                continue

            if referrer is None:
                referrer = await wallet.get_user_for_update(referral.referrer_id)

            amount = terms.commission_per_day
            session.add(DailyCommission(
                referral_id=referral.id,
                referrer_id=referral.referrer_id,
                purchase_id=purchase.id,
                amount=amount,
                date=now,
                accrual_date=today,
                status=COMMISSION_PAID,
            ))

            purchase.paid_days = (purchase.paid_days or 0) + 1
            purchase.last_paid_date = now
            purchase.pending_days = max(0, terms.days - purchase.paid_days)
            if purchase.paid_days >= terms.days:
                purchase.status = PURCHASE_COMPLETED
            referral.last_paid_date = now

            wallet.credit_commission(
                referrer,
                amount,
                description=f"Daily commission for referral {referral.id} (purchase {purchase.id})",
                now=now,
            )

            outcome.changed = True
            outcome.credited += 1
            outcome.amount += amount
            logger.debug(
                "Commission credited",
                referral_id=referral.id,
                purchase_id=purchase.id,
                amount=float(amount),
                paid_days=purchase.paid_days,
            )

        if recompute_referral_aggregates(referral, now):
            outcome.changed = True
        return outcome


async def process_daily_commissions(
    session_factory: Optional[SessionFactory] = None,
    run_lock: Optional[RunLock] = None,
    now: Optional[datetime] = None,
) -> AccrualReport:
    """Entry point for the scheduler and the cron script."""
    if session_factory is None:
        from backend.app.core.database import async_session
        session_factory = async_session
    if run_lock is None:
        settings = get_settings()
        redis = await RunLock.get_redis() if settings.ACCRUAL_USE_REDIS_LOCK else None
        run_lock = RunLock(redis)
    engine = CommissionAccrualEngine(session_factory, run_lock)
    return await engine.run(now)
