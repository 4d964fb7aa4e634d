#!/usr/bin/env python3
"""
Credit one day of referral commission for every active installment purchase.

Run daily via cron when the in-process scheduler is disabled
(ACCRUAL_SCHEDULER_ENABLED=false), e.g.:
    5 0 * * * cd /src && python -m scripts.run_daily_commission

Safe to run more than once a day: a purchase is credited at most once per day,
and a second concurrent run exits without writing.
"""
import asyncio
import sys

from backend.app.core.logging import setup_logging
from backend.app.core.run_lock import RunLock
from backend.app.core.settings import get_settings
from backend.app.services.accrual import process_daily_commissions


async def run() -> int:
    try:
        report = await process_daily_commissions()
    finally:
        await RunLock.close()

    if not report.lock_acquired:
        print("Another accrual run is in progress, nothing done.")
        return 0

    print(
        f"Accrual {report.run_date.isoformat()}: scanned {report.referrals_scanned} referrals, "
        f"credited {report.commissions_credited} days, total {report.total_amount}."
    )
    for failure in report.failures:
        print(f"  referral {failure.referral_id} failed: {failure.reason}")
    return 1 if report.failures else 0


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.is_production)
    sys.exit(asyncio.run(run()))
