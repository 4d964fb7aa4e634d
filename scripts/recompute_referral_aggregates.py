#!/usr/bin/env python3
"""
Rebuild stored referral aggregates (pending days, paid days, earned commission,
status) from the purchases. Use after a manual data fix or to repair drift.

    cd /src && python -m scripts.recompute_referral_aggregates
"""
import asyncio

from backend.app.core.database import async_session
from backend.app.core.logging import setup_logging
from backend.app.core.settings import get_settings
from backend.app.services.referrals import ReferralService


async def recompute():
    async with async_session() as session:
        fixed = await ReferralService(session).repair_all_aggregates()
    print(f"Repaired {fixed} referrals.")


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.is_production)
    asyncio.run(recompute())
