from typing import AsyncGenerator, Callable
from sqlalchemy.ext.asyncio import AsyncSession
from backend.app.core.database import async_session
from backend.app.core.run_lock import RunLock
from backend.app.core.settings import get_settings


# One database session per request
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


# The accrual job opens its own session per referral
def get_session_factory() -> Callable[[], AsyncSession]:
    return async_session


# Run lock shared by the manual trigger and the scheduler
async def get_run_lock() -> AsyncGenerator[RunLock, None]:
    redis = await RunLock.get_redis() if get_settings().ACCRUAL_USE_REDIS_LOCK else None
    yield RunLock(redis)
