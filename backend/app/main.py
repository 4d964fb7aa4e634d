import sys
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api import admin, referrals
from backend.app.api.admin import require_admin_token
from backend.app.api.deps import get_session
from backend.app.core.logging import setup_logging, get_logger
from backend.app.core.run_lock import RunLock
from backend.app.core.settings import get_settings
from backend.app.core.metrics import PrometheusMiddleware, get_metrics_response

# Load and validate settings
try:
    settings = get_settings()
except ValueError as e:
    print(f"Configuration error: {e}", file=sys.stderr)
    sys.exit(1)

# Initialize structured logging
# Use JSON format in production
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.is_production
)

logger = get_logger(__name__)

# Log configuration status
logger.info(
    "Application configuration loaded",
    environment=settings.ENVIRONMENT,
    db_host=settings.DB_HOST,
    redis_host=settings.REDIS_HOST,
    accrual_scheduler=settings.ACCRUAL_SCHEDULER_ENABLED,
)


def _seconds_until(hour: int, now: datetime) -> float:
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= target:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def _daily_scheduler():
    """Background task: run the commission accrual once a day at ACCRUAL_RUN_HOUR (UTC)."""
    from backend.app.services.accrual import process_daily_commissions

    while True:
        try:
            wait_secs = _seconds_until(settings.ACCRUAL_RUN_HOUR, datetime.utcnow())
            logger.info("Daily scheduler: sleeping", run_hour=settings.ACCRUAL_RUN_HOUR, wait_seconds=int(wait_secs))
            await asyncio.sleep(wait_secs)

            report = await process_daily_commissions()
            if report.lock_acquired:
                logger.info(
                    "Daily scheduler: accrual done",
                    credited=report.commissions_credited,
                    failures=len(report.failures),
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Daily scheduler: unexpected error", error=str(e))
            await asyncio.sleep(60)  # Wait before retrying


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.
    - Startup: start the accrual scheduler (unless disabled)
    - Shutdown: stop it, close the run-lock Redis connection
    """
    logger.info("Application starting up", version="1.0.0")
    scheduler_task = None
    if settings.ACCRUAL_SCHEDULER_ENABLED:
        scheduler_task = asyncio.create_task(_daily_scheduler())
    yield
    if scheduler_task is not None:
        scheduler_task.cancel()
    logger.info("Application shutting down")
    await RunLock.close()


app = FastAPI(title="Installment Referral Backend", lifespan=lifespan)

# CORS must be added first (runs last on the response)
ALLOWED_ORIGINS = settings.allowed_origins_list
logger.info("CORS configuration", allowed_origins=ALLOWED_ORIGINS, is_production=settings.is_production)
if not ALLOWED_ORIGINS:
    # In production, require ALLOWED_ORIGINS to be set
    if settings.is_production:
        logger.error("ALLOWED_ORIGINS must be set in production environment")
        raise ValueError("ALLOWED_ORIGINS environment variable is required in production")
    # Development fallback
    ALLOWED_ORIGINS = ["*"]
    logger.warning("CORS: Allowing all origins (development mode). Set ALLOWED_ORIGINS in production!")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(PrometheusMiddleware)

app.include_router(referrals.router, prefix="/referrals", tags=["referrals"])
# Admin API - token required
app.include_router(
    admin.router,
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_token)],
)


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """
    Health check endpoint for monitoring and orchestration.
    Checks database and, when the run-lock uses it, Redis.
    """
    health_status = {
        "status": "healthy",
        "version": "1.0.0",
        "checks": {
            "database": "ok",
        }
    }

    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    if settings.ACCRUAL_USE_REDIS_LOCK:
        health_status["checks"]["redis"] = "ok"
        try:
            redis = await RunLock.get_redis()
            await redis.ping()
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))
            health_status["status"] = "unhealthy"
            health_status["checks"]["redis"] = f"error: {str(e)}"

    return health_status


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    """
    Prometheus metrics endpoint.

    Args:
        openmetrics: If True, return OpenMetrics format
    """
    return get_metrics_response(openmetrics=openmetrics)
