import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ratewise.config import settings

# ─── Logging setup (file + console) ───
_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
_LOG_DIR.mkdir(exist_ok=True)

_log_level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

logging.basicConfig(
    level=_log_level,
    format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        RotatingFileHandler(
            _LOG_DIR / "ratewise.log",
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding="utf-8",
        ),
    ],
)

# Quiet noisy libraries
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

from ratewise.routers import availability, channels, events, rates

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: background scheduler
    scheduler = None
    if settings.scheduler_enabled:
        try:
            from apscheduler.schedulers.asyncio import AsyncIOScheduler
            from apscheduler.triggers.cron import CronTrigger
            from apscheduler.triggers.interval import IntervalTrigger

            from ratewise.services.scheduler_jobs import scheduler_jobs

            scheduler = AsyncIOScheduler()

            async def _drain_events():
                await scheduler_jobs.event_drain()

            async def _probe_channels():
                results = await scheduler_jobs.health_probe()
                restored = [key for key, healthy in results.items() if healthy]
                if restored:
                    logger.info(f"Health probe restored {len(restored)} channels: {', '.join(restored)}")

            async def _refresh_forecasts():
                results = await scheduler_jobs.forecast_refresh()
                logger.info(f"Forecast refresh: {sum(results.values())} dates across {len(results)} hotels")

            async def _rollover_rate_plans():
                results = await scheduler_jobs.rate_plan_rollover()
                if any(results.values()):
                    logger.info(f"Rate plan rollover: {results}")

            async def _scan_credentials():
                count = await scheduler_jobs.credential_expiry_scan()
                if count:
                    logger.info(f"Credential expiry: {count} alerts raised")

            async def _rollout_availability():
                results = await scheduler_jobs.availability_rollout()
                if any(results.values()):
                    logger.info(f"Availability rollout: {results}")

            if settings.distributor_enabled:
                scheduler.add_job(
                    _drain_events, IntervalTrigger(seconds=settings.event_drain_interval_seconds),
                    id="event_drain", max_instances=1, coalesce=True,
                )
                scheduler.add_job(
                    _probe_channels, IntervalTrigger(seconds=settings.channel_health_probe_interval_seconds),
                    id="channel_health_probe", max_instances=1, coalesce=True,
                )
            scheduler.add_job(_refresh_forecasts, IntervalTrigger(hours=1), id="forecast_refresh", max_instances=1)
            scheduler.add_job(_rollover_rate_plans, CronTrigger(hour=0, minute=15), id="rate_plan_rollover")
            scheduler.add_job(_scan_credentials, CronTrigger(hour=6, minute=0), id="credential_expiry_scan")
            scheduler.add_job(_rollout_availability, CronTrigger(hour=1, minute=0), id="availability_rollout")

            scheduler.start()
            logger.info("Background scheduler started")
        except Exception as e:
            logger.error(f"Scheduler failed to start: {e}")

    yield

    # Shutdown
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")

    from ratewise.services.cache_service import cache_service
    from ratewise.services.distributor import distributor
    from ratewise.services.exchange_rate_client import exchange_rate_client

    await distributor.close()
    await exchange_rate_client.close()
    await cache_service.close()


app = FastAPI(
    title="RateWise",
    description="Hotel rate and inventory distribution core",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rates.router, prefix="/api/hotels", tags=["rates"])
app.include_router(availability.router, prefix="/api/hotels", tags=["availability"])
app.include_router(channels.router, prefix="/api/hotels", tags=["channels"])
app.include_router(events.router, prefix="/api/hotels", tags=["supervision"])


@app.get("/api/health")
async def health_check():
    return {"status": "ok", "service": "ratewise"}
