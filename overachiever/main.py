from fastapi import FastAPI, Request
from contextlib import asynccontextmanager
from overachiever.database import init_db
from overachiever.routers import games, sync, ws
from apscheduler.schedulers.asyncio import AsyncIOScheduler

# We need to import models so SQLModel knows about them before init_db
from overachiever import models  # noqa: F401
from overachiever.services.sync_engine import SyncSession
from overachiever.services.sync_runner import UPDATE, SyncBusy
from overachiever.settings import settings
import logging
import structlog
import time
from overachiever.logging_conf import configure_logging

# Configure logging before app startup
configure_logging()
logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_update_task():
    """Periodic Update for the locally configured account."""
    try:
        await sync.sync_runner.run(SyncSession.from_settings(), UPDATE)
    except SyncBusy:
        logger.info("Scheduled update skipped, a sync is already running")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Application starting up...")
    await init_db()

    if settings.UPDATE_INTERVAL_HOURS > 0 and settings.STEAM_API_KEY and settings.STEAM_ID:
        scheduler.add_job(
            scheduled_update_task,
            "interval",
            hours=settings.UPDATE_INTERVAL_HOURS,
            id="scheduled_update",
            replace_existing=True,
        )
        scheduler.start()
        logger.info(
            "Scheduled updates enabled",
            extra={"interval_hours": settings.UPDATE_INTERVAL_HOURS},
        )

    yield
    # Shutdown
    logger.info("Application shutting down...")
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(title="Overachiever", lifespan=lifespan)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    start_time = time.time()

    # Log lines from handlers and syncs they run inline carry the request too
    with structlog.contextvars.bound_contextvars(
        method=request.method, path=request.url.path
    ):
        try:
            response = await call_next(request)
            process_time = time.time() - start_time

            logger.info(
                "Incoming Request",
                extra={
                    "url": str(request.url),
                    "status_code": response.status_code,
                    "duration": f"{process_time:.4f}s",
                    "client": request.client.host if request.client else None,
                },
            )
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                "Request Failed",
                exc_info=True,
                extra={
                    "url": str(request.url),
                    "duration": f"{process_time:.4f}s",
                    "client": request.client.host if request.client else None,
                },
            )
            raise e


app.include_router(games.router)
app.include_router(sync.router)
app.include_router(ws.router)


@app.get("/")
async def root():
    return {"message": "Overachiever is running"}
