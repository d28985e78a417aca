import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import uvicorn
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from starlette.middleware.cors import CORSMiddleware

from arborkb.config import settings
from arborkb.database import Base, SessionLocal, engine, install_audit_log_immutability
from arborkb.errors import InvalidRequestError, StageError
# ensure tables created
from arborkb.models import audit_log, catalog, kb_chunk, kb_image, page_suggestion, processing_queue, queue_page  # noqa: F401
from arborkb.routes.maintenance_routes import router as maintenance_router
from arborkb.routes.queue_routes import router as queue_router
from arborkb.routes.source_routes import router as source_router
from arborkb.routes.stage_routes import router as stage_router
from arborkb.services import orphan_reconciler, queue_coordinator
from arborkb.services.events import QueueWake, event_bus
from arborkb.storage.object_store import get_object_store

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)

DRAIN_JOB_ID = "drain_queue"
CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]

scheduler = BackgroundScheduler()


def _drain_queue_job():
    """Job executed by APScheduler: works through pending pages, a bounded number per tick."""
    db: Session = SessionLocal()
    try:
        processed = queue_coordinator.drain_queue(db, settings.queue_pages_per_tick)
        if processed:
            logger.info("[Worker] Processed %d pages this tick", processed)
    except Exception as e:
        logger.exception("[Worker] Queue drain failed: %s", e)
    finally:
        db.close()


def _orphan_cleanup_job():
    db: Session = SessionLocal()
    try:
        removed = orphan_reconciler.cleanup(db, get_object_store())
        logger.info("[Reconciler] Removed %d orphaned images", len(removed))
    except Exception as e:
        logger.exception("[Reconciler] Orphan cleanup failed: %s", e)
    finally:
        db.close()


def _wake_worker(event):
    """Run the drain job now instead of at the next poll."""
    if not isinstance(event, QueueWake) or not scheduler.running:
        return
    job = scheduler.get_job(DRAIN_JOB_ID)
    if job:
        job.modify(next_run_time=datetime.now())
        logger.debug("[Worker] Woken: %s", event.reason)


def _register_jobs():
    scheduler.add_job(
        _drain_queue_job,
        trigger="interval",
        seconds=settings.queue_poll_seconds,
        id=DRAIN_JOB_ID,
        name="Drain processing queue",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    if settings.orphan_cleanup_cron:
        parts = settings.orphan_cleanup_cron.split()
        if len(parts) == 5:
            minute, hour, day, month, day_of_week = parts
            scheduler.add_job(
                _orphan_cleanup_job,
                trigger="cron",
                minute=minute,
                hour=hour,
                day=day,
                month=month,
                day_of_week=day_of_week,
                id="orphan_cleanup",
                name="Orphan image cleanup",
                replace_existing=True,
            )
            logger.info("[Scheduler] Registered orphan cleanup (%s)", settings.orphan_cleanup_cron)
        else:
            logger.warning("[Scheduler] Ignoring malformed ORPHAN_CLEANUP_CRON '%s'", settings.orphan_cleanup_cron)


def _recover_queue():
    """Pages a dead worker left in processing go back to pending; batches with pending pages are woken."""
    db: Session = SessionLocal()
    try:
        queue_coordinator.recover_inflight(db)
        resumed = queue_coordinator.resume_pending_batches(db)
        if resumed:
            logger.info("Resumed %d batches with pending pages", len(resumed))
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    Base.metadata.create_all(bind=engine)
    install_audit_log_immutability()
    logger.info("Database tables created/verified")
    _register_jobs()
    unsubscribe = event_bus.subscribe(_wake_worker)
    scheduler.start()
    logger.info("APScheduler started — %d jobs registered", len(scheduler.get_jobs()))
    _recover_queue()
    yield
    # Shutdown
    unsubscribe()
    scheduler.shutdown(wait=False)
    logger.info("APScheduler stopped")


class PreflightCORSMiddleware(CORSMiddleware):
    """Starlette answers preflight with 200; the ingestion UI expects 204 No Content."""

    def preflight_response(self, request_headers) -> Response:
        response = super().preflight_response(request_headers)
        headers = {k: v for k, v in response.headers.items() if k not in ("content-length", "content-type")}
        if response.status_code != 200:
            return response
        return Response(status_code=204, headers=headers)


app = FastAPI(
    title="ArborKB Ingestion",
    description="Page-image ingestion pipeline — OCR, translation, suggestion extraction",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    PreflightCORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_methods=["*"],
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(StageError)
async def stage_error_handler(request: Request, exc: StageError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
    )
    error = InvalidRequestError(problems or "Invalid request")
    return JSONResponse(status_code=error.status_code, content={"success": False, "error": error.to_dict()})


app.include_router(stage_router)
app.include_router(queue_router)
app.include_router(source_router)
app.include_router(maintenance_router)

if settings.storage_backend == "local":
    Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
    app.mount("/storage", StaticFiles(directory=settings.storage_root), name="storage")


@app.get("/health")
def health():
    return {"status": "ok", "scheduler_jobs": len(scheduler.get_jobs())}


def start():
    """Entry point for the arborkb console script"""
    uvicorn.run("arborkb.main:app", host=settings.app_host, port=settings.app_port, reload=settings.debug)
