import asyncio
import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from tistis_messaging import __version__
from tistis_messaging.database import SessionLocal, get_db
from tistis_messaging.logging_config import get_logger, setup_logging
from tistis_messaging.routers import conversations, jobs, webhooks
from tistis_messaging.services.health_service import check_and_heal_jobs, get_system_health
from tistis_messaging.services.inbound_service import replay_dead_letters
from tistis_messaging.services.job_processor import process_jobs

setup_logging()

app = FastAPI(
    title="TisTis Messaging API",
    description="Multi-channel webhook ingestion and job processing for TisTis tenants",
    version=__version__,
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(jobs.router)
app.include_router(conversations.router)

worker_logger = get_logger("job_worker")
_job_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_job_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("JOB_WORKER_ENABLED"), default=True)


def _get_job_worker_settings() -> tuple[float, int, float, float, float]:
    interval_seconds = float(os.environ.get("JOB_WORKER_INTERVAL_SECONDS", "2"))
    interval_seconds = max(interval_seconds, 0.1)
    batch = int(os.environ.get("JOB_WORKER_BATCH", "10"))
    retry_backoff_seconds = float(os.environ.get("JOB_RETRY_BACKOFF_SECONDS", "30"))
    stale_seconds = float(os.environ.get("JOB_STALE_SECONDS", "300"))
    maintenance_seconds = float(os.environ.get("JOB_MAINTENANCE_INTERVAL_SECONDS", "60"))
    return interval_seconds, batch, retry_backoff_seconds, stale_seconds, maintenance_seconds


async def _run_maintenance(stale_seconds: float) -> None:
    db = SessionLocal()
    try:
        summary = await replay_dead_letters(db)
        healed = await asyncio.to_thread(check_and_heal_jobs, db, stale_after_seconds=stale_seconds)
        if summary["claimed"] or healed["healed_count"]:
            worker_logger.info(
                "Job worker maintenance",
                extra={"context": {"dead_letters": summary, "healed_count": healed["healed_count"]}},
            )
    finally:
        await asyncio.to_thread(db.close)


async def _job_worker_loop() -> None:
    loop = asyncio.get_running_loop()
    last_maintenance = 0.0
    while True:
        try:
            interval_seconds, batch, retry_backoff_seconds, stale_seconds, maintenance_seconds = (
                _get_job_worker_settings()
            )
            await asyncio.sleep(interval_seconds)
            # Handlers make blocking HTTP and DB calls; keep them off the event loop.
            result = await asyncio.to_thread(
                process_jobs,
                SessionLocal,
                max_jobs=batch,
                retry_backoff_seconds=retry_backoff_seconds,
            )
            if result.processed:
                worker_logger.info("Job worker processed", extra={"context": result.as_dict()})

            if loop.time() - last_maintenance >= maintenance_seconds:
                last_maintenance = loop.time()
                await _run_maintenance(stale_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Job worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_job_worker() -> None:
    global _job_worker_task
    if not _is_job_worker_enabled():
        return
    if _job_worker_task is None or _job_worker_task.done():
        _job_worker_task = asyncio.create_task(_job_worker_loop())
        worker_logger.info("Job worker started")


@app.on_event("shutdown")
async def stop_job_worker() -> None:
    global _job_worker_task
    if _job_worker_task is None:
        return
    _job_worker_task.cancel()
    try:
        await _job_worker_task
    except asyncio.CancelledError:
        pass
    _job_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/system")
def system_health(db: Session = Depends(get_db)):
    _, _, _, stale_seconds, _ = _get_job_worker_settings()
    return get_system_health(db, stale_after_seconds=stale_seconds)
