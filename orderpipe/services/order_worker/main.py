"""HTTP surface for draining the job queue and requesting refunds."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query
from pydantic import BaseModel, Field

from orderpipe.common.auth import require_service
from orderpipe.common.config import settings
from orderpipe.common.db import SessionLocal
from orderpipe.common.errors import ValidationFailed
from orderpipe.common.http import install_common
from orderpipe.common.logging import configure_logging
from orderpipe.common.metrics import metrics_response
from orderpipe.common.queue import JOB_TYPES
from orderpipe.common.startup import log_startup_config
from orderpipe.common.tracing import instrument_app, setup_tracing
from orderpipe.services.order_worker.service import OrderWorkerService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_DSN",
        "WORKER_MAX_JOBS",
        "WORKER_LOCK_TIMEOUT_SECONDS",
        "WORKER_POLL_INTERVAL_SECONDS",
        "JOB_MAX_ATTEMPTS",
        "EMAIL_API_URL",
        "EMAIL_API_KEY",
    ],
)
service = OrderWorkerService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the periodic queue sweep with the app lifecycle when enabled."""

    sweep_task = None
    if settings.worker_poll_interval_seconds > 0:
        sweep_task = asyncio.create_task(service.run_forever(settings.worker_poll_interval_seconds))
    yield
    if sweep_task is not None:
        sweep_task.cancel()


app = FastAPI(title="Orderpipe Order Worker", lifespan=lifespan)
install_common(app)
instrument_app(app)


class RefundRequest(BaseModel):
    order_id: str = Field(min_length=1)
    refund_amount_cents: int | None = Field(default=None, gt=0)
    reason: str | None = None


@app.post("/order-worker", dependencies=[Depends(require_service)])
def run_order_worker(
    max_jobs: int = Query(default=settings.worker_max_jobs, ge=1, le=100),
    job_type: str | None = Query(default=None),
):
    """Synchronously drain up to `max_jobs` jobs."""

    if job_type and job_type not in JOB_TYPES:
        raise ValidationFailed(f"Unknown job_type: {job_type}")
    results = service.process_jobs(max_jobs=max_jobs, job_type=job_type or None)
    return {"success": True, "worker_id": service.worker_id, "jobs_processed": len(results), "results": results}


@app.post("/internal/refunds", dependencies=[Depends(require_service)])
def request_refund(req: RefundRequest):
    """Queue a refund for an order; repeated requests for one order are no-ops."""

    enqueued = service.enqueue_refund(req.order_id, req.refund_amount_cents, req.reason)
    return {"success": True, "order_id": req.order_id, "enqueued": enqueued}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
