"""HTTP surface for gateway webhooks and the client verification fallback."""

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from orderpipe.common.auth import CurrentUser, require_user
from orderpipe.common.config import settings
from orderpipe.common.db import SessionLocal
from orderpipe.common.errors import AmountMismatch, PaymentFailed, PipelineError
from orderpipe.common.http import install_common
from orderpipe.common.logging import configure_logging, logger
from orderpipe.common.metrics import metrics_response
from orderpipe.common.startup import log_startup_config
from orderpipe.common.tracing import instrument_app, setup_tracing
from orderpipe.services.order_worker.client import wake_order_worker
from orderpipe.services.verification.service import (
    AMOUNT_MISMATCH,
    FAILED,
    PENDING_STATUS,
    VerificationOutcome,
    VerificationService,
)

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_DSN",
        "ORDER_WORKER_URL",
        "ESEWA_MERCHANT_CODE",
        "ESEWA_SECRET_KEY",
        "ESEWA_TEST_MODE",
        "KHALTI_SECRET_KEY",
        "KHALTI_TEST_MODE",
        "NPX_MERCHANT_ID",
        "NPX_API_USERNAME",
        "NPX_API_PASSWORD",
        "NPX_SECURITY_KEY",
        "NPX_TEST_MODE",
    ],
    check_gateways=True,
)
service = VerificationService(SessionLocal)

app = FastAPI(title="Orderpipe Verification Gateway")
install_common(app)
instrument_app(app)


class VerifyPaymentRequest(BaseModel):
    provider: str = Field(min_length=1)
    transaction_ref: str = Field(min_length=1)
    callback_data: str | None = None


def _schedule_wake(background_tasks: BackgroundTasks, outcome: VerificationOutcome) -> None:
    if outcome.wake_worker:
        background_tasks.add_task(wake_order_worker, f"verified_{outcome.provider}")


@app.get("/webhook/{provider}")
def webhook(provider: str, request: Request, background_tasks: BackgroundTasks):
    """Gateway push notification. Safe to receive any number of times."""

    try:
        outcome = service.handle_webhook(provider, request.query_params)
    except PipelineError as exc:
        if exc.http_status >= 500:
            logger.error("webhook verification failed provider=%s error_code=%s", provider, exc.error_code)
        return PlainTextResponse(exc.message, status_code=exc.http_status)
    _schedule_wake(background_tasks, outcome)
    return PlainTextResponse("already received" if outcome.already_verified else "received")


@app.post("/verify-payment")
def verify_payment(
    req: VerifyPaymentRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_user),
):
    """Client-triggered fallback running the same verification as the webhook."""

    outcome = service.verify_payment(req.provider, req.transaction_ref, req.callback_data, user_id=user.user_id)
    _schedule_wake(background_tasks, outcome)
    if outcome.status == AMOUNT_MISMATCH:
        raise AmountMismatch(details={"payment_intent_id": outcome.payment_intent_id})
    if outcome.status == FAILED:
        raise PaymentFailed(details={"payment_intent_id": outcome.payment_intent_id})
    body = {
        "success": outcome.status != PENDING_STATUS,
        "payment_intent_id": outcome.payment_intent_id,
        "amount_cents": outcome.amount_cents,
        "status": outcome.status,
        "already_verified": outcome.already_verified,
    }
    return JSONResponse(status_code=202 if outcome.status == PENDING_STATUS else 200, content=body)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
