"""HTTP surface for creating and polling order intents."""

from fastapi import BackgroundTasks, Depends, FastAPI

from orderpipe.common.auth import CurrentUser, require_user
from orderpipe.common.config import settings
from orderpipe.common.db import SessionLocal
from orderpipe.common.http import install_common
from orderpipe.common.logging import configure_logging
from orderpipe.common.metrics import metrics_response
from orderpipe.common.ratelimit import TokenBucket
from orderpipe.common.startup import log_startup_config
from orderpipe.common.tracing import instrument_app, setup_tracing
from orderpipe.services.checkout.schemas import OrderIntentRequest, OrderIntentResponse, OrderIntentStatus
from orderpipe.services.checkout.service import CheckoutService
from orderpipe.services.order_worker.client import wake_order_worker

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "DATABASE_DSN",
        "REDIS_URL",
        "PUBLIC_BASE_URL",
        "ORDER_WORKER_URL",
        "RATE_LIMIT_PER_MINUTE",
        "TAX_RATE_BPS",
        "SHIPPING_FLAT_CENTS",
        "ESEWA_MERCHANT_CODE",
        "ESEWA_SECRET_KEY",
        "ESEWA_TEST_MODE",
        "KHALTI_SECRET_KEY",
        "KHALTI_TEST_MODE",
        "NPX_MERCHANT_ID",
        "NPX_API_PASSWORD",
        "NPX_SECURITY_KEY",
        "NPX_TEST_MODE",
    ],
    check_gateways=True,
)
service = CheckoutService(SessionLocal)
rate_limiter = TokenBucket(prefix="tokenbucket:order-intent")

app = FastAPI(title="Orderpipe Checkout")
install_common(app)
instrument_app(app)


@app.post("/order-intent", response_model=OrderIntentResponse)
def create_order_intent(
    req: OrderIntentRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_user),
):
    """Create a payment intent for the caller's cart and return the gateway hand-off."""

    rate_limiter.enforce(user.user_id)
    address = req.shipping_address.model_dump() if req.shipping_address else None
    result = service.create_order_intent(user, req.payment_method, address)
    if result.wake_worker:
        background_tasks.add_task(wake_order_worker, "cash_on_delivery")
    intent = result.intent
    return OrderIntentResponse(
        payment_intent_id=intent.payment_intent_id,
        provider=intent.provider,
        status=intent.status,
        amount_cents=intent.amount_cents,
        payment_url=result.payment_url,
        form_fields=result.form_fields,
        expires_at=intent.expires_at,
    )


@app.get("/order-intent/{payment_intent_id}", response_model=OrderIntentStatus)
def get_order_intent(payment_intent_id: str, user: CurrentUser = Depends(require_user)):
    """Poll one of the caller's intents; foreign intents read as not found."""

    return OrderIntentStatus(**service.get_order_intent(user, payment_intent_id))


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
