"""Checkout API: intent creation, validation errors and stock holds."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from conftest import ESEWA_SECRET, auth_header, mock_client, seed_cart, seed_variant, stock_of, user_token
from orderpipe.common.auth import CurrentUser
from orderpipe.common.models import Cart, CartBooking, Job, PaymentIntent, Product
from orderpipe.services.checkout import main as checkout_main
from orderpipe.services.checkout.service import CheckoutService
from orderpipe.services.order_worker.service import OrderWorkerService
from orderpipe.services.provider_adapter.cod import CashOnDeliveryAdapter
from orderpipe.services.provider_adapter.esewa import EsewaAdapter, esewa_signature
from orderpipe.services.provider_adapter.khalti import KhaltiAdapter
from orderpipe.services.provider_adapter.registry import AdapterRegistry

ADDRESS = {"name": "Sita Sharma", "phone": "9800000000", "address_line1": "Thamel", "city": "Kathmandu"}


def _khalti_down(request):
    return httpx.Response(500, json={"detail": "Internal error"})


@pytest.fixture
def service(session_factory):
    registry = AdapterRegistry(
        {
            "esewa": EsewaAdapter(secret_key=ESEWA_SECRET),
            "khalti": KhaltiAdapter(client=mock_client(_khalti_down), secret_key="khalti-key"),
            "cod": CashOnDeliveryAdapter(),
        }
    )
    return CheckoutService(session_factory, registry=registry)


@pytest.fixture
def client(service, monkeypatch):
    monkeypatch.setattr(checkout_main, "service", service)
    return TestClient(checkout_main.app)


def _intents(session_factory):
    with session_factory() as db:
        return db.execute(select(PaymentIntent).order_by(PaymentIntent.created_at)).scalars().all()


def test_missing_auth_is_401(client):
    resp = client.post("/order-intent", json={"payment_method": "esewa"})

    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "Missing authorization header", "error_code": "AUTH_REQUIRED"}


def test_token_for_wrong_audience_is_401(client):
    resp = client.post(
        "/order-intent",
        json={"payment_method": "esewa"},
        headers={"Authorization": f"Bearer {user_token(audience='someone-else')}"},
    )

    assert resp.status_code == 401


def test_empty_cart_is_400(client):
    resp = client.post("/order-intent", json={"payment_method": "esewa"}, headers=auth_header())

    assert resp.status_code == 400
    assert resp.json()["error"] == "Cart is empty"


def test_unsupported_payment_method_is_400(client, session_factory):
    ids = seed_variant(session_factory)
    seed_cart(session_factory, "user-1", ids["variant_id"])

    resp = client.post("/order-intent", json={"payment_method": "paypal"}, headers=auth_header())

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "UNSUPPORTED_PAYMENT_METHOD"
    assert _intents(session_factory) == []


def test_malformed_body_is_400(client):
    resp = client.post("/order-intent", json={"shipping_address": {}}, headers=auth_header())

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "VALIDATION_FAILED"


def test_esewa_intent_returns_signed_form_and_holds_stock(client, session_factory):
    ids = seed_variant(session_factory, stock=5)
    seed_cart(session_factory, "user-1", ids["variant_id"], quantity=2, price_cents=100000)

    resp = client.post(
        "/order-intent", json={"payment_method": "esewa", "shipping_address": ADDRESS}, headers=auth_header()
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "pending"
    assert body["amount_cents"] == 200500
    fields = body["form_fields"]
    assert fields["total_amount"] == "2005.00"
    assert fields["signature"] == esewa_signature(fields, fields["signed_field_names"], ESEWA_SECRET)
    assert stock_of(session_factory, ids["variant_id"])[:2] == (3, 2)

    intent = _intents(session_factory)[0]
    assert intent.external_transaction_id == fields["transaction_uuid"]
    assert intent.meta["items"][0]["quantity"] == 2
    assert intent.meta["shipping_address"]["city"] == "Kathmandu"
    assert intent.meta["buyer_email"] == "buyer@example.com"


def test_out_of_stock_fails_intent_and_holds_nothing(client, session_factory):
    ids = seed_variant(session_factory, stock=1)
    seed_cart(session_factory, "user-1", ids["variant_id"], quantity=2)

    resp = client.post("/order-intent", json={"payment_method": "esewa"}, headers=auth_header())

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "INSUFFICIENT_INVENTORY"
    assert resp.json()["details"]["available"] == 1
    assert stock_of(session_factory, ids["variant_id"]) == (1, 0, 0)
    assert [intent.status for intent in _intents(session_factory)] == ["failed"]


def test_gateway_init_failure_is_500(client, session_factory):
    ids = seed_variant(session_factory)
    seed_cart(session_factory, "user-1", ids["variant_id"])

    resp = client.post("/order-intent", json={"payment_method": "khalti"}, headers=auth_header())

    assert resp.status_code == 500
    assert resp.json()["error_code"] == "PAYMENT_INIT_FAILED"
    assert _intents(session_factory) == []
    assert stock_of(session_factory, ids["variant_id"])[:2] == (5, 0)


def test_new_checkout_supersedes_older_pending_intent(service, session_factory):
    user = CurrentUser(user_id="user-1", email="buyer@example.com")
    ids = seed_variant(session_factory, stock=5)
    seed_cart(session_factory, "user-1", ids["variant_id"], quantity=2)

    first = service.create_order_intent(user, "esewa", None)
    second = service.create_order_intent(user, "esewa", None)

    with session_factory() as db:
        assert db.get(PaymentIntent, first.intent.payment_intent_id).status == "failed"
        assert db.get(PaymentIntent, second.intent.payment_intent_id).status == "pending"
    assert stock_of(session_factory, ids["variant_id"])[:2] == (3, 2)


def test_sold_out_combo_is_rejected(client, session_factory):
    ids = seed_variant(session_factory)
    with session_factory() as db:
        combo = Product(
            vendor_id=ids["vendor_id"],
            name="Festival Bundle",
            is_combo=True,
            combo_price_cents=90000,
            combo_quantity_limit=1,
            combo_quantity_sold=1,
        )
        db.add(combo)
        db.commit()
        combo_id = combo.id
    seed_cart(session_factory, "user-1", ids["variant_id"], combo_id=combo_id, combo_group_id="group-1")

    resp = client.post("/order-intent", json={"payment_method": "cod"}, headers=auth_header())

    assert resp.status_code == 400
    body = resp.json()
    assert body["error_code"] == "COMBO_UNAVAILABLE"
    assert body["details"][0]["reason"] == "sold_out"
    assert stock_of(session_factory, ids["variant_id"])[:2] == (5, 0)


def test_cod_intent_is_confirmed_and_queued(client, session_factory):
    ids = seed_variant(session_factory, stock=5)
    seed_cart(session_factory, "user-1", ids["variant_id"])

    resp = client.post("/order-intent", json={"payment_method": "cod"}, headers=auth_header())

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "succeeded"
    assert body["payment_url"] is None
    with session_factory() as db:
        job = db.execute(select(Job)).scalar_one()
    assert job.job_type == "finalize_order"
    assert job.idempotency_key == f"payment_cod_{body['payment_intent_id']}"


def test_booking_only_cart_ships_nothing_and_confirms_slot(service, session_factory):
    with session_factory() as db:
        cart = Cart(user_id="user-1")
        db.add(cart)
        db.flush()
        db.add(
            CartBooking(
                cart_id=cart.id,
                stylist_id="stylist-1",
                service_name="Bridal makeup",
                price_cents=150000,
                start_time=datetime.now(timezone.utc) + timedelta(days=2),
            )
        )
        db.commit()

    result = service.create_order_intent(CurrentUser(user_id="user-1"), "cod", None)
    OrderWorkerService(session_factory).process_jobs()

    assert result.intent.amount_cents == 150000
    with session_factory() as db:
        booking = db.execute(select(CartBooking)).scalar_one()
    assert booking.status == "confirmed"
    assert booking.order_id is not None


def test_poll_own_intent_and_hide_foreign_ones(client, session_factory):
    ids = seed_variant(session_factory)
    seed_cart(session_factory, "user-1", ids["variant_id"])
    created = client.post("/order-intent", json={"payment_method": "esewa"}, headers=auth_header()).json()

    own = client.get(f"/order-intent/{created['payment_intent_id']}", headers=auth_header())
    foreign = client.get(f"/order-intent/{created['payment_intent_id']}", headers=auth_header("user-2"))

    assert own.status_code == 200
    assert own.json()["status"] == "pending"
    assert own.json()["order_id"] is None
    assert foreign.status_code == 404


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text
