"""Shared fixtures: an in-memory database, catalog seeding and auth tokens."""

import base64
import json
import os

os.environ.setdefault("DATABASE_DSN", "sqlite://")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "0")
os.environ.setdefault("ORDER_WORKER_URL", "")
os.environ.setdefault("EMAIL_API_URL", "")

from datetime import datetime, timedelta, timezone
from time import time

import httpx
import pytest
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderpipe.common.db import Base
from orderpipe.common.models import (
    Cart,
    CartItem,
    PaymentIntent,
    Product,
    ProductVariant,
    StockLevel,
    Vendor,
)
from orderpipe.services.provider_adapter.esewa import esewa_signature

ESEWA_SECRET = "8gBm/:&EnhH.1/q"
NPX_SECURITY_KEY = "npx-security-key"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


def seed_variant(session_factory, stock=5, price_cents=100000, sku="SKU-1", vendor_email="vendor@example.com"):
    """Create one vendor, product and variant with `stock` units available."""

    with session_factory() as db:
        vendor = Vendor(name="Kathmandu Textiles", email=vendor_email)
        db.add(vendor)
        db.flush()
        product = Product(vendor_id=vendor.id, name="Pashmina Shawl")
        db.add(product)
        db.flush()
        variant = ProductVariant(product_id=product.id, sku=sku, price_cents=price_cents)
        db.add(variant)
        db.flush()
        db.add(StockLevel(variant_id=variant.id, quantity_available=stock, quantity_reserved=0, version=0))
        db.commit()
        return {"vendor_id": vendor.id, "product_id": product.id, "variant_id": variant.id}


def seed_cart(session_factory, user_id, variant_id, quantity=1, price_cents=100000, combo_id=None, combo_group_id=None):
    with session_factory() as db:
        cart = db.execute(select(Cart).where(Cart.user_id == user_id)).scalar_one_or_none()
        if cart is None:
            cart = Cart(user_id=user_id)
            db.add(cart)
            db.flush()
        item = CartItem(
            cart_id=cart.id,
            variant_id=variant_id,
            quantity=quantity,
            price_snapshot_cents=price_cents,
            combo_id=combo_id,
            combo_group_id=combo_group_id,
        )
        db.add(item)
        db.commit()
        return cart.id


def seed_intent(
    session_factory,
    payment_intent_id="pi_esewa_1",
    provider="esewa",
    external_transaction_id="TXN123",
    amount_cents=100000,
    user_id="user-1",
    status="pending",
    meta=None,
):
    with session_factory() as db:
        db.add(
            PaymentIntent(
                payment_intent_id=payment_intent_id,
                external_transaction_id=external_transaction_id,
                user_id=user_id,
                cart_id="cart-1",
                provider=provider,
                amount_cents=amount_cents,
                currency="NPR",
                status=status,
                meta=meta or {"items": [], "bookings": [], "subtotal_cents": amount_cents},
                expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
            )
        )
        db.commit()


def stock_of(session_factory, variant_id):
    with session_factory() as db:
        row = db.get(StockLevel, variant_id)
        return row.quantity_available, row.quantity_reserved, row.version


def user_token(user_id="user-1", email="buyer@example.com", audience="authenticated", secret=None):
    claims = {"sub": user_id, "email": email, "aud": audience, "exp": int(time()) + 3600}
    return jwt.encode(claims, secret or os.environ["AUTH_JWT_SECRET"], algorithm="HS256")


def auth_header(user_id="user-1", email="buyer@example.com"):
    return {"Authorization": f"Bearer {user_token(user_id, email)}"}


def mock_client(handler):
    """httpx client whose requests are answered by `handler(request)`."""

    return httpx.Client(transport=httpx.MockTransport(handler))


def esewa_callback_data(transaction_uuid, total_amount="1000.00", secret=ESEWA_SECRET, tamper=None):
    """Base64 `data` blob eSewa appends to `success_url`, signed with `secret`."""

    payload = {
        "transaction_code": "000AWEO",
        "status": "COMPLETE",
        "total_amount": total_amount,
        "transaction_uuid": transaction_uuid,
        "product_code": "EPAYTEST",
        "signed_field_names": "transaction_code,status,total_amount,transaction_uuid,product_code,signed_field_names",
    }
    payload["signature"] = esewa_signature(payload, payload["signed_field_names"], secret)
    if tamper:
        payload.update(tamper)
    return base64.b64encode(json.dumps(payload).encode()).decode()


def service_header():
    return {"Authorization": f"Bearer {os.environ['SERVICE_API_KEY']}"}
