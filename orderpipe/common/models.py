"""Database models for the checkout pipeline.

Catalog and cart tables are owned by the storefront and only read here, except
that finalization clears purchased lines and bumps combo counters. Payment
intents, verification records, the job queue, stock rows and orders are owned
by this pipeline.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from orderpipe.common.db import Base

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid4())


class Vendor(Base):
    """Seller whose products appear in orders; receives new-order emails."""

    __tablename__ = "vendors"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)


class Product(Base):
    """Catalog product. Combos are products with `is_combo` set."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    vendor_id: Mapped[str] = mapped_column(ForeignKey("vendors.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_combo: Mapped[bool] = mapped_column(Boolean, default=False)
    combo_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    combo_quantity_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    combo_quantity_sold: Mapped[int] = mapped_column(Integer, default=0)


class ProductVariant(Base):
    """Sellable SKU; stock is tracked per variant."""

    __tablename__ = "product_variants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), index=True)
    sku: Mapped[str] = mapped_column(String, unique=True)
    price_cents: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Cart(Base):
    __tablename__ = "carts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class CartItem(Base):
    """One product line. Lines added through a combo share `combo_group_id`."""

    __tablename__ = "cart_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    cart_id: Mapped[str] = mapped_column(ForeignKey("carts.id"), index=True)
    variant_id: Mapped[str] = mapped_column(ForeignKey("product_variants.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    price_snapshot_cents: Mapped[int] = mapped_column(Integer)
    combo_id: Mapped[str | None] = mapped_column(ForeignKey("products.id"), nullable=True)
    combo_group_id: Mapped[str | None] = mapped_column(String, nullable=True)


class CartBooking(Base):
    """A held stylist appointment slot waiting to be paid for with the cart."""

    __tablename__ = "cart_bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    cart_id: Mapped[str] = mapped_column(ForeignKey("carts.id"), index=True)
    stylist_id: Mapped[str] = mapped_column(String)
    service_name: Mapped[str] = mapped_column(String)
    price_cents: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String, default="reserved")
    order_id: Mapped[str | None] = mapped_column(String, nullable=True)


class StockLevel(Base):
    """Per-variant stock row guarded by a monotonically increasing `version`."""

    __tablename__ = "inventory"
    __table_args__ = (
        CheckConstraint("quantity_available >= 0", name="ck_inventory_available_non_negative"),
        CheckConstraint("quantity_reserved >= 0", name="ck_inventory_reserved_non_negative"),
    )

    variant_id: Mapped[str] = mapped_column(ForeignKey("product_variants.id"), primary_key=True)
    quantity_available: Mapped[int] = mapped_column(Integer, default=0)
    quantity_reserved: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class InventoryReservation(Base):
    """Soft hold of stock for one payment intent and variant."""

    __tablename__ = "inventory_reservations"
    __table_args__ = (UniqueConstraint("payment_intent_id", "variant_id", name="uq_reservation_intent_variant"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    payment_intent_id: Mapped[str] = mapped_column(String, index=True)
    variant_id: Mapped[str] = mapped_column(ForeignKey("product_variants.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="held", index=True)
    order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class InventoryMovement(Base):
    """Append-only stock audit trail (`reserve`, `release`, `sale`, `return`)."""

    __tablename__ = "inventory_movements"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    variant_id: Mapped[str] = mapped_column(ForeignKey("product_variants.id"), index=True)
    movement_type: Mapped[str] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(Integer)
    reference_id: Mapped[str] = mapped_column(String, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PaymentIntent(Base):
    """In-flight payment. Created at checkout, mutated only by verification."""

    __tablename__ = "payment_intents"

    payment_intent_id: Mapped[str] = mapped_column(String, primary_key=True)
    external_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    cart_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="NPR")
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    # `metadata` is reserved on declarative classes.
    meta: Mapped[dict] = mapped_column("metadata", JsonType, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class GatewayVerification(Base):
    """Append-only record of one server-to-server verification.

    `(provider, external_transaction_id)` is the replay guard for notifications.
    """

    __tablename__ = "payment_gateway_verifications"
    __table_args__ = (
        UniqueConstraint("provider", "external_transaction_id", name="uq_verification_provider_txn"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(String)
    external_transaction_id: Mapped[str] = mapped_column(String)
    payment_intent_id: Mapped[str] = mapped_column(String, index=True)
    verification_response: Mapped[dict] = mapped_column(JsonType, default=dict)
    amount_verified_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Job(Base):
    """Durable work item claimed by order workers."""

    __tablename__ = "job_queue"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    job_type: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JsonType, default=dict)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    locked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    order_number: Mapped[str] = mapped_column(String, unique=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    payment_intent_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    status: Mapped[str] = mapped_column(String, default="confirmed", index=True)
    subtotal_cents: Mapped[int] = mapped_column(Integer)
    tax_cents: Mapped[int] = mapped_column(Integer, default=0)
    shipping_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_cents: Mapped[int] = mapped_column(Integer)
    refunded_cents: Mapped[int] = mapped_column(Integer, default=0)
    shipping_address: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), index=True)
    variant_id: Mapped[str] = mapped_column(String)
    product_id: Mapped[str] = mapped_column(String)
    vendor_id: Mapped[str] = mapped_column(String, index=True)
    product_name: Mapped[str] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(Integer)
    total_price_cents: Mapped[int] = mapped_column(Integer)
    combo_id: Mapped[str | None] = mapped_column(String, nullable=True)


class NotificationLog(Base):
    """One row per notification attempt made after an order is created."""

    __tablename__ = "notification_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String, index=True)
    template: Mapped[str] = mapped_column(String)
    recipient: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
