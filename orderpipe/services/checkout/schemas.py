"""API request/response schemas for checkout endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class ShippingAddress(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=5)
    address_line1: str = Field(min_length=1)
    address_line2: str | None = None
    city: str = Field(min_length=1)
    state: str | None = None
    postal_code: str | None = None
    country: str = "NP"


class OrderIntentRequest(BaseModel):
    """Body of `POST /order-intent`. The method is validated by the service."""

    payment_method: str = Field(min_length=1)
    shipping_address: ShippingAddress | None = None


class OrderIntentResponse(BaseModel):
    success: bool = True
    payment_intent_id: str
    provider: str
    status: str
    amount_cents: int
    payment_url: str | None = None
    form_fields: dict[str, str] | None = None
    expires_at: datetime


class OrderIntentStatus(BaseModel):
    payment_intent_id: str
    status: str
    provider: str
    amount_cents: int
    expires_at: datetime
    order_id: str | None = None
