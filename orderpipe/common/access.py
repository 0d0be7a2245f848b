"""Capability objects separating user-scoped reads from pipeline-internal access.

`UserScope` only ever returns rows owned by its user and reports foreign rows
as missing. `PrivilegedScope` is unrestricted and is constructed only inside
the verification gateway, the order worker and maintenance scripts.
"""

from sqlalchemy import select

from orderpipe.common.errors import NotFound
from orderpipe.common.models import Cart, CartBooking, CartItem, Order, PaymentIntent


class UserScope:
    """Ownership-checked accessor bound to one authenticated user."""

    def __init__(self, db, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    def cart(self) -> Cart | None:
        return self.db.execute(select(Cart).where(Cart.user_id == self.user_id)).scalar_one_or_none()

    def cart_items(self, cart: Cart) -> list[CartItem]:
        if cart.user_id != self.user_id:
            raise NotFound("Cart not found")
        return list(self.db.execute(select(CartItem).where(CartItem.cart_id == cart.id)).scalars())

    def cart_bookings(self, cart: Cart) -> list[CartBooking]:
        if cart.user_id != self.user_id:
            raise NotFound("Cart not found")
        return list(
            self.db.execute(
                select(CartBooking).where(CartBooking.cart_id == cart.id, CartBooking.status == "reserved")
            ).scalars()
        )

    def payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        intent = self.db.get(PaymentIntent, payment_intent_id)
        if intent is None or intent.user_id != self.user_id:
            raise NotFound("Payment intent not found")
        return intent

    def order_for_intent(self, payment_intent_id: str) -> Order | None:
        return self.db.execute(
            select(Order).where(Order.payment_intent_id == payment_intent_id, Order.user_id == self.user_id)
        ).scalar_one_or_none()


class PrivilegedScope:
    """Unrestricted accessor for the trusted verification and worker pipeline."""

    def __init__(self, db) -> None:
        self.db = db

    def payment_intent(self, payment_intent_id: str) -> PaymentIntent | None:
        return self.db.get(PaymentIntent, payment_intent_id)

    def payment_intent_by_external_id(self, provider: str, external_transaction_id: str) -> PaymentIntent | None:
        return self.db.execute(
            select(PaymentIntent).where(
                PaymentIntent.provider == provider,
                PaymentIntent.external_transaction_id == external_transaction_id,
            )
        ).scalar_one_or_none()

    def order_for_intent(self, payment_intent_id: str) -> Order | None:
        return self.db.execute(
            select(Order).where(Order.payment_intent_id == payment_intent_id).order_by(Order.created_at).limit(1)
        ).scalar_one_or_none()

    def order(self, order_id: str) -> Order | None:
        return self.db.get(Order, order_id)
