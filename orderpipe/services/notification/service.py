"""Order email fan-out.

Sends through a Resend-compatible HTTP API (`POST {EMAIL_API_URL}` with
`{from, to, subject, html}`). Every attempt is logged to `notification_logs`.
Sending is best-effort: a failure is recorded and never propagates to the
order pipeline.
"""

from html import escape

import httpx
from sqlalchemy import select

from orderpipe.common.config import settings
from orderpipe.common.logging import logger
from orderpipe.common.metrics import notifications_total
from orderpipe.common.models import NotificationLog, Order, OrderItem, Vendor
from orderpipe.common.money import format_major


def _items_table(items: list[OrderItem]) -> str:
    rows = "".join(
        f"<tr><td>{escape(item.product_name)}</td><td>{item.quantity}</td>"
        f"<td>{settings.currency} {format_major(item.total_price_cents)}</td></tr>"
        for item in items
    )
    return f"<table><tr><th>Item</th><th>Qty</th><th>Total</th></tr>{rows}</table>"


def render_order_confirmation(order: Order, items: list[OrderItem]) -> tuple[str, str]:
    subject = f"Order confirmed: {order.order_number}"
    html = (
        f"<h1>Thank you for your order</h1>"
        f"<p>Order <strong>{escape(order.order_number)}</strong> is confirmed.</p>"
        f"{_items_table(items)}"
        f"<p>Subtotal: {settings.currency} {format_major(order.subtotal_cents)}<br>"
        f"Shipping: {settings.currency} {format_major(order.shipping_cents)}<br>"
        f"Tax: {settings.currency} {format_major(order.tax_cents)}<br>"
        f"<strong>Total: {settings.currency} {format_major(order.total_cents)}</strong></p>"
    )
    return subject, html


def render_vendor_new_order(order: Order, vendor: Vendor, items: list[OrderItem]) -> tuple[str, str]:
    subject = f"New order {order.order_number}"
    earnings = sum(item.total_price_cents for item in items)
    html = (
        f"<h1>New order for {escape(vendor.name)}</h1>"
        f"<p>Order <strong>{escape(order.order_number)}</strong> includes your products.</p>"
        f"{_items_table(items)}"
        f"<p>Your items total: {settings.currency} {format_major(earnings)}</p>"
    )
    return subject, html


class Notifier:
    def __init__(self, session_factory, client: httpx.Client | None = None) -> None:
        self.session_factory = session_factory
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=10.0)
        return self._client

    def _send(self, to: str, subject: str, html: str) -> None:
        response = self.client.post(
            settings.email_api_url,
            headers={"Authorization": f"Bearer {settings.email_api_key.get_secret_value()}"},
            json={"from": settings.email_sender, "to": [to], "subject": subject, "html": html},
        )
        response.raise_for_status()

    def _deliver(self, db, order_id: str, template: str, recipient: str | None, subject: str, html: str) -> str:
        error = None
        if not recipient or not settings.email_api_url:
            status = "skipped"
        else:
            try:
                self._send(recipient, subject, html)
                status = "sent"
            except httpx.HTTPError as exc:
                status = "failed"
                error = str(exc)
                logger.warning("notification failed template=%s order_id=%s error=%s", template, order_id, exc)
        db.add(NotificationLog(order_id=order_id, template=template, recipient=recipient, status=status, error=error))
        notifications_total.labels(template=template, status=status).inc()
        return status

    def notify_order_created(self, order_id: str, buyer_email: str | None) -> dict[str, str]:
        """Send the buyer confirmation and one email per vendor in the order."""

        results: dict[str, str] = {}
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                return results
            items = list(db.execute(select(OrderItem).where(OrderItem.order_id == order_id)).scalars())

            subject, html = render_order_confirmation(order, items)
            results["buyer"] = self._deliver(db, order_id, "order_confirmation", buyer_email, subject, html)

            by_vendor: dict[str, list[OrderItem]] = {}
            for item in items:
                by_vendor.setdefault(item.vendor_id, []).append(item)
            for vendor_id, vendor_items in sorted(by_vendor.items()):
                vendor = db.get(Vendor, vendor_id)
                if vendor is None:
                    continue
                subject, html = render_vendor_new_order(order, vendor, vendor_items)
                results[vendor_id] = self._deliver(db, order_id, "vendor_new_order", vendor.email, subject, html)
            db.commit()
        return results
