"""allow at most one order per payment intent

Revision ID: 0003_one_order_per_intent
Revises: 0002_append_only_audit
Create Date: 2026-10-20
"""

from alembic import op


revision = "0003_one_order_per_intent"
down_revision = "0002_append_only_audit"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.drop_index("ix_orders_payment_intent_id", table_name="orders")
    op.create_index("ix_orders_payment_intent_id", "orders", ["payment_intent_id"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_orders_payment_intent_id", table_name="orders")
    op.create_index("ix_orders_payment_intent_id", "orders", ["payment_intent_id"])
