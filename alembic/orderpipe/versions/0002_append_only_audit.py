"""make verification records and stock movements append-only

Revision ID: 0002_append_only_audit
Revises: 0001_orderpipe
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_append_only_audit"
down_revision = "0001_orderpipe"
branch_labels = None
depends_on = None

AUDIT_TABLES = ("payment_gateway_verifications", "inventory_movements")


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_audit_row_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only; % is not allowed', TG_TABLE_NAME, TG_OP;
        END;
        $$;
        """
    )
    for table in AUDIT_TABLES:
        op.execute(
            f"""
            CREATE TRIGGER trg_{table}_immutable
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION prevent_audit_row_mutation();
            """
        )


def downgrade() -> None:
    for table in AUDIT_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_immutable ON {table};")
    op.execute("DROP FUNCTION IF EXISTS prevent_audit_row_mutation();")
