"""Fiscal core schema: payment methods, shifts, sales, resolutions, electronic documents, alerts

Revision ID: 0001_fiscal_core
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_fiscal_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _fiscal_columns():
    return [
        sa.Column("prefix", sa.String(length=8), nullable=True),
        sa.Column("number", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("is_valid", sa.Boolean(), nullable=True),
        sa.Column("validation_message", sa.Text(), nullable=True),
        sa.Column("cufe", sa.String(length=128), nullable=True),
        sa.Column("uuid", sa.String(length=128), nullable=True),
        sa.Column("qr_code", sa.Text(), nullable=True),
        sa.Column("zip_key", sa.String(length=128), nullable=True),
        sa.Column("request_payload", sa.Text(), nullable=True),
        sa.Column("gateway_response", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("validation_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transient_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_kind", sa.String(length=16), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
    ] + _timestamps()


def upgrade():
    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("method_type", sa.String(length=16), nullable=False),
        sa.Column("affects_cash_drawer", sa.Boolean(), nullable=False),
        sa.Column("include_in_sales_summary", sa.Boolean(), nullable=False),
        sa.Column("dian_payment_method_id", sa.Integer(), nullable=True),
        sa.Column("requires_reference", sa.Boolean(), nullable=False),
        sa.Column("is_system_default", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("display_order", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_payment_methods_is_active", "payment_methods", ["is_active"], unique=False)

    op.create_table(
        "cash_register_shifts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("register_name", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("opening_cash_cents", sa.Integer(), nullable=False),
        sa.Column("closing_cash_cents", sa.Integer(), nullable=True),
        sa.Column("expected_cash_cents", sa.Integer(), nullable=True),
        sa.Column("difference_cents", sa.Integer(), nullable=True),
        sa.Column("movement_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("opened_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_by", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_cash_register_shifts_employee_id", "cash_register_shifts", ["employee_id"], unique=False)
    op.create_index("ix_cash_register_shifts_status", "cash_register_shifts", ["status"], unique=False)
    op.create_index("ix_cash_register_shifts_opened_at", "cash_register_shifts", ["opened_at"], unique=False)
    op.create_index("ix_shifts_employee_status", "cash_register_shifts", ["employee_id", "status"], unique=False)

    op.create_table(
        "sales",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("subtotal_cents", sa.Integer(), nullable=False),
        sa.Column("tax_cents", sa.Integer(), nullable=False),
        sa.Column("discount_cents", sa.Integer(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False),
        sa.Column("refunded_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("register_shift_id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("needs_electronic_invoice", sa.Boolean(), nullable=False),
        sa.Column("customer_identification_type", sa.String(length=8), nullable=True),
        sa.Column("customer_identification", sa.String(length=32), nullable=True),
        sa.Column("customer_dv", sa.String(length=2), nullable=True),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["register_shift_id"], ["cash_register_shifts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sale_number"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_sales_status", "sales", ["status"], unique=False)
    op.create_index("ix_sales_register_shift_id", "sales", ["register_shift_id"], unique=False)
    op.create_index("ix_sales_employee_id", "sales", ["employee_id"], unique=False)
    op.create_index("ix_sales_created_at", "sales", ["created_at"], unique=False)
    op.create_index("ix_sales_shift_status", "sales", ["register_shift_id", "status"], unique=False)
    op.create_index("ix_sales_status_created", "sales", ["status", "created_at"], unique=False)

    op.create_table(
        "sale_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False),
        sa.Column("line_total_cents", sa.Integer(), nullable=False),
        sa.Column("tax_type", sa.String(length=16), nullable=False),
        sa.Column("tax_rate_bps", sa.Integer(), nullable=False),
        sa.Column("tax_cents", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_sale_lines_sale_id", "sale_lines", ["sale_id"], unique=False)

    op.create_table(
        "sale_payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("payment_method_id", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("subtotal_share_cents", sa.Integer(), nullable=False),
        sa.Column("tax_share_cents", sa.Integer(), nullable=False),
        sa.Column("discount_share_cents", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["payment_method_id"], ["payment_methods.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_sale_payments_sale_id", "sale_payments", ["sale_id"], unique=False)
    op.create_index("ix_sale_payments_method", "sale_payments", ["payment_method_id"], unique=False)

    op.create_table(
        "cash_movements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("register_shift_id", sa.Integer(), nullable=False),
        sa.Column("movement_type", sa.String(length=16), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("reference", sa.String(length=64), nullable=True),
        sa.Column("sale_id", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_cash_movements_amount_positive"),
        sa.ForeignKeyConstraint(["register_shift_id"], ["cash_register_shifts.id"]),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_cash_movements_register_shift_id", "cash_movements", ["register_shift_id"], unique=False)
    op.create_index("ix_cash_movements_movement_type", "cash_movements", ["movement_type"], unique=False)
    op.create_index("ix_cash_movements_created_at", "cash_movements", ["created_at"], unique=False)
    op.create_index("ix_cash_movements_shift_type", "cash_movements", ["register_shift_id", "movement_type"], unique=False)

    op.create_table(
        "resolutions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("resolution_number", sa.String(length=32), nullable=False),
        sa.Column("prefix", sa.String(length=8), nullable=False),
        sa.Column("range_from", sa.Integer(), nullable=False),
        sa.Column("range_to", sa.Integer(), nullable=False),
        sa.Column("last_allocated", sa.Integer(), nullable=False),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_to", sa.Date(), nullable=False),
        sa.Column("technical_key", sa.String(length=128), nullable=True),
        sa.Column("alert_threshold", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("last_allocated <= range_to", name="ck_resolutions_within_range"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "prefix", "resolution_number", name="uq_resolutions_kind_prefix_number"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_resolutions_kind", "resolutions", ["kind"], unique=False)
    op.create_index("ix_resolutions_is_active", "resolutions", ["is_active"], unique=False)

    op.create_table(
        "electronic_invoices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sale_id", sa.Integer(), nullable=False),
        sa.Column("resolution_id", sa.Integer(), nullable=True),
        sa.Column("send_email", sa.Boolean(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_fiscal_columns(),
        sa.ForeignKeyConstraint(["sale_id"], ["sales.id"]),
        sa.ForeignKeyConstraint(["resolution_id"], ["resolutions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sale_id"),
        sa.UniqueConstraint("prefix", "number", name="uq_electronic_invoices_prefix_number"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_electronic_invoices_resolution_id", "electronic_invoices", ["resolution_id"], unique=False)
    op.create_index("ix_electronic_invoices_status", "electronic_invoices", ["status"], unique=False)
    op.create_index("ix_electronic_invoices_status_sent", "electronic_invoices", ["status", "sent_at"], unique=False)

    for table, code in (("credit_notes", 2), ("debit_notes", 4)):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("electronic_invoice_id", sa.Integer(), nullable=False),
            sa.Column("resolution_id", sa.Integer(), nullable=True),
            sa.Column("amount_cents", sa.Integer(), nullable=False),
            sa.Column("reason", sa.String(length=255), nullable=False),
            sa.Column("discrepancy_code", sa.Integer(), nullable=False, server_default=str(code)),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("version_id", sa.Integer(), nullable=False),
            *_fiscal_columns(),
            sa.CheckConstraint("amount_cents > 0", name=f"ck_{table}_amount_positive"),
            sa.ForeignKeyConstraint(["electronic_invoice_id"], ["electronic_invoices.id"]),
            sa.ForeignKeyConstraint(["resolution_id"], ["resolutions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("prefix", "number", name=f"uq_{table}_prefix_number"),
            sqlite_autoincrement=True,
        )
        op.create_index(f"ix_{table}_electronic_invoice_id", table, ["electronic_invoice_id"], unique=False)
        op.create_index(f"ix_{table}_resolution_id", table, ["resolution_id"], unique=False)
        op.create_index(f"ix_{table}_status", table, ["status"], unique=False)

    op.create_table(
        "fiscal_alerts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(length=16), nullable=True),
        sa.Column("document_id", sa.Integer(), nullable=True),
        sa.Column("alert_type", sa.String(length=32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_fiscal_alerts_alert_type", "fiscal_alerts", ["alert_type"], unique=False)
    op.create_index("ix_fiscal_alerts_created_at", "fiscal_alerts", ["created_at"], unique=False)
    op.create_index("ix_fiscal_alerts_document", "fiscal_alerts", ["document_type", "document_id"], unique=False)


def downgrade():
    op.drop_table("fiscal_alerts")
    op.drop_table("debit_notes")
    op.drop_table("credit_notes")
    op.drop_table("electronic_invoices")
    op.drop_table("resolutions")
    op.drop_table("cash_movements")
    op.drop_table("sale_payments")
    op.drop_table("sale_lines")
    op.drop_table("sales")
    op.drop_table("cash_register_shifts")
    op.drop_table("payment_methods")
