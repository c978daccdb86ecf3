"""Count status polls per fiscal document

Revision ID: 0002_poll_count
Revises: 0001_fiscal_core
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_poll_count"
down_revision = "0001_fiscal_core"
branch_labels = None
depends_on = None


TABLES = ("electronic_invoices", "credit_notes", "debit_notes")


def upgrade():
    for table in TABLES:
        with op.batch_alter_table(table) as batch_op:
            batch_op.add_column(sa.Column("poll_count", sa.Integer(), nullable=False, server_default="0"))


def downgrade():
    for table in TABLES:
        with op.batch_alter_table(table) as batch_op:
            batch_op.drop_column("poll_count")
