"""One open shift per employee

Revision ID: 0003_one_open_shift
Revises: 0002_poll_count
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0003_one_open_shift"
down_revision = "0002_poll_count"
branch_labels = None
depends_on = None


OPEN_ONLY = sa.text("status = 'open'")


def upgrade():
    op.create_index(
        "uq_shifts_one_open_per_employee",
        "cash_register_shifts",
        ["employee_id"],
        unique=True,
        sqlite_where=OPEN_ONLY,
        postgresql_where=OPEN_ONLY,
    )


def downgrade():
    op.drop_index("uq_shifts_one_open_per_employee", table_name="cash_register_shifts")
