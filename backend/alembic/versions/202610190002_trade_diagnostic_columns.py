"""Add diagnostic columns to databases created before they existed.

Adds ``analysis_logs.provider``, ``trades.error_message`` and
``sniped_positions.order_id`` when missing. Guarded by ``_column_names``
so re-running against an up-to-date schema is a no-op.

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:10:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "202610190002"
down_revision = "202610190001"
branch_labels = None
depends_on = None

_ADDITIONS = (
    ("analysis_logs", sa.Column("provider", sa.String(), nullable=True)),
    ("trades", sa.Column("error_message", sa.Text(), nullable=True)),
    ("sniped_positions", sa.Column("order_id", sa.String(), nullable=True)),
)


def _column_names(table_name: str) -> set[str]:
    inspector = sa.inspect(op.get_bind())
    if table_name not in set(inspector.get_table_names()):
        return set()
    return {col["name"] for col in inspector.get_columns(table_name)}


def upgrade() -> None:
    for table_name, column in _ADDITIONS:
        existing = _column_names(table_name)
        if not existing or column.name in existing:
            continue
        with op.batch_alter_table(table_name) as batch:
            batch.add_column(column)


def downgrade() -> None:
    for table_name, column in _ADDITIONS:
        if column.name not in _column_names(table_name):
            continue
        with op.batch_alter_table(table_name) as batch:
            batch.drop_column(column.name)
