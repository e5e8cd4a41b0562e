"""Reference lists used to enrich canonical records."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic.
revision = "0002_reference_records"
down_revision = "0001_biodiversity_baseline"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reference_records",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column(
            "fields",
            sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql"),
            nullable=False,
        ),
        sa.Column("loaded_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "kind IN ('threat', 'invasive', 'conservation_unit')",
            name="ck_reference_records_kind",
        ),
    )
    op.create_index("ix_reference_records_kind_source", "reference_records", ["kind", "source"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_reference_records_kind_source", table_name="reference_records")
    op.drop_table("reference_records")
