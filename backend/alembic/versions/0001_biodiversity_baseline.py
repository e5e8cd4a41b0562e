"""Baseline for raw staging, canonical records, resource state and run outcomes."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic.
revision = "0001_biodiversity_baseline"
down_revision = None
branch_labels = None
depends_on = None


def _document() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    # -------------------------------------------------------------------------
    # raw_records (staging; id = assigned record id)
    # -------------------------------------------------------------------------
    op.create_table(
        "raw_records",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("resource_id", sa.Text(), nullable=False),
        sa.Column("kingdom", sa.Text(), nullable=False),
        sa.Column("record_type", sa.Text(), nullable=False),
        sa.Column("raw_fields", _document(), nullable=False),
        sa.Column("ipt_version", sa.Text(), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("record_type IN ('taxon', 'occurrence')", name="ck_raw_records_record_type"),
    )
    op.create_index("ix_raw_records_resource_kingdom", "raw_records", ["resource_id", "kingdom"], unique=False)

    # -------------------------------------------------------------------------
    # canonical_records (one per assigned id, overwritten on re-transform)
    # -------------------------------------------------------------------------
    op.create_table(
        "canonical_records",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("kingdom", sa.Text(), nullable=False),
        sa.Column("record_type", sa.Text(), nullable=False),
        sa.Column("resource_id", sa.Text(), nullable=False),
        sa.Column("pipeline_version", sa.Text(), nullable=False),
        sa.Column("mapped_fields", _document(), nullable=False),
        sa.Column("provenance", _document(), nullable=False),
        sa.Column("transformed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_canonical_records_resource_id", "canonical_records", ["resource_id"], unique=False)
    op.create_index(
        "ix_canonical_records_pipeline_version", "canonical_records", ["pipeline_version"], unique=False
    )

    # -------------------------------------------------------------------------
    # resource_states (id = resource_id)
    # -------------------------------------------------------------------------
    op.create_table(
        "resource_states",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("last_known_version", sa.Text(), nullable=True),
        sa.Column("last_modified", sa.Text(), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_ingested_at", sa.DateTime(timezone=True), nullable=True),
    )

    # -------------------------------------------------------------------------
    # run_outcomes (append-only; id = run_id)
    # -------------------------------------------------------------------------
    op.create_table(
        "run_outcomes",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("process_type", sa.Text(), nullable=False),
        sa.Column("resource_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=False),
        sa.Column("counts", _document(), nullable=False),
        sa.Column("errors", _document(), nullable=False),
        sa.Column("error_summary", _document(), nullable=False),
        sa.Column("version", sa.Text(), nullable=True),
        sa.Column("runner_id", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "process_type IN ('ingest_taxa', 'ingest_occurrences', 'transform')",
            name="ck_run_outcomes_process_type",
        ),
        sa.CheckConstraint("completed_at >= started_at", name="ck_run_outcomes_completed_after_start"),
    )
    op.create_index(
        "ix_run_outcomes_process_started", "run_outcomes", ["process_type", "started_at"], unique=False
    )
    op.create_index("ix_run_outcomes_resource_id", "run_outcomes", ["resource_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_run_outcomes_resource_id", table_name="run_outcomes")
    op.drop_index("ix_run_outcomes_process_started", table_name="run_outcomes")
    op.drop_table("run_outcomes")

    op.drop_table("resource_states")

    op.drop_index("ix_canonical_records_pipeline_version", table_name="canonical_records")
    op.drop_index("ix_canonical_records_resource_id", table_name="canonical_records")
    op.drop_table("canonical_records")

    op.drop_index("ix_raw_records_resource_kingdom", table_name="raw_records")
    op.drop_table("raw_records")
