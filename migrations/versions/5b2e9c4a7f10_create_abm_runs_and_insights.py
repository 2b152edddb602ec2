"""Create abm_runs and the abm_insights vector table.

Similarity search orders by `embedding <=> :query` (cosine distance), so the
ivfflat index is built with `vector_cosine_ops`. Every retrieval is scoped to a
single run, which the run_id B-tree index serves.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

revision = "5b2e9c4a7f10"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

EMBEDDING_DIMENSIONS = 1536


def upgrade() -> None:
    op.execute(sa.text("CREATE EXTENSION IF NOT EXISTS vector"))
    op.create_table(
        "abm_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("company", sa.Text(), nullable=False),
        sa.Column("domain", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="processing"),
        sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("timezone('utc', now())")),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("timezone('utc', now())"),
            server_onupdate=sa.text("timezone('utc', now())"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_abm_runs"),
        sa.CheckConstraint(
            "status IN ('processing', 'completed', 'failed')",
            name="ck_abm_runs_status",
        ),
    )
    op.create_index("ix_abm_runs_status", "abm_runs", ["status"], unique=False)

    op.create_table(
        "abm_insights",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("run_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("content_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=False),
        sa.Column(
            "citations",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("timezone('utc', now())")),
        sa.PrimaryKeyConstraint("id", name="pk_abm_insights"),
        sa.ForeignKeyConstraint(
            ["run_id"],
            ["abm_runs.id"],
            name="fk_abm_insights_run_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("abm_insights_run_id_idx", "abm_insights", ["run_id"], unique=False)
    op.execute(
        sa.text(
            "CREATE INDEX abm_insights_embedding_idx ON abm_insights "
            "USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)"
        )
    )
    logger.info("abm.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS abm_insights_embedding_idx"))
    op.drop_index("abm_insights_run_id_idx", table_name="abm_insights")
    op.drop_table("abm_insights")
    op.drop_index("ix_abm_runs_status", table_name="abm_runs")
    op.drop_table("abm_runs")
