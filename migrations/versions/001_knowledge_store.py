"""Knowledge store tables: contracts, recipes, retrieval entries, traces, counters.

Revision ID: 001_knowledge
Revises:
Create Date: 2026-10-17

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001_knowledge"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

EMBEDDING_DIMENSIONS = 256


def _tenant() -> sa.Column:
    return sa.Column("tenant_id", sa.String(64), nullable=False, server_default="default")


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "contract_fields",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant(),
        sa.Column("tool_id", sa.String(255), nullable=False),
        sa.Column("path", sa.String(512), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("inferred_type", sa.String(20), nullable=True),
        sa.Column("unit", sa.String(64), nullable=True),
        sa.Column("required_support", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("required_contradictions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("allowed_values", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("enum_stable_observations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enum_open", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("minimum", sa.Float(), nullable=True),
        sa.Column("maximum", sa.Float(), nullable=True),
        sa.Column("magnitude", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("support", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("contradictions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("observation_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_observed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_corroborated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("declared", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.UniqueConstraint("tenant_id", "tool_id", "path", "version", name="uq_contract_fields_version"),
        comment="Append-only version chain of learned tool contract fields.",
    )
    op.create_index("idx_contract_fields_tenant", "contract_fields", ["tenant_id"])
    op.create_index("idx_contract_fields_tool", "contract_fields", ["tool_id"])

    op.create_table(
        "transform_recipes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant(),
        sa.Column("source_concept", sa.String(255), nullable=False),
        sa.Column("target_concept", sa.String(255), nullable=False),
        sa.Column("source_field", sa.String(512), nullable=False),
        sa.Column("target_field", sa.String(512), nullable=False),
        sa.Column("tool_id", sa.String(255), nullable=True),
        sa.Column("rule", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("program", sa.Text(), nullable=True),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="candidate"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        comment="Reusable field transformations between semantic concepts.",
    )
    op.create_check_constraint(
        "ck_transform_recipes_status",
        "transform_recipes",
        "status IN ('candidate','trusted','flagged')",
    )
    op.create_index("idx_transform_recipes_tenant", "transform_recipes", ["tenant_id"])
    op.create_index("idx_transform_recipes_source", "transform_recipes", ["source_concept"])
    op.create_index("idx_transform_recipes_target", "transform_recipes", ["target_concept"])
    op.create_index("idx_transform_recipes_tool", "transform_recipes", ["tool_id"])

    op.create_table(
        "knowledge_entries",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant(),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("tool_id", sa.String(255), nullable=True),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        sa.Column("ref_id", sa.String(255), nullable=True),
        sa.Column("success_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        _created_at(),
        comment="Embedded contract/recipe/trace/guidance documents for retrieval.",
    )
    op.create_index(
        "idx_knowledge_embedding",
        "knowledge_entries",
        ["embedding"],
        postgresql_using="hnsw",
        postgresql_with={"m": 16, "ef_construction": 64},
        postgresql_ops={"embedding": "vector_cosine_ops"},
    )
    op.create_index("idx_knowledge_entries_tenant", "knowledge_entries", ["tenant_id"])
    op.create_index("idx_knowledge_entries_kind", "knowledge_entries", ["kind"])
    op.create_index("idx_knowledge_entries_tool", "knowledge_entries", ["tool_id"])

    op.create_table(
        "execution_traces",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        _tenant(),
        sa.Column("tool_id", sa.String(255), nullable=False),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("strategy", sa.String(64), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("field_paths", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("referenced_paths", JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("payload", JSONB, nullable=False),
        _created_at(),
        comment="One row per attempted tool call; never updated.",
    )
    op.create_index("idx_execution_traces_tenant", "execution_traces", ["tenant_id"])
    op.create_index("idx_execution_traces_tool", "execution_traces", ["tool_id"])
    op.create_index("idx_execution_traces_outcome", "execution_traces", ["outcome"])
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_execution_traces_created "
        "ON execution_traces (tenant_id, tool_id, created_at DESC)"
    )

    op.create_table(
        "mismatch_counters",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        _tenant(),
        sa.Column("tool_id", sa.String(255), nullable=False),
        sa.Column("path", sa.String(512), nullable=False),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "tool_id", "path", "kind", name="uq_mismatch_counters_key"),
        comment="Counts repeated mismatches per tool field and violation kind.",
    )
    op.create_index("idx_mismatch_counters_tenant", "mismatch_counters", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("idx_mismatch_counters_tenant", "mismatch_counters")
    op.drop_table("mismatch_counters")
    op.drop_index("idx_execution_traces_created", "execution_traces")
    op.drop_index("idx_execution_traces_outcome", "execution_traces")
    op.drop_index("idx_execution_traces_tool", "execution_traces")
    op.drop_index("idx_execution_traces_tenant", "execution_traces")
    op.drop_table("execution_traces")
    op.drop_index("idx_knowledge_entries_tool", "knowledge_entries")
    op.drop_index("idx_knowledge_entries_kind", "knowledge_entries")
    op.drop_index("idx_knowledge_entries_tenant", "knowledge_entries")
    op.drop_index("idx_knowledge_embedding", "knowledge_entries", postgresql_using="hnsw")
    op.drop_table("knowledge_entries")
    op.drop_index("idx_transform_recipes_tool", "transform_recipes")
    op.drop_index("idx_transform_recipes_target", "transform_recipes")
    op.drop_index("idx_transform_recipes_source", "transform_recipes")
    op.drop_index("idx_transform_recipes_tenant", "transform_recipes")
    op.drop_constraint("ck_transform_recipes_status", "transform_recipes", type_="check")
    op.drop_table("transform_recipes")
    op.drop_index("idx_contract_fields_tool", "contract_fields")
    op.drop_index("idx_contract_fields_tenant", "contract_fields")
    op.drop_table("contract_fields")
