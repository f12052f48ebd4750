"""Append-only recipe version chain.

Revision ID: 002_recipe_versions
Revises: 001_knowledge
Create Date: 2026-10-17

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "002_recipe_versions"
down_revision: str | None = "001_knowledge"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "transform_recipe_versions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", sa.String(64), nullable=False, server_default="default"),
        sa.Column("recipe_id", UUID(as_uuid=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("snapshot", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "recipe_id", "version", name="uq_transform_recipe_versions_version"),
        comment="Every version of every transformation recipe; rows are never updated.",
    )
    op.create_index("idx_transform_recipe_versions_tenant", "transform_recipe_versions", ["tenant_id"])
    op.create_index("idx_transform_recipe_versions_recipe", "transform_recipe_versions", ["recipe_id"])

    # Seed the chain with the current head of every existing recipe.
    op.execute(
        """
        INSERT INTO transform_recipe_versions (tenant_id, recipe_id, version, status, snapshot, created_at)
        SELECT tenant_id, id, version, status,
               jsonb_build_object(
                   'id', id::text, 'source_concept', source_concept, 'target_concept', target_concept,
                   'source_field', source_field, 'target_field', target_field, 'tool_id', tool_id,
                   'rule', rule, 'program', program, 'success_count', success_count,
                   'failure_count', failure_count, 'status', status, 'version', version,
                   'created_at', created_at, 'updated_at', updated_at
               ),
               updated_at
        FROM transform_recipes
        """
    )


def downgrade() -> None:
    op.drop_index("idx_transform_recipe_versions_recipe", "transform_recipe_versions")
    op.drop_index("idx_transform_recipe_versions_tenant", "transform_recipe_versions")
    op.drop_table("transform_recipe_versions")
