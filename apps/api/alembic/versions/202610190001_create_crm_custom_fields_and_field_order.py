"""create crm custom fields, records and field order

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_custom_field_definition",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("sort_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("is_visible", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("module", "name", name="uq_crm_custom_field_definition_module_name"),
    )
    op.create_index(
        "ix_crm_custom_field_definition_module_order",
        "crm_custom_field_definition",
        ["module", "sort_order"],
        unique=False,
    )

    op.create_table(
        "crm_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("custom_fields", sa.JSON(), nullable=True),
        sa.Column("field_order", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_record_module", "crm_record", ["module"], unique=False)

    op.create_table(
        "crm_field_order",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("field_order", sa.JSON(), nullable=False),
        sa.Column("last_modified", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("module", "entity_id", name="uq_crm_field_order_module_entity"),
    )


def downgrade() -> None:
    op.drop_table("crm_field_order")

    op.drop_index("ix_crm_record_module", table_name="crm_record")
    op.drop_table("crm_record")

    op.drop_index(
        "ix_crm_custom_field_definition_module_order",
        table_name="crm_custom_field_definition",
    )
    op.drop_table("crm_custom_field_definition")
