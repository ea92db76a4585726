"""Initial listing dispatch schema.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "listings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("display_number", sa.BigInteger(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.BigInteger(), nullable=True),
        sa.Column("category_id", sa.String(), nullable=True),
        sa.Column("category_name", sa.String(), nullable=True),
        sa.Column("category_slug", sa.String(), nullable=True),
        sa.Column("city_id", sa.String(), nullable=True),
        sa.Column("city_name", sa.String(), nullable=True),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("street", sa.String(), nullable=True),
        sa.Column("neighborhood", sa.String(), nullable=True),
        sa.Column("attributes", sa.Text(), nullable=True),
        sa.Column("images", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("distributed", sa.Boolean(), nullable=False),
        sa.Column("distributed_at", sa.DateTime(), nullable=True),
        sa.Column("distributed_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("uq_listings_display_number", "listings", ["display_number"], unique=True)
    op.create_index("idx_listings_city_category", "listings", ["city_id", "category_id"], unique=False)

    op.create_table(
        "dispatch_targets",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("internal_code", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("city_scopes", sa.Text(), nullable=False),
        sa.Column("region_scopes", sa.Text(), nullable=False),
        sa.Column("category_scopes", sa.Text(), nullable=False),
        sa.Column("daily_quota", sa.Integer(), nullable=False),
        sa.Column("allow_digest", sa.Boolean(), nullable=False),
        sa.Column("invite_link", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("internal_code"),
    )
    op.create_index("idx_dispatch_targets_status", "dispatch_targets", ["status"], unique=False)

    op.create_table(
        "target_suggestions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("internal_code", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("city_scopes", sa.Text(), nullable=False),
        sa.Column("region_scopes", sa.Text(), nullable=False),
        sa.Column("category_scopes", sa.Text(), nullable=False),
        sa.Column("daily_quota", sa.Integer(), nullable=False),
        sa.Column("allow_digest", sa.Boolean(), nullable=False),
        sa.Column("invite_link", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("suggested_by", sa.String(), nullable=False),
        sa.Column("suggested_at", sa.DateTime(), nullable=True),
        sa.Column("reviewed_by", sa.String(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("approved_target_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["approved_target_id"], ["dispatch_targets.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_target_suggestions_status", "target_suggestions", ["status", "suggested_at"], unique=False)

    op.create_table(
        "dispatch_digests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("item_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_snapshot", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("sent_by", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["target_id"], ["dispatch_targets.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_dispatch_digests_target", "dispatch_digests", ["target_id", "created_at"], unique=False)

    op.create_table(
        "dispatch_items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("listing_id", sa.String(), nullable=False),
        sa.Column("target_id", sa.Integer(), nullable=True),
        sa.Column("channel", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("payload_snapshot", sa.Text(), nullable=True),
        sa.Column("dedupe_key", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("sent_by", sa.String(), nullable=True),
        sa.Column("digest_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["listing_id"], ["listings.id"]),
        sa.ForeignKeyConstraint(["target_id"], ["dispatch_targets.id"]),
        sa.ForeignKeyConstraint(["digest_id"], ["dispatch_digests.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("uq_dispatch_items_dedupe", "dispatch_items", ["dedupe_key"], unique=True)
    op.create_index("idx_dispatch_items_quota", "dispatch_items", ["target_id", "status", "sent_at"], unique=False)
    op.create_index("idx_dispatch_items_queue", "dispatch_items", ["status", "created_at"], unique=False)
    op.create_index("idx_dispatch_items_listing", "dispatch_items", ["listing_id"], unique=False)

    op.create_table(
        "dispatch_audit_log",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("listing_id", sa.String(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_entity", "dispatch_audit_log", ["entity_type", "entity_id"], unique=False)
    op.create_index("idx_audit_listing", "dispatch_audit_log", ["listing_id"], unique=False)
    op.create_index("idx_audit_target", "dispatch_audit_log", ["target_id"], unique=False)
    op.create_index("idx_audit_actor", "dispatch_audit_log", ["actor_id", "created_at"], unique=False)
    op.create_index("idx_audit_action", "dispatch_audit_log", ["action", "created_at"], unique=False)

    op.create_table(
        "operators",
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("can_operate", sa.Boolean(), nullable=False),
        sa.Column("can_override", sa.Boolean(), nullable=False),
        sa.Column("can_manage_targets", sa.Boolean(), nullable=False),
        sa.Column("can_change_quota", sa.Boolean(), nullable=False),
        sa.Column("can_review_suggestions", sa.Boolean(), nullable=False),
        sa.Column("can_view_audit", sa.Boolean(), nullable=False),
        sa.Column("can_manage_operators", sa.Boolean(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=True),
        sa.Column("granted_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("actor_id"),
    )

    op.create_table(
        "metric_counters",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("metric_counters")
    op.drop_table("operators")

    op.drop_index("idx_audit_action", table_name="dispatch_audit_log")
    op.drop_index("idx_audit_actor", table_name="dispatch_audit_log")
    op.drop_index("idx_audit_target", table_name="dispatch_audit_log")
    op.drop_index("idx_audit_listing", table_name="dispatch_audit_log")
    op.drop_index("idx_audit_entity", table_name="dispatch_audit_log")
    op.drop_table("dispatch_audit_log")

    op.drop_index("idx_dispatch_items_listing", table_name="dispatch_items")
    op.drop_index("idx_dispatch_items_queue", table_name="dispatch_items")
    op.drop_index("idx_dispatch_items_quota", table_name="dispatch_items")
    op.drop_index("uq_dispatch_items_dedupe", table_name="dispatch_items")
    op.drop_table("dispatch_items")

    op.drop_index("idx_dispatch_digests_target", table_name="dispatch_digests")
    op.drop_table("dispatch_digests")

    op.drop_index("idx_target_suggestions_status", table_name="target_suggestions")
    op.drop_table("target_suggestions")

    op.drop_index("idx_dispatch_targets_status", table_name="dispatch_targets")
    op.drop_table("dispatch_targets")

    op.drop_index("idx_listings_city_category", table_name="listings")
    op.drop_index("uq_listings_display_number", table_name="listings")
    op.drop_table("listings")
