"""Initial migration – users, packs, categories and the pack graph.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column("preferred_language", sa.String(5), nullable=False, server_default="en"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True, unique=True),
        sa.Column("telegram_user_id", sa.BigInteger(), nullable=True, unique=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ── packs ─────────────────────────────────────────────────────────
    op.create_table(
        "packs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_monthly", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="EUR"),
        sa.Column("is_free", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("stripe_price_id", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ── categories / bets ─────────────────────────────────────────────
    op.create_table(
        "categories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("standard_bet", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column(
            "telegram_notifications", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
    )
    op.create_table(
        "bets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "category_id",
            sa.String(36),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column(
            "published_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_bets_category_id", "bets", ["category_id"])

    # ── pack_categories ───────────────────────────────────────────────
    op.create_table(
        "pack_categories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "pack_id",
            sa.String(36),
            sa.ForeignKey("packs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.String(36),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.UniqueConstraint("pack_id", "category_id", name="uq_pack_category"),
    )
    op.create_index("ix_pack_categories_pack_id", "pack_categories", ["pack_id"])

    # ── pack_hierarchy ────────────────────────────────────────────────
    op.create_table(
        "pack_hierarchy",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "pack_id",
            sa.String(36),
            sa.ForeignKey("packs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "includes_pack_id",
            sa.String(36),
            sa.ForeignKey("packs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.UniqueConstraint("pack_id", "includes_pack_id", name="uq_pack_hierarchy_edge"),
        sa.CheckConstraint("pack_id <> includes_pack_id", name="ck_pack_hierarchy_no_self"),
    )
    op.create_index("ix_pack_hierarchy_pack_id", "pack_hierarchy", ["pack_id"])


def downgrade() -> None:
    op.drop_table("pack_hierarchy")
    op.drop_table("pack_categories")
    op.drop_table("bets")
    op.drop_table("categories")
    op.drop_table("packs")
    op.drop_table("users")
