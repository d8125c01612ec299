"""Packages, ad copies, creative ledger and published ads"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_marketing_ads"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    marketing_status_enum = sa.Enum("pending", "copy_generated", "active", name="marketing_status")
    aspect_ratio_enum = sa.Enum("4x5", "9x16", name="aspect_ratio")
    media_kind_enum = sa.Enum("IMAGE", "VIDEO", name="media_kind")
    upload_status_enum = sa.Enum("pending", "uploading", "uploaded", "error", name="upload_status")
    ad_status_enum = sa.Enum("ACTIVE", "PAUSED", "DELETED", name="meta_ad_status")

    op.create_table(
        "packages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tc_package_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("current_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("marketing_status", marketing_status_enum, nullable=False, server_default="pending"),
        sa.Column("ads_created_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ads_active_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "meta_ad_copies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("package_id", sa.Integer(), sa.ForeignKey("packages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tc_package_id", sa.Integer(), nullable=False),
        sa.Column("variant", sa.Integer(), nullable=False),
        sa.Column("headline", sa.Text(), nullable=False),
        sa.Column("primary_text", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("cta_type", sa.Text(), nullable=False, server_default="WHATSAPP_MESSAGE"),
        sa.Column("wa_message_template", sa.Text(), nullable=True),
        sa.Column("approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("package_id", "variant", name="uq_meta_ad_copies_package_variant"),
        sa.CheckConstraint("variant BETWEEN 1 AND 5", name="ck_meta_ad_copies_variant"),
    )

    op.create_table(
        "meta_creatives",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("package_id", sa.Integer(), sa.ForeignKey("packages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tc_package_id", sa.Integer(), nullable=False),
        sa.Column("variant", sa.Integer(), nullable=False),
        sa.Column("aspect_ratio", aspect_ratio_enum, nullable=False),
        sa.Column("drive_file_id", sa.Text(), nullable=True),
        sa.Column("drive_file_name", sa.Text(), nullable=True),
        sa.Column("meta_image_hash", sa.Text(), nullable=True),
        sa.Column("meta_video_id", sa.Text(), nullable=True),
        sa.Column("creative_type", media_kind_enum, nullable=False),
        sa.Column("upload_status", upload_status_enum, nullable=False, server_default="pending"),
        sa.Column("upload_error", sa.Text(), nullable=True),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "package_id", "variant", "aspect_ratio", name="uq_meta_creatives_package_variant_ratio"
        ),
        sa.CheckConstraint(
            "meta_image_hash IS NULL OR meta_video_id IS NULL", name="ck_meta_creatives_single_media"
        ),
    )
    op.create_index("idx_meta_creatives_package", "meta_creatives", ["package_id"])

    op.create_table(
        "meta_ads",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("package_id", sa.Integer(), sa.ForeignKey("packages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tc_package_id", sa.Integer(), nullable=False),
        sa.Column("variant", sa.Integer(), nullable=False),
        sa.Column("meta_ad_id", sa.Text(), nullable=False, unique=True),
        sa.Column("meta_adset_id", sa.Text(), nullable=False),
        sa.Column("meta_campaign_id", sa.Text(), nullable=True),
        sa.Column("meta_creative_id", sa.Text(), nullable=True),
        sa.Column("ad_name", sa.Text(), nullable=True),
        sa.Column("status", ad_status_enum, nullable=False, server_default="PAUSED"),
        sa.Column("meta_status", sa.Text(), nullable=True),
        sa.Column(
            "creative_id",
            sa.Integer(),
            sa.ForeignKey("meta_creatives.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("package_id", "variant", "meta_adset_id", name="uq_meta_ads_package_variant_adset"),
    )
    op.create_index("idx_meta_ads_package", "meta_ads", ["package_id"])
    op.create_index("idx_meta_ads_meta_adset", "meta_ads", ["meta_adset_id"])


def downgrade() -> None:
    op.drop_index("idx_meta_ads_meta_adset", table_name="meta_ads")
    op.drop_index("idx_meta_ads_package", table_name="meta_ads")
    op.drop_table("meta_ads")
    op.drop_index("idx_meta_creatives_package", table_name="meta_creatives")
    op.drop_table("meta_creatives")
    op.drop_table("meta_ad_copies")
    op.drop_table("packages")

    bind = op.get_bind()
    for enum_name in ("meta_ad_status", "upload_status", "media_kind", "aspect_ratio", "marketing_status"):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
