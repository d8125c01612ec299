from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from adpublisher.db.base import Base
from adpublisher.db.enums import (
    AdStatusEnum,
    AspectRatioEnum,
    MarketingStatusEnum,
    MediaKindEnum,
    UploadStatusEnum,
)
from adpublisher.domain.creatives import ImageRef, MediaRef, VideoRef


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Package(Base):
    __tablename__ = "packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tc_package_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    marketing_status: Mapped[MarketingStatusEnum] = mapped_column(
        Enum(MarketingStatusEnum, name="marketing_status", values_callable=_enum_values),
        nullable=False,
        server_default=MarketingStatusEnum.pending.value,
    )
    ads_created_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    ads_active_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class MetaAdCopy(Base):
    __tablename__ = "meta_ad_copies"
    __table_args__ = (
        UniqueConstraint("package_id", "variant", name="uq_meta_ad_copies_package_variant"),
        CheckConstraint("variant BETWEEN 1 AND 5", name="ck_meta_ad_copies_variant"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("packages.id", ondelete="CASCADE"), nullable=False)
    tc_package_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variant: Mapped[int] = mapped_column(Integer, nullable=False)
    headline: Mapped[str] = mapped_column(Text, nullable=False)
    primary_text: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cta_type: Mapped[str] = mapped_column(Text, nullable=False, server_default="WHATSAPP_MESSAGE")
    wa_message_template: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=sa.false())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class MetaCreative(Base):
    __tablename__ = "meta_creatives"
    __table_args__ = (
        UniqueConstraint(
            "package_id", "variant", "aspect_ratio", name="uq_meta_creatives_package_variant_ratio"
        ),
        CheckConstraint(
            "meta_image_hash IS NULL OR meta_video_id IS NULL",
            name="ck_meta_creatives_single_media",
        ),
        sa.Index("idx_meta_creatives_package", "package_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("packages.id", ondelete="CASCADE"), nullable=False)
    tc_package_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variant: Mapped[int] = mapped_column(Integer, nullable=False)
    aspect_ratio: Mapped[AspectRatioEnum] = mapped_column(
        Enum(AspectRatioEnum, name="aspect_ratio", values_callable=_enum_values), nullable=False
    )
    drive_file_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    drive_file_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_image_hash: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_video_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    creative_type: Mapped[MediaKindEnum] = mapped_column(
        Enum(MediaKindEnum, name="media_kind"), nullable=False
    )
    upload_status: Mapped[UploadStatusEnum] = mapped_column(
        Enum(UploadStatusEnum, name="upload_status"),
        nullable=False,
        server_default=UploadStatusEnum.pending.value,
    )
    upload_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    uploaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def media(self) -> Optional[MediaRef]:
        if self.creative_type == MediaKindEnum.VIDEO:
            return VideoRef(self.meta_video_id) if self.meta_video_id else None
        return ImageRef(self.meta_image_hash) if self.meta_image_hash else None


class MetaAdRecord(Base):
    __tablename__ = "meta_ads"
    __table_args__ = (
        UniqueConstraint(
            "package_id", "variant", "meta_adset_id", name="uq_meta_ads_package_variant_adset"
        ),
        sa.Index("idx_meta_ads_package", "package_id"),
        sa.Index("idx_meta_ads_meta_adset", "meta_adset_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("packages.id", ondelete="CASCADE"), nullable=False)
    tc_package_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variant: Mapped[int] = mapped_column(Integer, nullable=False)
    meta_ad_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    meta_adset_id: Mapped[str] = mapped_column(Text, nullable=False)
    meta_campaign_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_creative_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ad_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[AdStatusEnum] = mapped_column(
        Enum(AdStatusEnum, name="meta_ad_status"),
        nullable=False,
        server_default=AdStatusEnum.PAUSED.value,
    )
    meta_status: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    creative_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("meta_creatives.id", ondelete="SET NULL"), nullable=True
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
