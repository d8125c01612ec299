from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from adpublisher.db.enums import AspectRatioEnum, UploadStatusEnum
from adpublisher.db.models import MetaCreative
from adpublisher.domain.creatives import (
    ImageRef,
    InvalidUploadTransition,
    UploadAttempt,
    VideoRef,
)


class CreativeLedgerRepository:
    """Record of which Drive file is uploaded to Meta under each (package, variant, aspect ratio)."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(
        self, *, package_id: int, variant: int, aspect_ratio: AspectRatioEnum
    ) -> Optional[MetaCreative]:
        stmt = select(MetaCreative).where(
            MetaCreative.package_id == package_id,
            MetaCreative.variant == variant,
            MetaCreative.aspect_ratio == AspectRatioEnum(aspect_ratio),
        )
        return self.session.scalars(stmt).first()

    def list_for_package(self, package_id: int) -> list[MetaCreative]:
        stmt = (
            select(MetaCreative)
            .where(MetaCreative.package_id == package_id)
            .order_by(MetaCreative.variant.asc(), MetaCreative.aspect_ratio.asc())
        )
        return list(self.session.scalars(stmt).all())

    def list_uploaded(
        self, package_id: int, *, variants: Optional[Iterable[int]] = None
    ) -> list[MetaCreative]:
        stmt = select(MetaCreative).where(
            MetaCreative.package_id == package_id,
            MetaCreative.upload_status == UploadStatusEnum.uploaded,
        )
        if variants is not None:
            stmt = stmt.where(MetaCreative.variant.in_(list(variants)))
        stmt = stmt.order_by(MetaCreative.variant.asc(), MetaCreative.aspect_ratio.asc())
        return list(self.session.scalars(stmt).all())

    def start_upload(
        self,
        *,
        package_id: int,
        variant: int,
        aspect_ratio: AspectRatioEnum,
        drive_file_id: str,
    ) -> UploadAttempt:
        existing = self.get(package_id=package_id, variant=variant, aspect_ratio=aspect_ratio)
        status = UploadStatusEnum.pending
        if existing is not None and existing.upload_status in (
            UploadStatusEnum.uploaded,
            UploadStatusEnum.error,
        ):
            status = existing.upload_status
        attempt = UploadAttempt(
            package_id=package_id,
            variant=variant,
            aspect_ratio=AspectRatioEnum(aspect_ratio),
            drive_file_id=drive_file_id,
            status=status,
        )
        attempt.begin()
        return attempt

    def record_upload(
        self,
        attempt: UploadAttempt,
        *,
        tc_package_id: int,
        drive_file_name: Optional[str] = None,
    ) -> MetaCreative:
        """
        Upsert the ledger row for a completed attempt.

        The Drive file id and the Meta identity are written in the same commit;
        attempts that did not reach `uploaded` are rejected and leave the row as is.
        """
        if attempt.status != UploadStatusEnum.uploaded or attempt.media is None:
            raise InvalidUploadTransition(current=attempt.status, target=UploadStatusEnum.uploaded)

        now = datetime.now(timezone.utc)
        media = attempt.media
        record = self.get(
            package_id=attempt.package_id,
            variant=attempt.variant,
            aspect_ratio=attempt.aspect_ratio,
        )
        if record is None:
            record = MetaCreative(
                package_id=attempt.package_id,
                tc_package_id=tc_package_id,
                variant=attempt.variant,
                aspect_ratio=attempt.aspect_ratio,
            )
            self.session.add(record)

        record.drive_file_id = attempt.drive_file_id
        record.drive_file_name = drive_file_name
        record.creative_type = media.kind
        record.meta_image_hash = media.hash if isinstance(media, ImageRef) else None
        record.meta_video_id = media.video_id if isinstance(media, VideoRef) else None
        record.upload_status = UploadStatusEnum.uploaded
        record.upload_error = None
        record.uploaded_at = now
        record.updated_at = now
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(record)
        return record
