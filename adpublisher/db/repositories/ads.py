from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from adpublisher.db.enums import AdStatusEnum
from adpublisher.db.models import MetaAdRecord


class MetaAdsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, ad_id: int) -> Optional[MetaAdRecord]:
        return self.session.get(MetaAdRecord, ad_id)

    def get_by_meta_ad_id(self, meta_ad_id: str) -> Optional[MetaAdRecord]:
        stmt = select(MetaAdRecord).where(MetaAdRecord.meta_ad_id == meta_ad_id)
        return self.session.scalars(stmt).first()

    def get_by_key(
        self, *, package_id: int, variant: int, meta_adset_id: str
    ) -> Optional[MetaAdRecord]:
        stmt = select(MetaAdRecord).where(
            MetaAdRecord.package_id == package_id,
            MetaAdRecord.variant == variant,
            MetaAdRecord.meta_adset_id == meta_adset_id,
        )
        return self.session.scalars(stmt).first()

    def list_for_package(
        self, package_id: int, *, include_deleted: bool = True
    ) -> list[MetaAdRecord]:
        stmt = select(MetaAdRecord).where(MetaAdRecord.package_id == package_id)
        if not include_deleted:
            stmt = stmt.where(MetaAdRecord.status != AdStatusEnum.DELETED)
        stmt = stmt.order_by(MetaAdRecord.variant.asc(), MetaAdRecord.id.asc())
        return list(self.session.scalars(stmt).all())

    def list_for_tc_package(self, tc_package_id: int) -> list[MetaAdRecord]:
        stmt = (
            select(MetaAdRecord)
            .where(MetaAdRecord.tc_package_id == tc_package_id)
            .order_by(MetaAdRecord.variant.asc(), MetaAdRecord.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def list_for_adset(self, meta_adset_id: str) -> list[MetaAdRecord]:
        stmt = (
            select(MetaAdRecord)
            .where(MetaAdRecord.meta_adset_id == meta_adset_id)
            .order_by(MetaAdRecord.package_id.asc(), MetaAdRecord.variant.asc())
        )
        return list(self.session.scalars(stmt).all())

    def list_by_ids(self, ad_ids: Iterable[int]) -> list[MetaAdRecord]:
        ids = list(ad_ids)
        if not ids:
            return []
        stmt = select(MetaAdRecord).where(MetaAdRecord.id.in_(ids)).order_by(MetaAdRecord.id.asc())
        return list(self.session.scalars(stmt).all())

    def upsert(
        self,
        *,
        package_id: int,
        variant: int,
        meta_adset_id: str,
        **fields,
    ) -> MetaAdRecord:
        """Insert or replace the ad row keyed by (package, variant, ad set)."""
        now = datetime.now(timezone.utc)
        record = self.get_by_key(package_id=package_id, variant=variant, meta_adset_id=meta_adset_id)
        if record is None:
            record = MetaAdRecord(package_id=package_id, variant=variant, meta_adset_id=meta_adset_id)
            self.session.add(record)
        for key, value in fields.items():
            setattr(record, key, value)
        record.updated_at = now
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(record)
        return record

    def update_creative(
        self, record: MetaAdRecord, *, meta_creative_id: str, creative_id: Optional[int] = None
    ) -> MetaAdRecord:
        record.meta_creative_id = meta_creative_id
        if creative_id is not None:
            record.creative_id = creative_id
        record.updated_at = datetime.now(timezone.utc)
        self.session.commit()
        self.session.refresh(record)
        return record

    def set_status(self, records: Iterable[MetaAdRecord], status: AdStatusEnum) -> None:
        now = datetime.now(timezone.utc)
        for record in records:
            record.status = status
            record.updated_at = now
        self.session.commit()

    def mark_synced(
        self, record: MetaAdRecord, *, status: AdStatusEnum, meta_status: Optional[str]
    ) -> MetaAdRecord:
        now = datetime.now(timezone.utc)
        record.status = status
        record.meta_status = meta_status
        record.last_synced_at = now
        record.updated_at = now
        self.session.commit()
        return record

    def delete_many(self, ad_ids: Iterable[int]) -> int:
        ids = list(ad_ids)
        if not ids:
            return 0
        result = self.session.execute(delete(MetaAdRecord).where(MetaAdRecord.id.in_(ids)))
        self.session.commit()
        return int(result.rowcount or 0)
