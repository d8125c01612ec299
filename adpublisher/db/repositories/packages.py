from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from adpublisher.db.enums import AdStatusEnum, MarketingStatusEnum
from adpublisher.db.models import MetaAdRecord, Package


class PackagesRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, package_id: int) -> Optional[Package]:
        return self.session.get(Package, package_id)

    def count_live_ads(self, package_id: int) -> int:
        stmt = select(func.count(MetaAdRecord.id)).where(
            MetaAdRecord.package_id == package_id,
            MetaAdRecord.status != AdStatusEnum.DELETED,
        )
        return int(self.session.scalar(stmt) or 0)

    def refresh_ad_counts(
        self,
        package_id: int,
        *,
        active_count: Optional[int] = None,
        mark_active: bool = False,
    ) -> int:
        """
        Recompute `ads_created_count` from a live count of non-deleted ads.

        The counter is never incremented in place so that ads deleted out of band
        are reflected on the next run.
        """
        created = self.count_live_ads(package_id)
        values: dict = {
            "ads_created_count": created,
            "updated_at": datetime.now(timezone.utc),
        }
        if active_count is not None:
            values["ads_active_count"] = active_count
        if mark_active and created > 0:
            values["marketing_status"] = MarketingStatusEnum.active
        self.session.execute(update(Package).where(Package.id == package_id).values(**values))
        self.session.commit()
        return created
