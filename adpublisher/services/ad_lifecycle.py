from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from adpublisher.db.enums import AdStatusEnum
from adpublisher.db.models import MetaAdRecord
from adpublisher.db.repositories.ads import MetaAdsRepository
from adpublisher.db.repositories.packages import PackagesRepository
from adpublisher.services.ad_platform import MetaAdsPlatform
from adpublisher.services.meta_ads import MetaAdsError

logger = logging.getLogger(__name__)

_DELETED_EFFECTIVE_STATUSES = {"DELETED", "ARCHIVED"}


def local_status(effective_status: Optional[str]) -> AdStatusEnum:
    """Collapse Meta's effective_status (ADSET_PAUSED, PENDING_REVIEW, ...) onto the stored status."""
    if effective_status == AdStatusEnum.ACTIVE.value:
        return AdStatusEnum.ACTIVE
    if effective_status in _DELETED_EFFECTIVE_STATUSES:
        return AdStatusEnum.DELETED
    return AdStatusEnum.PAUSED


@dataclass
class SyncReport:
    synced_ads: list[dict[str, Any]] = field(default_factory=list)
    active_count: int = 0
    deleted_count: int = 0
    errors: int = 0


@dataclass
class BulkStatusReport:
    status: AdStatusEnum
    updated: int = 0
    errors: int = 0
    total: int = 0


class AdLifecycleService:
    """Status changes, deletions and existence checks for ads that were already published."""

    def __init__(self, session: Session, *, platform: Optional[MetaAdsPlatform]) -> None:
        self.session = session
        self.platform = platform
        self.ads = MetaAdsRepository(session)
        self.packages = PackagesRepository(session)

    def _require_platform(self) -> MetaAdsPlatform:
        if self.platform is None:
            raise RuntimeError("Meta platform is not configured.")
        return self.platform

    def set_status(self, meta_ad_id: str, status: AdStatusEnum) -> Optional[MetaAdRecord]:
        platform = self._require_platform()
        platform.update_ad_status(ad_id=meta_ad_id, status=status.value)
        record = self.ads.get_by_meta_ad_id(meta_ad_id)
        if record is not None:
            self.ads.set_status([record], status)
        return record

    def set_package_status(self, package_id: int, status: AdStatusEnum) -> BulkStatusReport:
        platform = self._require_platform()
        records = self.ads.list_for_package(package_id, include_deleted=False)
        report = BulkStatusReport(status=status, total=len(records))
        changed: list[MetaAdRecord] = []
        for record in records:
            try:
                platform.update_ad_status(ad_id=record.meta_ad_id, status=status.value)
            except MetaAdsError as exc:
                report.errors += 1
                logger.warning(
                    "ads.status_update_failed",
                    extra={"meta_ad_id": record.meta_ad_id, "error": str(exc)},
                )
                continue
            changed.append(record)
            report.updated += 1
        self.ads.set_status(changed, status)
        return report

    def delete_ads(self, ad_ids: Iterable[int], *, delete_from_meta: bool = False) -> dict[str, Any]:
        records = self.ads.list_by_ids(ad_ids)
        meta_errors: list[dict[str, str]] = []
        if delete_from_meta:
            platform = self._require_platform()
            for record in records:
                try:
                    platform.delete_ad(record.meta_ad_id)
                except MetaAdsError as exc:
                    # Already gone at Meta or refused; the row is removed either way.
                    logger.warning(
                        "ads.meta_delete_failed",
                        extra={"meta_ad_id": record.meta_ad_id, "error": str(exc)},
                    )
                    meta_errors.append({"meta_ad_id": record.meta_ad_id, "error": str(exc)})

        package_ids = sorted({record.package_id for record in records})
        deleted = self.ads.delete_many(record.id for record in records)
        counts = {
            package_id: self.packages.refresh_ad_counts(package_id) for package_id in package_ids
        }
        return {
            "deleted": deleted,
            "meta_errors": meta_errors,
            "ads_created_count": counts,
        }

    def sync(self, *, package_id: Optional[int] = None, adset_id: Optional[str] = None) -> SyncReport:
        """
        Check every stored ad in scope against Meta.

        Ads Meta no longer knows are marked DELETED; the rest take Meta's effective
        status. A package-scoped sync also refreshes the package counters.
        """
        platform = self._require_platform()
        if package_id is not None:
            records = self.ads.list_for_package(package_id)
            if adset_id:
                records = [record for record in records if record.meta_adset_id == adset_id]
        elif adset_id:
            records = self.ads.list_for_adset(adset_id)
        else:
            raise ValueError("package_id or adset_id is required")

        report = SyncReport()
        for record in records:
            try:
                remote = platform.get_ad(record.meta_ad_id)
            except MetaAdsError as exc:
                report.errors += 1
                logger.warning(
                    "ads.sync_failed", extra={"meta_ad_id": record.meta_ad_id, "error": str(exc)}
                )
                continue

            if remote is None:
                report.deleted_count += 1
                self.ads.mark_synced(record, status=AdStatusEnum.DELETED, meta_status=AdStatusEnum.DELETED.value)
            else:
                report.active_count += 1
                self.ads.mark_synced(
                    record, status=local_status(remote.effective_status), meta_status=remote.effective_status
                )
            report.synced_ads.append(
                {
                    "id": record.id,
                    "variant": record.variant,
                    "meta_ad_id": record.meta_ad_id,
                    "meta_adset_id": record.meta_adset_id,
                    "ad_name": record.ad_name,
                    "status": record.status.value,
                    "meta_status": record.meta_status,
                    "exists_in_meta": remote is not None,
                    "last_synced_at": record.last_synced_at.isoformat() if record.last_synced_at else None,
                }
            )

        if package_id is not None:
            self.packages.refresh_ad_counts(package_id, active_count=report.active_count)
        return report
