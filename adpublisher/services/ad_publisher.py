from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adpublisher.config import settings
from adpublisher.db.enums import AdStatusEnum, AspectRatioEnum
from adpublisher.db.models import MetaAdCopy, MetaCreative, Package
from adpublisher.db.repositories.ads import MetaAdsRepository
from adpublisher.db.repositories.copies import AdCopiesRepository
from adpublisher.db.repositories.creatives import CreativeLedgerRepository
from adpublisher.db.repositories.packages import PackagesRepository
from adpublisher.schemas.meta_ads import (
    AdRefreshTarget,
    CompleteData,
    CompleteEvent,
    CreatedData,
    CreatedEvent,
    CreatingEvent,
    ErrorData,
    ErrorEvent,
    PackageAdsRequest,
    StepData,
    UpdatedData,
    UpdatedEvent,
    UpdatingEvent,
)
from adpublisher.services.ad_composer import AdComposer
from adpublisher.services.ad_platform import MetaAdsPlatform
from adpublisher.services.creative_reconciler import CreativeReconciler, ReconcileResult
from adpublisher.services.drive_assets import DriveAssetStore
from adpublisher.services.meta_ads import MetaAdsError

logger = logging.getLogger(__name__)

FEED = AspectRatioEnum.feed
VERTICAL = AspectRatioEnum.vertical


@dataclass
class PublishSummary:
    succeeded: int = 0
    errors: int = 0


def _error_message(exc: Exception) -> str:
    if isinstance(exc, MetaAdsError) and exc.graph_message:
        return f"{exc} {exc.graph_message}"
    if isinstance(exc, SQLAlchemyError):
        # Statement and parameters stay in the log.
        return "Database error while saving ads"
    return str(exc) or exc.__class__.__name__


class PackageBusyError(RuntimeError):
    pass


class PackageLocks:
    """Process-wide registry allowing one reconcile-and-publish pass per package at a time."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def _lock_for(self, package_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(package_id, threading.Lock())

    @contextmanager
    def hold(self, package_id: int) -> Iterator[None]:
        lock = self._lock_for(package_id)
        if not lock.acquire(blocking=False):
            raise PackageBusyError("Another run is already publishing this package, try again when it finishes")
        try:
            yield
        finally:
            lock.release()


package_locks = PackageLocks()


def refresh_targets_for_package(
    session: Session, package_id: int, *, force_reupload: Optional[bool] = None
) -> list[AdRefreshTarget]:
    """Expand a package into refresh targets for all its non-deleted ads; forced unless told otherwise."""
    force = force_reupload is not False
    return [
        AdRefreshTarget(
            id=record.id,
            meta_ad_id=record.meta_ad_id,
            package_id=record.package_id,
            variant=record.variant,
            force_reupload=force,
        )
        for record in MetaAdsRepository(session).list_for_package(package_id, include_deleted=False)
    ]


class AdPublisher:
    """
    Creates or refreshes Meta ads for packages, one package and one variant at a time.

    Every failure becomes an `error` event and a counted error; the run always ends
    with a `complete` event. Package ad counters are recomputed from live rows after
    each package, whether or not its ads succeeded.
    """

    def __init__(
        self,
        session: Session,
        *,
        asset_store: DriveAssetStore,
        platform: MetaAdsPlatform,
        emit: Callable[[object], object],
        reconciler: Optional[CreativeReconciler] = None,
        composer: Optional[AdComposer] = None,
        locks: Optional[PackageLocks] = None,
        publish_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.platform = platform
        self.emit = emit
        self.packages = PackagesRepository(session)
        self.copies = AdCopiesRepository(session)
        self.ledger = CreativeLedgerRepository(session)
        self.ads = MetaAdsRepository(session)
        self.reconciler = reconciler or CreativeReconciler(
            session, asset_store=asset_store, platform=platform, emit=emit, sleep=sleep
        )
        self.composer = composer or AdComposer(platform)
        self.locks = locks or package_locks
        self.publish_delay = settings.AD_PUBLISH_DELAY_SECONDS if publish_delay is None else publish_delay
        self.sleep = sleep

    # events

    def _creating(self, package_id: int, step: str, variant: Optional[int] = None) -> None:
        self.emit(CreatingEvent(data=StepData(package_id=package_id, variant=variant, step=step)))

    def _updating(self, package_id: int, step: str, variant: Optional[int] = None) -> None:
        self.emit(UpdatingEvent(data=StepData(package_id=package_id, variant=variant, step=step)))

    def _error(
        self,
        summary: PublishSummary,
        message: str,
        *,
        package_id: Optional[int] = None,
        variant: Optional[int] = None,
        meta_ad_id: Optional[str] = None,
        weight: int = 1,
    ) -> None:
        summary.errors += weight
        self.emit(
            ErrorEvent(
                data=ErrorData(package_id=package_id, variant=variant, meta_ad_id=meta_ad_id, error=message)
            )
        )

    def _pause(self, index: int) -> None:
        if index and self.publish_delay > 0:
            self.sleep(self.publish_delay)

    def _refresh_counts(self, package_id: int, *, mark_active: bool) -> None:
        try:
            self.packages.refresh_ad_counts(package_id, mark_active=mark_active)
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("publish.refresh_counts_failed", extra={"package_id": package_id})

    # create path

    def create_ads(
        self, requests: Sequence[PackageAdsRequest], *, campaign_id: Optional[str] = None
    ) -> PublishSummary:
        summary = PublishSummary()
        try:
            for request in requests:
                try:
                    with self.locks.hold(request.package_id):
                        self._create_for_package(request, campaign_id, summary)
                except PackageBusyError as exc:
                    logger.warning("publish.package_busy", extra={"package_id": request.package_id})
                    self._error(summary, str(exc), package_id=request.package_id)
                except Exception as exc:  # noqa: BLE001
                    self.session.rollback()
                    logger.exception("publish.create_package_failed", extra={"package_id": request.package_id})
                    self._error(summary, _error_message(exc), package_id=request.package_id)
        finally:
            self.emit(CompleteEvent(data=CompleteData(created=summary.succeeded, errors=summary.errors)))
        return summary

    def _candidate_variants(self, request: PackageAdsRequest, result: ReconcileResult) -> list[int]:
        if request.variants:
            return sorted(set(request.variants))
        variants = {variant for variant, _ in result.entries}
        variants.update(variant for variant, _ in result.failed)
        return sorted(variants)

    def _create_for_package(
        self, request: PackageAdsRequest, campaign_id: Optional[str], summary: PublishSummary
    ) -> None:
        package = self.packages.get(request.package_id)
        if package is None:
            self._error(summary, "Package not found", package_id=request.package_id)
            return

        try:
            self._creating(package.id, "Fetching copies and creatives")
            copies = self.copies.list_for_package(package.id)
            if not copies:
                self._error(summary, "No copies found for this package", package_id=package.id)
                return

            result = self.reconciler.reconcile(package, variants=request.variants or None, step_type="creating")
            summary.errors += len(result.failed)
            ready: list[int] = []
            for variant in self._candidate_variants(request, result):
                if result.entry(variant, FEED) is not None:
                    ready.append(variant)
                elif not result.upload_failed(variant, FEED):
                    self._error(
                        summary,
                        f"No 4x5 creative found for V{variant} (required for feed placements)",
                        package_id=package.id,
                        variant=variant,
                    )
            if not ready:
                if not result.entries and not result.failed and not request.variants:
                    self._error(
                        summary, "No 4x5 creatives found (required for feed placements)", package_id=package.id
                    )
                return

            self._creating(
                package.id,
                f"Found {len(ready)} creative variant(s), creating {len(ready)} ad(s) "
                f"with {len(copies)} copies each",
            )

            target_campaign_id = campaign_id
            if not target_campaign_id:
                try:
                    target_campaign_id = self.platform.get_adset_campaign_id(request.meta_adset_id)
                except MetaAdsError as exc:
                    self._error(
                        summary,
                        f"Ad set {request.meta_adset_id} could not be read: {_error_message(exc)}",
                        package_id=package.id,
                    )
                    return

            for index, variant in enumerate(ready):
                self._pause(index)
                try:
                    self._create_variant_ad(
                        package,
                        variant,
                        result=result,
                        copies=copies,
                        adset_id=request.meta_adset_id,
                        campaign_id=target_campaign_id,
                    )
                    summary.succeeded += 1
                except Exception as exc:  # noqa: BLE001
                    self.session.rollback()
                    logger.exception(
                        "publish.create_ad_failed", extra={"package_id": package.id, "variant": variant}
                    )
                    self._error(summary, _error_message(exc), package_id=package.id, variant=variant)
        finally:
            self._refresh_counts(request.package_id, mark_active=True)

    def _create_variant_ad(
        self,
        package: Package,
        variant: int,
        *,
        result: ReconcileResult,
        copies: Sequence[MetaAdCopy],
        adset_id: str,
        campaign_id: Optional[str],
    ) -> None:
        vertical = result.entry(variant, VERTICAL)
        self._creating(
            package.id,
            f"Creating ad creative for V{variant} ({'4x5 + 9x16' if vertical else '4x5 only'})",
            variant,
        )
        composed = self.composer.compose(
            package,
            variant,
            feed_entry=result.entry(variant, FEED),
            vertical_entry=vertical,
            copies=copies,
        )
        self._creating(package.id, f"Creative created ({composed.creative_id}), creating ad in AdSet", variant)

        status = AdStatusEnum(settings.META_DEFAULT_AD_STATUS)
        meta_ad_id = self.platform.create_ad(
            name=composed.name,
            adset_id=adset_id,
            creative_id=composed.creative_id,
            status=status.value,
        )
        self.ads.upsert(
            package_id=package.id,
            variant=variant,
            meta_adset_id=adset_id,
            tc_package_id=package.tc_package_id,
            meta_ad_id=meta_ad_id,
            meta_campaign_id=campaign_id,
            meta_creative_id=composed.creative_id,
            ad_name=composed.name,
            status=status,
            creative_id=composed.feed_entry.id,
            published_at=datetime.now(timezone.utc),
        )
        logger.info(
            "publish.ad_created",
            extra={"package_id": package.id, "variant": variant, "meta_ad_id": meta_ad_id},
        )
        self.emit(
            CreatedEvent(
                data=CreatedData(
                    package_id=package.id,
                    creative_variant=variant,
                    meta_ad_id=meta_ad_id,
                    meta_adset_id=adset_id,
                    meta_creative_id=composed.creative_id,
                    copies_count=composed.copies_count,
                    has_9x16=composed.has_9x16,
                )
            )
        )

    # update path

    def update_ads(self, targets: Sequence[AdRefreshTarget]) -> PublishSummary:
        summary = PublishSummary()
        try:
            by_package: dict[int, list[AdRefreshTarget]] = {}
            for target in targets:
                by_package.setdefault(target.package_id, []).append(target)
            for package_id, package_targets in by_package.items():
                try:
                    with self.locks.hold(package_id):
                        self._update_for_package(package_id, package_targets, summary)
                except PackageBusyError as exc:
                    logger.warning("publish.package_busy", extra={"package_id": package_id})
                    self._error(summary, str(exc), package_id=package_id, weight=len(package_targets))
                except Exception as exc:  # noqa: BLE001
                    self.session.rollback()
                    logger.exception("publish.update_package_failed", extra={"package_id": package_id})
                    self._error(summary, _error_message(exc), package_id=package_id, weight=len(package_targets))
        finally:
            self.emit(CompleteEvent(data=CompleteData(updated=summary.succeeded, errors=summary.errors)))
        return summary

    def _current_entries(
        self, package_id: int, variants: Iterable[int]
    ) -> dict[tuple[int, AspectRatioEnum], MetaCreative]:
        return {
            (entry.variant, AspectRatioEnum(entry.aspect_ratio)): entry
            for entry in self.ledger.list_uploaded(package_id, variants=variants)
        }

    def _update_for_package(
        self, package_id: int, targets: Sequence[AdRefreshTarget], summary: PublishSummary
    ) -> None:
        package = self.packages.get(package_id)
        if package is None:
            self._error(summary, "Package not found", package_id=package_id, weight=len(targets))
            return

        try:
            self._updating(package.id, "Fetching copies and creatives")
            copies = self.copies.list_for_package(package.id)
            if not copies:
                self._error(
                    summary, "No copies found for this package", package_id=package.id, weight=len(targets)
                )
                return

            stored = self._current_entries(package.id, sorted({t.variant for t in targets}))
            refresh = sorted(
                {
                    target.variant
                    for target in targets
                    if target.force_reupload or (target.variant, FEED) not in stored
                }
            )
            result: Optional[ReconcileResult] = None
            if refresh:
                result = self.reconciler.reconcile(package, variants=refresh, step_type="updating")
                summary.errors += len(result.failed)

            for index, target in enumerate(targets):
                self._pause(index)
                self._updating(package.id, f"Processing ad V{target.variant}", target.variant)
                if result is not None and target.variant in refresh:
                    feed = result.entry(target.variant, FEED)
                    vertical = result.entry(target.variant, VERTICAL)
                    if feed is None and result.upload_failed(target.variant, FEED):
                        continue
                else:
                    self._updating(package.id, "Using uploaded creative from database", target.variant)
                    feed = stored.get((target.variant, FEED))
                    vertical = stored.get((target.variant, VERTICAL))
                try:
                    self._update_ad(package, target, feed=feed, vertical=vertical, copies=copies)
                    summary.succeeded += 1
                except Exception as exc:  # noqa: BLE001
                    self.session.rollback()
                    logger.exception(
                        "publish.update_ad_failed",
                        extra={"package_id": package.id, "meta_ad_id": target.meta_ad_id},
                    )
                    self._error(
                        summary,
                        _error_message(exc),
                        package_id=package.id,
                        variant=target.variant,
                        meta_ad_id=target.meta_ad_id,
                    )
        finally:
            self._refresh_counts(package_id, mark_active=False)

    def _update_ad(
        self,
        package: Package,
        target: AdRefreshTarget,
        *,
        feed: Optional[MetaCreative],
        vertical: Optional[MetaCreative],
        copies: Sequence[MetaAdCopy],
    ) -> None:
        record = self.ads.get(target.id)
        if record is None or record.meta_ad_id != target.meta_ad_id or record.package_id != package.id:
            raise LookupError(f"Ad {target.meta_ad_id} not found for this package")
        if record.variant != target.variant:
            raise LookupError(f"Ad {target.meta_ad_id} belongs to V{record.variant}, not V{target.variant}")

        composed = self.composer.compose(
            package, target.variant, feed_entry=feed, vertical_entry=vertical, copies=copies
        )
        self._updating(
            package.id, f"New creative created ({composed.creative_id}), updating ad", target.variant
        )
        self.platform.update_ad_creative(ad_id=record.meta_ad_id, creative_id=composed.creative_id)
        self.ads.update_creative(
            record, meta_creative_id=composed.creative_id, creative_id=composed.feed_entry.id
        )
        logger.info(
            "publish.ad_updated",
            extra={"package_id": package.id, "meta_ad_id": record.meta_ad_id, "creative_id": composed.creative_id},
        )
        self.emit(
            UpdatedEvent(
                data=UpdatedData(
                    package_id=package.id,
                    variant=target.variant,
                    meta_ad_id=record.meta_ad_id,
                    new_creative_id=composed.creative_id,
                )
            )
        )
