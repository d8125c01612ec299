from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Literal, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adpublisher.config import settings
from adpublisher.db.enums import AspectRatioEnum, MediaKindEnum, UploadStatusEnum
from adpublisher.db.models import MetaCreative, Package
from adpublisher.db.repositories.creatives import CreativeLedgerRepository
from adpublisher.domain.creatives import MediaRef
from adpublisher.schemas.meta_ads import (
    CreatingEvent,
    CreativesReport,
    CreativeStatusRead,
    ErrorData,
    ErrorEvent,
    StepData,
    UpdatingEvent,
)
from adpublisher.services.ad_platform import MetaAdsPlatform
from adpublisher.services.drive_assets import DriveAssetStore, DriveAssetStoreError, StoreAsset
from adpublisher.services.media_validation import MediaValidationError, check_size, validate_media
from adpublisher.services.meta_ads import MetaAdsError

logger = logging.getLogger(__name__)

StepType = Literal["creating", "updating"]
CreativeKey = tuple[int, AspectRatioEnum]

_RETRYABLE = (DriveAssetStoreError, MetaAdsError)


def needs_upload(asset: StoreAsset, entry: Optional[MetaCreative]) -> bool:
    if entry is None:
        return True
    if not entry.drive_file_id:
        return True
    return entry.drive_file_id != asset.file_id


@dataclass
class ReconcileResult:
    entries: dict[CreativeKey, MetaCreative] = field(default_factory=dict)
    uploaded: list[MetaCreative] = field(default_factory=list)
    failed: dict[CreativeKey, str] = field(default_factory=dict)
    asset_store_error: Optional[str] = None

    def entry(self, variant: int, aspect_ratio: AspectRatioEnum) -> Optional[MetaCreative]:
        return self.entries.get((variant, AspectRatioEnum(aspect_ratio)))

    def upload_failed(self, variant: int, aspect_ratio: AspectRatioEnum) -> bool:
        return (variant, AspectRatioEnum(aspect_ratio)) in self.failed


class CreativeReconciler:
    """
    Brings the creative ledger of one package in line with its Drive folder.

    Only assets whose Drive file id differs from the stored one are uploaded.
    A failed upload leaves the stored row untouched and takes the key out of the
    ready set for this pass; it never stops the remaining uploads.
    """

    def __init__(
        self,
        session: Session,
        *,
        asset_store: DriveAssetStore,
        platform: MetaAdsPlatform,
        emit: Callable[[object], object],
        upload_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = CreativeLedgerRepository(session)
        self.asset_store = asset_store
        self.platform = platform
        self.emit = emit
        self.upload_delay = settings.CREATIVE_UPLOAD_DELAY_SECONDS if upload_delay is None else upload_delay
        self.max_attempts = max(1, settings.CREATIVE_UPLOAD_MAX_ATTEMPTS if max_attempts is None else max_attempts)
        self.retry_base_seconds = (
            settings.CREATIVE_UPLOAD_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        )
        self.sleep = sleep

    def _step(self, step_type: StepType, package: Package, step: str, variant: Optional[int] = None) -> None:
        data = StepData(package_id=package.id, variant=variant, step=step)
        event = CreatingEvent(data=data) if step_type == "creating" else UpdatingEvent(data=data)
        self.emit(event)

    def _upload_once(self, asset: StoreAsset) -> MediaRef:
        if asset.size is not None:
            check_size(asset.size, file_name=asset.file_name, media_kind=asset.media_kind)
        content = self.asset_store.download(asset)
        validate_media(content, file_name=asset.file_name, media_kind=asset.media_kind)
        if asset.media_kind == MediaKindEnum.VIDEO:
            return self.platform.upload_video(
                filename=asset.file_name, content=content, content_type=asset.mime_type
            )
        return self.platform.upload_image(filename=asset.file_name, content=content, content_type=asset.mime_type)

    def _upload_with_retry(self, asset: StoreAsset) -> MediaRef:
        attempt = 0
        while True:
            try:
                return self._upload_once(asset)
            except _RETRYABLE as exc:
                if attempt >= self.max_attempts - 1:
                    raise
                delay = self.retry_base_seconds * (2**attempt)
                attempt += 1
                logger.warning(
                    "reconcile.upload_retry",
                    extra={
                        "file_id": asset.file_id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                self.sleep(delay)

    def _list_assets(self, package: Package, step_type: StepType) -> tuple[list[StoreAsset], Optional[str]]:
        try:
            # Never from cache: a file replaced in Drive must be seen by this pass.
            return self.asset_store.list_assets(package.tc_package_id, fresh=True), None
        except DriveAssetStoreError as exc:
            logger.warning(
                "reconcile.asset_store_unavailable",
                extra={"package_id": package.id, "error": str(exc)},
            )
            self._step(step_type, package, "Could not read Drive, using stored creatives")
            return [], str(exc)

    def reconcile(
        self,
        package: Package,
        *,
        variants: Optional[Iterable[int]] = None,
        step_type: StepType = "creating",
    ) -> ReconcileResult:
        scope: Optional[set[int]] = set(variants) if variants is not None else None
        self._step(step_type, package, "Checking for updated creatives in Drive...")

        assets, store_error = self._list_assets(package, step_type)
        stored = self.ledger.list_uploaded(package.id, variants=sorted(scope) if scope is not None else None)
        if scope is not None:
            assets = [asset for asset in assets if asset.variant in scope]

        result = ReconcileResult(asset_store_error=store_error)
        for entry in stored:
            result.entries[(entry.variant, AspectRatioEnum(entry.aspect_ratio))] = entry

        pending = [
            asset
            for asset in assets
            if needs_upload(asset, result.entries.get((asset.variant, asset.aspect_ratio)))
        ]
        if not pending:
            return result

        self._step(step_type, package, f"Uploading {len(pending)} new or changed creative(s) to Meta")
        for index, asset in enumerate(pending):
            if index:
                self.sleep(self.upload_delay)
            self._reconcile_asset(package, asset, result, step_type)
        return result

    def _reconcile_asset(
        self, package: Package, asset: StoreAsset, result: ReconcileResult, step_type: StepType
    ) -> None:
        key = (asset.variant, asset.aspect_ratio)
        label = f"V{asset.variant} {asset.aspect_ratio.value}"
        reason = "new file" if key not in result.entries else "file changed"
        self._step(step_type, package, f"Uploading {label} to Meta ({reason})...", asset.variant)

        attempt = self.ledger.start_upload(
            package_id=package.id,
            variant=asset.variant,
            aspect_ratio=asset.aspect_ratio,
            drive_file_id=asset.file_id,
        )
        try:
            media = self._upload_with_retry(asset)
        except (DriveAssetStoreError, MetaAdsError, MediaValidationError) as exc:
            attempt.fail(str(exc))
            self._record_failure(package, asset, result, str(exc))
            return

        attempt.succeed(media)
        try:
            record = self.ledger.record_upload(
                attempt, tc_package_id=package.tc_package_id, drive_file_name=asset.file_name
            )
        except SQLAlchemyError:
            logger.exception("reconcile.ledger_write_failed", extra={"package_id": package.id})
            self._record_failure(package, asset, result, "Could not save the uploaded creative")
            return

        result.entries[key] = record
        result.uploaded.append(record)
        self._step(step_type, package, f"{label} uploaded successfully", asset.variant)

    def _record_failure(
        self, package: Package, asset: StoreAsset, result: ReconcileResult, message: str
    ) -> None:
        key = (asset.variant, asset.aspect_ratio)
        result.failed[key] = message
        # A stale row must not be reused once its replacement failed to upload.
        result.entries.pop(key, None)
        logger.warning(
            "reconcile.upload_failed",
            extra={
                "package_id": package.id,
                "variant": asset.variant,
                "aspect_ratio": asset.aspect_ratio.value,
                "error": message,
            },
        )
        self.emit(
            ErrorEvent(
                data=ErrorData(
                    package_id=package.id,
                    variant=asset.variant,
                    aspect_ratio=asset.aspect_ratio.value,
                    error=f"Failed to upload V{asset.variant} {asset.aspect_ratio.value}: {message}",
                )
            )
        )


def creative_drift_report(
    session: Session, *, asset_store: DriveAssetStore, package: Package
) -> CreativesReport:
    """Merge the Drive listing with the ledger per (variant, aspect ratio) and flag drift."""
    store_error: Optional[str] = None
    try:
        assets = asset_store.list_assets(package.tc_package_id)
    except DriveAssetStoreError as exc:
        store_error = str(exc)
        assets = []

    rows: dict[CreativeKey, CreativeStatusRead] = {}
    current_ids: dict[CreativeKey, str] = {}
    for asset in assets:
        key = (asset.variant, asset.aspect_ratio)
        current_ids[key] = asset.file_id
        rows[key] = CreativeStatusRead(
            variant=asset.variant,
            aspect_ratio=asset.aspect_ratio.value,
            creative_type=asset.media_kind.value,
            drive_file_id=asset.file_id,
            drive_file_id_current=asset.file_id,
            upload_status=UploadStatusEnum.pending.value,
            is_new=True,
        )

    for entry in CreativeLedgerRepository(session).list_for_package(package.id):
        key = (entry.variant, AspectRatioEnum(entry.aspect_ratio))
        current = current_ids.get(key)
        rows[key] = CreativeStatusRead(
            id=entry.id,
            variant=entry.variant,
            aspect_ratio=key[1].value,
            creative_type=entry.creative_type.value,
            drive_file_id=entry.drive_file_id or current,
            drive_file_id_current=current,
            upload_status=entry.upload_status.value,
            meta_image_hash=entry.meta_image_hash,
            meta_video_id=entry.meta_video_id,
            uploaded_at=entry.uploaded_at,
            has_changes=bool(entry.drive_file_id and current and entry.drive_file_id != current),
            is_new=False,
        )

    creatives = [rows[key] for key in sorted(rows, key=lambda k: (k[0], k[1].value))]
    return CreativesReport(
        package_id=package.id,
        tc_package_id=package.tc_package_id,
        creatives=creatives,
        changed_count=sum(1 for row in creatives if row.has_changes),
        new_count=sum(1 for row in creatives if row.is_new),
        asset_store_error=store_error,
    )
