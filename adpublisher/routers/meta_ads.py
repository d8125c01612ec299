from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from adpublisher.config import settings
from adpublisher.db.base import session_scope
from adpublisher.db.deps import get_session
from adpublisher.db.enums import AdStatusEnum
from adpublisher.db.repositories.ads import MetaAdsRepository
from adpublisher.db.repositories.packages import PackagesRepository
from adpublisher.schemas.meta_ads import (
    AdRefreshTarget,
    AdStatusUpdateRequest,
    BulkAdStatusRequest,
    CreateAdsRequest,
    CreativesReport,
    DeleteAdsRequest,
    MetaAdRead,
    SyncAdsRequest,
    UpdateAdsRequest,
    event_payload,
)
from adpublisher.services.ad_lifecycle import AdLifecycleService
from adpublisher.services.ad_platform import MetaAdsPlatform
from adpublisher.services.ad_publisher import AdPublisher, refresh_targets_for_package
from adpublisher.services.creative_reconciler import creative_drift_report
from adpublisher.services.drive_assets import DriveAssetStore, DriveAssetStoreConfigError
from adpublisher.services.meta_ads import MetaAdsConfigError, MetaAdsError
from adpublisher.services.progress import ProgressChannel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/meta", tags=["meta"])

_asset_store: Optional[DriveAssetStore] = None
_asset_store_lock = threading.Lock()


def _sse(data: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(data, separators=(',', ':'))}\n\n".encode("utf-8")


def _get_platform() -> MetaAdsPlatform:
    try:
        return MetaAdsPlatform.from_settings()
    except MetaAdsConfigError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


def _get_asset_store() -> DriveAssetStore:
    # Shared so the Drive listing cache survives across requests.
    global _asset_store
    with _asset_store_lock:
        if _asset_store is None:
            try:
                _asset_store = DriveAssetStore.from_settings()
            except DriveAssetStoreConfigError as exc:
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
                ) from exc
        return _asset_store


def _raise_meta_error(exc: MetaAdsError) -> None:
    status_code = exc.status_code or status.HTTP_502_BAD_GATEWAY
    detail: Any = {"message": str(exc)}
    if exc.error_payload is not None:
        detail = {"message": str(exc), "meta": exc.error_payload}
    raise HTTPException(status_code=status_code, detail=detail) from exc


def _stream_publisher(
    run: Callable[[AdPublisher], object],
    *,
    platform: MetaAdsPlatform,
    asset_store: DriveAssetStore,
    name: str,
) -> StreamingResponse:
    channel = ProgressChannel(maxsize=settings.PROGRESS_CHANNEL_BUFFER)

    def _work(progress: ProgressChannel) -> None:
        with session_scope() as session:
            publisher = AdPublisher(session, asset_store=asset_store, platform=platform, emit=progress.emit)
            run(publisher)

    channel.start(_work, name=name)

    def event_stream():
        try:
            for event in channel:
                yield _sse(event_payload(event))
        finally:
            # Client went away or the run finished; later events are dropped.
            channel.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/ads")
def create_ads(payload: CreateAdsRequest) -> StreamingResponse:
    if not payload.packages:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="packages array is required")
    platform = _get_platform()
    asset_store = _get_asset_store()
    return _stream_publisher(
        lambda publisher: publisher.create_ads(payload.packages, campaign_id=payload.campaign_id),
        platform=platform,
        asset_store=asset_store,
        name="meta-ads-create",
    )


@router.post("/ads/update")
def update_ads(payload: UpdateAdsRequest, session: Session = Depends(get_session)) -> StreamingResponse:
    targets: list[AdRefreshTarget]
    if payload.package_id is not None and not payload.ads:
        targets = refresh_targets_for_package(session, payload.package_id, force_reupload=payload.force_reupload)
        if not targets:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="No existing ads found for this package"
            )
    elif payload.ads:
        default_force = bool(payload.force_reupload)
        targets = [
            target.model_copy(
                update={
                    "force_reupload": default_force if target.force_reupload is None else target.force_reupload
                }
            )
            for target in payload.ads
        ]
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="package_id or ads is required")

    platform = _get_platform()
    asset_store = _get_asset_store()
    return _stream_publisher(
        lambda publisher: publisher.update_ads(targets),
        platform=platform,
        asset_store=asset_store,
        name="meta-ads-update",
    )


@router.get("/ads")
def list_ads(
    package_id: Optional[int] = Query(default=None),
    tc_package_id: Optional[int] = Query(default=None),
    session: Session = Depends(get_session),
) -> dict[str, list[MetaAdRead]]:
    repo = MetaAdsRepository(session)
    if package_id is not None:
        records = repo.list_for_package(package_id)
    elif tc_package_id is not None:
        records = repo.list_for_tc_package(tc_package_id)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="package_id or tc_package_id is required"
        )
    return {"ads": [MetaAdRead.model_validate(record) for record in records]}


@router.delete("/ads")
def delete_ads(payload: DeleteAdsRequest, session: Session = Depends(get_session)) -> dict[str, Any]:
    platform = _get_platform() if payload.delete_from_meta else None
    service = AdLifecycleService(session, platform=platform)
    result = service.delete_ads(payload.ad_ids, delete_from_meta=payload.delete_from_meta)
    return {"success": True, **result}


@router.patch("/ads/status")
def update_ad_status(payload: AdStatusUpdateRequest, session: Session = Depends(get_session)) -> dict[str, Any]:
    if MetaAdsRepository(session).get_by_meta_ad_id(payload.meta_ad_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Ad not found")
    service = AdLifecycleService(session, platform=_get_platform())
    try:
        service.set_status(payload.meta_ad_id, AdStatusEnum(payload.status))
    except MetaAdsError as exc:
        _raise_meta_error(exc)
    return {"success": True, "status": payload.status}


@router.post("/ads/status/bulk")
def update_package_ad_status(
    payload: BulkAdStatusRequest, session: Session = Depends(get_session)
) -> dict[str, Any]:
    if not MetaAdsRepository(session).list_for_package(payload.package_id, include_deleted=False):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No ads found for this package")
    service = AdLifecycleService(session, platform=_get_platform())
    report = service.set_package_status(payload.package_id, AdStatusEnum(payload.status))
    return {
        "success": True,
        "status": report.status.value,
        "updated": report.updated,
        "errors": report.errors,
        "total": report.total,
    }


@router.post("/ads/sync")
def sync_ads(payload: SyncAdsRequest, session: Session = Depends(get_session)) -> dict[str, Any]:
    if payload.package_id is None and not payload.adset_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="package_id or adset_id is required")
    service = AdLifecycleService(session, platform=_get_platform())
    report = service.sync(package_id=payload.package_id, adset_id=payload.adset_id)
    return {
        "synced_ads": report.synced_ads,
        "deleted_count": report.deleted_count,
        "active_count": report.active_count,
        "errors": report.errors,
    }


@router.get("/creatives/{package_id}", response_model=CreativesReport)
def get_package_creatives(package_id: int, session: Session = Depends(get_session)) -> CreativesReport:
    package = PackagesRepository(session).get(package_id)
    if package is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Package not found")
    return creative_drift_report(session, asset_store=_get_asset_store(), package=package)
