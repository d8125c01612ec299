from adpublisher.schemas.meta_ads import (
    AdRefreshTarget,
    AdStatusUpdateRequest,
    BulkAdStatusRequest,
    CompleteEvent,
    CreateAdsRequest,
    CreatedEvent,
    CreatingEvent,
    CreativesReport,
    DeleteAdsRequest,
    ErrorEvent,
    MetaAdRead,
    PackageAdsRequest,
    ProgressEvent,
    SyncAdsRequest,
    UpdateAdsRequest,
    UpdatedEvent,
    UpdatingEvent,
)

__all__ = [
    "AdRefreshTarget",
    "AdStatusUpdateRequest",
    "BulkAdStatusRequest",
    "CompleteEvent",
    "CreateAdsRequest",
    "CreatedEvent",
    "CreatingEvent",
    "CreativesReport",
    "DeleteAdsRequest",
    "ErrorEvent",
    "MetaAdRead",
    "PackageAdsRequest",
    "ProgressEvent",
    "SyncAdsRequest",
    "UpdateAdsRequest",
    "UpdatedEvent",
    "UpdatingEvent",
]
