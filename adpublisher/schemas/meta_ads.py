from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from adpublisher.db.enums import AdStatusEnum

Variant = Annotated[int, Field(ge=1, le=5)]


class PackageAdsRequest(BaseModel):
    package_id: int
    meta_adset_id: str = Field(min_length=1)
    variants: Optional[list[Variant]] = None


class CreateAdsRequest(BaseModel):
    packages: list[PackageAdsRequest] = Field(default_factory=list)
    campaign_id: Optional[str] = None


class AdRefreshTarget(BaseModel):
    id: int
    meta_ad_id: str
    package_id: int
    variant: Variant
    force_reupload: Optional[bool] = None


class UpdateAdsRequest(BaseModel):
    package_id: Optional[int] = None
    ads: Optional[list[AdRefreshTarget]] = None
    force_reupload: Optional[bool] = None


class DeleteAdsRequest(BaseModel):
    ad_ids: list[int] = Field(min_length=1)
    delete_from_meta: bool = False


class AdStatusUpdateRequest(BaseModel):
    meta_ad_id: str
    status: Literal["ACTIVE", "PAUSED"]


class BulkAdStatusRequest(BaseModel):
    package_id: int
    status: Literal["ACTIVE", "PAUSED"]


class SyncAdsRequest(BaseModel):
    package_id: Optional[int] = None
    adset_id: Optional[str] = None


class MetaAdRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    package_id: int
    tc_package_id: int
    variant: int
    meta_ad_id: str
    meta_adset_id: str
    meta_campaign_id: Optional[str] = None
    meta_creative_id: Optional[str] = None
    ad_name: Optional[str] = None
    status: AdStatusEnum
    meta_status: Optional[str] = None
    published_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class CreativeStatusRead(BaseModel):
    id: Optional[int] = None
    variant: int
    aspect_ratio: str
    creative_type: Optional[str] = None
    drive_file_id: Optional[str] = None
    drive_file_id_current: Optional[str] = None
    upload_status: str
    meta_image_hash: Optional[str] = None
    meta_video_id: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    has_changes: bool = False
    is_new: bool = False


class CreativesReport(BaseModel):
    package_id: int
    tc_package_id: int
    creatives: list[CreativeStatusRead]
    changed_count: int
    new_count: int
    asset_store_error: Optional[str] = None


# Progress events. Each one is serialized as {"type": ..., "data": {...}} on the stream.


class _EventData(BaseModel):
    package_id: Optional[int] = None


class StepData(_EventData):
    step: str
    variant: Optional[int] = None


class CreatedData(_EventData):
    creative_variant: int
    meta_ad_id: str
    meta_adset_id: str
    meta_creative_id: str
    copies_count: int
    has_9x16: bool


class UpdatedData(_EventData):
    variant: int
    meta_ad_id: str
    new_creative_id: str


class ErrorData(_EventData):
    error: str
    variant: Optional[int] = None
    aspect_ratio: Optional[str] = None
    meta_ad_id: Optional[str] = None


class CompleteData(BaseModel):
    created: Optional[int] = None
    updated: Optional[int] = None
    errors: int


class CreatingEvent(BaseModel):
    type: Literal["creating"] = "creating"
    data: StepData


class UpdatingEvent(BaseModel):
    type: Literal["updating"] = "updating"
    data: StepData


class CreatedEvent(BaseModel):
    type: Literal["created"] = "created"
    data: CreatedData


class UpdatedEvent(BaseModel):
    type: Literal["updated"] = "updated"
    data: UpdatedData


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    data: ErrorData


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    data: CompleteData


ProgressEvent = Annotated[
    Union[CreatingEvent, UpdatingEvent, CreatedEvent, UpdatedEvent, ErrorEvent, CompleteEvent],
    Field(discriminator="type"),
]


def event_payload(event: ProgressEvent) -> dict:
    return event.model_dump(mode="json", exclude_none=True)
