import io
import os
import sys
import tempfile
from itertools import count
from pathlib import Path
from typing import Optional

_DB_DIR = tempfile.mkdtemp(prefix="adpublisher-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["AD_PUBLISH_DELAY_SECONDS"] = "0"
os.environ["CREATIVE_UPLOAD_DELAY_SECONDS"] = "0"
os.environ["CREATIVE_UPLOAD_RETRY_BASE_SECONDS"] = "0"

import pytest
from alembic import command
from alembic.config import Config
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import delete

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

from adpublisher.db.base import SessionLocal, engine
from adpublisher.db.enums import AspectRatioEnum, MediaKindEnum
from adpublisher.db.models import MetaAdCopy, MetaAdRecord, MetaCreative, Package
from adpublisher.domain.creatives import ImageRef, VideoRef
from adpublisher.main import app
from adpublisher.routers import meta_ads as meta_ads_router
from adpublisher.services.ad_platform import PlatformAd
from adpublisher.services.drive_assets import DriveAssetStoreError, StoreAsset
from adpublisher.services.meta_ads import MetaAdsError


def _png_bytes(size=(4, 5)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, (200, 40, 40)).save(buffer, format="PNG")
    return buffer.getvalue()


PNG_BYTES = _png_bytes()
MP4_BYTES = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 32


@pytest.fixture(scope="session", autouse=True)
def apply_migrations() -> None:
    alembic_cfg = Config(str(ROOT_DIR / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(ROOT_DIR / "alembic"))
    command.upgrade(alembic_cfg, "head")


@pytest.fixture(autouse=True)
def clean_tables(apply_migrations):
    yield
    with engine.begin() as connection:
        for model in (MetaAdRecord, MetaCreative, MetaAdCopy, Package):
            connection.execute(delete(model))


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakeAssetStore:
    """In-memory Drive layout: tc_package_id -> assets, file_id -> bytes."""

    def __init__(self) -> None:
        self.assets: dict[int, list[StoreAsset]] = {}
        self.contents: dict[str, bytes] = {}
        self.list_error: Optional[str] = None
        self.download_errors: dict[str, int] = {}
        self.downloads: list[str] = []
        self.fresh_listings: list[bool] = []

    def put(
        self,
        tc_package_id: int,
        variant: int,
        aspect_ratio: AspectRatioEnum,
        file_id: str,
        *,
        media_kind: MediaKindEnum = MediaKindEnum.IMAGE,
        content: Optional[bytes] = None,
        file_name: Optional[str] = None,
        size: Optional[int] = None,
    ) -> StoreAsset:
        extension = "mp4" if media_kind == MediaKindEnum.VIDEO else "png"
        asset = StoreAsset(
            variant=variant,
            aspect_ratio=aspect_ratio,
            file_id=file_id,
            file_name=file_name or f"{aspect_ratio.value}.{extension}",
            media_kind=media_kind,
            mime_type="video/mp4" if media_kind == MediaKindEnum.VIDEO else "image/png",
            size=size,
        )
        existing = [
            a
            for a in self.assets.get(tc_package_id, [])
            if (a.variant, a.aspect_ratio) != (variant, aspect_ratio)
        ]
        existing.append(asset)
        existing.sort(key=lambda a: (a.variant, a.aspect_ratio.value))
        self.assets[tc_package_id] = existing
        if content is None:
            content = MP4_BYTES if media_kind == MediaKindEnum.VIDEO else PNG_BYTES
        self.contents[file_id] = content
        return asset

    def list_assets(self, tc_package_id: int, *, fresh: bool = False) -> list[StoreAsset]:
        self.fresh_listings.append(fresh)
        if self.list_error:
            raise DriveAssetStoreError(self.list_error)
        return list(self.assets.get(tc_package_id, []))

    def download(self, asset: StoreAsset) -> bytes:
        self.downloads.append(asset.file_id)
        remaining = self.download_errors.get(asset.file_id, 0)
        if remaining:
            self.download_errors[asset.file_id] = remaining - 1
            raise DriveAssetStoreError(f"download failed for {asset.file_id}")
        return self.contents[asset.file_id]


class FakePlatform:
    """Records every call made against the ad platform and hands out sequential ids."""

    def __init__(self) -> None:
        self._ids = count(1)
        self.uploads: list[str] = []
        self.creatives: list[dict] = []
        self.ads: dict[str, dict] = {}
        self.ad_updates: list[tuple[str, str]] = []
        self.status_updates: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.adset_campaigns: dict[str, str] = {}
        self.fail_uploads: dict[str, int] = {}
        self.fail_create_ad: set[str] = set()
        self.fail_status: set[str] = set()
        self.fail_get: set[str] = set()
        self.fail_delete: set[str] = set()
        self.fail_adset_lookup = False

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _maybe_fail_upload(self, filename: str) -> None:
        remaining = self.fail_uploads.get(filename, 0)
        if remaining:
            self.fail_uploads[filename] = remaining - 1
            raise MetaAdsError("upload rejected", status_code=500)

    def upload_image(self, *, filename: str, content: bytes, content_type: Optional[str] = None) -> ImageRef:
        self._maybe_fail_upload(filename)
        self.uploads.append(filename)
        return ImageRef(self._next("hash"))

    def upload_video(self, *, filename: str, content: bytes, content_type: Optional[str] = None) -> VideoRef:
        self._maybe_fail_upload(filename)
        self.uploads.append(filename)
        return VideoRef(self._next("video"))

    def create_composite_creative(self, *, name, feed_media, vertical_media, copies, cta_message, tracking_id) -> str:
        creative_id = self._next("creative")
        self.creatives.append(
            {
                "id": creative_id,
                "name": name,
                "feed_media": feed_media,
                "vertical_media": vertical_media,
                "copies": list(copies),
                "cta_message": cta_message,
                "tracking_id": tracking_id,
            }
        )
        return creative_id

    def create_ad(self, *, name: str, adset_id: str, creative_id: str, status: str) -> str:
        if adset_id in self.fail_create_ad:
            raise MetaAdsError("ad set rejected the ad", status_code=400)
        ad_id = self._next("ad")
        self.ads[ad_id] = {
            "name": name,
            "adset_id": adset_id,
            "creative_id": creative_id,
            "status": status,
            "effective_status": status,
        }
        return ad_id

    def update_ad_creative(self, *, ad_id: str, creative_id: str) -> None:
        self.ad_updates.append((ad_id, creative_id))
        if ad_id in self.ads:
            self.ads[ad_id]["creative_id"] = creative_id

    def get_adset_campaign_id(self, adset_id: str) -> str:
        if self.fail_adset_lookup:
            raise MetaAdsError("ad set not readable", status_code=400)
        return self.adset_campaigns.get(adset_id, f"campaign_of_{adset_id}")

    def update_ad_status(self, *, ad_id: str, status: str) -> None:
        if ad_id in self.fail_status:
            raise MetaAdsError("status change rejected", status_code=400)
        self.status_updates.append((ad_id, status))
        if ad_id in self.ads:
            self.ads[ad_id]["status"] = status
            self.ads[ad_id]["effective_status"] = status

    def get_ad(self, ad_id: str) -> Optional[PlatformAd]:
        if ad_id in self.fail_get:
            raise MetaAdsError("rate limited", status_code=429)
        ad = self.ads.get(ad_id)
        if ad is None:
            return None
        return PlatformAd(id=ad_id, name=ad["name"], status=ad["status"], effective_status=ad["effective_status"])

    def delete_ad(self, ad_id: str) -> None:
        if ad_id in self.fail_delete:
            raise MetaAdsError("already deleted", status_code=400)
        self.deleted.append(ad_id)
        self.ads.pop(ad_id, None)


class Recorder:
    def __init__(self) -> None:
        self.events: list = []

    def __call__(self, event) -> bool:
        self.events.append(event)
        return True

    def of_type(self, event_type: str) -> list:
        return [event for event in self.events if event.type == event_type]


@pytest.fixture()
def asset_store() -> FakeAssetStore:
    return FakeAssetStore()


@pytest.fixture()
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture()
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture()
def make_package(db_session):
    def _make(
        tc_package_id: int = 9001,
        *,
        title: str = "Cancun All Inclusive",
        copies: int = 3,
    ) -> Package:
        package = Package(tc_package_id=tc_package_id, title=title)
        db_session.add(package)
        db_session.flush()
        for variant in range(1, copies + 1):
            db_session.add(
                MetaAdCopy(
                    package_id=package.id,
                    tc_package_id=tc_package_id,
                    variant=variant,
                    headline=f"Headline {variant}",
                    primary_text=f"Primary text {variant}",
                    description=f"Description {variant}",
                )
            )
        db_session.commit()
        db_session.refresh(package)
        return package

    return _make


@pytest.fixture()
def api_client(monkeypatch, platform, asset_store):
    monkeypatch.setattr(meta_ads_router, "_get_platform", lambda: platform)
    monkeypatch.setattr(meta_ads_router, "_get_asset_store", lambda: asset_store)
    with TestClient(app) as client:
        yield client


@pytest.fixture()
def png_bytes() -> bytes:
    return PNG_BYTES
