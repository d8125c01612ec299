from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from googleapiclient.errors import HttpError

from adpublisher.config import settings
from adpublisher.db.enums import AspectRatioEnum, MediaKindEnum

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp"}
VIDEO_EXTENSIONS = {"mp4", "mov", "avi", "webm", "mpeg"}
MAX_VARIANT = 5

_VARIANT_FOLDER_RE = re.compile(r"^v(\d+)$")


class DriveAssetStoreConfigError(RuntimeError):
    pass


class DriveAssetStoreError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoreAsset:
    variant: int
    aspect_ratio: AspectRatioEnum
    file_id: str
    file_name: str
    media_kind: MediaKindEnum
    mime_type: Optional[str] = None
    size: Optional[int] = None


def classify_file_name(name: str) -> Optional[tuple[AspectRatioEnum, MediaKindEnum]]:
    """Map a variant-folder file name like `4x5.png` or `9x16_final.mp4` to its key and media kind."""
    lowered = name.strip().lower()
    aspect_ratio: Optional[AspectRatioEnum] = None
    for candidate in (AspectRatioEnum.vertical, AspectRatioEnum.feed):
        if lowered.startswith(candidate.value):
            aspect_ratio = candidate
            break
    if aspect_ratio is None or "." not in lowered:
        return None
    extension = lowered.rsplit(".", 1)[1]
    if extension in IMAGE_EXTENSIONS:
        return aspect_ratio, MediaKindEnum.IMAGE
    if extension in VIDEO_EXTENSIONS:
        return aspect_ratio, MediaKindEnum.VIDEO
    return None


class DriveAssetStore:
    """
    Lists creative files laid out as `<root>/<tc_package_id>/v<N>/<ratio>.<ext>`.

    Listings are cached per package for `cache_ttl_seconds` and serve read-only
    views; the reconciler always asks for a fresh listing. The file id is the
    content identity, since replacing a file in Drive yields a new id. The
    reported `size` lets oversized files be refused before downloading.
    """

    def __init__(
        self,
        *,
        drive: Any,
        root_folder_id: str,
        cache_ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._drive = drive
        self.root_folder_id = root_folder_id
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[int, tuple[float, list[StoreAsset]]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls) -> "DriveAssetStore":
        if not settings.GOOGLE_DRIVE_FOLDER_ID:
            raise DriveAssetStoreConfigError("GOOGLE_DRIVE_FOLDER_ID is required to read creatives from Drive.")
        from adpublisher.services.google_clients import get_drive_client

        try:
            drive = get_drive_client()
        except RuntimeError as exc:
            raise DriveAssetStoreConfigError(str(exc)) from exc
        return cls(
            drive=drive,
            root_folder_id=settings.GOOGLE_DRIVE_FOLDER_ID,
            cache_ttl_seconds=settings.DRIVE_LISTING_CACHE_TTL_SECONDS,
        )

    def _list_children(self, query: str, fields: str) -> list[dict[str, Any]]:
        files: list[dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            response = (
                self._drive.files()
                .list(
                    q=query,
                    fields=f"nextPageToken, files({fields})",
                    supportsAllDrives=True,
                    includeItemsFromAllDrives=True,
                    pageToken=page_token,
                )
                .execute()
            )
            files.extend(response.get("files") or [])
            page_token = response.get("nextPageToken")
            if not page_token:
                return files

    def _fetch_assets(self, tc_package_id: int) -> list[StoreAsset]:
        package_folders = self._list_children(
            f"name='{tc_package_id}' and '{self.root_folder_id}' in parents "
            f"and mimeType='{FOLDER_MIME_TYPE}' and trashed=false",
            "id, name",
        )
        if not package_folders:
            return []
        package_folder_id = package_folders[0]["id"]

        assets: list[StoreAsset] = []
        variant_folders = self._list_children(
            f"'{package_folder_id}' in parents and mimeType='{FOLDER_MIME_TYPE}' and trashed=false",
            "id, name",
        )
        for folder in variant_folders:
            match = _VARIANT_FOLDER_RE.match(str(folder.get("name") or ""))
            if not match:
                continue
            variant = int(match.group(1))
            if variant < 1 or variant > MAX_VARIANT:
                continue
            seen: set[AspectRatioEnum] = set()
            files = self._list_children(
                f"'{folder['id']}' in parents and trashed=false",
                "id, name, mimeType, size",
            )
            for item in sorted(files, key=lambda f: str(f.get("name") or "")):
                classified = classify_file_name(str(item.get("name") or ""))
                if classified is None:
                    continue
                aspect_ratio, media_kind = classified
                if aspect_ratio in seen:
                    logger.warning(
                        "drive.duplicate_asset",
                        extra={"tc_package_id": tc_package_id, "variant": variant, "file_id": item.get("id")},
                    )
                    continue
                seen.add(aspect_ratio)
                assets.append(
                    StoreAsset(
                        variant=variant,
                        aspect_ratio=aspect_ratio,
                        file_id=item["id"],
                        file_name=item["name"],
                        media_kind=media_kind,
                        mime_type=item.get("mimeType"),
                        size=int(item["size"]) if item.get("size") else None,
                    )
                )
        assets.sort(key=lambda a: (a.variant, a.aspect_ratio.value))
        return assets

    def list_assets(self, tc_package_id: int, *, fresh: bool = False) -> list[StoreAsset]:
        """List the package's creatives; `fresh` skips the cache and refreshes it."""
        now = self._clock()
        if not fresh:
            with self._lock:
                cached = self._cache.get(tc_package_id)
                if cached and cached[0] > now:
                    return list(cached[1])
        try:
            assets = self._fetch_assets(tc_package_id)
        except HttpError as exc:
            raise DriveAssetStoreError(
                f"Failed to list Drive creatives for package {tc_package_id}: {exc}"
            ) from exc
        with self._lock:
            self._cache[tc_package_id] = (now + self.cache_ttl_seconds, assets)
        return list(assets)

    def download(self, asset: StoreAsset) -> bytes:
        try:
            data = self._drive.files().get_media(fileId=asset.file_id, supportsAllDrives=True).execute()
        except HttpError as exc:
            raise DriveAssetStoreError(f"Failed to download Drive file {asset.file_id}: {exc}") from exc
        if not isinstance(data, (bytes, bytearray)):
            raise DriveAssetStoreError("Drive download did not return bytes.")
        return bytes(data)
