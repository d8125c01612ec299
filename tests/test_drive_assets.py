import httplib2
import pytest
from googleapiclient.errors import HttpError

from adpublisher.db.enums import AspectRatioEnum, MediaKindEnum
from adpublisher.db.repositories.creatives import CreativeLedgerRepository
from adpublisher.schemas.meta_ads import PackageAdsRequest
from adpublisher.services.ad_publisher import AdPublisher, refresh_targets_for_package
from adpublisher.services.drive_assets import (
    FOLDER_MIME_TYPE,
    DriveAssetStore,
    DriveAssetStoreError,
    classify_file_name,
)


class _Call:
    def __init__(self, result):
        self._result = result

    def execute(self):
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


class FakeFiles:
    """Answers Drive `files().list` queries from a parent-id -> children map."""

    def __init__(self, tree: dict[str, list[dict]], media: dict[str, bytes]):
        self.tree = tree
        self.media = media
        self.list_calls = 0
        self.error = None

    def list(self, q, fields, supportsAllDrives, includeItemsFromAllDrives, pageToken=None):
        self.list_calls += 1
        if self.error is not None:
            return _Call(self.error)
        if q.startswith("name="):
            name = q.split("'")[1]
            parent = q.split("'")[3]
            children = [item for item in self.tree.get(parent, []) if item["name"] == name]
            return _Call({"files": children})
        parent = q.split("'")[1]
        children = self.tree.get(parent, [])
        if "mimeType=" in q:
            children = [item for item in children if item.get("mimeType") == FOLDER_MIME_TYPE]
        # Two results per page to exercise pagination.
        start = int(pageToken or 0)
        page = children[start : start + 2]
        response = {"files": page}
        if start + 2 < len(children):
            response["nextPageToken"] = str(start + 2)
        return _Call(response)

    def get_media(self, fileId, supportsAllDrives):
        return _Call(self.media[fileId])


class FakeDrive:
    def __init__(self, files: FakeFiles):
        self._files = files

    def files(self):
        return self._files


def _folder(folder_id, name):
    return {"id": folder_id, "name": name, "mimeType": FOLDER_MIME_TYPE}


def _file(file_id, name, mime="image/png", size=None):
    item = {"id": file_id, "name": name, "mimeType": mime}
    if size is not None:
        item["size"] = str(size)
    return item


@pytest.fixture()
def drive_files():
    tree = {
        "root": [_folder("pkg", "9001"), _folder("other", "9002")],
        "pkg": [_folder("v1", "v1"), _folder("v2", "v2"), _folder("v7", "v7"), _folder("misc", "assets")],
        "v1": [
            _file("a", "4x5.png"),
            _file("b", "9x16.mp4", "video/mp4", size=2048),
            _file("c", "notes.txt", "text/plain"),
        ],
        "v2": [_file("d", "4x5.jpg"), _file("e", "4x5_copy.png")],
        "v7": [_file("f", "4x5.png")],
    }
    return FakeFiles(tree, {"a": b"png-bytes"})


def _store(drive_files, clock=lambda: 0.0):
    return DriveAssetStore(drive=FakeDrive(drive_files), root_folder_id="root", cache_ttl_seconds=60, clock=clock)


def test_classify_file_name():
    assert classify_file_name("4x5.png") == (AspectRatioEnum.feed, MediaKindEnum.IMAGE)
    assert classify_file_name("9X16_final.MP4") == (AspectRatioEnum.vertical, MediaKindEnum.VIDEO)
    assert classify_file_name("cover.png") is None
    assert classify_file_name("4x5.psd") is None


def test_lists_assets_per_variant_folder(drive_files):
    assets = _store(drive_files).list_assets(9001)

    keys = [(asset.variant, asset.aspect_ratio, asset.file_id) for asset in assets]
    assert keys == [
        (1, AspectRatioEnum.feed, "a"),
        (1, AspectRatioEnum.vertical, "b"),
        (2, AspectRatioEnum.feed, "d"),
    ]
    assert assets[1].media_kind == MediaKindEnum.VIDEO


def test_missing_package_folder_yields_no_assets(drive_files):
    assert _store(drive_files).list_assets(1234) == []


def test_listing_is_cached_until_ttl(drive_files):
    now = [0.0]
    store = _store(drive_files, clock=lambda: now[0])
    store.list_assets(9001)
    calls = drive_files.list_calls

    store.list_assets(9001)
    assert drive_files.list_calls == calls

    now[0] = 61.0
    store.list_assets(9001)
    assert drive_files.list_calls > calls


def test_http_errors_become_store_errors(drive_files):
    drive_files.error = HttpError(httplib2.Response({"status": 403}), b"forbidden")

    with pytest.raises(DriveAssetStoreError):
        _store(drive_files).list_assets(9001)


def test_download_returns_bytes(drive_files):
    store = _store(drive_files)
    asset = store.list_assets(9001)[0]
    assert store.download(asset) == b"png-bytes"


def test_listing_carries_reported_size(drive_files):
    assets = _store(drive_files).list_assets(9001)

    assert assets[0].size is None
    assert assets[1].size == 2048


def test_fresh_listing_bypasses_and_refreshes_cache(drive_files):
    store = _store(drive_files)
    assert store.list_assets(9001)[0].file_id == "a"
    drive_files.tree["v1"][0] = _file("a2", "4x5.png")

    assert store.list_assets(9001)[0].file_id == "a"
    assert store.list_assets(9001, fresh=True)[0].file_id == "a2"
    assert store.list_assets(9001)[0].file_id == "a2"


def test_forced_update_sees_file_replaced_within_cache_ttl(
    db_session, make_package, platform, recorder, png_bytes
):
    package = make_package()
    files = FakeFiles(
        {
            "root": [_folder("pkg", "9001")],
            "pkg": [_folder("v1", "v1")],
            "v1": [_file("old", "4x5.png")],
        },
        {"old": png_bytes, "new": png_bytes},
    )
    store = _store(files)
    publisher = AdPublisher(
        db_session,
        asset_store=store,
        platform=platform,
        emit=recorder,
        publish_delay=0,
        sleep=lambda _seconds: None,
    )
    publisher.create_ads([PackageAdsRequest(package_id=package.id, meta_adset_id="adset_100")])
    files.tree["v1"] = [_file("new", "4x5.png")]

    summary = publisher.update_ads(refresh_targets_for_package(db_session, package.id, force_reupload=True))

    assert summary.errors == 0
    assert len(platform.uploads) == 2
    entry = CreativeLedgerRepository(db_session).get(
        package_id=package.id, variant=1, aspect_ratio=AspectRatioEnum.feed
    )
    assert entry.drive_file_id == "new"
