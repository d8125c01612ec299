import pytest

from adpublisher.db.enums import AspectRatioEnum, MediaKindEnum, UploadStatusEnum
from adpublisher.db.models import MetaCreative
from adpublisher.db.repositories.creatives import CreativeLedgerRepository
from adpublisher.domain.creatives import (
    ImageRef,
    InvalidUploadTransition,
    UploadAttempt,
    VideoRef,
    ensure_transition,
)

FEED = AspectRatioEnum.feed


def test_transition_table():
    ensure_transition(UploadStatusEnum.pending, UploadStatusEnum.uploading)
    ensure_transition(UploadStatusEnum.uploaded, UploadStatusEnum.uploading)
    ensure_transition(UploadStatusEnum.error, UploadStatusEnum.uploading)
    with pytest.raises(InvalidUploadTransition):
        ensure_transition(UploadStatusEnum.pending, UploadStatusEnum.uploaded)
    with pytest.raises(InvalidUploadTransition):
        ensure_transition(UploadStatusEnum.uploaded, UploadStatusEnum.error)


def test_attempt_walks_through_states():
    attempt = UploadAttempt(package_id=1, variant=1, aspect_ratio=FEED, drive_file_id="f1")
    attempt.begin()
    attempt.succeed(ImageRef("h1"))

    assert attempt.status == UploadStatusEnum.uploaded
    assert attempt.history == [UploadStatusEnum.pending, UploadStatusEnum.uploading]
    with pytest.raises(InvalidUploadTransition):
        attempt.fail("late failure")


def test_failed_attempt_cannot_be_recorded(db_session, make_package):
    package = make_package()
    ledger = CreativeLedgerRepository(db_session)
    attempt = ledger.start_upload(package_id=package.id, variant=1, aspect_ratio=FEED, drive_file_id="f1")
    attempt.fail("boom")

    with pytest.raises(InvalidUploadTransition):
        ledger.record_upload(attempt, tc_package_id=package.tc_package_id)
    assert ledger.list_for_package(package.id) == []


def test_recording_switches_media_kind_and_clears_other_identity(db_session, make_package):
    package = make_package()
    ledger = CreativeLedgerRepository(db_session)

    attempt = ledger.start_upload(package_id=package.id, variant=1, aspect_ratio=FEED, drive_file_id="f1")
    attempt.succeed(ImageRef("h1"))
    first = ledger.record_upload(attempt, tc_package_id=package.tc_package_id, drive_file_name="4x5.png")

    attempt = ledger.start_upload(package_id=package.id, variant=1, aspect_ratio=FEED, drive_file_id="f2")
    assert attempt.history == [UploadStatusEnum.uploaded]
    attempt.succeed(VideoRef("v1"))
    second = ledger.record_upload(attempt, tc_package_id=package.tc_package_id, drive_file_name="4x5.mp4")

    assert second.id == first.id
    assert second.creative_type == MediaKindEnum.VIDEO
    assert second.meta_video_id == "v1"
    assert second.meta_image_hash is None
    assert second.media == VideoRef("v1")
    assert second.upload_status == UploadStatusEnum.uploaded
    assert db_session.query(MetaCreative).count() == 1
