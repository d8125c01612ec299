import threading

from sqlalchemy.exc import IntegrityError

from adpublisher.db.base import SessionLocal
from adpublisher.db.enums import AdStatusEnum, AspectRatioEnum, MarketingStatusEnum, MediaKindEnum
from adpublisher.db.models import MetaAdCopy
from adpublisher.db.repositories.ads import MetaAdsRepository
from adpublisher.db.repositories.creatives import CreativeLedgerRepository
from adpublisher.schemas.meta_ads import AdRefreshTarget, PackageAdsRequest
from adpublisher.services.ad_publisher import AdPublisher, PackageLocks, refresh_targets_for_package

FEED = AspectRatioEnum.feed
VERTICAL = AspectRatioEnum.vertical
ADSET = "adset_100"


def _publisher(db_session, asset_store, platform, recorder):
    return AdPublisher(
        db_session,
        asset_store=asset_store,
        platform=platform,
        emit=recorder,
        publish_delay=0,
        sleep=lambda _seconds: None,
    )


def _seed_drive(asset_store):
    asset_store.put(9001, 1, FEED, "f-v1-feed")
    asset_store.put(9001, 1, VERTICAL, "f-v1-vert", media_kind=MediaKindEnum.VIDEO)
    asset_store.put(9001, 2, FEED, "f-v2-feed")
    asset_store.put(9001, 3, FEED, "f-v3-feed")


def test_create_publishes_one_ad_per_ready_variant(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)

    summary = _publisher(db_session, asset_store, platform, recorder).create_ads(
        [PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)]
    )

    assert summary.succeeded == 3
    assert summary.errors == 0
    created = recorder.of_type("created")
    assert [event.data.creative_variant for event in created] == [1, 2, 3]
    assert created[0].data.has_9x16 is True
    assert created[1].data.has_9x16 is False
    assert all(event.data.copies_count == 3 for event in created)

    complete = recorder.events[-1]
    assert complete.type == "complete"
    assert complete.data.created == 3
    assert complete.data.errors == 0

    assert len(platform.creatives) == 3
    first = platform.creatives[0]
    assert first["name"] == "Cancun All Inclusive - 9001 - V1"
    assert first["cta_message"] == "Hola! Quiero mas info de la promo SIV 9001 (no borrar)"
    assert len(first["copies"]) == 3

    records = MetaAdsRepository(db_session).list_for_package(package.id)
    assert [record.variant for record in records] == [1, 2, 3]
    assert {record.meta_campaign_id for record in records} == {f"campaign_of_{ADSET}"}
    assert all(record.creative_id is not None for record in records)

    db_session.refresh(package)
    assert package.ads_created_count == 3
    assert package.marketing_status == MarketingStatusEnum.active


def test_rerun_does_not_reupload_or_duplicate_rows(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)
    publisher = _publisher(db_session, asset_store, platform, recorder)
    request = PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)
    publisher.create_ads([request])
    uploads_after_first = len(platform.uploads)

    publisher.create_ads([request])

    assert len(platform.uploads) == uploads_after_first
    assert len(MetaAdsRepository(db_session).list_for_package(package.id)) == 3
    db_session.refresh(package)
    assert package.ads_created_count == 3


def test_variant_without_feed_creative_is_reported(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    asset_store.put(9001, 1, FEED, "f-v1-feed")
    asset_store.put(9001, 2, VERTICAL, "f-v2-vert")

    summary = _publisher(db_session, asset_store, platform, recorder).create_ads(
        [PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)]
    )

    assert summary.succeeded == 1
    assert summary.errors == 1
    errors = recorder.of_type("error")
    assert errors[0].data.variant == 2
    assert "4x5" in errors[0].data.error


def test_requested_variants_scope_the_run(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)

    summary = _publisher(db_session, asset_store, platform, recorder).create_ads(
        [PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET, variants=[2, 4])]
    )

    assert summary.succeeded == 1
    assert summary.errors == 1
    assert [event.data.creative_variant for event in recorder.of_type("created")] == [2]
    assert recorder.of_type("error")[0].data.variant == 4


def test_missing_package_and_missing_copies(db_session, make_package, asset_store, platform, recorder):
    bare = make_package(tc_package_id=9002, copies=0)

    summary = _publisher(db_session, asset_store, platform, recorder).create_ads(
        [
            PackageAdsRequest(package_id=424242, meta_adset_id=ADSET),
            PackageAdsRequest(package_id=bare.id, meta_adset_id=ADSET),
        ]
    )

    assert summary.succeeded == 0
    assert summary.errors == 2
    messages = [event.data.error for event in recorder.of_type("error")]
    assert messages == ["Package not found", "No copies found for this package"]
    assert recorder.events[-1].type == "complete"


def test_upload_failure_counts_once_and_other_variants_continue(
    db_session, make_package, asset_store, platform, recorder
):
    package = make_package()
    asset_store.put(9001, 1, FEED, "f-v1-feed", file_name="broken.png")
    asset_store.put(9001, 2, FEED, "f-v2-feed")
    platform.fail_uploads["broken.png"] = 10

    summary = _publisher(db_session, asset_store, platform, recorder).create_ads(
        [PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)]
    )

    assert summary.succeeded == 1
    assert summary.errors == 1
    assert [event.data.creative_variant for event in recorder.of_type("created")] == [2]


def test_ad_creation_failure_keeps_counters_live(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)
    publisher = _publisher(db_session, asset_store, platform, recorder)
    publisher.create_ads([PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)])

    platform.fail_create_ad.add("adset_broken")
    summary = publisher.create_ads([PackageAdsRequest(package_id=package.id, meta_adset_id="adset_broken")])

    assert summary.succeeded == 0
    assert summary.errors == 3
    db_session.refresh(package)
    assert package.ads_created_count == 3


def test_adset_lookup_failure_is_a_package_error(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)
    platform.fail_adset_lookup = True

    summary = _publisher(db_session, asset_store, platform, recorder).create_ads(
        [PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)]
    )

    assert summary.succeeded == 0
    assert summary.errors == 1
    assert platform.ads == {}


def test_explicit_campaign_skips_adset_lookup(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)
    platform.fail_adset_lookup = True

    summary = _publisher(db_session, asset_store, platform, recorder).create_ads(
        [PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)], campaign_id="cmp_7"
    )

    assert summary.succeeded == 3
    records = MetaAdsRepository(db_session).list_for_package(package.id)
    assert {record.meta_campaign_id for record in records} == {"cmp_7"}


def _create_then_targets(db_session, package, asset_store, platform, recorder, *, force=None):
    _publisher(db_session, asset_store, platform, recorder).create_ads(
        [PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)]
    )
    recorder.events.clear()
    return refresh_targets_for_package(db_session, package.id, force_reupload=force)


def test_update_refreshes_creatives_without_creating_ads(
    db_session, make_package, asset_store, platform, recorder
):
    package = make_package()
    _seed_drive(asset_store)
    targets = _create_then_targets(db_session, package, asset_store, platform, recorder)
    ads_before = set(platform.ads)
    asset_store.put(9001, 2, FEED, "f-v2-replaced")

    summary = _publisher(db_session, asset_store, platform, recorder).update_ads(targets)

    assert summary.succeeded == 3
    assert summary.errors == 0
    assert set(platform.ads) == ads_before
    assert len(platform.ad_updates) == 3
    assert all(event.type != "created" for event in recorder.events)
    complete = recorder.events[-1]
    assert complete.data.updated == 3
    assert complete.data.created is None

    entry = CreativeLedgerRepository(db_session).get(package_id=package.id, variant=2, aspect_ratio=FEED)
    assert entry.drive_file_id == "f-v2-replaced"
    records = MetaAdsRepository(db_session).list_for_package(package.id)
    assert {record.meta_creative_id for record in records} == {update[1] for update in platform.ad_updates}


def test_update_without_force_uses_stored_creatives(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)
    targets = _create_then_targets(db_session, package, asset_store, platform, recorder, force=False)
    asset_store.put(9001, 1, FEED, "f-v1-replaced")
    uploads_before = len(platform.uploads)

    summary = _publisher(db_session, asset_store, platform, recorder).update_ads(targets)

    assert summary.succeeded == 3
    assert len(platform.uploads) == uploads_before
    steps = [event.data.step for event in recorder.of_type("updating")]
    assert "Using uploaded creative from database" in steps


def test_update_does_not_change_ad_status(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)
    targets = _create_then_targets(db_session, package, asset_store, platform, recorder)
    repo = MetaAdsRepository(db_session)
    repo.set_status(repo.list_for_package(package.id), AdStatusEnum.PAUSED)

    _publisher(db_session, asset_store, platform, recorder).update_ads(targets)

    assert platform.status_updates == []
    assert {record.status for record in repo.list_for_package(package.id)} == {AdStatusEnum.PAUSED}


def test_update_rejects_target_from_other_package(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)
    targets = _create_then_targets(db_session, package, asset_store, platform, recorder)
    bogus = AdRefreshTarget(
        id=targets[0].id, meta_ad_id="ad_not_ours", package_id=package.id, variant=1, force_reupload=False
    )

    summary = _publisher(db_session, asset_store, platform, recorder).update_ads([bogus])

    assert summary.succeeded == 0
    assert summary.errors == 1
    assert recorder.of_type("error")[0].data.meta_ad_id == "ad_not_ours"
    assert platform.ad_updates == []


def test_update_package_without_copies_counts_every_target(
    db_session, make_package, asset_store, platform, recorder
):
    package = make_package()
    _seed_drive(asset_store)
    targets = _create_then_targets(db_session, package, asset_store, platform, recorder)
    for copy in db_session.query(MetaAdCopy).filter_by(package_id=package.id).all():
        db_session.delete(copy)
    db_session.commit()

    summary = _publisher(db_session, asset_store, platform, recorder).update_ads(targets)

    assert summary.errors == len(targets)
    assert len(recorder.of_type("error")) == 1


def test_package_9001_scenario(db_session, make_package, asset_store, platform, recorder):
    package = make_package(tc_package_id=9001, copies=3)
    asset_store.put(9001, 1, FEED, "f-v1")
    asset_store.put(9001, 2, FEED, "f-v2")
    request = PackageAdsRequest(package_id=package.id, meta_adset_id="AS1", variants=[1, 2, 3])
    publisher = _publisher(db_session, asset_store, platform, recorder)

    first = publisher.create_ads([request])

    assert len(platform.uploads) == 2
    assert first.succeeded == 2
    assert [event.data.variant for event in recorder.of_type("error")] == [3]
    db_session.refresh(package)
    assert package.ads_created_count == 2
    first_ids = {record.variant: record.id for record in MetaAdsRepository(db_session).list_for_package(package.id)}

    second = publisher.create_ads([request])

    assert len(platform.uploads) == 2
    assert second.succeeded == 2
    records = MetaAdsRepository(db_session).list_for_package(package.id)
    assert {record.variant: record.id for record in records} == first_ids
    db_session.refresh(package)
    assert package.ads_created_count == 2


def test_update_rejects_target_with_wrong_variant(db_session, make_package, asset_store, platform, recorder):
    package = make_package()
    _seed_drive(asset_store)
    targets = _create_then_targets(db_session, package, asset_store, platform, recorder, force=False)
    first = targets[0]
    mismatched = first.model_copy(update={"variant": 2})

    summary = _publisher(db_session, asset_store, platform, recorder).update_ads([mismatched])

    assert summary.succeeded == 0
    assert summary.errors == 1
    assert "belongs to V1" in recorder.of_type("error")[0].data.error
    assert platform.ad_updates == []
    assert MetaAdsRepository(db_session).get(first.id).variant == 1


def test_database_errors_are_reported_without_sql(
    db_session, make_package, asset_store, platform, recorder, monkeypatch
):
    package = make_package()
    asset_store.put(9001, 1, FEED, "f-v1-feed")

    def failing_upsert(self, **_fields):
        raise IntegrityError(
            "INSERT INTO meta_ads (package_id, variant) VALUES (?, ?)", (1, 1), Exception("UNIQUE constraint failed")
        )

    monkeypatch.setattr(MetaAdsRepository, "upsert", failing_upsert)

    summary = _publisher(db_session, asset_store, platform, recorder).create_ads(
        [PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)]
    )

    assert summary.errors == 1
    message = recorder.of_type("error")[0].data.error
    assert message == "Database error while saving ads"
    assert "INSERT" not in message


def test_overlapping_runs_on_one_package_do_not_duplicate_ads(
    db_session, make_package, asset_store, platform, recorder
):
    package = make_package()
    asset_store.put(9001, 1, FEED, "f-v1-feed")
    request = PackageAdsRequest(package_id=package.id, meta_adset_id=ADSET)
    locks = PackageLocks()
    entered = threading.Event()
    release = threading.Event()
    upload_image = platform.upload_image

    def slow_upload(**kwargs):
        entered.set()
        release.wait(timeout=10)
        return upload_image(**kwargs)

    platform.upload_image = slow_upload
    first_events: list = []

    def first_run():
        session = SessionLocal()
        try:
            AdPublisher(
                session,
                asset_store=asset_store,
                platform=platform,
                emit=first_events.append,
                locks=locks,
                publish_delay=0,
                sleep=lambda _seconds: None,
            ).create_ads([request])
        finally:
            session.close()

    worker = threading.Thread(target=first_run)
    worker.start()
    try:
        assert entered.wait(timeout=10)
        second = AdPublisher(
            db_session,
            asset_store=asset_store,
            platform=platform,
            emit=recorder,
            locks=locks,
            publish_delay=0,
            sleep=lambda _seconds: None,
        ).create_ads([request])
    finally:
        release.set()
        worker.join(timeout=10)

    assert second.succeeded == 0
    assert second.errors == 1
    assert "already publishing" in recorder.of_type("error")[0].data.error
    assert len(platform.uploads) == 1
    assert len(platform.ads) == 1
    assert [event.type for event in first_events if event.type == "created"] == ["created"]
    assert len(MetaAdsRepository(db_session).list_for_package(package.id)) == 1
