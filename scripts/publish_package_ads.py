from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from adpublisher.db.base import SessionLocal  # noqa: E402
from adpublisher.schemas.meta_ads import PackageAdsRequest, event_payload  # noqa: E402
from adpublisher.services.ad_platform import MetaAdsPlatform  # noqa: E402
from adpublisher.services.ad_publisher import AdPublisher, refresh_targets_for_package  # noqa: E402
from adpublisher.services.drive_assets import DriveAssetStore  # noqa: E402


def _print_event(event) -> None:
    print(json.dumps(event_payload(event), separators=(",", ":")), flush=True)


def main(
    action: str,
    package_id: int,
    adset_id: str | None,
    variants: list[int] | None,
    campaign_id: str | None,
    force_reupload: bool | None,
) -> int:
    session = SessionLocal()
    try:
        publisher = AdPublisher(
            session,
            asset_store=DriveAssetStore.from_settings(),
            platform=MetaAdsPlatform.from_settings(),
            emit=_print_event,
        )
        if action == "create":
            if not adset_id:
                print("--adset-id is required for create", file=sys.stderr)
                return 2
            request = PackageAdsRequest(package_id=package_id, meta_adset_id=adset_id, variants=variants)
            summary = publisher.create_ads([request], campaign_id=campaign_id)
        else:
            targets = refresh_targets_for_package(session, package_id, force_reupload=force_reupload)
            if not targets:
                print(f"No existing ads found for package {package_id}", file=sys.stderr)
                return 1
            summary = publisher.update_ads(targets)
    finally:
        session.close()
    return 1 if summary.errors else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create or refresh Meta ads for one package.")
    parser.add_argument("action", choices=["create", "update"])
    parser.add_argument("--package-id", type=int, required=True, help="Internal package id.")
    parser.add_argument("--adset-id", type=str, default=None, help="Target Meta ad set (create only).")
    parser.add_argument("--variant", type=int, action="append", dest="variants", help="Limit to a variant (repeatable).")
    parser.add_argument("--campaign-id", type=str, default=None, help="Skip the ad set campaign lookup.")
    parser.add_argument(
        "--no-force-reupload",
        action="store_true",
        help="On update, reuse stored creatives instead of re-checking Drive.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    sys.exit(
        main(
            action=args.action,
            package_id=args.package_id,
            adset_id=args.adset_id,
            variants=args.variants,
            campaign_id=args.campaign_id,
            force_reupload=False if args.no_force_reupload else None,
        )
    )
