from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from adpublisher.config import settings
from adpublisher.db.models import MetaAdCopy, MetaCreative, Package
from adpublisher.services.ad_platform import CopyText, MetaAdsPlatform


class CompositionError(ValueError):
    pass


def ad_display_name(package: Package, variant: int) -> str:
    return f"{package.title} - {package.tc_package_id} - V{variant}"


def cta_message(tc_package_id: int, template: Optional[str] = None) -> str:
    return (template or settings.CTA_MESSAGE_TEMPLATE).format(external_id=tc_package_id)


@dataclass(frozen=True)
class ComposedCreative:
    creative_id: str
    name: str
    feed_entry: MetaCreative
    has_9x16: bool
    copies_count: int


class AdComposer:
    """Turns ledger entries plus every copy variant of a package into one Meta creative."""

    def __init__(self, platform: MetaAdsPlatform, *, cta_template: Optional[str] = None) -> None:
        self.platform = platform
        self.cta_template = cta_template

    def compose(
        self,
        package: Package,
        variant: int,
        *,
        feed_entry: Optional[MetaCreative],
        vertical_entry: Optional[MetaCreative],
        copies: Sequence[MetaAdCopy],
    ) -> ComposedCreative:
        feed_media = feed_entry.media if feed_entry is not None else None
        if feed_media is None:
            raise CompositionError(f"V{variant} has no uploaded 4x5 creative (required for feed placements)")
        if not copies:
            raise CompositionError("No copies found for this package")

        vertical_media = vertical_entry.media if vertical_entry is not None else None
        name = ad_display_name(package, variant)
        creative_id = self.platform.create_composite_creative(
            name=name,
            feed_media=feed_media,
            vertical_media=vertical_media,
            copies=[
                CopyText(headline=copy.headline, primary_text=copy.primary_text, description=copy.description)
                for copy in copies
            ],
            cta_message=cta_message(package.tc_package_id, self.cta_template),
            tracking_id=package.tc_package_id,
        )
        return ComposedCreative(
            creative_id=creative_id,
            name=name,
            feed_entry=feed_entry,
            has_9x16=vertical_media is not None,
            copies_count=len(copies),
        )
