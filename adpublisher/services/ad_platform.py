from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence
from uuid import uuid4

from adpublisher.config import settings
from adpublisher.domain.creatives import ImageRef, MediaRef, VideoRef
from adpublisher.services.meta_ads import MetaAdsClient, MetaAdsConfigError, MetaAdsError

logger = logging.getLogger("meta.ads")

FEED_PLACEMENTS: dict[str, list[str]] = {
    "publisher_platforms": ["facebook", "instagram", "messenger"],
    "facebook_positions": ["feed", "profile_feed", "notification", "instream_video", "marketplace", "search"],
    "instagram_positions": ["stream", "explore", "explore_home", "profile_feed"],
    "messenger_positions": ["messenger_home"],
}

VERTICAL_PLACEMENTS: dict[str, list[str]] = {
    "publisher_platforms": ["facebook", "instagram", "whatsapp"],
    "facebook_positions": ["facebook_reels", "story"],
    "instagram_positions": ["profile_reels", "story", "reels"],
    "whatsapp_positions": ["status"],
}

CLICK_TO_MESSAGE_CTA = "WHATSAPP_MESSAGE"


@dataclass(frozen=True)
class CopyText:
    headline: str
    primary_text: str
    description: Optional[str] = None


@dataclass(frozen=True)
class PlatformAd:
    id: str
    name: Optional[str]
    status: Optional[str]
    effective_status: Optional[str]


def _media_label(media: MediaRef, placement: str, token: str) -> str:
    prefix = "vid" if isinstance(media, VideoRef) else "img"
    return f"{prefix}_{placement}_{token}"


def _media_label_key(media: MediaRef) -> str:
    return "video_label" if isinstance(media, VideoRef) else "image_label"


def _media_entry(media: MediaRef, label: str) -> dict[str, Any]:
    if isinstance(media, VideoRef):
        return {"video_id": media.video_id, "adlabels": [{"name": label}]}
    return {"hash": media.hash, "adlabels": [{"name": label}]}


def build_welcome_message(cta_message: str) -> str:
    return json.dumps(
        {
            "type": "VISUAL_EDITOR",
            "version": 2,
            "landing_screen_type": "welcome_message",
            "media_type": "text",
            "text_format": {
                "customer_action_type": "autofill_message",
                "message": {"autofill_message": {"content": cta_message}, "text": "."},
            },
            "user_edit": True,
            "surface": "visual_editor_new",
            "welcome_message_edited": True,
            "autofill_message_edited": True,
        }
    )


def build_asset_feed_spec(
    *,
    feed_media: MediaRef,
    vertical_media: Optional[MediaRef],
    copies: Sequence[CopyText],
    cta_message: str,
    link_url: str,
    token: str,
) -> dict[str, Any]:
    """
    Build a placement-customized `asset_feed_spec`.

    Every copy variant shares one body label and one title label so Meta rotates
    them inside a single creative. Feed placements get the 4x5 media; story and
    reel placements get the 9x16 media, or the 4x5 media when there is none.
    """
    if not copies:
        raise ValueError("At least one copy variant is required to build a creative.")

    body_label = f"body_{token}"
    title_label = f"title_{token}"
    link_label = f"link_{token}"
    feed_label = _media_label(feed_media, "feed", token)

    images: list[dict[str, Any]] = []
    videos: list[dict[str, Any]] = []

    def _add(media: MediaRef, label: str) -> None:
        target = videos if isinstance(media, VideoRef) else images
        target.append(_media_entry(media, label))

    _add(feed_media, feed_label)
    vertical_label = feed_label
    vertical_key = _media_label_key(feed_media)
    if vertical_media is not None:
        vertical_label = _media_label(vertical_media, "stories", token)
        vertical_key = _media_label_key(vertical_media)
        _add(vertical_media, vertical_label)

    text_labels = {
        "body_label": {"name": body_label},
        "title_label": {"name": title_label},
        "link_url_label": {"name": link_label},
    }
    rules = [
        {
            "customization_spec": dict(FEED_PLACEMENTS),
            _media_label_key(feed_media): {"name": feed_label},
            **text_labels,
            "priority": 1,
        },
        {
            "customization_spec": dict(VERTICAL_PLACEMENTS),
            vertical_key: {"name": vertical_label},
            **text_labels,
            "priority": 2,
        },
    ]

    spec: dict[str, Any] = {
        "bodies": [
            {"text": f"{copy.headline}\n\n{copy.primary_text}", "adlabels": [{"name": body_label}]}
            for copy in copies
        ],
        "titles": [{"text": copy.headline, "adlabels": [{"name": title_label}]} for copy in copies],
        "link_urls": [{"website_url": link_url, "display_url": "", "adlabels": [{"name": link_label}]}],
        "call_to_action_types": [CLICK_TO_MESSAGE_CTA],
        "call_to_actions": [{"type": CLICK_TO_MESSAGE_CTA, "value": {"app_destination": "WHATSAPP"}}],
        "ad_formats": ["AUTOMATIC_FORMAT"],
        "asset_customization_rules": rules,
        "optimization_type": "PLACEMENT",
        "additional_data": {
            "multi_share_end_card": False,
            "page_welcome_message": build_welcome_message(cta_message),
            "is_click_to_message": False,
        },
        "descriptions": [{"text": ""}],
    }
    if images:
        spec["images"] = images
    if videos:
        spec["videos"] = videos
    return spec


class MetaAdsPlatform:
    """Ad-account scoped operations used by the reconciliation and publish pipeline."""

    def __init__(
        self,
        *,
        client: MetaAdsClient,
        ad_account_id: str,
        page_id: str,
        instagram_user_id: Optional[str] = None,
        pixel_id: Optional[str] = None,
        link_url: str = "https://api.whatsapp.com/send",
    ) -> None:
        self.client = client
        self.ad_account_id = ad_account_id
        self.page_id = page_id
        self.instagram_user_id = instagram_user_id
        self.pixel_id = pixel_id
        self.link_url = link_url

    @classmethod
    def from_settings(cls) -> "MetaAdsPlatform":
        if not settings.META_AD_ACCOUNT_ID:
            raise MetaAdsConfigError("META_AD_ACCOUNT_ID is required to publish ads.")
        if not settings.META_PAGE_ID:
            raise MetaAdsConfigError("META_PAGE_ID is required to publish ads.")
        return cls(
            client=MetaAdsClient.from_settings(),
            ad_account_id=settings.META_AD_ACCOUNT_ID,
            page_id=settings.META_PAGE_ID,
            instagram_user_id=settings.META_INSTAGRAM_USER_ID,
            pixel_id=settings.META_PIXEL_ID,
            link_url=settings.META_CLICK_TO_MESSAGE_URL,
        )

    def upload_image(self, *, filename: str, content: bytes, content_type: Optional[str] = None) -> ImageRef:
        response = self.client.upload_image(
            ad_account_id=self.ad_account_id,
            filename=filename,
            content=content,
            content_type=content_type,
        )
        images = response.get("images") if isinstance(response, dict) else None
        if isinstance(images, dict) and images:
            first_key = next(iter(images))
            image_hash = (images.get(first_key) or {}).get("hash")
            if isinstance(image_hash, str) and image_hash:
                return ImageRef(image_hash)
        raise MetaAdsError("Meta image upload did not return an image hash.", error_payload=response)

    def upload_video(self, *, filename: str, content: bytes, content_type: Optional[str] = None) -> VideoRef:
        response = self.client.upload_video(
            ad_account_id=self.ad_account_id,
            filename=filename,
            content=content,
            content_type=content_type,
        )
        video_id = response.get("id") if isinstance(response, dict) else None
        if not isinstance(video_id, str) or not video_id:
            raise MetaAdsError("Meta video upload did not return a video id.", error_payload=response)
        return VideoRef(video_id)

    def create_composite_creative(
        self,
        *,
        name: str,
        feed_media: MediaRef,
        vertical_media: Optional[MediaRef],
        copies: Sequence[CopyText],
        cta_message: str,
        tracking_id: int | str,
    ) -> str:
        object_story_spec: dict[str, Any] = {"page_id": self.page_id}
        if self.instagram_user_id:
            object_story_spec["instagram_user_id"] = self.instagram_user_id
        payload = {
            "name": name,
            "object_story_spec": object_story_spec,
            "asset_feed_spec": build_asset_feed_spec(
                feed_media=feed_media,
                vertical_media=vertical_media,
                copies=copies,
                cta_message=cta_message,
                link_url=self.link_url,
                token=f"{tracking_id}_{uuid4().hex[:12]}",
            ),
        }
        response = self.client.create_adcreative(ad_account_id=self.ad_account_id, payload=payload)
        creative_id = response.get("id") if isinstance(response, dict) else None
        if not isinstance(creative_id, str) or not creative_id:
            raise MetaAdsError("Meta creative creation did not return an id.", error_payload=response)
        logger.info("meta.creative_created", extra={"creative_id": creative_id, "tracking_id": tracking_id})
        return creative_id

    def create_ad(self, *, name: str, adset_id: str, creative_id: str, status: str) -> str:
        payload: dict[str, Any] = {
            "name": name,
            "adset_id": adset_id,
            "creative": {"creative_id": creative_id},
            "status": status,
        }
        if self.pixel_id:
            payload["tracking_specs"] = [
                {"action.type": ["offsite_conversion"], "fb_pixel": [self.pixel_id]}
            ]
        response = self.client.create_ad(ad_account_id=self.ad_account_id, payload=payload)
        ad_id = response.get("id") if isinstance(response, dict) else None
        if not isinstance(ad_id, str) or not ad_id:
            raise MetaAdsError("Meta ad creation did not return an id.", error_payload=response)
        return ad_id

    def update_ad_creative(self, *, ad_id: str, creative_id: str) -> None:
        self.client.update_object(ad_id, payload={"creative": {"creative_id": creative_id}})

    def get_adset_campaign_id(self, adset_id: str) -> str:
        response = self.client.get_object(adset_id, fields="id,name,status,campaign_id")
        campaign_id = response.get("campaign_id") if isinstance(response, dict) else None
        if not isinstance(campaign_id, str) or not campaign_id:
            raise MetaAdsError(f"Ad set {adset_id} has no campaign.", error_payload=response)
        return campaign_id

    def update_ad_status(self, *, ad_id: str, status: str) -> None:
        self.client.update_object(ad_id, payload={"status": status})

    def get_ad(self, ad_id: str) -> Optional[PlatformAd]:
        """Return the ad, or None when Meta reports it no longer exists."""
        try:
            response = self.client.get_object(ad_id, fields="id,name,status,effective_status")
        except MetaAdsError as exc:
            if exc.is_not_found:
                return None
            raise
        return PlatformAd(
            id=str(response.get("id") or ad_id),
            name=response.get("name"),
            status=response.get("status"),
            effective_status=response.get("effective_status"),
        )

    def delete_ad(self, ad_id: str) -> None:
        self.client.delete_object(ad_id)
