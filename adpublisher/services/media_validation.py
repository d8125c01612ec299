from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

from PIL import Image, UnidentifiedImageError

from adpublisher.config import settings
from adpublisher.db.enums import MediaKindEnum

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_FORMATS = {"JPEG", "PNG", "GIF", "WEBP"}


@dataclass
class MediaValidationError(ValueError):
    file_name: str
    reason: str

    def __str__(self) -> str:
        return f"{self.reason} ({self.file_name})"


def detect_video_format(content: bytes) -> Optional[str]:
    if len(content) > 8 and content[4:8] in (b"ftyp", b"moov"):
        return "mp4"
    if content[:4] == b"\x1a\x45\xdf\xa3":
        return "webm"
    if content[:4] == b"RIFF":
        return "avi"
    return None


def _size_limit(media_kind: MediaKindEnum, max_image_bytes: Optional[int], max_video_bytes: Optional[int]) -> int:
    if media_kind == MediaKindEnum.IMAGE:
        return max_image_bytes if max_image_bytes is not None else settings.CREATIVE_MAX_IMAGE_BYTES
    return max_video_bytes if max_video_bytes is not None else settings.CREATIVE_MAX_VIDEO_BYTES


def check_size(
    size: int,
    *,
    file_name: str,
    media_kind: MediaKindEnum,
    max_image_bytes: Optional[int] = None,
    max_video_bytes: Optional[int] = None,
) -> None:
    """Raise when `size` bytes is over the per-kind upload limit."""
    limit = _size_limit(media_kind, max_image_bytes, max_video_bytes)
    if size > limit:
        raise MediaValidationError(
            file_name=file_name,
            reason=f"File too large: {size / 1024 / 1024:.2f}MB (max: {limit / 1024 / 1024:.0f}MB)",
        )


def verify_image(content: bytes, *, file_name: str) -> str:
    try:
        with Image.open(BytesIO(content)) as img:
            image_format = img.format or ""
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise MediaValidationError(file_name=file_name, reason="Invalid image file") from exc
    if image_format not in SUPPORTED_IMAGE_FORMATS:
        raise MediaValidationError(file_name=file_name, reason=f"Unsupported image format: {image_format}")
    return image_format.lower()


def validate_media(
    content: bytes,
    *,
    file_name: str,
    media_kind: MediaKindEnum,
    max_image_bytes: Optional[int] = None,
    max_video_bytes: Optional[int] = None,
) -> None:
    """Reject bytes Meta would refuse before spending an upload on them."""
    if not content:
        raise MediaValidationError(file_name=file_name, reason="Empty file")
    check_size(
        len(content),
        file_name=file_name,
        media_kind=media_kind,
        max_image_bytes=max_image_bytes,
        max_video_bytes=max_video_bytes,
    )

    if media_kind == MediaKindEnum.IMAGE:
        verify_image(content, file_name=file_name)
        return

    if detect_video_format(content) is None:
        # Several containers are hard to sniff; Meta has the final say.
        logger.warning("media.unverified_video_format", extra={"file_name": file_name})
