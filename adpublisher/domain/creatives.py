from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from adpublisher.db.enums import AspectRatioEnum, MediaKindEnum, UploadStatusEnum


@dataclass(frozen=True)
class ImageRef:
    hash: str

    @property
    def kind(self) -> MediaKindEnum:
        return MediaKindEnum.IMAGE


@dataclass(frozen=True)
class VideoRef:
    video_id: str

    @property
    def kind(self) -> MediaKindEnum:
        return MediaKindEnum.VIDEO


MediaRef = Union[ImageRef, VideoRef]


UPLOAD_TRANSITIONS: dict[UploadStatusEnum, frozenset[UploadStatusEnum]] = {
    UploadStatusEnum.pending: frozenset({UploadStatusEnum.uploading}),
    UploadStatusEnum.uploading: frozenset({UploadStatusEnum.uploaded, UploadStatusEnum.error}),
    UploadStatusEnum.uploaded: frozenset({UploadStatusEnum.uploading}),
    UploadStatusEnum.error: frozenset({UploadStatusEnum.uploading}),
}


@dataclass
class InvalidUploadTransition(ValueError):
    current: UploadStatusEnum
    target: UploadStatusEnum

    def __str__(self) -> str:
        return f"Invalid upload transition {self.current.value} -> {self.target.value}"


def ensure_transition(current: UploadStatusEnum, target: UploadStatusEnum) -> None:
    if target not in UPLOAD_TRANSITIONS[current]:
        raise InvalidUploadTransition(current=current, target=target)


@dataclass
class UploadAttempt:
    """
    One dispatch of an asset to the ad platform.

    Starts from the ledger row's stored status (pending when no row exists) and
    only moves along UPLOAD_TRANSITIONS. The ledger persists an attempt only once
    it reaches `uploaded`, so a failed attempt never touches the stored row.
    """

    package_id: int
    variant: int
    aspect_ratio: AspectRatioEnum
    drive_file_id: str
    status: UploadStatusEnum = UploadStatusEnum.pending
    media: Optional[MediaRef] = None
    error: Optional[str] = None
    history: list[UploadStatusEnum] = field(default_factory=list)

    def _move(self, target: UploadStatusEnum) -> None:
        ensure_transition(self.status, target)
        self.history.append(self.status)
        self.status = target

    def begin(self) -> None:
        self._move(UploadStatusEnum.uploading)

    def succeed(self, media: MediaRef) -> None:
        self._move(UploadStatusEnum.uploaded)
        self.media = media
        self.error = None

    def fail(self, message: str) -> None:
        self._move(UploadStatusEnum.error)
        self.media = None
        self.error = message
