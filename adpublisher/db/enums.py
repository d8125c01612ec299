from enum import Enum


class AspectRatioEnum(str, Enum):
    feed = "4x5"
    vertical = "9x16"


class MediaKindEnum(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


class UploadStatusEnum(str, Enum):
    pending = "pending"
    uploading = "uploading"
    uploaded = "uploaded"
    error = "error"


class AdStatusEnum(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DELETED = "DELETED"


class MarketingStatusEnum(str, Enum):
    pending = "pending"
    copy_generated = "copy_generated"
    active = "active"
