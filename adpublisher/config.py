from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_package_root = Path(__file__).resolve().parent
_project_root = _package_root.parent
load_dotenv(_project_root / ".env", override=False)
load_dotenv(_package_root / ".env", override=True)


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    DATABASE_URL: str

    DB_POOL_SIZE: int = 10
    DB_POOL_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    BACKEND_CORS_ORIGINS: Annotated[list[str], NoDecode] = []

    META_GRAPH_API_VERSION: str | None = "v21.0"
    META_GRAPH_API_BASE_URL: str = "https://graph.facebook.com"
    META_ACCESS_TOKEN: str | None = None
    META_AD_ACCOUNT_ID: str | None = None
    META_PAGE_ID: str | None = None
    META_INSTAGRAM_USER_ID: str | None = None
    META_PIXEL_ID: str | None = None
    META_CLICK_TO_MESSAGE_URL: str = "https://api.whatsapp.com/send"
    META_DEFAULT_AD_STATUS: str = "ACTIVE"
    META_REQUEST_TIMEOUT_SECONDS: float = 30.0

    GOOGLE_DRIVE_FOLDER_ID: str | None = None
    GOOGLE_DRIVE_IMPERSONATE_EMAIL: str | None = None
    DRIVE_LISTING_CACHE_TTL_SECONDS: float = 60.0

    # Courtesy pauses between external calls; not a retry policy.
    CREATIVE_UPLOAD_DELAY_SECONDS: float = 0.5
    AD_PUBLISH_DELAY_SECONDS: float = 0.5
    CREATIVE_UPLOAD_MAX_ATTEMPTS: int = 3
    CREATIVE_UPLOAD_RETRY_BASE_SECONDS: float = 2.0
    CREATIVE_MAX_IMAGE_BYTES: int = 30 * 1024 * 1024
    CREATIVE_MAX_VIDEO_BYTES: int = 4 * 1024 * 1024 * 1024

    # Inbound replies are attributed to the package through this message.
    CTA_MESSAGE_TEMPLATE: str = "Hola! Quiero mas info de la promo SIV {external_id} (no borrar)"

    PROGRESS_CHANNEL_BUFFER: int = 256

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
