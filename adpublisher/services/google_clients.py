from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import google.auth
from google.auth.exceptions import DefaultCredentialsError
from google.oauth2.service_account import Credentials as ServiceAccountCredentials
from googleapiclient.discovery import build

from adpublisher.config import settings

DRIVE_READONLY_SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]
_TOKEN_URI = "https://oauth2.googleapis.com/token"


def _is_service_account(info: Any) -> bool:
    return isinstance(info, dict) and "client_email" in info and "private_key" in info


def _service_account_info() -> Optional[dict[str, Any]]:
    """First service account found in: key file, inline JSON, split email/key envs."""
    key_file = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    if key_file and Path(key_file).exists():
        info = json.loads(Path(key_file).read_text(encoding="utf-8"))
        if _is_service_account(info):
            return info

    inline = os.getenv("GOOGLE_DRIVE_CREDENTIALS")
    if inline:
        info = json.loads(inline)
        if _is_service_account(info):
            return info

    email = os.getenv("GOOGLE_CLIENT_EMAIL")
    private_key = os.getenv("GOOGLE_PRIVATE_KEY")
    if email and private_key:
        # Keys pasted into env files usually carry literal "\n".
        return {"client_email": email, "private_key": private_key.replace("\\n", "\n"), "token_uri": _TOKEN_URI}
    return None


def get_drive_credentials():
    info = _service_account_info()
    if info is not None:
        creds = ServiceAccountCredentials.from_service_account_info(info, scopes=DRIVE_READONLY_SCOPES)
        if settings.GOOGLE_DRIVE_IMPERSONATE_EMAIL:
            creds = creds.with_subject(settings.GOOGLE_DRIVE_IMPERSONATE_EMAIL)
        return creds

    try:
        creds, _ = google.auth.default(scopes=DRIVE_READONLY_SCOPES)
    except DefaultCredentialsError as exc:
        raise RuntimeError(
            "Drive credentials not configured. Set GOOGLE_APPLICATION_CREDENTIALS, GOOGLE_DRIVE_CREDENTIALS "
            "or GOOGLE_CLIENT_EMAIL/GOOGLE_PRIVATE_KEY, or configure Application Default Credentials."
        ) from exc
    return creds


def get_drive_client():
    return build("drive", "v3", credentials=get_drive_credentials(), cache_discovery=False)
