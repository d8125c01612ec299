from __future__ import annotations

import json
import logging
from typing import Any, Optional

import httpx

from adpublisher.config import settings

logger = logging.getLogger("meta.ads")

_GRAPH_NOT_FOUND_CODE = 100


class MetaAdsConfigError(RuntimeError):
    pass


class MetaAdsError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, error_payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_payload = error_payload

    @property
    def _graph_error(self) -> dict[str, Any]:
        if isinstance(self.error_payload, dict) and isinstance(self.error_payload.get("error"), dict):
            return self.error_payload["error"]
        return {}

    @property
    def graph_message(self) -> Optional[str]:
        """The user-facing Graph message, falling back to the technical one."""
        message = self._graph_error.get("error_user_msg") or self._graph_error.get("message")
        return message if isinstance(message, str) and message else None

    @property
    def is_not_found(self) -> bool:
        # Deleted objects come back as 400 with code 100 rather than 404.
        return self.status_code == 404 or self._graph_error.get("code") == _GRAPH_NOT_FOUND_CODE


def _normalize_ad_account_id(ad_account_id: str) -> str:
    if ad_account_id.startswith("act_"):
        return ad_account_id
    return f"act_{ad_account_id}"


def _encode_payload(payload: dict[str, Any]) -> dict[str, Any]:
    encoded: dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            encoded[key] = json.dumps(value)
        else:
            encoded[key] = value
    return encoded


def _error_from_response(response: httpx.Response, *, method: str, path: str) -> MetaAdsError:
    try:
        error_payload: Any = response.json()
    except ValueError:
        error_payload = {"text": response.text}
    logger.warning(
        "meta.request_failed",
        extra={"method": method, "path": path, "status_code": response.status_code},
    )
    return MetaAdsError(
        f"Meta Graph API error ({response.status_code}).",
        status_code=response.status_code,
        error_payload=error_payload,
    )


class MetaAdsClient:
    """Graph API transport for the ad account edges and ad objects the publisher touches."""

    def __init__(
        self,
        *,
        access_token: str,
        api_version: str,
        base_url: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = (base_url or "https://graph.facebook.com").rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "MetaAdsClient":
        missing = [
            name for name in ("META_ACCESS_TOKEN", "META_GRAPH_API_VERSION") if not getattr(settings, name)
        ]
        if missing:
            raise MetaAdsConfigError(f"{', '.join(missing)} required to publish Meta ads.")
        return cls(
            access_token=settings.META_ACCESS_TOKEN,
            api_version=settings.META_GRAPH_API_VERSION,
            base_url=settings.META_GRAPH_API_BASE_URL,
            timeout_seconds=settings.META_REQUEST_TIMEOUT_SECONDS,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
        files: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.request(
                    method,
                    url,
                    params={**(params or {}), "access_token": self.access_token},
                    data=data,
                    files=files,
                )
        except httpx.RequestError as exc:
            raise MetaAdsError(f"Meta Graph API request failed: {exc}") from exc

        if response.is_error:
            raise _error_from_response(response, method=method, path=path)
        try:
            return response.json()
        except ValueError as exc:
            raise MetaAdsError("Meta Graph API returned a non-JSON response.") from exc

    def _account_edge(self, ad_account_id: str, edge: str) -> str:
        return f"{_normalize_ad_account_id(ad_account_id)}/{edge}"

    def _upload(
        self,
        path: str,
        *,
        field: str,
        filename: str,
        content: bytes,
        content_type: Optional[str],
        data: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        files = {field: (filename, content, content_type or "application/octet-stream")}
        return self._request("POST", path, data=data, files=files)

    def upload_image(
        self,
        *,
        ad_account_id: str,
        filename: str,
        content: bytes,
        content_type: Optional[str] = None,
        name: Optional[str] = None,
    ) -> dict[str, Any]:
        return self._upload(
            self._account_edge(ad_account_id, "adimages"),
            field="filename",
            filename=filename,
            content=content,
            content_type=content_type,
            data=_encode_payload({"name": name}) if name else None,
        )

    def upload_video(
        self,
        *,
        ad_account_id: str,
        filename: str,
        content: bytes,
        content_type: Optional[str] = None,
        name: Optional[str] = None,
    ) -> dict[str, Any]:
        return self._upload(
            self._account_edge(ad_account_id, "advideos"),
            field="source",
            filename=filename,
            content=content,
            content_type=content_type,
            data=_encode_payload({"title": name or filename}),
        )

    def create_adcreative(self, *, ad_account_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", self._account_edge(ad_account_id, "adcreatives"), data=_encode_payload(payload))

    def create_ad(self, *, ad_account_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", self._account_edge(ad_account_id, "ads"), data=_encode_payload(payload))

    def get_object(self, object_id: str, *, fields: str) -> dict[str, Any]:
        return self._request("GET", object_id, params={"fields": fields})

    def update_object(self, object_id: str, *, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", object_id, data=_encode_payload(payload))

    def delete_object(self, object_id: str) -> dict[str, Any]:
        return self._request("DELETE", object_id)
