"""Feature service client - typed wrapper over the REST query/attachment endpoints.

Usage:
    async with FeatureServiceClient(FeatureServiceConfig.from_settings(settings)) as fs:
        rows = await fs.query(0, "CA = 'CA-001'")
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from ..errors import DataShapeError, RemoteServiceError, RemoteTransientError
from .base import AttachmentInfo
from .filters import FieldFilter, all_of, to_where

logger = logging.getLogger(__name__)

_LAYER_SUFFIX_RE = re.compile(r"/\d+/?$")
_TOKEN_REFRESH_MARGIN_SECONDS = 60
# Service-level codes for expired/invalid tokens.
_TOKEN_ERROR_CODES = {498, 499}


@dataclass
class FeatureServiceConfig:
    """Feature service connection settings."""

    service_url: str
    portal_url: str = "https://www.arcgis.com"
    username: str | None = None
    password: str | None = None
    token_expiration_minutes: int = 60
    timeout_seconds: float = 30.0
    page_size: int = 1000
    max_pages: int = 1000

    @classmethod
    def from_settings(cls, settings) -> "FeatureServiceConfig":
        if not settings.has_credentials and (settings.remote_username or settings.remote_password):
            logger.warning("Remote username and password must both be set; querying anonymously")
        return cls(
            service_url=settings.feature_service_url,
            portal_url=settings.portal_url,
            username=settings.remote_username if settings.has_credentials else None,
            password=settings.remote_password if settings.has_credentials else None,
            token_expiration_minutes=settings.token_expiration_minutes,
            timeout_seconds=settings.http_timeout_seconds,
            page_size=settings.query_page_size,
        )


def _is_transient_status(status: int | None) -> bool:
    return status is not None and (status >= 500 or status == 429)


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    message = f"HTTP {resp.status_code} from {resp.request.url.path}"
    if _is_transient_status(resp.status_code):
        raise RemoteTransientError(message, status_code=resp.status_code)
    raise RemoteServiceError(message, status_code=resp.status_code)


def _raise_for_service_error(data: Any) -> None:
    """Feature services report most failures as HTTP 200 with an `error` body."""
    if not isinstance(data, dict):
        raise RemoteServiceError("unexpected response shape")
    error = data.get("error")
    if not error:
        return
    code = error.get("code") if isinstance(error, dict) else None
    message = (error.get("message") if isinstance(error, dict) else None) or str(error)
    code = code if isinstance(code, int) else None
    if _is_transient_status(code):
        raise RemoteTransientError(message, status_code=code)
    raise RemoteServiceError(message, status_code=code)


class FeatureServiceClient:
    """Authenticated access to a parent layer and its related tables."""

    def __init__(self, config: FeatureServiceConfig, *, client: httpx.AsyncClient | None = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(config.timeout_seconds),
        )
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()
        self._layer_info: dict[int, dict[str, Any]] = {}
        # Attachment entries dropped by list_attachments for a bad shape.
        self.malformed_attachments = 0

    async def __aenter__(self) -> "FeatureServiceClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def layer_url(self, layer_id: int) -> str:
        base = (self.config.service_url or "").strip()
        if not base:
            raise RemoteServiceError("feature service URL is not configured")
        if _LAYER_SUFFIX_RE.search(base):
            return _LAYER_SUFFIX_RE.sub(f"/{layer_id}", base)
        return f"{base.rstrip('/')}/{layer_id}"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def _get_token(self) -> str | None:
        if not (self.config.username and self.config.password):
            return None

        async with self._token_lock:
            now = time.time()
            if self._token and now < self._token_expires_at - _TOKEN_REFRESH_MARGIN_SECONDS:
                return self._token

            url = f"{self.config.portal_url.rstrip('/')}/sharing/rest/generateToken"
            form = {
                "username": self.config.username,
                "password": self.config.password,
                "client": "referer",
                "referer": self.config.portal_url,
                "expiration": str(self.config.token_expiration_minutes),
                "f": "json",
            }
            data = await self._request_json("POST", url, data=form)
            token = data.get("token")
            if not isinstance(token, str) or not token:
                # Public services answer without a token.
                logger.warning("Token generation returned no token; continuing anonymously")
                return None

            expires = data.get("expires")
            if isinstance(expires, (int, float)):
                self._token_expires_at = expires / 1000.0
            else:
                self._token_expires_at = now + self.config.token_expiration_minutes * 60
            self._token = token
            logger.debug("Generated feature service token")
            return token

    def _invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _auth_params(self) -> dict[str, str]:
        token = await self._get_token()
        return {"token": token} if token else {}

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request_json(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise RemoteTransientError(f"timeout calling {url}") from e
        except httpx.TransportError as e:
            raise RemoteTransientError(f"connection error calling {url}: {e}") from e

        _raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise RemoteServiceError(f"invalid JSON from {url}") from e
        _raise_for_service_error(data)
        return data

    async def _authed_json(self, method: str, url: str, params: dict[str, Any]) -> dict[str, Any]:
        """Call with a token; retry once with a fresh token if the service rejects it."""
        for attempt in range(2):
            payload = {"f": "json", **params, **(await self._auth_params())}
            try:
                if method == "POST":
                    return await self._request_json(method, url, data=payload)
                return await self._request_json(method, url, params=payload)
            except RemoteServiceError as e:
                if attempt == 0 and e.status_code in _TOKEN_ERROR_CODES and self._token:
                    self._invalidate_token()
                    continue
                raise
        raise RemoteServiceError(f"token rejected by {url}")

    # ------------------------------------------------------------------
    # Layer metadata
    # ------------------------------------------------------------------

    async def layer_info(self, layer_id: int) -> dict[str, Any]:
        cached = self._layer_info.get(layer_id)
        if cached is not None:
            return cached
        data = await self._authed_json("GET", self.layer_url(layer_id), {})
        if isinstance(data.get("fields"), list):
            self._layer_info[layer_id] = data
        return data

    async def identity_fields(self, layer_id: int = 0) -> tuple[str, str]:
        """Detect (object id field, global id field) from layer metadata."""
        info = await self.layer_info(layer_id)
        fields = [f for f in info.get("fields") or [] if isinstance(f, dict)]

        oid_field = info.get("objectIdField")
        if not oid_field:
            oid_field = next((f["name"] for f in fields if f.get("type") == "esriFieldTypeOID"), None)
        if not oid_field:
            oid_field = next(
                (f["name"] for f in fields if str(f.get("name", "")).lower() == "objectid"), None
            )

        gid_field = info.get("globalIdField")
        if not gid_field:
            gid_field = next(
                (f["name"] for f in fields if f.get("type") == "esriFieldTypeGlobalID"), None
            )
        if not gid_field:
            gid_field = next(
                (f["name"] for f in fields if str(f.get("name", "")).lower() == "globalid"), None
            )

        if not oid_field or not gid_field:
            raise RemoteServiceError(f"could not detect object id / global id fields for layer {layer_id}")
        return oid_field, gid_field

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query(self, layer_id: int, where: str, *, out_fields: str = "*") -> list[dict[str, Any]]:
        """Return attribute dicts for every matching feature, following pagination."""
        url = f"{self.layer_url(layer_id)}/query"
        page_size = max(1, int(self.config.page_size))
        rows: list[dict[str, Any]] = []
        offset = 0

        for _ in range(self.config.max_pages):
            data = await self._authed_json(
                "POST",
                url,
                {
                    "where": where or "1=1",
                    "outFields": out_fields,
                    "returnGeometry": "false",
                    "resultOffset": offset,
                    "resultRecordCount": page_size,
                },
            )
            features = data.get("features") or []
            batch = [
                f.get("attributes") or {}
                for f in features
                if isinstance(f, dict)
            ]
            rows.extend(batch)

            if not batch or not data.get("exceededTransferLimit"):
                break
            offset += len(batch)

        logger.debug("Layer %s query returned %d rows", layer_id, len(rows))
        return rows

    async def distinct_values(self, field: str, search: str = "", *, layer_id: int = 0) -> list[str]:
        """Distinct non-null values of `field`, optionally filtered by substring."""
        flt = all_of(
            FieldFilter(field, "not_null"),
            FieldFilter(field, "ilike", f"%{search.strip()}%") if search and search.strip() else None,
        )
        data = await self._authed_json(
            "POST",
            f"{self.layer_url(layer_id)}/query",
            {
                "where": to_where(flt),
                "outFields": field,
                "returnDistinctValues": "true",
                "returnGeometry": "false",
                "orderByFields": field,
            },
        )
        values = {
            str(attrs[field])
            for f in data.get("features") or []
            if isinstance(f, dict)
            for attrs in [f.get("attributes") or {}]
            if attrs.get(field) is not None
        }
        return sorted(values)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def list_attachments(self, layer_id: int, object_id: int) -> list[AttachmentInfo]:
        url = f"{self.layer_url(layer_id)}/{object_id}/attachments"
        data = await self._authed_json("GET", url, {})
        infos: list[AttachmentInfo] = []
        for item in data.get("attachmentInfos") or []:
            try:
                if not isinstance(item, dict):
                    raise DataShapeError(f"attachment entry is not an object: {item!r}")
                infos.append(AttachmentInfo.from_payload(item))
            except DataShapeError as e:
                self.malformed_attachments += 1
                logger.warning("Skipping attachment of layer %s object %s: %s", layer_id, object_id, e)
        return infos

    async def iter_attachment(
        self, layer_id: int, object_id: int, attachment_id: int
    ) -> AsyncIterator[bytes]:
        url = f"{self.layer_url(layer_id)}/{object_id}/attachments/{attachment_id}"
        params = await self._auth_params()
        try:
            async with self._client.stream("GET", url, params=params) as resp:
                _raise_for_status(resp)
                async for chunk in resp.aiter_bytes():
                    yield chunk
        except httpx.TimeoutException as e:
            raise RemoteTransientError(f"timeout downloading {url}") from e
        except httpx.TransportError as e:
            raise RemoteTransientError(f"connection error downloading {url}: {e}") from e
