"""Capability interfaces consumed by the sync layer, plus their HTTP client.

The backend exposes three narrow capabilities:

- object listing   GET    /api/media/list                (cursor paginated)
- URL issuing      POST   /api/s3/bulk-download-urls
- job status       GET    /api/workflows/executions
                   DELETE /api/workflows/delete/{jobId}

Components depend on the ``Protocol`` definitions, so tests and alternative
backends can substitute any object with the same coroutine methods.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from common.config import settings
from common.http import http_client, is_transient
from common.logging import get_logger

from .errors import ConfigurationError, MediaSyncError, MissingObjectError, TransientFetchError
from .models import ObjectPage, RemoteObject

LOGGER = get_logger(__name__)

MAX_PAGES = 1000


class ObjectListingService(Protocol):
    async def list(
        self,
        scope: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        folder: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> ObjectPage: ...


class UrlIssuingService(Protocol):
    async def issue_urls(self, keys: Sequence[str], ttl_seconds: int) -> Dict[str, str]: ...


class JobStatusService(Protocol):
    async def list_jobs(self, scope: str, *, status: Optional[str] = None) -> List[Dict[str, Any]]: ...

    async def delete_job(self, job_id: str) -> bool: ...


async def drain_pages(
    service: ObjectListingService,
    scope: str,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    folder: Optional[str] = None,
) -> List[RemoteObject]:
    """Follow ``next_token`` until the listing is exhausted."""

    objects: List[RemoteObject] = []
    token: Optional[str] = None
    seen_tokens = set()
    for _ in range(MAX_PAGES):
        page = await service.list(
            scope,
            entity_type=entity_type,
            entity_id=entity_id,
            folder=folder,
            page_token=token,
        )
        objects.extend(RemoteObject.from_payload(item) for item in page.objects)
        token = page.next_token
        if not token or token in seen_tokens:
            break
        seen_tokens.add(token)
    else:
        LOGGER.warning("Object listing pagination cap reached", scope=scope, pages=MAX_PAGES)
    return objects


class MediaApiClient:
    """httpx client implementing all three capability interfaces."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        page_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        raw_base = base_url if base_url is not None else settings.media_api_base
        if not raw_base:
            raise ConfigurationError("MEDIA_API_BASE not configured")
        self._base_url = raw_base.rstrip("/")
        self._token = token if token is not None else settings.media_api_token
        self._timeout = timeout or settings.media_request_timeout
        self._page_size = page_size or settings.media_list_page_size
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with http_client(
                base_url=self._base_url,
                bearer_token=self._token,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 404:
                raise MissingObjectError(f"{method} {path} returned 404") from exc
            if is_transient(exc):
                raise TransientFetchError(f"{method} {path} returned {status}", status_code=status) from exc
            raise MediaSyncError(f"{method} {path} returned {status}") from exc
        except httpx.TransportError as exc:
            raise TransientFetchError(f"{method} {path} failed: {exc}") from exc

    async def list(
        self,
        scope: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        folder: Optional[str] = None,
        page_token: Optional[str] = None,
    ) -> ObjectPage:
        params: Dict[str, Any] = {
            "screenplayId": scope,
            "includeAllFolders": "true",
            "limit": self._page_size,
        }
        if entity_type:
            params["entityType"] = entity_type
        if entity_id:
            params["entityId"] = entity_id
        if folder:
            params["folderId"] = folder
        if page_token:
            params["nextToken"] = page_token

        try:
            response = await self._request("GET", "/api/media/list", params=params)
        except MissingObjectError:
            # No files for this scope is not an error.
            LOGGER.info("Object listing empty (404)", scope=scope, entity_type=entity_type, entity_id=entity_id)
            return ObjectPage()
        payload = response.json()
        return ObjectPage(
            objects=payload.get("files") or payload.get("objects") or [],
            next_token=payload.get("nextToken"),
        )

    async def issue_urls(self, keys: Sequence[str], ttl_seconds: int) -> Dict[str, str]:
        response = await self._request(
            "POST",
            "/api/s3/bulk-download-urls",
            json={"s3Keys": list(keys), "expiresIn": ttl_seconds},
        )
        payload = response.json()
        urls: Dict[str, str] = {}
        for item in payload.get("urls") or []:
            key = item.get("s3Key")
            url = item.get("downloadUrl")
            if key and url:
                urls[key] = url
        LOGGER.debug("Issued signed URLs", requested=len(keys), issued=len(urls))
        return urls

    async def list_jobs(self, scope: str, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"screenplayId": scope, "limit": 50}
        if status:
            params["status"] = status
        response = await self._request("GET", "/api/workflows/executions", params=params)
        payload = response.json()
        if payload.get("success") is False:
            raise MediaSyncError(f"Job listing failed: {payload.get('error', 'unknown error')}")
        data = payload.get("data") or {}
        return list(data.get("jobs") or payload.get("jobs") or [])

    async def delete_job(self, job_id: str) -> bool:
        try:
            await self._request("DELETE", f"/api/workflows/delete/{job_id}")
        except MissingObjectError:
            LOGGER.info("Job already deleted", job_id=job_id)
        return True


__all__ = [
    "JobStatusService",
    "MediaApiClient",
    "ObjectListingService",
    "UrlIssuingService",
    "drain_pages",
]
