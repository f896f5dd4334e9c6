"""Resolve storage keys to displayable URLs with batch-level caching.

Two modes:

- ``proxy``: URLs are derived from the key with a fixed template. No network,
  entries never go stale.
- ``signed``: all keys of a request go to the URL issuing service in one call.
  Entries are reused for ``freshness_seconds`` (well inside the signed URL's
  ``ttl_seconds``) and served stale, with the error attached, if a refresh
  fails while the URLs are still valid.

A cache entry's identity is the sorted, de-duplicated key tuple, so
``[a, b]``, ``[b, a]`` and ``[a, b, a]`` share an entry.
Writes only ever land under the identity of the request that produced them,
which makes a late response for a superseded key set harmless. The cache
holds at most ``max_entries`` batches, evicting the least recently used, and
drops signed entries past their TTL whenever it stores a new one.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

from common.config import settings
from common.logging import get_logger

from .clients import UrlIssuingService
from .errors import ConfigurationError, MissingObjectError, TransientFetchError, retry_policy
from .models import ClassifiedReference, QueryResult

LOGGER = get_logger(__name__)

MISSING_URL = ""
PROXY_MODE = "proxy"
SIGNED_MODE = "signed"


BatchIdentity = Tuple[str, ...]


def batch_identity(keys: Iterable[str]) -> BatchIdentity:
    return tuple(sorted({key for key in keys if key}))


def display_keys(refs: Iterable[ClassifiedReference]) -> List[str]:
    """Keys for the initial grid batch: thumbnails where available, full keys otherwise."""

    return sorted({ref.display_key for ref in refs if ref.display_key})


@dataclass
class _Entry:
    urls: Dict[str, str]
    fetched_at: float
    error: Optional[BaseException] = None


class UrlResolutionCache:
    def __init__(
        self,
        issuer: Optional[UrlIssuingService] = None,
        *,
        mode: Optional[str] = None,
        proxy_template: Optional[str] = None,
        proxy_base: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        freshness_seconds: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_wait: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 256,
    ) -> None:
        self._mode = mode or settings.media_url_mode
        if self._mode not in (PROXY_MODE, SIGNED_MODE):
            raise ConfigurationError(f"Unknown URL mode: {self._mode}")
        if self._mode == SIGNED_MODE and issuer is None:
            raise ConfigurationError("Signed URL mode requires a URL issuing service")
        self._issuer = issuer
        self._proxy_template = proxy_template or settings.media_proxy_url_template
        self._proxy_base = (proxy_base or settings.media_api_base).rstrip("/")
        self._ttl_seconds = ttl_seconds or settings.media_signed_url_ttl_seconds
        self._freshness = (
            freshness_seconds if freshness_seconds is not None else settings.media_url_freshness_seconds
        )
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait
        self._clock = clock
        self._max_entries = max_entries
        self._entries: "OrderedDict[BatchIdentity, _Entry]" = OrderedDict()
        self._inflight: Dict[BatchIdentity, "asyncio.Future[Dict[str, str]]"] = {}
        self.network_calls = 0

    @property
    def mode(self) -> str:
        return self._mode

    def proxy_url(self, key: str) -> str:
        return self._proxy_template.format(base=self._proxy_base, key=quote(key, safe=""))

    def _is_fresh(self, entry: _Entry) -> bool:
        if self._mode == PROXY_MODE:
            return True
        return self._clock() - entry.fetched_at < self._freshness

    def _is_valid(self, entry: _Entry) -> bool:
        return self._mode == PROXY_MODE or self._clock() - entry.fetched_at < self._ttl_seconds

    def _lookup(self, identity: BatchIdentity) -> Optional[_Entry]:
        entry = self._entries.get(identity)
        if entry is not None:
            self._entries.move_to_end(identity)
        return entry

    def _store(self, identity: BatchIdentity, urls: Dict[str, str]) -> None:
        if self._mode == SIGNED_MODE:
            for expired in [ident for ident, entry in self._entries.items() if not self._is_valid(entry)]:
                del self._entries[expired]
        self._entries[identity] = _Entry(urls=urls, fetched_at=self._clock())
        self._entries.move_to_end(identity)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, keys: Iterable[str]) -> Optional[Dict[str, str]]:
        """Cached URLs for this batch if present and still valid, without fetching."""

        entry = self._lookup(batch_identity(keys))
        if entry is not None and self._is_valid(entry):
            return entry.urls
        return None

    async def resolve(self, keys: Iterable[str]) -> Dict[str, str]:
        """Map every requested key to a URL (``MISSING_URL`` when it cannot be resolved).

        Raises :class:`TransientFetchError` only when the issuing service keeps
        failing and there is nothing cached to fall back on.
        """

        identity = batch_identity(keys)
        if not identity:
            return {}
        entry = self._lookup(identity)
        if entry is not None and self._is_fresh(entry):
            return entry.urls

        if self._mode == PROXY_MODE:
            urls = {key: self.proxy_url(key) for key in identity}
            self._store(identity, urls)
            return urls

        pending = self._inflight.get(identity)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch(identity))
            self._inflight[identity] = pending
            pending.add_done_callback(lambda _fut, ident=identity: self._inflight.pop(ident, None))
        try:
            return await asyncio.shield(pending)
        except TransientFetchError as exc:
            if entry is not None and self._is_valid(entry):
                LOGGER.warning("Serving stale signed URLs after refresh failure", keys=len(entry.urls))
                entry.error = exc
                return entry.urls
            raise

    async def _fetch(self, identity: BatchIdentity) -> Dict[str, str]:
        if self._issuer is None:
            raise ConfigurationError("Signed URL mode requires a URL issuing service")
        keys = list(identity)
        try:
            async for attempt in retry_policy(self._retry_attempts, min_wait=self._retry_wait):
                with attempt:
                    self.network_calls += 1
                    issued = await self._issuer.issue_urls(keys, self._ttl_seconds)
        except MissingObjectError:
            LOGGER.info("URL batch not found, using placeholders", keys=len(keys))
            issued = {}
        urls = {key: issued.get(key) or MISSING_URL for key in keys}
        missing = sum(1 for url in urls.values() if url == MISSING_URL)
        if missing:
            LOGGER.debug("Unresolved keys in URL batch", missing=missing, requested=len(keys))
        self._store(identity, urls)
        return urls

    async def query(self, keys: Iterable[str]) -> QueryResult[Dict[str, str]]:
        """Presentation-facing lookup: never raises for network failures."""

        keys = list(keys)
        try:
            urls = await self.resolve(keys)
            entry = self._entries.get(batch_identity(keys))
            return QueryResult(data=urls, error=entry.error if entry is not None else None)
        except TransientFetchError as exc:
            LOGGER.warning("URL resolution failed", keys=len(keys), error=str(exc))
            return QueryResult(data=self.peek(keys) or {}, error=exc)

    async def resolve_selected(self, ref: ClassifiedReference) -> str:
        """Full-size URL for a reference the user selected, resolved on demand."""

        urls = await self.resolve([ref.storage_key])
        return urls.get(ref.storage_key, MISSING_URL)

    def invalidate(self, keys: Optional[Iterable[str]] = None) -> None:
        """Forget one batch, or every batch when ``keys`` is ``None``."""

        if keys is None:
            self._entries.clear()
        else:
            self._entries.pop(batch_identity(keys), None)


__all__ = ["MISSING_URL", "UrlResolutionCache", "batch_identity", "display_keys"]
