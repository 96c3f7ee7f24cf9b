"""
Lightweight asynchronous WebDAV client.

Supports the handful of operations snapshot backups need: reachability
and write probes, directory listing, and JSON upload/download/delete.
Requests can optionally be routed through a same-origin relay (see
``cloudmark.relay``) for hosts that cannot reach the server directly.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, quote, urlparse

import aiohttp

from cloudmark.constants import (
    PROBE_FILE_PREFIX,
    RELAY_METHOD_HEADER,
    RELAY_OVERRIDE_METHODS,
    SNAPSHOT_EXTENSION,
)
from cloudmark.errors import (
    AuthError,
    CloudmarkError,
    ConfigError,
    NetworkError,
    ProtocolError,
    error_for_status,
)
from cloudmark.multistatus import parse_multistatus
from cloudmark.utils import basic_auth_header, json_dumps, log_timing, now_ms
from cloudmark.validation_cache import ValidationCache, config_key

logger = logging.getLogger(__name__)

PROPFIND_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:displayname/>
    <d:getlastmodified/>
    <d:getcontentlength/>
  </d:prop>
</d:propfind>"""


@dataclass
class SnapshotFile:
    """A snapshot as reported by the server listing."""
    name: str
    lastmod: int  # server mtime, epoch ms
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'lastmod': self.lastmod, 'size': self.size}


@dataclass
class ProbeResult:
    """Outcome of a connection probe."""
    success: bool
    error: Optional[str] = None
    can_write: Optional[bool] = None
    error_type: Optional[str] = None
    exception: Optional[CloudmarkError] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'success': self.success}
        if self.can_write is not None:
            result['can_write'] = self.can_write
        if self.error is not None:
            result['error'] = self.error
            result['error_type'] = self.error_type
        return result

    def raise_for_failure(self):
        """Re-raise the classified error of a failed probe."""
        if self.success:
            return
        if self.exception is not None:
            raise self.exception
        raise ProtocolError(self.error or "WebDAV validation failed")


@dataclass
class DavResponse:
    status: int
    headers: Dict[str, str]
    body: bytes

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class WebDAVClient:
    """
    Authenticated client for one WebDAV collection.

    Usage:
        async with WebDAVClient(url, user, password, cache=cache) as client:
            files = await client.list()
    """

    def __init__(self, url: str, username: str = "", password: str = "",
                 cache: Optional[ValidationCache] = None,
                 relay_url: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        # Trailing slash so names can be appended directly
        url = (url or "").strip()
        self.url = url.rstrip("/") + "/" if url else ""
        self.username = username or ""
        self.password = password or ""
        self.cache = cache if cache is not None else ValidationCache()
        self.relay_url = relay_url
        self._session = session
        self._owns_session = session is None
        self._cache_key = config_key(self.url, self.username, self.password)

    @classmethod
    def from_settings(cls, webdav, cache: Optional[ValidationCache] = None,
                      relay_url: Optional[str] = None,
                      session: Optional[aiohttp.ClientSession] = None) -> "WebDAVClient":
        """Build a client from a ``WebDavSettings``."""
        return cls(webdav.url, webdav.username, webdav.password,
                   cache=cache, relay_url=relay_url, session=session)

    async def __aenter__(self) -> "WebDAVClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # No per-call timeout: callers bound long operations themselves
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None),
                headers={'User-Agent': 'cloudmark/1.0'}
            )
            self._owns_session = True
        return self._session

    def auth_header(self) -> Dict[str, str]:
        return basic_auth_header(self.username, self.password)

    def file_url(self, name: str) -> str:
        return self.url + quote(name, safe="")

    async def _request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                       body: Optional[bytes] = None) -> DavResponse:
        """
        Send one request, directly or through the relay.

        Raises:
            NetworkError: The server (or relay) could not be reached
            ConfigError: The URL is not usable
        """
        headers = dict(headers or {})
        request_method = method
        target = url
        params = None
        if self.relay_url:
            params = {'url': url}
            target = self.relay_url
            if method.upper() in RELAY_OVERRIDE_METHODS:
                headers[RELAY_METHOD_HEADER] = method.upper()
                request_method = "POST"

        mode = "relay" if self.relay_url else "direct"
        session = self._get_session()
        try:
            async with session.request(request_method, target, headers=headers,
                                       data=body, params=params) as response:
                payload = await response.read()
                logger.debug(f"HTTP {method} ({mode}) {url} -> {response.status}")
                return DavResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    body=payload,
                )
        except aiohttp.InvalidURL as e:
            raise ConfigError(f"Invalid WebDAV URL: {e}") from e
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Network error: cannot connect to {url}: {e}") from e
        except aiohttp.ClientError as e:
            raise ProtocolError(f"WebDAV request {method} {url} failed: {e}") from e

    def _validate_url(self):
        if not self.url:
            raise ConfigError("WebDAV URL is not configured")
        parsed = urlparse(self.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"Invalid WebDAV URL: {self.url}")

    async def probe_reachable(self, force: bool = False, test_write: bool = False) -> ProbeResult:
        """
        Check that the server is reachable and accepts the credentials.

        Successful results are cached per configuration; ``force`` skips
        the cache. Failures are returned, not raised, and evict the entry.

        Args:
            force: Revalidate even if a cached result exists
            test_write: Also probe write permission

        Returns:
            ProbeResult with the classified error on failure
        """
        if not force:
            cached = self.cache.get(self._cache_key)
            if cached is not None:
                logger.debug("Using cached WebDAV validation")
                return ProbeResult(
                    success=cached.get('success', False),
                    can_write=cached.get('can_write'),
                    error=cached.get('error'),
                )

        try:
            with log_timing(logger, "WebDAV validation"):
                self._validate_url()

                head = await self._request("HEAD", self.url, headers=self.auth_header())
                if head.status == 401:
                    raise AuthError("Authentication failed: wrong username or password", 401)
                if head.status == 403:
                    raise AuthError("Permission denied: no access to this location", 403)
                if head.status >= 400:
                    raise ProtocolError(f"Server error: {head.status}", head.status)

                propfind = await self._request("PROPFIND", self.url, headers={
                    'Accept': '*/*',
                    'Content-Type': 'application/xml; charset=utf-8',
                    'Depth': '1',
                    **self.auth_header(),
                })
                if propfind.status == 401:
                    raise AuthError("WebDAV authentication failed: wrong username or password", 401)
                if propfind.status == 403:
                    raise AuthError("WebDAV permission denied: no directory access", 403)
                # 405: server is there but PROPFIND is disabled
                if propfind.status >= 400 and propfind.status != 405:
                    raise ProtocolError(f"WebDAV error: {propfind.status}", propfind.status)

                can_write = await self._probe_write() if test_write else None
        except CloudmarkError as e:
            self.cache.invalidate(self._cache_key)
            return ProbeResult(success=False, error=str(e), error_type=type(e).__name__, exception=e)

        result = ProbeResult(success=True, can_write=can_write)
        self.cache.set(self._cache_key, result.to_dict())
        return result

    async def test_authentication(self) -> ProbeResult:
        """Strict connection test: forced revalidation plus a write probe."""
        return await self.probe_reachable(force=True, test_write=True)

    def clear_validation_cache(self):
        self.cache.invalidate(self._cache_key)

    async def probe_writable(self) -> bool:
        """
        Upload and delete a throwaway file.

        Returns:
            True if the upload succeeded; any failure yields False
        """
        reachable = await self.probe_reachable()
        if not reachable.success:
            return False
        return await self._probe_write()

    async def _probe_write(self) -> bool:
        name = f"{PROBE_FILE_PREFIX}{now_ms()}{SNAPSHOT_EXTENSION}"
        url = self.file_url(name)
        try:
            put = await self._request("PUT", url, headers={
                'Content-Type': 'application/json',
                **self.auth_header(),
            }, body=json_dumps({'ts': now_ms()}).encode("utf-8"))
        except CloudmarkError as e:
            logger.info(f"Write probe failed: {e}")
            return False
        if put.status >= 400:
            logger.info(f"Write probe rejected: PUT {put.status}")
            return False

        try:
            await self._request("DELETE", url, headers=self.auth_header())
        except CloudmarkError as e:
            logger.warning(f"Could not remove probe file {name}: {e}")
        return True

    async def list(self) -> List[SnapshotFile]:
        """
        List ``.json`` files in the collection, newest server mtime first.

        Listing is best-effort: any failure yields an empty list.
        """
        try:
            with log_timing(logger, "PROPFIND listing"):
                response = await self._request("PROPFIND", self.url, headers={
                    'Accept': '*/*',
                    'Content-Type': 'application/xml; charset=utf-8',
                    'Depth': '1',
                    **self.auth_header(),
                }, body=PROPFIND_BODY.encode("utf-8"))
                if response.status >= 400:
                    raise error_for_status(response.status, f"Listing failed: {response.status}")
        except CloudmarkError as e:
            logger.info(f"No listing available, returning empty list: {e}")
            return []

        entries = parse_multistatus(response.text())
        if not entries:
            return []

        # The collection itself is the entry with the shortest href
        hrefs = sorted((e.href for e in entries if e.href), key=len)
        base_href = hrefs[0] if hrefs else ""
        base_decoded = unquote(base_href)

        files = []
        for entry in entries:
            if (entry.href or "") == base_href:
                continue
            href = unquote(entry.href or "")
            if base_decoded and href.startswith(base_decoded):
                name = href[len(base_decoded):]
            else:
                parts = [p for p in href.split("/") if p]
                name = parts[-1] if parts else ""
            name = name.rstrip("/")
            if name and name.lower().endswith(SNAPSHOT_EXTENSION):
                files.append(SnapshotFile(name=name, lastmod=entry.lastmod, size=entry.size))

        files.sort(key=lambda f: f.lastmod, reverse=True)
        logger.debug(f"Listed {len(files)} snapshot(s) out of {len(entries)} entries")
        return files

    async def upload(self, name: str, payload: Any) -> bool:
        """
        Upload a JSON payload under ``name``.

        Raises:
            DavError: Status >= 400 or transport failure
        """
        body = json_dumps(payload).encode("utf-8")
        with log_timing(logger, f"Upload [{name}] ({len(body)} bytes)"):
            response = await self._request("PUT", self.file_url(name), headers={
                'Content-Type': 'application/json',
                **self.auth_header(),
            }, body=body)
            if response.status >= 400:
                raise error_for_status(response.status, f"Upload failed: {response.status}")
        return True

    async def download(self, name: str) -> Any:
        """
        Download and decode a JSON file.

        Raises:
            DavError: Status >= 400, transport failure or invalid JSON
        """
        with log_timing(logger, f"Download [{name}]"):
            response = await self._request("GET", self.file_url(name), headers=self.auth_header())
            if response.status >= 400:
                raise error_for_status(response.status, f"Download failed: {response.status}")
            try:
                return json.loads(response.body.decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as e:
                raise ProtocolError(f"Snapshot {name} is not valid JSON: {e}", response.status) from e

    async def remove(self, name: str) -> bool:
        """
        Delete a file.

        Raises:
            DavError: Status >= 400 or transport failure
        """
        with log_timing(logger, f"Delete [{name}]"):
            response = await self._request("DELETE", self.file_url(name), headers=self.auth_header())
            if response.status >= 400:
                raise error_for_status(response.status, f"Delete failed: {response.status}")
        return True
