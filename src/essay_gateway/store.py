"""Shared rotation-index store.

One integer, "the credential to try first", shared by every invocation of the
proxy. Reads fail open to 0 and writes are best-effort: a broken store must
never fail a request, it only degrades rotation to "always start at key 0".

There is no compare-and-swap. Concurrent requests can read the same index
and overwrite each other's writes; each request still judges its own
attempts independently, so results stay correct.
"""

import json
import logging
from pathlib import Path

import httpx

from essay_gateway.config import Settings

log = logging.getLogger(__name__)

_warned_no_store = False

# Quoted payloads can nest ('"\"3\""'); unwrap at most this many layers.
_MAX_UNQUOTE = 3


def parse_index(value) -> int:
    """Decode a stored index: 3, "3", '"3"' -> 3. None -> 0.

    Raises ValueError for anything that is not an integer once unquoted.
    """
    if value is None:
        return 0
    for _ in range(_MAX_UNQUOTE):
        if not isinstance(value, str):
            break
        value = json.loads(value)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"stored index is not an integer: {value!r}")
    return value


class NullIndexStore:
    """Used when no store is configured. Every request starts at key 0."""

    async def read(self) -> int:
        return 0

    async def write(self, index: int) -> None:
        return None

    async def aclose(self) -> None:
        return None


class UpstashIndexStore:
    """Upstash / Vercel KV REST API.

    GET  {url}/get/{key}  -> {"result": "\"3\""}
    POST {url}/set/{key}  body: 3

    One HTTP client is opened lazily and shared by every call until aclose().
    """

    def __init__(
        self,
        url: str,
        token: str,
        key: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._key = key
        self._headers = {"Authorization": f"Bearer {token}"}
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _ensure(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=self._headers, timeout=self._timeout, transport=self._transport
            )
        return self._client

    # Failures include httpx.InvalidURL and UnicodeEncodeError (non-ASCII token),
    # neither of which is an httpx.HTTPError.

    async def read(self) -> int:
        try:
            resp = await self._ensure().get(f"{self._url}/get/{self._key}")
            resp.raise_for_status()
            return parse_index(resp.json().get("result"))
        except Exception as e:
            log.warning("Could not read rotation index, starting at 0: %s", e)
            return 0

    async def write(self, index: int) -> None:
        try:
            resp = await self._ensure().post(
                f"{self._url}/set/{self._key}", content=json.dumps(index)
            )
            resp.raise_for_status()
        except Exception as e:
            log.warning("Could not persist rotation index %d: %s", index, e)

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()


class DiskIndexStore:
    """Rotation index in a diskcache directory, shared by processes on one host."""

    def __init__(self, directory: str, key: str):
        self._dir = directory
        self._key = key
        self._cache = None

    def _ensure(self):
        if self._cache is None:
            from diskcache import Cache

            Path(self._dir).mkdir(parents=True, exist_ok=True)
            self._cache = Cache(self._dir)
        return self._cache

    async def read(self) -> int:
        try:
            return parse_index(self._ensure().get(self._key))
        except Exception as e:
            log.warning("Could not read rotation index from %s: %s", self._dir, e)
            return 0

    async def write(self, index: int) -> None:
        try:
            self._ensure().set(self._key, index)
        except Exception as e:
            log.warning("Could not persist rotation index %d to %s: %s", index, self._dir, e)

    def close(self):
        if self._cache is not None:
            self._cache.close()
            self._cache = None

    async def aclose(self) -> None:
        self.close()


def create_store(settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
    """Pick the store from settings: KV service, then disk, then none."""
    if settings.kv_configured:
        return UpstashIndexStore(
            settings.kv_url,
            settings.kv_token,
            settings.index_key,
            timeout=settings.store_timeout,
            transport=transport,
        )
    if settings.index_dir:
        return DiskIndexStore(settings.index_dir, settings.index_key)
    global _warned_no_store
    if not _warned_no_store:
        log.warning("No rotation store configured; every request starts at key 0")
        _warned_no_store = True
    return NullIndexStore()
