"""Byte-range access to media objects.

Two interchangeable backends implement the same ``RangeFetcher`` contract:

* ``LocalRangeFetcher``  - files under a media root, read with seek + exact read
  on a bounded thread pool so slow disks never block the event loop.
* ``HttpRangeFetcher``   - an object store reachable over HTTP (S3/R2 public or
  presigned gateway), read with ``Range: bytes=a-b`` through httpx.

The backend is picked once at composition time (``build_fetcher``). Both return
``FetchResult`` values rather than raising, so callers handle every failure kind
explicitly. Ranges are inclusive on both ends.
"""
from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from tracklock.core.config import StreamSettings
from tracklock.core.errors import StreamFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    ok: bool
    size: int = 0
    data: bytes = b""
    failure: Optional[StreamFailure] = None
    detail: str = ""

    @classmethod
    def info(cls, size: int) -> "FetchResult":
        return cls(ok=True, size=size)

    @classmethod
    def chunk(cls, data: bytes, size: int) -> "FetchResult":
        return cls(ok=True, size=size, data=data)

    @classmethod
    def fail(cls, failure: StreamFailure, detail: str = "", size: int = 0) -> "FetchResult":
        return cls(ok=False, size=size, failure=failure, detail=detail)


def check_range(start: int, end: int, size: int) -> Optional[FetchResult]:
    """Return a failure for an unsatisfiable range, or None if it can be served."""
    if start < 0 or end < start or start >= size:
        return FetchResult.fail(
            StreamFailure.RANGE_UNSATISFIABLE,
            f"bytes={start}-{end} of {size}",
            size=size,
        )
    return None


class RangeFetcher(ABC):
    """Capability contract shared by every storage backend."""

    @abstractmethod
    async def get_info(self, key: str) -> FetchResult:
        """Return the object's size (``FetchResult.size``) or a failure."""

    @abstractmethod
    async def get_range(self, key: str, start: int, end: int) -> FetchResult:
        """Return exactly ``end - start + 1`` bytes starting at *start*.

        *end* past the last byte is clamped to ``size - 1``; ``start >= size``
        or ``end < start`` is ``RangeUnsatisfiable``.
        """

    async def read_all(self, key: str) -> FetchResult:
        """Fetch a whole (small) object, e.g. a playlist or an HLS segment."""
        info = await self.get_info(key)
        if not info.ok:
            return info
        if info.size == 0:
            return FetchResult.chunk(b"", 0)
        return await self.get_range(key, 0, info.size - 1)

    async def aclose(self) -> None:
        """Release pools or connections held by the backend."""


class LocalRangeFetcher(RangeFetcher):
    """Reads media files below *root*; keys are paths relative to it."""

    def __init__(self, root: str, max_workers: int = 8, executor: Optional[ThreadPoolExecutor] = None):
        self.root = Path(root).resolve()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="range-io"
        )

    def _resolve(self, key: str) -> Optional[Path]:
        # Keys must stay inside the media root
        if not key or "\x00" in key:
            return None
        candidate = (self.root / key).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            logger.warning("Path traversal attempt blocked for key %r", key)
            return None
        return candidate

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _stat(self, path: Path) -> FetchResult:
        try:
            if not path.is_file():
                return FetchResult.fail(StreamFailure.RESOURCE_NOT_FOUND, str(path))
            return FetchResult.info(path.stat().st_size)
        except OSError as exc:
            return FetchResult.fail(StreamFailure.UPSTREAM_FETCH_FAILURE, f"{path}: {exc}")

    def _read(self, path: Path, start: int, end: int) -> FetchResult:
        try:
            size = os.path.getsize(path)
            invalid = check_range(start, end, size)
            if invalid:
                return invalid
            end = min(end, size - 1)
            length = end - start + 1
            with open(path, "rb") as f:
                f.seek(start)
                data = f.read(length)
        except FileNotFoundError:
            return FetchResult.fail(StreamFailure.RESOURCE_NOT_FOUND, str(path))
        except OSError as exc:
            return FetchResult.fail(StreamFailure.UPSTREAM_FETCH_FAILURE, f"{path}: {exc}")

        if len(data) != length:
            # File shrank between stat and read
            return FetchResult.fail(
                StreamFailure.UPSTREAM_FETCH_FAILURE,
                f"{path}: short read {len(data)} of {length} bytes",
            )
        return FetchResult.chunk(data, size)

    async def get_info(self, key: str) -> FetchResult:
        path = self._resolve(key)
        if path is None:
            return FetchResult.fail(StreamFailure.RESOURCE_NOT_FOUND, f"invalid key {key!r}")
        return await self._run(self._stat, path)

    async def get_range(self, key: str, start: int, end: int) -> FetchResult:
        path = self._resolve(key)
        if path is None:
            return FetchResult.fail(StreamFailure.RESOURCE_NOT_FOUND, f"invalid key {key!r}")
        return await self._run(self._read, path, start, end)

    async def aclose(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)


def _total_from_content_range(header: Optional[str]) -> Optional[int]:
    # "bytes 0-99/1234" -> 1234
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


class HttpRangeFetcher(RangeFetcher):
    """Object-store backend speaking plain HTTP range requests.

    Keys are appended to *base_url*. A shared ``httpx.AsyncClient`` keeps
    connections alive across requests; pass your own (e.g. with a
    ``MockTransport``) to control transport and auth headers.
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, key: str) -> str:
        return f"{self.base_url}/{key.lstrip('/')}"

    async def get_info(self, key: str) -> FetchResult:
        url = self._url(key)
        try:
            response = await self._client.head(url)
        except httpx.HTTPError as exc:
            return FetchResult.fail(StreamFailure.UPSTREAM_FETCH_FAILURE, f"HEAD {url}: {exc!r}")

        if response.status_code == 404:
            return FetchResult.fail(StreamFailure.RESOURCE_NOT_FOUND, f"HEAD {url}")
        if response.status_code != 200:
            return FetchResult.fail(
                StreamFailure.UPSTREAM_FETCH_FAILURE, f"HEAD {url}: status {response.status_code}"
            )
        length = response.headers.get("content-length")
        if length is None or not length.isdigit():
            return FetchResult.fail(
                StreamFailure.UPSTREAM_FETCH_FAILURE, f"HEAD {url}: missing content-length"
            )
        return FetchResult.info(int(length))

    async def get_range(self, key: str, start: int, end: int) -> FetchResult:
        url = self._url(key)
        if start < 0 or end < start:
            return FetchResult.fail(StreamFailure.RANGE_UNSATISFIABLE, f"bytes={start}-{end}")
        try:
            response = await self._client.get(url, headers={"Range": f"bytes={start}-{end}"})
        except httpx.HTTPError as exc:
            return FetchResult.fail(StreamFailure.UPSTREAM_FETCH_FAILURE, f"GET {url}: {exc!r}")

        if response.status_code == 404:
            return FetchResult.fail(StreamFailure.RESOURCE_NOT_FOUND, f"GET {url}")
        if response.status_code == 416:
            size = _total_from_content_range(response.headers.get("content-range")) or 0
            return FetchResult.fail(StreamFailure.RANGE_UNSATISFIABLE, f"GET {url} bytes={start}-{end}", size=size)
        if response.status_code == 206:
            size = _total_from_content_range(response.headers.get("content-range"))
            if size is None:
                return FetchResult.fail(
                    StreamFailure.UPSTREAM_FETCH_FAILURE, f"GET {url}: unusable content-range"
                )
            data = response.content
            expected = min(end, size - 1) - start + 1
            if len(data) != expected:
                return FetchResult.fail(
                    StreamFailure.UPSTREAM_FETCH_FAILURE,
                    f"GET {url}: got {len(data)} bytes, expected {expected}",
                )
            return FetchResult.chunk(data, size)
        if response.status_code == 200:
            # Origin ignored the Range header and sent the whole object
            body = response.content
            invalid = check_range(start, end, len(body))
            if invalid:
                return invalid
            return FetchResult.chunk(body[start:min(end, len(body) - 1) + 1], len(body))

        return FetchResult.fail(
            StreamFailure.UPSTREAM_FETCH_FAILURE, f"GET {url}: status {response.status_code}"
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_fetcher(settings: StreamSettings) -> RangeFetcher:
    """Pick the storage backend named in *settings*."""
    if settings.storage_backend == "http":
        logger.info("Using HTTP object store backend at %s", settings.object_store_url)
        return HttpRangeFetcher(settings.object_store_url, timeout=settings.object_store_timeout)
    logger.info("Using local media backend at %s", settings.media_root)
    return LocalRangeFetcher(settings.media_root, max_workers=settings.io_workers)
