"""Deterministic segmentation of a media object into independently signed parts."""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

from tracklock.core.storage import RangeFetcher
from tracklock.core.token_utils import TokenAuthority, segment_subject

logger = logging.getLogger(__name__)

# ~5 seconds of 128 kbps audio
DEFAULT_SEGMENT_SIZE = 80 * 1024
MANIFEST_TTL_MS = 55_000


@dataclass(frozen=True)
class SegmentDescriptor:
    index: int
    start: int
    end: int  # inclusive
    token: str

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class Manifest:
    resource_id: str
    total_size: int
    segment_size: int
    expires_at: int
    segments: List[SegmentDescriptor] = field(default_factory=list)


def segment_count(total_size: int, segment_size: int) -> int:
    return math.ceil(total_size / segment_size) if total_size > 0 else 0


def segment_bounds(index: int, segment_size: int, total_size: int) -> Optional[Tuple[int, int]]:
    """Inclusive byte bounds of segment *index*, or None past the end of the object."""
    start = index * segment_size
    if index < 0 or start >= total_size:
        return None
    return start, min(start + segment_size - 1, total_size - 1)


def tile(total_size: int, segment_size: int) -> Iterator[Tuple[int, int, int]]:
    """Yield ``(index, start, end)`` covering ``[0, total_size)`` without gaps."""
    if segment_size <= 0:
        raise ValueError("segment_size must be positive")
    for i in range(segment_count(total_size, segment_size)):
        start, end = segment_bounds(i, segment_size, total_size)
        yield i, start, end


class SegmentPlanner:
    """Builds per-session manifests where every segment carries its own token.

    Apart from token nonces the output is a pure function of the object size
    and the segment size. The manifest expiry is deliberately shorter than a
    segment token's lifetime so clients re-plan for every playback session.
    """

    def __init__(
        self,
        tokens: TokenAuthority,
        fetcher: RangeFetcher,
        segment_size: int = DEFAULT_SEGMENT_SIZE,
        manifest_ttl_ms: int = MANIFEST_TTL_MS,
        clock: Optional[Callable[[], int]] = None,
    ):
        if segment_size <= 0:
            raise ValueError("segment_size must be positive")
        self.tokens = tokens
        self.fetcher = fetcher
        self.segment_size = segment_size
        self.manifest_ttl_ms = manifest_ttl_ms
        self._clock = clock or (lambda: int(time.time() * 1000))

    async def plan(
        self,
        resource_id: str,
        segment_size: Optional[int] = None,
        *,
        storage_key: Optional[str] = None,
    ) -> Optional[Manifest]:
        """Return a manifest for *resource_id*, or None if its size is unknown.

        Tokens are bound to ``resource_id``; ``storage_key`` names the backing
        object when it differs from the public id.
        """
        size_per_segment = segment_size or self.segment_size
        if size_per_segment <= 0:
            raise ValueError("segment_size must be positive")

        key = storage_key or resource_id
        info = await self.fetcher.get_info(key)
        if not info.ok:
            logger.error(
                "Manifest not generated for %s (%s): %s",
                resource_id, info.failure.value if info.failure else "unknown", info.detail,
            )
            return None

        segments = [
            SegmentDescriptor(
                index=i,
                start=start,
                end=end,
                token=self.tokens.generate(segment_subject(resource_id, i)),
            )
            for i, start, end in tile(info.size, size_per_segment)
        ]
        return Manifest(
            resource_id=resource_id,
            total_size=info.size,
            segment_size=size_per_segment,
            expires_at=self._clock() + self.manifest_ttl_ms,
            segments=segments,
        )
