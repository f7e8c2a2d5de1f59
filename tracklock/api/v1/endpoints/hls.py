"""
Authenticated HLS proxy: playlists are rewritten so every init map and
segment URI comes back through this router instead of the object store.
"""
import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response

from tracklock.api.v1.dependencies import (
    AccessVerdict,
    authorize_track,
    check_embed_source,
    get_access_verdict,
    get_services,
    get_track,
)
from tracklock.core.config import NO_STORE_HEADERS
from tracklock.core.errors import StreamFailure, reject
from tracklock.core.playlist import INIT_SEGMENT_NAME, is_proxy_filename
from tracklock.crud.catalog import TrackRecord

logger = logging.getLogger(__name__)
router = APIRouter()

PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
INIT_MEDIA_TYPE = "video/mp4"
SEGMENT_MEDIA_TYPE = "video/iso.segment"
SESSION_PLAYLIST_CACHE = "private, max-age=60"


def _cache_headers(via_preload: bool) -> dict:
    # Preload grants are short lived, a cached playlist would outlive them
    if via_preload:
        return dict(NO_STORE_HEADERS)
    return {"Cache-Control": SESSION_PLAYLIST_CACHE}


@router.get("/{track_id}/playlist", response_class=Response, tags=["hls"])
async def get_playlist(
    track: TrackRecord = Depends(get_track),
    preload: Optional[str] = Query(None),
    verdict: AccessVerdict = Depends(get_access_verdict),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """Returns the track's m3u8 with init and segment URIs pointing at the proxy."""
    via_preload = authorize_track(services, track, verdict, preload)

    key = track.playlist_key
    if not key:
        raise reject(StreamFailure.RESOURCE_NOT_FOUND, context=f"no HLS rendition for {track.track_id}")

    result = await services.fetcher.read_all(key)
    if not result.ok:
        raise reject(result.failure, context=f"playlist {key}: {result.detail}")

    # Forward the grant so the player's follow-up requests stay authorized
    auth_query = f"?preload={quote(preload, safe='')}" if preload else ""
    text = result.data.decode("utf-8", errors="replace")
    rewritten = services.rewriter.rewrite(text, track.track_id, auth_query)

    logger.info("Playlist served for %s (preload=%s)", track.track_id, via_preload)
    return Response(
        content=rewritten,
        media_type=PLAYLIST_MEDIA_TYPE,
        headers=_cache_headers(via_preload),
    )


@router.get("/{track_id}/segment/{filename}", response_class=Response, tags=["hls"])
async def get_hls_segment(
    filename: str,
    track: TrackRecord = Depends(get_track),
    preload: Optional[str] = Query(None),
    verdict: AccessVerdict = Depends(get_access_verdict),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """Serve ``init.mp4`` or ``segmentNNN.m4s`` from the track's HLS folder."""
    if not is_proxy_filename(filename):
        logger.warning(f"Rejected HLS filename for {track.track_id}: {filename!r}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid segment name")

    via_preload = authorize_track(services, track, verdict, preload)

    key = track.hls_file_key(filename)
    if not key:
        raise reject(StreamFailure.RESOURCE_NOT_FOUND, context=f"no HLS rendition for {track.track_id}")

    result = await services.fetcher.read_all(key)
    if not result.ok:
        raise reject(result.failure, context=f"HLS file {key}: {result.detail}")

    media_type = INIT_MEDIA_TYPE if filename == INIT_SEGMENT_NAME else SEGMENT_MEDIA_TYPE
    return Response(content=result.data, media_type=media_type, headers=_cache_headers(via_preload))
