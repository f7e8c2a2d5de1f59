"""
Tokenized audio delivery: token grants, segment manifests, signed byte
segments and the capped raw-stream endpoints.
Every token is short lived and bound to exactly one subject, see
``tracklock.core.token_utils``.
"""
import asyncio
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Query, status
from fastapi.responses import JSONResponse, Response

from tracklock.api.v1.dependencies import (
    AccessVerdict,
    authorize_track,
    check_embed_source,
    get_access_verdict,
    get_client_ip,
    get_services,
    get_track,
    require_lobby_access,
    require_session,
)
from tracklock.core.config import NO_STORE_HEADERS
from tracklock.core.errors import StreamFailure, reject
from tracklock.core.segments import segment_bounds
from tracklock.core.token_utils import preload_supported, segment_subject, stream_subject
from tracklock.core.validation import ValidationError, resolve_byte_range, sanitize_media_filename
from tracklock.crud.catalog import TrackRecord
from tracklock.schemas.stream import ManifestOut, PreloadGrantOut, TokenGrantOut

logger = logging.getLogger(__name__)
router = APIRouter()

OBFUSCATED_MEDIA_TYPE = "application/octet-stream"
LEGACY_MEDIA_TYPE = "audio/mpeg"


def _range_not_satisfiable(size: int, context: str) -> HTTPException:
    return reject(
        StreamFailure.RANGE_UNSATISFIABLE,
        context=context,
        headers={"Content-Range": f"bytes */{size}"},
    )


async def _serve_capped_range(services, request: Request, storage_key: str, ceiling: int, context: str):
    """Fetch at most *ceiling* bytes of the requested range; returns (chunk, byte_range)."""
    info = await services.fetcher.get_info(storage_key)
    if not info.ok:
        raise reject(info.failure, context=f"{context}: {info.detail}")

    byte_range = resolve_byte_range(request.headers.get("range"), info.size, ceiling)
    if byte_range is None:
        raise _range_not_satisfiable(info.size, f"{context}: range {request.headers.get('range')!r}")

    chunk = await services.fetcher.get_range(storage_key, byte_range.start, byte_range.end)
    if not chunk.ok:
        if chunk.failure is StreamFailure.RANGE_UNSATISFIABLE:
            raise _range_not_satisfiable(chunk.size or info.size, f"{context}: {chunk.detail}")
        raise reject(chunk.failure, context=f"{context}: {chunk.detail}")
    return chunk, byte_range


@router.get("/token/{track_id}", tags=["stream"])
async def get_stream_token(
    request: Request,
    track: TrackRecord = Depends(get_track),
    verdict: AccessVerdict = Depends(require_session),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """
    Issue a full-stream token plus per-session key material for the player.
    The token is bound to the track and expires after the stream TTL.
    """
    require_lobby_access(track, verdict)

    nonce = secrets.token_hex(16)
    token = services.tokens.issue_stream(track.track_id)
    # PBKDF2 is deliberately slow, keep it off the event loop
    key_material = await asyncio.to_thread(services.key_deriver.derive, track.track_id, nonce)

    logger.info(f"Stream token issued for {track.track_id} to {verdict.subject} from {get_client_ip(request)}")
    grant = TokenGrantOut(token=token, nonce=nonce, key_material=key_material)
    return JSONResponse(grant.model_dump(by_alias=True), headers=NO_STORE_HEADERS)


@router.get("/preload/{track_id}", tags=["stream"])
async def get_preload_grant(
    track: TrackRecord = Depends(get_track),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """Mint a preload grant so preview tracks can buffer before the lobby password is entered."""
    if not track.preview:
        # Same answer as an unknown track
        raise reject(StreamFailure.RESOURCE_NOT_FOUND, context=f"preload for non-preview track {track.track_id}")
    if not preload_supported(track.lobby_id):
        raise reject(
            StreamFailure.RESOURCE_NOT_FOUND,
            context=f"preload for {track.track_id}: lobby id {track.lobby_id!r} collides with segment subjects",
        )

    token = services.tokens.issue_preload(track.track_id, track.lobby_id)
    grant = PreloadGrantOut(token=token, expires_in=services.settings.preload_token_ttl_ms // 1000)
    return JSONResponse(grant.model_dump(by_alias=True), headers=NO_STORE_HEADERS)


@router.get("/manifest/{track_id}", tags=["stream"])
async def get_manifest(
    track: TrackRecord = Depends(get_track),
    preload: Optional[str] = Query(None),
    verdict: AccessVerdict = Depends(get_access_verdict),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """
    Returns the segment manifest for a track.
    Each segment carries its own token; the manifest is never cached.
    """
    authorize_track(services, track, verdict, preload)

    manifest = await services.planner.plan(track.track_id, storage_key=track.file_key)
    if manifest is None:
        raise reject(StreamFailure.RESOURCE_NOT_FOUND, context=f"manifest for {track.track_id}")

    body = ManifestOut.model_validate(manifest).model_dump(by_alias=True)
    return JSONResponse(body, headers=NO_STORE_HEADERS)


@router.get("/segment/{track_id}/{index}", response_class=Response, tags=["stream"])
async def get_segment(
    index: str,
    request: Request,
    track: TrackRecord = Depends(get_track),
    t: Optional[str] = Query(None, description="Segment token from the manifest"),
    verdict: AccessVerdict = Depends(get_access_verdict),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """Serve one manifest segment. Preload grants are not accepted here."""
    require_lobby_access(track, verdict)

    if not (index.isascii() and index.isdigit()):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid segment index")
    segment_index = int(index)

    settings = services.settings
    result = services.tokens.verify(t, segment_subject(track.track_id, segment_index), settings.segment_token_ttl_ms)
    if not result.valid:
        raise reject(
            result.failure,
            context=f"segment {segment_index} of {track.track_id} from {get_client_ip(request)}",
        )

    info = await services.fetcher.get_info(track.file_key)
    if not info.ok:
        raise reject(info.failure, context=f"segment {segment_index} of {track.track_id}: {info.detail}")

    bounds = segment_bounds(segment_index, settings.segment_size, info.size)
    if bounds is None:
        raise reject(
            StreamFailure.RESOURCE_NOT_FOUND,
            context=f"segment {segment_index} past end of {track.track_id} ({info.size} bytes)",
        )
    start, end = bounds
    end = min(end, start + settings.segment_chunk_ceiling - 1)

    chunk = await services.fetcher.get_range(track.file_key, start, end)
    if not chunk.ok:
        raise reject(chunk.failure, context=f"segment {segment_index} of {track.track_id}: {chunk.detail}")

    logger.debug("Segment %d of %s served (%d-%d/%d)", segment_index, track.track_id, start, end, info.size)
    headers = {
        "X-Segment-Index": str(segment_index),
        "X-Segment-Start": str(start),
        "X-Segment-End": str(end),
        "X-Total-Size": str(info.size),
        "Accept-Ranges": "none",
        **NO_STORE_HEADERS,
    }
    return Response(content=chunk.data, media_type=settings.segment_content_type, headers=headers)


@router.get("/full/{track_id}", response_class=Response, tags=["stream"])
async def get_full_stream(
    request: Request,
    track: TrackRecord = Depends(get_track),
    t: Optional[str] = Query(None, description="Stream token"),
    verdict: AccessVerdict = Depends(require_session),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """
    Legacy raw stream: always 206, never more than the stream chunk ceiling,
    body XOR-scrambled so it is not recognisable as audio.
    """
    require_lobby_access(track, verdict)

    settings = services.settings
    result = services.tokens.verify(t, stream_subject(track.track_id), settings.stream_token_ttl_ms)
    if not result.valid:
        raise reject(result.failure, context=f"full stream {track.track_id} from {get_client_ip(request)}")

    chunk, byte_range = await _serve_capped_range(
        services, request, track.file_key, settings.stream_chunk_ceiling, f"full stream {track.track_id}"
    )
    headers = {
        "Content-Range": byte_range.content_range(chunk.size),
        "Accept-Ranges": "bytes",
        **NO_STORE_HEADERS,
    }
    return Response(
        content=services.obfuscator.transform(chunk.data),
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=OBFUSCATED_MEDIA_TYPE,
        headers=headers,
    )


@router.get("/media/audio/{filename}", response_class=Response, tags=["stream"])
async def get_legacy_audio(
    filename: str,
    request: Request,
    token: Optional[str] = Query(None),
    verdict: AccessVerdict = Depends(require_session),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """
    Filename-addressed stream kept for old players.
    Unlike the other endpoints it tells the client why a token was refused.
    """
    if not token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token required")

    settings = services.settings
    result = services.tokens.verify(token, stream_subject(filename), settings.stream_token_ttl_ms)
    if not result.valid:
        raise reject(
            result.failure,
            context=f"legacy stream {filename!r} from {get_client_ip(request)}",
            detail=f"Invalid token: {result.reason}",
        )

    try:
        storage_key = sanitize_media_filename(filename)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    chunk, byte_range = await _serve_capped_range(
        services, request, storage_key, settings.legacy_chunk_ceiling, f"legacy stream {storage_key}"
    )
    headers = {
        "Content-Range": byte_range.content_range(chunk.size),
        "Accept-Ranges": "bytes",
        "Content-Disposition": "inline",
        **NO_STORE_HEADERS,
    }
    return Response(
        content=chunk.data,
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=LEGACY_MEDIA_TYPE,
        headers=headers,
    )
