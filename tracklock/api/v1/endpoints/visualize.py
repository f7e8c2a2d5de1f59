"""
Spectrum analysis for the player's visualiser.
The client posts a window of raw PCM and gets byte frequency bins back.
"""
import asyncio
import logging
from typing import Optional

import numpy as np
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from tracklock.api.v1.dependencies import check_embed_source, get_services
from tracklock.core.spectrum import (
    FrequencyAnalyzer,
    downmix_to_mono,
    pcm_from_bytes,
    window_offset_for_time,
)
from tracklock.core.validation import ValidationError, validate_content_type
from tracklock.schemas.stream import SpectrumOut

logger = logging.getLogger(__name__)
router = APIRouter()

PCM_CONTENT_TYPES = ["application/octet-stream"]
# Longest playback position a window can be centred on (24 hours)
MAX_POSITION_SECONDS = 86400.0


def _too_large(limit: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        detail=f"PCM body exceeds {limit} bytes",
    )


def _analyze(raw: bytes, encoding: str, channels: int, analyzer: FrequencyAnalyzer, offset: Optional[int]) -> np.ndarray:
    samples = pcm_from_bytes(raw, encoding)
    if channels > 1:
        usable = len(samples) - (len(samples) % channels)
        samples = downmix_to_mono(samples[:usable].reshape(-1, channels))
    return analyzer.byte_frequency_data(samples, offset)


@router.post("/spectrum", tags=["visualize"])
async def compute_spectrum(
    request: Request,
    sample_rate: int = Query(44100, gt=0, le=384000),
    fft_size: Optional[int] = Query(None),
    offset: Optional[int] = Query(None, description="First sample of the analysis window"),
    time: Optional[float] = Query(
        None, ge=0, le=MAX_POSITION_SECONDS, allow_inf_nan=False,
        description="Playback position in seconds to centre the window on",
    ),
    encoding: str = Query("f32le", pattern="^(f32le|s16le)$"),
    channels: int = Query(1, ge=1, le=8, description="Interleaved channel count"),
    services=Depends(get_services),
    _: None = Depends(check_embed_source),
):
    """
    Compute ``fft_size / 2`` byte bins (0..255) from the posted PCM.
    Without ``offset`` or ``time`` the most recent window is analysed.
    """
    settings = services.settings
    try:
        validate_content_type(request.headers.get("content-type", ""), PCM_CONTENT_TYPES)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=str(e))

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > settings.max_pcm_bytes:
        raise _too_large(settings.max_pcm_bytes)
    raw = await request.body()
    if len(raw) > settings.max_pcm_bytes:
        raise _too_large(settings.max_pcm_bytes)

    if fft_size is None or fft_size == services.analyzer.fft_size:
        analyzer = services.analyzer
    else:
        try:
            analyzer = FrequencyAnalyzer(fft_size)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if time is not None:
        offset = window_offset_for_time(time, sample_rate, analyzer.fft_size)

    loop = asyncio.get_running_loop()
    data = await loop.run_in_executor(
        services.analysis_executor, _analyze, raw, encoding, channels, analyzer, offset
    )

    out = SpectrumOut(fft_size=analyzer.fft_size, bin_count=analyzer.frequency_bin_count, data=data.tolist())
    return JSONResponse(out.model_dump(by_alias=True))
