# tracklock/main.py
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import FastAPI, Request

# Configure logging
logging.basicConfig(level=logging.INFO)

from tracklock.api.v1.api import API_V1_PREFIX, api_router
from tracklock.api.v1.dependencies import SessionVerifier
from tracklock.core.config import NO_STORE_HEADERS, SECURITY_HEADERS, StreamSettings
from tracklock.core.embed_protection import OriginGuard
from tracklock.core.key_derivation import KeyDeriver, Pbkdf2KeyDeriver
from tracklock.core.obfuscation import StreamObfuscator
from tracklock.core.playlist import PlaylistRewriter
from tracklock.core.segments import SegmentPlanner
from tracklock.core.spectrum import FrequencyAnalyzer
from tracklock.core.storage import RangeFetcher, build_fetcher
from tracklock.core.token_utils import TokenAuthority
from tracklock.crud.catalog import InMemoryTrackCatalog, TrackCatalog

logger = logging.getLogger(__name__)

# Paths whose responses carry tokens or media and must never be cached
NO_STORE_PATHS = (f"{API_V1_PREFIX}/stream/",)


@dataclass
class StreamServices:
    """Everything the endpoints need, built once per application."""
    settings: StreamSettings
    tokens: TokenAuthority
    fetcher: RangeFetcher
    planner: SegmentPlanner
    origin_guard: OriginGuard
    obfuscator: StreamObfuscator
    rewriter: PlaylistRewriter
    analyzer: FrequencyAnalyzer
    catalog: TrackCatalog
    sessions: SessionVerifier
    key_deriver: KeyDeriver
    analysis_executor: Optional[ThreadPoolExecutor] = None


def build_services(
    settings: StreamSettings,
    catalog: Optional[TrackCatalog] = None,
    fetcher: Optional[RangeFetcher] = None,
    session_verifier: Optional[SessionVerifier] = None,
    key_deriver: Optional[KeyDeriver] = None,
    clock: Optional[Callable[[], int]] = None,
) -> StreamServices:
    tokens = TokenAuthority(settings.secret_key, clock=clock)
    fetcher = fetcher or build_fetcher(settings)
    if catalog is None:
        if settings.track_catalog_path:
            catalog = InMemoryTrackCatalog.from_json_file(settings.track_catalog_path)
        else:
            logger.warning("No track catalog configured; every track lookup will 404")
            catalog = InMemoryTrackCatalog()
    return StreamServices(
        settings=settings,
        tokens=tokens,
        fetcher=fetcher,
        planner=SegmentPlanner(
            tokens,
            fetcher,
            segment_size=settings.segment_size,
            manifest_ttl_ms=settings.manifest_ttl_ms,
            clock=clock,
        ),
        origin_guard=OriginGuard(settings.is_production),
        obfuscator=StreamObfuscator(settings.obfuscation_key),
        rewriter=PlaylistRewriter(proxy_prefix=f"{API_V1_PREFIX}/proxy"),
        analyzer=FrequencyAnalyzer(settings.fft_size),
        catalog=catalog,
        sessions=session_verifier or SessionVerifier(
            settings.effective_session_secret, settings.session_algorithm
        ),
        key_deriver=key_deriver or Pbkdf2KeyDeriver(
            settings.secret_key, iterations=settings.key_derivation_iterations
        ),
    )


def create_app(
    settings: Optional[StreamSettings] = None,
    catalog: Optional[TrackCatalog] = None,
    fetcher: Optional[RangeFetcher] = None,
    session_verifier: Optional[SessionVerifier] = None,
    key_deriver: Optional[KeyDeriver] = None,
    clock: Optional[Callable[[], int]] = None,
) -> FastAPI:
    """Application factory; collaborators can be injected for tests or embedding."""
    settings = settings or StreamSettings.from_env()
    services = build_services(settings, catalog, fetcher, session_verifier, key_deriver, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles startup and shutdown events."""
        # Startup: FFT work gets its own pool so it never starves range reads
        services.analysis_executor = ThreadPoolExecutor(
            max_workers=settings.analysis_workers, thread_name_prefix="spectrum"
        )
        logger.info(
            "Stream service started (backend=%s, production=%s)",
            settings.storage_backend, settings.is_production,
        )
        try:
            yield  # ----- Application running -----
        finally:
            # Shutdown
            services.analysis_executor.shutdown(wait=False)
            services.analysis_executor = None
            await services.fetcher.aclose()
            logger.info("Stream service stopped")

    app = FastAPI(
        title="Tracklock - Tokenized Media Delivery",
        description="Short-lived signed access to audio segments, raw streams and HLS renditions.",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,  # Disable docs in production
        redoc_url="/redoc" if not settings.is_production else None,  # Disable redoc in production
    )
    app.state.services = services

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Security headers middleware"""
        response = await call_next(request)

        for header, value in SECURITY_HEADERS.items():
            if value:  # Only set if value is not None
                response.headers[header] = value

        # Endpoints may set their own policy (HLS playlists); fill in the rest
        if request.url.path.startswith(NO_STORE_PATHS):
            for header, value in NO_STORE_HEADERS.items():
                if header not in response.headers:
                    response.headers[header] = value

        # Remove server information disclosure
        if "server" in response.headers:
            del response.headers["server"]

        return response

    # Include the API router
    app.include_router(api_router, prefix=API_V1_PREFIX)
    return app
