# tracklock/core/config.py
import os
import logging
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

class SecurityConfigError(Exception):
    """Raised when security configuration is invalid"""
    pass

def validate_secret_key(key: Optional[str]) -> str:
    """Validate SECRET_KEY meets security requirements"""
    if not key:
        raise SecurityConfigError("SECRET_KEY environment variable is required")

    if len(key) < 32:
        raise SecurityConfigError("SECRET_KEY must be at least 32 characters long")

    # Check complexity
    has_upper = any(c.isupper() for c in key)
    has_lower = any(c.islower() for c in key)
    has_digit = any(c.isdigit() for c in key)
    has_special = any(not c.isalnum() for c in key)

    if not (has_upper and has_lower and has_digit and has_special):
        logger.warning("SECRET_KEY does not meet complexity requirements")

    return key

def validate_algorithm(algorithm: Optional[str]) -> str:
    """Validate session JWT algorithm is an HMAC one"""
    if not algorithm:
        algorithm = "HS256"  # Secure default

    allowed_algorithms = ["HS256", "HS384", "HS512"]
    if algorithm not in allowed_algorithms:
        raise SecurityConfigError(f"Unsupported algorithm: {algorithm}")

    return algorithm

def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SecurityConfigError(f"{name} must be a valid integer")
    if value < minimum:
        raise SecurityConfigError(f"{name} must be >= {minimum}")
    return value

def _key_env(name: str, default: bytes) -> bytes:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        key = bytes.fromhex(raw)
    except ValueError:
        raise SecurityConfigError(f"{name} must be hex encoded")
    if not key:
        raise SecurityConfigError(f"{name} must not be empty")
    return key


DEFAULT_OBFUSCATION_KEY = bytes([0x5A, 0x3C, 0x9F, 0x1E, 0x7B, 0xD2, 0x48, 0xA6])


@dataclass(frozen=True)
class StreamSettings:
    """Immutable configuration shared by every streaming component.

    Build it once (``StreamSettings.from_env()`` in production, directly in
    tests) and pass it to ``create_app``; nothing reads the environment after
    construction.
    """
    secret_key: str
    session_secret: Optional[str] = None
    session_algorithm: str = "HS256"

    # Token lifetimes
    stream_token_ttl_ms: int = 60_000
    segment_token_ttl_ms: int = 60_000
    preload_token_ttl_ms: int = 300_000
    manifest_ttl_ms: int = 55_000

    # Segmentation and anti-bulk-download ceilings
    segment_size: int = 80 * 1024
    stream_chunk_ceiling: int = 64 * 1024
    legacy_chunk_ceiling: int = 128 * 1024
    segment_chunk_ceiling: int = 128 * 1024
    segment_content_type: str = "audio/mpeg"

    obfuscation_key: bytes = DEFAULT_OBFUSCATION_KEY

    is_production: bool = False

    # Storage backend
    storage_backend: str = "local"
    media_root: str = os.path.join("media", "audio")
    object_store_url: Optional[str] = None
    object_store_timeout: float = 10.0
    track_catalog_path: Optional[str] = None

    # Worker pools
    io_workers: int = 8
    analysis_workers: int = 2

    # Frequency analysis
    fft_size: int = 256
    max_pcm_bytes: int = 8 * 1024 * 1024

    key_derivation_iterations: int = 20_000

    @property
    def effective_session_secret(self) -> str:
        return self.session_secret or self.secret_key

    @classmethod
    def from_env(cls) -> "StreamSettings":
        """Load and validate settings from the process environment (and .env)."""
        load_dotenv()
        try:
            secret_key = validate_secret_key(os.getenv("SECRET_KEY"))
            session_secret = os.getenv("SESSION_SECRET") or None
            if session_secret:
                validate_secret_key(session_secret)
            storage_backend = os.getenv("STORAGE_BACKEND", "local").lower()
            if storage_backend not in ("local", "http"):
                raise SecurityConfigError(f"Unsupported storage backend: {storage_backend}")
            object_store_url = os.getenv("OBJECT_STORE_URL") or None
            if storage_backend == "http" and not object_store_url:
                raise SecurityConfigError("OBJECT_STORE_URL is required for the http storage backend")
            settings = cls(
                secret_key=secret_key,
                session_secret=session_secret,
                session_algorithm=validate_algorithm(os.getenv("SESSION_ALGORITHM")),
                stream_token_ttl_ms=_int_env("STREAM_TOKEN_TTL_MS", 60_000, minimum=1),
                segment_token_ttl_ms=_int_env("SEGMENT_TOKEN_TTL_MS", 60_000, minimum=1),
                preload_token_ttl_ms=_int_env("PRELOAD_TOKEN_TTL_MS", 300_000, minimum=1),
                manifest_ttl_ms=_int_env("MANIFEST_TTL_MS", 55_000, minimum=1),
                segment_size=_int_env("SEGMENT_SIZE_BYTES", 80 * 1024, minimum=1),
                stream_chunk_ceiling=_int_env("STREAM_CHUNK_CEILING", 64 * 1024, minimum=1),
                legacy_chunk_ceiling=_int_env("LEGACY_CHUNK_CEILING", 128 * 1024, minimum=1),
                segment_chunk_ceiling=_int_env("SEGMENT_CHUNK_CEILING", 128 * 1024, minimum=1),
                segment_content_type=os.getenv("SEGMENT_CONTENT_TYPE", "audio/mpeg"),
                obfuscation_key=_key_env("OBFUSCATION_KEY_HEX", DEFAULT_OBFUSCATION_KEY),
                is_production=os.getenv("ENVIRONMENT", "development").lower() == "production",
                storage_backend=storage_backend,
                media_root=os.getenv("MEDIA_ROOT", os.path.join("media", "audio")),
                object_store_url=object_store_url,
                object_store_timeout=float(os.getenv("OBJECT_STORE_TIMEOUT", "10")),
                track_catalog_path=os.getenv("TRACK_CATALOG_PATH") or None,
                io_workers=_int_env("IO_WORKERS", 8, minimum=1),
                analysis_workers=_int_env("ANALYSIS_WORKERS", 2, minimum=1),
                fft_size=_int_env("FFT_SIZE", 256, minimum=32),
                max_pcm_bytes=_int_env("MAX_PCM_BYTES", 8 * 1024 * 1024, minimum=1),
                key_derivation_iterations=_int_env("KEY_DERIVATION_ITERATIONS", 20_000, minimum=1000),
            )
        except SecurityConfigError as e:
            logger.error(f"Security configuration error: {e}")
            raise
        except ValueError as e:
            logger.error(f"Unexpected configuration error: {e}")
            raise SecurityConfigError(f"Configuration validation failed: {e}")

        logger.info("Stream configuration validated successfully")
        return settings


# Security headers applied to every response
SECURITY_HEADERS = {
    "Referrer-Policy": "same-origin",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-Robots-Tag": "noindex, nofollow",
}

# Headers that disable every layer of caching for tokenized media
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}
