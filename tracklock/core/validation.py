"""
Request validation helpers: Range headers, media file names, content types
"""
import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

class ValidationError(Exception):
    """Custom validation error"""
    pass

_RANGE_SPEC = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)

@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int  # inclusive

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"

def parse_range_header(header: Optional[str]) -> Optional[Tuple[Optional[int], Optional[int]]]:
    """
    Parse the first range of a ``Range: bytes=...`` header

    Returns:
        (start, end) where either side may be None (open end / suffix range),
        or None when the header is absent or not understood. Per RFC 9110 an
        unparseable Range header is ignored rather than rejected.
    """
    if not header:
        return None
    # Multi-range requests: only the first range is honoured
    first = header.split(",", 1)[0]
    match = _RANGE_SPEC.match(first)
    if not match:
        logger.debug(f"Ignoring unparseable Range header: {header!r}")
        return None
    start_s, end_s = match.groups()
    if not start_s and not end_s:
        return None
    return (int(start_s) if start_s else None, int(end_s) if end_s else None)

def resolve_byte_range(header: Optional[str], size: int, ceiling: int) -> Optional[ByteRange]:
    """
    Work out which bytes to send for a Range request

    Whatever the client asks for, at most ``ceiling`` bytes are returned so a
    full download takes many round trips. Without a usable header the first
    chunk is served.

    Returns:
        The range to serve, or None when it cannot be satisfied (416).
    """
    if ceiling <= 0:
        raise ValueError("ceiling must be positive")

    start, requested_end = 0, size - 1
    parsed = parse_range_header(header)
    if parsed is not None:
        first, last = parsed
        if first is None:
            # Suffix range: the last N bytes
            if last == 0:
                return None
            start = max(size - last, 0)
        else:
            start = first
            if last is not None:
                requested_end = last

    if start < 0 or start >= size:
        return None
    end = min(start + ceiling - 1, requested_end, size - 1)
    if end < start:
        return None
    return ByteRange(start, end)

def sanitize_media_filename(filename: str) -> str:
    """
    Strip everything but ``[A-Za-z0-9._-]`` from a requested media file name

    Raises:
        ValidationError: If nothing usable is left or the name is a dot path
    """
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "", filename or "")
    if not sanitized or set(sanitized) == {"."}:
        raise ValidationError("Invalid media filename")
    return sanitized

def validate_content_type(content_type: str, allowed_types: List[str]) -> bool:
    """
    Validate content type header

    Args:
        content_type: Content-Type header value
        allowed_types: List of allowed content types

    Returns:
        True if valid

    Raises:
        ValidationError: If content type not allowed
    """
    if not content_type:
        raise ValidationError("Content-Type header is required")

    # Extract main content type (ignore charset etc.)
    main_type = content_type.split(';')[0].strip().lower()

    if main_type not in allowed_types:
        logger.warning(f"Blocked request with disallowed content type: {main_type}")
        raise ValidationError(f"Content type not allowed: {main_type}")

    return True
