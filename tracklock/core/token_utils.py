"""Short-lived signed tokens for stream, segment and preload access.

A token is ``base64url(payload) + "." + base64url(HMAC-SHA256(secret, payload))``
where the payload is compact JSON ``{"sub", "iat", "nonce"}``. The signature
covers the encoded payload text, so any change to either half fails
verification. Validity is carried entirely by the token; nothing is stored
server-side and there is no revocation.

Subject keys come in three shapes, one per use:

* ``"{track_id}"``              full-stream access
* ``"{track_id}:{index}"``      one byte segment of a manifest
* ``"{track_id}:{lobby_id}"``   preload grant before lobby authentication
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from jose.utils import base64url_decode, base64url_encode

from tracklock.core.errors import StreamFailure

logger = logging.getLogger(__name__)

NONCE_BYTES = 8


def _system_clock_ms() -> int:
    return int(time.time() * 1000)


def stream_subject(track_id: str) -> str:
    return track_id


def segment_subject(track_id: str, index: int) -> str:
    return f"{track_id}:{index}"


def preload_subject(track_id: str, lobby_id: str) -> str:
    return f"{track_id}:{lobby_id}"


def preload_supported(lobby_id: str) -> bool:
    """Digit-only lobby ids would make preload subjects read as segment subjects."""
    return not (lobby_id.isascii() and lobby_id.isdigit())


@dataclass(frozen=True)
class TokenVerdict:
    """Result of a verification. ``failure`` is for server logs only."""
    valid: bool
    failure: Optional[StreamFailure] = None

    @property
    def reason(self) -> str:
        return self.failure.value if self.failure else ""


VALID = TokenVerdict(valid=True)


class TokenAuthority:
    """Issues and verifies subject-bound, time-limited HMAC tokens.

    Args:
        secret: shared signing secret.
        clock: callable returning the current time in epoch milliseconds;
            injectable so expiry boundaries can be tested exactly.
    """

    def __init__(self, secret: str, clock: Optional[Callable[[], int]] = None):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._clock = clock or _system_clock_ms

    def _sign(self, encoded_payload: bytes) -> bytes:
        digest = hmac.new(self._secret, encoded_payload, hashlib.sha256).digest()
        return base64url_encode(digest)

    def generate(self, subject_key: str) -> str:
        payload = {
            "sub": subject_key,
            "iat": self._clock(),
            "nonce": secrets.token_bytes(NONCE_BYTES).hex(),
        }
        raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        encoded = base64url_encode(raw)
        return (encoded + b"." + self._sign(encoded)).decode("ascii")

    def verify(self, token: Optional[str], expected_subject: str, ttl_ms: int) -> TokenVerdict:
        """Check signature, age and subject binding of *token*.

        Check order: format, signature, expiry, subject. ``now - iat == ttl``
        is still valid.
        """
        if not token:
            return TokenVerdict(False, StreamFailure.MALFORMED_TOKEN)

        parts = token.split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return TokenVerdict(False, StreamFailure.MALFORMED_TOKEN)
        try:
            encoded_payload = parts[0].encode("ascii")
            signature = parts[1].encode("ascii")
        except UnicodeEncodeError:
            return TokenVerdict(False, StreamFailure.MALFORMED_TOKEN)

        if not hmac.compare_digest(self._sign(encoded_payload), signature):
            return TokenVerdict(False, StreamFailure.INVALID_SIGNATURE)

        try:
            data = json.loads(base64url_decode(encoded_payload))
            subject = data["sub"]
            issued_at = int(data["iat"])
        except (ValueError, KeyError, TypeError):
            # Signed by us but unreadable: treat as malformed, not forged.
            return TokenVerdict(False, StreamFailure.MALFORMED_TOKEN)

        if self._clock() - issued_at > ttl_ms:
            return TokenVerdict(False, StreamFailure.EXPIRED_TOKEN)

        if not isinstance(subject, str) or not hmac.compare_digest(
            subject.encode("utf-8"), expected_subject.encode("utf-8")
        ):
            return TokenVerdict(False, StreamFailure.SUBJECT_MISMATCH)

        return VALID

    # Convenience wrappers for the three subject shapes

    def issue_stream(self, track_id: str) -> str:
        return self.generate(stream_subject(track_id))

    def issue_segment(self, track_id: str, index: int) -> str:
        return self.generate(segment_subject(track_id, index))

    def issue_preload(self, track_id: str, lobby_id: str) -> str:
        return self.generate(preload_subject(track_id, lobby_id))
