"""Key material handed to the player alongside a stream token.

The streaming core treats the value as opaque: it asks a ``KeyDeriver`` for it
and passes it through in the token grant. The default deriver stretches
``secret:track_id:nonce`` with PBKDF2 so every playback session gets its own key.
"""
from __future__ import annotations

import base64
import hashlib
from abc import ABC, abstractmethod

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class KeyDeriver(ABC):

    @abstractmethod
    def derive(self, track_id: str, session_nonce: str) -> str:
        """Return base64 key material for (track, session)."""


class Pbkdf2KeyDeriver(KeyDeriver):

    def __init__(self, master_secret: str, iterations: int = 20_000):
        self._master_secret = master_secret
        self.iterations = iterations

    def derive(self, track_id: str, session_nonce: str) -> str:
        combined = f"{self._master_secret}:{track_id}:{session_nonce}"
        salt = hashlib.sha256(f"track_key:{track_id}".encode()).digest()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        key_bytes = kdf.derive(combined.encode())
        return base64.b64encode(key_bytes).decode("ascii")
