"""XOR scrambling for the legacy raw full-stream endpoint.

Threat model: this only stops the browser, proxies and download helpers from
recognising the response as audio (content sniffing, "save as"). The key is
part of the deployed client and server, so anyone reading either can undo it.
It is not encryption and must not be described as such.
"""
from __future__ import annotations

import numpy as np


class StreamObfuscator:
    """Self-inverse XOR against a fixed repeating keystream.

    The keystream restarts at byte 0 of every buffer, so clients must
    transform each response body on its own.
    """

    def __init__(self, key: bytes):
        if not key:
            raise ValueError("Obfuscation key must not be empty")
        self._key = np.frombuffer(bytes(key), dtype=np.uint8)

    def transform(self, data: bytes) -> bytes:
        if not data:
            return b""
        buf = np.frombuffer(data, dtype=np.uint8)
        keystream = np.resize(self._key, buf.shape[0])
        return np.bitwise_xor(buf, keystream).tobytes()
