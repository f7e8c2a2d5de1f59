"""Rewrite HLS playlists so every media URI goes through the authenticated proxy."""
from __future__ import annotations

import re
from typing import Final

INIT_SEGMENT_NAME: Final[str] = "init.mp4"

# Playlists are produced by the packager with exactly these names:
# "init.mp4" and "segment000.m4s" .. "segment999.m4s". A 4-digit index
# (1000+ segments, ~100 min at 6 s) is NOT matched and passes through
# unrewritten; the proxy rejects such names as well.
SEGMENT_NAME = re.compile(r"^segment\d{3}\.m4s$")
MAP_URI = re.compile(r'^#EXT-X-MAP:URI="([^"]+)"')
PROXY_FILENAME = re.compile(r"^(init\.mp4|segment\d{3}\.m4s)$")


class PlaylistRewriter:
    """Line-by-line URI rewriter.

    Only the init map tag and bare segment lines are touched; every other line
    (tags, comments, blank lines, unknown filenames) is returned byte-for-byte,
    including its line terminator, so the line count never changes.
    """

    def __init__(self, proxy_prefix: str = "/proxy"):
        self.proxy_prefix = proxy_prefix.rstrip("/")

    def proxy_uri(self, resource_id: str, filename: str, auth_query: str = "") -> str:
        return f"{self.proxy_prefix}/{resource_id}/segment/{filename}{auth_query}"

    def rewrite_line(self, line: str, resource_id: str, auth_query: str = "") -> str:
        body, cr = (line[:-1], "\r") if line.endswith("\r") else (line, "")

        match = MAP_URI.match(body)
        if match:
            uri = self.proxy_uri(resource_id, match.group(1), auth_query)
            return f'#EXT-X-MAP:URI="{uri}"' + body[match.end():] + cr

        if body == INIT_SEGMENT_NAME or SEGMENT_NAME.match(body):
            return self.proxy_uri(resource_id, body, auth_query) + cr

        return line

    def rewrite(self, playlist_text: str, resource_id: str, auth_query: str = "") -> str:
        lines = playlist_text.split("\n")
        return "\n".join(self.rewrite_line(line, resource_id, auth_query) for line in lines)


def is_proxy_filename(filename: str) -> bool:
    """True for the file names the HLS segment proxy is allowed to serve."""
    return bool(PROXY_FILENAME.match(filename))
