# tracklock/crud/catalog.py
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackRecord:
    """Track metadata supplied by the lobby/content service."""
    track_id: str
    lobby_id: str
    file_key: str                       # backing object for byte streaming
    hls_folder: Optional[str] = None    # folder holding playlist.m3u8 + segments
    protected: bool = True              # lobby is password protected
    preview: bool = False               # may be preloaded before authentication

    @property
    def playlist_key(self) -> Optional[str]:
        if not self.hls_folder:
            return None
        return f"{self.hls_folder.rstrip('/')}/playlist.m3u8"

    def hls_file_key(self, filename: str) -> Optional[str]:
        if not self.hls_folder:
            return None
        return f"{self.hls_folder.rstrip('/')}/{filename}"


class TrackCatalog(ABC):

    @abstractmethod
    async def get_track(self, track_id: str) -> Optional[TrackRecord]:
        """Gets track information by its ID."""


class InMemoryTrackCatalog(TrackCatalog):

    def __init__(self, tracks: Iterable[TrackRecord] = ()):
        self._tracks: Dict[str, TrackRecord] = {t.track_id: t for t in tracks}

    async def get_track(self, track_id: str) -> Optional[TrackRecord]:
        return self._tracks.get(track_id)

    @classmethod
    def from_json_file(cls, path: str) -> "InMemoryTrackCatalog":
        """Load ``[{"track_id": ..., "lobby_id": ..., "file_key": ...}, ...]``."""
        with open(path, "r", encoding="utf-8") as f:
            entries = json.load(f)
        tracks = [TrackRecord(**entry) for entry in entries]
        logger.info("Loaded %d tracks from %s", len(tracks), path)
        return cls(tracks)
