"""Shared fixtures: settings, a controllable clock, a media root and a wired app."""

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from tracklock.core.config import StreamSettings
from tracklock.core.token_utils import TokenAuthority
from tracklock.crud.catalog import InMemoryTrackCatalog, TrackRecord
from tracklock.main import create_app

SECRET = "Test-Secret-Key-For-Tokens-0123456789!"
SESSION_SECRET = "Session-Secret-Of-Identity-Layer-9876!"

# 200 KiB: three 80 KiB segments, the last one partial
TRACK_SIZE = 200 * 1024

PLAYLIST = (
    "#EXTM3U\n"
    "#EXT-X-VERSION:7\n"
    "#EXT-X-TARGETDURATION:6\n"
    '#EXT-X-MAP:URI="init.mp4"\n'
    "#EXTINF:6.0,\n"
    "segment000.m4s\n"
    "#EXTINF:6.0,\n"
    "segment001.m4s\n"
    "#EXT-X-ENDLIST\n"
)


class FakeClock:
    """Epoch-milliseconds clock that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def media_bytes(size: int) -> bytes:
    return bytes(i % 251 for i in range(size))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tokens(clock: FakeClock) -> TokenAuthority:
    return TokenAuthority(SECRET, clock=clock)


@pytest.fixture
def media_root(tmp_path: Path) -> Path:
    root = tmp_path / "media"
    (root / "hls" / "t-hls").mkdir(parents=True)
    (root / "track.mp3").write_bytes(media_bytes(TRACK_SIZE))
    (root / "legacy.mp3").write_bytes(media_bytes(300 * 1024))
    (root / "hls" / "t-hls" / "playlist.m3u8").write_text(PLAYLIST)
    (root / "hls" / "t-hls" / "init.mp4").write_bytes(b"ftypinit")
    (root / "hls" / "t-hls" / "segment000.m4s").write_bytes(b"moofseg0")
    return root


@pytest.fixture
def settings(media_root: Path) -> StreamSettings:
    return StreamSettings(
        secret_key=SECRET,
        session_secret=SESSION_SECRET,
        media_root=str(media_root),
        io_workers=2,
        analysis_workers=1,
        key_derivation_iterations=1000,
    )


@pytest.fixture
def catalog() -> InMemoryTrackCatalog:
    return InMemoryTrackCatalog([
        TrackRecord("t1", "lobby-a", "track.mp3", hls_folder="hls/t-hls", protected=True, preview=True),
        TrackRecord("t2", "lobby-b", "track.mp3", protected=True, preview=False),
        TrackRecord("open", "lobby-c", "track.mp3", hls_folder="hls/t-hls", protected=False),
        TrackRecord("ghost", "lobby-a", "missing.mp3", protected=False),
    ])


def session_token(lobbies=("lobby-a",), sub="user-1", admin=False, secret=SESSION_SECRET) -> str:
    claims = {"sub": sub, "purpose": "lobby_session", "lobbies": list(lobbies)}
    if admin:
        claims["admin"] = True
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {session_token()}"}


@pytest.fixture
def client(settings: StreamSettings, catalog: InMemoryTrackCatalog, clock: FakeClock) -> Iterator[TestClient]:
    app = create_app(settings=settings, catalog=catalog, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def app_tokens(client: TestClient) -> TokenAuthority:
    """The token authority the running app signs with."""
    return client.app.state.services.tokens


@pytest.fixture
def make_session():
    """Factory for identity-layer session JWTs."""
    return session_token
