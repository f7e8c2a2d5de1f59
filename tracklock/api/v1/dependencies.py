# tracklock/api/v1/dependencies.py
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from tracklock.core.errors import StreamFailure, reject
from tracklock.core.token_utils import preload_subject, preload_supported
from tracklock.crud.catalog import TrackRecord

logger = logging.getLogger(__name__)

SESSION_COOKIE = "lobby_session"
SESSION_PURPOSE = "lobby_session"


@dataclass(frozen=True)
class AccessVerdict:
    """Authentication verdict handed to the streaming core.

    The identity layer decides who the viewer is; this only records what it
    concluded: whether a session exists and which lobbies it unlocks.
    """
    authenticated: bool = False
    lobby_ids: FrozenSet[str] = field(default_factory=frozenset)
    is_admin: bool = False
    subject: Optional[str] = None

    @property
    def has_session(self) -> bool:
        return self.authenticated or self.is_admin

    def allows_lobby(self, lobby_id: str) -> bool:
        return self.is_admin or (self.authenticated and lobby_id in self.lobby_ids)


ANONYMOUS = AccessVerdict()


class SessionVerifier:
    """Turns the identity layer's session JWT into an ``AccessVerdict``.

    Expected claims: ``sub``, ``purpose == "lobby_session"``, ``lobbies``
    (list of lobby ids), optional ``admin`` and the usual ``exp``.
    """

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self._secret = secret
        self._algorithm = algorithm

    def verdict_for(self, token: Optional[str]) -> AccessVerdict:
        if not token:
            return ANONYMOUS
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as e:
            # Log security issues but don't expose them to prevent enumeration
            logger.warning(f"Session token validation failed: {e}")
            return ANONYMOUS

        if payload.get("purpose") != SESSION_PURPOSE:
            logger.warning(f"Session token purpose mismatch: {payload.get('purpose')}")
            return ANONYMOUS

        lobbies = payload.get("lobbies") or []
        if not isinstance(lobbies, list):
            logger.warning("Session token with malformed lobbies claim")
            return ANONYMOUS

        return AccessVerdict(
            authenticated=bool(payload.get("sub")),
            lobby_ids=frozenset(str(lobby) for lobby in lobbies),
            is_admin=bool(payload.get("admin", False)),
            subject=payload.get("sub"),
        )


def get_services(request: Request):
    return request.app.state.services


def get_client_ip(request: Request) -> str:
    """Client address for log lines only"""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        # Take the first IP in the chain (original client)
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _session_token(request: Request) -> Optional[str]:
    token = None

    # 1. Try to get token from Authorization header
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]

    # 2. If not in header, try to get from cookie
    if not token:
        token = request.cookies.get(SESSION_COOKIE)
        if token and token.startswith("Bearer "):
            token = token.split(" ", 1)[1]

    return token


async def get_access_verdict(request: Request, services=Depends(get_services)) -> AccessVerdict:
    """Never raises; a missing or bad session is simply anonymous."""
    return services.sessions.verdict_for(_session_token(request))


async def require_session(verdict: AccessVerdict = Depends(get_access_verdict)) -> AccessVerdict:
    if not verdict.has_session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return verdict


async def check_embed_source(request: Request, services=Depends(get_services)) -> None:
    """Raise 403 if request originates from a disallowed site."""
    if not services.origin_guard.allows(request):
        raise reject(StreamFailure.ORIGIN_REJECTED, context=f"{request.url.path} from {get_client_ip(request)}")


async def get_track(track_id: str, services=Depends(get_services)) -> TrackRecord:
    track = await services.catalog.get_track(track_id)
    if not track:
        raise reject(StreamFailure.RESOURCE_NOT_FOUND, context=f"track {track_id}")
    return track


def require_lobby_access(track: TrackRecord, verdict: AccessVerdict) -> None:
    """401 unless the track is open or the session covers its lobby."""
    if track.protected and not verdict.allows_lobby(track.lobby_id):
        logger.warning(f"Session {verdict.subject} denied lobby {track.lobby_id} for track {track.track_id}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def authorize_track(services, track: TrackRecord, verdict: AccessVerdict, preload: Optional[str]) -> bool:
    """Session or preload-grant access to a track's lobby.

    Returns True when access rests on the preload grant (callers then disable
    caching). Raises 401 when neither the session nor a grant is good.
    """
    if not track.protected or verdict.allows_lobby(track.lobby_id):
        return False
    if not preload or not preload_supported(track.lobby_id):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    result = services.tokens.verify(
        preload,
        preload_subject(track.track_id, track.lobby_id),
        services.settings.preload_token_ttl_ms,
    )
    if not result.valid:
        raise reject(
            result.failure,
            context=f"preload grant for track {track.track_id}",
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    return True
