import hashlib
import logging
import httpx
from typing import Any, Dict, List, Optional, Tuple
from ..config import settings
from ..models import TrackSnapshot

logger = logging.getLogger(__name__)

# Custom error classes so callers can branch
class UpstreamError(Exception): ...
class NetworkFailure(UpstreamError): ...
class VisibilityRestricted(UpstreamError): ...
class MalformedResponse(UpstreamError): ...

# Last.fm error codes
ERROR_NOT_FOUND = 6        # Invalid parameters / user or track not found
ERROR_LOGIN_REQUIRED = 17  # Private profile, needs an authenticated session

def sign(params: Dict[str, str], secret: str) -> str:
    base = "".join(f"{k}{params[k]}" for k in sorted(params)) + secret
    return hashlib.md5(base.encode("utf-8")).hexdigest()

def check_payload(status: int, payload: Any):
    """
    Raise the matching UpstreamError for a failed response.
    Returns normally when the payload carries data, or a not-found error.
    """
    code = payload.get("error") if isinstance(payload, dict) else None
    if status in (401, 403) or code == ERROR_LOGIN_REQUIRED:
        message = payload.get("message") if isinstance(payload, dict) else None
        raise VisibilityRestricted(message or f"HTTP {status}")
    if code == ERROR_NOT_FOUND:
        return
    if isinstance(code, int):
        raise NetworkFailure(f"Last.fm API error {code}: {payload.get('message')}")
    if status >= 400:
        raise NetworkFailure(f"HTTP {status}")
    if not isinstance(payload, dict):
        raise MalformedResponse(f"Unexpected payload type {type(payload).__name__}")

def parse_recent_tracks(payload: Dict[str, Any]) -> List[TrackSnapshot]:
    if payload.get("error") == ERROR_NOT_FOUND:
        return []
    recent = payload.get("recenttracks")
    if not isinstance(recent, dict):
        raise MalformedResponse("Missing recenttracks")

    tracks = recent.get("track") or []
    # A single result comes back as an object rather than a list
    if isinstance(tracks, dict):
        tracks = [tracks]
    try:
        return [TrackSnapshot.from_lastfm(t) for t in tracks]
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedResponse(f"Unreadable track entry: {e}") from e

def parse_duration(payload: Dict[str, Any]) -> Optional[int]:
    track = payload.get("track")
    if not isinstance(track, dict):
        return None
    try:
        duration = int(track.get("duration") or 0)
    except (TypeError, ValueError):
        return None
    return duration if duration > 0 else None

class LastFMClient:
    """Direct-mode access to the Last.fm web service."""

    def __init__(self, api_key: Optional[str] = None, shared_secret: Optional[str] = None,
                 base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key if api_key is not None else settings.LFM_API_KEY
        self.shared_secret = shared_secret if shared_secret is not None else settings.LFM_SHARED_SECRET
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.LFM_API_URL,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport
        )

    async def close(self):
        await self.client.aclose()

    async def request(self, params: Dict[str, str], session_key: Optional[str] = None,
                      signed: bool = False) -> Tuple[int, Any]:
        """
        Issue one GET and return (status, json). The request is signed when a
        session key is given or `signed` is set; `format` is never part of the signature.
        Transport errors raise NetworkFailure, undecodable bodies MalformedResponse.
        """
        query = {**params, "api_key": self.api_key}
        if session_key and self.shared_secret:
            query["sk"] = session_key
            signed = True
        if signed and self.shared_secret:
            query["api_sig"] = sign(query, self.shared_secret)
        query["format"] = "json"

        try:
            resp = await self.client.get("", params=query)
        except httpx.HTTPError as e:
            raise NetworkFailure(str(e)) from e

        try:
            return resp.status_code, resp.json()
        except ValueError as e:
            if resp.status_code in (401, 403):
                raise VisibilityRestricted(f"HTTP {resp.status_code}") from e
            raise MalformedResponse(f"Invalid JSON (HTTP {resp.status_code})") from e

    async def fetch_recent_history(self, user: str, limit: int, session_key: Optional[str] = None) -> List[TrackSnapshot]:
        status, payload = await self.request(
            {"method": "user.getRecentTracks", "user": user, "limit": str(limit)},
            session_key
        )
        check_payload(status, payload)
        return parse_recent_tracks(payload)

    async def fetch_latest_snapshot(self, user: str, session_key: Optional[str] = None) -> Optional[TrackSnapshot]:
        tracks = await self.fetch_recent_history(user, 1, session_key)
        return tracks[0] if tracks else None

    async def fetch_track_duration(self, artist: str, track: str, session_key: Optional[str] = None) -> Optional[int]:
        status, payload = await self.request(
            {"method": "track.getInfo", "artist": artist, "track": track},
            session_key
        )
        check_payload(status, payload)
        return parse_duration(payload)

    async def fetch_session(self, token: str) -> Tuple[int, Any]:
        """Exchange an auth callback token for a session key (auth.getSession)."""
        return await self.request({"method": "auth.getSession", "token": token}, signed=True)
