import httpx
from typing import Any, Dict, List, Optional
from ..config import settings
from ..models import TrackSnapshot
from .lastfm_client import MalformedResponse, NetworkFailure, check_payload, parse_duration, parse_recent_tracks

class ProxyClient:
    """
    Mediated-mode access through the caching intermediary (see server.py).
    The intermediary holds the shared secret, so session keys are passed through unsigned.
    """

    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            base_url=(base_url or settings.PROXY_BASE_URL).rstrip('/'),
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport
        )

    async def close(self):
        await self.client.aclose()

    async def _get(self, path: str, params: Dict[str, str]) -> Any:
        try:
            resp = await self.client.get(path, params=params, headers={"Cache-Control": "no-store"})
        except httpx.HTTPError as e:
            raise NetworkFailure(str(e)) from e

        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponse(f"Invalid JSON from intermediary (HTTP {resp.status_code})") from e

        # Internal errors come back as {"error": "<message>"}
        if resp.status_code >= 500:
            raise NetworkFailure(f"Intermediary error {resp.status_code}: {payload}")
        check_payload(resp.status_code, payload)
        return payload

    async def fetch_recent_history(self, user: str, limit: int, session_key: Optional[str] = None) -> List[TrackSnapshot]:
        params = {"user": user, "limit": str(limit)}
        if session_key:
            params["sk"] = session_key
        payload = await self._get("/api/lastfm/recent", params)
        return parse_recent_tracks(payload)

    async def fetch_latest_snapshot(self, user: str, session_key: Optional[str] = None) -> Optional[TrackSnapshot]:
        tracks = await self.fetch_recent_history(user, 1, session_key)
        return tracks[0] if tracks else None

    async def fetch_track_duration(self, artist: str, track: str, session_key: Optional[str] = None) -> Optional[int]:
        params = {"artist": artist, "track": track}
        if session_key:
            params["sk"] = session_key
        payload = await self._get("/api/lastfm/trackInfo", params)
        return parse_duration(payload)
