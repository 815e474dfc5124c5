import logging
import time
from fastapi import FastAPI, Depends, HTTPException, Header, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from typing import Any, Callable, Dict, Optional, Tuple
from .clients.lastfm_client import LastFMClient, UpstreamError
from .config import settings
from .engine import NowPlayingEngine
from .facet import DURATION_FORMATS

logger = logging.getLogger(__name__)

app = FastAPI(title="Last.fm Now Playing")
engine: Optional[NowPlayingEngine] = None
lastfm: Optional[LastFMClient] = None

RECENT_CACHE_CONTROL = "public, max-age=3, s-maxage=3, stale-while-revalidate=30"
TRACK_INFO_CACHE_CONTROL = "public, max-age=3600, s-maxage=3600, immutable"
SESSION_CACHE_CONTROL = "s-maxage=10, stale-while-revalidate=30"

class TTLCache:
    """Small in-memory cache; expired entries are pruned once it grows past max_entries."""

    def __init__(self, ttl_s: float, max_entries: int):
        self.ttl_s = ttl_s
        self.max_entries = max_entries
        self.entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str, now: float) -> Optional[Any]:
        hit = self.entries.get(key)
        if hit and hit[1] > now:
            return hit[0]
        return None

    def set(self, key: str, data: Any, now: float):
        self.entries[key] = (data, now + self.ttl_s)
        if len(self.entries) > self.max_entries:
            for k in [k for k, (_, expires) in self.entries.items() if expires <= now]:
                del self.entries[k]

recent_cache = TTLCache(settings.RECENT_CACHE_TTL_S, settings.RECENT_CACHE_MAX)
track_info_cache = TTLCache(settings.TRACK_INFO_CACHE_TTL_S, settings.TRACK_INFO_CACHE_MAX)

def get_lastfm() -> LastFMClient:
    global lastfm
    if lastfm is None:
        lastfm = LastFMClient()
    return lastfm

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def _log_recent(payload: Any, user: str):
    tracks = (payload.get("recenttracks") or {}).get("track") if isinstance(payload, dict) else None
    if isinstance(tracks, dict):
        tracks = [tracks]
    if not tracks:
        return
    track = tracks[0]
    artist = track.get("artist")
    artist_name = artist.get("#text") if isinstance(artist, dict) else artist
    state = "NOW PLAYING" if (track.get("@attr") or {}).get("nowplaying") == "true" else "RECENT"
    logger.info(f"[recent] {state}: \"{track.get('name') or 'Unknown'}\" by {artist_name or 'Unknown'} [user: {user}]")

async def _proxy(cache: TTLCache, cache_key: str, cache_control: str, params: Dict[str, str], sk: Optional[str],
                 on_fetched: Optional[Callable[[Any], None]] = None):
    now = time.time()
    cached = cache.get(cache_key, now)
    if cached is not None:
        logger.debug(f"Cache hit for {cache_key}")
        return JSONResponse(cached, headers={"Cache-Control": cache_control, "X-Cache": "HIT"})

    try:
        status, payload = await get_lastfm().request(params, sk)
    except UpstreamError as e:
        logger.warning(f"Upstream request for {cache_key} failed: {e}")
        return JSONResponse({"error": str(e) or "Internal error"}, status_code=500)

    ok = status < 400 and not (isinstance(payload, dict) and "error" in payload)
    if ok:
        cache.set(cache_key, payload, now)
        if on_fetched:
            on_fetched(payload)
    return JSONResponse(
        payload,
        status_code=200 if ok else 400,
        headers={"Cache-Control": cache_control, "X-Cache": "MISS"}
    )

@app.get("/api/lastfm/recent")
async def recent(user: Optional[str] = None, limit: str = "1", sk: Optional[str] = None):
    if not user:
        return JSONResponse({"error": "Missing user"}, status_code=400)

    cache_key = f"recent:{user}:{limit}:{'auth' if sk else 'public'}"
    return await _proxy(
        recent_cache, cache_key, RECENT_CACHE_CONTROL,
        {"method": "user.getRecentTracks", "user": user, "limit": limit}, sk,
        on_fetched=lambda payload: _log_recent(payload, user)
    )

@app.get("/api/lastfm/trackInfo")
async def track_info(artist: Optional[str] = None, track: Optional[str] = None, sk: Optional[str] = None):
    if not artist or not track:
        return JSONResponse({"error": "Missing artist/track"}, status_code=400)

    # Track info is the same regardless of session key
    cache_key = f"info:{artist}:{track}"
    return await _proxy(
        track_info_cache, cache_key, TRACK_INFO_CACHE_CONTROL,
        {"method": "track.getInfo", "artist": artist, "track": track}, sk
    )

class SessionRequest(BaseModel):
    token: Optional[str] = None

@app.post("/api/lastfm/session")
async def lastfm_session(body: Optional[SessionRequest] = None):
    client = get_lastfm()
    if not client.api_key or not client.shared_secret:
        return JSONResponse(
            {"error": "Server missing Last.fm credentials. Set LFM_API_KEY and LFM_SHARED_SECRET."},
            status_code=500
        )
    token = body.token if body else None
    if not token:
        return JSONResponse({"error": "Missing token"}, status_code=400)

    try:
        _, payload = await client.fetch_session(token)
    except UpstreamError as e:
        logger.warning(f"Session exchange failed: {e}")
        return JSONResponse({"error": str(e) or "Internal error"}, status_code=500)

    session = payload.get("session") if isinstance(payload, dict) else None
    if isinstance(session, dict) and session.get("key") and session.get("name"):
        logger.info(f"Issued session key for {session['name']}")
        return JSONResponse(
            {"key": session["key"], "name": session["name"]},
            headers={"Cache-Control": SESSION_CACHE_CONTROL}
        )
    message = payload.get("message") if isinstance(payload, dict) else None
    return JSONResponse({"error": message or "Failed to get session"}, status_code=400)

@app.get("/nowplaying")
async def now_playing(format: str = Query("both"), activity: bool = False):
    if not engine:
        raise HTTPException(status_code=503, detail="Engine not running")
    if format not in DURATION_FORMATS:
        raise HTTPException(status_code=400, detail=f"format must be one of {', '.join(DURATION_FORMATS)}")
    if activity:
        engine.record_activity("visibility")
    return engine.now_playing(format).model_dump(by_alias=True)

@app.post("/activity/{signal}", status_code=204)
async def activity(signal: str):
    if not engine:
        raise HTTPException(status_code=503, detail="Engine not running")
    try:
        engine.record_activity(signal)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown activity signal {signal!r}")

@app.get("/healthz")
async def healthz():
    if not engine:
        return {"status": "starting"}

    last = engine.scheduler_state.last_success_ms
    if last is None:
        return {"status": "starting"}
    # Lenient: a few idle intervals plus the backoff cap
    age_ms = engine.clock() - last
    if age_ms > settings.POLL_IDLE_MS * 3 + settings.BACKOFF_CAP_MS:
        return {"status": "lagging", "last_poll_age": age_ms / 1000.0}

    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
async def status():
    if not engine:
        return {"status": "not_ready"}

    s = engine.scheduler_state
    return {
        "user": engine.user,
        "mode": "mediated" if s.using_fallback_endpoint else "direct",
        "consecutive_errors": s.consecutive_error_count,
        "next_poll_ms": engine.next_poll_delay_ms,
        "track": engine.session.current_identity,
        "is_live": engine.session.is_live,
        "is_paused": engine.session.is_paused
    }

@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    # Simple prometheus-style text format
    if not engine:
        return ""

    s = engine.scheduler_state
    np = engine.now_playing()
    lines = [
        f'nowplaying_live {int(np.is_live)}',
        f'nowplaying_paused {int(np.is_paused)}',
        f'nowplaying_progress_ms {np.progress_ms}',
        f'nowplaying_consecutive_errors {s.consecutive_error_count}',
        f'nowplaying_mediated_mode {int(s.using_fallback_endpoint)}',
        f'nowplaying_next_poll_ms {engine.next_poll_delay_ms or 0}'
    ]
    return "\n".join(lines)
