from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional

IDENTITY_SEPARATOR = "—"

class TrackSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    artist_name: str = ""
    album_name: str = ""
    image_urls: List[str] = Field(default_factory=list)  # largest last
    is_now_playing: bool = False
    scrobbled_at_unix: Optional[int] = None

    @property
    def identity(self) -> str:
        return f"{self.name}{IDENTITY_SEPARATOR}{self.artist_name}"

    @classmethod
    def from_lastfm(cls, data: Dict[str, Any]) -> "TrackSnapshot":
        """
        Build a snapshot from one entry of recenttracks.track.
        Raises ValueError/TypeError/KeyError on shapes we can't read.
        """
        artist = data.get("artist") or {}
        album = data.get("album") or {}
        images = data.get("image") or []
        attr = data.get("@attr") or {}
        date = data.get("date") or {}

        uts = date.get("uts")
        return cls(
            name=data["name"],
            artist_name=artist.get("#text") or artist.get("name") or "",
            album_name=album.get("#text") or "",
            image_urls=[img.get("#text") for img in images if img.get("#text")],
            is_now_playing=attr.get("nowplaying") == "true",
            scrobbled_at_unix=int(uts) if uts else None,
        )

class PlaybackSession(BaseModel):
    """Per-identity playback state. Replaced wholesale when the identity changes."""
    current_identity: Optional[str] = None
    is_live: bool = False
    started_at_ms: Optional[float] = None  # monotonic
    estimated_start_offset_ms: int = 0
    offset_estimated: bool = False
    total_paused_ms: float = 0.0
    paused_at_ms: Optional[float] = None
    is_paused: bool = False
    duration_ms: Optional[int] = None

    # Pause detector bookkeeping
    expected_progress_ref_ms: float = 0.0
    stale_polls: int = 0

class SchedulerState(BaseModel):
    last_user_activity_ms: Optional[float] = None
    last_track_change_ms: Optional[float] = None
    last_request_ms: Optional[float] = None
    last_success_ms: Optional[float] = None
    consecutive_error_count: int = 0
    using_fallback_endpoint: bool = False

class ChangeKind(str, Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FIRST_LOAD = "first_load"
    CLEARED = "cleared"

class PauseTransition(str, Enum):
    PAUSED = "paused"
    RESUMED = "resumed"

class NowPlaying(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    track: Optional[TrackSnapshot] = None
    is_live: bool = False
    is_paused: bool = False
    progress_ms: int = 0
    duration_ms: Optional[int] = None
    percent: float = 0.0
    is_position_estimated: bool = False
    duration_text: str = "0:00"
