from typing import Optional
from .clock import progress_ms
from .config import settings
from .models import NowPlaying, PlaybackSession, TrackSnapshot

DURATION_FORMATS = ("elapsed", "remaining", "both")

def format_time(ms: float) -> str:
    """Milliseconds as M:SS"""
    total_seconds = int(max(0, ms) // 1000)
    minutes, seconds = divmod(total_seconds, 60)
    return f"{minutes}:{seconds:02d}"

def format_duration_text(progress: float, duration: Optional[int], fmt: str = "both") -> str:
    if fmt not in DURATION_FORMATS:
        raise ValueError(f"Unknown duration format {fmt!r}")
    elapsed = format_time(progress)

    if not duration or duration <= 0:
        # Unknown duration: elapsed only
        return "--:--" if fmt == "remaining" else elapsed

    if fmt == "elapsed":
        return elapsed
    if fmt == "remaining":
        return f"-{format_time(max(0, duration - progress))}"
    return f"{elapsed}/{format_time(duration)}"

def build_now_playing(track: Optional[TrackSnapshot], session: PlaybackSession, now_ms: float,
                      duration_format: str = "both") -> NowPlaying:
    progress = max(0, int(progress_ms(session, now_ms)))
    duration = session.duration_ms

    percent = 0.0
    if session.is_live and session.started_at_ms is not None:
        # Without a duration, assume a 3 minute track so the bar still moves
        window = duration if duration and duration > 0 else settings.FALLBACK_DURATION_MS
        percent = max(0.0, min(100.0, progress / window * 100.0))

    return NowPlaying(
        track=track,
        is_live=session.is_live,
        is_paused=session.is_paused,
        progress_ms=progress,
        duration_ms=duration,
        percent=percent,
        is_position_estimated=session.estimated_start_offset_ms > 0,
        duration_text=format_duration_text(progress, duration, duration_format)
    )
