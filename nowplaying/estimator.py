import logging
from enum import Enum
from typing import List, NamedTuple, Optional
from .config import settings
from .models import TrackSnapshot

logger = logging.getLogger(__name__)

class EstimateReason(str, Enum):
    RESUMED_NEAR_END = "resumed_near_end"
    RESUMED_MID_TRACK = "resumed_mid_track"
    STALE_MATCH = "stale_match"
    SWITCHING_TRACKS = "switching_tracks"
    NO_EVIDENCE = "no_evidence"
    FETCH_FAILED = "fetch_failed"

class Estimate(NamedTuple):
    offset_ms: int
    reason: EstimateReason

def estimate(identity: str, history: List[TrackSnapshot], duration_ms: Optional[int], now_unix: float) -> Estimate:
    """
    Guess how far into `identity` playback already was when we first saw it live.

    `history` is most-recent-first. A recent scrobble of the same track means the
    listener is most likely replaying or resuming it, so we assume part of it has
    already been heard. Anything else starts from zero.
    """
    past = [t for t in history if not t.is_now_playing]
    long_enough = duration_ms is not None and duration_ms > settings.RESUME_MIN_DURATION_MS

    match = next(
        (t for t in past[:settings.HISTORY_MATCH_SCAN]
         if t.identity == identity and t.scrobbled_at_unix is not None),
        None
    )
    stale_match = False
    if match is not None:
        age_s = now_unix - match.scrobbled_at_unix
        if age_s < settings.RESUME_NEAR_END_S and long_enough:
            offset = min(settings.RESUME_NEAR_END_FRACTION * duration_ms,
                         duration_ms - settings.RESUME_NEAR_END_TAIL_MS)
            return Estimate(max(0, int(offset)), EstimateReason.RESUMED_NEAR_END)
        if settings.RESUME_NEAR_END_S <= age_s < settings.RESUME_MID_S and long_enough:
            offset = min(settings.RESUME_MID_FRACTION * duration_ms, settings.RESUME_MID_CAP_MS)
            return Estimate(max(0, int(offset)), EstimateReason.RESUMED_MID_TRACK)
        if settings.RESUME_MID_S <= age_s < settings.RESUME_STALE_S:
            stale_match = True
            logger.debug(f"History match for {identity} is {age_s:.0f}s old, not guessing an offset")

    recent = {
        t.identity for t in past[:settings.SWITCHING_SCAN]
        if t.scrobbled_at_unix is not None and now_unix - t.scrobbled_at_unix <= settings.SWITCHING_WINDOW_S
    }
    if len(recent) >= 2:
        return Estimate(0, EstimateReason.SWITCHING_TRACKS)

    if stale_match:
        return Estimate(0, EstimateReason.STALE_MATCH)
    return Estimate(0, EstimateReason.NO_EVIDENCE)
