import logging
from typing import Optional, Tuple
from .clock import progress_ms
from .config import settings
from .models import ChangeKind, PauseTransition, PlaybackSession, TrackSnapshot

logger = logging.getLogger(__name__)

class TrackChangeDetector:
    def observe(self, session: PlaybackSession, snapshot: TrackSnapshot, now_ms: float) -> Tuple[PlaybackSession, ChangeKind]:
        """
        Compare the snapshot against the session and return the session to keep
        (a fresh one on identity change) plus what happened.

        FIRST_LOAD covers a session that already names the live track but has
        no start time, e.g. one seeded into the engine before its first poll.
        Sessions created here always carry a start time, so a cold start with
        an empty session goes through CHANGED.
        """
        # A track that isn't live has no identity for change purposes
        identity = snapshot.identity if snapshot.is_now_playing else None

        if identity != session.current_identity:
            if identity is None:
                logger.info(f"Playback stopped: {session.current_identity}")
                return PlaybackSession(), ChangeKind.CLEARED
            logger.info(f"Track changed: {session.current_identity} -> {identity}")
            fresh = PlaybackSession(
                current_identity=identity,
                is_live=True,
                started_at_ms=now_ms
            )
            return fresh, ChangeKind.CHANGED

        if identity is None:
            return session, ChangeKind.UNCHANGED

        session.is_live = True
        if session.started_at_ms is None:
            # Same track, but we never saw it start (e.g. cold start)
            session.started_at_ms = now_ms
            logger.info(f"First load of live track {identity}")
            return session, ChangeKind.FIRST_LOAD

        return session, ChangeKind.UNCHANGED

class PauseDetector:
    """
    Infers pauses from progress that stops moving between polls.
    The upstream never reports pauses, so this is a heuristic.
    """

    def observe(self, session: PlaybackSession, now_ms: float) -> Optional[PauseTransition]:
        duration = session.duration_ms
        if not session.is_live or not duration or session.started_at_ms is None:
            return None

        current = progress_ms(session, now_ms, ignore_pause=True)

        # Way past the known length: stalled, not a slightly-off duration
        if current > duration + settings.OVERRUN_GRACE_MS:
            if not session.is_paused:
                self._pause(session, now_ms)
                logger.info(f"Paused {session.current_identity}: progress {current/1000.0:.1f}s overran duration {duration/1000.0:.1f}s")
                return PauseTransition.PAUSED
            return None

        delta = abs(current - session.expected_progress_ref_ms)
        if delta < settings.PAUSE_STALE_DELTA_MS:
            session.stale_polls += 1
            if (session.stale_polls >= settings.PAUSE_STALE_POLLS
                    and not session.is_paused
                    and current < duration * settings.PAUSE_MAX_PERCENT):
                self._pause(session, now_ms)
                logger.info(f"Paused {session.current_identity} after {session.stale_polls} stale polls")
                return PauseTransition.PAUSED
            return None

        session.stale_polls = 0
        session.expected_progress_ref_ms = current
        if session.is_paused:
            paused_for = now_ms - session.paused_at_ms
            session.total_paused_ms += paused_for
            session.is_paused = False
            session.paused_at_ms = None
            logger.info(f"Resumed {session.current_identity} after {paused_for/1000.0:.1f}s paused")
            return PauseTransition.RESUMED
        return None

    def _pause(self, session: PlaybackSession, now_ms: float):
        session.is_paused = True
        session.paused_at_ms = now_ms
