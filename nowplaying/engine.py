import asyncio
import logging
import time
from typing import Callable, Optional, Set
from .clients.lastfm_client import MalformedResponse, UpstreamError, VisibilityRestricted
from .clock import ProgressClock, monotonic_ms
from .config import settings
from .detectors import PauseDetector, TrackChangeDetector
from .estimator import Estimate, EstimateReason, estimate
from .facet import build_now_playing
from .models import ChangeKind, NowPlaying, PlaybackSession, SchedulerState, TrackSnapshot
from .scheduler import AdaptiveScheduler

logger = logging.getLogger(__name__)

class NowPlayingEngine:
    """
    Follows one Last.fm user and reconstructs their playback clock from
    recent-tracks polls. Everything runs on the event loop; nothing here is
    thread-safe.
    """

    def __init__(self, user: str, direct_client, mediated_client, session_key: Optional[str] = None,
                 clock: Callable[[], float] = monotonic_ms, wall_clock: Callable[[], float] = time.time):
        self.user = user
        self.direct = direct_client
        self.mediated = mediated_client
        self.session_key = session_key
        self.clock = clock
        self.wall_clock = wall_clock

        self.scheduler_state = SchedulerState(using_fallback_endpoint=settings.START_IN_MEDIATED_MODE)
        self.scheduler = AdaptiveScheduler(self.scheduler_state)
        self.session = PlaybackSession()
        self.track: Optional[TrackSnapshot] = None
        self.change_detector = TrackChangeDetector()
        self.pause_detector = PauseDetector()
        self.progress_clock = ProgressClock(clock)

        self.next_poll_delay_ms: Optional[int] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._running = False
        self._closed = False

    @property
    def client(self):
        return self.mediated if self.scheduler_state.using_fallback_endpoint else self.direct

    def start(self):
        """Poll right away; every poll arms the next one."""
        if self._closed:
            raise RuntimeError("Engine has been stopped")
        self._running = True
        logger.info(f"Following Last.fm user {self.user} ({'mediated' if self.scheduler_state.using_fallback_endpoint else 'direct'} mode)")
        self._arm(0)

    async def stop(self):
        """Release the timer, the ticker and background work. Nothing fires afterwards."""
        self._running = False
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.progress_clock.stop()

        tasks = list(self._background)
        if self._poll_task is not None and self._poll_task is not asyncio.current_task():
            tasks.append(self._poll_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._poll_task = None
        logger.info(f"Stopped following {self.user}")

    def record_activity(self, signal):
        self.scheduler.activity.record(signal, self.clock())

    def now_playing(self, duration_format: str = "both") -> NowPlaying:
        return build_now_playing(self.track, self.session, self.progress_clock.now_ms, duration_format)

    async def wait_background(self):
        """Wait for in-flight estimator and duration lookups."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ---- scheduling ----

    def _arm(self, delay_ms: int):
        if not self._running:
            return
        if self._timer is not None:
            self._timer.cancel()
        self.next_poll_delay_ms = delay_ms
        self._timer = asyncio.get_running_loop().call_later(delay_ms / 1000.0, self._on_timer)

    def _on_timer(self):
        self._timer = None
        self._poll_task = asyncio.get_running_loop().create_task(self.poll())

    async def poll(self):
        if self._closed:
            return
        now = self.clock()
        if not self.scheduler.may_request(now):
            logger.debug("Skipping poll, previous request too recent")
            self._arm(self.scheduler.next_delay_ms(self.session.is_live, now))
            return

        self.scheduler.record_request(now)
        delay: Optional[int] = None
        try:
            snapshot = await self._fetch_latest()
            now = self.clock()
            self.scheduler.record_success(now)
            if snapshot is None:
                logger.debug(f"No recent tracks for {self.user}")
            else:
                self._apply_snapshot(snapshot, now)
        except MalformedResponse as e:
            # Counts as "no track this poll"; identity state is left alone
            logger.warning(f"Malformed recent tracks response: {e}")
            self.scheduler.record_success(self.clock())
        except UpstreamError as e:
            delay = self.scheduler.record_failure()
            logger.warning(f"Poll failed ({self.scheduler_state.consecutive_error_count} in a row), retrying in {delay}ms: {e}")
        except Exception as e:
            delay = self.scheduler.record_failure()
            logger.error(f"Unexpected error while polling: {e}", exc_info=True)
        finally:
            if delay is None:
                delay = self.scheduler.next_delay_ms(self.session.is_live, self.clock())
            self._arm(delay)

    async def _fetch_latest(self) -> Optional[TrackSnapshot]:
        return await self._call("fetch_latest_snapshot", self.user, self.session_key)

    async def _call(self, op: str, *args):
        """
        Run a client operation. A visibility failure in direct mode flips the
        engine to mediated mode and retries once through the intermediary.
        """
        client = self.client
        try:
            return await getattr(client, op)(*args)
        except VisibilityRestricted as e:
            if client is self.mediated:
                raise
            if not self.scheduler_state.using_fallback_endpoint:
                # One-way latch: stay mediated for the rest of the run
                logger.info(f"Direct access restricted ({e}), switching to mediated mode")
                self.scheduler_state.using_fallback_endpoint = True
            return await getattr(self.mediated, op)(*args)

    # ---- state updates ----

    def _apply_snapshot(self, snapshot: TrackSnapshot, now: float):
        self.track = snapshot
        self.session, kind = self.change_detector.observe(self.session, snapshot, now)

        if kind in (ChangeKind.CHANGED, ChangeKind.CLEARED):
            self.scheduler.record_track_change(now)
        if kind in (ChangeKind.CHANGED, ChangeKind.FIRST_LOAD):
            self._start_background(self.session, snapshot)

        self.pause_detector.observe(self.session, now)

        s = self.session
        self.progress_clock.sync(s.is_live and not s.is_paused and s.started_at_ms is not None)
        self.progress_clock.tick()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _start_background(self, session: PlaybackSession, snapshot: TrackSnapshot):
        duration_task = None
        if session.duration_ms is None:
            duration_task = self._spawn(self._fetch_duration(session, snapshot))
        self._spawn(self._estimate_position(session, snapshot, duration_task))

    async def _fetch_duration(self, session: PlaybackSession, snapshot: TrackSnapshot) -> Optional[int]:
        try:
            duration = await self._call("fetch_track_duration", snapshot.artist_name, snapshot.name, self.session_key)
        except UpstreamError as e:
            logger.warning(f"Duration lookup failed for {snapshot.identity}: {e}")
            return None
        except Exception as e:
            logger.error(f"Unexpected error fetching duration for {snapshot.identity}: {e}", exc_info=True)
            return None

        if self.session is not session:
            logger.debug(f"Discarding duration for superseded track {snapshot.identity}")
            return None
        if duration is None:
            logger.info(f"No duration known for {snapshot.identity}")
        elif session.duration_ms is None:
            session.duration_ms = duration
            logger.info(f"Duration for {snapshot.identity}: {duration/1000.0:.0f}s")
        return duration

    async def _estimate_position(self, session: PlaybackSession, snapshot: TrackSnapshot, duration_task: Optional[asyncio.Task]):
        try:
            history = await self._call("fetch_recent_history", self.user, settings.HISTORY_LIMIT, self.session_key)
            duration = await duration_task if duration_task is not None else session.duration_ms
            result = estimate(snapshot.identity, history, duration, self.wall_clock())
        except UpstreamError as e:
            logger.warning(f"History lookup failed for {snapshot.identity}: {e}")
            result = Estimate(0, EstimateReason.FETCH_FAILED)
        except Exception as e:
            logger.error(f"Unexpected error estimating position for {snapshot.identity}: {e}", exc_info=True)
            result = Estimate(0, EstimateReason.FETCH_FAILED)

        if self.session is not session:
            logger.debug(f"Discarding position estimate for superseded track {snapshot.identity}")
            return
        if session.offset_estimated:
            return
        session.offset_estimated = True
        session.estimated_start_offset_ms = result.offset_ms
        logger.info(f"Start position for {snapshot.identity}: {result.offset_ms/1000.0:.0f}s ({result.reason.value})")
