import asyncio
import logging
import time
from typing import Callable, Optional
from .config import settings
from .models import PlaybackSession

logger = logging.getLogger(__name__)

def monotonic_ms() -> float:
    return time.monotonic() * 1000.0

def progress_ms(session: PlaybackSession, now_ms: float, ignore_pause: bool = False) -> float:
    """
    Elapsed playback time for the session at now_ms.
    Frozen at paused_at while paused, unless ignore_pause is set.
    """
    if not session.is_live or session.started_at_ms is None:
        return 0.0
    at = now_ms
    if session.is_paused and session.paused_at_ms is not None and not ignore_pause:
        at = session.paused_at_ms
    return (at - session.started_at_ms - session.total_paused_ms) + session.estimated_start_offset_ms

class ProgressClock:
    """
    Frame ticker that refreshes the "now" used to render progress.
    Only runs while a live, unpaused session is being shown.
    """

    def __init__(self, clock: Callable[[], float] = monotonic_ms):
        self.clock = clock
        self.now_ms = clock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def tick(self):
        self.now_ms = self.clock()

    def sync(self, active: bool):
        if active and self._task is None:
            self.tick()
            self._task = asyncio.get_running_loop().create_task(self._run())
            logger.debug("Progress ticker started")
        elif not active and self._task is not None:
            self.stop()
            logger.debug("Progress ticker stopped")

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self):
        interval = settings.FRAME_INTERVAL_MS / 1000.0
        while True:
            await asyncio.sleep(interval)
            self.tick()
