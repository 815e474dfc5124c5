import logging
from enum import Enum
from typing import Optional
from .config import settings
from .models import SchedulerState

logger = logging.getLogger(__name__)

class ActivitySignal(str, Enum):
    POINTER = "pointer"
    KEYBOARD = "keyboard"
    SCROLL = "scroll"
    TOUCH = "touch"
    FOCUS = "focus"
    VISIBILITY = "visibility"

class ActivityMonitor:
    """Keeps only the timestamp of the most recent interaction signal."""

    def __init__(self, state: SchedulerState):
        self.state = state

    def record(self, signal, now_ms: float):
        # Raises ValueError for names outside the fixed signal set
        signal = ActivitySignal(signal)
        self.state.last_user_activity_ms = now_ms
        logger.debug(f"Activity signal '{signal.value}' recorded")

    def idle_ms(self, now_ms: float) -> Optional[float]:
        if self.state.last_user_activity_ms is None:
            return None
        return now_ms - self.state.last_user_activity_ms

class AdaptiveScheduler:
    def __init__(self, state: SchedulerState):
        self.state = state
        self.activity = ActivityMonitor(state)

    def next_delay_ms(self, is_live: bool, now_ms: float) -> int:
        """
        Pick the delay before the next poll. First matching tier wins.
        """
        idle = self.activity.idle_ms(now_ms)
        changed = self.state.last_track_change_ms
        since_change = now_ms - changed if changed is not None else None

        if idle is not None and idle < settings.ACTIVITY_RECENT_MS:
            if since_change is not None and since_change < settings.TRACK_CHANGE_RECENT_MS:
                return settings.POLL_FAST_MS
            return settings.POLL_NORMAL_MS if is_live else settings.POLL_SLOW_MS

        if idle is not None and idle < settings.ACTIVITY_WARM_MS:
            return settings.POLL_SLOW_MS

        return settings.POLL_IDLE_MS

    def may_request(self, now_ms: float) -> bool:
        """Minimum spacing between upstream requests, regardless of tier."""
        last = self.state.last_request_ms
        return last is None or (now_ms - last) >= settings.MIN_REQUEST_SPACING_MS

    def record_request(self, now_ms: float):
        self.state.last_request_ms = now_ms

    def record_success(self, now_ms: float):
        if self.state.consecutive_error_count:
            logger.info(f"Upstream recovered after {self.state.consecutive_error_count} failed polls")
        self.state.consecutive_error_count = 0
        self.state.last_success_ms = now_ms

    def record_failure(self) -> int:
        """Count a failed poll and return the backoff delay before the next attempt."""
        self.state.consecutive_error_count += 1
        # Exponent bounded so long outages can't overflow the float
        exponent = min(self.state.consecutive_error_count, 32)
        delay = settings.BACKOFF_BASE_MS * (settings.BACKOFF_GROWTH ** exponent)
        return int(min(settings.BACKOFF_CAP_MS, delay))

    def record_track_change(self, now_ms: float):
        self.state.last_track_change_ms = now_ms
