"""Rate shaping for downloads: inter-video delay, burst rest, daily quota and bot defense.

All state lives in the download counter file so a restarted process
honours a rest window that an earlier process started. Every wait goes
through a cancellable sleeper; a cancelled wait leaves the counters as
they were.
"""

import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .counters import CounterStore
from .logger import log_info, log_warning
from .models import (
    DEFAULT_BOT_DETECTION_THRESHOLD,
    DEFAULT_BOT_REST_MINUTES,
    DEFAULT_REST_DURATION_MINUTES,
    DEFAULT_SLEEP_INTERVAL_SECONDS,
    DEFAULT_VIDEOS_BEFORE_REST,
    INTER_VIDEO_JITTER,
    REST_JITTER,
)

# Returns True when the full duration elapsed, False when cancelled
Sleeper = Callable[[float], bool]


@dataclass
class ThrottleSettings:
    sleep_interval_seconds: float = DEFAULT_SLEEP_INTERVAL_SECONDS
    videos_before_rest: int = DEFAULT_VIDEOS_BEFORE_REST
    rest_duration_minutes: float = DEFAULT_REST_DURATION_MINUTES
    bot_detection_threshold: int = DEFAULT_BOT_DETECTION_THRESHOLD
    bot_rest_minutes: float = DEFAULT_BOT_REST_MINUTES
    daily_download_limit: int = 0


def _describe(seconds: float) -> str:
    return str(timedelta(seconds=int(seconds)))


class ThrottleController:
    """Decides when the scheduler must pause between downloads."""

    def __init__(
        self,
        counters: CounterStore,
        settings: Optional[ThrottleSettings] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.time,
        sleeper: Optional[Sleeper] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.counters = counters
        self.settings = settings or ThrottleSettings()
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._sleeper = sleeper or self._wait_on_event
        self._rng = rng or random.Random()

    def _wait_on_event(self, seconds: float) -> bool:
        return not self.cancel_event.wait(seconds)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _uniform(self, bounds) -> float:
        low, high = bounds
        return low + (high - low) * self._rng.random()

    def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled; returns False when the wait was interrupted."""
        if self.cancelled:
            return False
        if seconds <= 0:
            return True
        return self._sleeper(seconds)

    # Burst rest ------------------------------------------------------------

    def wait_if_resting(self) -> bool:
        """Block until any persisted rest window has passed.

        Returns False if the wait was cancelled.
        """
        counter = self.counters.download_counter()
        remaining = counter["rest_until"] - self._clock()
        if remaining <= 0:
            return not self.cancelled
        resume_at = datetime.fromtimestamp(counter["rest_until"]).strftime("%Y-%m-%d %H:%M:%S")
        log_info(f"Resting for {_describe(remaining)} (until {resume_at})")
        if not self.sleep(remaining):
            log_info("Rest interrupted")
            return False
        # A finished rest also serves any bot-defense rest that was pending
        threshold = self.settings.bot_detection_threshold
        if threshold > 0 and counter["bot_detection_count"] >= threshold:
            self.counters.reset_bot_detection()
        log_info("Rest finished, resuming downloads")
        return True

    def record_new_download(self) -> bool:
        """Count a fresh download; returns True when this one started a rest window."""
        counter = self.counters.increment_download()
        limit = self.settings.videos_before_rest
        if limit <= 0 or counter["count"] < limit:
            return False
        duration = self.settings.rest_duration_minutes * 60 * self._uniform(REST_JITTER)
        rest_until = self.counters.extend_rest(self._clock() + duration)
        log_info(
            f"Downloaded {counter['count']} videos, resting {_describe(duration)} "
            f"until {datetime.fromtimestamp(rest_until):%Y-%m-%d %H:%M:%S}"
        )
        return True

    def inter_video_delay(self) -> bool:
        """Pause between two fresh downloads."""
        base = self.settings.sleep_interval_seconds
        if base <= 0:
            return not self.cancelled
        delay = base * self._uniform(INTER_VIDEO_JITTER)
        log_info(f"Sleeping {delay:.1f}s before the next video")
        return self.sleep(delay)

    # Daily quota -----------------------------------------------------------

    def daily_quota_reached(self) -> bool:
        limit = self.settings.daily_download_limit
        if limit <= 0:
            return False
        return self.counters.download_counter()["daily_count"] >= limit

    # Bot defense -----------------------------------------------------------

    def record_bot_detection(self) -> bool:
        """Count a bot-defense signal and rest once the threshold is reached.

        Returns False only if a triggered rest was cancelled.
        """
        count = self.counters.increment_bot_detection()
        threshold = self.settings.bot_detection_threshold
        log_warning(f"Bot detection signal {count}/{threshold}")
        if threshold <= 0 or count < threshold:
            return True
        duration = self.settings.bot_rest_minutes * 60 * self._uniform(REST_JITTER)
        self.counters.extend_rest(self._clock() + duration, reset_count=False)
        log_warning(f"Bot detection threshold reached, resting {_describe(duration)}")
        if not self.sleep(duration):
            log_info("Bot-defense rest interrupted")
            return False
        self.counters.reset_bot_detection()
        log_info("Bot-defense rest finished")
        return True
