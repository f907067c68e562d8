import random
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from channel_mirror.counters import CounterStore
from channel_mirror.store import StateStore
from channel_mirror.throttle import ThrottleController, ThrottleSettings

NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeSleeper:
    """Records requested sleeps; optionally advances the clock or reports cancellation."""

    def __init__(self, clock=None, result=True):
        self.calls = []
        self.clock = clock
        self.result = result

    def __call__(self, seconds):
        self.calls.append(seconds)
        if self.clock is not None and self.result:
            self.clock.now += seconds
        return self.result


def make_throttle(tmp_path, settings, sleeper=None, clock=None, seed=7):
    clock = clock or FakeClock(NOW)
    counters = CounterStore(StateStore(tmp_path, clock=clock))
    sleeper = sleeper or FakeSleeper()
    throttle = ThrottleController(
        counters,
        settings,
        cancel_event=threading.Event(),
        clock=clock,
        sleeper=sleeper,
        rng=random.Random(seed),
    )
    return throttle, counters, sleeper, clock


def test_burst_rest_is_persisted_and_served(tmp_path):
    settings = ThrottleSettings(videos_before_rest=2, rest_duration_minutes=120)
    throttle, counters, sleeper, _ = make_throttle(tmp_path, settings)

    assert throttle.record_new_download() is False
    assert throttle.record_new_download() is True

    counter = counters.download_counter()
    assert counter["count"] == 0
    assert counter["daily_count"] == 2
    assert NOW + 7200 <= counter["rest_until"] <= NOW + 7920

    assert throttle.wait_if_resting() is True
    assert len(sleeper.calls) == 1
    assert 7200 <= sleeper.calls[0] <= 7920


def test_wait_if_resting_is_a_no_op_without_rest(tmp_path):
    throttle, _, sleeper, _ = make_throttle(tmp_path, ThrottleSettings())
    assert throttle.wait_if_resting() is True
    assert sleeper.calls == []


def test_bot_detection_threshold_triggers_rest_and_reset(tmp_path):
    settings = ThrottleSettings(bot_detection_threshold=10, bot_rest_minutes=60)
    throttle, counters, sleeper, _ = make_throttle(tmp_path, settings)

    for _ in range(9):
        assert throttle.record_bot_detection() is True
    assert sleeper.calls == []
    assert counters.download_counter()["bot_detection_count"] == 9

    assert throttle.record_bot_detection() is True

    assert len(sleeper.calls) == 1
    assert 3600 <= sleeper.calls[0] <= 3960
    assert counters.download_counter()["bot_detection_count"] == 0
    assert counters.download_counter()["rest_until"] >= NOW + 3600


def test_cancelled_bot_rest_keeps_counters(tmp_path):
    settings = ThrottleSettings(bot_detection_threshold=1, bot_rest_minutes=60)
    sleeper = FakeSleeper(result=False)
    throttle, counters, _, _ = make_throttle(tmp_path, settings, sleeper=sleeper)

    assert throttle.record_bot_detection() is False

    counter = counters.download_counter()
    assert counter["bot_detection_count"] == 1
    assert counter["rest_until"] >= NOW + 3600


def test_finished_rest_serves_pending_bot_rest(tmp_path):
    settings = ThrottleSettings(bot_detection_threshold=1, bot_rest_minutes=60)
    throttle, counters, _, clock = make_throttle(
        tmp_path, settings, sleeper=FakeSleeper(result=False)
    )
    assert throttle.record_bot_detection() is False

    # A later process picks up the persisted window
    sleeper = FakeSleeper(clock=clock)
    restarted = ThrottleController(counters, settings, clock=clock, sleeper=sleeper)
    assert restarted.wait_if_resting() is True
    assert len(sleeper.calls) == 1
    assert counters.download_counter()["bot_detection_count"] == 0


@pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
def test_inter_video_delay_within_jitter_bounds(tmp_path, seed):
    settings = ThrottleSettings(sleep_interval_seconds=4)
    throttle, _, sleeper, _ = make_throttle(tmp_path, settings, seed=seed)

    assert throttle.inter_video_delay() is True
    assert 4 <= sleeper.calls[0] < 6


def test_cancelled_throttle_does_not_sleep(tmp_path):
    throttle, _, sleeper, _ = make_throttle(tmp_path, ThrottleSettings(sleep_interval_seconds=4))
    throttle.cancel_event.set()

    assert throttle.inter_video_delay() is False
    assert sleeper.calls == []


def test_daily_quota(tmp_path):
    settings = ThrottleSettings(daily_download_limit=2, videos_before_rest=0)
    throttle, _, _, _ = make_throttle(tmp_path, settings)

    assert throttle.daily_quota_reached() is False
    throttle.record_new_download()
    throttle.record_new_download()
    assert throttle.daily_quota_reached() is True

    unlimited, _, _, _ = make_throttle(tmp_path, ThrottleSettings(daily_download_limit=0))
    assert unlimited.daily_quota_reached() is False
