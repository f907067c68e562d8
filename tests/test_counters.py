import json
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from channel_mirror.counters import CounterStore
from channel_mirror.store import StateStore

NOW = 1_700_000_000  # 2023-11-14


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def day_of(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d")


def make_counters(tmp_path, clock=None):
    clock = clock or FakeClock(NOW)
    return CounterStore(StateStore(tmp_path, clock=clock)), clock


def write_json(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload))


def test_upload_counts_start_empty_and_increment(tmp_path):
    counters, _ = make_counters(tmp_path)
    assert counters.upload_counts() == {}

    counters.increment_upload("alice")
    counters.increment_upload("alice")
    counters.increment_upload("bob")

    assert counters.upload_counts() == {"alice": 2, "bob": 1}
    payload = json.loads(counters.upload_counters_path.read_text())
    assert payload == {"date": day_of(NOW), "counts": {"alice": 2, "bob": 1}}


def test_upload_counts_reset_on_new_day(tmp_path):
    counters, _ = make_counters(tmp_path)
    write_json(counters.upload_counters_path,
               {"date": day_of(NOW - 86400), "counts": {"alice": 160}})

    assert counters.upload_counts() == {}
    # The reset is persisted with the new stamp
    payload = json.loads(counters.upload_counters_path.read_text())
    assert payload["date"] == day_of(NOW)
    assert payload["counts"] == {}


def test_malformed_counters_are_treated_as_empty(tmp_path):
    counters, _ = make_counters(tmp_path)
    counters.upload_counters_path.parent.mkdir(parents=True)
    counters.upload_counters_path.write_text("{definitely not json")
    counters.download_counter_path.write_text("[1, 2, 3]")

    assert counters.upload_counts() == {}
    counter = counters.download_counter()
    assert counter["count"] == 0
    assert counter["rest_until"] == 0
    assert counters.increment_upload("alice") == 1


def test_day_boundary_clears_expired_rest(tmp_path):
    counters, _ = make_counters(tmp_path)
    write_json(counters.download_counter_path, {
        "date": day_of(NOW - 86400),
        "count": 42,
        "daily_count": 42,
        "rest_until": NOW - 10,
        "bot_detection_count": 3,
    })

    counter = counters.download_counter()
    assert counter["date"] == day_of(NOW)
    assert counter["count"] == 0
    assert counter["bot_detection_count"] == 0
    assert counter["rest_until"] == 0


def test_day_boundary_keeps_active_rest(tmp_path):
    counters, _ = make_counters(tmp_path)
    write_json(counters.download_counter_path, {
        "date": day_of(NOW - 86400),
        "count": 5,
        "rest_until": NOW + 600,
        "bot_detection_count": 0,
    })

    counter = counters.download_counter()
    assert counter["count"] == 0
    assert counter["rest_until"] == NOW + 600


def test_rest_until_never_moves_backwards(tmp_path):
    counters, _ = make_counters(tmp_path)
    assert counters.extend_rest(NOW + 1000) == NOW + 1000
    assert counters.extend_rest(NOW + 10) == NOW + 1000
    assert counters.download_counter()["rest_until"] == NOW + 1000


def test_download_counter_preserves_unknown_fields(tmp_path):
    counters, _ = make_counters(tmp_path)
    write_json(counters.download_counter_path, {
        "date": day_of(NOW), "count": 1, "rest_until": 0,
        "bot_detection_count": 0, "owner": "ops",
    })

    counters.increment_download()
    counters.increment_bot_detection()

    payload = json.loads(counters.download_counter_path.read_text())
    assert payload["owner"] == "ops"
    assert payload["count"] == 2
    assert payload["daily_count"] == 1
    assert payload["bot_detection_count"] == 1
