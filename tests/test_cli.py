import json
import signal
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from channel_mirror import cli
from channel_mirror.config import build_parser, build_settings
from channel_mirror.models import ChannelConfig
from channel_mirror.scheduler import SchedulerLock
from channel_mirror.store import StateStore


@pytest.fixture(autouse=True)
def restore_signal_handlers():
    previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def test_malformed_config_exits_with_failure(tmp_path):
    config = tmp_path / "bad.json"
    config.write_text("{oops", encoding="utf-8")

    assert cli.main(["--config", str(config), "--output", str(tmp_path / "out"), "parse"]) == 1


def test_held_lock_exits_with_locked_code(tmp_path):
    out = tmp_path / "out"
    with SchedulerLock(StateStore(out)):
        code = cli.main(["--config", str(tmp_path / "none.json"), "--output", str(out), "download"])
    assert code == 2


def test_upload_without_accounts_is_a_config_failure(tmp_path):
    code = cli.main(["--config", str(tmp_path / "none.json"), "--output", str(tmp_path / "out"), "upload"])
    assert code == 1


def test_download_with_nothing_parsed_succeeds(tmp_path):
    code = cli.main(["--config", str(tmp_path / "none.json"), "--output", str(tmp_path / "out"), "download"])
    assert code == 0
    # The lock is released once the run ends
    with SchedulerLock(StateStore(tmp_path / "out")):
        pass


def test_select_channels_filters_by_id_and_url(tmp_path):
    config = {"channels": ["https://www.youtube.com/@one", {"url": "https://example.com/two", "id": "two"}]}
    store = StateStore(tmp_path)

    settings = build_settings(build_parser().parse_args(["download", "--channel", "@one"]), config, {})
    assert [c.url for c in cli.select_channels(settings, store)] == ["https://www.youtube.com/@one"]

    settings = build_settings(build_parser().parse_args(["download", "--channel", "two"]), config, {})
    assert [c.channel_id for c in cli.select_channels(settings, store)] == ["two"]

    settings = build_settings(build_parser().parse_args(["download", "--channel", "UCnew"]), config, {})
    assert cli.select_channels(settings, store) == [ChannelConfig(url="", channel_id="UCnew")]


def test_select_channels_defaults_to_channels_on_disk(tmp_path):
    store = StateStore(tmp_path)
    store.ensure_dir("A")
    store.ensure_dir("B")
    store.global_dir.mkdir()
    settings = build_settings(build_parser().parse_args(["download"]), {}, {})

    assert [c.channel_id for c in cli.select_channels(settings, store)] == ["A", "B"]


def test_parse_run_uses_extractor_listing(tmp_path):
    class Listing:
        def list_channel_videos(self, url):
            return "UCabc", [{"id": "v1", "title": "One"}]

    store = StateStore(tmp_path)
    settings = build_settings(
        build_parser().parse_args(["parse"]),
        {"channels": [{"url": "https://example.com/feed"}], "languages": ["en"]},
        {},
    )
    cli.run_parse(settings, store, Listing(), cancel_event=threading.Event())

    status = json.loads((tmp_path / "UCabc" / "v1" / "download_status.json").read_text())
    assert status["video"]["status"] == "pending"
