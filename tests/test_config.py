import argparse
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from channel_mirror.config import (
    build_parser,
    build_settings,
    load_config_file,
    parse_accounts,
    parse_channels,
    positive_int,
)
from channel_mirror.errors import ConfigError


def write_config(tmp_path, payload) -> str:
    path = tmp_path / "channel_mirror.json"
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")
    return str(path)


def test_missing_config_file_is_empty(tmp_path):
    assert load_config_file(str(tmp_path / "absent.json")) == {}


def test_malformed_config_file_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_config_file(write_config(tmp_path, "{not json"))
    with pytest.raises(ConfigError):
        load_config_file(write_config(tmp_path, "[1, 2]"))


def test_unknown_keys_are_dropped_with_warning(tmp_path, capsys):
    config = load_config_file(write_config(tmp_path, {"output_dir": "/data", "colour": "blue"}))

    assert config == {"output_dir": "/data"}
    assert "colour" in capsys.readouterr().err


@pytest.mark.parametrize("value", ["0", "-3", "abc"])
def test_positive_int_rejects(value):
    with pytest.raises(argparse.ArgumentTypeError):
        positive_int(value)


def test_positive_int_accepts():
    assert positive_int("5") == 5


def test_cli_beats_environment_beats_file(tmp_path):
    config = {"output_dir": "/from/file", "proxy": "http://file:1", "cookies_from_browser": "safari"}
    environ = {"CHANNEL_MIRROR_OUTPUT_DIR": "/from/env", "CHANNEL_MIRROR_PROXY": "  "}

    args = build_parser().parse_args(["--output", "/from/cli", "download"])
    settings = build_settings(args, config, environ)
    assert settings.output_dir == Path("/from/cli")
    # Blank environment values do not override the file
    assert settings.extractor.proxy == "http://file:1"
    assert settings.extractor.cookies_from_browser == "safari"

    args = build_parser().parse_args(["download"])
    assert build_settings(args, config, environ).output_dir == Path("/from/env")
    assert build_settings(args, config, {}).output_dir == Path("/from/file")


def test_defaults_without_config():
    args = build_parser().parse_args(["download", "--limit", "3"])
    settings = build_settings(args, {}, {})

    assert settings.command == "download"
    assert settings.limit == 3
    assert settings.scheduler.languages == ["en"]
    assert settings.throttle.videos_before_rest == 60
    assert settings.throttle.sleep_interval_seconds == 3.0
    assert settings.throttle.daily_download_limit == 0
    assert settings.daily_upload_limit == 160
    assert settings.scheduler.min_cover_height == 1080
    assert settings.upload.delete_original_after_upload is False


def test_throttle_flags_override_file():
    args = build_parser().parse_args(
        ["--languages", "en, zh-Hans", "--sleep-interval", "1.5", "--videos-before-rest", "5", "download"]
    )
    settings = build_settings(args, {"sleep_interval_seconds": 9, "videos_before_rest": 100}, {})

    assert settings.scheduler.languages == ["en", "zh-Hans"]
    assert settings.throttle.sleep_interval_seconds == 1.5
    assert settings.throttle.videos_before_rest == 5


@pytest.mark.parametrize(
    "config",
    [
        {"videos_before_rest": -1},
        {"sleep_interval_seconds": "fast"},
        {"probe_thumbnail_urls": "yes"},
        {"daily_upload_limit": 0},
        {"languages": 5},
    ],
)
def test_invalid_values_raise(config):
    args = build_parser().parse_args(["download"])
    with pytest.raises(ConfigError):
        build_settings(args, config, {})


def test_parse_channels_accepts_strings_and_objects():
    channels = parse_channels([
        "@plain",
        {"url": "youtube.com/@rich/", "id": "rich", "languages": "ja,ko", "limit": 5, "offset": 2},
    ])

    assert channels[0].url == "https://www.youtube.com/@plain"
    assert channels[1].url == "https://youtube.com/@rich"
    assert channels[1].channel_id == "rich"
    assert channels[1].languages == ["ja", "ko"]
    assert (channels[1].limit, channels[1].offset) == (5, 2)

    with pytest.raises(ConfigError):
        parse_channels([{"languages": ["en"]}])


def test_parse_accounts_forms():
    accounts = parse_accounts({"alice": {"command": "up {file}", "region": "cn"}, "bob": None})
    assert accounts["alice"].command == "up {file}"
    assert accounts["alice"].options == {"region": "cn"}
    assert accounts["bob"].command is None
    assert list(parse_accounts(["x", "y"])) == ["x", "y"]
