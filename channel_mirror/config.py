"""Configuration file loading, environment overrides and argument parsing."""

import argparse
import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigError
from .extractor import ExtractorOptions
from .models import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_DAILY_UPLOAD_LIMIT,
    DEFAULT_LANGUAGES,
    ENV_COOKIES_FROM_BROWSER,
    ENV_OUTPUT_DIR,
    ENV_PROXY,
    AccountConfig,
    ChannelConfig,
    normalize_url,
)
from .scheduler import SchedulerSettings
from .throttle import ThrottleSettings
from .uploader import UploadSettings

DEFAULT_OUTPUT_DIR = "./mirror"

VALID_CONFIG_KEYS = {
    "output_dir", "channels", "languages", "accounts",
    "daily_upload_limit", "sleep_interval_seconds", "videos_before_rest",
    "rest_duration_minutes", "bot_detection_threshold", "bot_rest_minutes",
    "daily_download_limit", "min_cover_height", "probe_thumbnail_urls",
    "generate_pending_downloads", "force_download_undownloadable",
    "upload_subtitles", "delete_original_after_upload", "upload_command",
    "cookies_from_browser", "cookies_file", "proxy", "rate_limit", "format",
}


def positive_int(value: str) -> int:
    """Return *value* parsed as a positive integer for argparse."""

    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError("Expected a positive integer") from exc

    if parsed <= 0:
        raise argparse.ArgumentTypeError("Expected a positive integer")

    return parsed


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a JSON file.

    A missing file yields an empty dictionary. A file that exists but is
    not a JSON object raises ConfigError, since the channel list lives
    there. Unknown keys are reported and dropped.
    """
    if not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse config file {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {config_path}: {exc}") from exc

    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a JSON object")

    invalid_keys = set(config.keys()) - VALID_CONFIG_KEYS
    if invalid_keys:
        print(f"Warning: Unknown config keys ignored: {', '.join(sorted(invalid_keys))}", file=sys.stderr)

    return {k: v for k, v in config.items() if k in VALID_CONFIG_KEYS}


def _normalize_env_str(value: Optional[str]) -> Optional[str]:
    """Normalize environment variable string value."""
    if not value:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _split_languages(value: Any) -> List[str]:
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, list):
        parts = [str(part) for part in value]
    else:
        raise ConfigError(f"languages must be a list or comma separated string, got {value!r}")
    return [part.strip() for part in parts if part.strip()]


def _int_setting(config: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ConfigError(f"{key} must be a number >= {minimum}, got {value!r}")
    return int(value)


def _float_setting(config: Dict[str, Any], key: str, default: float) -> float:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"{key} must be a non-negative number, got {value!r}")
    return float(value)


def _bool_setting(config: Dict[str, Any], key: str, default: bool) -> bool:
    value = config.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false, got {value!r}")
    return value


def parse_channels(entries: Any) -> List[ChannelConfig]:
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ConfigError("channels must be a list")
    channels: List[ChannelConfig] = []
    for entry in entries:
        if isinstance(entry, str):
            channels.append(ChannelConfig(url=normalize_url(entry)))
            continue
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ConfigError(f"channel entry needs a url: {entry!r}")
        channels.append(
            ChannelConfig(
                url=normalize_url(str(entry["url"])),
                channel_id=entry.get("id") or None,
                languages=_split_languages(entry["languages"]) if entry.get("languages") else [],
                limit=_int_setting(entry, "limit", 0),
                offset=_int_setting(entry, "offset", 0),
            )
        )
    return channels


def parse_accounts(entries: Any) -> Dict[str, AccountConfig]:
    if entries is None:
        return {}
    if isinstance(entries, list):
        entries = {str(name): {} for name in entries}
    if not isinstance(entries, dict):
        raise ConfigError("accounts must be a mapping of name to settings")
    accounts: Dict[str, AccountConfig] = {}
    for name, options in entries.items():
        if options is None:
            options = {}
        if not isinstance(options, dict):
            raise ConfigError(f"settings of account {name} must be an object")
        options = dict(options)
        accounts[str(name)] = AccountConfig(
            name=str(name), command=options.pop("command", None), options=options
        )
    return accounts


@dataclass
class Settings:
    """Everything a run needs, resolved from CLI, environment and config file."""

    command: str
    output_dir: Path
    channels: List[ChannelConfig] = field(default_factory=list)
    accounts: Dict[str, AccountConfig] = field(default_factory=dict)
    daily_upload_limit: int = DEFAULT_DAILY_UPLOAD_LIMIT
    upload_command: Optional[str] = None
    throttle: ThrottleSettings = field(default_factory=ThrottleSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    upload: UploadSettings = field(default_factory=UploadSettings)
    extractor: ExtractorOptions = field(default_factory=ExtractorOptions)
    channel_filter: Optional[str] = None
    video_filter: Optional[str] = None
    limit: int = 0
    quiet: bool = False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="channel-mirror",
        description="Mirror video channels to disk and republish them to a downstream platform.",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to JSON configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--output", help=f"Output root directory (default: {DEFAULT_OUTPUT_DIR})")
    parser.add_argument("--quiet", action="store_true", help="Only print warnings and errors")
    parser.add_argument("--languages", help="Comma separated subtitle languages, e.g. en,zh-Hans")
    parser.add_argument("--cookies-from-browser", help="Use cookies from your browser (chrome, firefox, ...)")
    parser.add_argument("--cookies-file", help="Netscape cookies file passed to yt-dlp")
    parser.add_argument("--proxy", help="Proxy URL for yt-dlp and thumbnail fetches")
    parser.add_argument("--sleep-interval", type=float, help="Base delay in seconds between fresh downloads")
    parser.add_argument("--videos-before-rest", type=positive_int, help="Fresh downloads before a long rest")
    parser.add_argument("--daily-upload-limit", type=positive_int, help="Uploads per account per day")

    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_cmd = subparsers.add_parser("parse", help="Refresh channel listings and initialize download status")
    parse_cmd.add_argument("--channel", help="Only this channel (id or URL)")

    download_cmd = subparsers.add_parser("download", help="Download pending media, subtitles and covers")
    download_cmd.add_argument("--channel", help="Only this channel (id or URL)")
    download_cmd.add_argument("--video", help="Only this video id")
    download_cmd.add_argument("--limit", type=positive_int, help="Process at most N videos per channel")

    upload_cmd = subparsers.add_parser("upload", help="Upload downloaded videos to the downstream platform")
    upload_cmd.add_argument("--channel", help="Only this channel (id or URL)")
    upload_cmd.add_argument("--upload-command", help="Upload command template for accounts without one")
    return parser


def build_settings(
    args: argparse.Namespace,
    config: Dict[str, Any],
    environ: Optional[Dict[str, str]] = None,
) -> Settings:
    """Resolve settings: CLI flags beat environment, environment beats the config file."""
    if environ is None:
        environ = os.environ

    def pick(cli_value: Any, env_name: Optional[str], key: str, default: Any = None) -> Any:
        if cli_value is not None:
            return cli_value
        if env_name:
            env_value = _normalize_env_str(environ.get(env_name))
            if env_value is not None:
                return env_value
        return config.get(key, default)

    languages = _split_languages(
        args.languages if args.languages is not None else config.get("languages", DEFAULT_LANGUAGES)
    )
    if args.sleep_interval is not None:
        config = dict(config, sleep_interval_seconds=args.sleep_interval)
    if args.videos_before_rest is not None:
        config = dict(config, videos_before_rest=args.videos_before_rest)
    if args.daily_upload_limit is not None:
        config = dict(config, daily_upload_limit=args.daily_upload_limit)

    throttle = ThrottleSettings(
        sleep_interval_seconds=_float_setting(config, "sleep_interval_seconds", ThrottleSettings.sleep_interval_seconds),
        videos_before_rest=_int_setting(config, "videos_before_rest", ThrottleSettings.videos_before_rest),
        rest_duration_minutes=_float_setting(config, "rest_duration_minutes", ThrottleSettings.rest_duration_minutes),
        bot_detection_threshold=_int_setting(config, "bot_detection_threshold", ThrottleSettings.bot_detection_threshold),
        bot_rest_minutes=_float_setting(config, "bot_rest_minutes", ThrottleSettings.bot_rest_minutes),
        daily_download_limit=_int_setting(config, "daily_download_limit", 0),
    )
    scheduler = SchedulerSettings(
        languages=languages,
        min_cover_height=_int_setting(config, "min_cover_height", SchedulerSettings.min_cover_height),
        probe_thumbnail_urls=_bool_setting(config, "probe_thumbnail_urls", True),
        generate_pending_downloads=_bool_setting(config, "generate_pending_downloads", True),
        force_download_undownloadable=_bool_setting(config, "force_download_undownloadable", False),
    )
    upload = UploadSettings(
        upload_subtitles=_bool_setting(config, "upload_subtitles", True),
        delete_original_after_upload=_bool_setting(config, "delete_original_after_upload", False),
    )
    extractor = ExtractorOptions(
        cookies_from_browser=pick(args.cookies_from_browser, ENV_COOKIES_FROM_BROWSER, "cookies_from_browser"),
        cookies_file=pick(args.cookies_file, None, "cookies_file"),
        proxy=pick(args.proxy, ENV_PROXY, "proxy"),
        rate_limit=config.get("rate_limit"),
        format=config.get("format"),
    )

    return Settings(
        command=args.command,
        output_dir=Path(pick(args.output, ENV_OUTPUT_DIR, "output_dir", DEFAULT_OUTPUT_DIR)).expanduser(),
        channels=parse_channels(config.get("channels")),
        accounts=parse_accounts(config.get("accounts")),
        daily_upload_limit=_int_setting(config, "daily_upload_limit", DEFAULT_DAILY_UPLOAD_LIMIT, minimum=1),
        upload_command=pick(getattr(args, "upload_command", None), None, "upload_command"),
        throttle=throttle,
        scheduler=scheduler,
        upload=upload,
        extractor=extractor,
        channel_filter=getattr(args, "channel", None),
        video_filter=getattr(args, "video", None),
        limit=getattr(args, "limit", None) or 0,
        quiet=args.quiet,
    )


def parse_args(argv: Optional[List[str]] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """Parse the command line and merge it with the config file and environment."""
    args = build_parser().parse_args(argv)
    config = load_config_file(args.config)
    if config and not args.quiet:
        print(f"Loaded configuration from {args.config}")
    return build_settings(args, config, environ)
