"""Command line entry point: ``channel-mirror {parse,download,upload}``."""

import signal
import sys
import threading
from typing import List, Optional

from .accounts import AccountSelector
from .config import Settings, parse_args
from .counters import CounterStore
from .errors import (
    ConfigError,
    ErrorAnalyzer,
    ExtractorError,
    OperationCancelled,
    SchedulerLockedError,
    StateStoreError,
)
from .extractor import YtDlpExtractor
from .fetcher import AssetFetcher
from .logger import log_error, log_info, log_warning, set_quiet
from .media import MediaTool
from .models import ChannelConfig, channel_id_from_url, normalize_url
from .scheduler import (
    RunSummary,
    SchedulerLock,
    StepScheduler,
    load_channel_videos,
    parse_channel,
    resolve_channel_id,
)
from .store import StateStore
from .throttle import ThrottleController
from .uploader import CommandUploader, UploadService

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 2


def select_channels(settings: Settings, store: StateStore) -> List[ChannelConfig]:
    """Configured channels (or every channel on disk), narrowed by ``--channel``."""
    channels = settings.channels or [
        ChannelConfig(url="", channel_id=channel_id) for channel_id in store.list_channels()
    ]
    wanted = settings.channel_filter
    if not wanted:
        return channels
    matches = [
        channel for channel in channels
        if wanted in (channel.channel_id, channel_id_from_url(channel.url))
        or (channel.url and normalize_url(channel.url) == normalize_url(wanted))
    ]
    if matches:
        return matches
    if "/" in wanted or wanted.startswith("@"):
        return [ChannelConfig(url=normalize_url(wanted))]
    return [ChannelConfig(url="", channel_id=wanted)]


def run_parse(settings: Settings, store: StateStore, extractor: YtDlpExtractor,
              cancel_event: threading.Event) -> None:
    for channel in select_channels(settings, store):
        if cancel_event.is_set():
            break
        if not channel.url:
            log_warning(f"[channel={channel.channel_id}] No URL configured, cannot parse")
            continue
        try:
            channel_id, videos = parse_channel(store, extractor, channel, settings.scheduler)
        except OperationCancelled:
            break
        except (ExtractorError, StateStoreError, OSError) as exc:
            log_error(f"Parsing {channel.url} failed: {exc}")
            continue
        log_info(f"[channel={channel_id}] Parsed {len(videos)} videos")


def run_download(settings: Settings, store: StateStore, scheduler: StepScheduler) -> RunSummary:
    summary = RunSummary()
    for channel in select_channels(settings, store):
        channel_id = resolve_channel_id(store, channel)
        if not channel_id:
            log_warning(f"No parsed listing for {channel.url}; run 'parse' first")
            continue
        try:
            videos = load_channel_videos(store, channel_id)
        except (StateStoreError, OSError) as exc:
            log_error(f"[channel={channel_id}] {exc}")
            continue
        if settings.video_filter:
            videos = [video for video in videos if video.video_id == settings.video_filter]
        if settings.limit:
            videos = videos[:settings.limit]
        if not videos:
            log_info(f"[channel={channel_id}] Nothing to download")
            continue

        log_info(f"[channel={channel_id}] Processing {len(videos)} videos")
        scheduler.run_channel(channel_id, videos, channel.languages or None, summary)
        if summary.cancelled or summary.stopped_for_quota:
            break

    log_info(
        f"Download run finished: {summary.videos_seen} videos checked, "
        f"{summary.new_downloads} new downloads, {summary.failed_videos} with errors"
    )
    scheduler.analyzer.print_summary()
    return summary


def run_upload(settings: Settings, store: StateStore, counters: CounterStore,
               cancel_event: threading.Event) -> None:
    if not settings.accounts:
        raise ConfigError("No downstream accounts configured")
    selector = AccountSelector(counters, settings.accounts.keys(), settings.daily_upload_limit)
    uploader = CommandUploader(settings.upload_command, cancel_event=cancel_event)
    service = UploadService(store, selector, uploader, settings.accounts,
                            settings.upload, cancel_event=cancel_event)
    channel_ids = []
    for channel in select_channels(settings, store):
        channel_id = resolve_channel_id(store, channel)
        if channel_id:
            channel_ids.append(channel_id)
    summary = service.run(channel_ids)
    log_info(f"Upload run finished: {summary.uploaded} uploaded, {summary.failed} failed")


def _install_signal_handlers(cancel_event: threading.Event) -> None:
    def handle(signum, _frame):
        if not cancel_event.is_set():
            print(f"\nReceived signal {signum}, finishing the current step...", file=sys.stderr)
        cancel_event.set()

    signal.signal(signal.SIGINT, handle)
    signal.signal(signal.SIGTERM, handle)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = parse_args(argv)
    except ConfigError as exc:
        log_error(str(exc))
        return EXIT_FAILURE
    set_quiet(settings.quiet)

    cancel_event = threading.Event()
    _install_signal_handlers(cancel_event)

    store = StateStore(settings.output_dir)
    counters = CounterStore(store)
    try:
        store.root.mkdir(parents=True, exist_ok=True)
        lock = SchedulerLock(store)
        lock.acquire()
    except SchedulerLockedError as exc:
        log_error(str(exc))
        return EXIT_LOCKED
    except OSError as exc:
        log_error(f"Cannot prepare output directory {store.root}: {exc}")
        return EXIT_FAILURE

    try:
        if settings.command == "parse":
            extractor = YtDlpExtractor(settings.extractor, cancel_event)
            run_parse(settings, store, extractor, cancel_event)
        elif settings.command == "download":
            throttle = ThrottleController(counters, settings.throttle, cancel_event)
            scheduler = StepScheduler(
                store,
                throttle,
                YtDlpExtractor(settings.extractor, cancel_event),
                AssetFetcher(proxy=settings.extractor.proxy, cancel_event=cancel_event),
                MediaTool(cancel_event=cancel_event),
                settings.scheduler,
                ErrorAnalyzer(),
            )
            run_download(settings, store, scheduler)
        elif settings.command == "upload":
            run_upload(settings, store, counters, cancel_event)
    except ConfigError as exc:
        log_error(str(exc))
        return EXIT_FAILURE
    except (StateStoreError, OSError) as exc:
        log_error(f"Unrecoverable state error: {exc}")
        return EXIT_FAILURE
    finally:
        lock.release()

    if cancel_event.is_set():
        log_info("Stopped after cancellation")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
