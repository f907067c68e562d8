"""Step scheduler: drive every video of every channel to its terminal state.

For one video the steps run in a fixed order (upload short-circuit,
media, subtitles, cover, metadata). Each step reads the state store,
decides whether work is needed, calls a collaborator and records the
outcome before the next step starts, so an interrupted run resumes
where it stopped.
"""

import fcntl
import os
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import (
    ErrorAnalyzer,
    ExtractorError,
    FetchError,
    OperationCancelled,
    ResourceUnavailableError,
    SchedulerLockedError,
    StateStoreError,
    TranscodeError,
    is_bot_detection_error,
)
from .logger import format_context, log_error, log_info, log_warning
from .media import MediaTool, detect_image_extension
from .models import (
    COVER_BASENAME,
    DEFAULT_LANGUAGES,
    DEFAULT_MIN_COVER_HEIGHT,
    DIR_MODE,
    IMAGE_EXTENSIONS,
    PROBED_THUMBNAIL_NAMES,
    SCHEDULER_LOCK_FILE,
    YTIMG_THUMBNAIL_TEMPLATE,
    ChannelConfig,
    ResourceStatus,
    StepOutcome,
    VideoRecord,
    channel_id_from_url,
    looks_like_youtube_id,
    normalize_url,
)
from .planner import (
    extract_subtitle_urls,
    extract_thumbnails,
    plan_channel,
    select_thumbnail,
    select_window,
)
from .store import StateStore, subtitle_filename
from .throttle import ThrottleController

KNOWN_IMAGE_TYPES = ("jpg", "png", "webp", "gif")


@dataclass
class SchedulerSettings:
    languages: List[str] = field(default_factory=lambda: list(DEFAULT_LANGUAGES))
    min_cover_height: int = DEFAULT_MIN_COVER_HEIGHT
    probe_thumbnail_urls: bool = True
    generate_pending_downloads: bool = True
    force_download_undownloadable: bool = False


@dataclass
class RunSummary:
    videos_seen: int = 0
    new_downloads: int = 0
    skipped_uploaded: int = 0
    failed_videos: int = 0
    stopped_for_quota: bool = False
    cancelled: bool = False


class SchedulerLock:
    """Advisory lock that keeps a second scheduler off the same output root."""

    def __init__(self, store: StateStore) -> None:
        self.path = store.global_dir / SCHEDULER_LOCK_FILE
        self._handle = None

    def acquire(self) -> None:
        self.path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            handle.close()
            raise SchedulerLockedError(
                f"Another scheduler holds {self.path}; refusing to run"
            ) from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None

    def __enter__(self) -> "SchedulerLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _requested_image_type(url: str) -> Optional[str]:
    suffix = Path(urllib.parse.urlparse(url).path).suffix.lower().lstrip(".")
    if suffix == "jpeg":
        suffix = "jpg"
    return suffix if suffix in KNOWN_IMAGE_TYPES else None


class StepScheduler:
    """Runs the per-video step pipeline against the state store."""

    def __init__(
        self,
        store: StateStore,
        throttle: ThrottleController,
        extractor,
        fetcher,
        media: MediaTool,
        settings: Optional[SchedulerSettings] = None,
        analyzer: Optional[ErrorAnalyzer] = None,
    ) -> None:
        self.store = store
        self.throttle = throttle
        self.extractor = extractor
        self.fetcher = fetcher
        self.media = media
        self.settings = settings or SchedulerSettings()
        self.analyzer = analyzer or ErrorAnalyzer()

    # Bookkeeping -----------------------------------------------------------

    def _note_failure(self, channel_id: str, video_id: str, outcome: StepOutcome,
                      step: str, error: Exception) -> None:
        prefix = format_context(channel_id, video_id)
        log_warning(f"{prefix}{step} failed: {error}")
        outcome.errors.append(f"{step}: {error}")
        self.analyzer.categorize_and_record(video_id, error)
        if is_bot_detection_error(error):
            outcome.bot_detected = True
            if not self.throttle.record_bot_detection():
                raise OperationCancelled("cancelled during bot-defense rest")

    def _after_step(self, channel_id: str, video_id: str) -> None:
        if self.settings.generate_pending_downloads:
            self.store.refresh_pending_entry(channel_id, video_id)

    # Pipeline --------------------------------------------------------------

    def process_video(
        self, channel_id: str, video: VideoRecord, languages: Optional[List[str]] = None
    ) -> StepOutcome:
        """Run every step for one video and return what happened."""
        languages = list(languages if languages is not None else self.settings.languages)
        outcome = StepOutcome(video_id=video.video_id)
        prefix = format_context(channel_id, video.video_id)

        if self.store.is_upload_completed(channel_id, video.video_id):
            outcome.skipped_upload_complete = True
            log_info(f"{prefix}Already uploaded, nothing to do")
            return outcome

        self.store.ensure_dir(channel_id, video.video_id)

        fresh_info = self._video_step(channel_id, video, outcome)
        self._after_step(channel_id, video.video_id)

        if languages:
            self._subtitle_step(channel_id, video, languages, outcome)
            self._after_step(channel_id, video.video_id)

        self._cover_step(channel_id, video, fresh_info, outcome)
        self._after_step(channel_id, video.video_id)

        self._metadata_step(channel_id, video, fresh_info, languages)
        return outcome

    def _video_step(self, channel_id: str, video: VideoRecord,
                    outcome: StepOutcome) -> Optional[Dict[str, Any]]:
        prefix = format_context(channel_id, video.video_id)
        record = self.store.get_resource(channel_id, video.video_id, "video")
        if self.store.is_resource_done(record):
            return None
        if record.status == ResourceStatus.SKIPPED and not self.settings.force_download_undownloadable:
            return None
        if record.status == ResourceStatus.COMPLETED:
            log_warning(f"{prefix}Recorded media {record.file_path} is missing, downloading again")

        video_dir = self.store.ensure_dir(channel_id, video.video_id)
        self.store.mark_downloading(channel_id, video.video_id, "video", url=video.url)
        log_info(f"{prefix}Downloading media from {video.url}")
        try:
            result = self.extractor.download_video(
                video.url, video_dir, channel_id=channel_id, video_id=video.video_id
            )
        except OperationCancelled:
            self.store.mark_pending(channel_id, video.video_id, "video")
            raise
        except ResourceUnavailableError as exc:
            if self.settings.force_download_undownloadable:
                self.store.mark_failed(channel_id, video.video_id, "video", exc)
            else:
                self.store.mark_skipped(channel_id, video.video_id, "video", exc)
            self._note_failure(channel_id, video.video_id, outcome, "video", exc)
            return None
        except ExtractorError as exc:
            self.store.mark_failed(channel_id, video.video_id, "video", exc)
            self._note_failure(channel_id, video.video_id, outcome, "video", exc)
            return None

        self.store.mark_completed(
            channel_id, video.video_id, "video", str(result.file_path), url=video.url
        )
        outcome.new_download = True
        log_info(f"{prefix}Media saved to {result.file_path}")
        return result.info

    def _subtitle_step(self, channel_id: str, video: VideoRecord,
                       languages: List[str], outcome: StepOutcome) -> None:
        prefix = format_context(channel_id, video.video_id)
        missing: List[str] = []
        for language in languages:
            record = self.store.get_resource(channel_id, video.video_id, "subtitles", language)
            if record.status == ResourceStatus.NOT_FOUND:
                continue
            if self.store.is_resource_done(record):
                continue
            if record.status == ResourceStatus.COMPLETED:
                log_warning(f"{prefix}Subtitle {language} file is missing, fetching again")
            missing.append(language)
        if not missing:
            return

        video_dir = self.store.ensure_dir(channel_id, video.video_id)
        for language in missing:
            self.store.mark_downloading(channel_id, video.video_id, "subtitles", language)
        log_info(f"{prefix}Fetching subtitles: {', '.join(missing)}")

        try:
            batch = self.extractor.download_subtitles(
                video.url, video_dir, missing, title=video.title,
                channel_id=channel_id, video_id=video.video_id,
            )
        except OperationCancelled:
            for language in missing:
                self.store.mark_pending(channel_id, video.video_id, "subtitles", language)
            raise
        except ExtractorError as exc:
            for language in missing:
                self.store.mark_failed(channel_id, video.video_id, "subtitles", exc, language)
            self._note_failure(channel_id, video.video_id, outcome, "subtitles", exc)
            return

        for language in missing:
            path = self._subtitle_on_disk(video_dir, video, language, batch.files.get(language))
            if path is not None:
                self.store.mark_completed(channel_id, video.video_id, "subtitles",
                                          str(path), language)
                outcome.new_download = True
            elif language in batch.absent:
                self.store.mark_not_found(channel_id, video.video_id, language)
                log_info(f"{prefix}No upstream subtitle for {language}")
            else:
                error = batch.error or f"subtitle {language} was not produced"
                self.store.mark_failed(channel_id, video.video_id, "subtitles", error, language)
                outcome.errors.append(f"subtitles[{language}]: {error}")
                self.analyzer.categorize_and_record(video.video_id, f"subtitle {language}: {error}")

    @staticmethod
    def _subtitle_on_disk(video_dir: Path, video: VideoRecord, language: str,
                          reported: Optional[str]) -> Optional[Path]:
        """The canonical subtitle file, if it exists and is not empty."""
        candidates = [video_dir / subtitle_filename(video.title, video.video_id, language)]
        if reported:
            candidates.append(Path(reported))
        for candidate in candidates:
            if candidate.is_file() and candidate.stat().st_size > 0:
                return candidate
        return None

    # Cover -----------------------------------------------------------------

    def _thumbnail_candidates(self, video: VideoRecord, fresh_info: Optional[Dict[str, Any]],
                              recorded_url: Optional[str]) -> List[str]:
        candidates: List[str] = []
        if self.settings.probe_thumbnail_urls and looks_like_youtube_id(video.video_id):
            for name in PROBED_THUMBNAIL_NAMES:
                url = YTIMG_THUMBNAIL_TEMPLATE.format(video_id=video.video_id, name=name)
                if self.fetcher.exists(url):
                    candidates.append(url)
                    break
        for raw in (fresh_info, video.raw):
            if raw:
                best = select_thumbnail(extract_thumbnails(raw))
                if best is not None and best.url not in candidates:
                    candidates.append(best.url)
        if recorded_url and recorded_url not in candidates:
            candidates.append(recorded_url)
        return candidates

    def _clear_covers(self, video_dir: Path, keep: Optional[Path] = None) -> None:
        for ext in IMAGE_EXTENSIONS:
            candidate = video_dir / f"{COVER_BASENAME}{ext}"
            if candidate != keep and candidate.is_file():
                candidate.unlink()

    def _save_cover(self, video_dir: Path, url: str) -> Path:
        data = self.fetcher.fetch(url)
        detected = detect_image_extension(data)
        if detected is None:
            raise FetchError(f"{url} did not return an image")
        requested = _requested_image_type(url) or detected
        if detected != requested and self.media.can_transcode:
            source = video_dir / f"{COVER_BASENAME}.source.{detected}"
            target = video_dir / f"{COVER_BASENAME}.{requested}"
            source.write_bytes(data)
            try:
                self.media.transcode_image(source, target)
            finally:
                source.unlink()
        else:
            target = video_dir / f"{COVER_BASENAME}.{detected}"
            target.write_bytes(data)
        os.chmod(target, 0o644)
        self._clear_covers(video_dir, keep=target)
        return target

    def _first_frame_cover(self, channel_id: str, video_id: str, video_dir: Path) -> Path:
        video_file = self.store.find_video_file(channel_id, video_id)
        if video_file is None:
            raise TranscodeError("no media file to take a frame from")
        staging = video_dir / f"{COVER_BASENAME}.frame.jpg"
        self.media.extract_first_frame(video_file, staging)
        target = video_dir / f"{COVER_BASENAME}.jpg"
        os.replace(staging, target)
        self._clear_covers(video_dir, keep=target)
        return target

    def _cover_step(self, channel_id: str, video: VideoRecord,
                    fresh_info: Optional[Dict[str, Any]], outcome: StepOutcome) -> None:
        record = self.store.get_resource(channel_id, video.video_id, "thumbnail")
        if self.store.is_resource_done(record):
            return

        video_dir = self.store.ensure_dir(channel_id, video.video_id)
        candidates = self._thumbnail_candidates(video, fresh_info, record.url)
        self.store.mark_downloading(channel_id, video.video_id, "thumbnail",
                                    url=candidates[0] if candidates else None)

        try:
            cover, used_url, error = self._obtain_cover(channel_id, video, video_dir, candidates)
        except OperationCancelled:
            self.store.mark_pending(channel_id, video.video_id, "thumbnail")
            raise

        if cover is not None:
            self.store.mark_completed(channel_id, video.video_id, "thumbnail",
                                      str(cover), url=used_url)
            return
        self.store.mark_failed(channel_id, video.video_id, "thumbnail", error)
        self._note_failure(channel_id, video.video_id, outcome, "thumbnail", error)

    def _obtain_cover(self, channel_id: str, video: VideoRecord, video_dir: Path,
                      candidates: List[str]) -> Tuple[Optional[Path], Optional[str], Exception]:
        """Try each candidate URL, then a first-frame fallback when allowed."""
        prefix = format_context(channel_id, video.video_id)
        cover: Optional[Path] = None
        used_url: Optional[str] = None
        last_error: Optional[Exception] = None
        for url in candidates:
            try:
                cover = self._save_cover(video_dir, url)
                used_url = url
                break
            except (FetchError, TranscodeError) as exc:
                log_warning(f"{prefix}Thumbnail {url} unusable: {exc}")
                last_error = exc

        too_small = False
        if cover is not None and self.settings.min_cover_height > 0:
            height = self.media.image_height(cover)
            too_small = height is not None and height < self.settings.min_cover_height
            if too_small:
                log_info(f"{prefix}Cover is {height}px high, trying a frame from the video")

        if (cover is None or too_small) and self.media.can_transcode:
            try:
                cover = self._first_frame_cover(channel_id, video.video_id, video_dir)
                used_url = None
            except TranscodeError as exc:
                if cover is None:
                    last_error = exc

        return cover, used_url, last_error or FetchError("no cover could be obtained")

    # Metadata --------------------------------------------------------------

    def _metadata_step(self, channel_id: str, video: VideoRecord,
                       fresh_info: Optional[Dict[str, Any]], languages: List[str]) -> None:
        if not self.store.is_video_downloaded(channel_id, video.video_id):
            return
        info_path = self.store.video_info_path(channel_id, video.video_id)
        if fresh_info is None and info_path.is_file():
            return
        existing = self.store.load(info_path)
        info: Dict[str, Any] = dict(existing) if isinstance(existing, dict) else {}
        info.update(video.raw)
        if fresh_info:
            info.update(fresh_info)
        subtitle_urls = dict(info.get("subtitle_urls") or {})
        subtitle_urls.update(extract_subtitle_urls(info, languages))
        info["subtitle_urls"] = subtitle_urls
        thumbnails = extract_thumbnails(info)
        if thumbnails:
            info["thumbnails"] = [thumb.to_payload() for thumb in thumbnails]
        self.store.save_video_info(channel_id, video.video_id, info)

    # Channel loop ----------------------------------------------------------

    def run_channel(self, channel_id: str, videos: List[VideoRecord],
                    languages: Optional[List[str]] = None,
                    summary: Optional[RunSummary] = None) -> RunSummary:
        """Process *videos* in order, honouring rests, quota and cancellation."""
        summary = summary or RunSummary()
        for video in videos:
            if not self.throttle.wait_if_resting():
                summary.cancelled = True
                break
            if self.throttle.daily_quota_reached():
                log_info("Daily download quota reached, stopping until tomorrow")
                summary.stopped_for_quota = True
                break

            summary.videos_seen += 1
            try:
                outcome = self.process_video(channel_id, video, languages)
            except OperationCancelled:
                summary.cancelled = True
                break
            except (OSError, StateStoreError) as exc:
                summary.failed_videos += 1
                log_error(f"{format_context(channel_id, video.video_id)}{exc}")
                self.analyzer.categorize_and_record(video.video_id, exc)
                continue

            if outcome.skipped_upload_complete:
                summary.skipped_uploaded += 1
            if outcome.errors:
                summary.failed_videos += 1
            if outcome.new_download:
                summary.new_downloads += 1
                self.throttle.record_new_download()
                if not self.throttle.inter_video_delay():
                    summary.cancelled = True
                    break
            if self.throttle.cancelled:
                summary.cancelled = True
                break
        return summary


# Channel-level verbs --------------------------------------------------------

def resolve_channel_id(store: StateStore, channel: ChannelConfig,
                       reported: Optional[str] = None) -> Optional[str]:
    """Directory key for a configured channel."""
    if channel.channel_id:
        return channel.channel_id
    derived = channel_id_from_url(channel.url)
    if derived:
        return derived
    if reported:
        return reported
    wanted = normalize_url(channel.url)
    for candidate in store.list_channels():
        try:
            manifest = store.load(store.pending_downloads_path(candidate))
        except StateStoreError:
            continue
        if isinstance(manifest, dict) and normalize_url(str(manifest.get("channel_url", ""))) == wanted:
            return candidate
    return None


def parse_channel(store: StateStore, extractor, channel: ChannelConfig,
                  settings: SchedulerSettings) -> Tuple[str, List[VideoRecord]]:
    """Refresh the listing of one channel and initialize its status files."""
    reported, raw_videos = extractor.list_channel_videos(channel.url)
    channel_id = resolve_channel_id(store, channel, reported)
    if not channel_id:
        raise ExtractorError(f"Could not determine a channel id for {channel.url}")
    raw_videos = select_window(raw_videos, channel.offset, channel.limit)
    languages = channel.languages or settings.languages
    videos = plan_channel(store, channel_id, channel.url, raw_videos, languages,
                          generate_pending=settings.generate_pending_downloads)
    return channel_id, videos


def load_channel_videos(store: StateStore, channel_id: str) -> List[VideoRecord]:
    videos = []
    for raw in store.load_channel_info(channel_id):
        video = VideoRecord.from_raw(raw)
        if video is not None:
            videos.append(video)
    return videos
