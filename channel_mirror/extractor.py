"""Upstream extraction through yt-dlp: channel listings, media and subtitles."""

import os
import random
import re
import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

try:
    import yt_dlp
    from yt_dlp.utils import DownloadCancelled, DownloadError
    from yt_dlp.utils import ExtractorError as YtDlpExtractorError
except ImportError:
    raise ImportError("yt-dlp is not installed. Run: pip install yt-dlp")

from .errors import (
    BotDetectionError,
    ExtractorError,
    OperationCancelled,
    ResourceUnavailableError,
    is_bot_detection_error,
    is_unavailable_error,
)
from .logger import ExtractorLogger, log_info
from .models import USER_AGENTS, VIDEO_EXTENSIONS, SubtitleBatchResult, normalize_url
from .planner import find_track_key
from .store import subtitle_filename

DEFAULT_FORMAT = "bestvideo*+bestaudio/best"
DEFAULT_MERGE_FORMAT = "mp4"
CHANNEL_TAB_SUFFIXES = ("/videos", "/shorts", "/streams", "/playlists", "/featured")


@dataclass
class ExtractorOptions:
    cookies_from_browser: Optional[str] = None
    cookies_file: Optional[str] = None
    proxy: Optional[str] = None
    rate_limit: Optional[str] = None
    format: Optional[str] = None
    merge_output_format: str = DEFAULT_MERGE_FORMAT
    retries: int = 10


@dataclass
class VideoDownload:
    file_path: Path
    info: Dict[str, Any]


def channel_videos_url(channel_url: str) -> str:
    """Point a bare channel URL at its uploads tab."""
    url = normalize_url(channel_url)
    if "/playlist?" in url or "watch?v=" in url:
        return url
    if url.endswith(CHANNEL_TAB_SUFFIXES):
        return url
    if re.search(r"/(channel/[^/]+|@[^/]+|c/[^/]+|user/[^/]+)$", url):
        return url + "/videos"
    return url


def _flatten_entries(info: Dict[str, Any]) -> List[Dict[str, Any]]:
    videos: List[Dict[str, Any]] = []
    for entry in info.get("entries") or []:
        if not isinstance(entry, dict):
            continue
        if entry.get("_type") == "playlist" or entry.get("entries"):
            videos.extend(_flatten_entries(entry))
        elif entry.get("id"):
            videos.append(entry)
    return videos


def resolve_subtitle_keys(
    info: Dict[str, Any], languages: List[str]
) -> Tuple[Dict[str, str], List[str]]:
    """Map requested languages to upstream track keys; also list absent languages."""
    keys: Dict[str, str] = {}
    absent: List[str] = []
    for language in languages:
        key = find_track_key(info.get("subtitles"), language) or find_track_key(
            info.get("automatic_captions"), language
        )
        if key is None:
            absent.append(language)
        else:
            keys[language] = key
    return keys, absent


class YtDlpExtractor:
    """Wraps yt_dlp.YoutubeDL with the options this project needs."""

    def __init__(
        self,
        options: Optional[ExtractorOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.options = options or ExtractorOptions()
        self.cancel_event = cancel_event or threading.Event()

    def _cancel_hook(self, _status: Dict[str, Any]) -> None:
        if self.cancel_event.is_set():
            raise DownloadCancelled("cancelled by signal")

    def build_options(self, logger: ExtractorLogger, **overrides: Any) -> Dict[str, Any]:
        """Common yt-dlp options; *overrides* win over the defaults."""
        opts: Dict[str, Any] = {
            "logger": logger,
            "quiet": True,
            "no_warnings": False,
            "noprogress": True,
            "retries": self.options.retries,
            "fragment_retries": self.options.retries,
            "ignoreerrors": False,
            "noplaylist": True,
            "progress_hooks": [self._cancel_hook],
            "postprocessor_hooks": [self._cancel_hook],
            "http_headers": {"User-Agent": random.choice(USER_AGENTS)},
        }
        if self.options.cookies_file:
            opts["cookiefile"] = self.options.cookies_file
        if self.options.cookies_from_browser:
            opts["cookiesfrombrowser"] = (self.options.cookies_from_browser,)
        if self.options.proxy:
            opts["proxy"] = self.options.proxy
        if self.options.rate_limit:
            opts["ratelimit"] = self.options.rate_limit
        opts.update(overrides)
        return opts

    def _translate(self, exc: Exception, logger: ExtractorLogger) -> ExtractorError:
        text = " | ".join([str(exc)] + logger.errors)
        message = str(exc) or (logger.last_error or exc.__class__.__name__)
        if logger.bot_detected or is_bot_detection_error(text):
            return BotDetectionError(message)
        if logger.unavailable or is_unavailable_error(text):
            return ResourceUnavailableError(message)
        return ExtractorError(message)

    def _extract(self, url: str, opts: Dict[str, Any], download: bool) -> Dict[str, Any]:
        logger = opts["logger"]
        if self.cancel_event.is_set():
            raise OperationCancelled(f"extraction of {url} cancelled")
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=download)
                if not isinstance(info, dict):
                    raise ExtractorError(logger.last_error or f"No metadata returned for {url}")
                return ydl.sanitize_info(info)
        except DownloadCancelled as exc:
            raise OperationCancelled(str(exc)) from exc
        except (DownloadError, YtDlpExtractorError) as exc:
            if self.cancel_event.is_set():
                raise OperationCancelled(str(exc)) from exc
            raise self._translate(exc, logger) from exc

    # Channel listing -------------------------------------------------------

    def list_channel_videos(self, channel_url: str) -> Tuple[Optional[str], List[Dict[str, Any]]]:
        """Return the upstream channel id (if reported) and raw video payloads."""
        url = channel_videos_url(channel_url)
        logger = ExtractorLogger()
        opts = self.build_options(
            logger,
            extract_flat="in_playlist",
            skip_download=True,
            noplaylist=False,
        )
        log_info(f"[extract] Listing {url}")
        info = self._extract(url, opts, download=False)
        videos = _flatten_entries(info)
        channel_id = info.get("channel_id") or info.get("uploader_id")
        log_info(f"[extract] Found {len(videos)} videos at {url}")
        return channel_id, videos

    # Media -----------------------------------------------------------------

    def download_video(
        self, video_url: str, target_dir: Path,
        channel_id: Optional[str] = None, video_id: Optional[str] = None,
    ) -> VideoDownload:
        """Download the media into *target_dir* as ``<id>.<ext>``."""
        target_dir = Path(target_dir)
        logger = ExtractorLogger(channel_id, video_id)
        opts = self.build_options(
            logger,
            format=self.options.format or DEFAULT_FORMAT,
            merge_output_format=self.options.merge_output_format,
            outtmpl={"default": str(target_dir / "%(id)s.%(ext)s")},
            writesubtitles=False,
            writeautomaticsub=False,
            writethumbnail=False,
        )
        info = self._extract(video_url, opts, download=True)
        path = self._downloaded_path(info, target_dir)
        if path is None:
            raise ExtractorError(logger.last_error or f"yt-dlp reported no media file for {video_url}")
        return VideoDownload(file_path=path, info=info)

    @staticmethod
    def _downloaded_path(info: Dict[str, Any], target_dir: Path) -> Optional[Path]:
        for entry in info.get("requested_downloads") or []:
            filepath = entry.get("filepath") if isinstance(entry, dict) else None
            if filepath and os.path.isfile(filepath):
                return Path(filepath)
        filepath = info.get("filepath") or info.get("_filename")
        if filepath and os.path.isfile(filepath):
            return Path(filepath)
        video_id = info.get("id")
        if video_id and target_dir.is_dir():
            for candidate in sorted(target_dir.glob(f"{video_id}.*")):
                if candidate.suffix.lower() in VIDEO_EXTENSIONS and candidate.stat().st_size > 0:
                    return candidate
        return None

    # Subtitles -------------------------------------------------------------

    def download_subtitles(
        self,
        video_url: str,
        target_dir: Path,
        languages: List[str],
        title: Optional[str] = None,
        channel_id: Optional[str] = None,
        video_id: Optional[str] = None,
    ) -> SubtitleBatchResult:
        """Fetch every requested language in one pass, converted to srt.

        Languages without any upstream track are reported in ``absent``.
        Produced files are renamed to ``<title>[<id>].<lang>.srt``.
        """
        target_dir = Path(target_dir)
        logger = ExtractorLogger(channel_id, video_id)
        info = self._extract(video_url, self.build_options(logger, skip_download=True), download=False)
        keys, absent = resolve_subtitle_keys(info, languages)
        result = SubtitleBatchResult(absent=absent)
        if not keys:
            return result

        resolved_id = info.get("id") or video_id
        resolved_title = title if title is not None else info.get("title")
        opts = self.build_options(
            logger,
            skip_download=True,
            writesubtitles=True,
            writeautomaticsub=True,
            subtitleslangs=sorted(set(keys.values())),
            subtitlesformat="srt/vtt/best",
            outtmpl={"default": str(target_dir / "%(id)s.%(ext)s")},
            postprocessors=[{"key": "FFmpegSubtitlesConvertor", "format": "srt", "when": "before_dl"}],
        )
        try:
            self._extract(video_url, opts, download=True)
        except ExtractorError as exc:
            # Keep whatever languages made it to disk before the failure
            if isinstance(exc, BotDetectionError):
                raise
            result.error = str(exc)

        placed: Dict[str, Path] = {}
        for language, key in keys.items():
            canonical = target_dir / subtitle_filename(resolved_title, resolved_id, language)
            produced = target_dir / f"{resolved_id}.{key}.srt"
            if key in placed:
                # Two requested languages served by the same upstream track
                shutil.copyfile(placed[key], canonical)
            elif produced.is_file():
                if produced != canonical:
                    os.replace(produced, canonical)
                placed[key] = canonical
            else:
                continue
            result.files[language] = str(canonical)
        return result
