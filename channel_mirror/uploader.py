"""Republishing downloaded videos to the downstream platform."""

import json
import os
import re
import shlex
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .accounts import AccountSelector
from .errors import (
    AccountsExhaustedError,
    ErrorAnalyzer,
    OperationCancelled,
    StateStoreError,
    UploadError,
)
from .logger import format_context, log_error, log_info, log_warning
from .media import run_command
from .models import (
    MISSING_UPLOAD_ID_MESSAGE,
    AccountConfig,
    UploadResult,
    VideoRecord,
)
from .store import StateStore

UPLOAD_TIMEOUT = 6 * 60 * 60
_ID_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{3,}$")
ID_KEYS = ("id", "downstream_id", "bvid", "video_id")


@dataclass
class UploadRequest:
    video_id: str
    video_path: Path
    title: str
    description: str = ""
    subtitles: List[Path] = field(default_factory=list)
    cover: Optional[Path] = None


@dataclass
class UploadSettings:
    upload_subtitles: bool = True
    delete_original_after_upload: bool = False


@dataclass
class UploadSummary:
    uploaded: int = 0
    failed: int = 0
    accounts_exhausted: bool = False
    cancelled: bool = False


class Uploader:
    """Contract for a downstream upload client."""

    def upload(self, request: UploadRequest, account: AccountConfig) -> UploadResult:
        raise NotImplementedError


def parse_downstream_id(stdout: str) -> Optional[str]:
    """Find the downstream id in uploader output, scanning from the last line."""
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            for key in ID_KEYS:
                if payload.get(key):
                    return str(payload[key])
            continue
        if _ID_TOKEN_RE.match(line):
            return line
    return None


class CommandUploader(Uploader):
    """Uploads by running an external command configured per account.

    The template may use ``{file}``, ``{title}``, ``{description_file}``,
    ``{subtitles}`` (comma separated), ``{cover}`` and ``{account}``.
    """

    def __init__(self, default_command: Optional[str] = None,
                 cancel_event: Optional[threading.Event] = None,
                 timeout: float = UPLOAD_TIMEOUT) -> None:
        self.default_command = default_command
        self.cancel_event = cancel_event or threading.Event()
        self.timeout = timeout

    def build_command(self, template: str, request: UploadRequest,
                      account: AccountConfig, description_file: str) -> List[str]:
        values = {
            "file": str(request.video_path),
            "title": request.title,
            "description_file": description_file,
            "subtitles": ",".join(str(path) for path in request.subtitles),
            "cover": str(request.cover) if request.cover else "",
            "account": account.name,
        }
        return [part.format(**values) for part in shlex.split(template)]

    def upload(self, request: UploadRequest, account: AccountConfig) -> UploadResult:
        template = account.command or self.default_command
        if not template:
            raise UploadError(f"No upload command configured for account {account.name}")

        with tempfile.NamedTemporaryFile("w", suffix=".txt", encoding="utf-8",
                                         delete=False) as handle:
            handle.write(request.description)
            description_file = handle.name
        try:
            command = self.build_command(template, request, account, description_file)
            try:
                result = run_command(command, self.cancel_event, self.timeout)
            except OSError as exc:
                raise UploadError(f"Could not start {command[0]}: {exc}") from exc
            except subprocess.TimeoutExpired as exc:
                raise UploadError(f"Upload command timed out after {self.timeout}s") from exc
        finally:
            os.unlink(description_file)

        if result.returncode != 0:
            detail = result.stderr.strip().splitlines() or result.stdout.strip().splitlines()
            return UploadResult(
                success=False,
                error=f"upload command exited with {result.returncode}: "
                      f"{detail[-1] if detail else 'no output'}",
            )
        return UploadResult(success=True, downstream_id=parse_downstream_id(result.stdout))


def _subtitle_order(language: str) -> tuple:
    return (0 if language.split("-", 1)[0].lower() == "en" else 1, language)


class UploadService:
    """Uploads every fully downloaded video that is not yet republished."""

    def __init__(
        self,
        store: StateStore,
        selector: AccountSelector,
        uploader: Uploader,
        accounts: Dict[str, AccountConfig],
        settings: Optional[UploadSettings] = None,
        cancel_event: Optional[threading.Event] = None,
        analyzer: Optional[ErrorAnalyzer] = None,
    ) -> None:
        self.store = store
        self.selector = selector
        self.uploader = uploader
        self.accounts = accounts
        self.settings = settings or UploadSettings()
        self.cancel_event = cancel_event or threading.Event()
        self.analyzer = analyzer or ErrorAnalyzer()

    def eligible_videos(self, channel_id: str) -> List[VideoRecord]:
        videos = []
        for raw in self.store.load_channel_info(channel_id):
            video = VideoRecord.from_raw(raw)
            if video is None:
                continue
            if self.store.is_upload_completed(channel_id, video.video_id):
                continue
            if not self.store.is_video_downloaded(channel_id, video.video_id):
                continue
            videos.append(video)
        return videos

    def build_request(self, channel_id: str, video: VideoRecord) -> UploadRequest:
        video_path = self.store.find_video_file(channel_id, video.video_id)
        if video_path is None:
            raise UploadError(f"media file for {video.video_id} is missing")
        info = self.store.load_video_info(channel_id, video.video_id)
        subtitles: List[Path] = []
        if self.settings.upload_subtitles:
            found = self.store.find_subtitle_files(channel_id, video.video_id)
            subtitles = [found[lang] for lang in sorted(found, key=_subtitle_order)]
        return UploadRequest(
            video_id=video.video_id,
            video_path=video_path,
            title=str(info.get("title") or video.title or video.video_id),
            description=str(info.get("description") or video.description or ""),
            subtitles=subtitles,
            cover=self.store.find_cover_file(channel_id, video.video_id),
        )

    def upload_video(self, channel_id: str, video: VideoRecord) -> bool:
        """Upload one video under a randomly chosen account; True on success."""
        prefix = format_context(channel_id, video.video_id)
        account = self.selector.require()

        request = self.build_request(channel_id, video)
        self.store.mark_upload_started(channel_id, video.video_id, account)
        log_info(f"{prefix}Uploading as {account}: {request.title}")
        try:
            result = self.uploader.upload(request, self.accounts[account])
        except OperationCancelled:
            self.store.mark_upload_failed(channel_id, video.video_id, "upload cancelled")
            raise
        except UploadError as exc:
            result = UploadResult(success=False, error=str(exc))

        if result.success and not result.downstream_id:
            result = UploadResult(success=False, error=MISSING_UPLOAD_ID_MESSAGE)

        if not result.success:
            error = result.error or "upload failed"
            self.store.mark_upload_failed(channel_id, video.video_id, error)
            self.analyzer.categorize_and_record(video.video_id, error)
            log_warning(f"{prefix}Upload failed: {error}")
            return False

        self.store.mark_upload_completed(channel_id, video.video_id, account, result.downstream_id)
        count = self.selector.record_success(account)
        log_info(f"{prefix}Uploaded as {result.downstream_id} ({account}: {count} today)")

        if self.settings.delete_original_after_upload:
            try:
                request.video_path.unlink()
            except OSError as exc:
                log_warning(f"{prefix}Could not remove local media {request.video_path}: {exc}")
            else:
                log_info(f"{prefix}Removed local media {request.video_path}")
        return True

    def run(self, channel_ids: List[str]) -> UploadSummary:
        summary = UploadSummary()
        for channel_id in channel_ids:
            try:
                videos = self.eligible_videos(channel_id)
            except (OSError, StateStoreError) as exc:
                log_error(f"[channel={channel_id}] {exc}")
                continue
            log_info(f"[channel={channel_id}] {len(videos)} videos ready for upload")
            for video in videos:
                if self.cancel_event.is_set():
                    summary.cancelled = True
                    return summary
                try:
                    if self.upload_video(channel_id, video):
                        summary.uploaded += 1
                    else:
                        summary.failed += 1
                except AccountsExhaustedError as exc:
                    log_warning(f"{exc}; stopping uploads for today")
                    summary.accounts_exhausted = True
                    return summary
                except OperationCancelled:
                    summary.cancelled = True
                    return summary
                except (OSError, StateStoreError, UploadError) as exc:
                    summary.failed += 1
                    log_error(f"{format_context(channel_id, video.video_id)}{exc}")
        return summary
