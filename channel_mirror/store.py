"""Filesystem-backed state store for channels, videos and their resources.

Layout under the output root::

    <root>/.global/                      process-wide counters and the lock
    <root>/<channel_id>/channel_info.json
    <root>/<channel_id>/pending_downloads.json
    <root>/<channel_id>/<video_id>/video_info.json
    <root>/<channel_id>/<video_id>/download_status.json
    <root>/<channel_id>/<video_id>/upload_status.json

Every write goes through a temporary file and ``os.replace`` so a crash
never leaves a half-written record behind.
"""

import dataclasses
import json
import os
import string
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import StateStoreError
from .models import (
    CHANNEL_INFO_FILE,
    COVER_BASENAME,
    DIR_MODE,
    DOWNLOAD_STATUS_FILE,
    FILE_MODE,
    FORBIDDEN_TITLE_CHARS,
    GLOBAL_DIR_NAME,
    IMAGE_EXTENSIONS,
    MAX_ERROR_RUNES,
    MAX_FILENAME_BYTES,
    MAX_TITLE_BYTES,
    PENDING_DOWNLOADS_FILE,
    UNTITLED,
    UPLOAD_STATUS_FILE,
    VIDEO_EXTENSIONS,
    VIDEO_INFO_FILE,
    ResourceRecord,
    ResourceStatus,
    ResourceType,
    UploadState,
)

Mutator = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]

_TITLE_TRANSLATION = str.maketrans({ch: "_" for ch in FORBIDDEN_TITLE_CHARS})


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut *text* to at most *max_bytes* of UTF-8 without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", "ignore")


def sanitize_title(title: Optional[str]) -> str:
    """Turn an upstream title into a string that is safe inside a file name."""
    cleaned = (title or "").translate(_TITLE_TRANSLATION)
    cleaned = cleaned.strip(string.whitespace + ".")
    cleaned = truncate_utf8(cleaned, MAX_TITLE_BYTES)
    return cleaned or UNTITLED


def shorten_error(error: Any) -> str:
    """Reduce an error to its first line, capped at 300 characters."""
    text = str(error).strip()
    text = text.split("\n", 1)[0].rstrip("\r")
    if len(text) > MAX_ERROR_RUNES:
        return text[:MAX_ERROR_RUNES] + "..."
    return text


def subtitle_filename(title: Optional[str], video_id: str, language: str) -> str:
    """Canonical subtitle name ``<title>[<id>].<lang>.srt`` within 255 bytes."""
    suffix = f"[{video_id}].{language}.srt"
    budget = MAX_FILENAME_BYTES - len(suffix.encode("utf-8"))
    base = truncate_utf8(sanitize_title(title), max(budget, 0))
    return base + suffix


def _slot_type(slot: str) -> str:
    if slot == "thumbnail":
        return ResourceType.THUMBNAIL.value
    if slot == "subtitles":
        return ResourceType.SUBTITLE.value
    return ResourceType.VIDEO.value


class StateStore:
    """Reads and writes the per-channel and per-video JSON records."""

    def __init__(self, root: os.PathLike, clock: Callable[[], float] = time.time) -> None:
        self.root = Path(root)
        self._clock = clock
        self._legacy_index: Dict[str, Dict[str, Path]] = {}

    def now(self) -> int:
        return int(self._clock())

    # Paths -----------------------------------------------------------------

    @property
    def global_dir(self) -> Path:
        return self.root / GLOBAL_DIR_NAME

    def channel_dir(self, channel_id: str) -> Path:
        return self.root / channel_id

    def find_video_dir(self, channel_id: str, video_id: str) -> Path:
        """Resolve the directory holding one video's records.

        The id-named directory wins; otherwise a legacy (title-named)
        sibling whose ``video_info.json`` carries the same id is used;
        otherwise the id-named path is returned even if it does not exist.
        """
        canonical = self.channel_dir(channel_id) / video_id
        if canonical.is_dir():
            return canonical
        legacy = self._legacy_dirs(channel_id).get(video_id)
        if legacy is not None and legacy.is_dir():
            return legacy
        return canonical

    def _legacy_dirs(self, channel_id: str) -> Dict[str, Path]:
        index = self._legacy_index.get(channel_id)
        if index is not None:
            return index
        index = {}
        channel_dir = self.channel_dir(channel_id)
        if channel_dir.is_dir():
            for child in sorted(channel_dir.iterdir()):
                info_path = child / VIDEO_INFO_FILE
                if not child.is_dir() or not info_path.is_file():
                    continue
                try:
                    with open(info_path, "r", encoding="utf-8") as f:
                        info = json.load(f)
                except (OSError, ValueError):
                    continue
                found = info.get("id") if isinstance(info, dict) else None
                if isinstance(found, str) and found not in index:
                    index[found] = child
        self._legacy_index[channel_id] = index
        return index

    def ensure_dir(self, channel_id: str, video_id: Optional[str] = None) -> Path:
        """Create (if needed) and return the channel or video directory."""
        if video_id is None:
            path = self.channel_dir(channel_id)
        else:
            path = self.find_video_dir(channel_id, video_id)
        path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        return path

    def download_status_path(self, channel_id: str, video_id: str) -> Path:
        return self.find_video_dir(channel_id, video_id) / DOWNLOAD_STATUS_FILE

    def upload_status_path(self, channel_id: str, video_id: str) -> Path:
        return self.find_video_dir(channel_id, video_id) / UPLOAD_STATUS_FILE

    def video_info_path(self, channel_id: str, video_id: str) -> Path:
        return self.find_video_dir(channel_id, video_id) / VIDEO_INFO_FILE

    def channel_info_path(self, channel_id: str) -> Path:
        return self.channel_dir(channel_id) / CHANNEL_INFO_FILE

    def pending_downloads_path(self, channel_id: str) -> Path:
        return self.channel_dir(channel_id) / PENDING_DOWNLOADS_FILE

    # Raw records -----------------------------------------------------------

    def load(self, path: Path, default: Any = None) -> Any:
        """Return the decoded JSON at *path*, or *default* when it is absent.

        A file that exists but does not decode raises ``StateStoreError``.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {} if default is None else default
        except ValueError as exc:
            raise StateStoreError(f"Malformed record {path}: {exc}") from exc

    def save(self, path: Path, payload: Any) -> None:
        path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.chmod(tmp_path, FILE_MODE)
        os.replace(tmp_path, path)

    def update(self, path: Path, mutator: Mutator) -> Dict[str, Any]:
        """Read-modify-write a JSON object; fields the mutator ignores survive."""
        payload = self.load(path)
        if not isinstance(payload, dict):
            raise StateStoreError(f"Record {path} is not a JSON object")
        result = mutator(payload)
        if result is not None:
            payload = result
        self.save(path, payload)
        return payload

    # Resources -------------------------------------------------------------

    def load_download_status(self, channel_id: str, video_id: str) -> Dict[str, Any]:
        payload = self.load(self.download_status_path(channel_id, video_id))
        if not isinstance(payload, dict):
            raise StateStoreError(f"download status of {video_id} is not a JSON object")
        return payload

    def get_resource(
        self, channel_id: str, video_id: str, slot: str, language: Optional[str] = None
    ) -> ResourceRecord:
        status = self.load_download_status(channel_id, video_id)
        return _read_slot(status, slot, language)

    def resource_file_exists(self, record: ResourceRecord) -> bool:
        return bool(record.file_path) and os.path.isfile(record.file_path)

    def is_resource_done(self, record: ResourceRecord) -> bool:
        """A completed record counts only while its file is still on disk."""
        return record.status == ResourceStatus.COMPLETED and self.resource_file_exists(record)

    def is_video_downloaded(self, channel_id: str, video_id: str) -> bool:
        return self.is_resource_done(self.get_resource(channel_id, video_id, "video"))

    def is_thumbnail_downloaded(self, channel_id: str, video_id: str) -> bool:
        return self.is_resource_done(self.get_resource(channel_id, video_id, "thumbnail"))

    def is_subtitle_downloaded(self, channel_id: str, video_id: str, language: str) -> bool:
        return self.is_resource_done(
            self.get_resource(channel_id, video_id, "subtitles", language)
        )

    def update_resource(
        self,
        channel_id: str,
        video_id: str,
        slot: str,
        change: Callable[[ResourceRecord], None],
        language: Optional[str] = None,
    ) -> ResourceRecord:
        """Apply *change* to one resource slot and persist the whole status file."""
        updated: List[ResourceRecord] = []

        def mutate(status: Dict[str, Any]) -> None:
            record = _read_slot(status, slot, language)
            change(record)
            _write_slot(status, slot, language, record)
            updated.append(record)

        self.ensure_dir(channel_id, video_id)
        self.update(self.download_status_path(channel_id, video_id), mutate)
        return updated[0]

    def mark_downloading(
        self, channel_id: str, video_id: str, slot: str,
        language: Optional[str] = None, url: Optional[str] = None,
    ) -> ResourceRecord:
        def change(record: ResourceRecord) -> None:
            record.status = ResourceStatus.DOWNLOADING
            record.error = None
            record.failed_at = None
            if url:
                record.url = url

        return self.update_resource(channel_id, video_id, slot, change, language)

    def mark_completed(
        self, channel_id: str, video_id: str, slot: str, file_path: str,
        language: Optional[str] = None, url: Optional[str] = None,
    ) -> ResourceRecord:
        if not file_path:
            raise ValueError("a completed resource needs a file path")
        now = self.now()

        def change(record: ResourceRecord) -> None:
            record.status = ResourceStatus.COMPLETED
            record.file_path = str(os.path.abspath(file_path))
            record.downloaded_at = now
            record.error = None
            record.failed_at = None
            if url:
                record.url = url

        return self.update_resource(channel_id, video_id, slot, change, language)

    def mark_failed(
        self, channel_id: str, video_id: str, slot: str, error: Any,
        language: Optional[str] = None,
    ) -> ResourceRecord:
        now = self.now()
        message = shorten_error(error)

        def change(record: ResourceRecord) -> None:
            record.status = ResourceStatus.FAILED
            record.error = message
            record.failed_at = now

        return self.update_resource(channel_id, video_id, slot, change, language)

    def mark_not_found(self, channel_id: str, video_id: str, language: str) -> ResourceRecord:
        def change(record: ResourceRecord) -> None:
            record.status = ResourceStatus.NOT_FOUND
            record.error = None
            record.failed_at = None

        return self.update_resource(channel_id, video_id, "subtitles", change, language)

    def mark_skipped(
        self, channel_id: str, video_id: str, slot: str, reason: Any,
        language: Optional[str] = None,
    ) -> ResourceRecord:
        message = shorten_error(reason)

        def change(record: ResourceRecord) -> None:
            record.status = ResourceStatus.SKIPPED
            record.error = message

        return self.update_resource(channel_id, video_id, slot, change, language)

    def mark_pending(
        self, channel_id: str, video_id: str, slot: str, language: Optional[str] = None,
    ) -> ResourceRecord:
        """Put an interrupted resource back in the queue."""
        def change(record: ResourceRecord) -> None:
            record.status = ResourceStatus.PENDING
            record.error = None
            record.failed_at = None

        return self.update_resource(channel_id, video_id, slot, change, language)

    # Upload status ---------------------------------------------------------

    def load_upload_status(self, channel_id: str, video_id: str) -> Dict[str, Any]:
        payload = self.load(self.upload_status_path(channel_id, video_id))
        if not isinstance(payload, dict):
            raise StateStoreError(f"upload status of {video_id} is not a JSON object")
        return payload

    def is_upload_completed(self, channel_id: str, video_id: str) -> bool:
        status = self.load_upload_status(channel_id, video_id)
        if status.get("status") == UploadState.COMPLETED.value:
            return True
        # Older records only carried a boolean
        return status.get("status") is None and status.get("uploaded") is True

    def update_upload_status(self, channel_id: str, video_id: str, **fields: Any) -> Dict[str, Any]:
        now = self.now()

        def mutate(status: Dict[str, Any]) -> None:
            for key, value in fields.items():
                if value is None:
                    status.pop(key, None)
                else:
                    status[key] = value
            status["updated_at"] = now

        self.ensure_dir(channel_id, video_id)
        return self.update(self.upload_status_path(channel_id, video_id), mutate)

    def mark_upload_started(self, channel_id: str, video_id: str, account: str) -> Dict[str, Any]:
        return self.update_upload_status(
            channel_id, video_id,
            status=UploadState.UPLOADING.value,
            downstream_account=account,
            started_at=self.now(),
            error=None,
            failed_at=None,
        )

    def mark_upload_completed(
        self, channel_id: str, video_id: str, account: str, downstream_id: str
    ) -> Dict[str, Any]:
        return self.update_upload_status(
            channel_id, video_id,
            status=UploadState.COMPLETED.value,
            downstream_id=downstream_id,
            downstream_account=account,
            completed_at=self.now(),
            error=None,
            failed_at=None,
        )

    def mark_upload_failed(self, channel_id: str, video_id: str, error: Any) -> Dict[str, Any]:
        return self.update_upload_status(
            channel_id, video_id,
            status=UploadState.FAILED.value,
            error=shorten_error(error),
            failed_at=self.now(),
        )

    # Channel and video metadata -------------------------------------------

    def save_channel_info(self, channel_id: str, videos: List[Dict[str, Any]]) -> None:
        self.ensure_dir(channel_id)
        self.save(self.channel_info_path(channel_id), videos)

    def load_channel_info(self, channel_id: str) -> List[Dict[str, Any]]:
        payload = self.load(self.channel_info_path(channel_id), default=[])
        if not isinstance(payload, list):
            raise StateStoreError(f"{CHANNEL_INFO_FILE} of {channel_id} is not a JSON list")
        return [entry for entry in payload if isinstance(entry, dict)]

    def save_video_info(self, channel_id: str, video_id: str, info: Dict[str, Any]) -> None:
        self.ensure_dir(channel_id, video_id)
        self.save(self.video_info_path(channel_id, video_id), info)

    def load_video_info(self, channel_id: str, video_id: str) -> Dict[str, Any]:
        payload = self.load(self.video_info_path(channel_id, video_id))
        if not isinstance(payload, dict):
            raise StateStoreError(f"{VIDEO_INFO_FILE} of {video_id} is not a JSON object")
        return payload

    def list_channels(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            child.name for child in self.root.iterdir()
            if child.is_dir() and not child.name.startswith(".")
        )

    # Media files -----------------------------------------------------------

    def find_video_file(self, channel_id: str, video_id: str) -> Optional[Path]:
        """Return the downloaded media file of a video, preferring the recorded path."""
        record = self.get_resource(channel_id, video_id, "video")
        if self.resource_file_exists(record):
            return Path(record.file_path)
        video_dir = self.find_video_dir(channel_id, video_id)
        if not video_dir.is_dir():
            return None
        candidates = [
            path for path in sorted(video_dir.iterdir())
            if path.is_file()
            and path.suffix.lower() in VIDEO_EXTENSIONS
            and not path.name.startswith(COVER_BASENAME + ".")
        ]
        return candidates[0] if candidates else None

    def find_cover_file(self, channel_id: str, video_id: str) -> Optional[Path]:
        video_dir = self.find_video_dir(channel_id, video_id)
        for ext in IMAGE_EXTENSIONS:
            candidate = video_dir / f"{COVER_BASENAME}{ext}"
            if candidate.is_file():
                return candidate
        return None

    def find_subtitle_files(self, channel_id: str, video_id: str) -> Dict[str, Path]:
        """Map language to subtitle file for every completed subtitle on disk."""
        status = self.load_download_status(channel_id, video_id)
        subtitles = status.get("subtitles")
        found: Dict[str, Path] = {}
        if not isinstance(subtitles, dict):
            return found
        for language in subtitles:
            record = _read_slot(status, "subtitles", language)
            if self.is_resource_done(record):
                found[language] = Path(record.file_path)
        return found

    # Pending manifest ------------------------------------------------------

    def _manifest_slot(
        self, status: Dict[str, Any], slot: str, language: Optional[str] = None
    ) -> Dict[str, Any]:
        record = _read_slot(status, slot, language)
        if record.status == ResourceStatus.COMPLETED and not self.is_resource_done(record):
            record = dataclasses.replace(record, status=ResourceStatus.PENDING)
        return record.to_payload()

    def build_pending_entry(
        self, channel_id: str, video_id: str, title: str, video_url: str
    ) -> Dict[str, Any]:
        status = self.load_download_status(channel_id, video_id)
        subtitles = status.get("subtitles") if isinstance(status.get("subtitles"), dict) else {}
        return {
            "video_id": video_id,
            "title": title,
            "video_url": video_url,
            "video": self._manifest_slot(status, "video"),
            "subtitles": {
                language: self._manifest_slot(status, "subtitles", language)
                for language in subtitles
            },
            "thumbnail": self._manifest_slot(status, "thumbnail"),
        }

    def save_pending_downloads(
        self, channel_id: str, channel_url: str, entries: List[Dict[str, Any]]
    ) -> None:
        self.ensure_dir(channel_id)
        self.save(
            self.pending_downloads_path(channel_id),
            {
                "channel_id": channel_id,
                "channel_url": channel_url,
                "generated_at": self.now(),
                "videos": entries,
            },
        )

    def refresh_pending_entry(self, channel_id: str, video_id: str) -> None:
        """Re-read one video's status into the channel manifest, if the manifest exists."""
        path = self.pending_downloads_path(channel_id)
        if not path.is_file():
            return

        def mutate(manifest: Dict[str, Any]) -> None:
            videos = manifest.get("videos")
            if not isinstance(videos, list):
                return
            for index, entry in enumerate(videos):
                if isinstance(entry, dict) and entry.get("video_id") == video_id:
                    videos[index] = self.build_pending_entry(
                        channel_id, video_id,
                        entry.get("title", ""), entry.get("video_url", ""),
                    )
                    break

        self.update(path, mutate)


def _read_slot(status: Dict[str, Any], slot: str, language: Optional[str]) -> ResourceRecord:
    if slot == "subtitles":
        subtitles = status.get("subtitles")
        payload = subtitles.get(language) if isinstance(subtitles, dict) else None
    else:
        payload = status.get(slot)
    return ResourceRecord.from_payload(payload, _slot_type(slot))


def _write_slot(
    status: Dict[str, Any], slot: str, language: Optional[str], record: ResourceRecord
) -> None:
    if slot == "subtitles":
        if not language:
            raise ValueError("subtitle resources need a language")
        subtitles = status.get("subtitles")
        if not isinstance(subtitles, dict):
            subtitles = {}
            status["subtitles"] = subtitles
        subtitles[language] = record.to_payload()
    else:
        status[slot] = record.to_payload()
