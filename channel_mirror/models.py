"""Data models, enums, and constants for the channel mirror."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# On-disk layout
GLOBAL_DIR_NAME = ".global"
UPLOAD_COUNTERS_FILE = "upload_counters.json"
DOWNLOAD_COUNTER_FILE = "download_counter.json"
SCHEDULER_LOCK_FILE = "scheduler.lock"
CHANNEL_INFO_FILE = "channel_info.json"
PENDING_DOWNLOADS_FILE = "pending_downloads.json"
VIDEO_INFO_FILE = "video_info.json"
DOWNLOAD_STATUS_FILE = "download_status.json"
UPLOAD_STATUS_FILE = "upload_status.json"
COVER_BASENAME = "cover"

FILE_MODE = 0o644
DIR_MODE = 0o755

MAX_TITLE_BYTES = 200
MAX_FILENAME_BYTES = 255
MAX_ERROR_RUNES = 300
UNTITLED = "untitled"
FORBIDDEN_TITLE_CHARS = '/\\:*?"<>|\n\r\t'

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".webm", ".flv", ".mov", ".avi", ".m4v")
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif")

# Throttle defaults
DEFAULT_SLEEP_INTERVAL_SECONDS = 3.0
DEFAULT_VIDEOS_BEFORE_REST = 60
DEFAULT_REST_DURATION_MINUTES = 120.0
DEFAULT_BOT_DETECTION_THRESHOLD = 10
DEFAULT_BOT_REST_MINUTES = 60.0
DEFAULT_DAILY_UPLOAD_LIMIT = 160
DEFAULT_MIN_COVER_HEIGHT = 1080
DEFAULT_LANGUAGES = ["en"]

INTER_VIDEO_JITTER = (1.0, 1.5)
REST_JITTER = (1.0, 1.1)

BOT_DETECTION_PHRASES = (
    "bot detection",
    "sign in to confirm you're not a bot",
    "confirm you're not a bot",
    "confirm you’re not a bot",
    "authentication",
)

MISSING_UPLOAD_ID_MESSAGE = "upload finished but no downstream id was returned"

# Highest first
PREFERRED_THUMBNAIL_RESOLUTIONS: List[Tuple[int, int]] = [
    (7680, 4320),
    (3840, 2160),
    (2560, 1440),
    (2048, 1152),
    (1920, 1080),
    (1600, 900),
    (1280, 720),
]

PROBED_THUMBNAIL_NAMES = ("maxresdefault", "hq720", "sddefault", "hqdefault")
YTIMG_THUMBNAIL_TEMPLATE = "https://i.ytimg.com/vi/{video_id}/{name}.jpg"

# Environment overrides
ENV_OUTPUT_DIR = "CHANNEL_MIRROR_OUTPUT_DIR"
ENV_COOKIES_FROM_BROWSER = "CHANNEL_MIRROR_COOKIES_FROM_BROWSER"
ENV_PROXY = "CHANNEL_MIRROR_PROXY"

DEFAULT_CONFIG_PATH = "channel_mirror.json"

# User-Agent rotation pool to appear as different browsers
USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0',
]


class ResourceStatus(str, Enum):
    """Lifecycle state of a single downloadable resource."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value: Any) -> "ResourceStatus":
        try:
            return cls(str(value))
        except ValueError:
            return cls.PENDING


class ResourceType(str, Enum):
    VIDEO = "video"
    THUMBNAIL = "thumbnail"
    SUBTITLE = "subtitle"


class UploadState(str, Enum):
    """Lifecycle state of a video on the downstream platform."""

    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ResourceRecord:
    """One resource slot of a video's download status."""

    status: ResourceStatus = ResourceStatus.PENDING
    resource_type: str = ResourceType.VIDEO.value
    url: Optional[str] = None
    file_path: Optional[str] = None
    downloaded_at: Optional[int] = None
    failed_at: Optional[int] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def downloaded(self) -> bool:
        return self.status == ResourceStatus.COMPLETED

    @classmethod
    def from_payload(cls, payload: Any, resource_type: str) -> "ResourceRecord":
        """Build a record from a stored slot, accepting legacy bare booleans."""
        if isinstance(payload, bool):
            status = ResourceStatus.COMPLETED if payload else ResourceStatus.PENDING
            return cls(status=status, resource_type=resource_type)
        if not isinstance(payload, dict):
            return cls(resource_type=resource_type)

        known = {
            "status", "downloaded", "resource_type", "url", "file_path",
            "downloaded_at", "failed_at", "error",
        }
        if "status" in payload:
            status = ResourceStatus.parse(payload.get("status"))
        else:
            status = ResourceStatus.COMPLETED if payload.get("downloaded") else ResourceStatus.PENDING
        return cls(
            status=status,
            resource_type=payload.get("resource_type") or resource_type,
            url=payload.get("url") or None,
            file_path=payload.get("file_path") or None,
            downloaded_at=payload.get("downloaded_at") or None,
            failed_at=payload.get("failed_at") or None,
            error=payload.get("error") or None,
            extra={k: v for k, v in payload.items() if k not in known},
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        payload["status"] = self.status.value
        payload["downloaded"] = self.downloaded
        payload["resource_type"] = self.resource_type
        for key in ("url", "file_path", "downloaded_at", "failed_at", "error"):
            value = getattr(self, key)
            if value:
                payload[key] = value
            else:
                payload.pop(key, None)
        return payload


@dataclass(frozen=True)
class Thumbnail:
    url: str
    width: int = 0
    height: int = 0
    thumbnail_id: Optional[str] = None

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"url": self.url}
        if self.width:
            payload["width"] = self.width
        if self.height:
            payload["height"] = self.height
        if self.thumbnail_id:
            payload["id"] = self.thumbnail_id
        return payload


@dataclass
class VideoRecord:
    """Typed view over a raw upstream video payload.

    The raw payload is kept verbatim so it round-trips into
    ``channel_info.json`` and ``video_info.json`` untouched.
    """

    video_id: str
    title: str = ""
    url: str = ""
    description: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> Optional["VideoRecord"]:
        video_id = raw.get("id")
        if not video_id or not isinstance(video_id, str):
            return None
        url = raw.get("webpage_url") or raw.get("original_url") or ""
        if not url or not str(url).startswith("http"):
            url = video_url_for(video_id)
        return cls(
            video_id=video_id,
            title=str(raw.get("title") or ""),
            url=str(url),
            description=str(raw.get("description") or ""),
            raw=raw,
        )


@dataclass
class ChannelConfig:
    """A channel entry from the configuration file."""

    url: str
    channel_id: Optional[str] = None
    languages: List[str] = field(default_factory=list)
    limit: int = 0
    offset: int = 0


@dataclass
class AccountConfig:
    """A downstream account and the settings needed to upload with it."""

    name: str
    command: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubtitleBatchResult:
    """Files produced by one batched subtitle request."""

    files: Dict[str, str] = field(default_factory=dict)
    absent: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class StepOutcome:
    """What a scheduler run did for one video."""

    video_id: str
    skipped_upload_complete: bool = False
    new_download: bool = False
    bot_detected: bool = False
    aborted: bool = False
    errors: List[str] = field(default_factory=list)


@dataclass
class UploadResult:
    success: bool
    downstream_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ErrorPattern:
    """Tracks a specific error category and its occurrences."""
    error_type: str
    count: int = 0
    video_ids: List[str] = field(default_factory=list)
    sample_messages: List[str] = field(default_factory=list)
    first_seen: Optional[float] = None
    last_seen: Optional[float] = None

    def record(self, video_id: Optional[str], message: str, timestamp: float) -> None:
        """Record an occurrence of this error category."""
        self.count += 1
        if self.first_seen is None:
            self.first_seen = timestamp
        self.last_seen = timestamp

        if video_id and video_id not in self.video_ids:
            self.video_ids.append(video_id)

        # Keep only the first 5 sample messages
        if len(self.sample_messages) < 5 and message not in self.sample_messages:
            self.sample_messages.append(message)


_CHANNEL_ID_RE = re.compile(r"/channel/(UC[0-9A-Za-z_-]{22})")
_HANDLE_RE = re.compile(r"/(@[^/?#]+)")
_NAMED_RE = re.compile(r"/(?:c|user)/([^/?#]+)")
_VIDEO_ID_RE = re.compile(r"^[0-9A-Za-z_-]{11}$")


def normalize_url(url: str) -> str:
    """Normalize a channel or video URL, defaulting to https."""
    stripped = url.strip()
    if not stripped:
        return stripped
    if stripped.startswith("@"):
        return f"https://www.youtube.com/{stripped}"
    if not re.match(r"^[a-z][a-z0-9+.-]*://", stripped, re.IGNORECASE):
        stripped = f"https://{stripped}"
    return stripped.rstrip("/")


def channel_id_from_url(url: str) -> Optional[str]:
    """Derive a stable directory key for a channel URL, if one is visible."""
    for pattern in (_CHANNEL_ID_RE, _HANDLE_RE, _NAMED_RE):
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def video_url_for(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def looks_like_youtube_id(video_id: str) -> bool:
    return bool(_VIDEO_ID_RE.match(video_id))
