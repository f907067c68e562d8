"""Channel mirroring and republishing package."""

# Import main components for easier access
from .accounts import AccountSelector
from .config import Settings, load_config_file, parse_args, positive_int
from .counters import CounterStore
from .errors import (
    BotDetectionError,
    ConfigError,
    ErrorAnalyzer,
    ExtractorError,
    MirrorError,
    ResourceUnavailableError,
    SchedulerLockedError,
    StateStoreError,
    is_bot_detection_error,
)
from .media import MediaTool, detect_image_extension
from .models import (
    ChannelConfig,
    ResourceRecord,
    ResourceStatus,
    UploadState,
    VideoRecord,
)
from .planner import initialize_download_status, language_matches, plan_channel
from .scheduler import SchedulerLock, SchedulerSettings, StepScheduler
from .store import StateStore, sanitize_title, shorten_error, subtitle_filename
from .throttle import ThrottleController, ThrottleSettings
from .uploader import CommandUploader, Uploader, UploadService

__all__ = [
    # Main entry points
    "parse_args",
    "StepScheduler",
    "UploadService",
    # State
    "StateStore",
    "CounterStore",
    "SchedulerLock",
    "sanitize_title",
    "shorten_error",
    "subtitle_filename",
    # Planning
    "plan_channel",
    "initialize_download_status",
    "language_matches",
    # Throttling and accounts
    "ThrottleController",
    "ThrottleSettings",
    "AccountSelector",
    # Collaborators
    "MediaTool",
    "detect_image_extension",
    "Uploader",
    "CommandUploader",
    # Models
    "ChannelConfig",
    "ResourceRecord",
    "ResourceStatus",
    "UploadState",
    "VideoRecord",
    "SchedulerSettings",
    "Settings",
    # Errors
    "MirrorError",
    "ConfigError",
    "StateStoreError",
    "SchedulerLockedError",
    "ExtractorError",
    "BotDetectionError",
    "ResourceUnavailableError",
    "ErrorAnalyzer",
    "is_bot_detection_error",
    # Configuration
    "load_config_file",
    "positive_int",
]
