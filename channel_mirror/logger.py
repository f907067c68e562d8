"""Console logging helpers and the yt-dlp logger adapter."""

import sys
from datetime import datetime
from typing import List, Optional

from .errors import is_bot_detection_error, is_unavailable_error

_quiet = False


def set_quiet(quiet: bool) -> None:
    """Suppress informational output (warnings and errors are still printed)."""
    global _quiet
    _quiet = quiet


def format_context(channel_id: Optional[str] = None, video_id: Optional[str] = None) -> str:
    parts = []
    if channel_id:
        parts.append(f"channel={channel_id}")
    if video_id:
        parts.append(f"video_id={video_id}")
    if parts:
        return f"[{' '.join(parts)}] "
    return ""


def log_info(message: str) -> None:
    """Print a log message with timestamp."""
    if _quiet:
        return
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] {message}")
    sys.stdout.flush()  # Force immediate output


def log_warning(message: str) -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] Warning: {message}", file=sys.stderr)


def log_error(message: str) -> None:
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] Error: {message}", file=sys.stderr)


class ExtractorLogger:
    """Logger handed to yt-dlp that remembers what went wrong for one call."""

    IGNORED_FRAGMENTS = (
        "does not have a shorts tab",
        "there are no subtitles for the requested languages",
    )

    def __init__(self, channel_id: Optional[str] = None, video_id: Optional[str] = None) -> None:
        self.channel_id = channel_id
        self.video_id = video_id
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.bot_detected = False
        self.unavailable = False

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1] if self.errors else None

    @staticmethod
    def _ensure_text(message) -> str:
        if isinstance(message, bytes):
            return message.decode("utf-8", "ignore")
        return str(message)

    def _prefix(self, text: str) -> str:
        return format_context(self.channel_id, self.video_id) + text

    def _handle_message(self, text: str) -> None:
        if is_bot_detection_error(text):
            self.bot_detected = True
        if is_unavailable_error(text):
            self.unavailable = True

    def debug(self, message) -> None:  # yt-dlp calls this
        pass

    def info(self, message) -> None:
        log_info(self._prefix(self._ensure_text(message)))

    def warning(self, message) -> None:
        text = self._ensure_text(message)
        lowered = text.lower()
        if any(fragment in lowered for fragment in self.IGNORED_FRAGMENTS):
            return
        self.warnings.append(text)
        log_warning(self._prefix(text))
        self._handle_message(text)

    def error(self, message) -> None:
        text = self._ensure_text(message)
        self.errors.append(text)
        log_error(self._prefix(text))
        self._handle_message(text)
