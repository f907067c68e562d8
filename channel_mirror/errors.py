"""Exceptions and error analysis for the channel mirror."""

import time
from datetime import datetime
from typing import Dict, List, Optional, Union

from .models import BOT_DETECTION_PHRASES, ErrorPattern


class MirrorError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(MirrorError):
    """Raised when the configuration file or CLI options are unusable."""


class StateStoreError(MirrorError):
    """Raised when an entity record on disk cannot be decoded."""


class SchedulerLockedError(MirrorError):
    """Raised when another scheduler already owns the output root."""


class ExtractorError(MirrorError):
    """A transient failure reported by the upstream extractor."""


class BotDetectionError(ExtractorError):
    """The upstream challenged the requester as a bot."""


class ResourceUnavailableError(ExtractorError):
    """The upstream resource is private, removed, or otherwise unreachable."""


class OperationCancelled(MirrorError):
    """The shared cancel event fired while a collaborator was running."""


class FetchError(MirrorError):
    """An auxiliary HTTP fetch failed or returned an unusable payload."""


class TranscodeError(MirrorError):
    """ffmpeg or ffprobe failed."""


class AccountsExhaustedError(MirrorError):
    """Every downstream account reached its daily upload limit."""


class UploadError(MirrorError):
    """The downstream uploader failed."""


UNAVAILABLE_FRAGMENTS = (
    "video unavailable",
    "video is unavailable",
    "content isn't available",
    "content is not available",
    "members-only",
    "channel members",
    "this video is private",
    "private video",
    "has been removed",
    "uploader has not made this video available",
    "not available in your country",
    "requires purchase",
    "http error 410",
)


def is_bot_detection_error(error: Union[BaseException, str, None]) -> bool:
    """Return True when *error* is the bot-defense sentinel or mentions a bot phrase."""
    if error is None:
        return False
    if isinstance(error, BotDetectionError):
        return True
    lowered = str(error).lower()
    return any(phrase in lowered for phrase in BOT_DETECTION_PHRASES)


def is_unavailable_error(error: Union[BaseException, str, None]) -> bool:
    if error is None:
        return False
    if isinstance(error, ResourceUnavailableError):
        return True
    lowered = str(error).lower()
    return any(fragment in lowered for fragment in UNAVAILABLE_FRAGMENTS)


class ErrorAnalyzer:
    """Groups failures of a run into categories and suggests remediation."""

    def __init__(self) -> None:
        self.patterns: Dict[str, ErrorPattern] = {
            "bot_detection": ErrorPattern("bot_detection"),
            "rate_limit": ErrorPattern("rate_limit"),
            "unavailable": ErrorPattern("unavailable"),
            "subtitles_missing": ErrorPattern("subtitles_missing"),
            "network": ErrorPattern("network"),
            "filesystem": ErrorPattern("filesystem"),
            "unknown": ErrorPattern("unknown"),
        }
        self.total_errors = 0

    def categorize(self, error: Union[BaseException, str]) -> str:
        if isinstance(error, OSError) and not isinstance(error, ConnectionError):
            return "filesystem"
        if is_bot_detection_error(error):
            return "bot_detection"
        lowered = str(error).lower()
        if any(x in lowered for x in ["429", "too many requests", "rate limit", "http error 403"]):
            return "rate_limit"
        if is_unavailable_error(error):
            return "unavailable"
        if "subtitle" in lowered:
            return "subtitles_missing"
        if any(x in lowered for x in ["timed out", "timeout", "connection", "network", "http error"]):
            return "network"
        return "unknown"

    def categorize_and_record(
        self, video_id: Optional[str], error: Union[BaseException, str]
    ) -> str:
        """Categorize an error and record it. Returns the error category."""
        self.total_errors += 1
        category = self.categorize(error)
        self.patterns[category].record(video_id, str(error), time.time())
        return category

    def get_recommendations(self) -> List[str]:
        """Generate recommendations based on error patterns."""
        if self.total_errors == 0:
            return ["No errors detected."]

        recommendations = []
        if self.patterns["bot_detection"].count:
            recommendations.append(
                f"Bot detection ({self.patterns['bot_detection'].count} errors): "
                "refresh browser cookies (--cookies-from-browser) or route through a proxy."
            )
        if self.patterns["rate_limit"].count:
            recommendations.append(
                f"Rate limiting ({self.patterns['rate_limit'].count} errors): "
                "raise sleep_interval_seconds or lower videos_before_rest."
            )
        if self.patterns["unavailable"].count:
            recommendations.append(
                f"Unavailable ({self.patterns['unavailable'].count} videos): "
                "private, removed or members-only videos are skipped unless "
                "force_download_undownloadable is set."
            )
        if self.patterns["subtitles_missing"].count:
            recommendations.append(
                f"Subtitles ({self.patterns['subtitles_missing'].count} errors): "
                "conversion to srt needs ffmpeg on PATH."
            )
        if self.patterns["network"].count:
            recommendations.append(
                f"Network ({self.patterns['network'].count} errors): "
                "transient failures are retried on the next run."
            )
        if self.patterns["filesystem"].count:
            recommendations.append(
                f"Filesystem ({self.patterns['filesystem'].count} errors): "
                "check free space and permissions of the output directory."
            )
        if self.patterns["unknown"].count:
            recommendations.append(
                f"Unknown errors ({self.patterns['unknown'].count}): "
                "inspect the error fields in download_status.json."
            )
        return recommendations

    def print_summary(self) -> None:
        """Print a formatted summary of error patterns."""
        if self.total_errors == 0:
            print("\nNo errors detected during this run.")
            return

        print("\n" + "=" * 70)
        print(f"Error summary ({datetime.now():%Y-%m-%d %H:%M})")
        print("=" * 70)
        print(f"Total errors: {self.total_errors}\n")

        sorted_patterns = sorted(
            self.patterns.items(), key=lambda item: item[1].count, reverse=True
        )
        for name, pattern in sorted_patterns:
            if pattern.count > 0:
                print(f"{name.replace('_', ' ').title()}: {pattern.count} occurrences")
                print(f"  Affected videos: {len(pattern.video_ids)}")
                if pattern.sample_messages:
                    print(f"  Sample: {pattern.sample_messages[0][:80]}")
                print()

        for rec in self.get_recommendations():
            print(rec)
        print("=" * 70)
