"""Image type detection and ffmpeg/ffprobe helpers for covers."""

import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import OperationCancelled, TranscodeError
from .logger import log_warning

DEFAULT_TIMEOUT = 300


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


def run_command(
    command: List[str], cancel_event: threading.Event, timeout: float = DEFAULT_TIMEOUT
) -> CommandResult:
    """Run *command* to completion, killing it if *cancel_event* fires.

    Raises OperationCancelled on cancellation and subprocess.TimeoutExpired
    when *timeout* seconds pass.
    """
    process = subprocess.Popen(
        command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True
    )
    deadline = time.monotonic() + timeout
    while True:
        try:
            stdout, stderr = process.communicate(timeout=0.5)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel_event.is_set():
            process.kill()
            process.communicate()
            raise OperationCancelled(f"{Path(command[0]).name} cancelled")
        if time.monotonic() > deadline:
            process.kill()
            process.communicate()
            raise subprocess.TimeoutExpired(command, timeout)
    return CommandResult(process.returncode, stdout or "", stderr or "")


def detect_image_extension(data: bytes) -> Optional[str]:
    """Return the image extension implied by the magic bytes, or None."""
    if data.startswith(b"\xff\xd8\xff"):
        return "jpg"
    if data.startswith(b"\x89PNG"):
        return "png"
    if data.startswith(b"GIF8"):
        return "gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return None


class MediaTool:
    """Thin wrapper over the ffmpeg and ffprobe executables.

    Either binary may be missing; callers check ``can_transcode`` and
    ``can_probe`` and fall back to keeping files as they are.
    """

    def __init__(
        self,
        ffmpeg: Optional[str] = None,
        ffprobe: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.ffmpeg = ffmpeg if ffmpeg is not None else shutil.which("ffmpeg")
        self.ffprobe = ffprobe if ffprobe is not None else shutil.which("ffprobe")
        self.cancel_event = cancel_event or threading.Event()
        self.timeout = timeout

    @property
    def can_transcode(self) -> bool:
        return bool(self.ffmpeg)

    @property
    def can_probe(self) -> bool:
        return bool(self.ffprobe)

    def _run(self, command: List[str]) -> str:
        try:
            result = run_command(command, self.cancel_event, self.timeout)
        except OSError as exc:
            raise TranscodeError(f"Could not start {command[0]}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise TranscodeError(f"{Path(command[0]).name} timed out") from exc
        if result.returncode != 0:
            detail = result.stderr.strip().splitlines()
            raise TranscodeError(
                f"{Path(command[0]).name} exited with {result.returncode}: "
                f"{detail[-1] if detail else 'no output'}"
            )
        return result.stdout

    def transcode_image(self, source: Path, target: Path) -> Path:
        if not self.can_transcode:
            raise TranscodeError("ffmpeg is not available")
        self._run([self.ffmpeg, "-y", "-loglevel", "error", "-i", str(source), str(target)])
        return target

    def image_height(self, path: Path) -> Optional[int]:
        """Height in pixels via ffprobe, or None when it cannot be determined."""
        if not self.can_probe:
            return None
        try:
            output = self._run([
                self.ffprobe, "-v", "error",
                "-select_streams", "v:0",
                "-show_entries", "stream=height",
                "-of", "csv=p=0",
                str(path),
            ])
        except TranscodeError as exc:
            log_warning(f"Could not probe {path}: {exc}")
            return None
        for line in output.splitlines():
            line = line.strip().rstrip(",")
            if line.isdigit():
                return int(line)
        return None

    def extract_first_frame(self, video_path: Path, target: Path) -> Path:
        if not self.can_transcode:
            raise TranscodeError("ffmpeg is not available")
        self._run([
            self.ffmpeg, "-i", str(video_path),
            "-ss", "00:00:00", "-vframes", "1", "-q:v", "2", "-y",
            str(target),
        ])
        if not target.is_file() or target.stat().st_size == 0:
            raise TranscodeError(f"ffmpeg produced no frame for {video_path}")
        return target
