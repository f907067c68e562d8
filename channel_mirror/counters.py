"""Daily counters shared by the download and upload flows.

Both files live under ``<root>/.global``. They are stamped with the local
calendar date; the first access on a new date resets the counts in the
same write. A counters file that cannot be decoded is treated as empty so
a damaged file never blocks the pipeline.
"""

import math
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .errors import StateStoreError
from .logger import log_warning
from .models import DOWNLOAD_COUNTER_FILE, UPLOAD_COUNTERS_FILE
from .store import StateStore


def _as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


class CounterStore:
    """Read-modify-write access to the process-wide counters."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    @property
    def upload_counters_path(self) -> Path:
        return self.store.global_dir / UPLOAD_COUNTERS_FILE

    @property
    def download_counter_path(self) -> Path:
        return self.store.global_dir / DOWNLOAD_COUNTER_FILE

    def today(self) -> str:
        return datetime.fromtimestamp(self.store.now()).strftime("%Y-%m-%d")

    def _load_tolerant(self, path: Path) -> Dict[str, Any]:
        try:
            payload = self.store.load(path)
        except StateStoreError as exc:
            log_warning(f"{exc}; starting from empty counters")
            return {}
        if not isinstance(payload, dict):
            log_warning(f"Counters file {path} is not a JSON object; starting from empty counters")
            return {}
        return payload

    def _modify(self, path: Path, normalize: Callable[[Dict[str, Any]], bool],
                mutator: Optional[Callable[[Dict[str, Any]], None]] = None) -> Dict[str, Any]:
        payload = self._load_tolerant(path)
        changed = normalize(payload)
        if mutator is not None:
            mutator(payload)
            changed = True
        if changed:
            self.store.save(path, payload)
        return payload

    # Upload counters -------------------------------------------------------

    def _normalize_upload(self, payload: Dict[str, Any]) -> bool:
        today = self.today()
        counts = payload.get("counts")
        if payload.get("date") != today or not isinstance(counts, dict):
            payload.clear()
            payload["date"] = today
            payload["counts"] = {}
            return True
        payload["counts"] = {str(name): _as_int(count) for name, count in counts.items()}
        return False

    def upload_counts(self) -> Dict[str, int]:
        """Today's upload count per account."""
        payload = self._modify(self.upload_counters_path, self._normalize_upload)
        return dict(payload["counts"])

    def increment_upload(self, account: str) -> int:
        def mutate(payload: Dict[str, Any]) -> None:
            payload["counts"][account] = payload["counts"].get(account, 0) + 1

        payload = self._modify(self.upload_counters_path, self._normalize_upload, mutate)
        return payload["counts"][account]

    # Download counter ------------------------------------------------------

    def _normalize_download(self, payload: Dict[str, Any]) -> bool:
        today = self.today()
        now = self.store.now()
        original = dict(payload)
        rest_until = _as_int(payload.get("rest_until"))
        if payload.get("date") != today:
            payload["date"] = today
            payload["count"] = 0
            payload["daily_count"] = 0
            payload["bot_detection_count"] = 0
            # An active rest window carries across midnight
            if rest_until < now:
                rest_until = 0
        else:
            payload["count"] = _as_int(payload.get("count"))
            payload["daily_count"] = _as_int(payload.get("daily_count"))
            payload["bot_detection_count"] = _as_int(payload.get("bot_detection_count"))
        payload["rest_until"] = rest_until
        return payload != original

    def download_counter(self) -> Dict[str, Any]:
        return dict(self._modify(self.download_counter_path, self._normalize_download))

    def update_download_counter(self, mutator: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
        return dict(self._modify(self.download_counter_path, self._normalize_download, mutator))

    def extend_rest(self, until: float, reset_count: bool = True) -> int:
        """Push ``rest_until`` forward to *until*; it never moves backwards."""
        def mutate(payload: Dict[str, Any]) -> None:
            payload["rest_until"] = max(_as_int(payload.get("rest_until")), int(math.ceil(until)))
            if reset_count:
                payload["count"] = 0

        return self.update_download_counter(mutate)["rest_until"]

    def increment_download(self) -> Dict[str, Any]:
        def mutate(payload: Dict[str, Any]) -> None:
            payload["count"] += 1
            payload["daily_count"] += 1

        return self.update_download_counter(mutate)

    def increment_bot_detection(self) -> int:
        def mutate(payload: Dict[str, Any]) -> None:
            payload["bot_detection_count"] += 1

        return self.update_download_counter(mutate)["bot_detection_count"]

    def reset_bot_detection(self) -> None:
        def mutate(payload: Dict[str, Any]) -> None:
            payload["bot_detection_count"] = 0

        self.update_download_counter(mutate)
