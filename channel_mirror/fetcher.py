"""HTTP retrieval of auxiliary assets such as thumbnails."""

import http.client
import threading
import urllib.error
import urllib.request
from typing import Optional

from .errors import FetchError, OperationCancelled
from .models import USER_AGENTS

DEFAULT_TIMEOUT = 30
MAX_ASSET_BYTES = 50 * 1024 * 1024
IMAGE_ACCEPT = "image/avif,image/webp,image/png,image/jpeg,image/*;q=0.8,*/*;q=0.5"


class AssetFetcher:
    """Fetches small binary assets; redirects are followed by urllib."""

    def __init__(
        self,
        user_agent: Optional[str] = None,
        proxy: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.user_agent = user_agent or USER_AGENTS[0]
        self.timeout = timeout
        self.cancel_event = cancel_event
        handlers = []
        if proxy:
            handlers.append(urllib.request.ProxyHandler({"http": proxy, "https": proxy}))
        self._opener = urllib.request.build_opener(*handlers)

    def _request(self, url: str, method: str, accept: str) -> urllib.request.Request:
        return urllib.request.Request(
            url,
            method=method,
            headers={"User-Agent": self.user_agent, "Accept": accept},
        )

    def _check_cancelled(self, url: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelled(f"Fetch of {url} cancelled")

    def fetch(self, url: str, accept: str = IMAGE_ACCEPT) -> bytes:
        """GET *url* and return the body; any non-2xx status is a FetchError."""
        self._check_cancelled(url)
        try:
            with self._opener.open(self._request(url, "GET", accept), timeout=self.timeout) as response:
                status = getattr(response, "status", 200)
                if not 200 <= status < 300:
                    raise FetchError(f"HTTP {status} fetching {url}")
                data = response.read(MAX_ASSET_BYTES + 1)
        except urllib.error.HTTPError as exc:
            raise FetchError(f"HTTP {exc.code} fetching {url}") from exc
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc
        if len(data) > MAX_ASSET_BYTES:
            raise FetchError(f"Asset at {url} exceeds {MAX_ASSET_BYTES} bytes")
        if not data:
            raise FetchError(f"Empty response from {url}")
        return data

    def exists(self, url: str, accept: str = IMAGE_ACCEPT) -> bool:
        """HEAD probe; True on a 2xx answer."""
        self._check_cancelled(url)
        try:
            with self._opener.open(self._request(url, "HEAD", accept), timeout=self.timeout) as response:
                status = getattr(response, "status", 200)
                return 200 <= status < 300
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError):
            return False
