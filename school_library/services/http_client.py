import logging
import time
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class BackendHTTPClient:
    """Pooled synchronous HTTP client for the library REST backend, with retries."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0,
                 retries: int = 3, backoff: float = 0.5,
                 transport: Optional[httpx.BaseTransport] = None) -> None:
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.retries = max(1, retries)
        self.backoff = backoff
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            limits=limits,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            follow_redirects=True,
            transport=transport,
        )

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Single attempt; used for writes, which are not safe to repeat."""
        return self._client.request(method, path, **kwargs)

    def get_with_retry(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """GET with exponential backoff on transport errors.

        The last ``httpx.RequestError`` is re-raised once retries run out.
        """
        for attempt in range(self.retries):
            try:
                return self._client.get(path, params=params)
            except httpx.RequestError as e:
                if attempt < self.retries - 1:
                    wait_time = self.backoff * (2 ** attempt)
                    logger.debug(f"GET {path} failed ({e}); retrying in {wait_time:.2f}s")
                    time.sleep(wait_time)
                    continue
                raise

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BackendHTTPClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
