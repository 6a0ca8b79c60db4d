"""
Coordinated Overpass API HTTP layer.

Used by the offline place-list enrichment (scripts/build_places.py).
It provides:
- SQLite cache check before any HTTP request (7-day TTL via models.py)
- Process-local rate limiting: 1 request/second minimum spacing
- Thread-safe request execution (no shared requests.Session)
- Retry with exponential backoff on 429/5xx (2 retries, 2s/4s)

Set OVERPASS_BASE_URL to point at a self-hosted Overpass instance.
"""

import json
import logging
import os
import threading
import time
from typing import Any, Dict, Optional

import requests

from models import get_overpass_cache, overpass_cache_key, set_overpass_cache

logger = logging.getLogger(__name__)


class OverpassRateLimitError(Exception):
    """Raised when Overpass returns 429 or rate-limit indicators after all retries are exhausted."""

    pass


class OverpassQueryError(Exception):
    """Raised when Overpass returns a non-retryable error after all retries are exhausted."""

    pass


class OverpassHTTPClient:
    DEFAULT_TIMEOUT = 30  # seconds
    MIN_SPACING = 1.0  # seconds between HTTP requests
    MAX_RETRIES = 2
    RETRY_BACKOFF = [2, 4]  # seconds

    def __init__(self, base_url: Optional[str] = None):
        self._lock = threading.Lock()
        self._last_request_time = 0.0
        self.base_url = base_url or os.environ.get(
            "OVERPASS_BASE_URL",
            "https://overpass-api.de/api/interpreter",
        )

    def query(
        self,
        overpass_ql: str,
        caller: str = "unknown",
        timeout: Optional[int] = None,
        ttl_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Execute an Overpass QL query with cache-first, rate-limited HTTP.

        Args:
            overpass_ql: The Overpass QL query string.
            caller: Identifier used in log lines (e.g. "build_places:Celbridge").
            timeout: HTTP timeout in seconds. Defaults to DEFAULT_TIMEOUT.
            ttl_days: Cache TTL in days for this lookup; None uses default (7 days).

        Returns:
            Parsed JSON response dict from Overpass.

        Raises:
            OverpassRateLimitError: still rate limited after MAX_RETRIES.
            OverpassQueryError: non-retryable error, or retries exhausted.
        """
        if timeout is None:
            timeout = self.DEFAULT_TIMEOUT

        cache_key = overpass_cache_key(overpass_ql)
        cached = get_overpass_cache(cache_key, ttl_days=ttl_days)
        if cached is not None:
            try:
                return json.loads(cached)
            except (json.JSONDecodeError, TypeError):
                logger.warning(
                    "Corrupted Overpass cache entry for key %s, falling through to HTTP",
                    cache_key,
                )

        for attempt in range(1 + self.MAX_RETRIES):
            try:
                result = self._do_request(overpass_ql, caller, timeout)
            except (OverpassRateLimitError, OverpassQueryError) as e:
                retryable = isinstance(e, OverpassRateLimitError) or self._is_retryable_error(e)
                if attempt < self.MAX_RETRIES and retryable:
                    sleep_time = self.RETRY_BACKOFF[attempt]
                    logger.info(
                        "Overpass %s (attempt %d/%d), sleeping %ds before retry [caller=%s]",
                        "rate limited" if isinstance(e, OverpassRateLimitError) else "query error",
                        attempt + 1,
                        1 + self.MAX_RETRIES,
                        sleep_time,
                        caller,
                    )
                    time.sleep(sleep_time)
                    continue
                raise

            try:
                set_overpass_cache(cache_key, json.dumps(result))
            except Exception:
                logger.warning(
                    "Failed to write Overpass cache for key %s",
                    cache_key,
                    exc_info=True,
                )
            return result

        raise OverpassQueryError("Overpass query failed after all retries")

    def _do_request(
        self, overpass_ql: str, caller: str, timeout: int
    ) -> Dict[str, Any]:
        """Make a single rate-limited HTTP request to Overpass."""
        with self._lock:
            now = time.monotonic()
            elapsed_since_last = now - self._last_request_time
            if elapsed_since_last < self.MIN_SPACING:
                time.sleep(self.MIN_SPACING - elapsed_since_last)
            self._last_request_time = time.monotonic()

        # Fresh session per request (thread-safe, no shared state)
        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.post(
                self.base_url,
                data={"data": overpass_ql},
                timeout=timeout,
            )
        except requests.exceptions.Timeout:
            raise OverpassQueryError(
                f"Overpass request timeout after {timeout}s [caller={caller}]"
            )
        except requests.exceptions.RequestException as e:
            raise OverpassQueryError(
                f"Overpass request failed: {e} [caller={caller}]"
            ) from e

        status_code = resp.status_code
        if status_code == 429:
            raise OverpassRateLimitError(
                f"Overpass 429 Too Many Requests [caller={caller}]"
            )
        if status_code == 504:
            raise OverpassQueryError(
                f"Overpass 504 Gateway Timeout [caller={caller}]"
            )
        if status_code >= 400:
            raise OverpassQueryError(
                f"Overpass HTTP {status_code} [caller={caller}]"
            )

        try:
            data = resp.json()
        except ValueError:
            raise OverpassQueryError(
                f"Overpass returned non-JSON response (HTTP {status_code}) [caller={caller}]"
            )

        # Overpass may put errors in osm3s.remark or top-level remark
        remark = ""
        if isinstance(data, dict):
            osm3s = data.get("osm3s", {}) or {}
            remark = str(osm3s.get("remark") or data.get("remark") or "")

        remark_lower = remark.lower()
        if "too many requests" in remark_lower:
            raise OverpassRateLimitError(
                f"Overpass rate limit in response body [caller={caller}]"
            )
        if any(
            indicator in remark_lower
            for indicator in ["runtime error", "timed out", "out of memory"]
        ):
            raise OverpassQueryError(
                f"Overpass server error in response body: {remark[:100]} [caller={caller}]"
            )

        return data

    @staticmethod
    def _is_retryable_error(e: OverpassQueryError) -> bool:
        """5xx errors, timeouts, and server body errors are retryable. 4xx are not."""
        msg = str(e).lower()
        if "timeout" in msg or "server error" in msg or "request failed" in msg:
            return True
        for code in ("500", "502", "503", "504"):
            if code in msg:
                return True
        return False


# Module-level singleton: all callers in this process share one instance
_client = OverpassHTTPClient()


def overpass_query(
    overpass_ql: str,
    caller: str = "unknown",
    timeout: Optional[int] = None,
    ttl_days: Optional[int] = None,
) -> Dict[str, Any]:
    """Module-level convenience function. All Overpass calls should use this."""
    return _client.query(overpass_ql, caller=caller, timeout=timeout, ttl_days=ttl_days)
