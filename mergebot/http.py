import time
import logging
from typing import Any, Dict, List, Optional

import httpx

from .config import SETTINGS
from .errors import RateLimitError, TransientError

logger = logging.getLogger(__name__)


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return str(u.copy_with(query=None))
    except Exception:
        return url.split("?", 1)[0]


def _param_keys(d: Optional[Dict[str, Any]]) -> List[str]:
    return sorted((d or {}).keys())


def _json_message(resp: httpx.Response) -> str:
    ctype = (resp.headers.get("content-type") or resp.headers.get("Content-Type") or "").lower()
    if not ctype.startswith("application/json"):
        return ""
    try:
        body = resp.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("message") or "")
    return ""


class ApiClient:
    """Blocking JSON API client with bounded retries and rate-limit backpressure.

    Transport errors and 5xx responses on idempotent requests are retried with
    exponential backoff up to ``SETTINGS.http_max_attempts``. When retries are
    exhausted, or the API signals a rate limit, the call raises
    ``TransientError`` / ``RateLimitError`` so the orchestrator can apply its own
    bounded retry policy. All other responses are returned to the caller.
    """

    api_name = "api"
    user_agent = "mergebot/1.0"

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self._throttle_until: float = 0.0

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": self.user_agent}

    def _observe(self, endpoint: str, status: str, duration: float) -> None:
        """Record request metrics; subclasses bind their own collectors."""

    def _is_rate_limited(self, resp: httpx.Response) -> bool:
        return resp.status_code == 429

    def _handle_rate_limit(self, resp: httpx.Response) -> None:
        """Update backpressure state from response headers."""

    def throttle_remaining(self) -> float:
        return max(0.0, self._throttle_until - time.time())

    def request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Any] = None
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}/{path.lstrip('/')}"
        endpoint = f"{method} {path if path.startswith('/') else '/' + path}"
        # Merge requests are never replayed blindly
        idempotent = method.upper() in ("GET", "PUT") and not endpoint.endswith("/merge")

        wait = self.throttle_remaining()
        if wait > 0:
            raise RateLimitError(f"{self.api_name} backpressure active for {wait:.0f}s", retry_after=wait)

        def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
            if not idempotent:
                return False
            if exc is not None:
                return True
            return resp is not None and resp.status_code >= 500

        attempts = 0
        while True:
            attempts += 1
            start = time.perf_counter()
            exc: Optional[Exception] = None
            resp: Optional[httpx.Response] = None
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "%s.request: method=%s path=%s params=%s attempt=%s",
                    self.api_name,
                    method.upper(),
                    _safe_url(url),
                    _param_keys(params),
                    attempts,
                )
            try:
                resp = httpx.request(method, url, headers=self._headers(), params=params, json=data, timeout=60)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                exc = e
            duration = time.perf_counter() - start
            self._observe(endpoint, str(resp.status_code) if resp is not None else "exc", duration)
            if resp is not None:
                self._handle_rate_limit(resp)
            if logger.isEnabledFor(logging.DEBUG):
                if resp is not None:
                    logger.debug(
                        "%s.response: method=%s path=%s status=%s duration_ms=%d attempt=%s",
                        self.api_name,
                        method.upper(),
                        _safe_url(url),
                        resp.status_code,
                        int(duration * 1000),
                        attempts,
                    )
                else:
                    logger.debug(
                        "%s.response_error: method=%s path=%s error=%s duration_ms=%d attempt=%s",
                        self.api_name,
                        method.upper(),
                        _safe_url(url),
                        exc,
                        int(duration * 1000),
                        attempts,
                    )
            if resp is not None and self._is_rate_limited(resp):
                raise RateLimitError(
                    f"{self.api_name} rate limited: {endpoint} -> {resp.status_code}",
                    retry_after=self.throttle_remaining() or None,
                )
            if not should_retry(resp, exc) or attempts >= SETTINGS.http_max_attempts:
                break
            # sleep with exponential backoff
            sleep_s = min(
                SETTINGS.backoff_base_seconds * (SETTINGS.backoff_factor ** (attempts - 1)),
                SETTINGS.max_backoff_seconds,
            )
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "%s.retry: method=%s path=%s sleep_seconds=%s attempt=%s",
                    self.api_name,
                    method.upper(),
                    _safe_url(url),
                    sleep_s,
                    attempts,
                )
            time.sleep(sleep_s)
        if exc is not None:
            raise TransientError(f"{self.api_name} request failed: {endpoint}: {exc}") from exc
        assert resp is not None
        if resp.status_code >= 500:
            raise TransientError(f"{self.api_name} server error: {endpoint} -> {resp.status_code}")
        return resp
