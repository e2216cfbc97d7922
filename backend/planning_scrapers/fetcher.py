"""
HTTP fetch layer.

HttpFetcher is the only place that talks to requests. It turns transport
problems into the scraper error taxonomy:

- Timeout / connection failure / 5xx  -> NetworkError (retryable)
- 429, or 503 with Retry-After        -> RateLimitError (retryable, honours Retry-After)
- 404                                 -> returned as-is, callers decide
- other 4xx                           -> NetworkError with status_code

GatedClient wraps a fetcher for one source: every URL goes through the
compliance gateway and the source's rate limiter before it is fetched.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import requests
from dateutil import parser as date_parser

from .errors import ComplianceBlockedError, NetworkError, RateLimitError
from .models import ComplianceDecision, SourceConfig
from .rate_limiter import build_rate_limiter

logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    """Minimal response shape handed to parsers."""
    url: str
    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class Fetcher(Protocol):
    def fetch(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        proxy: Optional[str] = None,
    ) -> FetchResponse:
        ...


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class HttpFetcher:
    """
    requests-backed fetcher with a pooled Session.

    Example:
        with HttpFetcher() as fetcher:
            response = fetcher.fetch(url, headers={"User-Agent": ua}, timeout=30)
    """

    def __init__(self, session: Optional[requests.Session] = None, default_timeout: float = 30.0):
        self._session = session or requests.Session()
        self.default_timeout = default_timeout

    def fetch(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        proxy: Optional[str] = None,
    ) -> FetchResponse:
        timeout = timeout or self.default_timeout
        proxies = {"http": proxy, "https": proxy} if proxy else None
        start_time = time.time()

        try:
            response = self._session.get(
                url, headers=headers or {}, timeout=timeout, proxies=proxies
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timeout after {timeout}s fetching {url}", cause=e) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request failed for {url}: {e}", cause=e) from e

        duration = time.time() - start_time
        status = response.status_code
        retry_after = parse_retry_after(response.headers.get("Retry-After"))

        if status == 429 or (status == 503 and retry_after is not None):
            raise RateLimitError(
                f"HTTP {status} from {url}", retry_after=retry_after
            )
        if status >= 500:
            raise NetworkError(f"HTTP {status} from {url}", status_code=status)
        if 400 <= status < 500 and status != 404:
            raise NetworkError(f"HTTP {status} from {url}", status_code=status)

        return FetchResponse(
            url=response.url or url,
            status_code=status,
            text=response.text,
            headers=dict(response.headers),
            elapsed_seconds=duration,
        )

    def close(self):
        """Close the HTTP session."""
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class GatedClient:
    """
    Per-source client: compliance check, rate limit, then fetch.

    The rate limiter is built from the decision's effective rate (declared
    rate lowered by any robots.txt crawl-delay) and rebuilt when that rate
    changes, e.g. after robots.txt is refreshed. An injected limiter is kept
    as is.
    """

    def __init__(
        self,
        config: SourceConfig,
        fetcher: Fetcher,
        gateway,
        limiter=None,
        use_proxy: bool = False,
    ):
        self.config = config
        self.fetcher = fetcher
        self.gateway = gateway
        self.use_proxy = use_proxy
        self._limiter = limiter
        self._limiter_injected = limiter is not None
        self._limiter_rate: Optional[float] = None
        self._limiter_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = {
            "requests_made": 0,
            "requests_blocked": 0,
            "requests_failed": 0,
        }

    @property
    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] += 1

    def _get_limiter(self, decision: ComplianceDecision):
        with self._limiter_lock:
            if self._limiter_injected:
                return self._limiter
            rate = decision.effective_rate_limit
            if self._limiter is None or rate != self._limiter_rate:
                self._limiter = build_rate_limiter(self.config, rate)
                self._limiter_rate = rate
            return self._limiter

    def evaluate(self, url: str) -> ComplianceDecision:
        return self.gateway.evaluate(
            url, self.config.requests_per_second, use_proxy=self.use_proxy
        )

    def get(self, url: str) -> FetchResponse:
        """
        Fetch one URL for this source.

        Raises:
            ComplianceBlockedError: Gateway refused the URL. No request is sent.
            NetworkError, RateLimitError: From the underlying fetcher.
        """
        decision = self.evaluate(url)
        if not decision.allowed:
            self._bump("requests_blocked")
            raise ComplianceBlockedError(
                f"Blocked by compliance policy: {'; '.join(decision.reasons)}",
                decision=decision,
                source_id=self.config.source_id,
            )

        self._get_limiter(decision).acquire()
        self._bump("requests_made")
        start_time = time.time()
        try:
            response = self.fetcher.fetch(
                url,
                headers=dict(decision.headers),
                timeout=self.config.timeout_seconds,
                proxy=decision.proxy,
            )
        except Exception:
            self._bump("requests_failed")
            self._record_proxy(decision, success=False, elapsed=time.time() - start_time)
            raise
        self._record_proxy(decision, success=True, elapsed=time.time() - start_time)
        return response

    def _record_proxy(self, decision: ComplianceDecision, success: bool, elapsed: float) -> None:
        if decision.proxy is None:
            return
        proxies = getattr(self.gateway, "proxies", None)
        if proxies is not None:
            proxies.record_outcome(decision.proxy, success=success, response_time=elapsed)

    def get_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {"source_id": self.config.source_id, **self.stats}
        if self._limiter is not None:
            status["rate_limiter"] = self._limiter.get_status()
        return status
