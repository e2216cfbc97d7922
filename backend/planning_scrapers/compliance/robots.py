"""
Robots.txt Compliance Checker

Fetches robots.txt once per origin and caches the parsed groups for 24h.
Concurrent checks against a cold origin collapse into one fetch: each origin
has its own lock and the cache is re-checked after the lock is taken.

Rule selection for an agent token, in order:
1. Group whose User-agent equals the token (case-insensitive)
2. The `*` group
3. Group whose User-agent is a substring of the token, or vice versa

Within the selected group any matching Allow wins over Disallow. A missing
or unreachable robots.txt means everything is allowed.
"""
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from ..errors import ScraperError

logger = logging.getLogger(__name__)

ROBOTS_CACHE_TTL_SECONDS = 24 * 60 * 60
ROBOTS_FETCH_TIMEOUT = 5.0


@dataclass
class RobotsGroup:
    """One User-agent group from a robots.txt file."""
    user_agents: List[str] = field(default_factory=list)
    allow: List[str] = field(default_factory=list)
    disallow: List[str] = field(default_factory=list)
    crawl_delay: Optional[float] = None


@dataclass
class RobotsFile:
    """Parsed robots.txt for one origin."""
    origin: str
    groups: List[RobotsGroup] = field(default_factory=list)
    sitemaps: List[str] = field(default_factory=list)
    found: bool = True
    # False when robots.txt could not be fetched; such answers are not cached
    reachable: bool = True
    fetched_at: float = 0.0


@dataclass
class RobotsCheckResult:
    allowed: bool
    crawl_delay: Optional[float] = None
    reason: Optional[str] = None
    matched_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "crawl_delay": self.crawl_delay,
            "reason": self.reason,
            "matched_agent": self.matched_agent,
        }


# =============================================================================
# Parsing
# =============================================================================

def parse_robots_txt(content: str, origin: str = "") -> RobotsFile:
    """
    Parse robots.txt content.

    Consecutive User-agent lines share the rules that follow them.
    """
    robots = RobotsFile(origin=origin)
    current: Optional[RobotsGroup] = None
    collecting_agents = False

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        directive, value = line.split(":", 1)
        directive = directive.strip().lower()
        value = value.strip()

        if directive == "user-agent":
            if current is None or not collecting_agents:
                current = RobotsGroup()
                robots.groups.append(current)
            current.user_agents.append(value)
            collecting_agents = True
            continue

        if directive == "sitemap":
            if value:
                robots.sitemaps.append(value)
            continue

        collecting_agents = False
        if current is None:
            continue
        if directive == "allow" and value:
            current.allow.append(value)
        elif directive == "disallow" and value:
            current.disallow.append(value)
        elif directive == "crawl-delay":
            try:
                current.crawl_delay = float(value)
            except ValueError:
                logger.debug(f"Ignoring bad crawl-delay {value!r} for {origin}")

    return robots


def select_group(groups: List[RobotsGroup], agent: str) -> Optional[RobotsGroup]:
    agent = agent.lower()
    for group in groups:
        if any(ua.lower() == agent for ua in group.user_agents):
            return group
    for group in groups:
        if "*" in group.user_agents:
            return group
    for group in groups:
        for ua in group.user_agents:
            ua = ua.lower()
            if ua and ua != "*" and (ua in agent or agent in ua):
                return group
    return None


def pattern_matches(path: str, pattern: str) -> bool:
    """Prefix match with `*` wildcards and an optional `$` end anchor."""
    if not pattern:
        return False
    anchored = pattern.endswith("$")
    if anchored:
        pattern = pattern[:-1]
    regex = "^" + ".*".join(re.escape(part) for part in pattern.split("*"))
    if anchored:
        regex += "$"
    return re.match(regex, path) is not None


def is_path_allowed(path: str, group: Optional[RobotsGroup]) -> bool:
    if group is None:
        return True
    if any(pattern_matches(path, pattern) for pattern in group.allow):
        return True
    if any(pattern_matches(path, pattern) for pattern in group.disallow):
        return False
    return True


# =============================================================================
# Checker
# =============================================================================

class RobotsChecker:
    """
    Cached robots.txt checker.

    Example:
        checker = RobotsChecker(fetcher, agent="PlanningScrapers")
        result = checker.check("https://example.gov.uk/planning/search")
        if not result.allowed:
            ...
    """

    def __init__(
        self,
        fetcher,
        agent: str = "*",
        headers: Optional[Dict[str, str]] = None,
        ttl_seconds: float = ROBOTS_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetcher = fetcher
        self.agent = agent
        self.headers = headers or {}
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, RobotsFile] = {}
        self._cache_lock = threading.Lock()
        self._origin_locks: Dict[str, threading.Lock] = {}
        self._origin_locks_lock = threading.Lock()
        self._fetch_count = 0

    def _get_cached(self, origin: str) -> Optional[RobotsFile]:
        with self._cache_lock:
            entry = self._cache.get(origin)
            if entry and self._clock() - entry.fetched_at < self.ttl_seconds:
                return entry
            return None

    def _origin_lock(self, origin: str) -> threading.Lock:
        with self._origin_locks_lock:
            if origin not in self._origin_locks:
                self._origin_locks[origin] = threading.Lock()
            return self._origin_locks[origin]

    def get_robots(self, origin: str) -> RobotsFile:
        """
        Return rules for an origin, fetching at most once per TTL.

        Only real answers (a parsed file or a missing one) are cached. A failed
        fetch allows this request and is retried on the next check.
        """
        cached = self._get_cached(origin)
        if cached is not None:
            return cached

        with self._origin_lock(origin):
            # Another thread may have refreshed while we waited.
            cached = self._get_cached(origin)
            if cached is not None:
                return cached

            robots = self._fetch(origin)
            robots.fetched_at = self._clock()
            if robots.reachable:
                with self._cache_lock:
                    self._cache[origin] = robots
            return robots

    def _fetch(self, origin: str) -> RobotsFile:
        robots_url = f"{origin}/robots.txt"
        with self._cache_lock:
            self._fetch_count += 1
        try:
            response = self.fetcher.fetch(
                robots_url, headers=self.headers, timeout=ROBOTS_FETCH_TIMEOUT
            )
        except ScraperError as e:
            logger.warning(f"Could not fetch {robots_url}: {e} (assuming allowed)")
            return RobotsFile(origin=origin, found=False, reachable=False)

        if response.status_code != 200:
            logger.info(f"No robots.txt at {origin} (HTTP {response.status_code}), assuming allowed")
            return RobotsFile(origin=origin, found=False)

        robots = parse_robots_txt(response.text, origin=origin)
        logger.info(
            f"Loaded robots.txt for {origin}: {len(robots.groups)} group(s), "
            f"{len(robots.sitemaps)} sitemap(s)"
        )
        return robots

    def check(self, url: str, agent: Optional[str] = None) -> RobotsCheckResult:
        """Check whether `url` may be fetched by `agent`."""
        agent = agent or self.agent
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        robots = self.get_robots(origin)

        if not robots.reachable:
            return RobotsCheckResult(allowed=True, reason="robots.txt unreachable (assuming allowed)")
        if not robots.found:
            return RobotsCheckResult(allowed=True, reason="No robots.txt found (assuming allowed)")

        group = select_group(robots.groups, agent)
        path = (parsed.path or "/") + (f"?{parsed.query}" if parsed.query else "")
        allowed = is_path_allowed(path, group)

        return RobotsCheckResult(
            allowed=allowed,
            crawl_delay=group.crawl_delay if group else None,
            reason=None if allowed else f"Disallowed by robots.txt for user-agent: {agent}",
            matched_agent=", ".join(group.user_agents) if group else None,
        )

    def invalidate(self, origin: Optional[str] = None) -> None:
        with self._cache_lock:
            if origin is None:
                self._cache.clear()
            else:
                self._cache.pop(origin.rstrip("/"), None)

    def cache_info(self) -> Dict[str, Any]:
        with self._cache_lock:
            return {
                "origins": sorted(self._cache),
                "size": len(self._cache),
                "fetches": self._fetch_count,
                "ttl_seconds": self.ttl_seconds,
            }

    def generate_report(self, urls: Iterable[str]) -> Dict[str, Any]:
        """Check a list of URLs and summarise the outcome."""
        results = [{"url": url, "result": self.check(url).to_dict()} for url in urls]
        allowed = sum(1 for r in results if r["result"]["allowed"])
        delays = [r["result"]["crawl_delay"] for r in results if r["result"]["crawl_delay"] is not None]

        return {
            "compliant": allowed == len(results),
            "results": results,
            "summary": {
                "total": len(results),
                "allowed": allowed,
                "disallowed": len(results) - allowed,
                "avg_crawl_delay": sum(delays) / len(delays) if delays else 0,
            },
        }
