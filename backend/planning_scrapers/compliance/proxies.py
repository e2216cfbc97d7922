"""
Egress proxy pool.

Only proxies at or above the ethical-score threshold are ever selected.
Eligible proxies are ranked by success rate and rotated round-robin. A proxy
whose success rate falls below 50% after more than 10 requests is blocked.

The built-in `direct` entry (score 100) means "no proxy".
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MIN_ETHICAL_SCORE = 80
BLOCK_SUCCESS_RATE = 50.0
BLOCK_MIN_REQUESTS = 10
DIRECT = "direct"


@dataclass
class ProxyStats:
    total_requests: int = 0
    failed_requests: int = 0
    avg_response_time: float = 0.0
    last_used: Optional[float] = None
    blocked: bool = False

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 100.0
        return (self.total_requests - self.failed_requests) / self.total_requests * 100


@dataclass
class ProxyEntry:
    url: str
    ethical_score: int
    provider: str = ""
    country: Optional[str] = None
    residential: bool = False
    stats: ProxyStats = field(default_factory=ProxyStats)

    @property
    def is_direct(self) -> bool:
        return self.url == DIRECT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyEntry":
        return cls(
            url=data["url"],
            ethical_score=int(data.get("ethical_score", 0)),
            provider=data.get("provider", ""),
            country=data.get("country"),
            residential=bool(data.get("residential", False)),
        )


class ProxyPool:
    """Thread-safe proxy selection with outcome tracking."""

    def __init__(
        self,
        proxies: Optional[Iterable[ProxyEntry]] = None,
        min_ethical_score: int = DEFAULT_MIN_ETHICAL_SCORE,
        include_direct: bool = True,
    ):
        self.min_ethical_score = min_ethical_score
        self._lock = threading.Lock()
        self._entries: Dict[str, ProxyEntry] = {}
        self._cursor = 0
        if include_direct:
            self._entries[DIRECT] = ProxyEntry(url=DIRECT, ethical_score=100, provider="Direct Connection", country="UK")
        for entry in proxies or ():
            self.add_proxy(entry)

    def add_proxy(self, entry: ProxyEntry) -> bool:
        """Add a proxy if it meets the ethical threshold."""
        if entry.ethical_score < self.min_ethical_score:
            logger.warning(
                f"Rejected proxy {entry.provider or entry.url}: ethical score "
                f"{entry.ethical_score} below {self.min_ethical_score}"
            )
            return False
        with self._lock:
            self._entries[entry.url] = entry
        return True

    def eligible(self) -> List[ProxyEntry]:
        with self._lock:
            return self._eligible_locked()

    def _eligible_locked(self) -> List[ProxyEntry]:
        candidates = [
            e for e in self._entries.values()
            if not e.stats.blocked and e.ethical_score >= self.min_ethical_score
        ]
        return sorted(candidates, key=lambda e: e.stats.success_rate, reverse=True)

    def select(self) -> Optional[ProxyEntry]:
        """Next eligible proxy in rotation, or None when none qualify."""
        with self._lock:
            candidates = self._eligible_locked()
            if not candidates:
                return None
            entry = candidates[self._cursor % len(candidates)]
            self._cursor += 1
            entry.stats.last_used = time.time()
            return entry

    def record_outcome(self, url: str, success: bool, response_time: Optional[float] = None) -> None:
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return
            stats = entry.stats
            stats.total_requests += 1
            if not success:
                stats.failed_requests += 1
            if response_time is not None:
                previous = stats.total_requests - 1
                stats.avg_response_time = (
                    stats.avg_response_time * previous + response_time
                ) / stats.total_requests
            if (
                not stats.blocked
                and stats.total_requests > BLOCK_MIN_REQUESTS
                and stats.success_rate < BLOCK_SUCCESS_RATE
            ):
                stats.blocked = True
                logger.warning(
                    f"Proxy {entry.provider or entry.url} blocked: success rate "
                    f"{stats.success_rate:.1f}% over {stats.total_requests} requests"
                )

    def usage_report(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
        return {
            "min_ethical_score": self.min_ethical_score,
            "total": len(entries),
            "active": sum(1 for e in entries if not e.stats.blocked),
            "blocked": sum(1 for e in entries if e.stats.blocked),
            "proxies": [
                {
                    "proxy": e.provider or e.url,
                    "ethical_score": e.ethical_score,
                    "success_rate": round(e.stats.success_rate, 1),
                    "total_requests": e.stats.total_requests,
                    "avg_response_time": round(e.stats.avg_response_time, 3),
                    "blocked": e.stats.blocked,
                }
                for e in entries
            ],
        }
