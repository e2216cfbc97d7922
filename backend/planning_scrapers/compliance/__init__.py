"""
Compliance checks run before any page is fetched.

- robots.txt rules (cached per origin)
- Terms of service registry
- Consent tracking
- Outbound identification headers
- Ethical egress proxy pool
"""

from .consent import ConsentRecord, ConsentTracker, RequestStatus
from .gateway import ComplianceGateway
from .identity import AgentIdentity
from .proxies import ProxyEntry, ProxyPool
from .robots import RobotsChecker, RobotsCheckResult, parse_robots_txt
from .terms import SiteTerms, TermsOutcome, TermsRegistry

__all__ = [
    "AgentIdentity",
    "ComplianceGateway",
    "ConsentRecord",
    "ConsentTracker",
    "ProxyEntry",
    "ProxyPool",
    "RequestStatus",
    "RobotsChecker",
    "RobotsCheckResult",
    "SiteTerms",
    "TermsOutcome",
    "TermsRegistry",
    "parse_robots_txt",
]
