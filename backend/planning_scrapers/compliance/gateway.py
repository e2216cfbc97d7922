"""
Compliance Gateway - decides whether a URL may be fetched.

Pipeline, stopping at the first blocking check:
1. robots.txt (cached per origin)
2. Terms of service registry
3. Consent (non-government domains only)

On pass the decision carries the effective rate limit (declared rate lowered
by any crawl-delay), identification headers and, when requested, an egress
proxy. Callers must not fetch a URL whose decision is not allowed.
"""
import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

from ..errors import ComplianceBlockedError
from ..models import AccessMethod, ComplianceDecision
from .consent import ConsentTracker
from .identity import AgentIdentity
from .proxies import ProxyPool
from .robots import RobotsChecker
from .terms import TermsRegistry, domain_of

logger = logging.getLogger(__name__)


class ComplianceGateway:
    """
    Example:
        gateway = ComplianceGateway(robots, terms, consent, identity, proxies)
        decision = gateway.evaluate(url, declared_rate_limit=5)
        if not decision.allowed:
            raise ComplianceBlockedError(...)
    """

    def __init__(
        self,
        robots: RobotsChecker,
        terms: TermsRegistry,
        consent: ConsentTracker,
        identity: AgentIdentity,
        proxies: Optional[ProxyPool] = None,
        respect_robots: bool = True,
        check_terms: bool = True,
        require_consent: bool = True,
    ):
        self.robots = robots
        self.terms = terms
        self.consent = consent
        self.identity = identity
        self.proxies = proxies
        self.respect_robots = respect_robots
        self.check_terms = check_terms
        self.require_consent = require_consent

    def evaluate(
        self,
        url: str,
        declared_rate_limit: Optional[float] = None,
        use_proxy: bool = False,
    ) -> ComplianceDecision:
        """Run the compliance pipeline for one URL."""
        parsed = urlparse(url)
        domain = domain_of(url)
        warnings = []
        crawl_delay = None

        # 1. robots.txt
        if self.respect_robots:
            robots_result = self.robots.check(url, agent=self.identity.robots_token)
            if not robots_result.allowed:
                return self._blocked(
                    url,
                    [f"Blocked by robots.txt: {robots_result.reason}"],
                    ["Check for API access", "Request permission"],
                )
            if robots_result.crawl_delay:
                crawl_delay = robots_result.crawl_delay
                warnings.append(f"robots.txt crawl-delay: {crawl_delay}s")

        # 2. Terms of service
        if self.check_terms:
            terms_result = self.terms.validate(url)
            if not terms_result.compliant:
                decision = self._blocked(
                    url,
                    ["Terms of service prohibit scraping"],
                    (
                        [f"Use official API: {terms_result.api_url}"]
                        if terms_result.api_available
                        else ["Contact site owner for permission"]
                    ),
                )
                if terms_result.api_available:
                    decision.method = AccessMethod.API
                return decision
            if terms_result.requires_attribution:
                warnings.append("Attribution required")
            if terms_result.api_available:
                warnings.append("API available - consider using instead")
            if terms_result.manual_review:
                warnings.append("Unknown site terms - manual review recommended")

        # 3. Consent
        if self.require_consent:
            requirement = self.consent.is_consent_required(domain)
            if requirement.required and not self.consent.has_consent(domain):
                return self._blocked(
                    url,
                    [f"Consent required: {requirement.reason}"],
                    [f"Request consent via {requirement.method or 'email'}"],
                    warnings,
                )

        # 4. Pass: rate, headers, egress
        effective_rate = declared_rate_limit
        if crawl_delay:
            robots_rate = 1.0 / crawl_delay
            effective_rate = robots_rate if effective_rate is None else min(effective_rate, robots_rate)

        decision = ComplianceDecision(
            allowed=True,
            method=AccessMethod.DIRECT,
            url=url,
            reasons=["Passed robots.txt, terms and consent checks"],
            effective_rate_limit=effective_rate,
            headers=self.identity.headers(referer=f"{parsed.scheme}://{parsed.netloc}"),
            warnings=warnings,
            crawl_delay=crawl_delay,
        )

        if use_proxy:
            entry = self.proxies.select() if self.proxies is not None else None
            if entry is None:
                decision.warnings.append("No ethical proxies available")
            elif not entry.is_direct:
                decision.proxy = entry.url
                decision.method = AccessMethod.PROXY

        logger.debug(f"Compliance allowed {url} (rate={effective_rate}, method={decision.method.value})")
        return decision

    def require(self, url: str, declared_rate_limit: Optional[float] = None, use_proxy: bool = False) -> ComplianceDecision:
        """evaluate(), raising ComplianceBlockedError when not allowed."""
        decision = self.evaluate(url, declared_rate_limit, use_proxy)
        if not decision.allowed:
            raise ComplianceBlockedError(
                f"Blocked by compliance policy: {'; '.join(decision.reasons)}",
                decision=decision,
            )
        return decision

    def audit(self, urls: Iterable[str]) -> dict:
        """Evaluate a list of URLs without fetching any page content."""
        decisions = [self.evaluate(url) for url in urls]
        return {
            "total": len(decisions),
            "allowed": sum(1 for d in decisions if d.allowed),
            "blocked": sum(1 for d in decisions if not d.allowed),
            "decisions": [d.to_dict() for d in decisions],
        }

    @staticmethod
    def _blocked(url, reasons, alternatives, warnings=None) -> ComplianceDecision:
        decision = ComplianceDecision.blocked(url, reasons, alternatives, warnings)
        logger.warning(f"Compliance blocked {url}: {'; '.join(reasons)}")
        return decision
