"""
Terms of Service Registry - per-domain scraping permissions.

Known domains are matched exactly (after stripping `www.`). UK council
domains fall back to a generic "public record, attribution required" policy.
Anything else is permitted with a manual-review warning.

Extra domains can be supplied from config/compliance.yaml (`terms:` section)
and are merged over the built-in entries.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class Permission(str, Enum):
    ALLOWED = "allowed"
    RESTRICTED = "restricted"
    PROHIBITED = "prohibited"


class TermsOutcome(str, Enum):
    PROCEED = "proceed"
    USE_API = "use-api"
    CONTACT_REQUIRED = "contact-required"
    PROHIBITED = "prohibited"


@dataclass(frozen=True)
class SiteTerms:
    """Recorded terms for one domain."""
    domain: str
    scraping: Permission
    commercial_use: Permission = Permission.ALLOWED
    restrictions: tuple = ()
    attribution: Optional[str] = None
    license_required: bool = False
    api_url: Optional[str] = None
    contact_email: Optional[str] = None
    terms_url: Optional[str] = None
    notes: tuple = ()
    last_checked: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SiteTerms":
        return cls(
            domain=data["domain"].lower(),
            scraping=Permission(data.get("scraping", "allowed")),
            commercial_use=Permission(data.get("commercial_use", "allowed")),
            restrictions=tuple(data.get("restrictions") or ()),
            attribution=data.get("attribution"),
            license_required=bool(data.get("license_required", False)),
            api_url=data.get("api_url"),
            contact_email=data.get("contact_email"),
            terms_url=data.get("terms_url"),
            notes=tuple(data.get("notes") or ()),
        )


@dataclass
class TermsResult:
    """Outcome of validating a URL against the registry."""
    compliant: bool
    restrictions: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    scraping_allowed: Optional[bool] = None
    commercial_use_allowed: Optional[bool] = None
    requires_attribution: bool = False
    requires_license: bool = False
    api_available: bool = False
    api_url: Optional[str] = None
    contact_required: bool = False
    manual_review: bool = False


@dataclass
class TermsDecision:
    outcome: TermsOutcome
    reason: str
    alternatives: List[str] = field(default_factory=list)


# =============================================================================
# Built-in terms
# =============================================================================

KNOWN_SITE_TERMS: Dict[str, SiteTerms] = {
    # =========================================================================
    # Open government data
    # =========================================================================
    "landregistry.gov.uk": SiteTerms(
        domain="landregistry.gov.uk",
        scraping=Permission.RESTRICTED,
        commercial_use=Permission.ALLOWED,
        restrictions=(
            "Must comply with Open Government Licence v3.0",
            "Attribution required: Crown copyright",
            "Bulk downloads require separate agreement",
        ),
        attribution="Crown copyright and database rights",
        api_url="https://landregistry.data.gov.uk/",
        notes=("Price Paid Data available under OGL", "Title register data requires payment"),
        last_checked=date(2024, 1, 1),
    ),
    "epc.opendatacommunities.org": SiteTerms(
        domain="epc.opendatacommunities.org",
        scraping=Permission.ALLOWED,
        restrictions=("Open Government Licence v3.0", "No warranty provided"),
        attribution="Contains public sector information licensed under the Open Government Licence v3.0",
        api_url="https://epc.opendatacommunities.org/docs/api",
        notes=("Bulk downloads available", "Rate limits apply to API"),
        last_checked=date(2024, 1, 1),
    ),
    "police.uk": SiteTerms(
        domain="police.uk",
        scraping=Permission.ALLOWED,
        restrictions=("Open Government Licence v3.0", "Data may be incomplete"),
        attribution="Contains public sector information licensed under the Open Government Licence v3.0",
        api_url="https://data.police.uk/docs/",
        notes=("API preferred over scraping", "Monthly data updates"),
        last_checked=date(2024, 1, 1),
    ),

    # =========================================================================
    # Prohibited (API only)
    # =========================================================================
    "tfl.gov.uk": SiteTerms(
        domain="tfl.gov.uk",
        scraping=Permission.PROHIBITED,
        commercial_use=Permission.RESTRICTED,
        restrictions=("Must register for API access", "Rate limits apply", "No service guarantee"),
        attribution="Powered by TfL Open Data",
        license_required=True,
        api_url="https://api.tfl.gov.uk/",
        contact_email="opendata@tfl.gov.uk",
        notes=("API key required", "Must use API instead of scraping"),
        last_checked=date(2024, 1, 1),
    ),
}

COUNCIL_NAMES = (
    "barnet", "brent", "camden", "ealing", "harrow", "westminster",
    "lbhf", "rbkc", "hillingdon", "hounslow",
)


def domain_of(url_or_domain: str) -> str:
    """Lowercase host without `www.`; accepts URLs or bare domains."""
    host = urlparse(url_or_domain).netloc if "://" in url_or_domain else url_or_domain
    host = host.split(":")[0].lower()
    return host[4:] if host.startswith("www.") else host


def is_council_domain(domain: str) -> bool:
    return domain.endswith(".gov.uk") and (
        "council" in domain
        or "borough" in domain
        or any(name in domain for name in COUNCIL_NAMES)
    )


class TermsRegistry:
    """
    Lookup of site terms by domain.

    Example:
        registry = TermsRegistry()
        decision = registry.decide("https://tfl.gov.uk/status")
        decision.outcome   # TermsOutcome.PROHIBITED
    """

    def __init__(self, extra_terms: Optional[Iterable[SiteTerms]] = None):
        self._terms: Dict[str, SiteTerms] = dict(KNOWN_SITE_TERMS)
        for terms in extra_terms or ():
            self.add_site_terms(terms)

    def add_site_terms(self, terms: SiteTerms) -> None:
        domain = domain_of(terms.domain)
        self._terms[domain] = replace(terms, domain=domain, last_checked=terms.last_checked or date.today())
        logger.debug(f"Registered terms for {domain}: scraping={terms.scraping.value}")

    def get_site_terms(self, url_or_domain: str) -> Optional[SiteTerms]:
        return self._terms.get(domain_of(url_or_domain))

    def validate(self, url: str) -> TermsResult:
        domain = domain_of(url)
        terms = self._terms.get(domain)
        if terms is not None:
            return TermsResult(
                compliant=terms.scraping != Permission.PROHIBITED,
                restrictions=list(terms.restrictions),
                notes=list(terms.notes),
                scraping_allowed=terms.scraping == Permission.ALLOWED,
                commercial_use_allowed=terms.commercial_use != Permission.PROHIBITED,
                requires_attribution=bool(terms.attribution),
                requires_license=terms.license_required,
                api_available=bool(terms.api_url),
                api_url=terms.api_url,
                contact_required=bool(terms.contact_email),
            )

        if is_council_domain(domain):
            return TermsResult(
                compliant=True,
                restrictions=[
                    "Council data typically under Open Government Licence",
                    "Planning data is public record",
                ],
                notes=[f"Check https://{domain}/terms for specific terms"],
                scraping_allowed=True,
                commercial_use_allowed=True,
                requires_attribution=True,
            )

        return TermsResult(
            compliant=True,
            restrictions=["Terms of service should be reviewed manually"],
            notes=["Unable to automatically validate terms", "Manual review recommended before scraping"],
            manual_review=True,
        )

    def decide(self, url: str) -> TermsDecision:
        result = self.validate(url)
        if not result.compliant:
            return TermsDecision(
                outcome=TermsOutcome.PROHIBITED,
                reason="Scraping not allowed by terms of service",
                alternatives=(
                    [f"Use official API instead: {result.api_url}"]
                    if result.api_available
                    else ["Contact site owner for permission"]
                ),
            )
        if result.api_available and not result.scraping_allowed:
            return TermsDecision(
                outcome=TermsOutcome.USE_API,
                reason="API available and should be used instead of scraping",
                alternatives=[f"Register for API access: {result.api_url}"],
            )
        if result.contact_required:
            return TermsDecision(
                outcome=TermsOutcome.CONTACT_REQUIRED,
                reason="Contact required before automated access",
                alternatives=["Send request to site owner"],
            )
        return TermsDecision(outcome=TermsOutcome.PROCEED, reason="Compliant with terms of service")

    def validate_many(self, urls: Iterable[str]) -> Dict[str, Any]:
        results = []
        counts = {outcome: 0 for outcome in TermsOutcome}
        for url in urls:
            decision = self.decide(url)
            counts[decision.outcome] += 1
            results.append({"url": url, "decision": decision.outcome.value, "reason": decision.reason})

        return {
            "compliant": counts[TermsOutcome.PROHIBITED] == 0,
            "results": results,
            "summary": {
                "total": len(results),
                "compliant": counts[TermsOutcome.PROCEED],
                "require_api": counts[TermsOutcome.USE_API],
                "prohibited": counts[TermsOutcome.PROHIBITED],
            },
        }
