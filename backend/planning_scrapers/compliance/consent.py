"""
Scraping Consent Tracker

Government domains (.gov.uk, .nhs.uk, .police.uk, .mod.uk) publish under the
Open Government Licence and never need explicit consent. Every other domain
needs a granted, unexpired consent record before automated collection.

Consent requests sent out-of-band are tracked here; approving a request
records consent for its domain.
"""
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

GOVERNMENT_SUFFIXES: Tuple[str, ...] = (".gov.uk", ".nhs.uk", ".police.uk", ".mod.uk")
NON_COMMERCIAL_SUFFIXES: Tuple[str, ...] = (".org", ".ac.uk", ".edu")
STALE_REQUEST_DAYS = 30


class ConsentType(str, Enum):
    EXPLICIT = "explicit"
    IMPLICIT = "implicit"
    TOS = "tos"
    ROBOTS = "robots"
    API_TERMS = "api-terms"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    NO_RESPONSE = "no-response"


@dataclass
class ConsentRecord:
    domain: str
    consent_type: ConsentType
    granted: bool
    granted_at: datetime = field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None
    scope: List[str] = field(default_factory=list)
    restrictions: List[str] = field(default_factory=list)
    reference: Optional[str] = None
    notes: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at < (now or datetime.now())

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.granted and not self.is_expired(now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsentRecord":
        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            domain=normalize_domain(data["domain"]),
            consent_type=ConsentType(data.get("consent_type", "explicit")),
            granted=bool(data.get("granted", True)),
            expires_at=expires_at,
            scope=list(data.get("scope") or []),
            restrictions=list(data.get("restrictions") or []),
            reference=data.get("reference"),
            notes=data.get("notes"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["consent_type"] = self.consent_type.value
        data["granted_at"] = self.granted_at.isoformat()
        data["expires_at"] = self.expires_at.isoformat() if self.expires_at else None
        return data


@dataclass
class ConsentRequest:
    id: str
    domain: str
    contact_method: str
    requested_at: datetime = field(default_factory=datetime.now)
    status: RequestStatus = RequestStatus.PENDING
    responded_at: Optional[datetime] = None
    response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain,
            "contact_method": self.contact_method,
            "requested_at": self.requested_at.isoformat(),
            "status": self.status.value,
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
            "response": self.response,
        }


@dataclass
class ConsentRequirement:
    required: bool
    reason: str
    method: Optional[str] = None


# Public-data licences recorded up front.
DEFAULT_CONSENTS: Tuple[Dict[str, Any], ...] = (
    {
        "domain": "landregistry.gov.uk",
        "consent_type": "tos",
        "scope": ["price-paid-data", "transaction-data"],
        "restrictions": ["Attribution required", "OGL v3.0 compliance"],
        "reference": "Open Government Licence v3.0",
    },
    {
        "domain": "epc.opendatacommunities.org",
        "consent_type": "tos",
        "scope": ["energy-certificates"],
        "restrictions": ["Rate limiting required"],
        "reference": "Open Government Licence v3.0",
    },
    {
        "domain": "police.uk",
        "consent_type": "api-terms",
        "scope": ["crime-statistics"],
        "restrictions": ["Use API instead of scraping"],
        "reference": "Police API Terms",
    },
)


def normalize_domain(domain: str) -> str:
    domain = domain.strip().lower().rstrip("/")
    return domain[4:] if domain.startswith("www.") else domain


def is_government_domain(domain: str, suffixes: Tuple[str, ...] = GOVERNMENT_SUFFIXES) -> bool:
    return normalize_domain(domain).endswith(suffixes)


def is_commercial_domain(domain: str, suffixes: Tuple[str, ...] = GOVERNMENT_SUFFIXES) -> bool:
    domain = normalize_domain(domain)
    return not is_government_domain(domain, suffixes) and not domain.endswith(NON_COMMERCIAL_SUFFIXES)


class ConsentTracker:
    """Thread-safe store of consent records and consent requests."""

    def __init__(
        self,
        records: Optional[Iterable[ConsentRecord]] = None,
        government_suffixes: Tuple[str, ...] = GOVERNMENT_SUFFIXES,
        include_defaults: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.government_suffixes = tuple(government_suffixes)
        self._clock = clock
        self._lock = threading.Lock()
        self._consents: Dict[str, ConsentRecord] = {}
        self._requests: Dict[str, ConsentRequest] = {}

        if include_defaults:
            for data in DEFAULT_CONSENTS:
                record = ConsentRecord.from_dict(data)
                self._consents[record.domain] = record
        for record in records or ():
            self._consents[normalize_domain(record.domain)] = record

    # =========================================================================
    # Consent records
    # =========================================================================

    def has_consent(self, domain: str) -> bool:
        with self._lock:
            record = self._consents.get(normalize_domain(domain))
            return record is not None and record.is_valid(self._clock())

    def get_consent(self, domain: str) -> Optional[ConsentRecord]:
        with self._lock:
            return self._consents.get(normalize_domain(domain))

    def add_consent(self, record: ConsentRecord) -> None:
        record.domain = normalize_domain(record.domain)
        with self._lock:
            self._consents[record.domain] = record
        self._log_change(record, "added")

    def revoke_consent(self, domain: str, reason: Optional[str] = None) -> bool:
        with self._lock:
            record = self._consents.get(normalize_domain(domain))
            if record is None:
                return False
            record.granted = False
            record.notes = reason or "Consent revoked"
        self._log_change(record, "revoked")
        return True

    def is_consent_required(self, domain: str) -> ConsentRequirement:
        domain = normalize_domain(domain)
        if is_government_domain(domain, self.government_suffixes):
            return ConsentRequirement(False, "Government data under Open Government Licence")
        if self.has_consent(domain):
            return ConsentRequirement(False, "Consent already obtained")
        if is_commercial_domain(domain, self.government_suffixes):
            return ConsentRequirement(True, "Commercial website requires explicit consent", "email")
        return ConsentRequirement(True, "Best practice to obtain consent", "email")

    # =========================================================================
    # Consent requests
    # =========================================================================

    def track_request(self, domain: str, method: str = "email") -> str:
        request = ConsentRequest(
            id=f"req_{uuid.uuid4().hex[:12]}",
            domain=normalize_domain(domain),
            contact_method=method,
            requested_at=self._clock(),
        )
        with self._lock:
            self._requests[request.id] = request
        logger.info(f"Consent request {request.id} sent to {request.domain} via {method}")
        return request.id

    def update_request_status(
        self,
        request_id: str,
        status: RequestStatus,
        response: Optional[str] = None,
        valid_for_days: Optional[int] = None,
    ) -> Optional[ConsentRequest]:
        status = RequestStatus(status)
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                logger.warning(f"Unknown consent request {request_id}")
                return None
            request.status = status
            request.responded_at = self._clock()
            if response:
                request.response = response

        if status == RequestStatus.APPROVED:
            now = self._clock()
            self.add_consent(ConsentRecord(
                domain=request.domain,
                consent_type=ConsentType.EXPLICIT,
                granted=True,
                granted_at=now,
                expires_at=now + timedelta(days=valid_for_days) if valid_for_days else None,
                reference=f"Request {request_id}",
            ))
        return request

    def generate_consent_email(
        self,
        domain: str,
        identity=None,
        purpose: str = "planning application data aggregation",
    ) -> str:
        """Plain-text consent request for a site's data controller."""
        bot = getattr(identity, "user_agent", "PlanningScrapers/1.0")
        contact = getattr(identity, "contact_email", "data@example.org")
        website = getattr(identity, "website", "")
        return (
            f"Subject: Request for Data Collection Permission\n\n"
            f"Dear {domain} Data Controller,\n\n"
            f"We would like to collect publicly available planning information from {domain} "
            f"for {purpose}{f' at {website}' if website else ''}.\n\n"
            f"Our commitments:\n"
            f"- Respect robots.txt directives\n"
            f"- Rate limit all automated requests\n"
            f"- Provide clear attribution\n"
            f"- Comply with your terms of service\n\n"
            f"Technical details:\n"
            f"- User Agent: {bot}\n"
            f"- Expected frequency: daily, rate limited\n"
            f"- Contact: {contact}\n\n"
            f"If you offer an API we would prefer to use it instead. If you would rather we did "
            f"not access your site, reply and we will exclude {domain} immediately.\n"
        )

    def compliance_report(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            consents = list(self._consents.values())
            requests = list(self._requests.values())

        pending = [r for r in requests if r.status == RequestStatus.PENDING]
        issues = []
        expired = [c for c in consents if c.is_expired(now)]
        if expired:
            issues.append(f"{len(expired)} consent(s) have expired")
        stale = [r for r in pending if now - r.requested_at > timedelta(days=STALE_REQUEST_DAYS)]
        if stale:
            issues.append(f"{len(stale)} consent request(s) pending for over {STALE_REQUEST_DAYS} days")

        granted = [c for c in consents if c.granted]
        return {
            "summary": {
                "total_domains": len(consents),
                "consented_domains": len(granted),
                "pending_requests": len(pending),
                "denied_domains": len(consents) - len(granted),
            },
            "consents": [c.to_dict() for c in consents],
            "requests": [r.to_dict() for r in requests],
            "compliance": {
                "percentage": (len(granted) / len(consents) * 100) if consents else 100.0,
                "issues": issues,
            },
        }

    def _log_change(self, record: ConsentRecord, action: str) -> None:
        logger.info(
            f"Consent {action}: domain={record.domain} granted={record.granted} "
            f"reference={record.reference}"
        )
