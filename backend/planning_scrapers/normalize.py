"""
Planning Record Normalization
=============================

All parsing of scraped council text into typed values happens here.

Usage:
    from planning_scrapers.normalize import normalize_status, build_record

    status = normalize_status("Application Permitted")   # PlanningStatus.APPROVED
    record = build_record(row, source_id="barnet", canonical_url=url)
    if record is None:
        ...  # row had no reference, discard
"""
import logging
import re
from datetime import date
from typing import Optional, Tuple, Union

from dateutil import parser as date_parser

from .models import PlanningStatus, RawRow, Record

logger = logging.getLogger(__name__)


# =============================================================================
# Status
# =============================================================================

# Checked in order; the first group with a matching keyword wins.
STATUS_KEYWORDS: Tuple[Tuple[PlanningStatus, Tuple[str, ...]], ...] = (
    (PlanningStatus.APPEAL, ("appeal",)),
    (PlanningStatus.WITHDRAWN, ("withdraw",)),
    (PlanningStatus.INVALID, ("invalid", "incomplete")),
    (PlanningStatus.REFUSED, ("refus", "reject", "dismiss", "declin")),
    (PlanningStatus.APPROVED, ("approv", "grant", "permit", "consent", "allowed")),
    (PlanningStatus.PENDING, (
        "pending", "submitted", "registered", "received", "awaiting",
        "consultation", "under consideration", "in progress", "validated",
        "current", "undecided",
    )),
)

_STATUS_VALUES = {status.value: status for status in PlanningStatus}


def normalize_status(text: Union[str, PlanningStatus, None]) -> PlanningStatus:
    """
    Map free-form council status text to PlanningStatus.

    Total (every input maps to a member, UNKNOWN by default) and idempotent
    (normalize_status(normalize_status(s)) == normalize_status(s)).
    """
    if isinstance(text, PlanningStatus):
        return text
    if text is None:
        return PlanningStatus.UNKNOWN

    lowered = str(text).strip().lower()
    if not lowered:
        return PlanningStatus.UNKNOWN
    if lowered in _STATUS_VALUES:
        return _STATUS_VALUES[lowered]

    for status, keywords in STATUS_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return status
    return PlanningStatus.UNKNOWN


# =============================================================================
# Text and slugs
# =============================================================================

_WHITESPACE = re.compile(r"\s+")


def clean_text(value: Optional[str]) -> str:
    """Collapse runs of whitespace and strip. None becomes ''."""
    if value is None:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def slugify(text: str) -> str:
    """Lowercase, hyphen-separated, word characters only."""
    slug = str(text).lower().strip()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^\w\-]+", "", slug)
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def slugify_planning_reference(reference: str, address: str) -> str:
    """
    Slug from a planning reference plus the first line of its address.

    "22/1234/FUL", "12 High Street, London" -> "22-1234-ful-12-high-street"
    """
    ref_part = reference.replace("/", "-")
    address_part = (address or "").split(",")[0]
    return slugify(f"{ref_part}-{address_part}")


# =============================================================================
# Dates
# =============================================================================

def parse_date(value: Optional[str]) -> Optional[date]:
    """
    Parse a UK-formatted date ("03/04/2024", "Wed 03 Apr 2024").

    Returns None for empty or unparseable input rather than raising;
    a bad date never discards a row.
    """
    text = clean_text(value)
    if not text or text.lower() in ("n/a", "na", "-", "not available"):
        return None
    try:
        return date_parser.parse(text, dayfirst=True, fuzzy=True).date()
    except (ValueError, OverflowError) as e:
        logger.debug(f"Unparseable date {text!r}: {e}")
        return None


# =============================================================================
# Records
# =============================================================================

def build_record(row: RawRow, source_id: str, canonical_url: str = "") -> Optional[Record]:
    """
    Normalize one raw row into a Record.

    Returns None when the row has no reference; such rows cannot be tracked
    and are discarded by the caller.
    """
    reference = clean_text(row.get("reference"))
    if not reference:
        return None

    address = clean_text(row.get("address"))
    return Record(
        reference=reference,
        address=address,
        proposal=clean_text(row.get("proposal")),
        status=normalize_status(row.get("status")),
        source_id=source_id,
        slug=slugify_planning_reference(reference, address),
        canonical_url=canonical_url or clean_text(row.get("url")),
        received_date=parse_date(row.get("received_date")),
        validated_date=parse_date(row.get("validated_date")),
        decision_date=parse_date(row.get("decision_date")),
        case_officer=clean_text(row.get("case_officer")) or None,
        ward=clean_text(row.get("ward")) or None,
    )
