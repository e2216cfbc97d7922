"""
Portal layouts - the HTML knowledge for each council portal family.

A PortalLayout is a bundle of CSS selectors and small parsing functions.
CouncilSource is written once and takes a layout, so supporting another
portal means adding a layout here rather than another scraper class.

Families:
- idox: Idox Public Access (`search.do` / `applicationDetails.do`)
- card: card or table result lists used by bespoke portals
"""
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Pattern, Tuple
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from ..errors import ParsingError
from ..models import RawRow

logger = logging.getLogger(__name__)

RowParser = Callable[[Tag, str], RawRow]
DetailParser = Callable[[BeautifulSoup], RawRow]


@dataclass(frozen=True)
class PortalLayout:
    """Selectors and parsers for one portal family."""
    name: str
    row_selector: str
    parse_row: RowParser
    parse_detail: DetailParser
    container_selector: str
    pagination_selector: str
    result_count_selector: str
    page_link_selector: str
    page_count_patterns: Tuple[Pattern, ...] = (
        re.compile(r"page\s+\d+\s+of\s+(\d+)", re.I),
    )
    result_count_patterns: Tuple[Pattern, ...] = (
        re.compile(r"of\s+([\d,]+)\s+(?:results?|applications?)", re.I),
        re.compile(r"([\d,]+)\s+(?:results?|applications?)(?:\s+found)?", re.I),
    )
    page_link_pattern: Pattern = re.compile(r"[?&](?:page|searchCriteria\.page)=(\d+)", re.I)
    no_results_pattern: Pattern = re.compile(
        r"no\s+(?:results|applications|records|matching)", re.I
    )
    skip_row_selector: Optional[str] = "th"

    # =========================================================================
    # Page structure
    # =========================================================================

    def rows(self, soup: BeautifulSoup) -> List[Tag]:
        rows = soup.select(self.row_selector)
        if self.skip_row_selector:
            rows = [row for row in rows if row.select_one(self.skip_row_selector) is None]
        return rows

    def has_results_container(self, soup: BeautifulSoup) -> bool:
        return soup.select_one(self.container_selector) is not None

    def says_no_results(self, soup: BeautifulSoup) -> bool:
        return bool(self.no_results_pattern.search(soup.get_text(" ", strip=True)))

    # =========================================================================
    # Pagination discovery
    # =========================================================================

    def explicit_page_count(self, soup: BeautifulSoup) -> Optional[int]:
        text = _text_of(soup, self.pagination_selector)
        for pattern in self.page_count_patterns:
            match = pattern.search(text)
            if match:
                return int(match.group(1))
        return None

    def result_count(self, soup: BeautifulSoup) -> Optional[int]:
        text = _text_of(soup, self.result_count_selector)
        for pattern in self.result_count_patterns:
            match = pattern.search(text)
            if match:
                return int(match.group(1).replace(",", ""))
        return None

    def max_page_link(self, soup: BeautifulSoup) -> Optional[int]:
        pages = []
        for link in soup.select(self.page_link_selector):
            match = self.page_link_pattern.search(link.get("href") or "")
            if match:
                pages.append(int(match.group(1)))
            elif link.get_text(strip=True).isdigit():
                pages.append(int(link.get_text(strip=True)))
        return max(pages) if pages else None


# =============================================================================
# Helpers
# =============================================================================

def _text_of(soup: BeautifulSoup, selector: str) -> str:
    return " ".join(el.get_text(" ", strip=True) for el in soup.select(selector))


def _first_text(tag: Tag, selector: str) -> Optional[str]:
    el = tag.select_one(selector)
    if el is None:
        return None
    text = el.get_text(" ", strip=True)
    return text or None


# Label keyword -> RawRow field. Checked in order; first field set wins.
LABEL_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("decision_date", ("decision issued", "decision date", "date of decision", "decided date")),
    ("received_date", ("received",)),
    ("validated_date", ("validated", "valid date", "date valid")),
    ("reference", ("reference", "ref no", "ref.", "case number", "application number")),
    ("address", ("address", "location", "site")),
    ("proposal", ("proposal", "description", "development")),
    ("decision", ("decision",)),
    ("status", ("status",)),
    ("case_officer", ("officer",)),
    ("ward", ("ward",)),
)


def label_pairs(soup: BeautifulSoup) -> List[Tuple[str, str]]:
    """(label, value) pairs from th/td table rows and dt/dd lists."""
    pairs = []
    for row in soup.select("tr"):
        th, td = row.find("th"), row.find("td")
        if th is not None and td is not None:
            pairs.append((th.get_text(" ", strip=True), td.get_text(" ", strip=True)))
    for dt in soup.select("dt"):
        dd = dt.find_next_sibling("dd")
        if dd is not None:
            pairs.append((dt.get_text(" ", strip=True), dd.get_text(" ", strip=True)))
    return pairs


def fields_from_labels(pairs: List[Tuple[str, str]]) -> RawRow:
    row: RawRow = {}
    for label, value in pairs:
        label = label.lower().rstrip(":").strip()
        if not value:
            continue
        for field_name, keywords in LABEL_FIELDS:
            if field_name not in row and any(k in label for k in keywords):
                row[field_name] = value
                break
    # A decision ("Grant Permission") says more than a bare status ("Decided").
    decision = row.pop("decision", None)
    if decision:
        row["status"] = decision
    return row


def _parse_meta_info(text: str) -> RawRow:
    """Idox metaInfo: 'Ref. No: 22/1234/FUL | Received: ... | Status: ...'."""
    pairs = []
    for part in text.split("|"):
        if ":" in part:
            label, value = part.split(":", 1)
            pairs.append((label.strip(), value.strip()))
    return fields_from_labels(pairs)


# =============================================================================
# Idox Public Access
# =============================================================================

def parse_idox_row(row: Tag, base_url: str) -> RawRow:
    link = row.select_one('a[href*="applicationDetails"]') or row.select_one("a[href]")
    href = urljoin(base_url + "/", link["href"]) if link is not None and link.get("href") else None

    meta = row.select_one(".metaInfo")
    if meta is not None:
        # List layout: link text is the proposal, reference lives in metaInfo.
        parsed = _parse_meta_info(meta.get_text(" ", strip=True))
        parsed["address"] = _first_text(row, ".address")
        parsed["proposal"] = link.get_text(" ", strip=True) if link is not None else None
        parsed["url"] = href
        return parsed

    cells = row.find_all("td")
    if len(cells) < 2:
        raise ParsingError(f"Unexpected Idox result row with {len(cells)} cell(s)")
    reference = link.get_text(" ", strip=True) if link is not None else cells[0].get_text(" ", strip=True)
    return {
        "reference": reference,
        "address": cells[1].get_text(" ", strip=True),
        "proposal": cells[2].get_text(" ", strip=True) if len(cells) > 2 else None,
        "status": cells[3].get_text(" ", strip=True) if len(cells) > 3 else None,
        "received_date": cells[4].get_text(" ", strip=True) if len(cells) > 4 else None,
        "url": href,
    }


def parse_idox_detail(soup: BeautifulSoup) -> RawRow:
    table = soup.select_one("#simpleDetailsTable") or soup
    row = fields_from_labels(label_pairs(table))
    # Older Idox skins expose each field by id.
    for field_name, selector in (
        ("reference", "#caseNumber"),
        ("address", "#address, .address"),
        ("proposal", "#proposal"),
        ("status", "#caseStatus"),
        ("received_date", "#dateReceived"),
        ("validated_date", "#dateValid"),
        ("decision_date", "#dateDecision"),
        ("case_officer", "#caseOfficer"),
        ("ward", "#ward"),
    ):
        if not row.get(field_name):
            row[field_name] = _first_text(soup, selector)
    return row


IDOX_LAYOUT = PortalLayout(
    name="idox",
    row_selector="#searchresults li.searchresult, #searchresults tr, .searchresults tr, li.searchresult",
    parse_row=parse_idox_row,
    parse_detail=parse_idox_detail,
    container_selector="#searchresults, .searchresults, #searchResultsContainer",
    pagination_selector=".pager, .paging, .pagination, .showing",
    result_count_selector=".pager, .showing, #searchResultsContainer .messagebox, .searchResults",
    page_link_selector=".pager a, .paging a, .pagination a",
)


# =============================================================================
# Card / table portals
# =============================================================================

CARD_FIELD_SELECTORS: Dict[str, str] = {
    "reference": ".reference, .app-ref, .application-reference, .ref",
    "address": ".address, .location",
    "proposal": ".proposal, .description",
    "status": ".status, .decision",
    "received_date": ".date-received, .received-date, .received",
    "validated_date": ".date-validated, .validated-date",
    "decision_date": ".decision-date, .date-decided",
}


def parse_card_row(row: Tag, base_url: str) -> RawRow:
    link = row.select_one("a[href]")
    href = urljoin(base_url + "/", link["href"]) if link is not None else None

    if row.name == "tr":
        cells = row.find_all("td")
        if len(cells) < 2:
            raise ParsingError(f"Unexpected result row with {len(cells)} cell(s)")
        texts = [c.get_text(" ", strip=True) for c in cells]
        return {
            "reference": texts[0],
            "address": texts[1],
            "proposal": texts[2] if len(texts) > 2 else None,
            "status": texts[3] if len(texts) > 3 else None,
            "received_date": texts[4] if len(texts) > 4 else None,
            "url": href,
        }

    parsed: RawRow = {name: _first_text(row, selector) for name, selector in CARD_FIELD_SELECTORS.items()}
    if not parsed["reference"] and link is not None:
        parsed["reference"] = _reference_from_href(link.get("href", "")) or link.get_text(" ", strip=True)
    if not any(parsed.values()):
        pairs = fields_from_labels(label_pairs(row))
        parsed.update({k: v for k, v in pairs.items() if v})
    parsed["url"] = href
    return parsed


def _reference_from_href(href: str) -> Optional[str]:
    query = parse_qs(urlparse(href).query)
    for key in ("reference", "ref", "id", "keyVal"):
        if query.get(key):
            return query[key][0]
    return None


def parse_card_detail(soup: BeautifulSoup) -> RawRow:
    row = fields_from_labels(label_pairs(soup))
    for field_name, selector in CARD_FIELD_SELECTORS.items():
        if not row.get(field_name):
            row[field_name] = _first_text(soup, selector)
    return row


CARD_LAYOUT = PortalLayout(
    name="card",
    row_selector=(
        ".result-item, .planning-app, .planning-application, .planning-result, "
        ".search-result, .application-summary, .application-item, .planning-item, "
        "table.results tbody tr, .applications-table tr, .planning-table tr"
    ),
    parse_row=parse_card_row,
    parse_detail=parse_card_detail,
    container_selector=".search-results, .results, table.results, #results, .applications-table",
    pagination_selector=".pagination, .pager, .pagination-info, .page-info",
    result_count_selector=(
        ".results-summary, .search-results-count, .results-info, .pagination-info, "
        ".pagination-summary, .results-count, .page-info"
    ),
    page_link_selector=".pagination a, .pager a",
)


LAYOUTS: Dict[str, PortalLayout] = {
    IDOX_LAYOUT.name: IDOX_LAYOUT,
    CARD_LAYOUT.name: CARD_LAYOUT,
}


def get_layout(name: str) -> PortalLayout:
    try:
        return LAYOUTS[name]
    except KeyError:
        raise KeyError(f"Unknown portal layout '{name}'. Known: {sorted(LAYOUTS)}") from None


def estimate_pages(result_count: int, per_page: int) -> int:
    return math.ceil(result_count / per_page) if result_count > 0 else 0
