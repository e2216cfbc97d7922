"""
Council Source - one implementation for every council portal.

A source is a SourceConfig (URLs, limits, concurrency) plus a PortalLayout
(selectors and parsers), talking to the network through a GatedClient.
Orchestration lives in SourceRunner; a source only knows how to read pages.

Operations:
- discover_page_count(from_date): how many result pages to fetch
- fetch_page(from_date, page_number): raw rows from one results page
- fetch_detail(reference): one full Record, or None if unparseable
- normalize_status(text): free text -> PlanningStatus
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Protocol, Tuple
from urllib.parse import quote, urlencode

from bs4 import BeautifulSoup

from ..errors import ComplianceBlockedError, ParsingError, ScraperError
from ..models import PlanningStatus, RawRow, Record, SourceConfig
from ..normalize import build_record, normalize_status
from ..retry import RetryPolicy, retry_with_backoff
from .layouts import PortalLayout, estimate_pages

logger = logging.getLogger(__name__)

# Exceptions a malformed row can raise inside a layout parser.
ROW_PARSE_ERRORS = (ParsingError, AttributeError, IndexError, KeyError, TypeError, ValueError)


@dataclass(frozen=True)
class PageDiscovery:
    """How many pages to fetch and how that number was found."""
    page_count: int
    method: str  # explicit | result_count | page_links | visible_rows | empty | fallback

    @property
    def is_fallback(self) -> bool:
        return self.method == "fallback"


class Source(Protocol):
    source_id: str
    config: SourceConfig

    def discover_page_count(self, from_date: date) -> int: ...

    def fetch_page(self, from_date: date, page_number: int) -> List[RawRow]: ...

    def fetch_detail(self, reference: str) -> Optional[Record]: ...

    def normalize_status(self, text: Optional[str]) -> PlanningStatus: ...

    def normalize_rows(self, rows: List[RawRow]) -> Tuple[List[Record], int]: ...


class CouncilSource:
    """
    Generic council portal source.

    Example:
        source = CouncilSource(config, get_layout("idox"), client)
        pages = source.discover_page_count(date(2024, 1, 1))
        rows = source.fetch_page(date(2024, 1, 1), 1)
        records, discarded = source.normalize_rows(rows)
    """

    def __init__(
        self,
        config: SourceConfig,
        layout: PortalLayout,
        client,
        today=date.today,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config
        self.layout = layout
        self.client = client
        self._today = today
        self.retry_policy = retry_policy or RetryPolicy.from_source_config(config)

    @property
    def source_id(self) -> str:
        return self.config.source_id

    @property
    def name(self) -> str:
        return self.config.name

    def __repr__(self) -> str:
        return f"CouncilSource({self.source_id!r}, layout={self.layout.name!r})"

    # =========================================================================
    # URLs
    # =========================================================================

    def search_url(self, from_date: date, page_number: int) -> str:
        values = {
            "from_date": from_date.isoformat(),
            "to_date": self._today().isoformat(),
            "page": page_number,
            "per_page": self.config.results_per_page,
        }
        params = {key: str(value).format(**values) for key, value in self.config.search_params.items()}
        base = f"{self.config.base_url.rstrip('/')}/{self.config.search_path.lstrip('/')}"
        return f"{base}?{urlencode(params)}" if params else base

    def detail_url(self, reference: str) -> str:
        path = self.config.detail_path.format(reference=quote(reference, safe=""))
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    # =========================================================================
    # Fetching
    # =========================================================================

    def _get_soup(self, url: str) -> BeautifulSoup:
        response = self.client.get(url)
        if not response.ok:
            raise ParsingError(f"HTTP {response.status_code} for {url}", source_id=self.source_id)
        return BeautifulSoup(response.text, "html.parser")

    def discover(self, from_date: date) -> PageDiscovery:
        """
        Inspect the first results page to decide how many pages exist.

        Order: explicit "Page x of N" indicator, visible result count,
        highest pagination link, rows on the first page. The first page is
        retried like any other request; only when retries run out or the
        page is unreadable does discovery fall back to `default_page_count`,
        which may under-cover.
        """
        url = self.search_url(from_date, 1)
        get_first_page = retry_with_backoff(policy=self.retry_policy)(self._get_soup)
        try:
            soup = get_first_page(url)
        except ComplianceBlockedError:
            raise
        except ScraperError as e:
            logger.warning(
                f"[{self.name}] Page discovery failed ({e}); "
                f"assuming {self.config.default_page_count} pages"
            )
            return PageDiscovery(self.config.default_page_count, "fallback")

        cap = self.config.max_pages
        explicit = self.layout.explicit_page_count(soup)
        if explicit is not None:
            return PageDiscovery(min(explicit, cap), "explicit")

        count = self.layout.result_count(soup)
        if count is not None:
            return PageDiscovery(min(estimate_pages(count, self.config.results_per_page), cap), "result_count")

        last_link = self.layout.max_page_link(soup)
        if last_link is not None:
            return PageDiscovery(min(last_link, cap), "page_links")

        rows = self.layout.rows(soup)
        if rows:
            return PageDiscovery(min(estimate_pages(len(rows), self.config.results_per_page), cap), "visible_rows")

        if self.layout.has_results_container(soup) or self.layout.says_no_results(soup):
            return PageDiscovery(0, "empty")

        logger.warning(
            f"[{self.name}] No pagination markup recognised at {url}; "
            f"assuming {self.config.default_page_count} pages"
        )
        return PageDiscovery(self.config.default_page_count, "fallback")

    def discover_page_count(self, from_date: date) -> int:
        return self.discover(from_date).page_count

    def fetch_page(self, from_date: date, page_number: int) -> List[RawRow]:
        """
        Fetch and parse one results page.

        Malformed rows are skipped. A page with no recognisable results
        markup at all raises ParsingError so the page counts as failed.
        """
        url = self.search_url(from_date, page_number)
        soup = self._get_soup(url)
        rows = self.layout.rows(soup)

        if not rows:
            if self.layout.has_results_container(soup) or self.layout.says_no_results(soup):
                return []
            raise ParsingError(
                f"Unrecognised results page {page_number} at {url}", source_id=self.source_id
            )

        parsed: List[RawRow] = []
        for position, row in enumerate(rows):
            try:
                raw = self.layout.parse_row(row, self.config.base_url)
            except ROW_PARSE_ERRORS as e:
                logger.debug(f"[{self.name}] Skipping malformed row {position} on page {page_number}: {e}")
                continue
            parsed.append(raw)

        if parsed:
            logger.debug(f"[{self.name}] Page {page_number}: {len(parsed)} rows")
        return parsed

    def fetch_detail(self, reference: str) -> Optional[Record]:
        """
        Fetch one application's detail page.

        Returns None when the page cannot be parsed into a record. Network
        errors propagate so the caller's retry policy can handle them.
        """
        url = self.detail_url(reference)
        try:
            soup = self._get_soup(url)
            raw = self.layout.parse_detail(soup)
        except ComplianceBlockedError:
            raise
        except (ParsingError,) + ROW_PARSE_ERRORS as e:
            logger.warning(f"[{self.name}] Could not parse details for {reference}: {e}")
            return None

        if not raw.get("reference"):
            logger.warning(f"[{self.name}] Detail page for {reference} has no reference")
            return None
        return build_record(raw, self.source_id, canonical_url=url)

    # =========================================================================
    # Normalization
    # =========================================================================

    def normalize_status(self, text: Optional[str]) -> PlanningStatus:
        return normalize_status(text)

    def normalize_rows(self, rows: List[RawRow]) -> Tuple[List[Record], int]:
        """
        Convert raw rows to Records.

        Returns:
            (records, discarded) where discarded counts rows without a reference.
        """
        records: List[Record] = []
        discarded = 0
        for raw in rows:
            reference = raw.get("reference")
            canonical_url = self.detail_url(reference.strip()) if reference and reference.strip() else ""
            record = build_record(raw, self.source_id, canonical_url=canonical_url)
            if record is None:
                discarded += 1
                continue
            records.append(record)
        return records, discarded
