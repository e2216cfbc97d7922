"""Council planning sources: one generic source, many portal layouts."""

from .base import CouncilSource, PageDiscovery, Source
from .layouts import CARD_LAYOUT, IDOX_LAYOUT, PortalLayout, get_layout
from .registry import COUNCIL_SOURCE_IDS, build_source, build_sources

__all__ = [
    "CARD_LAYOUT",
    "COUNCIL_SOURCE_IDS",
    "CouncilSource",
    "IDOX_LAYOUT",
    "PageDiscovery",
    "PortalLayout",
    "Source",
    "build_source",
    "build_sources",
    "get_layout",
]
