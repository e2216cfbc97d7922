"""
Source registry - builds CouncilSource objects from configuration.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional

from ..errors import ConfigurationError, UnknownSourceError
from ..models import SourceConfig
from .base import CouncilSource
from .layouts import get_layout

logger = logging.getLogger(__name__)

# The ten council portals covered by the default sources.yaml.
COUNCIL_SOURCE_IDS = (
    "barnet", "brent", "camden", "ealing", "harrow",
    "westminster", "hammersmith", "kensington", "hillingdon", "hounslow",
)


def build_source(config: SourceConfig, client_factory: Callable[[SourceConfig], object]) -> CouncilSource:
    try:
        layout = get_layout(config.layout)
    except KeyError as e:
        raise ConfigurationError(str(e), source_id=config.source_id) from e
    return CouncilSource(config, layout, client_factory(config))


def build_sources(
    configs: Iterable[SourceConfig],
    client_factory: Callable[[SourceConfig], object],
    only: Optional[Iterable[str]] = None,
) -> Dict[str, CouncilSource]:
    """
    Build sources keyed by source_id, preserving config order.

    Args:
        configs: Source configurations
        client_factory: Creates the per-source GatedClient
        only: Restrict to these source ids
    """
    configs = list(configs)
    if only is not None:
        wanted = list(only)
        known = {c.source_id for c in configs}
        unknown = [s for s in wanted if s not in known]
        if unknown:
            raise UnknownSourceError(f"Unknown source(s): {', '.join(unknown)}. Known: {sorted(known)}")
        configs = [c for c in configs if c.source_id in wanted]

    sources = {config.source_id: build_source(config, client_factory) for config in configs}
    missing = [s for s in COUNCIL_SOURCE_IDS if s not in sources]
    if only is None and missing:
        logger.warning(f"No configuration for council source(s): {', '.join(missing)}")
    return sources


def list_source_ids(configs: Iterable[SourceConfig]) -> List[str]:
    return [c.source_id for c in configs]
