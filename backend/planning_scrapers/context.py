"""
Scrape context - the wired object graph for one process.

Everything that was module-level state in older scrapers (rate limiters,
robots cache, consent records, proxy pool) lives on a ScrapeContext built
once at start-up and passed to the coordinator, CLI and job handler.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .compliance import (
    AgentIdentity,
    ComplianceGateway,
    ConsentRecord,
    ConsentTracker,
    ProxyEntry,
    ProxyPool,
    RobotsChecker,
    SiteTerms,
    TermsRegistry,
)
from .fetcher import Fetcher, GatedClient, HttpFetcher
from .models import SourceConfig
from .orchestrator import ScrapeCoordinator, SourceRunner
from .settings import Settings, load_compliance_config, load_source_configs
from .sinks import JsonlRecordSink, NullCacheInvalidator
from .sources import CouncilSource, build_sources

logger = logging.getLogger(__name__)


@dataclass
class ScrapeContext:
    """Shared services for a scrape process."""
    settings: Settings
    fetcher: Fetcher
    identity: AgentIdentity
    gateway: ComplianceGateway
    source_configs: List[SourceConfig]
    clients: Dict[str, GatedClient] = field(default_factory=dict)
    sources: Dict[str, CouncilSource] = field(default_factory=dict)
    runners: Dict[str, SourceRunner] = field(default_factory=dict)
    coordinator: Optional[ScrapeCoordinator] = None
    sink: object = None
    cache_invalidator: object = None

    @property
    def source_ids(self) -> List[str]:
        return list(self.sources)

    def client_for(self, config: SourceConfig) -> GatedClient:
        client = self.clients.get(config.source_id)
        if client is None:
            client = GatedClient(config, self.fetcher, self.gateway, use_proxy=self.settings.use_proxy)
            self.clients[config.source_id] = client
        return client

    def get_status(self) -> Dict:
        return {
            "enabled": self.settings.enabled,
            "coordinator": self.coordinator.get_status() if self.coordinator else None,
            "clients": {sid: c.get_status() for sid, c in self.clients.items()},
            "robots_cache": self.gateway.robots.cache_info(),
        }


def build_identity(settings: Settings) -> AgentIdentity:
    return AgentIdentity(
        bot_name=settings.bot_name,
        website=settings.website,
        contact_email=settings.contact_email,
        purpose=settings.purpose,
        user_agent_override=settings.user_agent,
    )


def build_gateway(settings: Settings, fetcher: Fetcher, identity: AgentIdentity) -> ComplianceGateway:
    """Compliance gateway from settings plus the compliance YAML."""
    compliance = load_compliance_config(settings)

    terms = TermsRegistry(SiteTerms.from_dict(t) for t in compliance["terms"])
    consent_kwargs = {}
    if compliance["government_suffixes"]:
        consent_kwargs["government_suffixes"] = tuple(compliance["government_suffixes"])
    consent = ConsentTracker(
        records=[ConsentRecord.from_dict(c) for c in compliance["consents"]],
        **consent_kwargs,
    )
    proxies = ProxyPool(
        [ProxyEntry.from_dict(p) for p in compliance["proxies"]],
        min_ethical_score=settings.min_ethical_score,
    )
    robots = RobotsChecker(
        fetcher,
        agent=identity.robots_token,
        headers=identity.headers(),
        ttl_seconds=settings.robots_ttl_hours * 3600,
    )
    return ComplianceGateway(
        robots,
        terms,
        consent,
        identity,
        proxies=proxies,
        respect_robots=settings.respect_robots,
        check_terms=settings.check_terms,
        require_consent=settings.require_consent,
    )


def build_context(
    settings: Optional[Settings] = None,
    fetcher: Optional[Fetcher] = None,
    sink=None,
    cache_invalidator=None,
    source_configs: Optional[List[SourceConfig]] = None,
) -> ScrapeContext:
    """
    Wire settings, compliance, sources, runners and the coordinator.

    Args:
        settings: Defaults to Settings.from_env()
        fetcher: Defaults to an HttpFetcher over a requests.Session
        sink: Defaults to a JsonlRecordSink at settings.output_path
        cache_invalidator: Defaults to NullCacheInvalidator
        source_configs: Defaults to the sources YAML
    """
    settings = settings or Settings.from_env()
    fetcher = fetcher or HttpFetcher()
    identity = build_identity(settings)
    gateway = build_gateway(settings, fetcher, identity)
    if source_configs is None:
        source_configs = load_source_configs(settings)

    context = ScrapeContext(
        settings=settings,
        fetcher=fetcher,
        identity=identity,
        gateway=gateway,
        source_configs=list(source_configs),
        sink=sink if sink is not None else JsonlRecordSink(settings.output_path),
        cache_invalidator=cache_invalidator if cache_invalidator is not None else NullCacheInvalidator(),
    )
    context.sources = build_sources(context.source_configs, context.client_for)
    context.runners = {
        source_id: SourceRunner(source, gateway=gateway)
        for source_id, source in context.sources.items()
    }
    context.coordinator = ScrapeCoordinator(
        context.runners.values(),
        sink=context.sink,
        cache_invalidator=context.cache_invalidator,
    )
    logger.info(
        f"Scrape context ready: {len(context.sources)} source(s), "
        f"user agent {identity.user_agent!r}"
    )
    return context
