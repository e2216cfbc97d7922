"""
Root pytest configuration for backend tests.

Provides:
- backend/ on sys.path so `from planning_scrapers import ...` works
- Shared fixtures (fake fetcher, fake clock, source configs, gateway)
- A fully wired ScrapeContext over a fake Idox portal
"""

import sys
from pathlib import Path

# Add backend directory to Python path so imports like
# `from planning_scrapers.batch import ...` and `import cli` work
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

import pytest

from fakes import FakeClock, FakeFetcher, make_config, make_gateway, serve_idox_portal


@pytest.fixture
def fake_fetcher():
    """In-memory fetcher; unknown URLs return 404."""
    return FakeFetcher()


@pytest.fixture
def fake_clock():
    """Monotonic clock whose sleep() advances time instantly."""
    return FakeClock()


@pytest.fixture
def source_config():
    """Idox-style config with no retry delay so tests run fast."""
    return make_config()


@pytest.fixture
def gateway(fake_fetcher):
    """Compliance gateway over the fake fetcher (no robots.txt served)."""
    return make_gateway(fake_fetcher)


@pytest.fixture
def portal_fetcher():
    """FakeFetcher serving a two-page Idox portal (3 applications) for 2024-01-01."""
    fetcher = FakeFetcher()
    serve_idox_portal(fetcher)
    return fetcher


@pytest.fixture
def scrape_context(tmp_path, portal_fetcher):
    """ScrapeContext wired to the fake portal with an in-memory sink."""
    from planning_scrapers import Settings, build_context
    from planning_scrapers.sinks import MemoryRecordSink, NullCacheInvalidator

    settings = Settings(output_path=str(tmp_path / "records.jsonl"))
    return build_context(
        settings=settings,
        fetcher=portal_fetcher,
        sink=MemoryRecordSink(),
        cache_invalidator=NullCacheInvalidator(),
        source_configs=[make_config()],
    )
