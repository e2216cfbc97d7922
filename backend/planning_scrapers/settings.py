"""
Planning Scraper Settings - environment and YAML configuration

Environment Variables (a local .env file is loaded via python-dotenv):
    SCRAPER_ENABLED: 'true' (default) or 'false'
        Kill switch. When disabled, runs exit early without fetching.

    SCRAPER_SOURCES_CONFIG: path to sources YAML
        (default: backend/config/sources.yaml)

    SCRAPER_COMPLIANCE_CONFIG: path to compliance YAML
        (default: backend/config/compliance.yaml)

    SCRAPER_USER_AGENT: overrides the generated identifying User-Agent
    SCRAPER_BOT_NAME, SCRAPER_CONTACT_EMAIL, SCRAPER_WEBSITE, SCRAPER_PURPOSE:
        identification sent with every request

    SCRAPER_RESPECT_ROBOTS, SCRAPER_CHECK_TERMS, SCRAPER_REQUIRE_CONSENT:
        compliance checks, all 'true' by default
    SCRAPER_USE_PROXY: select egress from the proxy pool (default 'false')
    SCRAPER_MIN_ETHICAL_SCORE: proxy ethical threshold (default 80)
    SCRAPER_ROBOTS_TTL_HOURS: robots.txt cache lifetime (default 24)

    SCRAPER_OUTPUT_PATH: JSONL file records are appended to
    SCRAPER_DEFAULT_LOOKBACK_DAYS: from-date when none is given (default 7)

    Per-source overrides, e.g. for source_id 'barnet':
        SCRAPER_BARNET_RATE_LIMIT, SCRAPER_BARNET_MAX_RETRIES,
        SCRAPER_BARNET_TIMEOUT, SCRAPER_BARNET_PAGE_CONCURRENCY,
        SCRAPER_BARNET_DETAIL_CONCURRENCY
"""
import logging
import os
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError
from .models import SourceConfig

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent.parent / "config"

# Env suffix -> SourceConfig field
SOURCE_ENV_OVERRIDES = {
    "RATE_LIMIT": "requests_per_second",
    "MAX_RETRIES": "max_retries",
    "TIMEOUT": "timeout_seconds",
    "PAGE_CONCURRENCY": "page_concurrency",
    "DETAIL_CONCURRENCY": "detail_concurrency",
}

# YAML may use the short alias; an env override must replace it.
FIELD_ALIASES = {
    "requests_per_second": "rate_limit",
    "timeout_seconds": "timeout",
    "page_concurrency": "parallel_pages",
    "detail_concurrency": "parallel_details",
}


# =============================================================================
# Env parsing
# =============================================================================

def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    value = env.get(key)
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("false", "0", "no", "off", "disabled")


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    try:
        return int(env.get(key, default))
    except (TypeError, ValueError):
        logger.warning(f"Invalid {key}={env.get(key)!r}, defaulting to {default}")
        return default


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    try:
        return float(env.get(key, default))
    except (TypeError, ValueError):
        logger.warning(f"Invalid {key}={env.get(key)!r}, defaulting to {default}")
        return default


@dataclass(frozen=True)
class Settings:
    """Process-level settings, read once at start-up."""
    enabled: bool = True
    sources_config_path: str = str(CONFIG_DIR / "sources.yaml")
    compliance_config_path: str = str(CONFIG_DIR / "compliance.yaml")

    user_agent: Optional[str] = None
    bot_name: str = "PlanningScrapers"
    contact_email: str = "data@planning-scrapers.example.org"
    website: str = "https://planning-scrapers.example.org"
    purpose: str = "Public Data Aggregation"

    respect_robots: bool = True
    check_terms: bool = True
    require_consent: bool = True
    use_proxy: bool = False
    min_ethical_score: int = 80
    robots_ttl_hours: float = 24.0

    output_path: str = "data/planning_records.jsonl"
    default_lookback_days: int = 7

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "Settings":
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ
        env = environ
        defaults = cls()

        enabled = _get_bool(env, "SCRAPER_ENABLED", True)
        if not enabled:
            logger.warning("Planning scrapers are DISABLED via SCRAPER_ENABLED=false")

        return cls(
            enabled=enabled,
            sources_config_path=env.get("SCRAPER_SOURCES_CONFIG") or defaults.sources_config_path,
            compliance_config_path=env.get("SCRAPER_COMPLIANCE_CONFIG") or defaults.compliance_config_path,
            user_agent=env.get("SCRAPER_USER_AGENT") or None,
            bot_name=env.get("SCRAPER_BOT_NAME") or defaults.bot_name,
            contact_email=env.get("SCRAPER_CONTACT_EMAIL") or defaults.contact_email,
            website=env.get("SCRAPER_WEBSITE") or defaults.website,
            purpose=env.get("SCRAPER_PURPOSE") or defaults.purpose,
            respect_robots=_get_bool(env, "SCRAPER_RESPECT_ROBOTS", True),
            check_terms=_get_bool(env, "SCRAPER_CHECK_TERMS", True),
            require_consent=_get_bool(env, "SCRAPER_REQUIRE_CONSENT", True),
            use_proxy=_get_bool(env, "SCRAPER_USE_PROXY", False),
            min_ethical_score=_get_int(env, "SCRAPER_MIN_ETHICAL_SCORE", defaults.min_ethical_score),
            robots_ttl_hours=_get_float(env, "SCRAPER_ROBOTS_TTL_HOURS", defaults.robots_ttl_hours),
            output_path=env.get("SCRAPER_OUTPUT_PATH") or defaults.output_path,
            default_lookback_days=_get_int(env, "SCRAPER_DEFAULT_LOOKBACK_DAYS", defaults.default_lookback_days),
        )

    def default_from_date(self, today: Optional[date] = None) -> date:
        return (today or date.today()) - timedelta(days=self.default_lookback_days)


# =============================================================================
# YAML loading
# =============================================================================

def load_yaml(path: str) -> Optional[Dict[str, Any]]:
    """Load a YAML mapping, or None if the file does not exist."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Config not found at {path}")
        return None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a mapping at the top of {path}")
    logger.info(f"Loaded config from {path}")
    return data


def _apply_env_overrides(source: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    prefix = f"SCRAPER_{source['source_id'].upper()}_"
    for suffix, field_name in SOURCE_ENV_OVERRIDES.items():
        value = env.get(prefix + suffix)
        if value:
            source.pop(FIELD_ALIASES.get(field_name, ""), None)
            source[field_name] = value
            logger.info(f"[{source['source_id']}] {field_name} overridden from {prefix + suffix}")
    return source


def load_source_configs(
    settings: Settings,
    environ: Optional[Mapping[str, str]] = None,
) -> List[SourceConfig]:
    """
    Build SourceConfig objects from the sources YAML.

    The `defaults` mapping is merged under each entry in `sources`, then
    per-source environment overrides are applied.
    """
    env = os.environ if environ is None else environ
    data = load_yaml(settings.sources_config_path)
    if data is None:
        return []

    defaults = data.get("defaults") or {}
    configs: List[SourceConfig] = []
    seen = set()
    for source_id, entry in (data.get("sources") or {}).items():
        merged = {**defaults, **(entry or {}), "source_id": source_id}
        if settings.user_agent:
            merged["user_agent"] = settings.user_agent
        merged = _apply_env_overrides(merged, env)
        if source_id in seen:
            raise ConfigurationError(f"Duplicate source id {source_id}")
        seen.add(source_id)
        configs.append(SourceConfig.from_dict(merged))

    logger.info(f"Configured {len(configs)} planning source(s)")
    return configs


def load_compliance_config(settings: Settings) -> Dict[str, Any]:
    """Compliance YAML sections: terms, consents, proxies, government_suffixes."""
    data = load_yaml(settings.compliance_config_path) or {}
    return {
        "terms": data.get("terms") or [],
        "consents": data.get("consents") or [],
        "proxies": data.get("proxies") or [],
        "government_suffixes": data.get("government_suffixes") or None,
    }
