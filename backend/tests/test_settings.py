"""
Tests for environment settings and YAML source/compliance configuration.
"""

from datetime import date

import pytest

from planning_scrapers.errors import ConfigurationError
from planning_scrapers.settings import (
    Settings,
    load_compliance_config,
    load_source_configs,
    load_yaml,
)
from planning_scrapers.sources import COUNCIL_SOURCE_IDS


SOURCES_YAML = """
defaults:
  max_retries: 4
  page_concurrency: 6

sources:
  barnet:
    name: Barnet
    base_url: https://publicaccess.barnet.gov.uk/online-applications
  camden:
    name: Camden
    base_url: https://planningrecords.camden.gov.uk
    layout: card
    rate_limit: 2
    parallel_pages: 3
"""


def write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


class TestSettingsFromEnv:
    def test_defaults(self):
        settings = Settings.from_env(environ={})
        assert settings.enabled
        assert settings.respect_robots
        assert not settings.use_proxy
        assert settings.min_ethical_score == 80
        assert settings.sources_config_path.endswith("sources.yaml")

    def test_overrides(self):
        settings = Settings.from_env(environ={
            "SCRAPER_ENABLED": "false",
            "SCRAPER_USE_PROXY": "true",
            "SCRAPER_MIN_ETHICAL_SCORE": "90",
            "SCRAPER_ROBOTS_TTL_HOURS": "1.5",
            "SCRAPER_CONTACT_EMAIL": "ops@council-data.org",
            "SCRAPER_USER_AGENT": "Custom/1.0",
        })
        assert not settings.enabled
        assert settings.use_proxy
        assert settings.min_ethical_score == 90
        assert settings.robots_ttl_hours == 1.5
        assert settings.contact_email == "ops@council-data.org"
        assert settings.user_agent == "Custom/1.0"

    def test_invalid_number_falls_back(self):
        settings = Settings.from_env(environ={"SCRAPER_MIN_ETHICAL_SCORE": "high"})
        assert settings.min_ethical_score == 80

    @pytest.mark.parametrize("value,expected", [("0", False), ("no", False), ("off", False), ("1", True), ("", True)])
    def test_bool_parsing(self, value, expected):
        assert Settings.from_env(environ={"SCRAPER_ENABLED": value}).enabled is expected

    def test_default_from_date(self):
        settings = Settings(default_lookback_days=7)
        assert settings.default_from_date(today=date(2024, 6, 8)) == date(2024, 6, 1)


class TestLoadSourceConfigs:
    def test_defaults_merged_and_aliases_accepted(self, tmp_path):
        settings = Settings(sources_config_path=write(tmp_path, "sources.yaml", SOURCES_YAML))

        configs = {c.source_id: c for c in load_source_configs(settings, environ={})}

        assert list(configs) == ["barnet", "camden"]
        assert configs["barnet"].max_retries == 4
        assert configs["barnet"].page_concurrency == 6
        assert configs["camden"].layout == "card"
        assert configs["camden"].requests_per_second == 2
        assert configs["camden"].page_concurrency == 3

    def test_env_override_replaces_alias(self, tmp_path):
        settings = Settings(sources_config_path=write(tmp_path, "sources.yaml", SOURCES_YAML))

        configs = load_source_configs(settings, environ={
            "SCRAPER_CAMDEN_RATE_LIMIT": "0.5",
            "SCRAPER_BARNET_MAX_RETRIES": "1",
        })

        by_id = {c.source_id: c for c in configs}
        assert by_id["camden"].requests_per_second == 0.5
        assert by_id["barnet"].max_retries == 1

    def test_user_agent_setting_applies_to_every_source(self, tmp_path):
        settings = Settings(
            sources_config_path=write(tmp_path, "sources.yaml", SOURCES_YAML),
            user_agent="Custom/1.0",
        )
        assert {c.user_agent for c in load_source_configs(settings, environ={})} == {"Custom/1.0"}

    def test_missing_file_gives_no_sources(self, tmp_path):
        settings = Settings(sources_config_path=str(tmp_path / "missing.yaml"))
        assert load_source_configs(settings, environ={}) == []

    def test_invalid_source_rejected(self, tmp_path):
        text = "sources:\n  bad:\n    name: Bad\n    base_url: not-a-url\n"
        settings = Settings(sources_config_path=write(tmp_path, "sources.yaml", text))
        with pytest.raises(ConfigurationError):
            load_source_configs(settings, environ={})

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_yaml(write(tmp_path, "broken.yaml", "sources: [unclosed"))

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_yaml(write(tmp_path, "list.yaml", "- a\n- b\n"))

    def test_shipped_config_covers_ten_councils(self):
        configs = load_source_configs(Settings(), environ={})
        assert sorted(c.source_id for c in configs) == sorted(COUNCIL_SOURCE_IDS)


class TestLoadComplianceConfig:
    def test_sections(self, tmp_path):
        text = (
            "terms:\n  - domain: example.com\n    scraping: prohibited\n"
            "consents:\n  - domain: agentsite.co.uk\n    consent_type: explicit\n"
        )
        settings = Settings(compliance_config_path=write(tmp_path, "compliance.yaml", text))

        compliance = load_compliance_config(settings)

        assert compliance["terms"][0]["domain"] == "example.com"
        assert compliance["consents"][0]["domain"] == "agentsite.co.uk"
        assert compliance["proxies"] == []
        assert compliance["government_suffixes"] is None

    def test_missing_file_is_empty(self, tmp_path):
        settings = Settings(compliance_config_path=str(tmp_path / "none.yaml"))
        assert load_compliance_config(settings)["terms"] == []
