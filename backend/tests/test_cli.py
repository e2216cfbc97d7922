"""
Tests for the click CLI, driven through CliRunner with an injected context.
"""

import json

from click.testing import CliRunner

from cli import cli
from planning_scrapers import Settings, build_context
from planning_scrapers.sinks import MemoryRecordSink

from fakes import FakeFetcher, make_config


def invoke(context, *args):
    return CliRunner().invoke(cli, list(args), obj=context)


def json_from(output):
    """The JSON document printed by --json, skipping any log lines before it."""
    return json.loads(output[output.index("{\n"):])


class TestListSources:
    def test_lists_configured_sources(self, scrape_context):
        result = invoke(scrape_context, "list-sources")
        assert result.exit_code == 0
        assert "testboro" in result.output
        assert "https://planning.testboro.gov.uk/online-applications" in result.output


class TestRunCommands:
    def test_run_all_json(self, scrape_context):
        result = invoke(scrape_context, "run-all", "--from-date", "2024-01-01", "--json")

        assert result.exit_code == 0
        report = json_from(result.output)
        assert report["status"] == "success"
        assert report["total_records"] == 3
        assert report["sources"][0]["pages_discovered"] == 2
        assert len(scrape_context.sink.all_records()) == 3

    def test_run_source_text_report(self, scrape_context):
        result = invoke(scrape_context, "run-source", "testboro", "--from-date", "2024-01-01")
        assert result.exit_code == 0
        assert "PLANNING SCRAPE REPORT (SUCCESS)" in result.output
        assert "Status: success (exit 0)" in result.output

    def test_unknown_source_exit_code(self, scrape_context):
        result = invoke(scrape_context, "run-source", "atlantis")
        assert result.exit_code == 4

    def test_partial_exit_code(self, scrape_context):
        # page 2 stops answering
        scrape_context.fetcher.responses.pop(
            "https://planning.testboro.gov.uk/online-applications/search.do"
            "?action=advanced&dateFrom=2024-01-01&page=2"
        )
        result = invoke(scrape_context, "run-all", "--from-date", "2024-01-01", "--json")
        assert result.exit_code == 2
        assert json_from(result.output)["page_failures"] == 1

    def test_disabled_exits_cleanly(self, tmp_path):
        context = build_context(
            settings=Settings(enabled=False, output_path=str(tmp_path / "r.jsonl")),
            fetcher=FakeFetcher(),
            sink=MemoryRecordSink(),
            source_configs=[make_config()],
        )
        result = invoke(context, "run-all")
        assert result.exit_code == 0
        assert "[DISABLED]" in result.output
        assert context.fetcher.calls == []


class TestEnrich:
    def test_enrich_json(self, scrape_context):
        result = invoke(scrape_context, "enrich", "testboro", "24/0001/FUL", "--json")

        assert result.exit_code == 0
        payload = json_from(result.output)
        assert payload["records"][0]["reference"] == "24/0001/FUL"
        assert payload["records"][0]["status"] == "approved"

    def test_enrich_missing_reference_fails(self, scrape_context):
        result = invoke(scrape_context, "enrich", "testboro", "24/9999/FUL")
        assert result.exit_code == 1
        assert "dropped" in result.output


class TestCompliance:
    def test_check_url_allowed(self, scrape_context):
        result = invoke(scrape_context, "check-url", "https://planning.testboro.gov.uk/online-applications/search.do")
        assert result.exit_code == 0
        assert "ALLOWED" in result.output

    def test_check_url_blocked(self, scrape_context):
        result = invoke(scrape_context, "check-url", "https://tfl.gov.uk/status")
        assert result.exit_code == 4
        assert "BLOCKED" in result.output
        assert "Terms of service prohibit scraping" in result.output

    def test_check_url_never_fetches_page(self, scrape_context):
        invoke(scrape_context, "check-url", "https://planning.testboro.gov.uk/online-applications/search.do")
        assert all(url.endswith("/robots.txt") for url in scrape_context.fetcher.calls)

    def test_consent_email(self, scrape_context):
        result = invoke(scrape_context, "consent-email", "agentsite.co.uk")
        assert result.exit_code == 0
        assert "agentsite.co.uk" in result.output
        assert scrape_context.identity.user_agent in result.output
