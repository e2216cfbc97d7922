"""
Tests for the background job entry points.
"""

import time
from datetime import date
from unittest.mock import MagicMock

import pytest

from planning_scrapers.errors import AlreadyRunningError, ConfigurationError
from planning_scrapers.jobs import handle_job, parse_from_date, start_background_run
from planning_scrapers.settings import Settings


def mock_context(enabled=True):
    context = MagicMock()
    context.settings = Settings(enabled=enabled)
    return context


class TestParseFromDate:
    def test_iso_string(self):
        assert parse_from_date("2024-03-01", date(2000, 1, 1)) == date(2024, 3, 1)

    def test_missing_uses_default(self):
        assert parse_from_date(None, date(2000, 1, 1)) == date(2000, 1, 1)
        assert parse_from_date("", date(2000, 1, 1)) == date(2000, 1, 1)

    def test_date_passthrough(self):
        assert parse_from_date(date(2024, 5, 5), date(2000, 1, 1)) == date(2024, 5, 5)

    def test_invalid(self):
        with pytest.raises(ConfigurationError):
            parse_from_date("last tuesday", date(2000, 1, 1))


class TestHandleJob:
    def test_single_source(self, scrape_context):
        result = handle_job(scrape_context, {"source_id": "testboro", "from_date": "2024-01-01"})

        assert result["status"] == "success"
        assert result["exit_code"] == 0
        assert result["total_records"] == 3
        assert result["source_id"] == "testboro"
        assert result["from_date"] == "2024-01-01"
        assert len(scrape_context.sink.all_records()) == 3

    def test_all_sources(self, scrape_context):
        result = handle_job(scrape_context, {"all": True, "from_date": "2024-01-01"})
        assert result["source_id"] == "all"
        assert result["total_records"] == 3

    def test_unknown_source_fails_cleanly(self, scrape_context):
        result = handle_job(scrape_context, {"source_id": "atlantis", "from_date": "2024-01-01"})
        assert result["status"] == "failed"
        assert result["exit_code"] == 4
        assert "atlantis" in result["error"]

    def test_disabled(self):
        context = mock_context(enabled=False)
        result = handle_job(context, {"source_id": "all"})
        assert result == {"status": "disabled", "exit_code": 0, "total_records": 0}
        context.coordinator.run_all.assert_not_called()

    def test_already_running(self):
        context = mock_context()
        context.coordinator.run_all.side_effect = AlreadyRunningError("A scrape run is already in progress")

        result = handle_job(context, {})

        assert result["status"] == "already_running"
        assert result["exit_code"] == 4

    def test_default_from_date(self):
        context = mock_context()
        context.coordinator.run_all.return_value.to_dict.return_value = {"status": "success"}

        handle_job(context, {"source_id": "all"})

        from_date = context.coordinator.run_all.call_args[0][0]
        assert from_date == context.settings.default_from_date()


class TestStartBackgroundRun:
    def test_runs_in_background(self, scrape_context):
        assert start_background_run(scrape_context, date(2024, 1, 1))

        deadline = time.monotonic() + 10
        while scrape_context.coordinator.get_status()["last_run_status"] is None:
            assert time.monotonic() < deadline, "background run did not finish"
            time.sleep(0.01)

        assert scrape_context.coordinator.get_status()["last_run_status"] == "success"
        assert len(scrape_context.sink.all_records()) == 3

    def test_skips_when_running(self):
        context = mock_context()
        context.coordinator.is_running = True
        assert start_background_run(context) is False
        context.coordinator.run_all.assert_not_called()
