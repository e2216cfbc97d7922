"""
Background job entry points.

A queue worker calls handle_job() with a payload such as:

    {"source_id": "barnet", "from_date": "2024-01-01"}
    {"source_id": "all"}

start_background_run() kicks off a full run in a daemon thread and returns
immediately, or returns False if a run is already in progress.
"""
import logging
import threading
from datetime import date
from typing import Any, Dict, Mapping, Optional

from dateutil import parser as date_parser

from .errors import AlreadyRunningError, ConfigurationError, ScraperError
from .orchestrator import BLOCKED_EXIT_CODE

logger = logging.getLogger(__name__)

ALL_SOURCES = "all"


def parse_from_date(value: Any, default: date) -> date:
    if value is None or value == "":
        return default
    if isinstance(value, date):
        return value
    try:
        return date_parser.isoparse(str(value)).date()
    except (ValueError, OverflowError) as e:
        raise ConfigurationError(f"Invalid from_date {value!r}: {e}") from e


def handle_job(context, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Run one scrape job.

    Args:
        context: ScrapeContext from build_context()
        payload: {"source_id": str | "all", "from_date": ISO date, optional}

    Returns:
        Summary dict with status, exit_code and total_records
    """
    settings = context.settings
    if not settings.enabled:
        logger.warning("Scrape job skipped: scrapers disabled")
        return {"status": "disabled", "exit_code": 0, "total_records": 0}

    source_id = ALL_SOURCES if payload.get("all") else (payload.get("source_id") or ALL_SOURCES)
    from_date = parse_from_date(payload.get("from_date"), settings.default_from_date())
    logger.info(f"Scrape job received: source={source_id} from_date={from_date.isoformat()}")

    try:
        if source_id == ALL_SOURCES:
            report = context.coordinator.run_all(from_date)
        else:
            report = context.coordinator.run_source(source_id, from_date)
    except AlreadyRunningError as e:
        logger.warning(f"Scrape job rejected: {e}")
        return {"status": "already_running", "exit_code": BLOCKED_EXIT_CODE, "total_records": 0, "error": str(e)}
    except ScraperError as e:
        logger.error(f"Scrape job failed: {e}")
        return {"status": "failed", "exit_code": BLOCKED_EXIT_CODE, "total_records": 0, "error": str(e)}

    result = report.to_dict()
    result["source_id"] = source_id
    result["from_date"] = from_date.isoformat()
    return result


def start_background_run(context, from_date: Optional[date] = None) -> bool:
    """
    Run all sources in a daemon thread.

    Returns:
        True if the run was started, False if one is already in progress
    """
    coordinator = context.coordinator
    if coordinator.is_running:
        logger.info("Planning scrape already in progress, skipping")
        return False

    from_date = from_date or context.settings.default_from_date()

    def _run():
        try:
            report = coordinator.run_all(from_date)
            logger.info(f"Background planning scrape finished: {report.status.value}")
        except AlreadyRunningError:
            logger.info("Planning scrape already in progress, skipping")
        except Exception as e:
            logger.exception(f"Background planning scrape failed: {e}")

    thread = threading.Thread(target=_run, name="planning-scrape", daemon=True)
    thread.start()
    logger.info(f"Started background planning scrape from {from_date.isoformat()}")
    return True
