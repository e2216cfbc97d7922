#!/usr/bin/env python3
"""
CLI for the Planning Scrapers

Commands:
    run-all        - Scrape every configured council source in parallel
    run-source     - Scrape one council source
    enrich         - Fetch full details for specific application references
    check-url      - Show the compliance decision for a URL (no page fetch)
    consent-email  - Print a consent request email for a domain
    list-sources   - List configured sources and their limits

Usage:
    python cli.py run-all --from-date 2024-01-01
    python cli.py run-all --sources barnet,camden --json
    python cli.py run-source barnet
    python cli.py enrich barnet 24/1234/FUL 24/1235/HSE
    python cli.py check-url https://publicaccess.barnet.gov.uk/online-applications/
    python cli.py consent-email example.com

Exit codes:
    0: Success
    1: Failed (no source produced records)
    2: Partial (some sources or pages failed)
    3: Cancelled (Ctrl-C)
    4: Blocked by compliance policy, or bad arguments
"""

import json
import logging
import signal
import sys
from contextlib import contextmanager

import click

from planning_scrapers import build_context
from planning_scrapers.errors import ScraperError
from planning_scrapers.orchestrator import BLOCKED_EXIT_CODE


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    # Reduce noise from libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_context(ctx):
    """ScrapeContext for this invocation; tests pass one in via obj=."""
    if ctx.obj is None:
        ctx.obj = build_context()
    return ctx.obj


@contextmanager
def cancel_on_interrupt(coordinator):
    """Route Ctrl-C to cooperative cancellation for the duration of a run."""
    def handler(signum, frame):
        click.secho("\nInterrupt received - cancelling (in-flight requests will finish)...", fg="yellow", err=True)
        coordinator.cancel("interrupted (SIGINT)")

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not on the main thread (e.g. CliRunner in a worker): no handler.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _from_date(context, value):
    return value.date() if value else context.settings.default_from_date()


def _exit_if_disabled(context):
    if not context.settings.enabled:
        click.secho("[DISABLED] Scrapers are disabled via SCRAPER_ENABLED=false", fg="yellow")
        sys.exit(0)


def _print_report(report, output_json):
    if output_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
        return
    color = {"success": "green", "partial": "yellow", "cancelled": "yellow"}.get(report.status.value, "red")
    click.echo(report.format_report())
    click.secho(f"Status: {report.status.value} (exit {report.exit_code})", fg=color, bold=True)


def _run(context, source_ids, from_date, output_json):
    coordinator = context.coordinator
    try:
        with cancel_on_interrupt(coordinator):
            report = coordinator.run_all(from_date, source_ids=source_ids)
    except ScraperError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(BLOCKED_EXIT_CODE)
    _print_report(report, output_json)
    sys.exit(report.exit_code)


@click.group()
@click.version_option(version="1.0.0", prog_name="planning-scrapers")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, verbose):
    """Planning Scrapers CLI - parallel, compliance-gated council portal scraping."""
    configure_logging(verbose)


@cli.command("run-all")
@click.option("--from-date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Applications received on or after this date (default: lookback window)")
@click.option("--sources", default=None, help="Comma-separated source ids (default: all)")
@click.option("--json", "output_json", is_flag=True, help="Output report as JSON")
@click.pass_context
def run_all(ctx, from_date, sources, output_json):
    """Scrape every configured council source in parallel."""
    context = get_context(ctx)
    _exit_if_disabled(context)
    source_ids = [s.strip() for s in sources.split(",") if s.strip()] if sources else None
    from_date = _from_date(context, from_date)

    if not output_json:
        click.echo(f"Scraping {len(source_ids or context.source_ids)} source(s) from {from_date.isoformat()}...")
        click.echo()
    _run(context, source_ids, from_date, output_json)


@cli.command("run-source")
@click.argument("source_id")
@click.option("--from-date", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Applications received on or after this date (default: lookback window)")
@click.option("--json", "output_json", is_flag=True, help="Output report as JSON")
@click.pass_context
def run_source(ctx, source_id, from_date, output_json):
    """
    Scrape one council source.

    SOURCE_ID: Configured source id (see list-sources)
    """
    context = get_context(ctx)
    _exit_if_disabled(context)
    _run(context, [source_id], _from_date(context, from_date), output_json)


@cli.command("enrich")
@click.argument("source_id")
@click.argument("references", nargs=-1, required=True)
@click.option("--json", "output_json", is_flag=True, help="Output records as JSON")
@click.pass_context
def enrich(ctx, source_id, references, output_json):
    """
    Fetch full details for application references.

    SOURCE_ID: Configured source id
    REFERENCES: One or more application references
    """
    context = get_context(ctx)
    _exit_if_disabled(context)
    try:
        with cancel_on_interrupt(context.coordinator):
            result = context.coordinator.enrich(source_id, references)
    except ScraperError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(BLOCKED_EXIT_CODE)

    if output_json:
        payload = {**result.to_dict(), "records": [r.to_dict() for r in result.records]}
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        click.secho(f"{result.name}: {result.record_count}/{len(references)} enriched", fg="cyan", bold=True)
        for record in result.records:
            click.echo(f"  {record.reference:<20} {record.status.value:<10} {record.address}")
        for reference, error in result.failed_items:
            click.secho(f"  {reference:<20} dropped: {error}", fg="yellow")
        for reason in result.blocked_reasons:
            click.secho(f"  blocked: {reason}", fg="red")

    status = result.status.value
    if status == "blocked":
        sys.exit(BLOCKED_EXIT_CODE)
    sys.exit({"completed": 0, "failed": 1, "partial": 2, "cancelled": 3}[status])


@cli.command("check-url")
@click.argument("url")
@click.option("--rate", type=float, default=None, help="Declared requests/second to cap by crawl-delay")
@click.pass_context
def check_url(ctx, url, rate):
    """
    Show the compliance decision for URL without fetching the page.

    Only robots.txt may be fetched.
    """
    context = get_context(ctx)
    decision = context.gateway.evaluate(url, declared_rate_limit=rate)

    click.echo("=" * 60)
    if decision.allowed:
        click.secho(f"ALLOWED ({decision.method.value})", fg="green", bold=True)
    else:
        click.secho(f"BLOCKED ({decision.method.value})", fg="red", bold=True)
    click.echo("=" * 60)
    click.echo(f"URL: {decision.url}")
    for reason in decision.reasons:
        click.echo(f"  Reason:      {reason}")
    for warning in decision.warnings:
        click.secho(f"  Warning:     {warning}", fg="yellow")
    for alternative in decision.alternatives or []:
        click.echo(f"  Alternative: {alternative}")
    if decision.effective_rate_limit is not None:
        click.echo(f"  Rate limit:  {decision.effective_rate_limit:g} req/s")
    if decision.proxy:
        click.echo(f"  Proxy:       {decision.proxy}")

    sys.exit(0 if decision.allowed else BLOCKED_EXIT_CODE)


@cli.command("consent-email")
@click.argument("domain")
@click.option("--purpose", default="planning application data aggregation", help="Stated purpose")
@click.pass_context
def consent_email(ctx, domain, purpose):
    """Print a consent request email for DOMAIN."""
    context = get_context(ctx)
    consent = context.gateway.consent
    requirement = consent.is_consent_required(domain)
    if not requirement.required:
        click.secho(f"Note: consent is not required for {domain} ({requirement.reason})", fg="yellow", err=True)
    click.echo(consent.generate_consent_email(domain, identity=context.identity, purpose=purpose))


@cli.command("list-sources")
@click.pass_context
def list_sources(ctx):
    """List configured sources and their limits."""
    context = get_context(ctx)
    click.echo(f"{'SOURCE':<14} {'LAYOUT':<6} {'RPS':>5} {'PAGES':>5} {'DETAIL':>6}  BASE URL")
    for config in context.source_configs:
        click.echo(
            f"{config.source_id:<14} {config.layout:<6} {config.requests_per_second:>5g} "
            f"{config.page_concurrency:>5} {config.detail_concurrency:>6}  {config.base_url}"
        )


if __name__ == "__main__":
    cli()
