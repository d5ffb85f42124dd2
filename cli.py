"""VerifyStream CLI: batch email verification against a remote API.

Commands:
  verify    Submit emails (file, --text or stdin) and follow the live stream
  watch     Follow an existing batch by polling its status
  batches   List running and recent batches with their names
  results   Show per-email results for a batch
  export    Download a batch export (all|valid|invalid|risky)
  stats     Show lifetime verification statistics
  rename    Set the display name of a batch
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import requests
from tqdm import tqdm

from engine import config
from engine.client import VerifierClient
from engine.errors import VerifyStreamError
from engine.extractor import extract_emails, read_email_source
from engine.listing import refresh_listing
from engine.models import Category, RunSnapshot, RunStatus, rate
from engine.orchestrator import BatchOrchestrator
from store.name_directory import NameDirectory
from store.results_api import ResultsApiClient

_ICONS = {"valid": "✓", "risky": "~", "invalid": "✗", "custom": "~"}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


def _make_client(obj: dict) -> VerifierClient:
    return VerifierClient(obj["api_url"], api_key=obj["api_key"])


def _make_results_api(obj: dict) -> ResultsApiClient:
    return ResultsApiClient(obj["api_url"], obj["api_key"])


def _make_names(obj: dict) -> NameDirectory:
    return NameDirectory(obj["names_path"])


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option("--api-url", default=config.API_BASE_URL, show_default=True, help="Verification API base URL")
@click.option("--api-key", default=config.API_KEY, help="API key sent as X-API-Key")
@click.option(
    "--names-path",
    type=click.Path(dir_okay=False),
    default=str(config.NAMES_PATH),
    show_default=True,
    help="Batch name directory file",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, api_url: str, api_key: str, names_path: str):
    """VerifyStream: stream and track batch email verification."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj.update(api_url=api_url.rstrip("/"), api_key=api_key, names_path=Path(names_path))


@main.command()
@click.argument("filepath", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--text", "-t", help="Emails pasted as free text")
@click.option("--name", "-n", default=None, help="Display name for the batch")
@click.option("--json-output", is_flag=True, help="Output the final snapshot as JSON")
@click.pass_obj
def verify(obj: dict, filepath: str, text: str, name: str, json_output: bool):
    """Submit emails for verification and follow the live result stream.

    Emails are extracted from FILEPATH, --text, or standard input, in that
    order of preference. Duplicates are removed before submission.
    """
    if filepath:
        emails = read_email_source(filepath)
    elif text:
        emails = extract_emails(text)
    else:
        emails = extract_emails(click.get_text_stream("stdin").read())

    if not emails:
        click.echo("Please provide emails to verify.")
        sys.exit(1)

    click.echo(f"Verifying {len(emails)} emails...")
    pbar = tqdm(total=len(emails), desc="Verifying", unit="email")

    def on_event(event: dict) -> None:
        kind = event["type"]
        if kind == "batch_started":
            snap = event["snapshot"]
            pbar.write(f"Batch verification started. Job ID: {snap.id} ({snap.display_name})")
        elif kind == "progress":
            pbar.update(1)
        elif kind in ("run_completed", "run_failed"):
            snap = event["snapshot"]
            pbar.n = min(snap.processed, pbar.total)
            pbar.refresh()

    async def run() -> RunSnapshot:
        async with _make_client(obj) as client:
            orchestrator = BatchOrchestrator(
                client,
                _make_names(obj),
                results_api=_make_results_api(obj),
                event_callback=on_event,
            )
            return await orchestrator.submit(emails, name=name)

    snapshot = asyncio.run(run())
    pbar.close()

    _output_snapshot(snapshot, json_output)
    if snapshot.status == RunStatus.failed:
        sys.exit(1)


@main.command()
@click.argument("batch_id")
@click.option("--total", type=int, default=0, help="Known email count, if any")
@click.option("--interval", type=float, default=config.POLL_INTERVAL_SECONDS, show_default=True,
              help="Seconds between status polls")
@click.option("--json-output", is_flag=True, help="Output the final snapshot as JSON")
@click.pass_obj
def watch(obj: dict, batch_id: str, total: int, interval: float, json_output: bool):
    """Follow an existing batch by polling its status until it completes."""
    click.echo(f"Connecting to verification status for batch {batch_id}...")
    pbar = tqdm(total=total or None, desc="Verifying", unit="email")

    def on_event(event: dict) -> None:
        snap = event["snapshot"]
        if event["type"] == "status_polled" and snap is not None:
            pbar.total = snap.total or None
            pbar.n = snap.processed
            pbar.set_postfix(status=event["status"])
            pbar.refresh()

    async def run() -> RunSnapshot:
        async with _make_client(obj) as client:
            orchestrator = BatchOrchestrator(
                client,
                _make_names(obj),
                results_api=_make_results_api(obj),
                event_callback=on_event,
                poll_interval=interval,
            )
            return await orchestrator.resume(batch_id, total=total)

    snapshot = asyncio.run(run())
    pbar.close()
    _output_snapshot(snapshot, json_output)
    if snapshot.status == RunStatus.failed:
        sys.exit(1)


@main.command()
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def batches(obj: dict, json_output: bool):
    """List running and recently completed batches."""
    names = _make_names(obj)
    results_api = _make_results_api(obj)

    async def run():
        async with _make_client(obj) as client:
            return await refresh_listing(results_api, names, client.fetch_status)

    try:
        listing = asyncio.run(run())
    except (VerifyStreamError, requests.RequestException) as e:
        click.echo(f"✗ Error fetching batches: {e}")
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(listing.model_dump(mode="json"), indent=2))
        return

    for title, rows in (("Running", listing.running), ("Recent", listing.recent)):
        click.echo(f"\n{title} batches ({len(rows)}):")
        if not rows:
            click.echo("  (none)")
        for b in rows:
            click.echo(
                f"  {b.name} [{b.id}] {b.date}  {b.processed}/{b.total} ({b.progress}%)"
                f"  valid={b.valid} invalid={b.invalid} risky={b.risky}  {b.status}"
            )


@main.command()
@click.argument("batch_id")
@click.option("--category", type=click.Choice(config.EXPORT_CATEGORIES), default="all", show_default=True)
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def results(obj: dict, batch_id: str, category: str, json_output: bool):
    """Show per-email verification results for a batch."""
    try:
        details = _make_results_api(obj).get_batch_results(batch_id)
    except (VerifyStreamError, requests.RequestException) as e:
        click.echo(f"✗ Error fetching batch {batch_id}: {e}")
        sys.exit(1)

    rows = details.emails if category == "all" else details.by_category(Category(category))

    if json_output:
        payload = details.model_dump(mode="json", exclude={"email_results"})
        payload["emails"] = [r.model_dump(mode="json") for r in rows]
        click.echo(json.dumps(payload, indent=2))
        return

    name = _make_names(obj).resolve(batch_id)
    total = details.total_emails
    click.echo(f"\n{name} [{details.job_id}] {details.status}")
    click.echo(f"  Total:    {total}")
    for label, count in (
        ("Valid", details.results.valid),
        ("Invalid", details.results.invalid),
        ("Risky", details.results.folded_risky),
    ):
        click.echo(f"  {label + ':':9} {count} ({rate(count, total):.1f}%)")

    click.echo("")
    for r in rows:
        icon = _ICONS.get(r.category.value, "?")
        provider = f"  {r.provider}" if r.provider else ""
        click.echo(f"{icon} {r.email} [{r.category.value}]{provider}")


@main.command()
@click.argument("batch_id")
@click.option("--category", type=click.Choice(config.EXPORT_CATEGORIES), default="all", show_default=True)
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), default=str(config.EXPORT_DIR),
              show_default=True)
@click.pass_obj
def export(obj: dict, batch_id: str, category: str, output_dir: str):
    """Download a batch export file."""
    try:
        path = _make_results_api(obj).export_batch(batch_id, category, Path(output_dir))
    except (VerifyStreamError, requests.RequestException) as e:
        click.echo(f"✗ Export failed: {e}")
        sys.exit(1)
    click.echo(f"Results written to {path}")


@main.command()
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def stats(obj: dict, json_output: bool):
    """Show lifetime verification statistics by category."""
    try:
        s = _make_results_api(obj).get_category_stats()
    except (VerifyStreamError, requests.RequestException) as e:
        click.echo(f"✗ Error fetching verification statistics: {e}")
        sys.exit(1)

    if json_output:
        data = s.model_dump(mode="json")
        data["verification_rate"] = s.verification_rate
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Total verified emails: {s.total}")
    for label, count in (("valid", s.valid), ("invalid", s.invalid), ("risky", s.risky)):
        click.echo(f"  {label}: {count} ({rate(count, s.total):.1f}%)")
    click.echo(f"\nVerification rate: {s.verification_rate:.1f}%")


@main.command()
@click.argument("batch_id")
@click.argument("name")
@click.pass_obj
def rename(obj: dict, batch_id: str, name: str):
    """Set the display name of a batch."""
    _make_names(obj).assign(batch_id, name)
    click.echo(f"Batch {batch_id} is now named {name!r}")


def _output_snapshot(snapshot: RunSnapshot, json_output: bool) -> None:
    if json_output:
        data = snapshot.model_dump(mode="json")
        data["time_elapsed"] = snapshot.time_elapsed
        data["time_remaining"] = snapshot.time_remaining
        click.echo(json.dumps(data, indent=2))
        return

    icon = {RunStatus.completed: "✓", RunStatus.failed: "✗"}.get(snapshot.status, "~")
    click.echo(f"\n{icon} {snapshot.display_name or 'Batch'} [{snapshot.id or 'unassigned'}]")
    click.echo(f"  Status:    {snapshot.status.value}")
    click.echo(f"  Progress:  {snapshot.progress}% ({snapshot.processed}/{snapshot.total})")
    for label, count in (("Valid", snapshot.valid), ("Invalid", snapshot.invalid), ("Risky", snapshot.risky)):
        click.echo(f"  {label + ':':10} {count} ({rate(count, snapshot.processed):.1f}%)")
    click.echo(f"  Elapsed:   {snapshot.time_elapsed}")
    if not snapshot.is_terminal:
        click.echo(f"  Remaining: {snapshot.time_remaining}")
    if snapshot.failure_reason:
        click.echo(f"  Error:     {snapshot.failure_reason}")


if __name__ == "__main__":
    main()
