"""liverc_etl.cli

Unified LiveRC ingestion CLI.

Modes:
  event_summary  import one or more event overview URLs
  race_url       import a single race from its JSON results URL
  race_file      import a single race from an uploaded JSON payload
  discover       list a club's events in a date range
  plan           classify events and estimate their size; saves the plan
  apply          enqueue a saved plan as an import job
  worker         poll and process queued import jobs
  job_status     print a job's status

Without --db-dsn (or LIVERC_DB_DSN) the import, discover and plan modes
run against an in-memory store and nothing is persisted.  With --dry-run
database work is rolled back.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

import click
import psycopg

from liverc_etl.client import HttpScrapingClient
from liverc_etl.config import SettingsValidationError, load_settings
from liverc_etl.discovery import DiscoveryRequest, DiscoveryService
from liverc_etl.errors import LiveRcError
from liverc_etl.jobs import JobQueue, job_status
from liverc_etl.memory_store import (
    InMemoryClubRepository,
    InMemoryImportPlanRepository,
    build_memory_repositories,
)
from liverc_etl.models import Club, SummaryImportCounts
from liverc_etl.pg_store import (
    PgClubRepository,
    PgImportJobRepository,
    PgImportPlanRepository,
    build_pg_repositories,
)
from liverc_etl.plan import FilePlanStore, ImportPlanService
from liverc_etl.race_import import RaceImportService
from liverc_etl.response_mappers import UploadMetadata
from liverc_etl.summary import SummaryImporter
from liverc_etl.telemetry import LoggingTelemetry

_DB_REQUIRED_MODES = ("apply", "worker", "job_status")


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    params: dict[str, Any],
    result: Any,
    telemetry: LoggingTelemetry,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **params,
        "result": result,
        "telemetry": [event.to_dict() for event in telemetry.events],
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _require(run_id: str, mode: str, **values: Any) -> None:
    missing = [f"--{name.replace('_', '-')}" for name, value in values.items() if not value]
    if missing:
        _fatal(run_id, f"--mode {mode} requires {', '.join(missing)}")


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_event_summary(run_id, event_urls, conn, client, settings, telemetry) -> dict[str, Any]:
    repos = build_pg_repositories(conn, settings.provider) if conn else build_memory_repositories()
    importer = SummaryImporter(client, repos, telemetry, provider=settings.provider)
    totals = SummaryImportCounts()
    per_event: dict[str, Any] = {}
    for url in event_urls:
        click.echo(f"[{run_id}] Importing event {url}")
        counts = importer.ingest_event_summary(url)
        totals.add(counts)
        per_event[url] = counts.to_dict()
        click.echo(
            f"[{run_id}]   sessions={counts.sessions_imported} "
            f"result_rows={counts.result_rows_imported} laps={counts.laps_imported} "
            f"skipped={counts.laps_skipped}"
        )
    return {"events": per_event, "totals": totals.to_dict()}


def _run_race(run_id, mode, race_url, payload_path, include_outlaps, conn, client, settings):
    repos = build_pg_repositories(conn, settings.provider) if conn else build_memory_repositories()
    service = RaceImportService(client, repos, provider=settings.provider)
    if mode == "race_url":
        click.echo(f"[{run_id}] Importing race {race_url}")
        summary = service.import_from_url(race_url, include_outlaps=include_outlaps)
    else:
        path = Path(payload_path)
        click.echo(f"[{run_id}] Importing race payload {path.name}")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            _fatal(run_id, f"payload {path.name!r} is not valid JSON: {exc}")
        stat = path.stat()
        metadata = UploadMetadata(
            file_name=path.name,
            file_size_bytes=stat.st_size,
            last_modified_epoch_ms=int(stat.st_mtime * 1000),
        )
        summary = service.import_from_payload(
            payload, metadata=metadata, include_outlaps=include_outlaps
        )
    click.echo(
        f"[{run_id}]   entrants={summary.entrants_processed} laps={summary.laps_imported} "
        f"skipped_laps={summary.skipped_lap_count} "
        f"skipped_entrants={summary.skipped_entrant_count} "
        f"skipped_outlaps={summary.skipped_outlap_count}"
    )
    return summary.to_dict()


@click.command()
@click.option(
    "--mode",
    default="event_summary",
    type=click.Choice([
        "event_summary", "race_url", "race_file", "discover",
        "plan", "apply", "worker", "job_status",
    ]),
    show_default=True,
    help="Ingestion mode",
)
@click.option("--db-dsn", envvar="LIVERC_DB_DSN", default=None, help="PostgreSQL DSN (env LIVERC_DB_DSN)")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="YAML settings file")
# import flags
@click.option("--event-url", "event_urls", multiple=True, help="[event_summary|plan] Event overview URL (repeatable)")
@click.option("--race-url", default=None, help="[race_url] JSON results URL")
@click.option("--payload-path", default=None, type=click.Path(exists=True, dir_okay=False),
              help="[race_file] Race result JSON file")
@click.option("--include-outlaps/--no-include-outlaps", default=False, show_default=True)
# discovery flags
@click.option("--club-id", default=None, help="[discover] Club id")
@click.option("--club-subdomain", default=None,
              help="[discover] LiveRC subdomain for --club-id when running without a database")
@click.option("--start-date", default=None, help="[discover] YYYY-MM-DD")
@click.option("--end-date", default=None, help="[discover] YYYY-MM-DD")
@click.option("--limit", default=None, type=int, help="[discover] Maximum events returned")
# plan / jobs flags
@click.option("--plan-id", default=None, help="[apply] Plan id produced by --mode plan")
@click.option("--plans-dir", default="./artifacts/plans", show_default=True, type=click.Path(),
              help="[plan|apply] Directory holding saved plans")
@click.option("--include-existing/--no-include-existing", default=None,
              help="[plan] Keep events that are already fully imported")
@click.option("--job-id", default=None, help="[job_status] Import job id")
@click.option("--once", is_flag=True, default=False, help="[worker] Drain queued jobs then exit")
# shared
@click.option("--request-timeout-seconds", default=None, type=float)
@click.option("--max-retries", default=None, type=int)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def main(
    mode: str,
    db_dsn: str | None,
    config_path: str | None,
    event_urls: tuple[str, ...],
    race_url: str | None,
    payload_path: str | None,
    include_outlaps: bool,
    club_id: str | None,
    club_subdomain: str | None,
    start_date: str | None,
    end_date: str | None,
    limit: int | None,
    plan_id: str | None,
    plans_dir: str,
    include_existing: bool | None,
    job_id: str | None,
    once: bool,
    request_timeout_seconds: float | None,
    max_retries: int | None,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified LiveRC ingestion CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(
            Path(config_path) if config_path else None,
            overrides={
                "db_dsn": db_dsn,
                "request_timeout_seconds": request_timeout_seconds,
                "max_retries": max_retries,
                "include_existing_events": include_existing,
            },
        )
    except (SettingsValidationError, OSError) as exc:
        _fatal(run_id, f"invalid settings: {exc}")

    if mode == "event_summary":
        _require(run_id, mode, event_url=event_urls)
    elif mode == "race_url":
        _require(run_id, mode, race_url=race_url)
    elif mode == "race_file":
        _require(run_id, mode, payload_path=payload_path)
    elif mode == "plan":
        _require(run_id, mode, event_url=event_urls)
    elif mode == "apply":
        _require(run_id, mode, plan_id=plan_id)
    elif mode == "job_status":
        _require(run_id, mode, job_id=job_id)
    if mode in _DB_REQUIRED_MODES and not settings.db_dsn:
        _fatal(run_id, f"--mode {mode} requires --db-dsn or LIVERC_DB_DSN")

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run}, store="
               f"{'postgres' if settings.db_dsn else 'memory'})")

    telemetry = LoggingTelemetry(keep=True)
    client = HttpScrapingClient(settings)
    conn = None
    if settings.db_dsn:
        try:
            conn = psycopg.connect(settings.db_dsn, autocommit=mode in ("worker", "apply", "job_status"))
        except psycopg.Error as exc:
            _fatal(run_id, f"could not connect to database: {exc}")

    params: dict[str, Any] = {}
    result: Any = None
    try:
        if mode == "event_summary":
            params = {"event_urls": list(event_urls)}
            result = _run_event_summary(run_id, event_urls, conn, client, settings, telemetry)

        elif mode in ("race_url", "race_file"):
            params = {"race_url": race_url, "payload_path": payload_path,
                      "include_outlaps": include_outlaps}
            result = _run_race(run_id, mode, race_url, payload_path, include_outlaps,
                               conn, client, settings)

        elif mode == "discover":
            params = {"club_id": club_id, "start_date": start_date, "end_date": end_date}
            if conn is not None:
                clubs = PgClubRepository(conn)
            else:
                clubs = InMemoryClubRepository()
                if club_id and club_subdomain:
                    clubs.add(Club(id=club_id, subdomain=club_subdomain, display_name=club_subdomain))
            discovered = DiscoveryService(client, clubs, settings).discover_by_club_and_date_range(
                DiscoveryRequest(club_id, start_date, end_date, limit)
            )
            for event in discovered.events:
                click.echo(f"[{run_id}]   {event.when_iso}  {event.title}  {event.event_ref}")
            result = discovered.to_dict()

        elif mode == "plan":
            params = {"event_urls": list(event_urls)}
            plan_repo = (PgImportPlanRepository(conn) if conn is not None
                         else InMemoryImportPlanRepository(build_memory_repositories()))
            plan = ImportPlanService(client, plan_repo, telemetry, settings).create_plan(event_urls)
            for item in plan.items:
                click.echo(
                    f"[{run_id}]   {item.status:<8} sessions={item.sessions} "
                    f"drivers={item.drivers} laps~{item.estimated_laps}  {item.event_ref}"
                )
            if not dry_run:
                path = FilePlanStore(Path(plans_dir)).save(plan)
                click.echo(f"[{run_id}] Plan {plan.plan_id} saved to {path}")
            result = plan.to_dict()

        else:
            jobs_repo = PgImportJobRepository(conn)
            importer = SummaryImporter(
                client, build_pg_repositories(conn, settings.provider), telemetry,
                provider=settings.provider,
            )
            queue = JobQueue(
                jobs_repo, importer, telemetry,
                poll_interval_seconds=settings.poll_interval_seconds,
                processing_delay_seconds=settings.processing_delay_seconds,
            )
            if mode == "apply":
                params = {"plan_id": plan_id}
                stored = FilePlanStore(Path(plans_dir)).get(plan_id)
                if stored is None:
                    _fatal(run_id, f"plan {plan_id!r} not found under {plans_dir}")
                service = ImportPlanService(client, PgImportPlanRepository(conn), telemetry, settings)
                job = service.apply_plan(stored, queue)
                click.echo(f"[{run_id}] Enqueued job {job.id} ({len(job.items)} events)")
                result = {"jobId": job.id}
            elif mode == "job_status":
                params = {"job_id": job_id}
                job = queue.get_job(job_id)
                if job is None:
                    _fatal(run_id, f"job {job_id!r} not found")
                view = job_status(job)
                click.echo(
                    f"[{run_id}] Job {view.job_id}: {view.state} {view.progress_pct}% "
                    f"({view.completed_items}/{view.total_items} items)"
                )
                result = view.to_dict()
            else:
                processed: list[str] = []
                if once:
                    while (done := queue.run_once()) is not None:
                        processed.append(done)
                        click.echo(f"[{run_id}] Processed job {done}")
                else:
                    click.echo(f"[{run_id}] Worker polling every {settings.poll_interval_seconds}s")
                    try:
                        queue.run_forever()
                    except KeyboardInterrupt:
                        click.echo(f"[{run_id}] Worker stopped.")
                result = {"processed_jobs": processed}

        if conn is not None and not conn.autocommit:
            if dry_run:
                conn.rollback()
                click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
            else:
                conn.commit()
    except LiveRcError as exc:
        if conn is not None and not conn.autocommit:
            conn.rollback()
        _fatal(run_id, str(exc))
    finally:
        if conn is not None:
            conn.close()

    report_path = write_run_report(run_id, started_at, mode, dry_run, params, result, telemetry)
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()
