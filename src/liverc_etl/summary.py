"""liverc_etl.summary

Event-summary importer: event overview -> sessions -> result rows,
entrants and laps.

For each session listed on the overview page:
  1. upsert RaceClass (event, class code) and Session (slug path)
  2. resolve one Driver per result row, by provider entry id when the row
     carries one, else by normalized display name
  3. fetch the session's JSON document, group laps by entry id, match each
     group to a result row and replace the entrant's lap set
  4. upsert one ResultRow per (session, driver)

Every write is an upsert on a natural key, so re-running on unchanged
upstream data produces the same counts and no new rows.  Session-level
fetch or parse failures propagate to the caller; bad rows and laps are
skipped and counted.
"""

from __future__ import annotations

import logging
import math
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Protocol

from liverc_etl.html_parse import (
    EventMetadata,
    EventSessionSummary,
    SessionResultRow,
    enumerate_sessions_from_event_html,
    extract_event_metadata_from_html,
    parse_session_results_from_html,
)
from liverc_etl.models import (
    PROVIDER_LIVERC,
    Driver,
    LapInput,
    RaceClass,
    ResultRowInput,
    Session,
    SummaryImportCounts,
    build_lap_id,
)
from liverc_etl.normalize import driver_name_key, parse_iso_timestamp, trim
from liverc_etl.ports import Repositories, Telemetry
from liverc_etl.response_mappers import RaceContext, RaceResultLap, map_race_result_response

log = logging.getLogger(__name__)


class HtmlResultsClient(Protocol):
    def get_event_overview(self, url_or_ref: str) -> str: ...

    def get_session_page(self, url_or_ref: str) -> str: ...

    def resolve_json_url_from_html(self, html: str) -> str | None: ...

    def fetch_json(self, url: str) -> Any: ...


@dataclass
class _DriverDetail:
    driver: Driver
    row: SessionResultRow


@dataclass
class _LapImport:
    laps_imported: int = 0
    laps_skipped: int = 0
    drivers_with_laps: int = 0
    driver_lap_counts: dict[str, int] = field(default_factory=dict)


def derive_round_and_race(slug_segments: list[str]) -> tuple[str, str]:
    """Round and race slugs from the session path segments after 'results'.

    ['e', 'c']            -> ('main', 'c')
    ['e', 'c', 'r', 'x']  -> ('r', 'x')
    ['e', 'c', 'x']       -> ('x', 'x')
    """
    if len(slug_segments) <= 2:
        return "main", (slug_segments[-1] if slug_segments else "race")
    tail = slug_segments[2:]
    race = tail[-1]
    round_slug = "/".join(tail[:-1]) if len(tail) > 1 else tail[0]
    return round_slug or "main", race


def lap_time_ms(seconds: float) -> int | None:
    """Seconds to whole milliseconds; None for non-finite or non-positive."""
    if not math.isfinite(seconds):
        return None
    ms = round(seconds * 1000)
    return ms if ms > 0 else None


class SummaryImporter:
    def __init__(
        self,
        client: HtmlResultsClient,
        repositories: Repositories,
        telemetry: Telemetry,
        logger: logging.Logger | None = None,
        provider: str = PROVIDER_LIVERC,
    ) -> None:
        self._client = client
        self._repos = repositories
        self._telemetry = telemetry
        self._log = logger or log
        self._provider = provider

    def ingest_event_summary(self, event_url: str) -> SummaryImportCounts:
        event_html = self._client.get_event_overview(event_url)
        meta = extract_event_metadata_from_html(event_html, event_url)
        event = self._repos.events.upsert_by_source(
            meta.event_slug, meta.canonical_url, meta.event_name
        )

        counts = SummaryImportCounts()
        for summary in enumerate_sessions_from_event_html(event_html):
            session_ref = urllib.parse.urljoin(meta.canonical_url, summary.session_ref)
            counts.add(self._process_session(summary, session_ref, meta, event.id))

        self._log.info(
            "Imported event %s: %d sessions, %d laps",
            meta.event_slug, counts.sessions_imported, counts.laps_imported,
            extra={"event": "liverc.summary.event_imported", "event_id": event.id,
                   "counts": counts.to_dict()},
        )
        return counts

    # -- sessions ----------------------------------------------------------

    def _process_session(
        self,
        summary: EventSessionSummary,
        session_ref: str,
        meta: EventMetadata,
        event_id: str,
    ) -> SummaryImportCounts:
        started = time.monotonic()
        try:
            counts = self._import_session(summary, session_ref, meta, event_id)
        except Exception as exc:
            self._telemetry.record_session_ingestion(
                "failure", (time.monotonic() - started) * 1000, session_ref,
                event_id=event_id, class_name=summary.class_name,
                session_type=summary.type, reason=str(exc),
            )
            self._log.warning(
                "Session ingestion failed for %s: %s", session_ref, exc,
                extra={"event": "liverc.summary.session_failed", "outcome": "failure",
                       "session_ref": session_ref, "event_id": event_id},
            )
            raise
        self._telemetry.record_session_ingestion(
            "success", (time.monotonic() - started) * 1000, session_ref,
            event_id=event_id, class_name=summary.class_name,
            session_type=summary.type, counts=counts.to_dict(),
        )
        return counts

    def _import_session(
        self,
        summary: EventSessionSummary,
        session_ref: str,
        meta: EventMetadata,
        event_id: str,
    ) -> SummaryImportCounts:
        session_html = self._client.get_session_page(session_ref)
        results = parse_session_results_from_html(session_html, session_ref)
        session_url = urllib.parse.urljoin(meta.canonical_url, results.canonical_url or session_ref)

        parsed = urllib.parse.urlsplit(session_url)
        segments = [urllib.parse.unquote(s) for s in parsed.path.split("/") if s]
        if "results" not in segments or len(segments) <= segments.index("results") + 2:
            raise ValueError(f"LiveRC session URL is missing expected segments: {session_url}")
        slug_segments = segments[segments.index("results") + 1:]
        event_slug, class_slug = slug_segments[0], slug_segments[1]
        origin = f"{parsed.scheme}://{parsed.netloc}"

        race_class = self._repos.race_classes.upsert_by_source(
            event_id, class_slug, f"{origin}/results/{event_slug}/{class_slug}", summary.class_name
        )
        session = self._repos.sessions.upsert_by_source(
            event_id,
            race_class.id,
            "/".join(slug_segments),
            session_url,
            summary.title or results.session_name or "/".join(slug_segments),
            session_type=summary.type,
            scheduled_start=parse_iso_timestamp(summary.completed_at),
        )

        by_entry_id: dict[str, _DriverDetail] = {}
        by_name: dict[str, _DriverDetail] = {}
        by_driver_id: dict[str, _DriverDetail] = {}
        for row in results.result_rows:
            name = trim(row.driver_name)
            if not name:
                continue
            if row.entry_id:
                driver = self._repos.drivers.upsert_by_source(self._provider, row.entry_id, name)
                detail = _DriverDetail(driver, row)
                by_entry_id.setdefault(row.entry_id, detail)
            else:
                driver = self._repos.drivers.upsert_by_display_name(name)
                detail = by_name.setdefault(driver_name_key(name), _DriverDetail(driver, row))
            by_driver_id.setdefault(driver.id, detail)

        round_slug, race_slug = derive_round_and_race(slug_segments)
        lap_import = _LapImport()
        if by_driver_id:
            lap_import = self._import_laps(
                session_html, session_url, session, race_class, by_entry_id, by_name,
                RaceContext(
                    event_slug=event_slug, class_slug=class_slug,
                    round_slug=round_slug, race_slug=race_slug,
                    results_base_url=f"{origin}/results", origin=origin,
                ),
            )

        for driver_id, detail in by_driver_id.items():
            row = detail.row
            laps = lap_import.driver_lap_counts.get(driver_id, row.laps)
            self._repos.result_rows.upsert_by_session_and_driver(ResultRowInput(
                session_id=session.id,
                driver_id=driver_id,
                position=row.position,
                car_number=row.car_number,
                laps=laps,
                total_time_ms=row.total_time_ms,
                behind_ms=row.behind_ms,
                fastest_lap_ms=row.fastest_lap_ms,
                fastest_lap_num=row.fastest_lap_num,
                avg_lap_ms=row.avg_lap_ms,
                avg_top5_ms=row.avg_top5_ms,
                avg_top10_ms=row.avg_top10_ms,
                avg_top15_ms=row.avg_top15_ms,
                top3_consec_ms=row.top3_consec_ms,
                std_dev_ms=row.std_dev_ms,
                consistency_pct=row.consistency_pct,
            ))

        return SummaryImportCounts(
            sessions_imported=1,
            result_rows_imported=len(by_driver_id),
            laps_imported=lap_import.laps_imported,
            drivers_with_laps=lap_import.drivers_with_laps,
            laps_skipped=lap_import.laps_skipped,
        )

    # -- laps --------------------------------------------------------------

    def _import_laps(
        self,
        session_html: str,
        session_url: str,
        session: Session,
        race_class: RaceClass,
        by_entry_id: dict[str, _DriverDetail],
        by_name: dict[str, _DriverDetail],
        context: RaceContext,
    ) -> _LapImport:
        json_url = self._client.resolve_json_url_from_html(session_html)
        if not json_url:
            json_url = session_url.rstrip("/") + ".json"
        race_result = map_race_result_response(self._client.fetch_json(json_url), context)

        out = _LapImport(laps_skipped=race_result.dropped_laps)
        grouped: dict[str, list[RaceResultLap]] = {}
        names: dict[str, str] = {}
        for lap in race_result.laps:
            entry_id = lap.entry_id.strip()
            grouped.setdefault(entry_id, []).append(lap)
            names.setdefault(entry_id, lap.driver_name.strip())

        for entry_id, laps in grouped.items():
            detail = by_entry_id.get(entry_id) or by_name.get(driver_name_key(names[entry_id]))
            if detail is None:
                self._log.warning(
                    "Skipping %d laps for entry %s with no matching result row",
                    len(laps), entry_id,
                    extra={"event": "liverc.summary.laps_missing_driver", "outcome": "skipped",
                           "session_id": session.id, "entry_id": entry_id},
                )
                out.laps_skipped += len(laps)
                continue

            entrant = self._repos.entrants.upsert_by_source(
                session.event_id,
                race_class.id,
                session.id,
                entry_id,
                detail.driver.display_name,
                driver_id=detail.driver.id,
                car_number=detail.row.car_number,
            )
            lap_inputs: list[LapInput] = []
            seen: set[int] = set()
            for lap in laps:
                ms = lap_time_ms(lap.lap_time_seconds)
                if ms is None or lap.lap_number in seen:
                    out.laps_skipped += 1
                    continue
                seen.add(lap.lap_number)
                lap_inputs.append(LapInput(
                    id=build_lap_id(race_result.event_id, session.id, race_result.race_id,
                                    entry_id, lap.lap_number),
                    entrant_id=entrant.id,
                    session_id=session.id,
                    lap_number=lap.lap_number,
                    lap_time_ms=ms,
                    driver_id=detail.driver.id,
                ))
            lap_inputs.sort(key=lambda lap: lap.lap_number)
            self._repos.laps.replace_for_entrant(entrant.id, session.id, lap_inputs)

            out.laps_imported += len(lap_inputs)
            if lap_inputs:
                out.drivers_with_laps += 1
            out.driver_lap_counts[detail.driver.id] = len(lap_inputs)
        return out
