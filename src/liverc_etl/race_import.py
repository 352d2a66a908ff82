"""liverc_etl.race_import

Single-race importer.  Two entry points share one persistence path:

  import_from_url      JSON results URL -> entry list + race result
  import_from_payload  uploaded race-result JSON (entry list synthesized
                       from the laps, missing ids replaced by upload slugs)
"""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from liverc_etl.config import DEFAULT_RESULTS_BASE_URL
from liverc_etl.errors import ValidationError
from liverc_etl.models import PROVIDER_LIVERC, LapInput, build_lap_id
from liverc_etl.normalize import normalize_space, parse_explicit_tz_timestamp, title_from_slug
from liverc_etl.ports import Repositories
from liverc_etl.response_mappers import (
    EntryList,
    EntryListEntry,
    RaceContext,
    RaceResult,
    RaceResultLap,
    UploadMetadata,
    parse_race_result_payload,
)
from liverc_etl.summary import lap_time_ms
from liverc_etl.url_parser import require_json_results_url

log = logging.getLogger(__name__)


class RaceResultsClient(Protocol):
    def fetch_entry_list(
        self, event_slug: str, class_slug: str, results_base_url: str | None = None
    ) -> EntryList: ...

    def fetch_race_result(
        self,
        event_slug: str,
        class_slug: str,
        round_slug: str,
        race_slug: str,
        results_base_url: str | None = None,
    ) -> RaceResult: ...


@dataclass
class RaceImportSummary:
    event_id: str
    event_name: str
    race_class_id: str
    race_class_name: str
    session_id: str
    session_name: str
    race_id: str
    round_id: str
    entrants_processed: int = 0
    laps_imported: int = 0
    skipped_lap_count: int = 0
    skipped_entrant_count: int = 0
    skipped_outlap_count: int = 0
    source_url: str = ""
    include_outlaps: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _results_url(base: str | None, segments: list[str]) -> str:
    root = (base or "").strip().rstrip("/") or DEFAULT_RESULTS_BASE_URL
    return root + "/" + "/".join(urllib.parse.quote(s, safe="") for s in segments)


def uploaded_source_url(context: RaceContext) -> str:
    segments = [context.event_slug, context.class_slug, context.round_slug, context.race_slug]
    return "uploaded-file://" + "/".join(urllib.parse.quote(s, safe="") for s in segments)


def entry_list_from_laps(race_result: RaceResult) -> EntryList:
    """One entry per distinct lap entry id, in first-seen order."""
    entries: dict[str, EntryListEntry] = {}
    for lap in race_result.laps:
        entries.setdefault(lap.entry_id, EntryListEntry(lap.entry_id, lap.driver_name))
    return EntryList(
        event_id=race_result.event_id,
        class_id=race_result.class_id,
        event_name=race_result.event_name,
        class_name=race_result.class_name,
        class_code=race_result.class_code,
        entries=list(entries.values()),
    )


class RaceImportService:
    def __init__(
        self,
        client: RaceResultsClient,
        repositories: Repositories,
        logger: logging.Logger | None = None,
        provider: str = PROVIDER_LIVERC,
    ) -> None:
        self._client = client
        self._repos = repositories
        self._log = logger or log
        self._provider = provider

    def import_from_url(self, url: str, include_outlaps: bool = False) -> RaceImportSummary:
        ref = require_json_results_url(url)
        base = ref.results_base_url.rstrip("/") or DEFAULT_RESULTS_BASE_URL
        entry_list = self._client.fetch_entry_list(ref.event_slug, ref.class_slug, base)
        race_result = self._client.fetch_race_result(
            ref.event_slug, ref.class_slug, ref.round_slug, ref.race_slug, base
        )
        context = RaceContext(
            event_slug=ref.event_slug,
            class_slug=ref.class_slug,
            round_slug=ref.round_slug,
            race_slug=ref.race_slug,
            results_base_url=base,
            origin=ref.origin,
        )
        return self._execute(entry_list, race_result, context, url, include_outlaps)

    def import_from_payload(
        self,
        payload: Any,
        metadata: UploadMetadata | None = None,
        include_outlaps: bool = False,
    ) -> RaceImportSummary:
        outcome = parse_race_result_payload(payload, metadata=metadata)
        if not outcome.has_lap_data:
            raise ValidationError(
                "LiveRC race result payload has no lap data.",
                code="INVALID_RACE_RESULT_PAYLOAD",
                details={
                    "missing_identifiers": outcome.missing_identifiers,
                    "has_lap_data": False,
                },
            )
        if outcome.missing_identifiers:
            self._log.warning(
                "Payload is missing %s; using upload namespace %s",
                ", ".join(outcome.missing_identifiers), outcome.upload_namespace,
                extra={"event": "liverc.import.synthesized_identifiers",
                       "missing_identifiers": outcome.missing_identifiers,
                       "upload_namespace": outcome.upload_namespace},
            )
        return self._execute(
            entry_list_from_laps(outcome.race_result),
            outcome.race_result,
            outcome.context,
            uploaded_source_url(outcome.context),
            include_outlaps,
        )

    # -- persistence -------------------------------------------------------

    def _execute(
        self,
        entry_list: EntryList,
        race_result: RaceResult,
        context: RaceContext,
        source_url: str,
        include_outlaps: bool,
    ) -> RaceImportSummary:
        event_name = normalize_space(
            race_result.event_name or entry_list.event_name or title_from_slug(context.event_slug)
        ) or context.event_slug
        event = self._repos.events.upsert_by_source(
            race_result.event_id or entry_list.event_id or context.event_slug,
            _results_url(context.results_base_url, [context.event_slug]),
            event_name,
        )

        class_code = normalize_space(
            (entry_list.class_code or race_result.class_code or context.class_slug).upper()
        ) or context.class_slug.upper()
        race_class = self._repos.race_classes.upsert_by_source(
            event.id,
            class_code,
            _results_url(context.results_base_url, [context.event_slug, context.class_slug]),
            race_result.class_name or entry_list.class_name
            or title_from_slug(context.class_slug) or context.class_slug,
        )

        source_session_id = ":".join(s for s in (
            race_result.event_id or context.event_slug,
            race_result.class_id or race_result.class_code or context.class_slug,
            race_result.round_id or context.round_slug,
            race_result.race_id or context.race_slug,
        ) if s) or source_url
        session = self._repos.sessions.upsert_by_source(
            event.id,
            race_class.id,
            source_session_id,
            source_url,
            race_result.race_name or title_from_slug(context.race_slug) or context.race_slug,
            session_type=race_result.session_type,
            scheduled_start=parse_explicit_tz_timestamp(race_result.start_time_utc),
        )

        summary = RaceImportSummary(
            event_id=event.id,
            event_name=event.name,
            race_class_id=race_class.id,
            race_class_name=race_class.name,
            session_id=session.id,
            session_name=session.name,
            race_id=race_result.race_id,
            round_id=race_result.round_id or context.round_slug,
            skipped_lap_count=race_result.dropped_laps,
            source_url=source_url,
            include_outlaps=include_outlaps,
        )

        entries = {e.entry_id: e for e in entry_list.entries}
        for entry_id, laps in self._group_laps(race_result, include_outlaps, summary).items():
            entry = entries.get(entry_id)
            if entry is None or entry.withdrawn:
                summary.skipped_entrant_count += 1
                summary.skipped_lap_count += len(laps)
                self._log.info(
                    "Skipping %d laps for entry %s (%s)",
                    len(laps), entry_id, "withdrawn" if entry else "not in entry list",
                    extra={"event": "liverc.import.skipped_entry", "outcome": "skipped",
                           "entry_id": entry_id, "laps_skipped": len(laps)},
                )
                continue

            display_name = normalize_space(entry.display_name or laps[0].driver_name) or entry_id
            driver = self._repos.drivers.upsert_by_source(self._provider, entry.entry_id, display_name)
            entrant = self._repos.entrants.upsert_by_source(
                event.id,
                race_class.id,
                session.id,
                entry.entry_id,
                display_name,
                driver_id=driver.id,
                car_number=entry.car_number,
                source_transponder_id=entry.source_transponder_id,
            )

            lap_inputs: list[LapInput] = []
            seen: set[int] = set()
            for lap in laps:
                ms = lap_time_ms(lap.lap_time_seconds)
                if ms is None or lap.lap_number in seen:
                    summary.skipped_lap_count += 1
                    continue
                seen.add(lap.lap_number)
                lap_inputs.append(LapInput(
                    id=build_lap_id(race_result.event_id, source_session_id,
                                    race_result.race_id, entry_id, lap.lap_number),
                    entrant_id=entrant.id,
                    session_id=session.id,
                    lap_number=lap.lap_number,
                    lap_time_ms=ms,
                    driver_id=driver.id,
                ))
            self._repos.laps.replace_for_entrant(entrant.id, session.id, lap_inputs)

            if lap_inputs:
                summary.entrants_processed += 1
                summary.laps_imported += len(lap_inputs)

        self._log.info(
            "Imported race %s: %d entrants, %d laps",
            source_session_id, summary.entrants_processed, summary.laps_imported,
            extra={"event": "liverc.import.completed", **summary.to_dict()},
        )
        return summary

    @staticmethod
    def _group_laps(
        race_result: RaceResult, include_outlaps: bool, summary: RaceImportSummary
    ) -> dict[str, list[RaceResultLap]]:
        grouped: dict[str, list[RaceResultLap]] = {}
        for lap in race_result.laps:
            if lap.is_outlap and not include_outlaps:
                summary.skipped_outlap_count += 1
                continue
            if lap.lap_time_seconds <= 0:
                summary.skipped_lap_count += 1
                continue
            grouped.setdefault(lap.entry_id, []).append(lap)
        for laps in grouped.values():
            laps.sort(key=lambda lap: lap.lap_number)
        return grouped
