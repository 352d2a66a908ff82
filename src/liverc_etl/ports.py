"""liverc_etl.ports

Repository and telemetry ports consumed by the importers, the job queue
and discovery.  memory_store and pg_store provide the adapters.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from liverc_etl.models import (
    Club,
    Driver,
    Entrant,
    Event,
    ImportJob,
    ImportPlanEventState,
    LapInput,
    NewJobItem,
    RaceClass,
    ResultRowInput,
    Session,
    SummaryImportCounts,
)


class EventRepository(Protocol):
    def upsert_by_source(self, source_event_id: str, source_url: str, name: str) -> Event: ...

    def find_by_source_id(self, source_event_id: str) -> Event | None: ...


class RaceClassRepository(Protocol):
    def upsert_by_source(
        self, event_id: str, class_code: str, source_url: str, name: str
    ) -> RaceClass: ...


class SessionRepository(Protocol):
    def upsert_by_source(
        self,
        event_id: str,
        race_class_id: str,
        source_session_id: str,
        source_url: str,
        name: str,
        session_type: str | None = None,
        scheduled_start: datetime | None = None,
    ) -> Session: ...


class DriverRepository(Protocol):
    def upsert_by_source(
        self, provider: str, source_driver_id: str, display_name: str
    ) -> Driver: ...

    def upsert_by_display_name(self, display_name: str) -> Driver: ...

    def find_by_display_name(self, display_name: str) -> Driver | None: ...


class EntrantRepository(Protocol):
    def upsert_by_source(
        self,
        event_id: str,
        race_class_id: str,
        session_id: str,
        source_entrant_id: str,
        display_name: str,
        driver_id: str | None = None,
        car_number: str | None = None,
        source_transponder_id: str | None = None,
    ) -> Entrant: ...

    def list_by_session(self, session_id: str) -> list[Entrant]: ...


class LapRepository(Protocol):
    def replace_for_entrant(
        self, entrant_id: str, session_id: str, laps: list[LapInput]
    ) -> int: ...

    def list_for_entrant(self, entrant_id: str, session_id: str) -> list[LapInput]: ...


class ResultRowRepository(Protocol):
    def upsert_by_session_and_driver(self, row: ResultRowInput) -> str: ...


class ImportJobRepository(Protocol):
    def create_job(
        self, plan_id: str, plan_hash: str, mode: str, items: list[NewJobItem]
    ) -> ImportJob: ...

    def get_job(self, job_id: str) -> ImportJob | None: ...

    def take_next_queued_job(self) -> ImportJob | None: ...

    def mark_job_succeeded(self, job_id: str, message: str | None = None) -> None: ...

    def mark_job_failed(self, job_id: str, message: str) -> None: ...

    def update_job_progress(self, job_id: str, progress_pct: int) -> None: ...

    def update_job_item(
        self,
        item_id: str,
        state: str,
        message: str | None = None,
        counts: SummaryImportCounts | None = None,
    ) -> None: ...


class ClubRepository(Protocol):
    def find_by_id(self, club_id: str) -> Club | None: ...


class ImportPlanRepository(Protocol):
    def get_event_state_by_ref(self, event_ref: str) -> ImportPlanEventState | None: ...


class Telemetry(Protocol):
    def record_plan_request(
        self,
        outcome: str,
        duration_ms: float,
        plan_id: str | None = None,
        requested_events: int = 0,
        included_events: int = 0,
        reason: str | None = None,
    ) -> None: ...

    def record_apply_request(
        self,
        outcome: str,
        duration_ms: float,
        plan_id: str | None = None,
        job_id: str | None = None,
        event_count: int = 0,
        estimated_laps: int = 0,
        reason: str | None = None,
    ) -> None: ...

    def record_event_ingestion(
        self,
        outcome: str,
        duration_ms: float,
        job_id: str,
        item_id: str,
        target_ref: str,
        counts: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None: ...

    def record_session_ingestion(
        self,
        outcome: str,
        duration_ms: float,
        session_ref: str,
        event_id: str | None = None,
        class_name: str | None = None,
        session_type: str | None = None,
        counts: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None: ...


@dataclass
class Repositories:
    """Entity repositories injected into the importers."""

    events: EventRepository
    race_classes: RaceClassRepository
    sessions: SessionRepository
    drivers: DriverRepository
    entrants: EntrantRepository
    laps: LapRepository
    result_rows: ResultRowRepository
