"""liverc_etl.models

Record types stored and returned by the repository ports, plus the
import-job state machine and the per-item counts.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PROVIDER_LIVERC = "liverc"

JOB_QUEUED = "QUEUED"
JOB_RUNNING = "RUNNING"
JOB_SUCCEEDED = "SUCCEEDED"
JOB_FAILED = "FAILED"
TERMINAL_STATES = frozenset({JOB_SUCCEEDED, JOB_FAILED})

JOB_MODE_SUMMARY = "SUMMARY"
TARGET_EVENT = "EVENT"
TARGET_SESSION = "SESSION"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@dataclass
class Event:
    id: str
    source_event_id: str
    source_url: str
    name: str
    updated_at: datetime | None = None


@dataclass
class RaceClass:
    id: str
    event_id: str
    class_code: str
    source_url: str
    name: str


@dataclass
class Session:
    id: str
    event_id: str
    race_class_id: str
    source_session_id: str
    source_url: str
    name: str
    session_type: str | None = None
    scheduled_start: datetime | None = None


@dataclass
class Driver:
    id: str
    display_name: str
    provider: str | None = None
    source_driver_id: str | None = None


@dataclass
class Entrant:
    id: str
    event_id: str
    race_class_id: str
    session_id: str
    source_entrant_id: str
    display_name: str
    driver_id: str | None = None
    car_number: str | None = None
    source_transponder_id: str | None = None


@dataclass(frozen=True)
class LapInput:
    id: str
    entrant_id: str
    session_id: str
    lap_number: int
    lap_time_ms: int
    driver_id: str | None = None


@dataclass
class ResultRowInput:
    session_id: str
    driver_id: str
    position: int | None = None
    car_number: str | None = None
    laps: int | None = None
    total_time_ms: int | None = None
    behind_ms: int | None = None
    fastest_lap_ms: int | None = None
    fastest_lap_num: int | None = None
    avg_lap_ms: int | None = None
    avg_top5_ms: int | None = None
    avg_top10_ms: int | None = None
    avg_top15_ms: int | None = None
    top3_consec_ms: int | None = None
    std_dev_ms: int | None = None
    consistency_pct: float | None = None


@dataclass
class Club:
    id: str
    subdomain: str
    display_name: str
    country: str | None = None
    region: str | None = None


@dataclass
class ImportPlanEventState:
    event_id: str
    session_count: int = 0
    sessions_with_laps: int = 0
    lap_count: int = 0
    entrant_count: int = 0
    entries_count: int | None = None
    drivers_count: int | None = None


def build_lap_id(
    event_id: str,
    session_id: str,
    race_id: str,
    entry_id: str,
    lap_number: int,
) -> str:
    """Deterministic lap id: sha256 of 'event|session|race|entry|lap'."""
    key = f"{event_id}|{session_id}|{race_id}|{entry_id}|{lap_number}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Counts
# ---------------------------------------------------------------------------

@dataclass
class SummaryImportCounts:
    sessions_imported: int = 0
    result_rows_imported: int = 0
    laps_imported: int = 0
    drivers_with_laps: int = 0
    laps_skipped: int = 0

    def add(self, other: "SummaryImportCounts") -> None:
        self.sessions_imported += other.sessions_imported
        self.result_rows_imported += other.result_rows_imported
        self.laps_imported += other.laps_imported
        self.drivers_with_laps += other.drivers_with_laps
        self.laps_skipped += other.laps_skipped

    def to_dict(self) -> dict[str, int]:
        return {
            "sessionsImported": self.sessions_imported,
            "resultRowsImported": self.result_rows_imported,
            "lapsImported": self.laps_imported,
            "driversWithLaps": self.drivers_with_laps,
            "lapsSkipped": self.laps_skipped,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SummaryImportCounts":
        data = data or {}
        return cls(
            sessions_imported=int(data.get("sessionsImported", 0) or 0),
            result_rows_imported=int(data.get("resultRowsImported", 0) or 0),
            laps_imported=int(data.get("lapsImported", 0) or 0),
            drivers_with_laps=int(data.get("driversWithLaps", 0) or 0),
            laps_skipped=int(data.get("lapsSkipped", 0) or 0),
        )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@dataclass
class ImportJobItem:
    id: str
    target_ref: str
    target_type: str = TARGET_EVENT
    state: str = JOB_QUEUED
    message: str | None = None
    counts: SummaryImportCounts | None = None


@dataclass
class ImportJob:
    id: str
    plan_id: str
    plan_hash: str
    mode: str = JOB_MODE_SUMMARY
    state: str = JOB_QUEUED
    progress_pct: int = 0
    message: str | None = None
    items: list[ImportJobItem] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class NewJobItem:
    target_ref: str
    target_type: str = TARGET_EVENT


def plan_hash(plan_id: str) -> str:
    return hashlib.sha256(plan_id.encode("utf-8")).hexdigest()
