"""liverc_etl.memory_store

In-memory repository adapters keyed by the same natural keys as the
PostgreSQL schema.  Used for --dry-run and by the unit tests; each
repository exposes a ``size`` property.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from liverc_etl.models import (
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    Club,
    Driver,
    Entrant,
    Event,
    ImportJob,
    ImportJobItem,
    ImportPlanEventState,
    LapInput,
    NewJobItem,
    RaceClass,
    ResultRowInput,
    Session,
    SummaryImportCounts,
)
from liverc_etl.normalize import driver_name_key
from liverc_etl.ports import Repositories


def _new_id() -> str:
    return str(uuid.uuid4())


class InMemoryEventRepository:
    def __init__(self) -> None:
        self._by_source: dict[str, Event] = {}

    @property
    def size(self) -> int:
        return len(self._by_source)

    def upsert_by_source(self, source_event_id: str, source_url: str, name: str) -> Event:
        now = datetime.now(timezone.utc)
        existing = self._by_source.get(source_event_id)
        if existing is not None:
            existing.name = name
            existing.updated_at = now
            return existing
        event = Event(_new_id(), source_event_id, source_url, name, now)
        self._by_source[source_event_id] = event
        return event

    def find_by_source_id(self, source_event_id: str) -> Event | None:
        return self._by_source.get(source_event_id)

    def find_by_source_url(self, source_url: str) -> Event | None:
        return next(
            (e for e in self._by_source.values() if e.source_url == source_url), None
        )


class InMemoryRaceClassRepository:
    def __init__(self) -> None:
        self._by_key: dict[tuple[str, str], RaceClass] = {}

    @property
    def size(self) -> int:
        return len(self._by_key)

    def upsert_by_source(
        self, event_id: str, class_code: str, source_url: str, name: str
    ) -> RaceClass:
        key = (event_id, class_code)
        existing = self._by_key.get(key)
        if existing is not None:
            existing.name = name
            existing.source_url = source_url
            return existing
        race_class = RaceClass(_new_id(), event_id, class_code, source_url, name)
        self._by_key[key] = race_class
        return race_class


class InMemorySessionRepository:
    def __init__(self) -> None:
        self._by_source: dict[str, Session] = {}

    @property
    def size(self) -> int:
        return len(self._by_source)

    def upsert_by_source(
        self,
        event_id: str,
        race_class_id: str,
        source_session_id: str,
        source_url: str,
        name: str,
        session_type: str | None = None,
        scheduled_start: datetime | None = None,
    ) -> Session:
        existing = self._by_source.get(source_session_id)
        if existing is not None:
            existing.name = name
            existing.source_url = source_url
            existing.race_class_id = race_class_id
            existing.session_type = session_type or existing.session_type
            existing.scheduled_start = scheduled_start or existing.scheduled_start
            return existing
        session = Session(
            _new_id(), event_id, race_class_id, source_session_id, source_url,
            name, session_type, scheduled_start,
        )
        self._by_source[source_session_id] = session
        return session

    def list_by_event(self, event_id: str) -> list[Session]:
        return [s for s in self._by_source.values() if s.event_id == event_id]


class InMemoryDriverRepository:
    def __init__(self) -> None:
        self._by_source: dict[tuple[str, str], Driver] = {}
        self._by_name: dict[str, Driver] = {}

    @property
    def size(self) -> int:
        return len(self._by_source) + len(self._by_name)

    def upsert_by_source(
        self, provider: str, source_driver_id: str, display_name: str
    ) -> Driver:
        key = (provider, source_driver_id)
        existing = self._by_source.get(key)
        if existing is not None:
            existing.display_name = display_name
            return existing
        driver = Driver(_new_id(), display_name, provider, source_driver_id)
        self._by_source[key] = driver
        return driver

    def upsert_by_display_name(self, display_name: str) -> Driver:
        key = driver_name_key(display_name) or display_name
        existing = self._by_name.get(key)
        if existing is not None:
            return existing
        driver = Driver(_new_id(), display_name)
        self._by_name[key] = driver
        return driver

    def find_by_display_name(self, display_name: str) -> Driver | None:
        return self._by_name.get(driver_name_key(display_name) or display_name)


class InMemoryEntrantRepository:
    def __init__(self) -> None:
        self._by_key: dict[tuple[str, str, str, str], Entrant] = {}

    @property
    def size(self) -> int:
        return len(self._by_key)

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
    ) -> Entrant:
        key = (event_id, race_class_id, session_id, source_entrant_id)
        existing = self._by_key.get(key)
        if existing is not None:
            existing.display_name = display_name
            existing.driver_id = driver_id or existing.driver_id
            existing.car_number = car_number
            existing.source_transponder_id = source_transponder_id
            return existing
        entrant = Entrant(
            _new_id(), event_id, race_class_id, session_id, source_entrant_id,
            display_name, driver_id, car_number, source_transponder_id,
        )
        self._by_key[key] = entrant
        return entrant

    def list_by_session(self, session_id: str) -> list[Entrant]:
        return [e for e in self._by_key.values() if e.session_id == session_id]


class InMemoryLapRepository:
    def __init__(self) -> None:
        self._by_entrant: dict[tuple[str, str], list[LapInput]] = {}

    @property
    def size(self) -> int:
        return sum(len(laps) for laps in self._by_entrant.values())

    def replace_for_entrant(
        self, entrant_id: str, session_id: str, laps: list[LapInput]
    ) -> int:
        self._by_entrant[(entrant_id, session_id)] = list(laps)
        return len(laps)

    def list_for_entrant(self, entrant_id: str, session_id: str) -> list[LapInput]:
        return list(self._by_entrant.get((entrant_id, session_id), []))

    def count_for_session(self, session_id: str) -> int:
        return sum(len(v) for (_, sid), v in self._by_entrant.items() if sid == session_id)


class InMemoryResultRowRepository:
    def __init__(self) -> None:
        self._by_key: dict[tuple[str, str], tuple[str, ResultRowInput]] = {}

    @property
    def size(self) -> int:
        return len(self._by_key)

    def upsert_by_session_and_driver(self, row: ResultRowInput) -> str:
        key = (row.session_id, row.driver_id)
        existing = self._by_key.get(key)
        row_id = existing[0] if existing else _new_id()
        self._by_key[key] = (row_id, replace(row))
        return row_id

    def get(self, session_id: str, driver_id: str) -> ResultRowInput | None:
        found = self._by_key.get((session_id, driver_id))
        return found[1] if found else None


class InMemoryClubRepository:
    def __init__(self, clubs: list[Club] | None = None) -> None:
        self._by_id = {c.id: c for c in clubs or []}

    def add(self, club: Club) -> None:
        self._by_id[club.id] = club

    def find_by_id(self, club_id: str) -> Club | None:
        return self._by_id.get(club_id)


class InMemoryImportJobRepository:
    """Job store; take_next_queued_job claims under a lock."""

    def __init__(self) -> None:
        self._jobs: dict[str, ImportJob] = {}
        self._order: list[str] = []
        self._items: dict[str, ImportJobItem] = {}
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return len(self._jobs)

    def create_job(
        self, plan_id: str, plan_hash: str, mode: str, items: list[NewJobItem]
    ) -> ImportJob:
        with self._lock:
            job = ImportJob(id=_new_id(), plan_id=plan_id, plan_hash=plan_hash, mode=mode)
            for new_item in items:
                item = ImportJobItem(
                    id=_new_id(),
                    target_ref=new_item.target_ref,
                    target_type=new_item.target_type,
                )
                job.items.append(item)
                self._items[item.id] = item
            self._jobs[job.id] = job
            self._order.append(job.id)
            return job

    def get_job(self, job_id: str) -> ImportJob | None:
        return self._jobs.get(job_id)

    def take_next_queued_job(self) -> ImportJob | None:
        with self._lock:
            for job_id in self._order:
                job = self._jobs[job_id]
                if job.state != JOB_QUEUED:
                    continue
                job.state = JOB_RUNNING
                job.progress_pct = 0
                for item in job.items:
                    if item.state == JOB_QUEUED:
                        item.state = JOB_RUNNING
                return job
        return None

    def mark_job_succeeded(self, job_id: str, message: str | None = None) -> None:
        with self._lock:
            job = self._jobs[job_id]
            job.state = JOB_SUCCEEDED
            job.progress_pct = 100
            job.message = message

    def mark_job_failed(self, job_id: str, message: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            job.state = JOB_FAILED
            job.message = message

    def update_job_progress(self, job_id: str, progress_pct: int) -> None:
        with self._lock:
            self._jobs[job_id].progress_pct = max(0, min(100, progress_pct))

    def update_job_item(
        self,
        item_id: str,
        state: str,
        message: str | None = None,
        counts: SummaryImportCounts | None = None,
    ) -> None:
        with self._lock:
            item = self._items[item_id]
            item.state = state
            item.message = message
            if counts is not None:
                item.counts = counts


class InMemoryImportPlanRepository:
    """Derives event state from the in-memory entity repositories."""

    def __init__(self, repositories: Repositories) -> None:
        self._repos = repositories

    def get_event_state_by_ref(self, event_ref: str) -> ImportPlanEventState | None:
        events = self._repos.events
        sessions = self._repos.sessions
        laps = self._repos.laps
        entrants = self._repos.entrants
        event = events.find_by_source_url(event_ref)  # type: ignore[attr-defined]
        if event is None:
            return None
        event_sessions = sessions.list_by_event(event.id)  # type: ignore[attr-defined]
        lap_counts = [laps.count_for_session(s.id) for s in event_sessions]  # type: ignore[attr-defined]
        return ImportPlanEventState(
            event_id=event.id,
            session_count=len(event_sessions),
            sessions_with_laps=sum(1 for c in lap_counts if c > 0),
            lap_count=sum(lap_counts),
            entrant_count=sum(len(entrants.list_by_session(s.id)) for s in event_sessions),
        )


def build_memory_repositories() -> Repositories:
    return Repositories(
        events=InMemoryEventRepository(),
        race_classes=InMemoryRaceClassRepository(),
        sessions=InMemorySessionRepository(),
        drivers=InMemoryDriverRepository(),
        entrants=InMemoryEntrantRepository(),
        laps=InMemoryLapRepository(),
        result_rows=InMemoryResultRowRepository(),
    )
