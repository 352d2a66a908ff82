"""liverc_etl.pg_store

PostgreSQL repository adapters (psycopg 3) over the tables created by
migrations/0001_liverc_core.sql and migrations/0002_import_jobs.sql.

Entity repositories run their statements on the caller's connection and
leave commit/rollback to the caller.  The job repository wraps each
state change in its own transaction so other processes observe it; give
it an autocommit connection.

psycopg errors are re-raised as PersistenceError.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Iterator
from urllib.parse import urlsplit

import psycopg

from liverc_etl.errors import PersistenceError
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


@contextmanager
def _db_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except psycopg.Error as exc:
        raise PersistenceError(f"{operation} failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Events, classes, sessions
# ---------------------------------------------------------------------------

class PgEventRepository:
    def __init__(self, conn: psycopg.Connection, provider: str = "liverc") -> None:
        self._conn = conn
        self._provider = provider

    def upsert_by_source(self, source_event_id: str, source_url: str, name: str) -> Event:
        with _db_errors("event upsert"):
            row = self._conn.execute(
                """
                INSERT INTO liverc_event (name, source_event_id, source_url, provider)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (source_event_id) DO UPDATE SET
                  name = EXCLUDED.name,
                  source_url = EXCLUDED.source_url,
                  updated_at = now()
                RETURNING id, updated_at
                """,
                (name, source_event_id, source_url, self._provider),
            ).fetchone()
        return Event(str(row[0]), source_event_id, source_url, name, row[1])

    def find_by_source_id(self, source_event_id: str) -> Event | None:
        with _db_errors("event lookup"):
            row = self._conn.execute(
                """
                SELECT id, source_event_id, source_url, name, updated_at
                FROM liverc_event WHERE source_event_id = %s
                """,
                (source_event_id,),
            ).fetchone()
        return Event(str(row[0]), row[1], row[2], row[3], row[4]) if row else None


class PgRaceClassRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def upsert_by_source(
        self, event_id: str, class_code: str, source_url: str, name: str
    ) -> RaceClass:
        with _db_errors("race class upsert"):
            row = self._conn.execute(
                """
                INSERT INTO liverc_race_class (event_id, name, class_code, source_url)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (event_id, class_code) DO UPDATE SET
                  name = EXCLUDED.name,
                  source_url = EXCLUDED.source_url,
                  updated_at = now()
                RETURNING id
                """,
                (event_id, name, class_code, source_url),
            ).fetchone()
        return RaceClass(str(row[0]), event_id, class_code, source_url, name)


class PgSessionRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def upsert_by_source(
        self,
        event_id,
        race_class_id,
        source_session_id,
        source_url,
        name,
        session_type=None,
        scheduled_start=None,
    ) -> Session:
        with _db_errors("session upsert"):
            row = self._conn.execute(
                """
                INSERT INTO liverc_session
                  (event_id, race_class_id, name, source_session_id, source_url,
                   session_type, scheduled_start)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (source_session_id) DO UPDATE SET
                  race_class_id = EXCLUDED.race_class_id,
                  name = EXCLUDED.name,
                  source_url = EXCLUDED.source_url,
                  session_type = COALESCE(EXCLUDED.session_type, liverc_session.session_type),
                  scheduled_start = COALESCE(EXCLUDED.scheduled_start, liverc_session.scheduled_start),
                  updated_at = now()
                RETURNING id, session_type, scheduled_start
                """,
                (event_id, race_class_id, name, source_session_id, source_url,
                 session_type, scheduled_start),
            ).fetchone()
        return Session(
            str(row[0]), event_id, race_class_id, source_session_id, source_url,
            name, row[1], row[2],
        )


# ---------------------------------------------------------------------------
# Drivers, entrants
# ---------------------------------------------------------------------------

class PgDriverRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def upsert_by_source(
        self, provider: str, source_driver_id: str, display_name: str
    ) -> Driver:
        with _db_errors("driver upsert"):
            row = self._conn.execute(
                """
                INSERT INTO liverc_driver
                  (display_name, display_name_key, provider, source_driver_id)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (provider, source_driver_id)
                  WHERE source_driver_id IS NOT NULL
                DO UPDATE SET
                  display_name = EXCLUDED.display_name,
                  display_name_key = EXCLUDED.display_name_key,
                  updated_at = now()
                RETURNING id
                """,
                (display_name, driver_name_key(display_name) or display_name,
                 provider, source_driver_id),
            ).fetchone()
        return Driver(str(row[0]), display_name, provider, source_driver_id)

    def upsert_by_display_name(self, display_name: str) -> Driver:
        key = driver_name_key(display_name) or display_name
        with _db_errors("driver upsert"):
            row = self._conn.execute(
                """
                INSERT INTO liverc_driver (display_name, display_name_key)
                VALUES (%s, %s)
                ON CONFLICT (display_name_key) WHERE source_driver_id IS NULL
                DO UPDATE SET updated_at = now()
                RETURNING id, display_name
                """,
                (display_name, key),
            ).fetchone()
        return Driver(str(row[0]), row[1])

    def find_by_display_name(self, display_name: str) -> Driver | None:
        key = driver_name_key(display_name) or display_name
        with _db_errors("driver lookup"):
            row = self._conn.execute(
                """
                SELECT id, display_name FROM liverc_driver
                WHERE display_name_key = %s AND source_driver_id IS NULL
                """,
                (key,),
            ).fetchone()
        return Driver(str(row[0]), row[1]) if row else None


class PgEntrantRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def upsert_by_source(
        self,
        event_id,
        race_class_id,
        session_id,
        source_entrant_id,
        display_name,
        driver_id=None,
        car_number=None,
        source_transponder_id=None,
    ) -> Entrant:
        with _db_errors("entrant upsert"):
            row = self._conn.execute(
                """
                INSERT INTO liverc_entrant
                  (event_id, race_class_id, session_id, driver_id, display_name,
                   car_number, source_entrant_id, source_transponder_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (event_id, race_class_id, session_id, source_entrant_id)
                DO UPDATE SET
                  display_name = EXCLUDED.display_name,
                  driver_id = COALESCE(EXCLUDED.driver_id, liverc_entrant.driver_id),
                  car_number = EXCLUDED.car_number,
                  source_transponder_id = EXCLUDED.source_transponder_id,
                  updated_at = now()
                RETURNING id, driver_id
                """,
                (event_id, race_class_id, session_id, driver_id, display_name,
                 car_number, source_entrant_id, source_transponder_id),
            ).fetchone()
        return Entrant(
            str(row[0]), event_id, race_class_id, session_id, source_entrant_id,
            display_name, str(row[1]) if row[1] else None, car_number,
            source_transponder_id,
        )

    def list_by_session(self, session_id: str) -> list[Entrant]:
        with _db_errors("entrant list"):
            rows = self._conn.execute(
                """
                SELECT id, event_id, race_class_id, session_id, source_entrant_id,
                       display_name, driver_id, car_number, source_transponder_id
                FROM liverc_entrant WHERE session_id = %s
                ORDER BY source_entrant_id
                """,
                (session_id,),
            ).fetchall()
        return [
            Entrant(
                str(r[0]), str(r[1]), str(r[2]), str(r[3]), r[4], r[5],
                str(r[6]) if r[6] else None, r[7], r[8],
            )
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Laps, result rows
# ---------------------------------------------------------------------------

class PgLapRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def replace_for_entrant(
        self, entrant_id: str, session_id: str, laps: list[LapInput]
    ) -> int:
        """Delete then insert the entrant's laps for the session atomically."""
        with _db_errors("lap replace"), self._conn.transaction():
            self._conn.execute(
                "DELETE FROM liverc_lap WHERE entrant_id = %s AND session_id = %s",
                (entrant_id, session_id),
            )
            if laps:
                with self._conn.cursor() as cur:
                    cur.executemany(
                        """
                        INSERT INTO liverc_lap
                          (id, entrant_id, session_id, driver_id, lap_number, lap_time_ms)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO UPDATE SET
                          entrant_id = EXCLUDED.entrant_id,
                          session_id = EXCLUDED.session_id,
                          driver_id = EXCLUDED.driver_id,
                          lap_number = EXCLUDED.lap_number,
                          lap_time_ms = EXCLUDED.lap_time_ms
                        """,
                        [
                            (lap.id, entrant_id, session_id, lap.driver_id,
                             lap.lap_number, lap.lap_time_ms)
                            for lap in laps
                        ],
                    )
        return len(laps)

    def list_for_entrant(self, entrant_id: str, session_id: str) -> list[LapInput]:
        with _db_errors("lap list"):
            rows = self._conn.execute(
                """
                SELECT id, entrant_id, session_id, lap_number, lap_time_ms, driver_id
                FROM liverc_lap
                WHERE entrant_id = %s AND session_id = %s
                ORDER BY lap_number
                """,
                (entrant_id, session_id),
            ).fetchall()
        return [
            LapInput(r[0], str(r[1]), str(r[2]), r[3], r[4], str(r[5]) if r[5] else None)
            for r in rows
        ]


_RESULT_COLUMNS = (
    "position", "car_number", "laps", "total_time_ms", "behind_ms",
    "fastest_lap_ms", "fastest_lap_num", "avg_lap_ms", "avg_top5_ms",
    "avg_top10_ms", "avg_top15_ms", "top3_consec_ms", "std_dev_ms",
    "consistency_pct",
)


class PgResultRowRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def upsert_by_session_and_driver(self, row: ResultRowInput) -> str:
        columns = ", ".join(_RESULT_COLUMNS)
        placeholders = ", ".join(["%s"] * (len(_RESULT_COLUMNS) + 2))
        updates = ",\n  ".join(f"{c} = EXCLUDED.{c}" for c in _RESULT_COLUMNS)
        with _db_errors("result row upsert"):
            result = self._conn.execute(
                f"""
                INSERT INTO liverc_result_row (session_id, driver_id, {columns})
                VALUES ({placeholders})
                ON CONFLICT (session_id, driver_id) DO UPDATE SET
                  {updates},
                  updated_at = now()
                RETURNING id
                """,
                (row.session_id, row.driver_id,
                 *(getattr(row, c) for c in _RESULT_COLUMNS)),
            ).fetchone()
        return str(result[0])


# ---------------------------------------------------------------------------
# Clubs, plan state
# ---------------------------------------------------------------------------

class PgClubRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def find_by_id(self, club_id: str) -> Club | None:
        with _db_errors("club lookup"):
            row = self._conn.execute(
                """
                SELECT id, subdomain, display_name, country, region
                FROM liverc_club WHERE id::text = %s AND is_active
                """,
                (club_id,),
            ).fetchone()
        return Club(str(row[0]), row[1], row[2], row[3], row[4]) if row else None


def _slug_candidates(event_ref: str) -> list[str]:
    parts = [p for p in urlsplit(event_ref).path.split("/") if p]
    if "results" in parts:
        idx = parts.index("results")
        if idx + 1 < len(parts):
            return [parts[idx + 1]]
    return [parts[-1]] if parts else [event_ref]


class PgImportPlanRepository:
    """Resolves an event by source url (then by slug) and aggregates its state."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def get_event_state_by_ref(self, event_ref: str) -> ImportPlanEventState | None:
        with _db_errors("plan state lookup"):
            event = self._conn.execute(
                """
                SELECT id, entries_count, drivers_count FROM liverc_event
                WHERE source_url = %s OR source_event_id = ANY(%s)
                ORDER BY (source_url = %s) DESC
                LIMIT 1
                """,
                (event_ref, _slug_candidates(event_ref), event_ref),
            ).fetchone()
            if event is None:
                return None
            stats = self._conn.execute(
                """
                SELECT
                  (SELECT count(*) FROM liverc_session s WHERE s.event_id = %(e)s),
                  (SELECT count(DISTINCT l.session_id) FROM liverc_lap l
                     JOIN liverc_session s ON s.id = l.session_id
                    WHERE s.event_id = %(e)s),
                  (SELECT count(*) FROM liverc_lap l
                     JOIN liverc_session s ON s.id = l.session_id
                    WHERE s.event_id = %(e)s),
                  (SELECT count(*) FROM liverc_entrant en WHERE en.event_id = %(e)s)
                """,
                {"e": event[0]},
            ).fetchone()
        return ImportPlanEventState(
            event_id=str(event[0]),
            session_count=stats[0],
            sessions_with_laps=stats[1],
            lap_count=stats[2],
            entrant_count=stats[3],
            entries_count=event[1],
            drivers_count=event[2],
        )


# ---------------------------------------------------------------------------
# Import jobs
# ---------------------------------------------------------------------------

class PgImportJobRepository:
    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def create_job(
        self, plan_id: str, plan_hash: str, mode: str, items: list[NewJobItem]
    ) -> ImportJob:
        with _db_errors("job create"), self._conn.transaction():
            row = self._conn.execute(
                """
                INSERT INTO liverc_import_job (plan_id, plan_hash, mode)
                VALUES (%s, %s, %s)
                RETURNING id
                """,
                (plan_id, plan_hash, mode),
            ).fetchone()
            job = ImportJob(id=str(row[0]), plan_id=plan_id, plan_hash=plan_hash, mode=mode)
            for position, new_item in enumerate(items):
                item_row = self._conn.execute(
                    """
                    INSERT INTO liverc_import_job_item
                      (job_id, position, target_type, target_ref)
                    VALUES (%s, %s, %s, %s)
                    RETURNING id
                    """,
                    (job.id, position, new_item.target_type, new_item.target_ref),
                ).fetchone()
                job.items.append(ImportJobItem(
                    id=str(item_row[0]),
                    target_ref=new_item.target_ref,
                    target_type=new_item.target_type,
                ))
        return job

    def _load_items(self, job_id: str) -> list[ImportJobItem]:
        rows = self._conn.execute(
            """
            SELECT id, target_ref, target_type, state, message, counts
            FROM liverc_import_job_item WHERE job_id = %s
            ORDER BY position
            """,
            (job_id,),
        ).fetchall()
        return [
            ImportJobItem(
                id=str(r[0]), target_ref=r[1], target_type=r[2], state=r[3],
                message=r[4],
                counts=SummaryImportCounts.from_dict(r[5]) if r[5] is not None else None,
            )
            for r in rows
        ]

    def get_job(self, job_id: str) -> ImportJob | None:
        with _db_errors("job lookup"), self._conn.transaction():
            row = self._conn.execute(
                """
                SELECT id, plan_id, plan_hash, mode, state, progress_pct, message
                FROM liverc_import_job WHERE id::text = %s
                """,
                (job_id,),
            ).fetchone()
            if row is None:
                return None
            items = self._load_items(str(row[0]))
        return ImportJob(
            id=str(row[0]), plan_id=row[1], plan_hash=row[2], mode=row[3],
            state=row[4], progress_pct=row[5], message=row[6], items=items,
        )

    def take_next_queued_job(self) -> ImportJob | None:
        """Claim the oldest QUEUED job; concurrent workers skip locked rows."""
        with _db_errors("job claim"), self._conn.transaction():
            row = self._conn.execute(
                """
                SELECT id FROM liverc_import_job
                WHERE state = %s
                ORDER BY created_at, id
                LIMIT 1
                FOR UPDATE SKIP LOCKED
                """,
                (JOB_QUEUED,),
            ).fetchone()
            if row is None:
                return None
            job_row = self._conn.execute(
                """
                UPDATE liverc_import_job
                SET state = %s, progress_pct = 0, started_at = now(), updated_at = now()
                WHERE id = %s
                RETURNING id, plan_id, plan_hash, mode, state, progress_pct, message
                """,
                (JOB_RUNNING, row[0]),
            ).fetchone()
            self._conn.execute(
                """
                UPDATE liverc_import_job_item
                SET state = %s, updated_at = now()
                WHERE job_id = %s AND state = %s
                """,
                (JOB_RUNNING, row[0], JOB_QUEUED),
            )
            items = self._load_items(str(row[0]))
        return ImportJob(
            id=str(job_row[0]), plan_id=job_row[1], plan_hash=job_row[2],
            mode=job_row[3], state=job_row[4], progress_pct=job_row[5],
            message=job_row[6], items=items,
        )

    def mark_job_succeeded(self, job_id: str, message: str | None = None) -> None:
        with _db_errors("job update"), self._conn.transaction():
            self._conn.execute(
                """
                UPDATE liverc_import_job
                SET state = %s, progress_pct = 100, message = %s,
                    finished_at = now(), updated_at = now()
                WHERE id = %s
                """,
                (JOB_SUCCEEDED, message, job_id),
            )

    def mark_job_failed(self, job_id: str, message: str) -> None:
        with _db_errors("job update"), self._conn.transaction():
            self._conn.execute(
                """
                UPDATE liverc_import_job
                SET state = %s, message = %s, finished_at = now(), updated_at = now()
                WHERE id = %s
                """,
                (JOB_FAILED, message, job_id),
            )

    def update_job_progress(self, job_id: str, progress_pct: int) -> None:
        with _db_errors("job update"), self._conn.transaction():
            self._conn.execute(
                """
                UPDATE liverc_import_job
                SET progress_pct = %s, updated_at = now()
                WHERE id = %s
                """,
                (max(0, min(100, progress_pct)), job_id),
            )

    def update_job_item(
        self,
        item_id: str,
        state: str,
        message: str | None = None,
        counts: SummaryImportCounts | None = None,
    ) -> None:
        payload = json.dumps(counts.to_dict()) if counts is not None else None
        with _db_errors("job item update"), self._conn.transaction():
            self._conn.execute(
                """
                UPDATE liverc_import_job_item
                SET state = %s, message = %s,
                    counts = COALESCE(%s::jsonb, counts),
                    updated_at = now()
                WHERE id = %s
                """,
                (state, message, payload, item_id),
            )


def build_pg_repositories(conn: psycopg.Connection, provider: str = "liverc") -> Repositories:
    return Repositories(
        events=PgEventRepository(conn, provider),
        race_classes=PgRaceClassRepository(conn),
        sessions=PgSessionRepository(conn),
        drivers=PgDriverRepository(conn),
        entrants=PgEntrantRepository(conn),
        laps=PgLapRepository(conn),
        result_rows=PgResultRowRepository(conn),
    )
