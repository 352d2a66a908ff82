"""Integration tests for the PostgreSQL repositories.

Tests run against an ephemeral PostgreSQL database with the LiveRC schema
applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

import psycopg
import pytest

from liverc_etl.errors import PersistenceError
from liverc_etl.models import (
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    LapInput,
    NewJobItem,
    ResultRowInput,
    SummaryImportCounts,
    build_lap_id,
    plan_hash,
)
from liverc_etl.pg_store import (
    PgClubRepository,
    PgImportJobRepository,
    PgImportPlanRepository,
    build_pg_repositories,
)
from liverc_etl.summary import SummaryImporter
from liverc_etl.telemetry import RecordingTelemetry

EVENT_URL = "https://live.liverc.com/results/club-champs"
SESSION_URL = "https://live.liverc.com/results/club-champs/pro-buggy/a-main/race-1"

EVENT_HTML = """
<h1>Club Champs</h1>
<table>
  <tr><th>Race</th><th>Class</th></tr>
  <tr><td><a href="/results/club-champs/pro-buggy/a-main/race-1">A-Main</a></td><td>Pro Buggy</td></tr>
</table>
"""

SESSION_HTML = """
<table><thead><tr><th>Pos</th><th>Driver</th><th>Car</th><th>Laps</th></tr></thead>
<tbody>
  <tr data-entry-id="e1"><td>1</td><td>Jane Doe</td><td>5</td><td>3</td></tr>
  <tr><td>2</td><td>Sam Lee</td><td>7</td><td>2</td></tr>
</tbody></table>
"""

SESSION_JSON = {
    "event_id": "EV1",
    "race_id": "R1",
    "laps": [
        {"entry_id": "e1", "driver_name": "Jane Doe", "lap": 1, "lap_time": 30.1},
        {"entry_id": "e1", "driver_name": "Jane Doe", "lap": 2, "lap_time": 29.8},
        {"entry_id": "e1", "driver_name": "Jane Doe", "lap": 3, "lap_time": 29.9},
        {"entry_id": "e2", "driver_name": "sam lee", "lap": 1, "lap_time": 31.0},
        {"entry_id": "e2", "driver_name": "sam lee", "lap": 2, "lap_time": 0},
    ],
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeLiveRcClient:
    def get_event_overview(self, url_or_ref):
        return EVENT_HTML

    def get_session_page(self, url_or_ref):
        assert url_or_ref == SESSION_URL
        return SESSION_HTML

    def resolve_json_url_from_html(self, html):
        return None

    def fetch_json(self, url):
        assert url == SESSION_URL + ".json"
        return SESSION_JSON


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


def _seed_session(repos):
    event = repos.events.upsert_by_source("club-champs", EVENT_URL, "Club Champs")
    race_class = repos.race_classes.upsert_by_source(
        event.id, "pro-buggy", EVENT_URL + "/pro-buggy", "Pro Buggy")
    session = repos.sessions.upsert_by_source(
        event.id, race_class.id, "club-champs/pro-buggy/a-main/race-1", SESSION_URL, "A-Main",
        session_type="main")
    return event, race_class, session


def _lap(entrant, session, number: int, ms: int, driver_id=None) -> LapInput:
    return LapInput(
        id=build_lap_id("EV1", session.id, "R1", "e1", number),
        entrant_id=entrant.id,
        session_id=session.id,
        lap_number=number,
        lap_time_ms=ms,
        driver_id=driver_id,
    )


# ---------------------------------------------------------------------------
# Events, classes, sessions
# ---------------------------------------------------------------------------

class TestEntityUpserts:
    def test_event_upsert_is_idempotent(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        first = repos.events.upsert_by_source("club-champs", EVENT_URL, "Club Champs")
        second = repos.events.upsert_by_source("club-champs", EVENT_URL + "/", "Club Champs 2025")
        assert first.id == second.id
        assert _count(conn, "liverc_event") == 1
        found = repos.events.find_by_source_id("club-champs")
        assert found.name == "Club Champs 2025"
        assert found.source_url == EVENT_URL + "/"
        assert repos.events.find_by_source_id("missing") is None

    def test_session_keeps_known_type_when_missing(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        event, race_class, session = _seed_session(repos)
        again = repos.sessions.upsert_by_source(
            event.id, race_class.id, session.source_session_id, SESSION_URL, "A-Main")
        assert again.id == session.id
        assert again.session_type == "main"
        assert _count(conn, "liverc_session") == 1

    def test_race_class_unique_per_event(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        event, race_class, _ = _seed_session(repos)
        again = repos.race_classes.upsert_by_source(
            event.id, "pro-buggy", EVENT_URL + "/pro-buggy", "2WD Buggy")
        assert again.id == race_class.id
        assert again.name == "2WD Buggy"


# ---------------------------------------------------------------------------
# Drivers
# ---------------------------------------------------------------------------

class TestDriverUpserts:
    def test_source_and_name_keys_are_separate(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        by_source = repos.drivers.upsert_by_source("liverc", "e1", "Jane Doe")
        by_name = repos.drivers.upsert_by_display_name("Jane Doe")
        assert by_source.id != by_name.id
        assert _count(conn, "liverc_driver") == 2

    def test_source_upsert_updates_name(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        first = repos.drivers.upsert_by_source("liverc", "e1", "Jane Doe")
        second = repos.drivers.upsert_by_source("liverc", "e1", "Jane Q. Doe")
        assert first.id == second.id
        assert second.display_name == "Jane Q. Doe"

    def test_name_upsert_matches_normalized_key(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        first = repos.drivers.upsert_by_display_name("Sam Lee")
        second = repos.drivers.upsert_by_display_name("  sam   LEE ")
        assert first.id == second.id
        assert second.display_name == "Sam Lee"
        assert repos.drivers.find_by_display_name("SAM LEE").id == first.id
        assert repos.drivers.find_by_display_name("Nobody") is None


# ---------------------------------------------------------------------------
# Entrants, laps, result rows
# ---------------------------------------------------------------------------

class TestLapsAndResults:
    def test_replace_for_entrant(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        event, race_class, session = _seed_session(repos)
        driver = repos.drivers.upsert_by_source("liverc", "e1", "Jane Doe")
        entrant = repos.entrants.upsert_by_source(
            event.id, race_class.id, session.id, "e1", "Jane Doe", driver_id=driver.id)

        written = repos.laps.replace_for_entrant(entrant.id, session.id, [
            _lap(entrant, session, 1, 30100, driver.id),
            _lap(entrant, session, 2, 29800, driver.id),
            _lap(entrant, session, 3, 29900, driver.id),
        ])
        assert written == 3

        repos.laps.replace_for_entrant(entrant.id, session.id, [
            _lap(entrant, session, 1, 30000, driver.id),
        ])
        laps = repos.laps.list_for_entrant(entrant.id, session.id)
        assert [(lap.lap_number, lap.lap_time_ms) for lap in laps] == [(1, 30000)]
        assert laps[0].driver_id == driver.id

    def test_replace_with_empty_list_clears(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        event, race_class, session = _seed_session(repos)
        entrant = repos.entrants.upsert_by_source(
            event.id, race_class.id, session.id, "e1", "Jane Doe")
        repos.laps.replace_for_entrant(entrant.id, session.id, [_lap(entrant, session, 1, 30000)])
        assert repos.laps.replace_for_entrant(entrant.id, session.id, []) == 0
        assert repos.laps.list_for_entrant(entrant.id, session.id) == []

    def test_non_positive_lap_time_rejected(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        event, race_class, session = _seed_session(repos)
        entrant = repos.entrants.upsert_by_source(
            event.id, race_class.id, session.id, "e1", "Jane Doe")
        with pytest.raises(PersistenceError, match="lap replace"):
            repos.laps.replace_for_entrant(entrant.id, session.id, [_lap(entrant, session, 1, 0)])

    def test_entrant_keeps_driver_link(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        event, race_class, session = _seed_session(repos)
        driver = repos.drivers.upsert_by_source("liverc", "e1", "Jane Doe")
        first = repos.entrants.upsert_by_source(
            event.id, race_class.id, session.id, "e1", "Jane Doe", driver_id=driver.id)
        second = repos.entrants.upsert_by_source(
            event.id, race_class.id, session.id, "e1", "Jane Doe", car_number="5")
        assert first.id == second.id
        assert second.driver_id == driver.id
        assert [e.car_number for e in repos.entrants.list_by_session(session.id)] == ["5"]

    def test_result_row_upsert(self, db_conn):
        conn, _ = db_conn
        repos = build_pg_repositories(conn)
        _, _, session = _seed_session(repos)
        driver = repos.drivers.upsert_by_source("liverc", "e1", "Jane Doe")
        first = repos.result_rows.upsert_by_session_and_driver(ResultRowInput(
            session_id=session.id, driver_id=driver.id, position=2, laps=10,
            consistency_pct=91.25))
        second = repos.result_rows.upsert_by_session_and_driver(ResultRowInput(
            session_id=session.id, driver_id=driver.id, position=1, laps=11))
        assert first == second
        row = conn.execute(
            "SELECT position, laps, consistency_pct FROM liverc_result_row WHERE id = %s",
            (first,),
        ).fetchone()
        assert row == (1, 11, None)


# ---------------------------------------------------------------------------
# Summary import end to end
# ---------------------------------------------------------------------------

class TestSummaryImportIntoPostgres:
    def test_import_and_rerun(self, db_conn):
        conn, _ = db_conn
        importer = SummaryImporter(
            FakeLiveRcClient(), build_pg_repositories(conn), RecordingTelemetry())

        counts = importer.ingest_event_summary(EVENT_URL)
        assert counts.to_dict() == {
            "sessionsImported": 1,
            "resultRowsImported": 2,
            "lapsImported": 4,
            "driversWithLaps": 2,
            "lapsSkipped": 1,
        }

        importer.ingest_event_summary(EVENT_URL)
        conn.commit()
        assert _count(conn, "liverc_event") == 1
        assert _count(conn, "liverc_session") == 1
        assert _count(conn, "liverc_driver") == 2
        assert _count(conn, "liverc_entrant") == 2
        assert _count(conn, "liverc_lap") == 4
        assert _count(conn, "liverc_result_row") == 2


# ---------------------------------------------------------------------------
# Clubs and plan state
# ---------------------------------------------------------------------------

class TestClubRepository:
    def test_find_active_club(self, db_conn):
        conn, _ = db_conn
        club_id = conn.execute(
            """
            INSERT INTO liverc_club (subdomain, display_name, country)
            VALUES ('mytrack', 'My Track', 'US') RETURNING id
            """
        ).fetchone()[0]
        club = PgClubRepository(conn).find_by_id(str(club_id))
        assert club.subdomain == "mytrack"
        assert club.country == "US"

    def test_inactive_and_unknown_clubs(self, db_conn):
        conn, _ = db_conn
        club_id = conn.execute(
            """
            INSERT INTO liverc_club (subdomain, display_name, is_active)
            VALUES ('closed', 'Closed Track', false) RETURNING id
            """
        ).fetchone()[0]
        repo = PgClubRepository(conn)
        assert repo.find_by_id(str(club_id)) is None
        assert repo.find_by_id("not-a-uuid") is None


class TestImportPlanRepository:
    def test_unknown_event(self, db_conn):
        conn, _ = db_conn
        assert PgImportPlanRepository(conn).get_event_state_by_ref(EVENT_URL) is None

    def test_state_by_url_and_slug(self, db_conn):
        conn, _ = db_conn
        importer = SummaryImporter(
            FakeLiveRcClient(), build_pg_repositories(conn), RecordingTelemetry())
        importer.ingest_event_summary(EVENT_URL)
        conn.execute(
            "UPDATE liverc_event SET entries_count = 20, drivers_count = 18"
            " WHERE source_event_id = 'club-champs'"
        )

        repo = PgImportPlanRepository(conn)
        by_url = repo.get_event_state_by_ref(EVENT_URL)
        assert by_url.session_count == 1
        assert by_url.sessions_with_laps == 1
        assert by_url.lap_count == 4
        assert by_url.entrant_count == 2
        assert by_url.entries_count == 20
        assert by_url.drivers_count == 18

        by_slug = repo.get_event_state_by_ref("https://mytrack.liverc.com/results/club-champs/")
        assert by_slug.event_id == by_url.event_id


# ---------------------------------------------------------------------------
# Import jobs
# ---------------------------------------------------------------------------

def _items(*refs: str) -> list[NewJobItem]:
    return [NewJobItem(target_ref=ref) for ref in refs]


class TestImportJobRepository:
    def test_create_and_get(self, job_conn):
        repo = PgImportJobRepository(job_conn)
        job = repo.create_job("plan-1", plan_hash("plan-1"), "SUMMARY", _items("a", "b"))
        loaded = repo.get_job(job.id)
        assert loaded.state == JOB_QUEUED
        assert loaded.progress_pct == 0
        assert [item.target_ref for item in loaded.items] == ["a", "b"]
        assert [item.id for item in loaded.items] == [item.id for item in job.items]

    def test_get_unknown_job(self, job_conn):
        repo = PgImportJobRepository(job_conn)
        assert repo.get_job("00000000-0000-0000-0000-000000000000") is None
        assert repo.get_job("not-a-uuid") is None

    def test_claim_oldest_first(self, job_conn):
        repo = PgImportJobRepository(job_conn)
        first = repo.create_job("plan-1", "h1", "SUMMARY", _items("a"))
        second = repo.create_job("plan-2", "h2", "SUMMARY", _items("b"))

        claimed = repo.take_next_queued_job()
        assert claimed.id == first.id
        assert claimed.state == JOB_RUNNING
        assert claimed.items[0].state == JOB_RUNNING
        assert repo.take_next_queued_job().id == second.id
        assert repo.take_next_queued_job() is None

    def test_locked_job_is_skipped(self, db_conn, job_conn):
        _, dsn = db_conn
        repo = PgImportJobRepository(job_conn)
        job = repo.create_job("plan-1", "h1", "SUMMARY", _items("a"))

        with psycopg.connect(dsn) as other:
            other.execute(
                "SELECT id FROM liverc_import_job WHERE id = %s FOR UPDATE", (job.id,))
            assert repo.take_next_queued_job() is None
            other.rollback()

        assert repo.take_next_queued_job().id == job.id

    def test_progress_items_and_success(self, job_conn):
        repo = PgImportJobRepository(job_conn)
        job = repo.create_job("plan-1", "h1", "SUMMARY", _items("a", "b"))
        repo.take_next_queued_job()

        repo.update_job_item(job.items[0].id, JOB_SUCCEEDED,
                             counts=SummaryImportCounts(sessions_imported=3, laps_imported=40))
        repo.update_job_progress(job.id, 50)
        repo.update_job_item(job.items[1].id, JOB_SUCCEEDED)
        repo.update_job_progress(job.id, 150)
        repo.mark_job_succeeded(job.id)

        loaded = repo.get_job(job.id)
        assert loaded.state == JOB_SUCCEEDED
        assert loaded.progress_pct == 100
        assert loaded.items[0].counts.sessions_imported == 3
        assert loaded.items[0].counts.laps_imported == 40
        assert loaded.items[1].counts is None

    def test_failure_message(self, job_conn):
        repo = PgImportJobRepository(job_conn)
        job = repo.create_job("plan-1", "h1", "SUMMARY", _items("a"))
        repo.take_next_queued_job()
        repo.update_job_item(job.items[0].id, JOB_FAILED, "Import failed")
        repo.mark_job_failed(job.id, "Job failed")

        loaded = repo.get_job(job.id)
        assert loaded.state == JOB_FAILED
        assert loaded.message == "Job failed"
        assert loaded.items[0].message == "Import failed"
        assert loaded.is_terminal
