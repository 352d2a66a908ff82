"""CLI-level tests for the in-memory (no database) modes."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from liverc_etl.cli import main

EVENT_URL = "https://live.liverc.com/results/club-champs/"

OVERVIEW_HTML = """
<h1>Club Champs</h1>
<h3>Main Event</h3>
<table>
  <tr><th>Race</th><th>Class</th></tr>
  <tr><td><a href="pro-buggy/a-main/race-1">A-Main</a></td><td>Pro Buggy</td></tr>
</table>
"""

CLUB_EVENTS_HTML = """
<table class="events">
  <tr><td>2025-03-01</td><td><a href="/events/spring/">Spring Series</a></td></tr>
  <tr><td>2025-04-01</td><td><a href="/events/later/">Later</a></td></tr>
</table>
"""


@pytest.fixture()
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("LIVERC_DB_DSN", raising=False)
    return tmp_path


def _report(workdir, run_id: str) -> dict:
    return json.loads((workdir / "artifacts" / "reports" / f"{run_id}.json").read_text())


# ---------------------------------------------------------------------------
# race_file
# ---------------------------------------------------------------------------

class TestRaceFileMode:
    def test_imports_payload_and_writes_report(self, workdir):
        payload = workdir / "heat1.json"
        payload.write_text(json.dumps({"laps": [
            {"entry_id": "7", "driver_name": "Jane Doe", "lap": 1, "lap_time": 30.0},
            {"entry_id": "7", "driver_name": "Jane Doe", "lap": 2, "lap_time": 29.5},
        ]}))
        result = CliRunner().invoke(main, [
            "--mode", "race_file", "--payload-path", str(payload), "--run-id", "race-file-run",
        ])
        assert result.exit_code == 0, result.output
        assert "laps=2" in result.output
        report = _report(workdir, "race-file-run")
        assert report["mode"] == "race_file"
        assert report["result"]["laps_imported"] == 2
        assert report["result"]["source_url"].startswith("uploaded-file://")

    def test_payload_without_laps_is_fatal(self, workdir):
        payload = workdir / "empty.json"
        payload.write_text(json.dumps({"event_id": "E1"}))
        result = CliRunner().invoke(main, ["--mode", "race_file", "--payload-path", str(payload)])
        assert result.exit_code == 1
        assert "FATAL" in result.output

    def test_invalid_json_is_fatal(self, workdir):
        payload = workdir / "broken.json"
        payload.write_text("{not json")
        result = CliRunner().invoke(main, ["--mode", "race_file", "--payload-path", str(payload)])
        assert result.exit_code == 1
        assert "not valid JSON" in result.output


# ---------------------------------------------------------------------------
# Argument checks
# ---------------------------------------------------------------------------

class TestArgumentChecks:
    def test_event_summary_requires_event_url(self, workdir):
        result = CliRunner().invoke(main, ["--mode", "event_summary"])
        assert result.exit_code == 1
        assert "--event-url" in result.output

    @pytest.mark.parametrize("args", [
        ["--mode", "apply", "--plan-id", "p1"],
        ["--mode", "worker"],
        ["--mode", "job_status", "--job-id", "j1"],
    ])
    def test_job_modes_require_database(self, workdir, args):
        result = CliRunner().invoke(main, args)
        assert result.exit_code == 1
        assert "requires --db-dsn" in result.output

    def test_bad_settings_file_is_fatal(self, workdir):
        config = workdir / "liverc.yaml"
        config.write_text("bogus_key: 1\n")
        result = CliRunner().invoke(main, ["--mode", "discover", "--config", str(config)])
        assert result.exit_code == 1
        assert "invalid settings" in result.output


# ---------------------------------------------------------------------------
# discover / plan
# ---------------------------------------------------------------------------

class TestDiscoverMode:
    def test_lists_events_for_subdomain(self, workdir, monkeypatch):
        monkeypatch.setattr(
            "liverc_etl.cli.HttpScrapingClient.get_club_events_page",
            lambda self, subdomain: CLUB_EVENTS_HTML,
        )
        result = CliRunner().invoke(main, [
            "--mode", "discover", "--club-id", "c1", "--club-subdomain", "mytrack",
            "--start-date", "2025-03-01", "--end-date", "2025-03-07", "--run-id", "disc",
        ])
        assert result.exit_code == 0, result.output
        assert "Spring Series" in result.output
        assert _report(workdir, "disc")["result"]["events"][0]["eventRef"] == (
            "https://mytrack.liverc.com/events/spring")

    def test_range_too_long_is_fatal(self, workdir):
        result = CliRunner().invoke(main, [
            "--mode", "discover", "--club-id", "c1", "--club-subdomain", "mytrack",
            "--start-date", "2025-03-01", "--end-date", "2025-03-31",
        ])
        assert result.exit_code == 1
        assert "FATAL" in result.output


class TestPlanMode:
    def test_plan_saved_to_plans_dir(self, workdir, monkeypatch):
        monkeypatch.setattr(
            "liverc_etl.cli.HttpScrapingClient.get_event_overview",
            lambda self, url: OVERVIEW_HTML,
        )
        result = CliRunner().invoke(main, [
            "--mode", "plan", "--event-url", EVENT_URL,
            "--plans-dir", str(workdir / "plans"), "--run-id", "plan-run",
        ])
        assert result.exit_code == 0, result.output
        plan = _report(workdir, "plan-run")["result"]
        assert plan["items"][0]["status"] == "NEW"
        saved = json.loads((workdir / "plans" / f"{plan['planId']}.json").read_text())
        assert saved == plan

    def test_dry_run_does_not_save(self, workdir, monkeypatch):
        monkeypatch.setattr(
            "liverc_etl.cli.HttpScrapingClient.get_event_overview",
            lambda self, url: OVERVIEW_HTML,
        )
        result = CliRunner().invoke(main, [
            "--mode", "plan", "--event-url", EVENT_URL, "--dry-run",
            "--plans-dir", str(workdir / "plans"),
        ])
        assert result.exit_code == 0, result.output
        assert not (workdir / "plans").exists()
