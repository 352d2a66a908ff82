"""Unit tests for LiveRC HTML page parsers."""

from __future__ import annotations

from datetime import date

import pytest

from liverc_etl.html_parse import (
    SESSION_TYPE_MAIN,
    SESSION_TYPE_QUAL,
    enumerate_sessions_from_event_html,
    extract_event_metadata_from_html,
    normalize_event_ref,
    parse_club_events_from_html,
    parse_event_date,
    parse_session_results_from_html,
)

EVENT_HTML = """
<html><head>
  <link rel="canonical" href="/events/2025-club-champs/">
  <title>LiveRC | Club Champs</title>
</head><body>
<h1>2025 Club Champs</h1>
<h3>Main Event</h3>
<table>
  <thead><tr><th>Race</th><th>Class</th><th>Round</th><th>Completed</th></tr></thead>
  <tbody>
    <tr>
      <td><a href="/results/?p=view_race_result&id=101">A-Main</a></td>
      <td>Pro Buggy</td><td></td>
      <td><time datetime="2025-03-01T18:30:00Z">6:30pm</time></td>
    </tr>
  </tbody>
</table>
<h3>Qualifier Round 2</h3>
<table>
  <tr><th>Race</th><th>Class</th><th>Heat</th><th>Time</th></tr>
  <tr>
    <td><a href="/results/?p=view_race_result&id=201">Heat 1</a></td>
    <td>Pro  Buggy</td><td>Heat 1/3</td><td>2025-03-01 14:05</td>
  </tr>
  <tr><td colspan="4">Intermission</td></tr>
  <tr><td><a href="/results/?p=view_race_result&id=202">No class</a></td><td></td><td></td><td></td></tr>
</table>
<h3>Schedule</h3>
<table><tr><td><a href="/schedule">Practice</a></td><td>Open</td></tr></table>
</body></html>
"""

SESSION_HTML = """
<html><head><title>A-Main Pro Buggy</title></head><body>
<table class="results">
  <thead><tr>
    <th>Pos</th><th>Driver</th><th>Car</th><th>Laps/Time</th><th>Behind</th>
    <th>Fastest</th><th>Avg Lap</th><th>Avg Top 5</th><th>Top 3 Consecutive</th>
    <th>Std. Deviation</th><th>Consistency</th>
  </tr></thead>
  <tbody>
    <tr data-entry-id="E77">
      <td>1</td><td><a href="/driver?id=9">Jane Doe</a></td><td>5</td><td>12/5:02.123</td>
      <td></td><td>24.512 (7)</td><td>25.100</td><td>24.700</td><td>1:14.000</td>
      <td>0.350</td><td>92.5%</td>
    </tr>
    <tr>
      <td>2</td><td><a href="/driver?driver_id=D2">John Roe</a></td><td>12</td><td>12/5:04.000</td>
      <td>1.877</td><td>24.900</td><td>25.300</td><td></td><td></td><td></td><td></td>
    </tr>
    <tr><td>3</td><td></td><td>7</td><td></td><td></td><td></td><td></td><td></td><td></td><td></td><td></td></tr>
  </tbody>
</table>
</body></html>
"""

CLUB_EVENTS_HTML = """
<table class="events">
  <tr><th>Date</th><th>Event</th></tr>
  <tr><td class="event-date">2025-03-01</td><td><a href="/events/spring-1/">Spring Series #1</a></td></tr>
  <tr><td>Mar 08, 2025</td><td><a href="/events/spring-2/?tab=info#top">Spring Series #2</a></td></tr>
  <tr><td>TBD</td><td><a href="/events/tbd/">Unknown date</a></td></tr>
</table>
"""


# ---------------------------------------------------------------------------
# enumerate_sessions_from_event_html
# ---------------------------------------------------------------------------

class TestEnumerateSessions:
    def test_main_and_qualifier_sections(self):
        sessions = enumerate_sessions_from_event_html(EVENT_HTML)
        assert [s.title for s in sessions] == ["A-Main", "Heat 1"]

    def test_main_session_fields(self):
        main = enumerate_sessions_from_event_html(EVENT_HTML)[0]
        assert main.type == SESSION_TYPE_MAIN
        assert main.class_name == "Pro Buggy"
        assert main.session_ref == "/results/?p=view_race_result&id=101"
        assert main.round_label is None
        assert main.completed_at == "2025-03-01T18:30:00.000Z"

    def test_qualifier_round_from_heading(self):
        qual = enumerate_sessions_from_event_html(EVENT_HTML)[1]
        assert qual.type == SESSION_TYPE_QUAL
        assert qual.round_label == "Round 2"
        assert qual.heat_label == "Heat 1/3"
        assert qual.class_name == "Pro Buggy"
        assert qual.completed_at == "2025-03-01T14:05:00.000Z"

    def test_empty_page(self):
        assert enumerate_sessions_from_event_html("") == []


# ---------------------------------------------------------------------------
# extract_event_metadata_from_html
# ---------------------------------------------------------------------------

class TestEventMetadata:
    def test_canonical_link_resolved(self):
        meta = extract_event_metadata_from_html(EVENT_HTML, "https://mytrack.liverc.com/events/x")
        assert meta.canonical_url == "https://mytrack.liverc.com/events/2025-club-champs/"
        assert meta.event_slug == "2025-club-champs"
        assert meta.event_name == "2025 Club Champs"

    def test_falls_back_to_ref_and_slug_title(self):
        meta = extract_event_metadata_from_html(
            "<html></html>", "https://live.liverc.com/results/spring-series/"
        )
        assert meta.canonical_url == "https://live.liverc.com/results/spring-series/"
        assert meta.event_slug == "spring-series"
        assert meta.event_name == "Spring Series"

    def test_query_id_slug(self):
        meta = extract_event_metadata_from_html(
            "<h1>Night Race</h1>", "https://mytrack.liverc.com/results/?p=view_event&id=4242"
        )
        assert meta.event_slug == "4242"
        assert meta.event_name == "Night Race"


# ---------------------------------------------------------------------------
# parse_session_results_from_html
# ---------------------------------------------------------------------------

class TestSessionResults:
    def test_rows_with_driver_names(self):
        results = parse_session_results_from_html(SESSION_HTML, "https://x.liverc.com/s/1")
        assert results.session_name == "A-Main Pro Buggy"
        assert [r.driver_name for r in results.result_rows] == ["Jane Doe", "John Roe"]

    def test_first_row_metrics(self):
        row = parse_session_results_from_html(SESSION_HTML, "https://x.liverc.com/s/1").result_rows[0]
        assert row.entry_id == "E77"
        assert row.position == 1
        assert row.car_number == "5"
        assert row.laps == 12
        assert row.total_time_ms == 302123
        assert row.behind_ms is None
        assert (row.fastest_lap_ms, row.fastest_lap_num) == (24512, 7)
        assert row.avg_lap_ms == 25100
        assert row.avg_top5_ms == 24700
        assert row.top3_consec_ms == 74000
        assert row.std_dev_ms == 350
        assert row.consistency_pct == 92.5

    def test_entry_id_from_link_query(self):
        row = parse_session_results_from_html(SESSION_HTML, "https://x.liverc.com/s/1").result_rows[1]
        assert row.entry_id == "D2"
        assert row.behind_ms == 1877
        assert row.fastest_lap_num is None

    def test_no_results_table(self):
        results = parse_session_results_from_html("<p>No results yet</p>", "https://x/s")
        assert results.result_rows == []
        assert results.canonical_url is None


# ---------------------------------------------------------------------------
# parse_club_events_from_html
# ---------------------------------------------------------------------------

class TestClubEvents:
    ORIGIN = "https://mytrack.liverc.com"

    def test_table_rows(self):
        events = parse_club_events_from_html(CLUB_EVENTS_HTML, self.ORIGIN)
        assert [(e.title, e.when) for e in events] == [
            ("Spring Series #1", date(2025, 3, 1)),
            ("Spring Series #2", date(2025, 3, 8)),
        ]
        assert events[1].event_ref == "https://mytrack.liverc.com/events/spring-2"
        assert events[0].when_iso == "2025-03-01"

    def test_anchor_fallback(self):
        html = ('<ul><li><time datetime="2025-04-05">Apr 5</time> '
                '<a href="https://other.liverc.com/events/x/">X</a></li></ul>')
        events = parse_club_events_from_html(html, self.ORIGIN)
        assert len(events) == 1
        assert events[0].event_ref == "https://other.liverc.com/events/x"
        assert events[0].when == date(2025, 4, 5)

    @pytest.mark.parametrize("raw,expected", [
        ("2025-03-01", date(2025, 3, 1)),
        ("2025-03-01T23:00:00Z", date(2025, 3, 1)),
        ("Saturday, March 1, 2025", date(2025, 3, 1)),
        ("03/01/2025", date(2025, 3, 1)),
        ("soon", None),
        (None, None),
    ])
    def test_parse_event_date(self, raw, expected):
        assert parse_event_date(raw) == expected

    def test_normalize_event_ref(self):
        assert normalize_event_ref("events/a/?q=1", "https://t.liverc.com") == "https://t.liverc.com/events/a"
