"""liverc_etl.html_parse

BeautifulSoup parsers for LiveRC HTML pages:

  enumerate_sessions_from_event_html  event overview -> session links
  extract_event_metadata_from_html    event overview -> slug, name, canonical url
  parse_session_results_from_html     session page -> result rows
  parse_club_events_from_html         club /events/ page -> dated event refs

All parsers are pure and tolerant: rows that cannot be read are skipped.
"""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable

from bs4 import BeautifulSoup, Tag

from liverc_etl.normalize import (
    normalize_space,
    parse_duration_ms,
    parse_float,
    parse_int,
    parse_iso_timestamp,
    title_from_slug,
    to_iso_z,
    trim,
)

_HEADING_RE = re.compile(r"^h[1-6]$", re.I)
_ROUND_RE = re.compile(r"round\s+([\w-]+)", re.I)
_COMPLETED_ATTRS = (
    "datetime",
    "data-datetime",
    "data-time",
    "data-utc",
    "data-timestamp",
    "data-value",
    "title",
)
_ENTRY_ID_ATTRS = ("data-entry-id", "data-driver-id", "data-entry", "data-id")
_ENTRY_ID_QUERY_KEYS = ("entry_id", "driver_id", "id")
_EVENT_DATE_FORMATS = (
    "%Y-%m-%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%m/%d/%Y",
    "%a, %b %d, %Y",
    "%A, %B %d, %Y",
)

SESSION_TYPE_MAIN = "MAIN"
SESSION_TYPE_QUAL = "QUAL"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EventSessionSummary:
    session_ref: str
    title: str
    class_name: str
    type: str
    round_label: str | None = None
    heat_label: str | None = None
    completed_at: str | None = None


@dataclass(frozen=True)
class EventMetadata:
    canonical_url: str
    event_slug: str
    event_name: str


@dataclass
class SessionResultRow:
    driver_name: str
    entry_id: str | None = None
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
class SessionResults:
    canonical_url: str | None
    session_name: str | None
    result_rows: list[SessionResultRow] = field(default_factory=list)


@dataclass(frozen=True)
class ClubEvent:
    event_ref: str
    title: str
    when: date

    @property
    def when_iso(self) -> str:
        return self.when.isoformat()


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _text(node: Tag | None) -> str:
    if node is None:
        return ""
    return normalize_space(node.get_text(" ")) or ""


def _is_heading(node: Tag) -> bool:
    return bool(node.name and _HEADING_RE.match(node.name))


def _find_nearest_heading(element: Tag) -> Tag | None:
    current: Tag | None = element
    while current is not None and current.name != "[document]":
        for sibling in current.find_previous_siblings():
            if not isinstance(sibling, Tag):
                continue
            if _is_heading(sibling):
                return sibling
            nested = sibling.find(_HEADING_RE)
            if nested is not None:
                return nested
        parent = current.parent
        current = parent if isinstance(parent, Tag) else None
    return None


def _data_rows(table: Tag) -> Iterable[Tag]:
    body_rows = table.select("tbody tr")
    rows = body_rows if body_rows else table.find_all("tr")
    for row in rows:
        cells = row.find_all("td", recursive=False)
        if not cells:
            continue
        if len(cells) == 1:
            colspan = parse_int(cells[0].get("colspan"))
            if colspan and colspan > 1:
                continue
        yield row


def _header_labels(table: Tag) -> list[str]:
    headers = table.select("thead tr th")
    if not headers:
        first = table.find("tr")
        headers = first.find_all("th") if first else []
    return [_text(h) for h in headers]


def _canonical_url(soup: BeautifulSoup) -> str | None:
    link = soup.find("link", rel="canonical", href=True)
    if link is not None:
        return trim(link["href"])
    meta = soup.find("meta", attrs={"property": "og:url"})
    if meta is not None:
        return trim(meta.get("content"))
    return None


def _page_title(soup: BeautifulSoup) -> str | None:
    for selector in ("h1", "title"):
        node = soup.find(selector)
        text = _text(node)
        if text:
            return text
    return None


# ---------------------------------------------------------------------------
# Event overview: sessions
# ---------------------------------------------------------------------------

def _section_meta(raw_heading: str) -> tuple[str, str | None] | None:
    heading = (normalize_space(raw_heading) or "").lower()
    if "main event" in heading:
        return SESSION_TYPE_MAIN, None
    if "qualifier" in heading:
        m = _ROUND_RE.search(raw_heading)
        return SESSION_TYPE_QUAL, (f"Round {m.group(1)}" if m else None)
    return None


def _session_header_key(raw: str | None) -> str | None:
    value = (normalize_space(raw) or "").lower()
    if not value:
        return None
    if "class" in value:
        return "class"
    if "round" in value:
        return "round"
    if "heat" in value:
        return "heat"
    if any(k in value for k in ("time", "finish", "completed", "done")):
        return "completed"
    if any(k in value for k in ("race", "event", "title", "session")):
        return "title"
    return value


def _collect_cells(row: Tag, headers: list[str], key_fn) -> dict[str, Tag]:
    cells: dict[str, Tag] = {}
    for index, cell in enumerate(row.find_all("td", recursive=False)):
        label = cell.get("data-label") or cell.get("aria-label") or (
            headers[index] if index < len(headers) else ""
        )
        key = key_fn(label)
        if key and key not in cells:
            cells[key] = cell
    return cells


def _extract_completed_at(cell: Tag | None) -> str | None:
    if cell is None:
        return None
    candidates: list[str] = []
    for node in [cell, *cell.find_all(True)]:
        for attr in _COMPLETED_ATTRS:
            value = node.get(attr)
            if value:
                candidates.append(str(value))
    candidates.append(_text(cell))
    for candidate in candidates:
        parsed = parse_iso_timestamp(candidate)
        if parsed is not None:
            return to_iso_z(parsed)
    return None


def enumerate_sessions_from_event_html(html: str) -> list[EventSessionSummary]:
    """List sessions from tables under 'Main Event' / 'Qualifier Round N' headings."""
    soup = _soup(html)
    sessions: list[EventSessionSummary] = []
    for table in soup.find_all("table"):
        heading = _find_nearest_heading(table)
        if heading is None:
            continue
        meta = _section_meta(heading.get_text(" "))
        if meta is None:
            continue
        session_type, section_round = meta
        headers = _header_labels(table)

        for row in _data_rows(table):
            link = row.find("a", href=True)
            if link is None:
                continue
            session_ref = trim(link["href"])
            title = _text(link)
            if not session_ref or not title:
                continue
            cells = _collect_cells(row, headers, _session_header_key)
            class_name = _text(cells.get("class"))
            if not class_name:
                continue
            sessions.append(EventSessionSummary(
                session_ref=session_ref,
                title=title,
                class_name=class_name,
                type=session_type,
                round_label=_text(cells.get("round")) or section_round,
                heat_label=_text(cells.get("heat")) or None,
                completed_at=_extract_completed_at(cells.get("completed")),
            ))
    return sessions


# ---------------------------------------------------------------------------
# Event overview: metadata
# ---------------------------------------------------------------------------

def _slug_from_url(url: str) -> str | None:
    parsed = urllib.parse.urlsplit(url)
    segments = [urllib.parse.unquote(s) for s in parsed.path.split("/") if s]
    lowered = [s.lower() for s in segments]
    for anchor in ("results", "events"):
        if anchor in lowered:
            index = lowered.index(anchor)
            if index + 1 < len(segments):
                return trim(segments[index + 1])
    query_id = urllib.parse.parse_qs(parsed.query).get("id")
    if query_id and trim(query_id[0]):
        return trim(query_id[0])
    return trim(segments[-1]) if segments else None


def extract_event_metadata_from_html(html: str, event_ref: str) -> EventMetadata:
    """Canonical URL, event slug and display name for an event overview page."""
    soup = _soup(html)
    canonical = _canonical_url(soup)
    if canonical:
        canonical = urllib.parse.urljoin(event_ref, canonical)
    else:
        canonical = event_ref
    slug = _slug_from_url(canonical) or _slug_from_url(event_ref) or canonical
    name = _page_title(soup) or title_from_slug(slug) or slug
    return EventMetadata(canonical_url=canonical, event_slug=slug, event_name=name)


# ---------------------------------------------------------------------------
# Session page: result rows
# ---------------------------------------------------------------------------

def _result_header_key(raw: str | None) -> str | None:
    value = (normalize_space(raw) or "").lower()
    if not value:
        return None
    compact = re.sub(r"[^a-z0-9#%]", "", value)
    if "top5" in compact:
        return "avg_top5"
    if "top10" in compact:
        return "avg_top10"
    if "top15" in compact:
        return "avg_top15"
    if "consec" in compact or "top3" in compact:
        return "top3_consec"
    if "consist" in compact:
        return "consistency"
    if "stddev" in compact or "deviation" in compact:
        return "std_dev"
    if "fastest" in compact or "best" in compact:
        return "fastest"
    if "avg" in compact or "average" in compact:
        return "avg_lap"
    if "behind" in compact or "gap" in compact:
        return "behind"
    if "laps" in compact and "time" in compact:
        return "laps_time"
    if "laps" in compact:
        return "laps"
    if "totaltime" in compact or compact == "time":
        return "total_time"
    if "driver" in compact or compact == "name":
        return "driver"
    if compact in ("pos", "position", "place", "p"):
        return "position"
    if "car" in compact or compact in ("#", "no", "number"):
        return "car"
    return compact


def _entry_id_for_row(row: Tag) -> str | None:
    for node in [row, *row.find_all(True)]:
        for attr in _ENTRY_ID_ATTRS:
            value = trim(node.get(attr))
            if value:
                return value
    for link in row.find_all("a", href=True):
        query = urllib.parse.parse_qs(urllib.parse.urlsplit(link["href"]).query)
        for key in _ENTRY_ID_QUERY_KEYS:
            values = query.get(key)
            if values and trim(values[0]):
                return trim(values[0])
    return None


def _find_results_table(soup: BeautifulSoup) -> tuple[Tag, list[str]] | None:
    for table in soup.find_all("table"):
        headers = _header_labels(table)
        if any(_result_header_key(h) == "driver" for h in headers):
            return table, headers
    return None


def _fastest(cell_text: str) -> tuple[int | None, int | None]:
    """'24.512 (7)' -> (24512, 7)."""
    m = re.match(r"^\s*([\d:.]+)\s*(?:\((\d+)\))?", cell_text)
    if not m:
        return None, None
    return parse_duration_ms(m.group(1)), (int(m.group(2)) if m.group(2) else None)


def parse_session_results_from_html(html: str, session_ref: str) -> SessionResults:
    """Read the driver result table of a session page.

    The table is the first one whose header row has a driver/name column.
    Rows without a driver name are skipped.
    """
    soup = _soup(html)
    canonical = _canonical_url(soup)
    if canonical:
        canonical = urllib.parse.urljoin(session_ref, canonical)
    results = SessionResults(canonical_url=canonical, session_name=_page_title(soup))

    found = _find_results_table(soup)
    if found is None:
        return results
    table, headers = found

    for row in _data_rows(table):
        cells = _collect_cells(row, headers, _result_header_key)
        driver_cell = cells.get("driver")
        link = driver_cell.find("a") if driver_cell is not None else None
        driver_name = _text(link) or _text(driver_cell)
        if not driver_name:
            continue

        def cell(key: str) -> str | None:
            return trim(_text(cells.get(key))) if key in cells else None

        laps_time = cell("laps_time")
        fastest_ms, fastest_num = _fastest(cell("fastest") or "")
        results.result_rows.append(SessionResultRow(
            driver_name=driver_name,
            entry_id=_entry_id_for_row(row),
            position=parse_int(cell("position")),
            car_number=cell("car"),
            laps=parse_int(cell("laps") or (laps_time.split("/", 1)[0] if laps_time else None)),
            total_time_ms=parse_duration_ms(cell("total_time") or laps_time),
            behind_ms=parse_duration_ms(cell("behind")),
            fastest_lap_ms=fastest_ms,
            fastest_lap_num=fastest_num,
            avg_lap_ms=parse_duration_ms(cell("avg_lap")),
            avg_top5_ms=parse_duration_ms(cell("avg_top5")),
            avg_top10_ms=parse_duration_ms(cell("avg_top10")),
            avg_top15_ms=parse_duration_ms(cell("avg_top15")),
            top3_consec_ms=parse_duration_ms(cell("top3_consec")),
            std_dev_ms=parse_duration_ms(cell("std_dev")),
            consistency_pct=parse_float(cell("consistency")),
        ))
    return results


# ---------------------------------------------------------------------------
# Club events page
# ---------------------------------------------------------------------------

def parse_event_date(raw: str | None) -> date | None:
    cleaned = normalize_space(raw)
    if not cleaned:
        return None
    if re.match(r"^\d{4}-\d{2}-\d{2}[T ]", cleaned):
        parsed = parse_iso_timestamp(cleaned)
        return parsed.date() if parsed else None
    for fmt in _EVENT_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def _date_text(node: Tag) -> str:
    date_cell = (
        node.select_one(".event-date")
        or node.find("time")
        or node.select_one("td[data-date]")
        or node.find("td")
    )
    if date_cell is None:
        return ""
    attr = date_cell.get("data-date") or date_cell.get("datetime")
    if attr:
        return str(attr)
    return _text(date_cell)


def normalize_event_ref(href: str, base_origin: str) -> str | None:
    """Absolute event URL with query and fragment stripped."""
    base = base_origin if base_origin.endswith("/") else f"{base_origin}/"
    try:
        absolute = urllib.parse.urljoin(base, href.strip())
        parsed = urllib.parse.urlsplit(absolute)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path.rstrip('/')}"


def _club_event(anchor: Tag, date_source: Tag | None, base_origin: str) -> ClubEvent | None:
    href = trim(anchor.get("href"))
    title = _text(anchor)
    if not href or not title or date_source is None:
        return None
    when = parse_event_date(_date_text(date_source))
    ref = normalize_event_ref(href, base_origin)
    if when is None or ref is None:
        return None
    return ClubEvent(event_ref=ref, title=title, when=when)


def parse_club_events_from_html(html: str, base_origin: str) -> list[ClubEvent]:
    """Parse table.events rows; fall back to any dated anchor on the page."""
    soup = _soup(html)
    events: list[ClubEvent] = []
    for row in soup.select("table.events tr"):
        anchor = row.find("a", href=True)
        if anchor is None:
            continue
        event = _club_event(anchor, row, base_origin)
        if event is not None:
            events.append(event)

    if not events:
        for anchor in soup.find_all("a", href=True):
            parent = anchor.parent if isinstance(anchor.parent, Tag) else None
            event = _club_event(anchor, parent, base_origin)
            if event is not None:
                events.append(event)
    return events
