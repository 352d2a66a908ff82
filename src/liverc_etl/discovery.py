"""liverc_etl.discovery

Club-based event discovery: resolve a club, fetch its LiveRC events page
and return the events dated inside a bounded, inclusive date range.

All request validation happens before any network call.  Nothing is
persisted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol

from liverc_etl.client import club_base_origin
from liverc_etl.config import Settings
from liverc_etl.errors import NOT_FOUND, ClientError, DiscoveryValidationError
from liverc_etl.html_parse import ClubEvent, parse_club_events_from_html
from liverc_etl.ports import ClubRepository

log = logging.getLogger(__name__)

FALLBACK_ORIGIN = "https://liverc.com"


class ClubEventsClient(Protocol):
    def get_club_events_page(self, subdomain: str) -> str: ...


@dataclass(frozen=True)
class DiscoveryRequest:
    club_id: str | None
    start_date: str | None
    end_date: str | None
    limit: int | float | None = None


@dataclass(frozen=True)
class DiscoveredEvent:
    event_ref: str
    title: str
    when_iso: str


@dataclass
class DiscoveryResult:
    club_base_origin: str
    events: list[DiscoveredEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "clubBaseOrigin": self.club_base_origin,
            "events": [
                {"eventRef": e.event_ref, "title": e.title, "whenIso": e.when_iso}
                for e in self.events
            ],
        }


def _parse_date_only(field_name: str, value: str | None) -> date:
    try:
        return datetime.strptime((value or "").strip(), "%Y-%m-%d").date()
    except ValueError:
        raise DiscoveryValidationError(
            f"'{field_name}' must be a YYYY-MM-DD date.",
            code="INVALID_DATE",
            details={"field": field_name, "value": value},
        ) from None


class DiscoveryService:
    def __init__(
        self,
        client: ClubEventsClient,
        club_repository: ClubRepository,
        settings: Settings | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._clubs = club_repository
        self._settings = settings or Settings()
        self._log = logger or log

    def clamp_limit(self, limit: int | float | None) -> int:
        if limit is None or limit != limit:  # NaN
            return self._settings.discovery_default_limit
        return max(1, min(self._settings.discovery_max_limit, int(limit)))

    def discover_by_club_and_date_range(self, request: DiscoveryRequest) -> DiscoveryResult:
        club_id = (request.club_id or "").strip()
        if not club_id:
            raise DiscoveryValidationError("'club_id' is required.", code="CLUB_ID_REQUIRED")
        start = _parse_date_only("start_date", request.start_date)
        end = _parse_date_only("end_date", request.end_date)
        if end < start:
            raise DiscoveryValidationError(
                "'end_date' must not be before 'start_date'.", code="INVALID_DATE_RANGE"
            )
        span_days = (end - start).days + 1
        max_days = self._settings.discovery_max_range_days
        if span_days > max_days:
            raise DiscoveryValidationError(
                f"Date range spans {span_days} days; the maximum is {max_days}.",
                code="DATE_RANGE_TOO_LONG",
                details={"span_days": span_days, "max_days": max_days},
            )
        limit = self.clamp_limit(request.limit)

        club = self._clubs.find_by_id(club_id)
        if club is None:
            self._log.warning(
                "Club %s not found for discovery", club_id,
                extra={"event": "liverc.discovery.club_not_found",
                       "outcome": "invalid-request", "club_id": club_id},
            )
            raise DiscoveryValidationError(
                f"Club {club_id!r} not found.", code="CLUB_NOT_FOUND"
            )

        origin = club_base_origin(club.subdomain) or FALLBACK_ORIGIN
        try:
            html = self._client.get_club_events_page(club.subdomain)
        except ClientError as exc:
            if exc.code == NOT_FOUND:
                self._log.info(
                    "Club events page not found for %s; treating as empty", club.subdomain,
                    extra={"event": "liverc.discovery.club_events_not_found",
                           "outcome": "success", "club_id": club_id},
                )
                return DiscoveryResult(club_base_origin=origin)
            self._log.error(
                "Failed to fetch club events page for %s: %s", club.subdomain, exc,
                extra={"event": "liverc.discovery.fetch_failed", "outcome": "failure",
                       "club_id": club_id},
            )
            raise

        in_range: list[ClubEvent] = []
        seen: set[str] = set()
        for event in parse_club_events_from_html(html, origin):
            # one entry per event_ref, first listing wins
            if event.event_ref in seen or not start <= event.when <= end:
                continue
            seen.add(event.event_ref)
            in_range.append(event)
        in_range.sort(key=lambda e: (e.when, e.title))
        events = [DiscoveredEvent(e.event_ref, e.title, e.when_iso) for e in in_range[:limit]]
        self._log.debug(
            "Discovered %d events for club %s", len(events), club.subdomain,
            extra={"event": "liverc.discovery.parsed", "outcome": "success",
                   "club_id": club_id, "event_count": len(events)},
        )
        return DiscoveryResult(club_base_origin=origin, events=events)
