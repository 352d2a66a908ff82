"""liverc_etl.client

Bounded-retry HTTP client for LiveRC HTML pages and JSON documents.

Retry policy:
  - 429 and 5xx responses and transport errors are retried up to
    max_retries times with exponential backoff plus random jitter
  - a numeric (or HTTP-date) Retry-After header overrides the backoff
  - other non-2xx responses are not retried
  - requests are spaced at least min_request_interval_seconds apart

Terminal failures raise ClientError carrying code, status and url.
"""

from __future__ import annotations

import logging
import random
import re
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable

import requests
from bs4 import BeautifulSoup

from liverc_etl.config import Settings
from liverc_etl.errors import (
    MAX_RETRIES_EXCEEDED,
    NOT_FOUND,
    RETRYABLE_STATUS,
    UNKNOWN,
    ClientError,
)
from liverc_etl.response_mappers import (
    EntryList,
    RaceContext,
    RaceResult,
    map_entry_list_response,
    map_race_result_response,
)

log = logging.getLogger(__name__)

HTML_ACCEPT = "text/html,application/xhtml+xml"
JSON_ACCEPT = "application/json"

_JSON_FALLBACK_PATTERNS = (
    re.compile(r"""<link[^>]+rel=["']canonical["'][^>]*href=["'](?P<url>[^"']+)["']""", re.I),
    re.compile(r"""<meta[^>]+property=["']og:url["'][^>]*content=["'](?P<url>[^"']+)["']""", re.I),
    re.compile(r"""data-json-url=["'](?P<url>[^"']+)["']""", re.I),
)
_ABSOLUTE_RE = re.compile(r"^https?://", re.I)
_JSON_SUFFIX_RE = re.compile(r"\.json(\?|$)", re.I)


# ---------------------------------------------------------------------------
# Backoff + pacing
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Exponential backoff with proportional jitter."""

    max_retries: int = 3
    initial_delay: float = 0.75
    max_delay: float = 5.0
    jitter_ratio: float = 0.35
    rng: Callable[[], float] = field(default=random.random, repr=False)

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before retry number attempt+1 (attempt is 0-based)."""
        if retry_after is not None and retry_after > 0:
            return min(retry_after, self.max_delay)
        delay = min(self.max_delay, self.initial_delay * (2 ** attempt))
        return delay + delay * self.jitter_ratio * self.rng()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            initial_delay=settings.initial_retry_delay_seconds,
            max_delay=settings.max_retry_delay_seconds,
            jitter_ratio=settings.jitter_ratio,
        )


class RequestPacer:
    """Serialize requests and keep them min_interval seconds apart."""

    def __init__(
        self,
        min_interval: float,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = min_interval
        self._sleep = sleep
        self._clock = clock
        self._next_allowed_at = 0.0
        self._lock = threading.Lock()

    def run(self, operation: Callable[[], Any]) -> Any:
        with self._lock:
            wait = self._next_allowed_at - self._clock()
            if wait > 0:
                self._sleep(wait)
            try:
                return operation()
            finally:
                self._next_allowed_at = self._clock() + self._min_interval


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value or not value.strip():
        return None
    v = value.strip()
    if v.isdigit():
        return float(int(v))
    try:
        when = parsedate_to_datetime(v)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return delta if delta > 0 else None


def append_json_suffix(url: str) -> str:
    base, sep, query = url.partition("?")
    stripped = base.rstrip("/")
    if not stripped.lower().endswith(".json"):
        stripped += ".json"
    return f"{stripped}?{query}" if sep and query else stripped


def _is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status < 600


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class HttpScrapingClient:
    """requests-based LiveRC client."""

    def __init__(
        self,
        settings: Settings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._session = session or requests.Session()
        self._sleep = sleep
        self._retry = retry_policy or RetryPolicy.from_settings(settings)
        self._pacer = RequestPacer(settings.min_request_interval_seconds, sleep, clock)

    # -- HTML pages --------------------------------------------------------

    def get_event_overview(self, url_or_ref: str) -> str:
        return self._get(self.resolve_absolute_url(url_or_ref), HTML_ACCEPT).text

    def get_session_page(self, url_or_ref: str) -> str:
        return self._get(self.resolve_absolute_url(url_or_ref), HTML_ACCEPT).text

    def get_club_events_page(self, subdomain: str) -> str:
        """Fetch https://<subdomain>.liverc.com/events/ (host preserved)."""
        origin = club_base_origin(subdomain)
        if origin is None:
            raise ClientError("LiveRC subdomain is required to fetch club events.", UNKNOWN)
        return self._get(f"{origin}/events/", HTML_ACCEPT).text

    # -- JSON documents ----------------------------------------------------

    def fetch_json(self, url: str) -> Any:
        resp = self._get(url, JSON_ACCEPT)
        content_type = resp.headers.get("Content-Type", "")
        if "json" not in content_type.lower():
            raise ClientError(
                f"LiveRC responded with a non-JSON payload ({content_type or 'no content-type'}).",
                UNKNOWN, resp.status_code, url,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise ClientError(
                f"Failed to parse JSON response from LiveRC: {exc}",
                UNKNOWN, resp.status_code, url,
            ) from exc

    def fetch_entry_list(
        self,
        event_slug: str,
        class_slug: str,
        results_base_url: str | None = None,
    ) -> EntryList:
        url = self.build_results_url(results_base_url, [event_slug, class_slug]) + "/entry-list.json"
        raw = self.fetch_json(url)
        return map_entry_list_response(
            raw, RaceContext(event_slug=event_slug, class_slug=class_slug)
        )

    def fetch_race_result(
        self,
        event_slug: str,
        class_slug: str,
        round_slug: str,
        race_slug: str,
        results_base_url: str | None = None,
    ) -> RaceResult:
        url = self.build_results_url(
            results_base_url, [event_slug, class_slug, round_slug, race_slug]
        ) + ".json"
        raw = self.fetch_json(url)
        return map_race_result_response(
            raw,
            RaceContext(
                event_slug=event_slug,
                class_slug=class_slug,
                round_slug=round_slug,
                race_slug=race_slug,
                results_base_url=results_base_url,
            ),
        )

    # -- URL helpers -------------------------------------------------------

    def build_results_url(self, results_base_url: str | None, segments: list[str]) -> str:
        base = (results_base_url or "").strip() or self._settings.results_base_url
        encoded = [urllib.parse.quote(s, safe="") for s in segments]
        return f"{base.rstrip('/')}/{'/'.join(encoded)}"

    def resolve_absolute_url(self, url_or_ref: str) -> str:
        ref = (url_or_ref or "").strip()
        if not ref:
            raise ClientError("LiveRC request URL cannot be empty.", UNKNOWN)
        if _ABSOLUTE_RE.match(ref):
            return ref
        if ref.startswith("//"):
            return f"https:{ref}"
        base = self._settings.base_origin.rstrip("/")
        return f"{base}{ref}" if ref.startswith("/") else f"{base}/{ref}"

    def resolve_json_url_from_html(self, html: str) -> str | None:
        """Find the JSON results URL advertised by a session page.

        Prefers <link rel="alternate" type="application/json">, then the
        canonical link, og:url, and data-json-url attributes.
        """
        soup = BeautifulSoup(html, "html.parser")
        for link in soup.find_all("link", href=True):
            rel = link.get("rel") or []
            rel_values = rel if isinstance(rel, list) else str(rel).split()
            if "alternate" not in [r.lower() for r in rel_values]:
                continue
            link_type = link.get("type")
            if link_type and "application/json" not in link_type.lower():
                continue
            candidate = _normalize_json_candidate(link["href"])
            if candidate:
                return candidate

        for pattern in _JSON_FALLBACK_PATTERNS:
            m = pattern.search(html)
            if not m:
                continue
            candidate = _normalize_json_candidate(m.group("url"))
            if candidate:
                return candidate
        return None

    # -- transport ---------------------------------------------------------

    def _get(self, url: str, accept: str) -> requests.Response:
        headers = {"Accept": accept, "User-Agent": self._settings.user_agent}
        last_status: int | None = None
        last_error: Exception | None = None

        for attempt in range(self._retry.max_retries + 1):
            if attempt > 0:
                log.debug("Retrying %s (attempt %d)", url, attempt + 1)
            try:
                resp = self._pacer.run(
                    lambda: self._session.get(
                        url, headers=headers, timeout=self._settings.request_timeout_seconds
                    )
                )
            except requests.RequestException as exc:
                last_error = exc
                last_status = None
                log.warning("Network error fetching %s: %s", url, exc)
                if attempt < self._retry.max_retries:
                    self._sleep(self._retry.delay_for(attempt))
                continue

            if _is_retryable_status(resp.status_code):
                last_error = None
                last_status = resp.status_code
                log.warning("LiveRC returned retryable status %s for %s", resp.status_code, url)
                if attempt < self._retry.max_retries:
                    retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                    self._sleep(self._retry.delay_for(attempt, retry_after))
                continue

            if resp.status_code == 404:
                raise ClientError("LiveRC resource not found.", NOT_FOUND, 404, url)
            if not 200 <= resp.status_code < 300:
                raise ClientError(
                    "LiveRC responded with an error status.", UNKNOWN, resp.status_code, url
                )
            return resp

        if last_status is not None:
            raise ClientError(
                "LiveRC kept responding with a retryable status.",
                RETRYABLE_STATUS, last_status, url,
            )
        raise ClientError(
            f"Failed to contact LiveRC after retries: {last_error}",
            MAX_RETRIES_EXCEEDED, None, url,
        )


def _normalize_json_candidate(candidate: str | None) -> str | None:
    c = (candidate or "").strip()
    if not c:
        return None
    if c.startswith("//"):
        c = f"https:{c}"
    if not _ABSOLUTE_RE.match(c):
        return None
    return c if _JSON_SUFFIX_RE.search(c) else append_json_suffix(c)


def club_base_origin(subdomain: str | None) -> str | None:
    """'mytrack' or 'mytrack.liverc.com' -> 'https://mytrack.liverc.com'."""
    host = re.sub(r"^https?://", "", (subdomain or "").strip(), flags=re.I).rstrip("/")
    if not host:
        return None
    if not host.lower().endswith(".liverc.com"):
        host = f"{host}.liverc.com"
    return f"https://{host}"
