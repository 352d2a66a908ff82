"""liverc_etl.url_parser

Parse LiveRC results URLs into typed references.

Expected failures are returned as an InvalidUrl variant carrying a reason
code rather than raised; callers that need a JSON reference use
require_json_results_url(), which raises UrlParseError.

Usage:
    ref = parse_provider_url("https://live.liverc.com/results/e/c/r/race.json")
    if isinstance(ref, JsonResultsUrl):
        event_slug, class_slug, round_slug, race_slug = ref.slugs
"""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass
from typing import Union

from liverc_etl.errors import UrlParseError

# ---------------------------------------------------------------------------
# Reason codes
# ---------------------------------------------------------------------------

INVALID_ABSOLUTE_URL = "INVALID_ABSOLUTE_URL"
INVALID_RESULTS_PATH = "INVALID_RESULTS_PATH"
INCOMPLETE_RESULTS_SEGMENTS = "INCOMPLETE_RESULTS_SEGMENTS"
EXTRA_SEGMENTS = "EXTRA_SEGMENTS"
EMPTY_SEGMENT = "EMPTY_SEGMENT"
EMPTY_SLUG = "EMPTY_SLUG"
UNSUPPORTED_HTML_URL = "UNSUPPORTED_HTML_URL"

REASON_MESSAGES: dict[str, str] = {
    INVALID_ABSOLUTE_URL: "LiveRC import requires an absolute URL.",
    INVALID_RESULTS_PATH: "LiveRC URL must point to a JSON results endpoint under /results/.",
    INCOMPLETE_RESULTS_SEGMENTS: (
        "LiveRC results URL must include event, class, round, and race segments."
    ),
    EXTRA_SEGMENTS: (
        "LiveRC results URL must not include extra path segments after the race slug."
    ),
    EMPTY_SEGMENT: "LiveRC results URL must not include empty path segments.",
    EMPTY_SLUG: "LiveRC results URL contains a segment that resolves to an empty slug.",
    UNSUPPORTED_HTML_URL: (
        "Legacy LiveRC race result pages are not supported; use the JSON results URL."
    ),
}

_SLUG_COUNT = 4


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JsonResultsUrl:
    results_base_url: str
    canonical_json_path: str
    origin: str
    slugs: tuple[str, str, str, str]
    type: str = "json"

    @property
    def event_slug(self) -> str:
        return self.slugs[0]

    @property
    def class_slug(self) -> str:
        return self.slugs[1]

    @property
    def round_slug(self) -> str:
        return self.slugs[2]

    @property
    def race_slug(self) -> str:
        return self.slugs[3]

    @property
    def canonical_json_url(self) -> str:
        return f"{self.origin}{self.canonical_json_path}"


@dataclass(frozen=True)
class HtmlResultsUrl:
    url: str
    result_id: str
    type: str = "html"


@dataclass(frozen=True)
class InvalidUrl:
    reason: str
    url: str
    type: str = "invalid"

    @property
    def message(self) -> str:
        return REASON_MESSAGES.get(self.reason, self.reason)

    def to_error(self) -> UrlParseError:
        return UrlParseError(self.reason, self.message, self.url)


ParsedUrl = Union[JsonResultsUrl, HtmlResultsUrl, InvalidUrl]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _normalize_segment(segment: str, is_race_segment: bool) -> tuple[str | None, str | None]:
    """Return (slug, None) or (None, reason)."""
    try:
        decoded = urllib.parse.unquote(segment, errors="strict")
    except UnicodeDecodeError:
        return None, INVALID_ABSOLUTE_URL
    trimmed = decoded.strip()
    if not trimmed:
        return None, EMPTY_SEGMENT
    if is_race_segment and trimmed.lower().endswith(".json"):
        trimmed = trimmed[: -len(".json")]
    slug = trimmed.strip()
    if not slug:
        return None, EMPTY_SLUG
    return slug, None


def parse_provider_url(url: str) -> ParsedUrl:
    """Classify a LiveRC URL as a JSON results reference, a legacy HTML page, or invalid."""
    raw = (url or "").strip()
    try:
        parsed = urllib.parse.urlsplit(raw)
    except ValueError:
        return InvalidUrl(INVALID_ABSOLUTE_URL, raw)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return InvalidUrl(INVALID_ABSOLUTE_URL, raw)

    query = urllib.parse.parse_qs(parsed.query)
    page = (query.get("p") or [""])[0]
    if page.lower() == "view_race_result":
        result_id = (query.get("id") or [""])[0].strip()
        if result_id:
            return HtmlResultsUrl(url=raw, result_id=result_id)

    segments = [s for s in parsed.path.split("/") if s]
    results_index = next(
        (i for i, s in enumerate(segments) if s.lower() == "results"), None
    )
    if results_index is None:
        return InvalidUrl(INVALID_RESULTS_PATH, raw)

    after_results = segments[results_index + 1:]
    if len(after_results) < _SLUG_COUNT:
        return InvalidUrl(INCOMPLETE_RESULTS_SEGMENTS, raw)
    if len(after_results) > _SLUG_COUNT:
        return InvalidUrl(EXTRA_SEGMENTS, raw)

    slugs: list[str] = []
    for index, segment in enumerate(after_results):
        slug, reason = _normalize_segment(segment, index == _SLUG_COUNT - 1)
        if reason:
            return InvalidUrl(reason, raw)
        slugs.append(slug)  # type: ignore[arg-type]

    base_segments = segments[: results_index + 1]
    canonical_segments = base_segments + slugs[:-1] + [f"{slugs[-1]}.json"]
    origin = f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"
    results_base_url = f"{origin}/{'/'.join(base_segments)}".rstrip("/")

    return JsonResultsUrl(
        results_base_url=results_base_url,
        canonical_json_path="/" + "/".join(canonical_segments),
        origin=origin,
        slugs=(slugs[0], slugs[1], slugs[2], slugs[3]),
    )


def require_json_results_url(url: str) -> JsonResultsUrl:
    """Return the JSON variant or raise UrlParseError."""
    ref = parse_provider_url(url)
    if isinstance(ref, JsonResultsUrl):
        return ref
    if isinstance(ref, HtmlResultsUrl):
        raise UrlParseError(
            UNSUPPORTED_HTML_URL, REASON_MESSAGES[UNSUPPORTED_HTML_URL], ref.url
        )
    raise ref.to_error()
