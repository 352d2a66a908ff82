"""Normalization functions for scraped LiveRC text and numbers.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import math
import re
import unicodedata
from datetime import datetime, timezone

_ISO_SPACE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}")
_ISO_T_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[tT]\d{2}:\d{2}")
_TZ_SUFFIX_RE = re.compile(r"([zZ]|[+-]\d{2}:?\d{2})$")
_DURATION_RE = re.compile(r"^(?:(\d+):)?(?:(\d+):)?(\d+(?:\.\d+)?)$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: driver_name_key  (for driver lookup/matching by display name)
# ---------------------------------------------------------------------------

def driver_name_key(value: str | None) -> str | None:
    """NFKC-fold, collapse whitespace, lowercase.

    Only used as a dedup key when no provider driver id is available.
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKC", v)
    v = re.sub(r"\s+", " ", v).strip().lower()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 4: slug_name / title_from_slug
# ---------------------------------------------------------------------------

def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators."""
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


def title_from_slug(value: str | None) -> str | None:
    """'2025-club-champs' -> '2025 Club Champs'."""
    v = trim(value)
    if v is None:
        return None
    words = [w for w in re.split(r"[-_\s]+", v) if w]
    if not words:
        return None
    return " ".join(w[:1].upper() + w[1:] for w in words)


# ---------------------------------------------------------------------------
# Rule 5: timestamps
# ---------------------------------------------------------------------------

def parse_iso_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601-ish timestamp, returning an aware UTC datetime.

    'YYYY-MM-DD HH:MM' without an offset is read as UTC.  Values that do
    not start with a date+time or carry an offset are rejected.
    """
    v = trim(value)
    if v is None:
        return None
    normalized = v
    if _ISO_SPACE_RE.match(v) and "t" not in v.lower():
        normalized = v.replace(" ", "T", 1)
        if not _TZ_SUFFIX_RE.search(normalized):
            normalized += "Z"
    if not (_ISO_T_RE.match(normalized) or _TZ_SUFFIX_RE.search(normalized)):
        return None
    if normalized[-1] in "zZ":
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_explicit_tz_timestamp(value: str | None) -> datetime | None:
    """Like parse_iso_timestamp, but only when an explicit offset is present."""
    v = trim(value)
    if v is None or not _TZ_SUFFIX_RE.search(v):
        return None
    return parse_iso_timestamp(v)


def to_iso_z(value: datetime) -> str:
    """UTC ISO string with millisecond precision and a trailing Z."""
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


# ---------------------------------------------------------------------------
# Rule 6: numbers
# ---------------------------------------------------------------------------

def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (scoreboard convention)."""
    return int(math.floor(value + 0.5))


def parse_int(value: str | None) -> int | None:
    v = trim(value)
    if v is None:
        return None
    m = re.search(r"-?\d+", v.replace(",", ""))
    return int(m.group(0)) if m else None


def parse_float(value: str | None) -> float | None:
    v = trim(value)
    if v is None:
        return None
    m = re.search(r"-?\d+(?:\.\d+)?", v.replace(",", ""))
    return float(m.group(0)) if m else None


def parse_duration_ms(value: str | None) -> int | None:
    """Parse '1:02.345', '62.345' or '0:01:02.345' into milliseconds.

    Leading annotations such as '12/5:02.123' (laps/time) keep only the
    time part after the slash.
    """
    v = trim(value)
    if v is None:
        return None
    if "/" in v:
        v = v.rsplit("/", 1)[1].strip()
    v = v.lstrip("+")
    m = _DURATION_RE.match(v)
    if not m:
        return None
    first, second, seconds = m.groups()
    total = float(seconds)
    if first is not None and second is not None:
        total += int(first) * 3600 + int(second) * 60
    elif first is not None:
        total += int(first) * 60
    if not math.isfinite(total):
        return None
    return round_half_up(total * 1000)
