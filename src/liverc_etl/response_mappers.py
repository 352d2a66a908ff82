"""liverc_etl.response_mappers

Pure functions converting loosely-typed LiveRC JSON payloads into typed
records.  No I/O.

Every field is read through an ordered tuple of alias paths (module
constants below).  A path is a key, or a dotted path into a nested
object; the first alias holding a non-null value wins, and the value is
then coerced tolerantly.  A missing optional field never aborts a
document; entries and laps missing required fields are dropped.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

# ---------------------------------------------------------------------------
# Alias paths: entry list
# ---------------------------------------------------------------------------

ENTRY_LIST_EVENT_OBJECT_KEYS = ("event", "event_info", "meta.event")
ENTRY_LIST_CLASS_OBJECT_KEYS = ("class", "class_info", "meta.class")
ENTRY_LIST_EVENT_ID_KEYS = ("event.event_id", "event.id", "event_id", "id")
ENTRY_LIST_CLASS_ID_KEYS = ("class.class_id", "class.id", "class_id", "id")
ENTRY_LIST_EVENT_NAME_KEYS = ("event.event_name", "event.name", "event_name")
ENTRY_LIST_CLASS_NAME_KEYS = ("class.class_name", "class.name", "class_name")
ENTRY_LIST_CLASS_CODE_KEYS = ("class.class_code", "class.code", "class_code")
ENTRY_LIST_ENTRIES_KEYS = ("entries", "entry_list", "data")

ENTRY_ID_KEYS = ("entry_id", "id", "entryId")
ENTRY_DISPLAY_NAME_KEYS = ("display_name", "name", "displayName")
ENTRY_CAR_NUMBER_KEYS = ("car_number", "carNumber")
ENTRY_WITHDRAWN_KEYS = ("withdrawn",)
ENTRY_TRANSPONDER_KEYS = ("transponder_id", "transponderId")

# ---------------------------------------------------------------------------
# Alias paths: race result
# ---------------------------------------------------------------------------

RACE_EVENT_ID_KEYS = ("event_id", "eventId", "event.event_id", "event.eventId", "event.id")
RACE_CLASS_ID_KEYS = ("class_id", "classId", "class.class_id", "class.classId", "class.id")
RACE_ROUND_ID_KEYS = ("round_id", "roundId", "round.round_id", "round.roundId", "round.id")
RACE_RACE_ID_KEYS = ("race_id", "raceId", "race.race_id", "race.raceId", "race.id")
RACE_EVENT_NAME_KEYS = ("event_name", "event.name")
RACE_CLASS_NAME_KEYS = ("class_name", "class.name")
RACE_CLASS_CODE_KEYS = ("class_code", "class.code")
RACE_ROUND_NAME_KEYS = ("round_name", "round.name")
RACE_RACE_NAME_KEYS = ("race_name", "race.name")
RACE_SESSION_TYPE_KEYS = ("session_type", "type", "sessionType")
RACE_START_TIME_KEYS = ("start_time", "startTime", "scheduled_start")
RACE_LAPS_KEYS = ("laps", "results", "lap_data")

LAP_ENTRY_ID_KEYS = ("entry_id", "driver_id", "entryId")
LAP_DRIVER_NAME_KEYS = ("driver_name", "name", "driverName")
LAP_NUMBER_KEYS = ("lap", "lap_number", "number")
LAP_TIME_KEYS = ("lap_time", "lapTime", "time", "seconds")
LAP_OUTLAP_KEYS = ("is_outlap", "outlap", "isOutlap")
LAP_PENALTIES_KEYS = ("penalties",)

PENALTY_DURATION_KEYS = ("seconds", "duration", "duration_seconds")
PENALTY_REASON_KEYS = ("reason", "description")

_NUMBER_PREFIX_RE = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RaceContext:
    event_slug: str
    class_slug: str
    round_slug: str = "main"
    race_slug: str = "race"
    results_base_url: str | None = None
    origin: str | None = None


@dataclass(frozen=True)
class EntryListEntry:
    entry_id: str
    display_name: str
    car_number: str | None = None
    withdrawn: bool | None = None
    source_transponder_id: str | None = None


@dataclass
class EntryList:
    event_id: str
    class_id: str
    event_name: str | None = None
    class_name: str | None = None
    class_code: str | None = None
    entries: list[EntryListEntry] = field(default_factory=list)
    dropped_entries: int = 0


@dataclass(frozen=True)
class LapPenalty:
    duration_seconds: float | None = None
    reason: str | None = None


@dataclass(frozen=True)
class RaceResultLap:
    entry_id: str
    driver_name: str
    lap_number: int
    lap_time_seconds: float
    is_outlap: bool | None = None
    penalties: tuple[LapPenalty, ...] = ()


@dataclass
class RaceResult:
    event_id: str
    class_id: str
    round_id: str
    race_id: str
    race_name: str
    event_name: str | None = None
    class_name: str | None = None
    class_code: str | None = None
    round_name: str | None = None
    session_type: str | None = None
    start_time_utc: str | None = None
    laps: list[RaceResultLap] = field(default_factory=list)
    dropped_laps: int = 0


@dataclass
class RaceResultParseOutcome:
    context: RaceContext
    race_result: RaceResult
    missing_identifiers: list[str]
    has_lap_data: bool
    upload_namespace: str


@dataclass(frozen=True)
class UploadMetadata:
    file_name: str | None = None
    file_size_bytes: int | None = None
    file_hash: str | None = None
    last_modified_epoch_ms: int | None = None
    uploaded_at_epoch_ms: int | None = None
    request_id: str | None = None
    explicit_namespace: str | None = None


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def as_object(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def as_string(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else repr(value)
    return None


def as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else float(value)
    if isinstance(value, str):
        m = _NUMBER_PREFIX_RE.match(value)
        if m:
            return float(m.group(0))
    return None


def as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def pick(scope: Mapping[str, Any], paths: tuple[str, ...]) -> Any:
    """Return the first non-null value found along the alias paths."""
    for path in paths:
        current: Any = scope
        for part in path.split("."):
            if not isinstance(current, Mapping):
                current = None
                break
            current = current.get(part)
        if current is not None:
            return current
    return None


def _non_blank(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


# ---------------------------------------------------------------------------
# Entry list
# ---------------------------------------------------------------------------

def map_entry_list_response(raw: Any, context: RaceContext) -> EntryList:
    """Map an entry-list document; entries lacking id or display name are dropped."""
    root = as_object(raw)
    scope = dict(root)
    scope["event"] = as_object(pick(root, ENTRY_LIST_EVENT_OBJECT_KEYS))
    scope["class"] = as_object(pick(root, ENTRY_LIST_CLASS_OBJECT_KEYS))

    entries: list[EntryListEntry] = []
    dropped = 0
    for entry_raw in as_list(pick(root, ENTRY_LIST_ENTRIES_KEYS)):
        entry = as_object(entry_raw)
        entry_id = as_string(pick(entry, ENTRY_ID_KEYS))
        display_name = as_string(pick(entry, ENTRY_DISPLAY_NAME_KEYS))
        if not entry_id or not display_name:
            dropped += 1
            continue
        entries.append(EntryListEntry(
            entry_id=entry_id,
            display_name=display_name,
            car_number=as_string(pick(entry, ENTRY_CAR_NUMBER_KEYS)),
            withdrawn=as_bool(pick(entry, ENTRY_WITHDRAWN_KEYS)),
            source_transponder_id=as_string(pick(entry, ENTRY_TRANSPONDER_KEYS)),
        ))

    return EntryList(
        event_id=as_string(pick(scope, ENTRY_LIST_EVENT_ID_KEYS)) or context.event_slug,
        class_id=as_string(pick(scope, ENTRY_LIST_CLASS_ID_KEYS)) or context.class_slug,
        event_name=as_string(pick(scope, ENTRY_LIST_EVENT_NAME_KEYS)),
        class_name=as_string(pick(scope, ENTRY_LIST_CLASS_NAME_KEYS)),
        class_code=as_string(pick(scope, ENTRY_LIST_CLASS_CODE_KEYS)),
        entries=entries,
        dropped_entries=dropped,
    )


# ---------------------------------------------------------------------------
# Race result
# ---------------------------------------------------------------------------

def _map_penalties(raw: Any) -> tuple[LapPenalty, ...]:
    penalties: list[LapPenalty] = []
    for penalty_raw in as_list(raw):
        penalty = as_object(penalty_raw)
        duration = as_number(pick(penalty, PENALTY_DURATION_KEYS))
        reason = as_string(pick(penalty, PENALTY_REASON_KEYS))
        if duration is None and not reason:
            continue
        penalties.append(LapPenalty(duration_seconds=duration, reason=reason or None))
    return tuple(penalties)


def _map_lap(lap: Mapping[str, Any]) -> RaceResultLap | None:
    entry_id = as_string(pick(lap, LAP_ENTRY_ID_KEYS))
    driver_name = as_string(pick(lap, LAP_DRIVER_NAME_KEYS))
    lap_number = as_number(pick(lap, LAP_NUMBER_KEYS))
    lap_time = as_number(pick(lap, LAP_TIME_KEYS))
    if not entry_id or not driver_name or lap_number is None or lap_time is None:
        return None
    # fractional lap numbers cannot be ordered or keyed
    if not math.isfinite(lap_number) or not lap_number.is_integer():
        return None
    return RaceResultLap(
        entry_id=entry_id,
        driver_name=driver_name,
        lap_number=int(lap_number),
        lap_time_seconds=lap_time,
        is_outlap=as_bool(pick(lap, LAP_OUTLAP_KEYS)),
        penalties=_map_penalties(pick(lap, LAP_PENALTIES_KEYS)),
    )


def map_race_result_response(raw: Any, context: RaceContext) -> RaceResult:
    """Map a race-result document.

    Laps missing entry id, driver name, lap number or lap time are dropped
    and counted in ``dropped_laps`` so the caller can report them as skipped.
    """
    root = as_object(raw)
    laps: list[RaceResultLap] = []
    dropped = 0
    for lap_raw in as_list(pick(root, RACE_LAPS_KEYS)):
        lap = _map_lap(as_object(lap_raw))
        if lap is None:
            dropped += 1
            continue
        laps.append(lap)

    return RaceResult(
        event_id=as_string(pick(root, RACE_EVENT_ID_KEYS)) or context.event_slug,
        class_id=as_string(pick(root, RACE_CLASS_ID_KEYS)) or context.class_slug,
        round_id=as_string(pick(root, RACE_ROUND_ID_KEYS)) or context.round_slug,
        race_id=as_string(pick(root, RACE_RACE_ID_KEYS)) or context.race_slug,
        race_name=as_string(pick(root, RACE_RACE_NAME_KEYS)) or context.race_slug,
        event_name=as_string(pick(root, RACE_EVENT_NAME_KEYS)),
        class_name=as_string(pick(root, RACE_CLASS_NAME_KEYS)),
        class_code=as_string(pick(root, RACE_CLASS_CODE_KEYS)),
        round_name=as_string(pick(root, RACE_ROUND_NAME_KEYS)),
        session_type=as_string(pick(root, RACE_SESSION_TYPE_KEYS)),
        start_time_utc=as_string(pick(root, RACE_START_TIME_KEYS)),
        laps=laps,
        dropped_laps=dropped,
    )


# ---------------------------------------------------------------------------
# Uploaded payloads
# ---------------------------------------------------------------------------

def slugify_segment(value: str) -> str:
    v = re.sub(r"[^a-z0-9]+", "-", value.lower())
    return v.strip("-")


def _seed_segment(value: Any) -> str | None:
    if isinstance(value, str):
        return _non_blank(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return as_string(value)
    return None


def build_upload_namespace_seed(metadata: UploadMetadata | None) -> str | None:
    """Join the available upload metadata into a namespace seed.

    An explicit namespace wins outright; otherwise the seed is
    hash, size-N, modified-N, uploaded-N, file name, req-ID (in that order).
    """
    if metadata is None:
        return None
    explicit = _non_blank(metadata.explicit_namespace)
    if explicit:
        return explicit

    segments: list[str] = []
    file_hash = _seed_segment(metadata.file_hash)
    if file_hash:
        segments.append(file_hash.lower())
    size = _seed_segment(metadata.file_size_bytes)
    if size:
        segments.append(f"size-{size}")
    modified = _seed_segment(metadata.last_modified_epoch_ms)
    if modified:
        segments.append(f"modified-{modified}")
    uploaded = _seed_segment(metadata.uploaded_at_epoch_ms)
    if uploaded:
        segments.append(f"uploaded-{uploaded}")
    file_name = _seed_segment(metadata.file_name)
    if file_name:
        segments.append(file_name.lower())
    request_id = _seed_segment(metadata.request_id)
    if request_id:
        segments.append(f"req-{request_id.lower()}")

    return "-".join(segments) if segments else None


def payload_fingerprint(raw: Any) -> str:
    """Short stable hash of a JSON-compatible payload."""
    canonical = json.dumps(raw, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def derive_upload_namespace(raw: Any, seed: str | None) -> str:
    """Deterministic namespace: the slugged seed, else a payload fingerprint."""
    if seed:
        slug = slugify_segment(seed)
        if slug:
            return slug
    return payload_fingerprint(raw)


def parse_race_result_payload(
    raw: Any,
    fallback_context: RaceContext | None = None,
    metadata: UploadMetadata | None = None,
) -> RaceResultParseOutcome:
    """Map a payload that may carry no provider identifiers.

    Missing event/class/round/race identifiers are replaced by the fallback
    context slugs when given, else by ``upload-<namespace>-<kind>`` slugs.
    The namespace is derived from the upload metadata (or the payload
    itself), so the same upload always yields the same slugs.
    """
    root = as_object(raw)
    seed = build_upload_namespace_seed(metadata)
    if seed is None and fallback_context is not None:
        seed = fallback_context.event_slug or fallback_context.class_slug
    namespace = derive_upload_namespace(raw, seed)

    event_id = _non_blank(as_string(pick(root, RACE_EVENT_ID_KEYS)))
    class_id = _non_blank(as_string(pick(root, RACE_CLASS_ID_KEYS)))
    round_id = _non_blank(as_string(pick(root, RACE_ROUND_ID_KEYS)))
    race_id = _non_blank(as_string(pick(root, RACE_RACE_ID_KEYS)))

    fb = fallback_context
    context = RaceContext(
        event_slug=event_id or (fb.event_slug if fb else f"upload-{namespace}-event"),
        class_slug=class_id or (fb.class_slug if fb else f"upload-{namespace}-class"),
        round_slug=round_id or (fb.round_slug if fb else f"upload-{namespace}-round"),
        race_slug=race_id or (fb.race_slug if fb else f"upload-{namespace}-race"),
        results_base_url=fb.results_base_url if fb else None,
        origin=fb.origin if fb else None,
    )

    missing: list[str] = []
    if not event_id:
        missing.append("eventId")
    if not class_id:
        missing.append("classId")
    if not race_id:
        missing.append("raceId")

    return RaceResultParseOutcome(
        context=context,
        race_result=map_race_result_response(raw, context),
        missing_identifiers=missing,
        has_lap_data=isinstance(pick(root, RACE_LAPS_KEYS), list),
        upload_namespace=namespace,
    )
