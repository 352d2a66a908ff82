"""liverc_etl.plan

Import planning and apply.

create_plan classifies each requested event as NEW, PARTIAL or EXISTING
against what the store already holds and estimates its size from the
overview page's session list.  apply_plan enforces the guardrails and
enqueues one job for the plan.

Size estimate, per session:
  drivers   base 12 for mains, 10 otherwise, adjusted by heat/main label
            and class keywords (truggy, novice, pro/open), floor 6
  laps      session duration (20 min A-main, 15 min lower mains, 6 min
            qualifier) / class baseline lap time, at least 1
Per class the distinct heat groups are summed (else default groups, else
mains) to get a driver total, which is scaled up to any known entrant or
catalogue driver count.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

from liverc_etl.config import Settings
from liverc_etl.errors import GuardrailExceeded, ValidationError
from liverc_etl.html_parse import (
    SESSION_TYPE_MAIN,
    EventSessionSummary,
    enumerate_sessions_from_event_html,
)
from liverc_etl.models import ImportJob, ImportPlanEventState
from liverc_etl.normalize import to_iso_z
from liverc_etl.ports import ImportPlanRepository, Telemetry

log = logging.getLogger(__name__)

STATUS_NEW = "NEW"
STATUS_PARTIAL = "PARTIAL"
STATUS_EXISTING = "EXISTING"

_HEAT_RE = re.compile(r"\bheat\b", re.I)
_MAIN_RE = re.compile(r"\bmain\b", re.I)
_LOWER_MAIN_RE = re.compile(r"\b[b-z]\s*main\b", re.I)


class OverviewClient(Protocol):
    def get_event_overview(self, url_or_ref: str) -> str: ...


class PlanQueue(Protocol):
    def enqueue_job(self, plan_id: str, event_refs: Iterable[str]) -> ImportJob: ...


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class ImportPlanItem:
    event_ref: str
    status: str
    sessions: int
    drivers: int
    estimated_laps: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventRef": self.event_ref,
            "status": self.status,
            "counts": {
                "sessions": self.sessions,
                "drivers": self.drivers,
                "estimatedLaps": self.estimated_laps,
            },
        }


@dataclass
class ImportPlan:
    plan_id: str
    generated_at: str
    items: list[ImportPlanItem] = field(default_factory=list)

    @property
    def estimated_laps(self) -> int:
        return sum(max(0, item.estimated_laps) for item in self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "generatedAt": self.generated_at,
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportPlan":
        items = []
        for raw in data.get("items") or []:
            counts = raw.get("counts") or {}
            items.append(ImportPlanItem(
                event_ref=str(raw["eventRef"]),
                status=str(raw.get("status", STATUS_NEW)),
                sessions=int(counts.get("sessions", 0)),
                drivers=int(counts.get("drivers", 0)),
                estimated_laps=int(counts.get("estimatedLaps", 0)),
            ))
        return cls(plan_id=str(data["planId"]), generated_at=str(data.get("generatedAt", "")),
                   items=items)


# ---------------------------------------------------------------------------
# Plan stores
# ---------------------------------------------------------------------------

class InMemoryPlanStore:
    def __init__(self) -> None:
        self._plans: dict[str, ImportPlan] = {}
        self._lock = threading.Lock()

    def save(self, plan: ImportPlan) -> None:
        plan_id = plan.plan_id.strip()
        if not plan_id:
            return
        with self._lock:
            self._plans[plan_id] = plan

    def get(self, plan_id: str) -> ImportPlan | None:
        with self._lock:
            return self._plans.get(plan_id.strip())


class FilePlanStore:
    """One JSON file per plan, for plan/apply across separate CLI runs."""

    def __init__(self, directory: Path) -> None:
        self._dir = directory

    def _path(self, plan_id: str) -> Path:
        return self._dir / f"{plan_id.strip()}.json"

    def save(self, plan: ImportPlan) -> Path:
        path = self._path(plan.plan_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(plan.to_dict(), indent=2))
        return path

    def get(self, plan_id: str) -> ImportPlan | None:
        path = self._path(plan_id)
        if not plan_id.strip() or not path.exists():
            return None
        return ImportPlan.from_dict(json.loads(path.read_text(encoding="utf-8")))


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

def derive_status(session_count: int, state: ImportPlanEventState | None) -> str:
    if state is None:
        return STATUS_NEW

    if session_count == 0:
        if state.sessions_with_laps > 0:
            return STATUS_EXISTING
        if state.session_count > 0 or state.lap_count > 0 or state.entrant_count > 0:
            return STATUS_PARTIAL
        return STATUS_NEW

    covers_all = (
        state.session_count >= session_count
        and state.sessions_with_laps >= session_count
        and state.sessions_with_laps == state.session_count
        and state.lap_count > 0
    )
    if covers_all:
        return STATUS_EXISTING
    if state.session_count > 0 or state.sessions_with_laps > 0 or state.lap_count > 0:
        return STATUS_PARTIAL
    return STATUS_NEW


def _class_key(class_name: str) -> str:
    return class_name.strip().lower()


def _is_lower_main(session: EventSessionSummary) -> bool:
    return bool(session.heat_label and _LOWER_MAIN_RE.search(session.heat_label))


def normalize_group(heat_label: str | None, session_type: str) -> tuple[str, str]:
    """(group label, group type) where type is 'heat', 'main' or 'default'."""
    if not heat_label:
        return "default", "default"
    value = heat_label.strip().lower()
    if _HEAT_RE.search(value):
        m = re.search(r"(heat\s*[a-z0-9]+)", value)
        return (m.group(1) if m else value), "heat"
    if _MAIN_RE.search(value):
        m = re.search(r"([a-z])\s*main", value) or re.search(r"main\s*([a-z])", value)
        label = f"main-{m.group(1)}" if m else re.sub(r"\s+", "-", value)
        return label, ("main" if session_type == SESSION_TYPE_MAIN else "default")
    return re.sub(r"\s+", "-", value), "default"


def estimate_drivers_per_session(session: EventSessionSummary) -> int:
    key = _class_key(session.class_name)
    is_main = session.type == SESSION_TYPE_MAIN
    base = 12 if is_main else 10
    if session.heat_label and _HEAT_RE.search(session.heat_label):
        base = max(base, 10)
    if is_main and _is_lower_main(session):
        base = max(10, base - 1)
    if "truggy" in key:
        base = max(9, base - 1)
    if "novice" in key or "beginner" in key:
        base = max(6, base - 2)
    if "pro" in key or "open" in key:
        base += 1
    return max(6, base)


def estimate_session_duration_seconds(session: EventSessionSummary) -> int:
    if session.type == SESSION_TYPE_MAIN:
        return 15 * 60 if _is_lower_main(session) else 20 * 60
    return 6 * 60


def estimate_baseline_lap_seconds(session: EventSessionSummary) -> int:
    key = _class_key(session.class_name)
    baseline = 34
    if "buggy" in key:
        baseline = 32
    if "truggy" in key:
        baseline = 36
    if "short course" in key or "sct" in key:
        baseline = 40
    if "oval" in key:
        baseline = 28
    if "touring" in key or "on-road" in key or "onroad" in key:
        baseline = 27
    if "stock" in key or "17.5" in key or "13.5" in key:
        baseline = max(26, baseline - 2)
    if "nitro" in key:
        baseline = max(baseline, 35)
    return max(20, baseline)


def estimate_laps_per_driver(session: EventSessionSummary) -> int:
    duration = estimate_session_duration_seconds(session)
    return max(1, round(duration / estimate_baseline_lap_seconds(session)))


def estimate_event_size(
    sessions: list[EventSessionSummary], known_driver_count: int = 0
) -> tuple[int, int]:
    """(estimated drivers, estimated laps) for an event's sessions."""
    per_session: list[tuple[int, int]] = []
    groups: dict[str, dict[str, dict[str, int]]] = {}
    for session in sessions:
        label, group_type = normalize_group(session.heat_label, session.type)
        drivers = estimate_drivers_per_session(session)
        per_session.append((drivers, estimate_laps_per_driver(session)))
        by_type = groups.setdefault(
            _class_key(session.class_name), {"heat": {}, "main": {}, "default": {}}
        )
        by_type[group_type][label] = max(by_type[group_type].get(label, 0), drivers)

    driver_total = 0
    for by_type in groups.values():
        heat_total = sum(by_type["heat"].values())
        default_total = sum(by_type["default"].values())
        main_total = sum(by_type["main"].values())
        driver_total += heat_total or default_total or main_total

    target = max(driver_total, known_driver_count)
    if driver_total == 0:
        return max(0, target), 0
    scale = target / driver_total
    laps = sum(drivers * scale * laps_each for drivers, laps_each in per_session)
    return max(0, round(target)), max(0, round(laps))


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ImportPlanService:
    def __init__(
        self,
        client: OverviewClient,
        repository: ImportPlanRepository,
        telemetry: Telemetry,
        settings: Settings | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._repo = repository
        self._telemetry = telemetry
        self._settings = settings or Settings()
        self._log = logger or log

    def create_plan(self, event_refs: Iterable[str]) -> ImportPlan:
        refs = [ref.strip() for ref in event_refs if ref and ref.strip()]
        started = time.monotonic()
        try:
            items = [self._plan_item(ref) for ref in refs]
        except Exception as exc:
            self._telemetry.record_plan_request(
                "failure", (time.monotonic() - started) * 1000,
                requested_events=len(refs), reason=str(exc),
            )
            raise

        if not self._settings.include_existing_events:
            items = [item for item in items if item.status != STATUS_EXISTING]
        plan = ImportPlan(
            plan_id=str(uuid.uuid4()),
            generated_at=to_iso_z(datetime.now(timezone.utc)),
            items=items,
        )
        self._telemetry.record_plan_request(
            "success", (time.monotonic() - started) * 1000, plan_id=plan.plan_id,
            requested_events=len(refs), included_events=len(items),
        )
        self._log.info(
            "Created plan %s with %d of %d events", plan.plan_id, len(items), len(refs),
            extra={"event": "liverc.plan.created", "plan_id": plan.plan_id,
                   "estimated_laps": plan.estimated_laps},
        )
        return plan

    def _plan_item(self, event_ref: str) -> ImportPlanItem:
        html = self._client.get_event_overview(event_ref)
        state = self._repo.get_event_state_by_ref(event_ref)
        sessions = enumerate_sessions_from_event_html(html)

        known = 0
        if state is not None:
            catalogue = max(state.drivers_count or 0, state.entries_count or 0)
            known = max(state.entrant_count, catalogue)
        drivers, laps = estimate_event_size(sessions, known)
        if state is not None:
            laps = max(state.lap_count, laps)
        return ImportPlanItem(
            event_ref=event_ref,
            status=derive_status(len(sessions), state),
            sessions=len(sessions),
            drivers=drivers,
            estimated_laps=laps,
        )

    def apply_plan(self, plan: ImportPlan, job_queue: PlanQueue) -> ImportJob:
        started = time.monotonic()
        event_count = len(plan.items)
        estimated_laps = plan.estimated_laps

        def reject(reason: str) -> None:
            self._telemetry.record_apply_request(
                "rejected", (time.monotonic() - started) * 1000, plan_id=plan.plan_id,
                event_count=event_count, estimated_laps=estimated_laps, reason=reason,
            )
            self._log.warning(
                "Rejected plan %s: %s", plan.plan_id, reason,
                extra={"event": "liverc.apply.rejected", "outcome": "rejected",
                       "plan_id": plan.plan_id, "reason": reason},
            )

        if event_count == 0:
            reject("empty_plan")
            raise ValidationError("Import plan has no events to apply.", code="EMPTY_PLAN")
        if event_count > self._settings.max_events_per_plan:
            reject("max_events_per_plan")
            raise GuardrailExceeded(
                "max_events_per_plan", event_count, self._settings.max_events_per_plan
            )
        if estimated_laps > self._settings.max_total_estimated_laps:
            reject("max_total_estimated_laps")
            raise GuardrailExceeded(
                "max_total_estimated_laps", estimated_laps, self._settings.max_total_estimated_laps
            )

        job = job_queue.enqueue_job(plan.plan_id, [item.event_ref for item in plan.items])
        self._telemetry.record_apply_request(
            "accepted", (time.monotonic() - started) * 1000, plan_id=plan.plan_id,
            job_id=job.id, event_count=event_count, estimated_laps=estimated_laps,
        )
        return job
