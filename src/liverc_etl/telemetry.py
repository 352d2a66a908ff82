"""liverc_etl.telemetry

Telemetry sinks.  LoggingTelemetry emits one structured log record per
call; RecordingTelemetry keeps the calls in memory (used by the CLI run
report and in tests).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)


@dataclass
class TelemetryEvent:
    metric: str
    outcome: str
    duration_ms: float
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "outcome": self.outcome,
            "duration_ms": round(self.duration_ms, 2),
            **self.attributes,
        }


class RecordingTelemetry:
    """Collects every telemetry call as a TelemetryEvent."""

    def __init__(self) -> None:
        self.events: list[TelemetryEvent] = []

    def _record(self, metric: str, outcome: str, duration_ms: float, **attrs: Any) -> None:
        self.events.append(TelemetryEvent(metric, outcome, duration_ms, attrs))

    def of(self, metric: str, outcome: str | None = None) -> list[TelemetryEvent]:
        return [
            e for e in self.events
            if e.metric == metric and (outcome is None or e.outcome == outcome)
        ]

    def record_plan_request(self, outcome, duration_ms, plan_id=None,
                            requested_events=0, included_events=0, reason=None) -> None:
        self._record("plan.request", outcome, duration_ms, plan_id=plan_id,
                     requested_events=requested_events,
                     included_events=included_events, reason=reason)

    def record_apply_request(self, outcome, duration_ms, plan_id=None, job_id=None,
                             event_count=0, estimated_laps=0, reason=None) -> None:
        self._record("apply.request", outcome, duration_ms, plan_id=plan_id,
                     job_id=job_id, event_count=event_count,
                     estimated_laps=estimated_laps, reason=reason)

    def record_event_ingestion(self, outcome, duration_ms, job_id, item_id,
                               target_ref, counts=None, reason=None) -> None:
        self._record("ingest.event", outcome, duration_ms, job_id=job_id,
                     item_id=item_id, target_ref=target_ref, counts=counts,
                     reason=reason)

    def record_session_ingestion(self, outcome, duration_ms, session_ref, event_id=None,
                                 class_name=None, session_type=None, counts=None,
                                 reason=None) -> None:
        self._record("ingest.session", outcome, duration_ms, session_ref=session_ref,
                     event_id=event_id, class_name=class_name,
                     session_type=session_type, counts=counts, reason=reason)


class LoggingTelemetry(RecordingTelemetry):
    """Records like RecordingTelemetry and logs each event at INFO (WARNING on failure)."""

    def __init__(self, logger: logging.Logger | None = None, keep: bool = False) -> None:
        super().__init__()
        self._log = logger or log
        self._keep = keep

    def _record(self, metric: str, outcome: str, duration_ms: float, **attrs: Any) -> None:
        event = TelemetryEvent(metric, outcome, duration_ms, attrs)
        if self._keep:
            self.events.append(event)
        level = logging.WARNING if outcome in ("failure", "rejected") else logging.INFO
        self._log.log(
            level,
            "telemetry %s outcome=%s duration_ms=%.1f",
            metric, outcome, duration_ms,
            extra={"event": f"liverc.telemetry.{metric}", **event.to_dict()},
        )
