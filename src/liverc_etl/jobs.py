"""liverc_etl.jobs

Polling job queue for event-summary imports.

A worker claims at most one QUEUED job per cycle, runs its items in order
through the SummaryImporter, and records per-item state, counts and job
progress.  Processing is fail-fast: the first item failure marks the
remaining items FAILED (not attempted) and the job FAILED.  A repository
error while recording progress or the final state also fails the job, so a
claimed job never stays RUNNING.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from liverc_etl.models import (
    JOB_FAILED,
    JOB_MODE_SUMMARY,
    JOB_SUCCEEDED,
    TARGET_EVENT,
    ImportJob,
    NewJobItem,
    SummaryImportCounts,
    plan_hash,
)
from liverc_etl.ports import ImportJobRepository, Telemetry

log = logging.getLogger(__name__)

ITEM_FAILED_MESSAGE = "Failed to import LiveRC event summary."
JOB_FAILED_MESSAGE = "LiveRC summary import failed."
NOT_ATTEMPTED_MESSAGE = "Not attempted: an earlier item in this job failed."
UNSUPPORTED_TARGET_MESSAGE = "Only EVENT targets can be imported by the summary worker."


class EventSummaryImporter(Protocol):
    def ingest_event_summary(self, event_url: str) -> SummaryImportCounts: ...


# ---------------------------------------------------------------------------
# Read model
# ---------------------------------------------------------------------------

@dataclass
class JobStatusView:
    job_id: str
    state: str
    progress_pct: int
    message: str | None
    counts: SummaryImportCounts
    completed_items: int
    total_items: int
    items: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "state": self.state,
            "progressPct": self.progress_pct,
            "message": self.message,
            "counts": self.counts.to_dict(),
            "completedItems": self.completed_items,
            "totalItems": self.total_items,
            "items": self.items,
        }


def job_status(job: ImportJob) -> JobStatusView:
    counts = SummaryImportCounts()
    completed = 0
    items: list[dict[str, Any]] = []
    for item in job.items:
        if item.counts is not None:
            counts.add(item.counts)
        if item.state == JOB_SUCCEEDED:
            completed += 1
        items.append({
            "itemId": item.id,
            "targetType": item.target_type,
            "targetRef": item.target_ref,
            "state": item.state,
            "message": item.message,
            "counts": item.counts.to_dict() if item.counts is not None else None,
        })
    return JobStatusView(
        job_id=job.id,
        state=job.state,
        progress_pct=job.progress_pct,
        message=job.message,
        counts=counts,
        completed_items=completed,
        total_items=len(job.items),
        items=items,
    )


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class JobQueue:
    def __init__(
        self,
        repository: ImportJobRepository,
        summary_importer: EventSummaryImporter,
        telemetry: Telemetry,
        logger: logging.Logger | None = None,
        poll_interval_seconds: float = 1.0,
        processing_delay_seconds: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repo = repository
        self._importer = summary_importer
        self._telemetry = telemetry
        self._log = logger or log
        self._poll_interval = poll_interval_seconds
        self._processing_delay = processing_delay_seconds
        self._sleep = sleep
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def enqueue_job(self, plan_id: str, event_refs: Iterable[str]) -> ImportJob:
        items = [
            NewJobItem(target_ref=ref.strip(), target_type=TARGET_EVENT)
            for ref in event_refs
            if ref and ref.strip()
        ]
        job = self._repo.create_job(plan_id, plan_hash(plan_id.strip()), JOB_MODE_SUMMARY, items)
        self._log.info(
            "Enqueued job %s with %d items", job.id, len(items),
            extra={"event": "liverc.jobs.enqueued", "job_id": job.id, "plan_id": plan_id},
        )
        return job

    def get_job(self, job_id: str) -> ImportJob | None:
        return self._repo.get_job(job_id)

    # -- worker loop -------------------------------------------------------

    def run_once(self) -> str | None:
        """Claim and process at most one job; None when idle or already running."""
        if not self._cycle_lock.acquire(blocking=False):
            return None
        try:
            job = self._repo.take_next_queued_job()
            if job is None:
                return None
            self._process_job(job)
            return job.id
        finally:
            self._cycle_lock.release()

    def run_forever(self) -> None:
        self._stop.clear()
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                self._log.exception(
                    "Job runner cycle failed",
                    extra={"event": "liverc.jobs.tick_failed", "outcome": "failure"},
                )
            self._stop.wait(self._poll_interval)

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="liverc-job-queue", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    # -- processing --------------------------------------------------------

    def _process_job(self, job: ImportJob) -> None:
        finished: set[str] = set()
        try:
            self._process_items(job, finished)
        except Exception as exc:
            self._log.exception(
                "Job %s failed: %s", job.id, exc,
                extra={"event": "liverc.jobs.job_failed", "outcome": "failure",
                       "job_id": job.id, "reason": str(exc)},
            )
            for item in job.items:
                if item.id not in finished:
                    self._safe_update_item(job.id, item.id, JOB_FAILED, NOT_ATTEMPTED_MESSAGE)
            self._safe_mark_failed(job.id)

    def _process_items(self, job: ImportJob, finished: set[str]) -> None:
        total = len(job.items)
        if total == 0:
            self._repo.update_job_progress(job.id, 100)
            self._repo.mark_job_succeeded(job.id)
            return

        for index, item in enumerate(job.items):
            if item.target_type != TARGET_EVENT:
                self._log.warning(
                    "Unsupported target type %s for %s", item.target_type, item.target_ref,
                    extra={"event": "liverc.jobs.item_unsupported", "outcome": "failure",
                           "job_id": job.id, "item_id": item.id,
                           "target_type": item.target_type},
                )
                self._fail_job(job, index, UNSUPPORTED_TARGET_MESSAGE, finished)
                return

            if self._processing_delay > 0:
                self._sleep(self._processing_delay)

            started = time.monotonic()
            self._log.info(
                "Importing %s", item.target_ref,
                extra={"event": "liverc.jobs.item_started", "outcome": "running",
                       "job_id": job.id, "item_id": item.id, "target_ref": item.target_ref},
            )
            try:
                counts = self._importer.ingest_event_summary(item.target_ref)
            except Exception as exc:
                duration_ms = (time.monotonic() - started) * 1000
                self._telemetry.record_event_ingestion(
                    "failure", duration_ms, job.id, item.id, item.target_ref, reason=str(exc)
                )
                self._log.warning(
                    "Import failed for %s: %s", item.target_ref, exc,
                    extra={"event": "liverc.jobs.item_failed", "outcome": "failure",
                           "job_id": job.id, "item_id": item.id,
                           "target_ref": item.target_ref, "reason": str(exc)},
                )
                self._fail_job(job, index, ITEM_FAILED_MESSAGE, finished)
                return

            duration_ms = (time.monotonic() - started) * 1000
            self._safe_update_item(job.id, item.id, JOB_SUCCEEDED, None, counts)
            finished.add(item.id)
            self._repo.update_job_progress(job.id, round((index + 1) / total * 100))
            self._telemetry.record_event_ingestion(
                "success", duration_ms, job.id, item.id, item.target_ref, counts=counts.to_dict()
            )
            self._log.info(
                "Imported %s", item.target_ref,
                extra={"event": "liverc.jobs.item_succeeded", "outcome": "success",
                       "job_id": job.id, "item_id": item.id, "counts": counts.to_dict()},
            )

        self._repo.mark_job_succeeded(job.id)

    def _fail_job(self, job: ImportJob, index: int, message: str, finished: set[str]) -> None:
        """Fail item ``index``, mark the rest not attempted, then fail the job."""
        failed = job.items[index]
        self._safe_update_item(job.id, failed.id, JOB_FAILED, message)
        finished.add(failed.id)
        for remaining in job.items[index + 1:]:
            self._safe_update_item(job.id, remaining.id, JOB_FAILED, NOT_ATTEMPTED_MESSAGE)
            finished.add(remaining.id)
        self._safe_mark_failed(job.id)

    def _safe_mark_failed(self, job_id: str) -> None:
        try:
            self._repo.mark_job_failed(job_id, JOB_FAILED_MESSAGE)
        except Exception:
            self._log.exception(
                "Failed to mark job %s failed", job_id,
                extra={"event": "liverc.jobs.job_mark_failed", "outcome": "failure",
                       "job_id": job_id},
            )

    def _safe_update_item(
        self,
        job_id: str,
        item_id: str,
        state: str,
        message: str | None,
        counts: SummaryImportCounts | None = None,
    ) -> None:
        try:
            self._repo.update_job_item(item_id, state, message, counts)
        except Exception:
            self._log.exception(
                "Failed to update job item %s", item_id,
                extra={"event": "liverc.jobs.item_update_failed", "outcome": "failure",
                       "job_id": job_id, "item_id": item_id},
            )
