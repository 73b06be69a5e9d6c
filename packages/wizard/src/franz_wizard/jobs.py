"""Background export jobs.

Export stages do their work in an asyncio task tracked by an ``ExportJob``
record. Every write to a record is published on the event bus topic
``jobs:<document_id>:<job_id>``; the reconciler subscribes to that topic to
mirror job progress into the stage state.

Example:
    ```python
    bus = create_event_bus({"backend": "memory"})
    await bus.connect()
    service = ExportJobService(JobStore(bus), timeout_seconds=30)

    job = await service.create_job("doc-1", "export")
    service.start_background(job.job_id, lambda: exporter.run(service, job.job_id, ...))
    finished = await service.wait(job.job_id)
    ```
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from franz_common.events import Event, EventBus, EventType
from franz_common.exceptions import NotFoundError
from franz_common.transitions import TransitionValidator

from .exceptions import ExportJobError

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


JOB_STATUS = TransitionValidator(
    "export_job",
    {
        "queued": {"running", "error", "cancelled"},
        "running": {"completed", "error", "cancelled"},
    },
)


def job_topic(document_id: str, job_id: str) -> str:
    return f"jobs:{document_id}:{job_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExportJob:
    """Persisted record of one export run.

    ``revision`` increases with every write, so subscribers can drop events
    that arrive out of order.
    """

    job_id: str
    document_id: str
    stage_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    message: str | None = None
    output: dict[str, Any] | None = None
    error: str | None = None
    revision: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.status = JobStatus(self.status)

    @property
    def topic(self) -> str:
        return job_topic(self.document_id, self.job_id)

    @property
    def is_terminal(self) -> bool:
        return JOB_STATUS.is_terminal(self.status.value)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, JobStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExportJob:
        values = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        for key in ("created_at", "updated_at", "completed_at"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)


class JobStore:
    """In-memory job records that announce every write on the event bus."""

    def __init__(self, event_bus: EventBus):
        self._bus = event_bus
        self._jobs: dict[str, ExportJob] = {}
        self._lock = asyncio.Lock()

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    def find(self, job_id: str) -> ExportJob | None:
        return self._jobs.get(job_id)

    def get(self, job_id: str) -> ExportJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Export job not found: {job_id}", context={"job_id": job_id})
        return job

    def list(self, document_id: str | None = None) -> list[ExportJob]:
        return [
            job for job in self._jobs.values()
            if document_id is None or job.document_id == document_id
        ]

    async def create(self, job: ExportJob) -> ExportJob:
        async with self._lock:
            stored = replace(job, revision=1, updated_at=_utcnow())
            self._jobs[stored.job_id] = stored
        await self._publish(EventType.CREATED, stored)
        return stored

    async def update(self, job_id: str, **changes: Any) -> ExportJob:
        async with self._lock:
            current = self.get(job_id)
            stored = replace(
                current, revision=current.revision + 1, updated_at=_utcnow(), **changes
            )
            self._jobs[job_id] = stored
        # Published outside the lock; handlers may read the store
        await self._publish(EventType.UPDATED, stored)
        return stored

    async def delete(self, job_id: str) -> None:
        async with self._lock:
            job = self._jobs.pop(job_id, None)
        if job is not None:
            await self._publish(EventType.DELETED, job)

    async def _publish(self, event_type: EventType, job: ExportJob) -> None:
        await self._bus.publish(
            job.topic,
            Event(type=event_type, topic=job.topic, payload=job.to_dict(), source="job_store"),
        )


ExportWork = Callable[[], Awaitable[Any]]


class ExportJobService:
    """Lifecycle operations on export jobs.

    Args:
        store: Where job records live
        timeout_seconds: Limit for one background export run
    """

    def __init__(self, store: JobStore, timeout_seconds: float = 30.0):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def get_job(self, job_id: str) -> ExportJob:
        return self.store.get(job_id)

    def is_live(self, job_id: str | None) -> bool:
        """True when the job exists and has not finished."""
        job = self.store.find(job_id) if job_id else None
        return job is not None and not job.is_terminal

    async def create_job(self, document_id: str, stage_id: str) -> ExportJob:
        if not document_id or not stage_id:
            raise ExportJobError(
                "document_id and stage_id are required to create an export job",
                context={"document_id": document_id, "stage_id": stage_id},
            )
        job = await self.store.create(ExportJob(
            job_id=str(uuid.uuid4()),
            document_id=document_id,
            stage_id=stage_id,
            message="Queued for processing",
        ))
        logger.debug("Created export job %s for %s/%s", job.job_id, document_id, stage_id)
        return job

    async def _transition(self, job_id: str, status: JobStatus, **changes: Any) -> ExportJob:
        current = self.get_job(job_id)
        JOB_STATUS.validate(current.status.value, status.value)
        return await self.store.update(job_id, status=status, **changes)

    async def start_job(self, job_id: str) -> ExportJob:
        return await self._transition(
            job_id, JobStatus.RUNNING, progress=5, message="Starting export"
        )

    async def update_progress(
        self, job_id: str, progress: int, message: str | None = None
    ) -> ExportJob:
        """Record progress of a running job.

        Raises:
            ExportJobError: If the job is not running
        """
        job = self.get_job(job_id)
        if job.status is not JobStatus.RUNNING:
            raise ExportJobError(
                f"Cannot update progress of {job.status.value} job {job_id}",
                context={"job_id": job_id, "status": job.status.value},
            )
        if not 0 <= progress <= 100:
            logger.warning("Clamping progress %s of job %s into 0..100", progress, job_id)
            progress = max(0, min(100, progress))
        return await self.store.update(
            job_id, progress=int(progress), message=message or job.message
        )

    async def complete_job(self, job_id: str, output: dict[str, Any]) -> ExportJob:
        return await self._transition(
            job_id,
            JobStatus.COMPLETED,
            progress=100,
            output=output,
            message="Export completed",
            completed_at=_utcnow(),
        )

    async def fail_job(self, job_id: str, error: str, progress: int | None = None) -> ExportJob:
        changes: dict[str, Any] = {"error": error, "message": f"Error: {error}"}
        if progress is not None:
            changes["progress"] = progress
        return await self._transition(job_id, JobStatus.ERROR, **changes)

    async def cancel_job(self, job_id: str) -> ExportJob:
        """Cancel a job and its task. Finished jobs are returned unchanged."""
        job = self.get_job(job_id)
        if job.is_terminal:
            return job
        job = await self._transition(job_id, JobStatus.CANCELLED, message="Export cancelled")
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
        return job

    def start_background(self, job_id: str, work: ExportWork) -> asyncio.Task[Any]:
        """Run ``work`` as a task bounded by ``timeout_seconds``.

        Failures and timeouts mark the job ``error`` at the progress it had
        reached.
        """
        task = asyncio.create_task(self._run(job_id, work), name=f"export-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return task

    async def _run(self, job_id: str, work: ExportWork) -> None:
        try:
            await asyncio.wait_for(work(), timeout=self.timeout_seconds)
        except asyncio.CancelledError:
            logger.debug("Export job %s task cancelled", job_id)
            raise
        except asyncio.TimeoutError:
            await self._fail_unless_finished(
                job_id, f"Export timed out after {self.timeout_seconds:g} seconds"
            )
        except Exception as e:
            logger.exception("Export job %s failed", job_id)
            await self._fail_unless_finished(job_id, str(e) or type(e).__name__)

    async def _fail_unless_finished(self, job_id: str, error: str) -> None:
        job = self.store.find(job_id)
        if job is None or job.is_terminal:
            logger.debug("Export job %s already finished; dropping error %s", job_id, error)
            return
        await self.fail_job(job_id, error, progress=job.progress)

    async def wait(self, job_id: str, timeout: float | None = None) -> ExportJob:
        """Wait for the job's background task, then return the record."""
        task = self._tasks.get(job_id)
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
        return self.get_job(job_id)

    async def cleanup_old_jobs(self, older_than_days: int = 7) -> int:
        """Delete finished jobs last written more than ``older_than_days`` ago."""
        cutoff = _utcnow() - timedelta(days=older_than_days)
        stale = [job.job_id for job in self.store.list() if job.is_terminal and job.updated_at < cutoff]
        for job_id in stale:
            await self.store.delete(job_id)
        if stale:
            logger.info("Cleaned up %d export jobs older than %d days", len(stale), older_than_days)
        return len(stale)

    async def close(self) -> None:
        """Cancel every running export."""
        for job_id in list(self._tasks):
            await self.cancel_job(job_id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
