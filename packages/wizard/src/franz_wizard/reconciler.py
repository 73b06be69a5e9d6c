"""Mirror export job records into stage state.

The reconciler subscribes to a job's event bus topic and translates each
record it sees into a ``StageStateStore`` update:

    queued / running  ->  stage running, progress message
    completed         ->  stage completed with the job output
    error             ->  stage error with the job error
    cancelled         ->  stage idle

Records are applied only while the stage still points at the job
(``export_job_id``) and only when their revision is newer than the last one
applied, so late or duplicated deliveries are harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from franz_common.events import Event, EventType, Subscription
from franz_common.transitions import InvalidTransitionError

from .jobs import ExportJob, JobStatus, job_topic
from .state import StageStatus, utcnow

if TYPE_CHECKING:
    from .jobs import JobStore
    from .state import StageStateStore

logger = logging.getLogger(__name__)


@dataclass
class _Watch:
    document_id: str
    job_id: str
    stage_id: str
    subscription: Subscription | None = None
    last_revision: int = 0


class ExportJobReconciler:
    """Applies export job updates to one document's stage states.

    Args:
        jobs: Job store whose event bus carries the job updates
        states: Stage states of the document being reconciled
    """

    def __init__(self, jobs: JobStore, states: StageStateStore):
        self._jobs = jobs
        self._states = states
        self._watches: dict[str, _Watch] = {}

    def is_watching(self, stage_id: str) -> bool:
        return stage_id in self._watches

    async def watch(self, document_id: str, job_id: str, stage_id: str) -> None:
        """Track ``job_id`` for ``stage_id``, replacing any earlier watch.

        The job's current record is applied straight away, so a job that
        finished before the subscription existed is still picked up.
        """
        await self.unwatch(stage_id)
        watch = _Watch(document_id=document_id, job_id=job_id, stage_id=stage_id)
        self._watches[stage_id] = watch

        async def handler(event: Event) -> None:
            await self._on_event(watch, event)

        watch.subscription = await self._jobs.event_bus.subscribe(
            job_topic(document_id, job_id), handler
        )
        logger.debug("Watching export job %s for stage %s", job_id, stage_id)

        current = self._jobs.find(job_id)
        if current is not None:
            await self._apply_and_settle(watch, current)

    async def unwatch(self, stage_id: str) -> None:
        watch = self._watches.pop(stage_id, None)
        if watch is not None and watch.subscription is not None:
            await watch.subscription.cancel()
            logger.debug("Stopped watching export job %s", watch.job_id)

    async def close(self) -> None:
        for stage_id in list(self._watches):
            await self.unwatch(stage_id)

    async def _on_event(self, watch: _Watch, event: Event) -> None:
        if self._watches.get(watch.stage_id) is not watch:
            return
        if event.type is EventType.DELETED:
            logger.debug("Export job %s deleted; stop watching", watch.job_id)
            await self.unwatch(watch.stage_id)
            return
        try:
            job = ExportJob.from_dict(event.payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.exception("Malformed export job event for %s", watch.job_id)
            self._mark_monitor_failure(watch, e)
            await self.unwatch(watch.stage_id)
            return
        await self._apply_and_settle(watch, job)

    async def _apply_and_settle(self, watch: _Watch, job: ExportJob) -> None:
        self._apply(watch, job)
        if job.is_terminal and self._watches.get(watch.stage_id) is watch:
            await self.unwatch(watch.stage_id)

    def _apply(self, watch: _Watch, job: ExportJob) -> bool:
        """Apply one job record. Returns whether the stage was updated."""
        state = self._states.get(watch.stage_id)
        if state.export_job_id != job.job_id:
            logger.debug(
                "Ignoring job %s for stage %s, which now tracks %s",
                job.job_id, watch.stage_id, state.export_job_id,
            )
            return False
        if job.revision <= watch.last_revision:
            logger.debug(
                "Ignoring stale revision %d of job %s (have %d)",
                job.revision, job.job_id, watch.last_revision,
            )
            return False

        try:
            self._states.update(watch.stage_id, **self._stage_changes(job))
        except InvalidTransitionError as e:
            logger.warning("Cannot apply job %s to stage %s: %s", job.job_id, watch.stage_id, e)
            return False
        watch.last_revision = job.revision
        return True

    @staticmethod
    def _stage_changes(job: ExportJob) -> dict[str, Any]:
        if job.status is JobStatus.QUEUED:
            return {
                "status": StageStatus.RUNNING,
                "generation_progress": {"message": "Queued for processing...", "percent": job.progress},
            }
        if job.status is JobStatus.RUNNING:
            return {
                "status": StageStatus.RUNNING,
                "generation_progress": {
                    "message": f"Processing: {job.progress}%",
                    "percent": job.progress,
                },
            }
        if job.status is JobStatus.COMPLETED:
            return {
                "status": StageStatus.COMPLETED,
                "output": job.output,
                "error": None,
                "completed_at": job.completed_at or utcnow(),
                "generation_progress": {"message": "Export completed", "percent": 100},
            }
        if job.status is JobStatus.ERROR:
            return {
                "status": StageStatus.ERROR,
                "error": job.error or "Export failed",
                "generation_progress": {
                    "message": f"Error: {job.error or 'Export failed'}",
                    "percent": job.progress,
                },
            }
        return {
            "status": StageStatus.IDLE,
            "export_job_id": None,
            "generation_progress": {"message": "Export cancelled", "percent": job.progress},
        }

    def _mark_monitor_failure(self, watch: _Watch, error: Exception) -> None:
        message = f"Failed to monitor export job: {error}"
        try:
            self._states.update(watch.stage_id, status=StageStatus.ERROR, error=message)
        except InvalidTransitionError:
            logger.warning("Stage %s: %s", watch.stage_id, message)
