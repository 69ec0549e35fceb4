"""
Scheduler job queue.

Jobs are rows in the store; the tick claims due rows and runs them. A job
carrying an idempotency key is inserted at most once.
"""

from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List

from shared.logging import get_logger
from shared.errors import NotFoundError, ConflictError
from shared.retry import RetryConfig, calculate_delay
from ..rules.models import SchedulerJob, JobType, JobStatus, new_id, utcnow
from ..persistence.base import AutomationStore


class JobQueue:
    """Enqueue, cancel and inspect scheduler jobs."""

    def __init__(self, store: AutomationStore, max_attempts: int = 3,
                 retry_base_delay: float = 60.0, retry_max_delay: float = 3600.0):
        self.store = store
        self.max_attempts = max_attempts
        self.backoff = RetryConfig(
            max_attempts=max_attempts,
            base_delay=retry_base_delay,
            max_delay=retry_max_delay,
            jitter=False,
        )
        self.logger = get_logger("automation.scheduler.queue")

    def retry_delay(self, attempts: int) -> float:
        """Seconds to wait after the given number of failed attempts (base * 2^attempts)."""
        return calculate_delay(attempts + 1, self.backoff)

    async def schedule_job(self, org_id: str, job_type: JobType, entity_type: str, entity_id: str,
                           run_at: Optional[datetime] = None, record_id: Optional[str] = None,
                           payload: Optional[Dict[str, Any]] = None, max_attempts: Optional[int] = None,
                           idempotency_key: Optional[str] = None) -> SchedulerJob:
        job = SchedulerJob(
            id=new_id(),
            org_id=org_id,
            job_type=job_type,
            entity_type=entity_type,
            entity_id=entity_id,
            record_id=record_id,
            run_at=run_at or utcnow(),
            max_attempts=max_attempts or self.max_attempts,
            payload=payload or {},
            idempotency_key=idempotency_key,
        )
        stored = await self.store.insert_job(job)
        if stored.id != job.id:
            self.logger.debug("Job already scheduled", idempotency_key=idempotency_key, job_id=stored.id)
        else:
            self.logger.info(
                "Job scheduled",
                job_id=stored.id,
                job_type=job_type.value,
                entity_type=entity_type,
                entity_id=entity_id,
                run_at=stored.run_at.isoformat()
            )
        return stored

    async def schedule_workflow_step(self, org_id: str, run_id: str, workflow_id: str, step_id: str,
                                     record_id: str, resume_from: int, delay_seconds: float,
                                     now: Optional[datetime] = None) -> SchedulerJob:
        """Resume a workflow run from action order `resume_from` after a delay."""
        now = now or utcnow()
        return await self.schedule_job(
            org_id=org_id,
            job_type=JobType.WORKFLOW_STEP,
            entity_type="step",
            entity_id=step_id,
            record_id=record_id,
            run_at=now + timedelta(seconds=delay_seconds),
            payload={
                "run_id": run_id,
                "workflow_id": workflow_id,
                "step_id": step_id,
                "record_id": record_id,
                "resume_from": resume_from,
            },
            idempotency_key=f"step:{run_id}:{step_id}",
        )

    async def schedule_workflow_retry(self, org_id: str, run_id: str, workflow_id: str, record_id: str,
                                      retry_delay_seconds: float = 60.0,
                                      now: Optional[datetime] = None) -> SchedulerJob:
        """Re-run a failed workflow run later."""
        now = now or utcnow()
        return await self.schedule_job(
            org_id=org_id,
            job_type=JobType.RETRY,
            entity_type="run",
            entity_id=run_id,
            record_id=record_id,
            run_at=now + timedelta(seconds=retry_delay_seconds),
            payload={"run_id": run_id, "workflow_id": workflow_id, "record_id": record_id},
            max_attempts=self.max_attempts,
        )

    async def schedule_workflow_execution(self, org_id: str, workflow_id: str, run_at: datetime,
                                          payload: Optional[Dict[str, Any]] = None) -> SchedulerJob:
        """Run a scheduled workflow over its module's records at `run_at`."""
        return await self.schedule_job(
            org_id=org_id,
            job_type=JobType.SCHEDULED_WORKFLOW,
            entity_type="workflow",
            entity_id=workflow_id,
            run_at=run_at,
            payload={"workflow_id": workflow_id, "fire_at": run_at.isoformat(), **(payload or {})},
            idempotency_key=f"scheduled:{workflow_id}:{run_at.isoformat()}",
        )

    async def cancel_job(self, org_id: str, job_id: str) -> SchedulerJob:
        """Cancel a pending job. Raises NotFoundError or ConflictError."""
        job = await self.store.get_job(org_id, job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        if not await self.store.cancel_job(org_id, job_id):
            raise ConflictError("Only pending jobs can be cancelled", {"status": job.status.value})

        self.logger.info("Job cancelled", job_id=job_id)
        return await self.store.get_job(org_id, job_id)

    async def pending_jobs_for_entity(self, org_id: str, entity_type: str, entity_id: str) -> List[SchedulerJob]:
        return await self.store.list_jobs(
            org_id, status=JobStatus.PENDING, entity_type=entity_type, entity_id=entity_id
        )
