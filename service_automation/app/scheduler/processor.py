"""
Scheduler tick processing.

Each tick discovers due scheduled workflows, advances due cadence steps and
drains a bounded batch of the job queue. Jobs run sequentially; a failing
job goes back to pending with exponential backoff until it runs out of
attempts.
"""

from datetime import datetime, timedelta
from typing import Dict, Any, Optional

from croniter import croniter, CroniterBadCronError, CroniterBadDateError

from shared.logging import get_logger
from shared.errors import AutomationError, ServiceError
from ..rules.engine import WorkflowEngine
from ..rules.conditions import evaluate_conditions
from ..rules.models import (
    SchedulerJob, JobType, RunStatus, TriggerType, Record, Workflow, parse_datetime, utcnow
)
from ..persistence.base import AutomationStore
from .cadence import CadenceService
from .queue import JobQueue


class JobHandlerError(ServiceError):
    """A job handler finished without doing its work."""


class SchedulerProcessor:
    """Runs the periodic scheduler tick."""

    def __init__(self, store: AutomationStore, queue: JobQueue, engine: WorkflowEngine,
                 cadences: CadenceService, batch_size: int = 100,
                 scheduled_batch_size: int = 100, metrics=None):
        self.store = store
        self.queue = queue
        self.engine = engine
        self.cadences = cadences
        self.batch_size = batch_size
        self.scheduled_batch_size = scheduled_batch_size
        self.metrics = metrics
        self.logger = get_logger("automation.scheduler")

        self._handlers = {
            JobType.WORKFLOW_STEP: self._handle_workflow_step,
            JobType.SCHEDULED_WORKFLOW: self._handle_scheduled_workflow,
            JobType.RETRY: self._handle_retry,
            JobType.CADENCE_STEP: self._handle_cadence_step,
        }

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run one scheduler pass and return its summary."""
        now = now or utcnow()
        if self.metrics:
            with self.metrics.time_operation("scheduler_tick_duration_seconds"):
                return await self._tick(now)
        return await self._tick(now)

    async def _tick(self, now: datetime) -> Dict[str, Any]:
        scheduled = await self.process_scheduled_workflows(now)
        cadence = await self.cadences.process_pending_steps(now)
        jobs = await self.process_jobs(now)

        summary = {**scheduled, "cadence": cadence, "jobs": jobs}
        self.logger.info("Scheduler tick completed", **scheduled, jobs_processed=jobs["processed"],
                         cadence_processed=cadence["processed"])
        return summary

    async def process_scheduled_workflows(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Enqueue a job for every scheduled workflow whose cron fire time has passed."""
        now = now or utcnow()
        workflows = await self.store.list_scheduled_workflows(self.scheduled_batch_size)
        triggered = 0

        for workflow in workflows:
            fire_at = self._next_fire_time(workflow)
            if fire_at is None or fire_at > now:
                continue

            await self.queue.schedule_workflow_execution(
                workflow.org_id, workflow.id, fire_at, payload={"scheduled_run": True}
            )
            await self.store.set_last_scheduled_at(workflow.id, now)
            triggered += 1

        return {"workflows_checked": len(workflows), "workflows_triggered": triggered}

    def _next_fire_time(self, workflow: Workflow) -> Optional[datetime]:
        expression = workflow.trigger_config.get("cron")
        if not expression:
            return None
        start = workflow.last_scheduled_at or workflow.created_at
        try:
            return croniter(expression, start).get_next(datetime)
        except (CroniterBadCronError, CroniterBadDateError, ValueError) as e:
            self.logger.warning("Invalid cron expression", workflow_id=workflow.id,
                                cron=expression, error=str(e))
            return None

    async def process_jobs(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Claim due jobs and run their handlers."""
        now = now or utcnow()
        summary = {"processed": 0, "completed": 0, "failed": 0, "retrying": 0}

        for job in await self.store.claim_due_jobs(now, self.batch_size):
            summary["processed"] += 1
            outcome = await self.process_job(job, now)
            summary[outcome] += 1

        return summary

    async def process_job(self, job: SchedulerJob, now: Optional[datetime] = None) -> str:
        """Run one claimed job; returns "completed", "retrying" or "failed"."""
        now = now or utcnow()
        handler = self._handlers.get(job.job_type)

        try:
            if handler is None:
                raise JobHandlerError("Unknown job type", {"job_type": str(job.job_type)})
            result = await handler(job, now)
        except Exception as e:
            message = e.message if isinstance(e, AutomationError) else str(e)
            if job.attempts < job.max_attempts:
                delay = self.queue.retry_delay(job.attempts)
                retry_at = now + timedelta(seconds=delay)
                await self.store.fail_job(job.id, message, utcnow(), retry_at)
                outcome = "retrying"
                self.logger.warning("Job failed, retrying", job_id=job.id, job_type=job.job_type.value,
                                    attempts=job.attempts, retry_at=retry_at.isoformat(), error=message)
            else:
                await self.store.fail_job(job.id, message, utcnow(), None)
                outcome = "failed"
                self.logger.error("Job failed permanently", job_id=job.id, job_type=job.job_type.value,
                                  attempts=job.attempts, error=message)
        else:
            await self.store.complete_job(job.id, result, utcnow())
            outcome = "completed"
            self.logger.info("Job completed", job_id=job.id, job_type=job.job_type.value)

        if self.metrics:
            self.metrics.record_job(job.job_type.value, outcome)
        return outcome

    async def _handle_workflow_step(self, job: SchedulerJob, now: datetime) -> Dict[str, Any]:
        payload = job.payload
        result = await self.engine.resume_workflow(
            job.org_id,
            payload["workflow_id"],
            payload["run_id"],
            payload.get("record_id") or job.record_id,
            step_id=payload.get("step_id"),
            resume_from=payload.get("resume_from"),
        )
        if result.status == RunStatus.FAILED:
            raise JobHandlerError(result.error or "Resumed workflow run failed", {"run_id": result.run_id})
        return {"run_id": result.run_id, "status": result.status.value}

    async def _handle_retry(self, job: SchedulerJob, now: datetime) -> Dict[str, Any]:
        result = await self.engine.retry_run(job.org_id, job.payload["run_id"])
        if result.status == RunStatus.FAILED:
            raise JobHandlerError(result.error or "Retried workflow run failed", {"run_id": result.run_id})
        return {"original_run_id": job.payload["run_id"], "run_id": result.run_id,
                "status": result.status.value}

    async def _handle_cadence_step(self, job: SchedulerJob, now: datetime) -> Dict[str, Any]:
        enrollment = await self.store.get_enrollment(
            job.org_id, job.payload["cadence_id"], job.payload.get("record_id") or job.record_id
        )
        if enrollment is None:
            return {"skipped": True, "reason": "Enrollment not found"}
        outcome = await self.cadences.process_enrollment(enrollment, now)
        if outcome == "failed":
            raise JobHandlerError("Cadence step failed", {"enrollment_id": enrollment.id})
        return {"enrollment_id": enrollment.id, "outcome": outcome}

    async def _handle_scheduled_workflow(self, job: SchedulerJob, now: datetime) -> Dict[str, Any]:
        """Run a scheduled workflow over a batch of its module's records."""
        workflow_id = job.payload.get("workflow_id") or job.entity_id
        workflow = await self.store.get_workflow(job.org_id, workflow_id)
        if workflow is None:
            return {"skipped": True, "reason": "Workflow not found", "workflow_id": workflow_id}
        if not workflow.enabled:
            return {"skipped": True, "reason": "Workflow is disabled", "workflow_id": workflow_id}

        records = await self.store.list_records(job.org_id, workflow.module_id, self.scheduled_batch_size)
        days_field = workflow.trigger_config.get("days_after_field")
        fire_at = job.payload.get("fire_at") or job.run_at.isoformat()
        results = []
        failed = 0

        for record in records:
            if days_field and not self._is_old_enough(record, days_field,
                                                      workflow.trigger_config.get("days_after_value", 0), now):
                continue
            if not evaluate_conditions(workflow.conditions, record):
                continue

            # Date-relative schedules fire once per record; plain cron once per fire time.
            # run_at moves on retry, so the fire time comes from the payload.
            if days_field:
                key = f"scheduled:{workflow.id}:{record.id}:{days_field}"
            else:
                key = f"scheduled:{workflow.id}:{record.id}:{fire_at}"

            result = await self.engine.execute_workflow(
                workflow, record, TriggerType.SCHEDULED, idempotency_key=key
            )
            if result.status == RunStatus.SKIPPED:
                continue
            if result.status == RunStatus.FAILED:
                failed += 1
            results.append({"record_id": record.id, "status": result.status.value})

        if failed:
            raise JobHandlerError("Scheduled workflow failed for some records",
                                  {"workflow_id": workflow.id, "failed": failed})

        return {"workflow_id": workflow.id, "records_processed": len(results), "results": results}

    @staticmethod
    def _is_old_enough(record: Record, field_name: str, days: Any, now: datetime) -> bool:
        value = record.get_field(field_name)
        if value in (None, ""):
            return False
        try:
            moment = parse_datetime(value)
            threshold = timedelta(days=float(days or 0))
        except (AutomationError, TypeError, ValueError):
            return False
        return moment + threshold <= now
