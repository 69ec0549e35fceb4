"""
Cadence enrollment lifecycle and due step processing.
"""

from datetime import datetime, timedelta
from typing import Dict, Any, Optional, List

from shared.logging import get_logger
from shared.errors import NotFoundError, ConflictError, UnprocessableError
from ..rules.models import (
    Cadence, CadenceEnrollment, CadenceStep, CadenceStepType, EnrollmentStatus,
    ActionResult, ActionStatus, AutomationRun, RunSource, RunStatus, Record,
    new_id, utcnow
)
from ..actions.templates import render_template
from ..persistence.base import AutomationStore


class CadenceService:
    """Enrolls records in cadences and executes their due steps."""

    def __init__(self, store: AutomationStore, batch_size: int = 100, metrics=None):
        self.store = store
        self.batch_size = batch_size
        self.metrics = metrics
        self.logger = get_logger("automation.cadence")

    @staticmethod
    def _step_due_at(steps: List[CadenceStep], index: int, now: datetime) -> datetime:
        delay_days = steps[index].delay_days if index < len(steps) else 0
        return now + timedelta(days=delay_days or 0)

    async def enroll(self, org_id: str, cadence_id: str, record_id: str,
                     enrolled_by: Optional[str] = None, dry_run: bool = False,
                     now: Optional[datetime] = None) -> CadenceEnrollment:
        """Enroll a record, reactivating a finished or cancelled enrollment.

        Raises NotFoundError for an unknown cadence or record,
        UnprocessableError for a disabled cadence and ConflictError when
        the record is already actively enrolled.
        """
        now = now or utcnow()
        cadence = await self.store.get_cadence(org_id, cadence_id)
        if cadence is None:
            raise NotFoundError("Cadence", cadence_id)
        if not cadence.enabled:
            raise UnprocessableError("Cadence is disabled", {"cadence_id": cadence_id})
        if await self.store.get_record(org_id, record_id) is None:
            raise NotFoundError("Record", record_id)

        existing = await self.store.get_enrollment(org_id, cadence_id, record_id)
        if existing and existing.status == EnrollmentStatus.ACTIVE:
            raise ConflictError("Record is already enrolled in cadence",
                                {"cadence_id": cadence_id, "record_id": record_id})

        enrollment = existing or CadenceEnrollment(
            id=new_id(),
            org_id=org_id,
            cadence_id=cadence_id,
            record_id=record_id,
            enrolled_by=enrolled_by,
        )
        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.current_step = 0
        enrollment.next_step_at = self._step_due_at(cadence.sorted_steps(), 0, now)

        if dry_run:
            return enrollment

        saved = await self.store.save_enrollment(enrollment)
        self.logger.info(
            "Record enrolled in cadence",
            cadence_id=cadence_id,
            record_id=record_id,
            enrollment_id=saved.id,
            next_step_at=saved.next_step_at.isoformat()
        )
        return saved

    async def unenroll(self, org_id: str, record_id: str, cadence_id: Optional[str] = None) -> int:
        """Cancel active enrollments for a record; returns how many were cancelled."""
        cancelled = 0
        for enrollment in await self.store.list_enrollments(org_id, record_id=record_id,
                                                            status=EnrollmentStatus.ACTIVE):
            if cadence_id and enrollment.cadence_id != cadence_id:
                continue
            enrollment.status = EnrollmentStatus.CANCELLED
            enrollment.next_step_at = None
            await self.store.save_enrollment(enrollment)
            cancelled += 1

        if cancelled:
            self.logger.info("Cadence enrollments cancelled", record_id=record_id,
                             cadence_id=cadence_id, count=cancelled)
        return cancelled

    async def pause(self, org_id: str, cadence_id: str, record_id: str) -> CadenceEnrollment:
        enrollment = await self._require_enrollment(org_id, cadence_id, record_id)
        if enrollment.status != EnrollmentStatus.ACTIVE:
            raise ConflictError("Only active enrollments can be paused", {"status": enrollment.status.value})
        enrollment.status = EnrollmentStatus.PAUSED
        return await self.store.save_enrollment(enrollment)

    async def resume(self, org_id: str, cadence_id: str, record_id: str,
                     now: Optional[datetime] = None) -> CadenceEnrollment:
        """Resume a paused enrollment; the current step's delay restarts from now."""
        now = now or utcnow()
        enrollment = await self._require_enrollment(org_id, cadence_id, record_id)
        if enrollment.status != EnrollmentStatus.PAUSED:
            raise ConflictError("Only paused enrollments can be resumed", {"status": enrollment.status.value})

        cadence = await self.store.get_cadence(org_id, cadence_id)
        if cadence is None:
            raise NotFoundError("Cadence", cadence_id)

        steps = cadence.sorted_steps()
        if enrollment.current_step >= len(steps):
            enrollment.status = EnrollmentStatus.COMPLETED
            enrollment.next_step_at = None
        else:
            enrollment.status = EnrollmentStatus.ACTIVE
            enrollment.next_step_at = self._step_due_at(steps, enrollment.current_step, now)
        return await self.store.save_enrollment(enrollment)

    async def _require_enrollment(self, org_id: str, cadence_id: str, record_id: str) -> CadenceEnrollment:
        enrollment = await self.store.get_enrollment(org_id, cadence_id, record_id)
        if enrollment is None:
            raise NotFoundError("Cadence enrollment", details={"cadence_id": cadence_id, "record_id": record_id})
        return enrollment

    async def process_pending_steps(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every due step once. Called from the scheduler tick."""
        now = now or utcnow()
        summary = {"processed": 0, "succeeded": 0, "failed": 0, "cancelled": 0}

        for enrollment in await self.store.list_due_enrollments(now, self.batch_size):
            outcome = await self.process_enrollment(enrollment, now)
            if outcome == "cancelled":
                summary["cancelled"] += 1
                continue
            summary["processed"] += 1
            summary["succeeded" if outcome == "succeeded" else "failed"] += 1

        if summary["processed"] or summary["cancelled"]:
            self.logger.info("Cadence steps processed", **summary)
        return summary

    async def process_enrollment(self, enrollment: CadenceEnrollment, now: Optional[datetime] = None) -> str:
        """Execute the enrollment's current step.

        Returns "succeeded", "failed" or "cancelled".
        """
        now = now or utcnow()
        cadence = await self.store.get_cadence(enrollment.org_id, enrollment.cadence_id)
        if cadence is None or not cadence.enabled:
            await self._cancel(enrollment, "Cadence not found or disabled")
            return "cancelled"

        record = await self.store.get_record(enrollment.org_id, enrollment.record_id)
        if record is None:
            await self._cancel(enrollment, "Record not found")
            return "cancelled"

        steps = cadence.sorted_steps()
        from_step = enrollment.current_step
        run = await self.store.create_run(AutomationRun(
            id=new_id(),
            org_id=enrollment.org_id,
            source=RunSource.CADENCE,
            trigger="scheduled",
            module_id=record.module_id,
            record_id=record.id,
            input={
                "cadence_id": cadence.id,
                "enrollment_id": enrollment.id,
                "current_step": from_step,
            },
        ))

        if from_step >= len(steps):
            result = None
        else:
            result = await self._execute_step(steps[from_step], cadence, record, enrollment, now)

        if result is None or result.status != ActionStatus.FAILED:
            self._advance(enrollment, steps, now)
            await self.store.save_enrollment(enrollment)
            run.status = RunStatus.COMPLETED
            run.output = {"stepped": True, "from_step": from_step, "to_step": enrollment.current_step}
            outcome = "succeeded"
        else:
            run.status = RunStatus.FAILED
            run.error = result.error
            outcome = "failed"

        run.actions_executed = [result] if result else []
        run.completed_at = utcnow()
        await self.store.complete_run(run)

        if self.metrics:
            self.metrics.record_business_event(f"cadence_step_{outcome}")
        self.logger.info(
            "Cadence step executed",
            cadence_id=cadence.id,
            enrollment_id=enrollment.id,
            step=from_step,
            outcome=outcome,
            enrollment_status=enrollment.status.value
        )
        return outcome

    def _advance(self, enrollment: CadenceEnrollment, steps: List[CadenceStep], now: datetime):
        next_index = enrollment.current_step + 1
        enrollment.current_step = next_index
        if next_index >= len(steps):
            enrollment.status = EnrollmentStatus.COMPLETED
            enrollment.next_step_at = None
        else:
            enrollment.next_step_at = self._step_due_at(steps, next_index, now)

    async def _cancel(self, enrollment: CadenceEnrollment, reason: str):
        enrollment.status = EnrollmentStatus.CANCELLED
        enrollment.next_step_at = None
        await self.store.save_enrollment(enrollment)
        self.logger.warning("Cadence enrollment cancelled", enrollment_id=enrollment.id, reason=reason)

    async def _execute_step(self, step: CadenceStep, cadence: Cadence, record: Record,
                            enrollment: CadenceEnrollment, now: datetime) -> ActionResult:
        config = step.config
        try:
            if step.type == CadenceStepType.WAIT:
                return ActionResult(step.id, step.type.value, ActionStatus.SUCCESS, {"waited": True})

            if step.type in (CadenceStepType.TASK, CadenceStepType.CALL):
                title = config.get("title") or (
                    f"Call {record.title or record.id}" if step.type == CadenceStepType.CALL else cadence.name
                )
                task = await self.store.create_entity(enrollment.org_id, "task", {
                    "title": render_template(title, record),
                    "description": render_template(config.get("description") or config.get("script"), record),
                    "priority": config.get("priority", "normal"),
                    "task_type": step.type.value,
                    "assigned_to": record.resolve_user(config.get("assigned_to") or config.get("assignedTo")),
                    "due_at": (now + timedelta(days=1)).isoformat(),
                    "created_by": enrollment.enrolled_by,
                    "source": {"cadence_id": cadence.id, "step_id": step.id},
                }, record_id=record.id)
                return ActionResult(step.id, "create_task", ActionStatus.SUCCESS, {"task_id": task["id"]})

            if step.type == CadenceStepType.EMAIL:
                recipient = config.get("to") or record.email
                if not recipient:
                    return ActionResult(step.id, "send_email", ActionStatus.SKIPPED,
                                        {"reason": "Record has no email address"})
                message = await self.store.create_entity(enrollment.org_id, "outbox", {
                    "channel": "email",
                    "to": recipient,
                    "subject": render_template(config.get("subject") or "", record),
                    "body": render_template(config.get("body") or "", record),
                    "template_id": config.get("template_id"),
                    "status": "queued",
                    "source": {"cadence_id": cadence.id, "step_id": step.id},
                }, record_id=record.id)
                return ActionResult(step.id, "send_email", ActionStatus.SUCCESS, {"message_id": message["id"]})

            return ActionResult(step.id, str(step.type), ActionStatus.FAILED,
                                error=f"Unknown step type: {step.type}")
        except Exception as e:
            self.logger.error("Cadence step failed", step_id=step.id, error=str(e))
            return ActionResult(step.id, step.type.value, ActionStatus.FAILED, error=str(e))
