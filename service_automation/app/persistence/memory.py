"""
In-memory store used for local runs and tests.
"""

import copy
from datetime import datetime
from typing import Dict, Any, Optional, List

from shared.logging import get_logger
from shared.errors import NotFoundError
from ..rules.models import (
    Record, Workflow, AutomationRun, SchedulerJob, Cadence, CadenceEnrollment,
    Macro, AssignmentRule, TriggerType, RunStatus, JobStatus, EnrollmentStatus,
    new_id, utcnow
)
from .base import AutomationStore, CLOSED_STATUSES


class InMemoryStore(AutomationStore):
    """Dict-backed store. Values are copied on the way in and out so callers
    never share state with the store."""

    def __init__(self):
        self.logger = get_logger("automation.persistence.memory")
        self.records: Dict[str, Record] = {}
        self.workflows: Dict[str, Workflow] = {}
        self.runs: Dict[str, AutomationRun] = {}
        self.jobs: Dict[str, SchedulerJob] = {}
        self.cadences: Dict[str, Cadence] = {}
        self.enrollments: Dict[str, CadenceEnrollment] = {}
        self.macros: Dict[str, Macro] = {}
        self.assignment_rules: Dict[str, AssignmentRule] = {}
        self.entities: List[Dict[str, Any]] = []
        self.profiles: Dict[tuple, str] = {}

    # Records

    async def save_record(self, record: Record) -> Record:
        existing = self.records.get(record.id)
        if existing is not None and existing.org_id != record.org_id:
            raise NotFoundError("Record", record.id)
        self.records[record.id] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def get_record(self, org_id: str, record_id: str) -> Optional[Record]:
        record = self.records.get(record_id)
        if record is None or record.org_id != org_id:
            return None
        return copy.deepcopy(record)

    async def update_record(self, org_id: str, record_id: str, updates: Dict[str, Any]) -> Optional[Record]:
        record = self.records.get(record_id)
        if record is None or record.org_id != org_id:
            return None
        record.apply_updates(copy.deepcopy(updates))
        return copy.deepcopy(record)

    async def list_records(self, org_id: str, module_id: str, limit: int = 100) -> List[Record]:
        matches = [
            r for r in self.records.values()
            if r.org_id == org_id and r.module_id == module_id
        ]
        matches.sort(key=lambda r: r.created_at)
        return copy.deepcopy(matches[:limit])

    async def count_open_records(self, org_id: str, owner_ids: List[str]) -> Dict[str, int]:
        counts = {owner_id: 0 for owner_id in owner_ids}
        for record in self.records.values():
            if record.org_id != org_id or record.owner_id not in counts:
                continue
            if (record.status or "").lower() in CLOSED_STATUSES:
                continue
            counts[record.owner_id] += 1
        return counts

    # Workflows

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        self.workflows[workflow.id] = copy.deepcopy(workflow)
        return copy.deepcopy(workflow)

    async def get_workflow(self, org_id: Optional[str], workflow_id: str) -> Optional[Workflow]:
        workflow = self.workflows.get(workflow_id)
        if workflow is None or (org_id is not None and workflow.org_id != org_id):
            return None
        return copy.deepcopy(workflow)

    async def delete_workflow(self, org_id: str, workflow_id: str) -> bool:
        workflow = self.workflows.get(workflow_id)
        if workflow is None or workflow.org_id != org_id:
            return False
        del self.workflows[workflow_id]
        return True

    async def list_workflows(self, org_id: str, module_id: Optional[str] = None,
                             trigger_type: Optional[TriggerType] = None,
                             enabled_only: bool = False) -> List[Workflow]:
        matches = [
            w for w in self.workflows.values()
            if w.org_id == org_id
            and (module_id is None or w.module_id == module_id)
            and (trigger_type is None or w.trigger_type == trigger_type)
            and (not enabled_only or w.enabled)
        ]
        matches.sort(key=lambda w: (w.priority, w.created_at))
        return copy.deepcopy(matches)

    async def list_scheduled_workflows(self, limit: int = 100) -> List[Workflow]:
        matches = [
            w for w in self.workflows.values()
            if w.enabled and w.trigger_type == TriggerType.SCHEDULED
        ]
        matches.sort(key=lambda w: (w.priority, w.created_at))
        return copy.deepcopy(matches[:limit])

    async def record_workflow_run(self, workflow_id: str, status: str, at: datetime):
        workflow = self.workflows.get(workflow_id)
        if workflow is not None:
            workflow.run_count += 1
            workflow.last_run_at = at
            workflow.last_run_status = status

    async def set_last_scheduled_at(self, workflow_id: str, at: datetime):
        workflow = self.workflows.get(workflow_id)
        if workflow is not None:
            workflow.last_scheduled_at = at

    # Runs

    async def create_run(self, run: AutomationRun) -> AutomationRun:
        self.runs[run.id] = copy.deepcopy(run)
        return copy.deepcopy(run)

    async def complete_run(self, run: AutomationRun) -> AutomationRun:
        self.runs[run.id] = copy.deepcopy(run)
        return copy.deepcopy(run)

    async def get_run(self, org_id: str, run_id: str) -> Optional[AutomationRun]:
        run = self.runs.get(run_id)
        if run is None or run.org_id != org_id:
            return None
        return copy.deepcopy(run)

    async def list_runs(self, org_id: str, workflow_id: Optional[str] = None,
                        status: Optional[RunStatus] = None, limit: int = 100) -> List[AutomationRun]:
        matches = [
            r for r in self.runs.values()
            if r.org_id == org_id
            and (workflow_id is None or r.workflow_id == workflow_id)
            and (status is None or r.status == status)
        ]
        matches.sort(key=lambda r: r.started_at, reverse=True)
        return copy.deepcopy(matches[:limit])

    async def idempotency_key_exists(self, key: str) -> bool:
        return any(
            r.idempotency_key == key and r.status != RunStatus.FAILED for r in self.runs.values()
        )

    async def increment_run_retry(self, run_id: str) -> int:
        run = self.runs.get(run_id)
        if run is None:
            return 0
        run.retry_count += 1
        return run.retry_count

    # Scheduler jobs

    async def insert_job(self, job: SchedulerJob) -> SchedulerJob:
        if job.idempotency_key:
            for existing in self.jobs.values():
                if existing.idempotency_key == job.idempotency_key:
                    return copy.deepcopy(existing)
        self.jobs[job.id] = copy.deepcopy(job)
        return copy.deepcopy(job)

    async def get_job(self, org_id: str, job_id: str) -> Optional[SchedulerJob]:
        job = self.jobs.get(job_id)
        if job is None or job.org_id != org_id:
            return None
        return copy.deepcopy(job)

    async def list_jobs(self, org_id: str, status: Optional[JobStatus] = None,
                        entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                        limit: int = 100) -> List[SchedulerJob]:
        matches = [
            j for j in self.jobs.values()
            if j.org_id == org_id
            and (status is None or j.status == status)
            and (entity_type is None or j.entity_type == entity_type)
            and (entity_id is None or j.entity_id == entity_id)
        ]
        matches.sort(key=lambda j: j.run_at)
        return copy.deepcopy(matches[:limit])

    async def claim_due_jobs(self, now: datetime, limit: int) -> List[SchedulerJob]:
        due = [
            j for j in self.jobs.values()
            if j.status == JobStatus.PENDING and j.run_at <= now
        ]
        due.sort(key=lambda j: j.created_at)
        claimed = []
        for job in due[:limit]:
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.last_attempt_at = now
            claimed.append(copy.deepcopy(job))
        return claimed

    async def complete_job(self, job_id: str, result: Dict[str, Any], at: datetime):
        job = self.jobs.get(job_id)
        if job is not None:
            job.status = JobStatus.COMPLETED
            job.result = copy.deepcopy(result)
            job.completed_at = at

    async def fail_job(self, job_id: str, error: str, at: datetime, retry_at: Optional[datetime]):
        job = self.jobs.get(job_id)
        if job is None:
            return
        job.last_error = error
        if retry_at is None:
            job.status = JobStatus.FAILED
            job.completed_at = at
        else:
            job.status = JobStatus.PENDING
            job.run_at = retry_at

    async def cancel_job(self, org_id: str, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.org_id != org_id or job.status != JobStatus.PENDING:
            return False
        job.status = JobStatus.CANCELLED
        job.completed_at = utcnow()
        return True

    # Cadences

    async def save_cadence(self, cadence: Cadence) -> Cadence:
        self.cadences[cadence.id] = copy.deepcopy(cadence)
        return copy.deepcopy(cadence)

    async def get_cadence(self, org_id: str, cadence_id: str) -> Optional[Cadence]:
        cadence = self.cadences.get(cadence_id)
        if cadence is None or cadence.org_id != org_id:
            return None
        return copy.deepcopy(cadence)

    async def list_cadences(self, org_id: str) -> List[Cadence]:
        return copy.deepcopy([c for c in self.cadences.values() if c.org_id == org_id])

    async def save_enrollment(self, enrollment: CadenceEnrollment) -> CadenceEnrollment:
        enrollment.updated_at = utcnow()
        self.enrollments[enrollment.id] = copy.deepcopy(enrollment)
        return copy.deepcopy(enrollment)

    async def get_enrollment(self, org_id: str, cadence_id: str, record_id: str) -> Optional[CadenceEnrollment]:
        for enrollment in self.enrollments.values():
            if (enrollment.org_id == org_id and enrollment.cadence_id == cadence_id
                    and enrollment.record_id == record_id):
                return copy.deepcopy(enrollment)
        return None

    async def list_enrollments(self, org_id: str, record_id: Optional[str] = None,
                               status: Optional[EnrollmentStatus] = None) -> List[CadenceEnrollment]:
        return copy.deepcopy([
            e for e in self.enrollments.values()
            if e.org_id == org_id
            and (record_id is None or e.record_id == record_id)
            and (status is None or e.status == status)
        ])

    async def list_due_enrollments(self, now: datetime, limit: int) -> List[CadenceEnrollment]:
        due = [
            e for e in self.enrollments.values()
            if e.status == EnrollmentStatus.ACTIVE and e.next_step_at is not None and e.next_step_at <= now
        ]
        due.sort(key=lambda e: e.next_step_at)
        return copy.deepcopy(due[:limit])

    # Macros

    async def save_macro(self, macro: Macro) -> Macro:
        self.macros[macro.id] = copy.deepcopy(macro)
        return copy.deepcopy(macro)

    async def get_macro(self, org_id: str, macro_id: str) -> Optional[Macro]:
        macro = self.macros.get(macro_id)
        if macro is None or macro.org_id != org_id:
            return None
        return copy.deepcopy(macro)

    async def list_macros(self, org_id: str, module_id: Optional[str] = None) -> List[Macro]:
        return copy.deepcopy([
            m for m in self.macros.values()
            if m.org_id == org_id and (module_id is None or m.module_id == module_id)
        ])

    # Assignment rules

    async def save_assignment_rule(self, rule: AssignmentRule) -> AssignmentRule:
        self.assignment_rules[rule.id] = copy.deepcopy(rule)
        return copy.deepcopy(rule)

    async def get_assignment_rule(self, org_id: str, rule_id: str) -> Optional[AssignmentRule]:
        rule = self.assignment_rules.get(rule_id)
        if rule is None or rule.org_id != org_id:
            return None
        return copy.deepcopy(rule)

    async def list_assignment_rules(self, org_id: str, module_id: Optional[str] = None) -> List[AssignmentRule]:
        matches = [
            r for r in self.assignment_rules.values()
            if r.org_id == org_id and (module_id is None or r.module_id == module_id)
        ]
        matches.sort(key=lambda r: r.priority)
        return copy.deepcopy(matches)

    # Side effects

    async def create_entity(self, org_id: str, kind: str, payload: Dict[str, Any],
                            record_id: Optional[str] = None) -> Dict[str, Any]:
        entity = {
            "id": new_id(),
            "org_id": org_id,
            "kind": kind,
            "record_id": record_id,
            "payload": copy.deepcopy(payload),
            "created_at": utcnow().isoformat(),
        }
        self.entities.append(entity)
        self.logger.debug("Entity created", kind=kind, entity_id=entity["id"], org_id=org_id)
        return copy.deepcopy(entity)

    async def list_entities(self, org_id: str, kind: str, record_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return copy.deepcopy([
            e for e in self.entities
            if e["org_id"] == org_id and e["kind"] == kind
            and (record_id is None or e["record_id"] == record_id)
        ])

    # User profiles

    async def save_profile(self, org_id: str, user_id: str, role: str):
        self.profiles[(org_id, user_id)] = role

    async def get_profile_role(self, org_id: str, user_id: str) -> Optional[str]:
        return self.profiles.get((org_id, user_id))
