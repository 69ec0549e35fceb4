"""
Storage interface shared by the in-memory and PostgreSQL stores.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, Optional, List

from ..rules.models import (
    Record, Workflow, AutomationRun, SchedulerJob, Cadence, CadenceEnrollment,
    Macro, AssignmentRule, TriggerType, RunStatus, JobStatus, EnrollmentStatus
)


CLOSED_STATUSES = ("closed", "won", "lost", "converted", "completed")


class AutomationStore(ABC):
    """Async storage for automation state. Every lookup is scoped by org_id
    unless the method says otherwise."""

    async def start(self):
        """Open connections. No-op for stores without external resources."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> str:
        return "ok"

    # Records

    @abstractmethod
    async def save_record(self, record: Record) -> Record:
        """Insert or replace a record. Raises NotFoundError when the id belongs to another organization."""

    @abstractmethod
    async def get_record(self, org_id: str, record_id: str) -> Optional[Record]: ...

    @abstractmethod
    async def update_record(self, org_id: str, record_id: str, updates: Dict[str, Any]) -> Optional[Record]:
        """Apply column/data updates; returns the updated record."""

    @abstractmethod
    async def list_records(self, org_id: str, module_id: str, limit: int = 100) -> List[Record]: ...

    @abstractmethod
    async def count_open_records(self, org_id: str, owner_ids: List[str]) -> Dict[str, int]:
        """Records per owner whose status is not closed."""

    # Workflows

    @abstractmethod
    async def save_workflow(self, workflow: Workflow) -> Workflow: ...

    @abstractmethod
    async def get_workflow(self, org_id: Optional[str], workflow_id: str) -> Optional[Workflow]:
        """Fetch a workflow; org_id None looks it up across organizations."""

    @abstractmethod
    async def delete_workflow(self, org_id: str, workflow_id: str) -> bool: ...

    @abstractmethod
    async def list_workflows(self, org_id: str, module_id: Optional[str] = None,
                             trigger_type: Optional[TriggerType] = None,
                             enabled_only: bool = False) -> List[Workflow]:
        """Workflows in ascending priority."""

    @abstractmethod
    async def list_scheduled_workflows(self, limit: int = 100) -> List[Workflow]:
        """Enabled scheduled workflows across all organizations."""

    @abstractmethod
    async def record_workflow_run(self, workflow_id: str, status: str, at: datetime): ...

    @abstractmethod
    async def set_last_scheduled_at(self, workflow_id: str, at: datetime): ...

    # Runs

    @abstractmethod
    async def create_run(self, run: AutomationRun) -> AutomationRun: ...

    @abstractmethod
    async def complete_run(self, run: AutomationRun) -> AutomationRun: ...

    @abstractmethod
    async def get_run(self, org_id: str, run_id: str) -> Optional[AutomationRun]: ...

    @abstractmethod
    async def list_runs(self, org_id: str, workflow_id: Optional[str] = None,
                        status: Optional[RunStatus] = None, limit: int = 100) -> List[AutomationRun]:
        """Most recent first."""

    @abstractmethod
    async def idempotency_key_exists(self, key: str) -> bool:
        """True when a run with this key exists and did not fail."""

    @abstractmethod
    async def increment_run_retry(self, run_id: str) -> int: ...

    # Scheduler jobs

    @abstractmethod
    async def insert_job(self, job: SchedulerJob) -> SchedulerJob:
        """Insert a job; an existing job with the same idempotency key is returned instead."""

    @abstractmethod
    async def get_job(self, org_id: str, job_id: str) -> Optional[SchedulerJob]: ...

    @abstractmethod
    async def list_jobs(self, org_id: str, status: Optional[JobStatus] = None,
                        entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                        limit: int = 100) -> List[SchedulerJob]: ...

    @abstractmethod
    async def claim_due_jobs(self, now: datetime, limit: int) -> List[SchedulerJob]:
        """Move due pending jobs to processing, oldest first, bumping attempts."""

    @abstractmethod
    async def complete_job(self, job_id: str, result: Dict[str, Any], at: datetime): ...

    @abstractmethod
    async def fail_job(self, job_id: str, error: str, at: datetime, retry_at: Optional[datetime]):
        """Back to pending at retry_at, or failed when retry_at is None."""

    @abstractmethod
    async def cancel_job(self, org_id: str, job_id: str) -> bool:
        """Cancel a pending job; False when it is not pending."""

    # Cadences

    @abstractmethod
    async def save_cadence(self, cadence: Cadence) -> Cadence: ...

    @abstractmethod
    async def get_cadence(self, org_id: str, cadence_id: str) -> Optional[Cadence]: ...

    @abstractmethod
    async def list_cadences(self, org_id: str) -> List[Cadence]: ...

    @abstractmethod
    async def save_enrollment(self, enrollment: CadenceEnrollment) -> CadenceEnrollment: ...

    @abstractmethod
    async def get_enrollment(self, org_id: str, cadence_id: str, record_id: str) -> Optional[CadenceEnrollment]: ...

    @abstractmethod
    async def list_enrollments(self, org_id: str, record_id: Optional[str] = None,
                               status: Optional[EnrollmentStatus] = None) -> List[CadenceEnrollment]: ...

    @abstractmethod
    async def list_due_enrollments(self, now: datetime, limit: int) -> List[CadenceEnrollment]:
        """Active enrollments whose next step is due, across organizations."""

    # Macros

    @abstractmethod
    async def save_macro(self, macro: Macro) -> Macro: ...

    @abstractmethod
    async def get_macro(self, org_id: str, macro_id: str) -> Optional[Macro]: ...

    @abstractmethod
    async def list_macros(self, org_id: str, module_id: Optional[str] = None) -> List[Macro]: ...

    # Assignment rules

    @abstractmethod
    async def save_assignment_rule(self, rule: AssignmentRule) -> AssignmentRule: ...

    @abstractmethod
    async def get_assignment_rule(self, org_id: str, rule_id: str) -> Optional[AssignmentRule]: ...

    @abstractmethod
    async def list_assignment_rules(self, org_id: str, module_id: Optional[str] = None) -> List[AssignmentRule]: ...

    # Side effects: tasks, activities, notes, notifications, outbox, macro runs,
    # enrollment drafts

    @abstractmethod
    async def create_entity(self, org_id: str, kind: str, payload: Dict[str, Any],
                            record_id: Optional[str] = None) -> Dict[str, Any]: ...

    @abstractmethod
    async def list_entities(self, org_id: str, kind: str, record_id: Optional[str] = None) -> List[Dict[str, Any]]: ...

    # User profiles

    @abstractmethod
    async def save_profile(self, org_id: str, user_id: str, role: str): ...

    @abstractmethod
    async def get_profile_role(self, org_id: str, user_id: str) -> Optional[str]: ...
