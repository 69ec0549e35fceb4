"""
Automation service for the CRM.
"""

import json
import sys
import os
from typing import Dict, Any, Optional

# Add shared directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from fastapi import Header, Query, Request
from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import NotFoundError, ValidationError, ConflictError

from .auth import SessionUser, ACTIVE_ROLES, WRITE_ROLES, decode_session_token, verify_cron_secret, verify_signature
from .rules.engine import WorkflowEngine
from .rules.models import (
    Workflow, Record, Macro, Cadence, AssignmentRule, ConditionGroup, WorkflowAction, CrmRole,
    JobStatus, RunStatus, TriggerType, utcnow,
    WorkflowCreateRequest, WorkflowUpdateRequest, WorkflowTestRequest, RecordPayload,
    RecordEventRequest, MacroCreateRequest, MacroRunRequest, JobScheduleRequest,
    CadenceCreateRequest, CadenceEnrollRequest, AssignmentRuleCreateRequest
)
from .actions.assignment import AssignmentService
from .actions.executor import ActionExecutor
from .actions.webhook import WebhookClient
from .scheduler.cadence import CadenceService
from .scheduler.processor import SchedulerProcessor
from .scheduler.queue import JobQueue
from .persistence.base import AutomationStore
from .persistence.memory import InMemoryStore
from .persistence.postgres import PostgreSQLStore


class AutomationService(BaseService):
    """Automation service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, store: Optional[AutomationStore] = None):
        super().__init__("automation", 8020, config or get_config("automation", 8020))

        if store is not None:
            self.store = store
        elif self.config.postgres_dsn:
            self.store = PostgreSQLStore(self.config.postgres_dsn)
        else:
            self.store = InMemoryStore()

        self.queue = JobQueue(
            self.store,
            max_attempts=self.config.scheduler_max_attempts,
            retry_base_delay=self.config.retry_base_delay_seconds,
            retry_max_delay=self.config.retry_max_delay_seconds,
        )
        self.cadences = CadenceService(self.store, batch_size=self.config.cadence_batch_size, metrics=self.metrics)
        self.webhook = WebhookClient(
            timeout=self.config.webhook_timeout_seconds,
            max_attempts=self.config.webhook_max_attempts,
        )
        self.executor = ActionExecutor(
            self.store,
            self.queue,
            self.cadences,
            AssignmentService(self.store),
            self.webhook,
            max_actions=self.config.max_actions_per_run,
            metrics=self.metrics,
        )
        self.engine = WorkflowEngine(self.store, self.executor, metrics=self.metrics)
        self.processor = SchedulerProcessor(
            self.store,
            self.queue,
            self.engine,
            self.cadences,
            batch_size=self.config.scheduler_batch_size,
            scheduled_batch_size=self.config.scheduled_workflow_batch_size,
            metrics=self.metrics,
        )

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_automation_routes()

    def _session(self, authorization: Optional[str]) -> SessionUser:
        return decode_session_token(authorization, self.config.jwt_secret, self.config.jwt_algorithm)

    async def _authenticate(self, authorization: Optional[str]) -> SessionUser:
        user = self._session(authorization)
        await self.store.save_profile(user.org_id, user.user_id, user.role.value)
        return user

    def _record_from_payload(self, org_id: str, payload: RecordPayload) -> Record:
        return Record.from_dict({**payload.model_dump(), "org_id": org_id})

    async def _require_workflow(self, org_id: str, workflow_id: str) -> Workflow:
        workflow = await self.store.get_workflow(org_id, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    def _setup_automation_routes(self):
        """Set up automation-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "automation",
                "message": "CRM Automation Service",
                "version": "1.0.0",
                "capabilities": ["workflows", "macros", "cadences", "scheduler"]
            }

        # Workflows

        @self.app.post("/automation/workflows", status_code=201)
        async def create_workflow(request: WorkflowCreateRequest, authorization: Optional[str] = Header(None)):
            """Create a workflow."""
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)

            workflow = Workflow.from_dict({
                **request.model_dump(mode="json"),
                "org_id": user.org_id,
                "created_by": user.user_id,
            })
            workflow = await self.store.save_workflow(workflow)
            self.logger.info("Workflow created", workflow_id=workflow.id, name=workflow.name,
                             trigger_type=workflow.trigger_type.value)
            return workflow.to_dict()

        @self.app.get("/automation/workflows")
        async def list_workflows(
            module_id: Optional[str] = Query(None, description="Filter by module"),
            trigger_type: Optional[TriggerType] = Query(None, description="Filter by trigger type"),
            enabled_only: bool = Query(False, description="Only enabled workflows"),
            authorization: Optional[str] = Header(None)
        ):
            """List workflows in ascending priority."""
            user = await self._authenticate(authorization)
            workflows = await self.store.list_workflows(
                user.org_id, module_id=module_id, trigger_type=trigger_type, enabled_only=enabled_only
            )
            return {"workflows": [w.to_dict() for w in workflows], "total": len(workflows)}

        @self.app.get("/automation/workflows/{workflow_id}")
        async def get_workflow(workflow_id: str, authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            return (await self._require_workflow(user.org_id, workflow_id)).to_dict()

        @self.app.patch("/automation/workflows/{workflow_id}")
        async def update_workflow(workflow_id: str, request: WorkflowUpdateRequest,
                                  authorization: Optional[str] = Header(None)):
            """Update an existing workflow."""
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)
            workflow = await self._require_workflow(user.org_id, workflow_id)

            changes = request.model_dump(mode="json", exclude_unset=True)
            for key in ("name", "description", "trigger_config", "enabled", "priority", "webhook_secret"):
                if key in changes and changes[key] is not None:
                    setattr(workflow, key, changes[key])
            if changes.get("trigger_type") is not None:
                workflow.trigger_type = TriggerType(changes["trigger_type"])
            if changes.get("conditions") is not None:
                workflow.conditions = ConditionGroup.from_raw(changes["conditions"])
            if changes.get("actions") is not None:
                workflow.actions = [
                    WorkflowAction.from_dict(action, default_order=index)
                    for index, action in enumerate(changes["actions"])
                ]
            workflow.updated_at = utcnow()

            workflow = await self.store.save_workflow(workflow)
            self.logger.info("Workflow updated", workflow_id=workflow_id, fields=sorted(changes))
            return workflow.to_dict()

        @self.app.delete("/automation/workflows/{workflow_id}")
        async def delete_workflow(workflow_id: str, authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            user.require_role(CrmRole.ADMIN)
            if not await self.store.delete_workflow(user.org_id, workflow_id):
                raise NotFoundError("Workflow", workflow_id)
            self.logger.info("Workflow deleted", workflow_id=workflow_id)
            return {"success": True, "message": "Workflow deleted successfully"}

        @self.app.post("/automation/workflows/{workflow_id}/test")
        async def test_workflow(workflow_id: str, request: WorkflowTestRequest,
                                authorization: Optional[str] = Header(None)):
            """Dry-run a workflow against a stored or inline record."""
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)
            if not request.record_id and request.record is None:
                raise ValidationError("record_id or record is required")

            result = await self.engine.test_workflow(
                user.org_id,
                workflow_id,
                record_id=request.record_id,
                record=self._record_from_payload(user.org_id, request.record) if request.record else None,
                previous_record=(
                    self._record_from_payload(user.org_id, request.previous_record)
                    if request.previous_record else None
                ),
            )
            return result.to_dict()

        # Record events

        @self.app.post("/automation/records", status_code=201)
        async def upsert_record(request: RecordPayload, authorization: Optional[str] = Header(None)):
            """Seed or sync the automation copy of a CRM record."""
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)
            record = self._record_from_payload(user.org_id, request)
            if record.created_by is None:
                record.created_by = user.user_id
            return (await self.store.save_record(record)).to_dict()

        @self.app.get("/automation/records/{record_id}")
        async def get_record(record_id: str, authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            record = await self.store.get_record(user.org_id, record_id)
            if record is None:
                raise NotFoundError("Record", record_id)
            return record.to_dict()

        @self.app.post("/automation/events")
        async def record_event(request: RecordEventRequest, authorization: Optional[str] = Header(None)):
            """Run every matching workflow for a record event.

            The stored copy of the record is the previous state when the
            event carries none. Live events persist the new state first.
            """
            user = await self._authenticate(authorization)
            user.require_role(*ACTIVE_ROLES)

            record = self._record_from_payload(user.org_id, request.record)
            previous = None
            if request.previous_record is not None:
                previous = self._record_from_payload(user.org_id, request.previous_record)
            elif request.record.id:
                previous = await self.store.get_record(user.org_id, request.record.id)

            if not request.dry_run:
                if previous is not None:
                    record.created_at = previous.created_at
                if record.created_by is None:
                    record.created_by = previous.created_by if previous else user.user_id
                await self.store.save_record(record)

            results = await self.engine.execute_matching_workflows(
                user.org_id,
                record.module_id,
                record,
                request.trigger,
                previous_record=previous,
                dry_run=request.dry_run,
                user_id=user.user_id,
                webform_id=request.webform_id,
                idempotency_key=request.idempotency_key,
            )
            return {"record_id": record.id, "results": [r.to_dict() for r in results]}

        @self.app.post("/automation/hooks/{workflow_id}")
        async def inbound_webhook(workflow_id: str, request: Request,
                                  x_signature: Optional[str] = Header(None, alias="X-Signature")):
            """Run an inbound-webhook workflow from a signed external payload."""
            workflow = await self.store.get_workflow(None, workflow_id)
            if workflow is None or workflow.trigger_type != TriggerType.INBOUND_WEBHOOK:
                raise NotFoundError("Workflow", workflow_id)

            body = await request.body()
            verify_signature(workflow.webhook_secret, body, x_signature)
            try:
                payload = json.loads(body or b"{}")
            except ValueError:
                raise ValidationError("Webhook body must be JSON")
            if not isinstance(payload, dict):
                raise ValidationError("Webhook body must be a JSON object")

            record = await self._record_from_webhook(workflow, payload)
            result = await self.engine.execute_workflow(
                workflow,
                record,
                TriggerType.INBOUND_WEBHOOK,
                idempotency_key=request.headers.get("idempotency-key"),
            )
            return result.to_dict()

        # Macros

        @self.app.post("/automation/macros", status_code=201)
        async def create_macro(request: MacroCreateRequest, authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            user.require_role(CrmRole.ADMIN)
            macro = Macro.from_dict({
                **request.model_dump(mode="json"),
                "org_id": user.org_id,
                "created_by": user.user_id,
            })
            macro = await self.store.save_macro(macro)
            self.logger.info("Macro created", macro_id=macro.id, name=macro.name)
            return macro.to_dict()

        @self.app.get("/automation/macros")
        async def list_macros(module_id: Optional[str] = Query(None), authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            macros = await self.store.list_macros(user.org_id, module_id=module_id)
            return {"macros": [m.to_dict() for m in macros], "total": len(macros)}

        @self.app.post("/automation/macros/{macro_id}/run")
        async def run_macro(macro_id: str, request: MacroRunRequest, authorization: Optional[str] = Header(None)):
            """Run a macro against one record; gated by the macro's allowed roles."""
            user = await self._authenticate(authorization)
            macro_run = await self.engine.run_macro(
                user.org_id, macro_id, request.record_id, user_id=user.user_id, role=user.role
            )
            return macro_run.to_dict()

        # Assignment rules

        @self.app.post("/automation/assignment-rules", status_code=201)
        async def create_assignment_rule(request: AssignmentRuleCreateRequest,
                                         authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            user.require_role(CrmRole.ADMIN)
            rule = AssignmentRule.from_dict({**request.model_dump(mode="json"), "org_id": user.org_id})
            rule = await self.store.save_assignment_rule(rule)
            self.logger.info("Assignment rule created", rule_id=rule.id, strategy=rule.strategy.value)
            return rule.to_dict()

        @self.app.get("/automation/assignment-rules")
        async def list_assignment_rules(module_id: Optional[str] = Query(None),
                                        authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)
            rules = await self.store.list_assignment_rules(user.org_id, module_id=module_id)
            return {"rules": [r.to_dict() for r in rules], "total": len(rules)}

        # Runs

        @self.app.get("/automation/runs")
        async def list_runs(
            workflow_id: Optional[str] = Query(None, description="Filter by workflow"),
            status: Optional[RunStatus] = Query(None, description="Filter by status"),
            limit: int = Query(50, ge=1, le=200, description="Maximum runs to return"),
            authorization: Optional[str] = Header(None)
        ):
            """List runs, newest first."""
            user = await self._authenticate(authorization)
            runs = await self.store.list_runs(user.org_id, workflow_id=workflow_id, status=status, limit=limit)
            return {"runs": [r.to_dict() for r in runs], "total": len(runs)}

        @self.app.get("/automation/runs/{run_id}")
        async def get_run(run_id: str, authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            run = await self.store.get_run(user.org_id, run_id)
            if run is None:
                raise NotFoundError("Run", run_id)
            return run.to_dict()

        @self.app.post("/automation/runs/{run_id}/retry", status_code=201)
        async def retry_run(run_id: str,
                            delay_seconds: float = Query(60, ge=0, description="Seconds before the retry runs"),
                            authorization: Optional[str] = Header(None)):
            """Schedule a failed workflow run to be re-executed."""
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)
            run = await self.store.get_run(user.org_id, run_id)
            if run is None:
                raise NotFoundError("Run", run_id)
            if run.status != RunStatus.FAILED or not run.workflow_id or not run.record_id:
                raise ConflictError("Only failed workflow runs can be retried", {"status": run.status.value})

            job = await self.queue.schedule_workflow_retry(
                user.org_id, run.id, run.workflow_id, run.record_id, retry_delay_seconds=delay_seconds
            )
            return job.to_dict()

        # Scheduler jobs

        @self.app.post("/automation/jobs", status_code=201)
        async def schedule_job(request: JobScheduleRequest, authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            user.require_role(CrmRole.ADMIN)
            job = await self.queue.schedule_job(
                user.org_id,
                request.job_type,
                request.entity_type,
                request.entity_id,
                run_at=request.run_at,
                record_id=request.record_id,
                payload=request.payload,
                max_attempts=request.max_attempts,
                idempotency_key=request.idempotency_key,
            )
            return job.to_dict()

        @self.app.get("/automation/jobs")
        async def list_jobs(
            status: Optional[JobStatus] = Query(None, description="Filter by status"),
            entity_type: Optional[str] = Query(None),
            entity_id: Optional[str] = Query(None),
            limit: int = Query(50, ge=1, le=200),
            authorization: Optional[str] = Header(None)
        ):
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)
            jobs = await self.store.list_jobs(
                user.org_id, status=status, entity_type=entity_type, entity_id=entity_id, limit=limit
            )
            return {"jobs": [j.to_dict() for j in jobs], "total": len(jobs)}

        @self.app.delete("/automation/jobs/{job_id}")
        async def cancel_job(job_id: str, authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            user.require_role(CrmRole.ADMIN)
            return (await self.queue.cancel_job(user.org_id, job_id)).to_dict()

        # Cadences

        @self.app.post("/automation/cadences", status_code=201)
        async def create_cadence(request: CadenceCreateRequest, authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)
            cadence = Cadence.from_dict({**request.model_dump(mode="json"), "org_id": user.org_id})
            cadence = await self.store.save_cadence(cadence)
            self.logger.info("Cadence created", cadence_id=cadence.id, steps=len(cadence.steps))
            return cadence.to_dict()

        @self.app.get("/automation/cadences")
        async def list_cadences(authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            cadences = await self.store.list_cadences(user.org_id)
            return {"cadences": [c.to_dict() for c in cadences], "total": len(cadences)}

        @self.app.post("/automation/cadences/{cadence_id}/enroll", status_code=201)
        async def enroll(cadence_id: str, request: CadenceEnrollRequest,
                         authorization: Optional[str] = Header(None)):
            user = await self._authenticate(authorization)
            user.require_role(*WRITE_ROLES)
            enrollment = await self.cadences.enroll(
                user.org_id, cadence_id, request.record_id, enrolled_by=user.user_id
            )
            return enrollment.to_dict()

        # Scheduler

        @self.app.post("/scheduler/tick")
        async def scheduler_tick(authorization: Optional[str] = Header(None)):
            """Run one scheduler pass. Called by an external cron."""
            verify_cron_secret(authorization, self.config.cron_secret)
            summary = await self.processor.tick()
            return {"success": True, "timestamp": utcnow().isoformat(), **summary}

    async def _record_from_webhook(self, workflow: Workflow, payload: Dict[str, Any]) -> Record:
        """Build the record an inbound webhook acts on.

        `trigger_config.payload_mapping` maps record fields to body keys;
        without a mapping the body is used as-is. A mapped `id` naming a
        stored record updates that record, otherwise a new one is created.
        """
        mapping = workflow.trigger_config.get("payload_mapping") or {}
        if mapping:
            values = {target: payload.get(source) for target, source in mapping.items() if source in payload}
        else:
            values = dict(payload)

        record_id = values.pop("id", None) or values.pop("record_id", None)
        existing = await self.store.get_record(workflow.org_id, record_id) if record_id else None
        if existing is not None:
            existing.apply_updates(values)
            return await self.store.save_record(existing)

        record = Record.from_dict({"org_id": workflow.org_id, "module_id": workflow.module_id})
        record.apply_updates(values)
        return await self.store.save_record(record)

    async def _check_dependencies(self):
        """Check automation service dependencies."""
        try:
            return {"store": await self.store.health_check()}
        except Exception:
            return {"store": "error"}

    async def start(self):
        """Start automation service components."""
        await self.store.start()
        self.logger.info("Automation service started", store=type(self.store).__name__)

    async def stop(self):
        """Stop automation service components."""
        await self.store.stop()
        self.logger.info("Automation service stopped")


def create_app():
    """Create automation service application."""
    service = AutomationService()
    return service.app


if __name__ == "__main__":
    service = AutomationService()
    service.run()
