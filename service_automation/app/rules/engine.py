"""
Workflow engine for the Automation Service.
"""

from typing import Dict, Any, Optional, List

from shared.logging import get_logger
from shared.errors import NotFoundError, AuthorizationError, UnprocessableError
from .conditions import evaluate_conditions, should_trigger_on_update, matches_stage_change
from .models import (
    Workflow, WorkflowAction, Record, AutomationRun, AutomationRunResult, AutomationContext,
    ActionResult, ActionStatus, RunStatus, RunSource, TriggerType, Macro, MacroRun,
    MacroRunStatus, CrmRole, new_id, utcnow
)
from ..actions.executor import ActionExecutor
from ..persistence.base import AutomationStore


class WorkflowEngine:
    """Matches records against workflows and runs their actions."""

    def __init__(self, store: AutomationStore, executor: ActionExecutor, metrics=None):
        self.store = store
        self.executor = executor
        self.metrics = metrics
        self.logger = get_logger("automation.engine")

    def _skipped(self, workflow: Workflow, reason: str) -> AutomationRunResult:
        if self.metrics:
            self.metrics.record_workflow_run(RunStatus.SKIPPED.value)
        self.logger.debug("Workflow skipped", workflow_id=workflow.id, reason=reason)
        return AutomationRunResult(
            status=RunStatus.SKIPPED,
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            output={"reason": reason},
        )

    async def execute_workflow(self, workflow: Workflow, record: Record, trigger: TriggerType,
                               previous_record: Optional[Record] = None, dry_run: bool = False,
                               idempotency_key: Optional[str] = None, user_id: Optional[str] = None,
                               webform_id: Optional[str] = None) -> AutomationRunResult:
        """Run one workflow against a record.

        Gates are checked in order: idempotency (live only), enabled,
        trigger type, watched fields, stage change, webform and conditions.
        A gate that fails yields a skipped result without a run row.
        """
        trigger = TriggerType(trigger)

        if idempotency_key and not dry_run:
            if await self.store.idempotency_key_exists(idempotency_key):
                return self._skipped(workflow, "Duplicate request (idempotency)")

        if not workflow.enabled:
            return self._skipped(workflow, "Workflow is disabled")

        if workflow.trigger_type != trigger:
            return self._skipped(
                workflow, f"Trigger mismatch: expected {workflow.trigger_type.value}, got {trigger.value}"
            )

        if trigger == TriggerType.ON_UPDATE and not should_trigger_on_update(
                workflow.trigger_config, record, previous_record):
            return self._skipped(workflow, "No watched fields changed")

        if trigger == TriggerType.ON_STAGE_CHANGE and not matches_stage_change(
                workflow.trigger_config, record, previous_record):
            return self._skipped(workflow, "Stage change does not match")

        if trigger == TriggerType.WEBFORM:
            expected_form = workflow.trigger_config.get("webform_id") or workflow.trigger_config.get("webformId")
            if expected_form and expected_form != webform_id:
                return self._skipped(workflow, "Webform mismatch")

        if not evaluate_conditions(workflow.conditions, record, previous_record):
            return self._skipped(workflow, "Conditions not met")

        return await self._run(
            workflow,
            workflow.sorted_actions(),
            record,
            trigger=trigger.value,
            previous_record=previous_record,
            dry_run=dry_run,
            idempotency_key=idempotency_key,
            user_id=user_id,
            run_input={
                "record": {"id": record.id, "title": record.title},
                "previous_record": (
                    {"id": previous_record.id, "title": previous_record.title} if previous_record else None
                ),
            },
        )

    async def _run(self, workflow: Workflow, actions: List[WorkflowAction], record: Record, trigger: str,
                   previous_record: Optional[Record], dry_run: bool, idempotency_key: Optional[str],
                   user_id: Optional[str], run_input: Dict[str, Any]) -> AutomationRunResult:
        """Create a run row, execute the actions and complete the run."""
        run = await self.store.create_run(AutomationRun(
            id=new_id(),
            org_id=record.org_id,
            source=RunSource.WORKFLOW,
            trigger=trigger,
            workflow_id=workflow.id,
            module_id=record.module_id,
            record_id=record.id,
            is_dry_run=dry_run,
            input=run_input,
            idempotency_key=idempotency_key,
        ))

        context = AutomationContext(
            org_id=record.org_id,
            module_id=record.module_id,
            trigger=trigger,
            dry_run=dry_run,
            user_id=user_id,
            workflow_id=workflow.id,
            workflow_created_by=workflow.created_by,
            run_id=run.id,
            idempotency_key=idempotency_key,
            previous_record=previous_record,
        )

        error: Optional[str] = None
        results: List[ActionResult] = []
        try:
            results = await self.executor.execute_actions(actions, record, context)
            failed = [r for r in results if r.status == ActionStatus.FAILED]
            if failed:
                status = RunStatus.FAILED
                error = failed[0].error
            elif dry_run:
                status = RunStatus.DRY_RUN
            else:
                status = RunStatus.COMPLETED
        except Exception as e:
            self.logger.error("Workflow execution error", workflow_id=workflow.id, run_id=run.id,
                              error=str(e), exc_info=True)
            status = RunStatus.FAILED
            error = str(e)

        run.status = status
        run.error = error
        run.actions_executed = results
        run.output = {
            "workflow_name": workflow.name,
            "actions_count": len(results),
            "success_count": sum(1 for r in results if r.status == ActionStatus.SUCCESS),
            "failed_count": sum(1 for r in results if r.status == ActionStatus.FAILED),
            "skipped_count": sum(1 for r in results if r.status == ActionStatus.SKIPPED),
            "deferred": any(r.output.get("deferred") for r in results),
        }
        run.completed_at = utcnow()
        await self.store.complete_run(run)

        if not dry_run:
            await self.store.record_workflow_run(workflow.id, status.value, run.completed_at)
        if self.metrics:
            self.metrics.record_workflow_run(status.value)

        self.logger.info(
            "Workflow run completed",
            workflow_id=workflow.id,
            run_id=run.id,
            record_id=record.id,
            status=status.value,
            actions=len(results),
            error=error
        )

        return AutomationRunResult(
            status=status,
            run_id=run.id,
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            actions_executed=results,
            output={"actions_count": len(results), "deferred": run.output["deferred"]},
            error=error,
        )

    async def execute_matching_workflows(self, org_id: str, module_id: str, record: Record,
                                         trigger: TriggerType, previous_record: Optional[Record] = None,
                                         dry_run: bool = False, user_id: Optional[str] = None,
                                         webform_id: Optional[str] = None,
                                         idempotency_key: Optional[str] = None) -> List[AutomationRunResult]:
        """Run every enabled workflow for the trigger in ascending priority.

        Stops after the first failed live run.
        """
        workflows = await self.store.list_workflows(
            org_id, module_id=module_id, trigger_type=TriggerType(trigger), enabled_only=True
        )
        results = []
        for workflow in workflows:
            result = await self.execute_workflow(
                workflow,
                record,
                trigger,
                previous_record=previous_record,
                dry_run=dry_run,
                idempotency_key=f"{idempotency_key}:{workflow.id}" if idempotency_key else None,
                user_id=user_id,
                webform_id=webform_id,
            )
            results.append(result)

            if result.status == RunStatus.FAILED and not dry_run:
                self.logger.warning("Stopping workflow chain after failure",
                                    workflow_id=workflow.id, record_id=record.id)
                break

        return results

    async def test_workflow(self, org_id: str, workflow_id: str, record_id: Optional[str] = None,
                            record: Optional[Record] = None,
                            previous_record: Optional[Record] = None) -> AutomationRunResult:
        """Dry-run a workflow against a stored or supplied record."""
        workflow = await self.store.get_workflow(org_id, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)

        if record is None:
            record = await self.store.get_record(org_id, record_id) if record_id else None
            if record is None:
                raise NotFoundError("Record", record_id)

        return await self.execute_workflow(
            workflow, record, workflow.trigger_type, previous_record=previous_record, dry_run=True
        )

    async def resume_workflow(self, org_id: str, workflow_id: str, run_id: str, record_id: str,
                              step_id: Optional[str] = None,
                              resume_from: Optional[int] = None) -> AutomationRunResult:
        """Continue a deferred run with the actions after `step_id`.

        When the step no longer exists the actions ordered after
        `resume_from` run instead. Conditions are not re-evaluated.
        """
        workflow = await self.store.get_workflow(org_id, workflow_id)
        if workflow is None:
            return AutomationRunResult(status=RunStatus.SKIPPED, workflow_id=workflow_id,
                                       output={"reason": "Workflow not found"})
        if not workflow.enabled:
            return self._skipped(workflow, "Workflow is disabled")

        record = await self.store.get_record(org_id, record_id)
        if record is None:
            return self._skipped(workflow, "Record not found")

        actions = workflow.sorted_actions()
        position = next((i for i, a in enumerate(actions) if a.id == step_id), None)
        if position is not None:
            remaining = actions[position + 1:]
        else:
            remaining = [a for a in actions if resume_from is None or a.order > resume_from]

        return await self._run(
            workflow,
            remaining,
            record,
            trigger=workflow.trigger_type.value,
            previous_record=None,
            dry_run=False,
            idempotency_key=None,
            user_id=None,
            run_input={"resumed_from_run": run_id, "step_id": step_id, "record": {"id": record.id}},
        )

    async def retry_run(self, org_id: str, run_id: str) -> AutomationRunResult:
        """Re-run the workflow behind a failed run with a fresh idempotency key."""
        original = await self.store.get_run(org_id, run_id)
        if original is None:
            raise NotFoundError("Run", run_id)
        if not original.workflow_id or not original.record_id:
            raise UnprocessableError("Only workflow runs can be retried", {"run_id": run_id})

        workflow = await self.store.get_workflow(org_id, original.workflow_id)
        if workflow is None or not workflow.enabled:
            return AutomationRunResult(status=RunStatus.SKIPPED, workflow_id=original.workflow_id,
                                       output={"reason": "Workflow not found or disabled"})

        record = await self.store.get_record(org_id, original.record_id)
        if record is None:
            return self._skipped(workflow, "Record not found")
        if not evaluate_conditions(workflow.conditions, record):
            return self._skipped(workflow, "Conditions not met")

        retry_count = await self.store.increment_run_retry(run_id)
        now = utcnow()
        return await self._run(
            workflow,
            workflow.sorted_actions(),
            record,
            trigger=workflow.trigger_type.value,
            previous_record=None,
            dry_run=False,
            idempotency_key=f"retry:{run_id}:{now.isoformat()}",
            user_id=None,
            run_input={"retry_of": run_id, "retry_count": retry_count, "record": {"id": record.id}},
        )

    async def run_macro(self, org_id: str, macro_id: str, record_id: str,
                        user_id: Optional[str], role: CrmRole) -> MacroRun:
        """Run a macro's actions against one record on behalf of a user."""
        macro: Optional[Macro] = await self.store.get_macro(org_id, macro_id)
        if macro is None:
            raise NotFoundError("Macro", macro_id)
        if not macro.enabled:
            raise UnprocessableError("Macro is disabled", {"macro_id": macro_id})
        if CrmRole(role) not in macro.allowed_roles:
            raise AuthorizationError("Role not allowed to run this macro", {"role": CrmRole(role).value})

        record = await self.store.get_record(org_id, record_id)
        if record is None:
            raise NotFoundError("Record", record_id)

        run = await self.store.create_run(AutomationRun(
            id=new_id(),
            org_id=org_id,
            source=RunSource.MACRO,
            trigger="macro",
            module_id=record.module_id,
            record_id=record.id,
            input={"macro_id": macro.id, "record": {"id": record.id, "title": record.title}},
        ))
        context = AutomationContext(
            org_id=org_id,
            module_id=record.module_id,
            trigger="macro",
            user_id=user_id,
            workflow_created_by=macro.created_by,
            run_id=run.id,
        )
        results = await self.executor.execute_actions(macro.actions, record, context)

        failed = sum(1 for r in results if r.status == ActionStatus.FAILED)
        succeeded = sum(1 for r in results if r.status == ActionStatus.SUCCESS)
        if not failed:
            status = MacroRunStatus.SUCCESS
        elif succeeded:
            status = MacroRunStatus.PARTIAL
        else:
            status = MacroRunStatus.FAILED

        run.status = RunStatus.FAILED if failed else RunStatus.COMPLETED
        run.actions_executed = results
        run.error = next((r.error for r in results if r.status == ActionStatus.FAILED), None)
        run.output = {"macro_name": macro.name, "macro_status": status.value, "actions_count": len(results)}
        run.completed_at = utcnow()
        await self.store.complete_run(run)

        macro_run = MacroRun(
            id=new_id(),
            org_id=org_id,
            macro_id=macro.id,
            record_id=record.id,
            status=status,
            run_id=run.id,
            executed_by=user_id,
            actions_executed=results,
        )
        await self.store.create_entity(org_id, "macro_run", macro_run.to_dict(), record_id=record.id)

        if self.metrics:
            self.metrics.record_business_event(f"macro_run_{status.value}")
        self.logger.info("Macro executed", macro_id=macro.id, record_id=record.id,
                         status=status.value, user_id=user_id)
        return macro_run
