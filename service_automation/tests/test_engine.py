"""
Unit tests for the workflow engine.
"""

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_automation.app.rules.models import (
    ActionStatus, CrmRole, JobStatus, JobType, Macro, MacroRunStatus, RunSource, RunStatus, TriggerType,
    WorkflowAction, ActionType
)
from shared.errors import AuthorizationError, NotFoundError, UnprocessableError

from conftest import make_record, make_workflow


class TestExecuteWorkflow:
    """Test cases for WorkflowEngine.execute_workflow."""

    @pytest.mark.asyncio
    async def test_matching_workflow_runs_actions(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = await stack.store.save_workflow(make_workflow())

        result = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE, user_id="agent-1")

        assert result.status == RunStatus.COMPLETED
        assert [a.status for a in result.actions_executed] == [ActionStatus.SUCCESS, ActionStatus.SUCCESS]

        stored = await stack.store.get_record("org-1", "rec-1")
        assert "large-deal" in stored.tags

        tasks = await stack.store.list_entities("org-1", "task", record_id="rec-1")
        assert tasks[0]["payload"]["title"] == "Call Acme Corp"

        run = await stack.store.get_run("org-1", result.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.source == RunSource.WORKFLOW
        assert run.output["success_count"] == 2
        assert run.completed_at is not None

        updated = await stack.store.get_workflow("org-1", "wf-1")
        assert updated.run_count == 1
        assert updated.last_run_status == "completed"

    @pytest.mark.asyncio
    async def test_disabled_workflow_is_skipped_without_run(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = make_workflow(enabled=False)

        result = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE)

        assert result.status == RunStatus.SKIPPED
        assert result.run_id is None
        assert stack.store.runs == {}

    @pytest.mark.asyncio
    async def test_trigger_mismatch_is_skipped(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.engine.execute_workflow(make_workflow(), record, TriggerType.ON_UPDATE)

        assert result.status == RunStatus.SKIPPED
        assert "Trigger mismatch" in result.output["reason"]

    @pytest.mark.asyncio
    async def test_conditions_not_met_is_skipped(self, stack):
        record = await stack.store.save_record(make_record(data={"amount": 10}))

        result = await stack.engine.execute_workflow(make_workflow(), record, TriggerType.ON_CREATE)

        assert result.status == RunStatus.SKIPPED
        assert result.output["reason"] == "Conditions not met"

    @pytest.mark.asyncio
    async def test_update_without_watched_change_is_skipped(self, stack):
        record = await stack.store.save_record(make_record(title="Renamed"))
        workflow = make_workflow(trigger_type="on_update", trigger_config={"watch_fields": ["amount"]})

        result = await stack.engine.execute_workflow(
            workflow, record, TriggerType.ON_UPDATE, previous_record=make_record()
        )

        assert result.status == RunStatus.SKIPPED
        assert result.output["reason"] == "No watched fields changed"

    @pytest.mark.asyncio
    async def test_duplicate_idempotency_key_is_skipped(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = await stack.store.save_workflow(make_workflow())

        first = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE, idempotency_key="evt-1")
        second = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE, idempotency_key="evt-1")

        assert first.status == RunStatus.COMPLETED
        assert second.status == RunStatus.SKIPPED
        assert second.output["reason"] == "Duplicate request (idempotency)"
        assert len(stack.store.runs) == 1

    @pytest.mark.asyncio
    async def test_dry_run_does_not_write(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = await stack.store.save_workflow(make_workflow())

        result = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE, dry_run=True)

        assert result.status == RunStatus.DRY_RUN
        assert result.actions_executed[0].output == {"would_add": ["large-deal"]}
        assert "would_create" in result.actions_executed[1].output

        stored = await stack.store.get_record("org-1", "rec-1")
        assert stored.tags == ["inbound"]
        assert await stack.store.list_entities("org-1", "task") == []

        run = await stack.store.get_run("org-1", result.run_id)
        assert run.is_dry_run is True
        assert (await stack.store.get_workflow("org-1", "wf-1")).run_count == 0

    @pytest.mark.asyncio
    async def test_failed_action_halts_remaining(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = make_workflow(actions=[
            {"id": "a1", "type": "update_fields", "config": {}, "order": 1},
            {"id": "a2", "type": "add_tag", "config": {"tag": "never"}, "order": 2},
        ])

        result = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE)

        assert result.status == RunStatus.FAILED
        assert result.actions_executed[0].status == ActionStatus.FAILED
        assert result.actions_executed[1].status == ActionStatus.SKIPPED
        assert result.actions_executed[1].output == {"reason": "halted"}
        assert result.error == result.actions_executed[0].error

    @pytest.mark.asyncio
    async def test_continue_on_failure(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = make_workflow(actions=[
            {"id": "a1", "type": "update_fields", "config": {}, "order": 1, "continue_on_failure": True},
            {"id": "a2", "type": "add_tag", "config": {"tag": "still-runs"}, "order": 2},
        ])

        result = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE)

        assert result.status == RunStatus.FAILED
        assert result.actions_executed[1].status == ActionStatus.SUCCESS
        assert "still-runs" in (await stack.store.get_record("org-1", "rec-1")).tags


class TestExecuteMatchingWorkflows:
    """Test cases for running every workflow of a trigger."""

    @pytest.mark.asyncio
    async def test_runs_in_priority_order(self, stack):
        record = await stack.store.save_record(make_record())
        await stack.store.save_workflow(make_workflow(id="wf-late", priority=20, actions=[
            {"id": "b1", "type": "update_fields", "config": {"fields": {"route": "late"}}},
        ]))
        await stack.store.save_workflow(make_workflow(id="wf-early", priority=1, actions=[
            {"id": "c1", "type": "update_fields", "config": {"fields": {"route": "early"}}},
        ]))

        results = await stack.engine.execute_matching_workflows(
            "org-1", "leads", record, TriggerType.ON_CREATE, idempotency_key="evt-9"
        )

        assert [r.workflow_id for r in results] == ["wf-early", "wf-late"]
        assert (await stack.store.get_record("org-1", "rec-1")).data["route"] == "late"

        keys = sorted(run.idempotency_key for run in stack.store.runs.values())
        assert keys == ["evt-9:wf-early", "evt-9:wf-late"]

    @pytest.mark.asyncio
    async def test_stops_after_failed_run(self, stack):
        record = await stack.store.save_record(make_record())
        await stack.store.save_workflow(make_workflow(id="wf-broken", priority=1, actions=[
            {"id": "b1", "type": "move_stage", "config": {}},
        ]))
        await stack.store.save_workflow(make_workflow(id="wf-after", priority=2))

        results = await stack.engine.execute_matching_workflows("org-1", "leads", record, TriggerType.ON_CREATE)

        assert len(results) == 1
        assert results[0].status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_dry_run_does_not_stop_chain(self, stack):
        record = await stack.store.save_record(make_record())
        await stack.store.save_workflow(make_workflow(id="wf-broken", priority=1, actions=[
            {"id": "b1", "type": "move_stage", "config": {}},
        ]))
        await stack.store.save_workflow(make_workflow(id="wf-after", priority=2))

        results = await stack.engine.execute_matching_workflows(
            "org-1", "leads", record, TriggerType.ON_CREATE, dry_run=True
        )

        assert len(results) == 2


class TestDelayAndResume:
    """Test cases for delay_wait deferral and resumption."""

    @pytest.mark.asyncio
    async def test_delay_defers_remaining_actions(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = await stack.store.save_workflow(make_workflow(actions=[
            {"id": "a1", "type": "add_tag", "config": {"tag": "first"}, "order": 1},
            {"id": "a2", "type": "delay_wait", "config": {"delay_hours": 2}, "order": 2},
            {"id": "a3", "type": "add_tag", "config": {"tag": "after-delay"}, "order": 3},
        ]))

        result = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE)

        assert result.status == RunStatus.COMPLETED
        assert result.output["deferred"] is True
        assert result.actions_executed[2].output == {"reason": "deferred"}

        jobs = await stack.store.list_jobs("org-1", status=JobStatus.PENDING)
        assert len(jobs) == 1
        job = jobs[0]
        assert job.job_type == JobType.WORKFLOW_STEP
        assert job.idempotency_key == f"step:{result.run_id}:a2"
        assert job.payload["resume_from"] == 2

        resumed = await stack.engine.resume_workflow(
            "org-1", workflow.id, result.run_id, record.id, step_id="a2", resume_from=2
        )

        assert resumed.status == RunStatus.COMPLETED
        assert [a.action_id for a in resumed.actions_executed] == ["a3"]
        assert "after-delay" in (await stack.store.get_record("org-1", "rec-1")).tags

        resumed_run = await stack.store.get_run("org-1", resumed.run_id)
        assert resumed_run.input["resumed_from_run"] == result.run_id

    @pytest.mark.asyncio
    async def test_resume_falls_back_to_order_when_step_removed(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = await stack.store.save_workflow(make_workflow())

        resumed = await stack.engine.resume_workflow(
            "org-1", workflow.id, "run-x", record.id, step_id="gone", resume_from=1
        )

        assert [a.action_id for a in resumed.actions_executed] == ["a2"]

    @pytest.mark.asyncio
    async def test_resume_skips_missing_record(self, stack):
        workflow = await stack.store.save_workflow(make_workflow())

        resumed = await stack.engine.resume_workflow("org-1", workflow.id, "run-x", "missing", step_id="a1")

        assert resumed.status == RunStatus.SKIPPED


class TestRetryAndTest:
    """Test cases for retry_run and test_workflow."""

    @pytest.mark.asyncio
    async def test_retry_run_uses_fresh_key_and_bumps_count(self, stack):
        record = await stack.store.save_record(make_record())
        workflow = await stack.store.save_workflow(make_workflow(actions=[
            {"id": "b1", "type": "move_stage", "config": {}},
        ]))
        failed = await stack.engine.execute_workflow(workflow, record, TriggerType.ON_CREATE)
        assert failed.status == RunStatus.FAILED

        workflow.actions = [WorkflowAction(id="b1", type=ActionType.MOVE_STAGE, config={"stage": "qualified"})]
        await stack.store.save_workflow(workflow)

        retried = await stack.engine.retry_run("org-1", failed.run_id)

        assert retried.status == RunStatus.COMPLETED
        assert (await stack.store.get_run("org-1", failed.run_id)).retry_count == 1
        retry_run = await stack.store.get_run("org-1", retried.run_id)
        assert retry_run.idempotency_key.startswith(f"retry:{failed.run_id}:")
        assert (await stack.store.get_record("org-1", "rec-1")).stage == "qualified"

    @pytest.mark.asyncio
    async def test_retry_unknown_run(self, stack):
        with pytest.raises(NotFoundError):
            await stack.engine.retry_run("org-1", "nope")

    @pytest.mark.asyncio
    async def test_test_workflow_is_dry_run(self, stack):
        await stack.store.save_record(make_record())
        await stack.store.save_workflow(make_workflow(trigger_type="scheduled"))

        result = await stack.engine.test_workflow("org-1", "wf-1", record_id="rec-1")

        assert result.status == RunStatus.DRY_RUN

    @pytest.mark.asyncio
    async def test_test_workflow_other_org_is_not_found(self, stack):
        await stack.store.save_record(make_record())
        await stack.store.save_workflow(make_workflow())

        with pytest.raises(NotFoundError):
            await stack.engine.test_workflow("org-2", "wf-1", record_id="rec-1")

    @pytest.mark.asyncio
    async def test_test_workflow_missing_record(self, stack):
        await stack.store.save_workflow(make_workflow())

        with pytest.raises(NotFoundError):
            await stack.engine.test_workflow("org-1", "wf-1", record_id="missing")


class TestMacros:
    """Test cases for running macros."""

    @pytest.fixture
    def macro(self):
        return Macro.from_dict({
            "id": "macro-1",
            "org_id": "org-1",
            "module_id": "leads",
            "name": "Qualify",
            "actions": [
                {"id": "m1", "type": "move_stage", "config": {"stage": "qualified"}},
                {"id": "m2", "type": "add_tag", "config": {"tag": "qualified"}},
            ],
            "allowed_roles": ["crm_admin", "crm_agent"],
        })

    @pytest.mark.asyncio
    async def test_macro_success(self, stack, macro):
        await stack.store.save_record(make_record())
        await stack.store.save_macro(macro)

        macro_run = await stack.engine.run_macro("org-1", "macro-1", "rec-1", "agent-1", CrmRole.AGENT)

        assert macro_run.status == MacroRunStatus.SUCCESS
        assert (await stack.store.get_record("org-1", "rec-1")).stage == "qualified"
        run = await stack.store.get_run("org-1", macro_run.run_id)
        assert run.source == RunSource.MACRO
        assert len(await stack.store.list_entities("org-1", "macro_run", record_id="rec-1")) == 1

    @pytest.mark.asyncio
    async def test_macro_partial(self, stack, macro):
        macro.actions.insert(1, WorkflowAction(id="bad", type=ActionType.UPDATE_FIELDS, order=0,
                                               continue_on_failure=True))
        await stack.store.save_record(make_record())
        await stack.store.save_macro(macro)

        macro_run = await stack.engine.run_macro("org-1", "macro-1", "rec-1", "agent-1", CrmRole.AGENT)

        assert macro_run.status == MacroRunStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_macro_role_denied(self, stack, macro):
        await stack.store.save_record(make_record())
        await stack.store.save_macro(macro)

        with pytest.raises(AuthorizationError):
            await stack.engine.run_macro("org-1", "macro-1", "rec-1", "viewer-1", CrmRole.VIEWER)

    @pytest.mark.asyncio
    async def test_disabled_macro(self, stack, macro):
        macro.enabled = False
        await stack.store.save_record(make_record())
        await stack.store.save_macro(macro)

        with pytest.raises(UnprocessableError):
            await stack.engine.run_macro("org-1", "macro-1", "rec-1", "admin-1", CrmRole.ADMIN)
