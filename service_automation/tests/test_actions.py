"""
Unit tests for the action executor, assignment and outbound webhooks.
"""

import json
from datetime import timedelta

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_automation.app.actions.executor import ActionExecutor
from service_automation.app.actions.templates import render_template, render_value
from service_automation.app.actions.webhook import WebhookClient
from service_automation.app.rules.models import (
    ActionStatus, ActionType, AssignmentRule, AutomationContext, Cadence, WorkflowAction, utcnow
)
from shared.errors import ExternalServiceError, ValidationError

from conftest import make_record


def action(action_type: str, config=None, **kwargs) -> WorkflowAction:
    return WorkflowAction(id=f"act-{action_type}", type=ActionType(action_type), config=config or {}, **kwargs)


def live_context(**overrides) -> AutomationContext:
    values = {
        "org_id": "org-1",
        "module_id": "leads",
        "trigger": "on_create",
        "user_id": "agent-1",
        "workflow_id": "wf-1",
        "workflow_created_by": "admin-1",
        "run_id": "run-1",
    }
    values.update(overrides)
    return AutomationContext(**values)


class TestRecordActions:
    """Test cases for actions that write to the record."""

    @pytest.mark.asyncio
    async def test_update_fields_writes_columns_and_data(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("update_fields", {"fields": {"status": "working", "score": 42}}), record, live_context()
        )

        assert result.status == ActionStatus.SUCCESS
        stored = await stack.store.get_record("org-1", "rec-1")
        assert stored.status == "working"
        assert stored.data["score"] == 42
        assert record.data["score"] == 42

    @pytest.mark.asyncio
    async def test_update_missing_record_fails(self, stack):
        result = await stack.executor.execute_action(
            action("update_fields", {"fields": {"status": "working"}}), make_record(), live_context()
        )

        assert result.status == ActionStatus.FAILED
        assert result.error == "Record not found"

    @pytest.mark.asyncio
    async def test_tags_are_deduplicated(self, stack):
        record = await stack.store.save_record(make_record())

        added = await stack.executor.execute_action(
            action("add_tag", {"tags": ["inbound", "hot"]}), record, live_context()
        )
        again = await stack.executor.execute_action(action("add_tag", {"tag": "hot"}), record, live_context())
        removed = await stack.executor.execute_action(action("remove_tag", {"tag": "inbound"}), record, live_context())

        assert added.output == {"added": ["hot"]}
        assert again.status == ActionStatus.SKIPPED
        assert removed.output == {"removed": ["inbound"]}
        assert (await stack.store.get_record("org-1", "rec-1")).tags == ["hot"]

    @pytest.mark.asyncio
    async def test_move_stage_dry_run(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("move_stage", {"stage": "won"}), record, live_context(dry_run=True)
        )

        assert result.output == {"would_move_to": "won", "from": "new"}
        assert (await stack.store.get_record("org-1", "rec-1")).stage == "new"


class TestAssignment:
    """Test cases for assign_owner and assignment strategies."""

    @pytest.mark.asyncio
    async def test_direct_user(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("assign_owner", {"user_id": "agent-9"}), record, live_context()
        )

        assert result.output == {"assigned": "agent-9"}
        assert (await stack.store.get_record("org-1", "rec-1")).owner_id == "agent-9"

    @pytest.mark.asyncio
    async def test_round_robin_advances_only_when_live(self, stack):
        await stack.store.save_assignment_rule(AssignmentRule.from_dict({
            "id": "rule-rr",
            "org_id": "org-1",
            "module_id": "leads",
            "name": "Round robin",
            "strategy": "round_robin",
            "config": {"user_ids": ["u1", "u2", "u3"], "current_index": 0},
        }))
        record = await stack.store.save_record(make_record())
        assign = action("assign_owner", {"rule_id": "rule-rr"})

        preview = await stack.executor.execute_action(assign, record, live_context(dry_run=True))
        first = await stack.executor.execute_action(assign, record, live_context())
        second = await stack.executor.execute_action(assign, record, live_context())

        assert preview.output == {"would_assign": "u1"}
        assert first.output == {"assigned": "u1"}
        assert second.output == {"assigned": "u2"}
        rule = await stack.store.get_assignment_rule("org-1", "rule-rr")
        assert rule.config["current_index"] == 2

    @pytest.mark.asyncio
    async def test_territory_with_fallback(self, stack):
        rule = AssignmentRule.from_dict({
            "id": "rule-t",
            "org_id": "org-1",
            "module_id": "leads",
            "name": "Territory",
            "strategy": "territory",
            "config": {
                "field": "region",
                "territories": [
                    {"values": ["emea", "uk"], "user_id": "europe-rep"},
                    {"values": ["na"], "user_id": "us-rep"},
                ],
                "fallback_user_id": "default-rep",
            },
        })

        assert await stack.executor.assignment.select_owner(rule, make_record()) == "europe-rep"
        assert await stack.executor.assignment.select_owner(
            rule, make_record(data={"region": "LATAM"})
        ) == "default-rep"

    @pytest.mark.asyncio
    async def test_least_loaded_ignores_closed_records(self, stack):
        await stack.store.save_record(make_record(id="r1", owner_id="u1"))
        await stack.store.save_record(make_record(id="r2", owner_id="u1"))
        await stack.store.save_record(make_record(id="r3", owner_id="u2"))
        await stack.store.save_record(make_record(id="r4", owner_id="u2", status="won"))
        rule = AssignmentRule.from_dict({
            "id": "rule-ll",
            "org_id": "org-1",
            "module_id": "leads",
            "name": "Least loaded",
            "strategy": "least_loaded",
            "config": {"user_ids": ["u1", "u2"]},
        })

        assert await stack.executor.assignment.select_owner(rule, make_record()) == "u2"

    @pytest.mark.asyncio
    async def test_rule_conditions_gate_assignment(self, stack):
        rule = AssignmentRule.from_dict({
            "id": "rule-f",
            "org_id": "org-1",
            "module_id": "leads",
            "name": "APAC only",
            "strategy": "fixed",
            "config": {"user_id": "apac-rep"},
            "conditions": [{"field": "region", "operator": "eq", "value": "apac"}],
        })

        assert await stack.executor.assignment.select_owner(rule, make_record()) is None


class TestRelatedEntities:
    """Test cases for actions that create tasks, notes and messages."""

    @pytest.mark.asyncio
    async def test_create_task_renders_template(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("create_task", {"title": "Call {{title}} in {{region}}", "due_in_days": 2,
                                   "assigned_to": "creator"}),
            record,
            live_context()
        )

        assert result.status == ActionStatus.SUCCESS
        task = (await stack.store.list_entities("org-1", "task"))[0]
        assert task["payload"]["title"] == "Call Acme Corp in EMEA"
        assert task["payload"]["assigned_to"] == "manager-1"
        assert task["id"] == result.output["task_id"]

    @pytest.mark.asyncio
    async def test_notify_deduplicates_recipients(self, stack):
        record = await stack.store.save_record(make_record(owner_id="u1", created_by="u1"))

        result = await stack.executor.execute_action(
            action("notify", {"recipients": ["owner", "creator", "u7"], "title": "New lead {{title}}"}),
            record,
            live_context()
        )

        assert result.output == {"notified": ["u1", "u7"]}
        assert len(await stack.store.list_entities("org-1", "notification")) == 2

    @pytest.mark.asyncio
    async def test_send_email_without_address_is_skipped(self, stack):
        record = await stack.store.save_record(make_record(email=None))

        result = await stack.executor.execute_action(
            action("send_email", {"subject": "Hi"}), record, live_context()
        )

        assert result.status == ActionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_send_sms_queues_outbox_message(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("send_sms", {"body": "Thanks {{title}}"}), record, live_context()
        )

        outbox = (await stack.store.list_entities("org-1", "outbox"))[0]
        assert result.output["to"] == "+15550100"
        assert outbox["payload"]["channel"] == "sms"
        assert outbox["payload"]["body"] == "Thanks Acme Corp"


class TestWebhookAction:
    """Test cases for post_webhook."""

    @pytest.mark.asyncio
    async def test_posts_rendered_body(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("post_webhook", {
                "url": "https://hooks.example/crm",
                "body_template": {"name": "{{title}}", "tags": ["{{stage}}"]},
            }),
            record,
            live_context()
        )

        assert result.status == ActionStatus.SUCCESS
        assert result.output["status_code"] == 200
        sent = stack.webhook_requests[0]
        assert sent.method == "POST"
        assert json.loads(sent.content) == {"name": "Acme Corp", "tags": ["new"]}

    @pytest.mark.asyncio
    async def test_error_status_fails_action(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("post_webhook", {"url": "https://hooks.example/fail", "retry_on_failure": True}),
            record,
            live_context()
        )

        assert result.status == ActionStatus.FAILED
        assert "Unexpected status 500" in result.error
        assert len(stack.webhook_requests) == 2

    @pytest.mark.asyncio
    async def test_dry_run_does_not_call(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("post_webhook", {"url": "https://hooks.example/crm"}), record, live_context(dry_run=True)
        )

        assert result.output == {"would_call": {"url": "https://hooks.example/crm", "method": "POST"}}
        assert stack.webhook_requests == []

    @pytest.mark.asyncio
    async def test_client_rejects_get(self):
        client = WebhookClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))

        with pytest.raises(ValidationError):
            await client.send("https://hooks.example/crm", {}, method="GET")

    @pytest.mark.asyncio
    async def test_client_wraps_transport_errors(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = WebhookClient(transport=httpx.MockTransport(handler))

        with pytest.raises(ExternalServiceError):
            await client.send("https://hooks.example/crm", {})


class TestCadenceActions:
    """Test cases for start_cadence, stop_cadence and enrollment drafts."""

    @pytest.mark.asyncio
    async def test_start_cadence_twice_is_skipped(self, stack):
        await stack.store.save_cadence(Cadence.from_dict({
            "id": "cad-1", "org_id": "org-1", "module_id": "leads", "name": "Follow up",
            "steps": [{"type": "wait", "delay_days": 1}],
        }))
        record = await stack.store.save_record(make_record())
        start = action("start_cadence", {"cadence_id": "cad-1"})

        first = await stack.executor.execute_action(start, record, live_context())
        second = await stack.executor.execute_action(start, record, live_context())

        assert first.output["enrolled"] == "cad-1"
        assert second.status == ActionStatus.SKIPPED
        assert second.output == {"reason": "Already enrolled in cadence"}

        stopped = await stack.executor.execute_action(action("stop_cadence"), record, live_context())
        assert stopped.output == {"stopped": 1}

    @pytest.mark.asyncio
    async def test_start_unknown_cadence_is_skipped(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("start_cadence", {"cadence_id": "missing"}), record, live_context()
        )

        assert result.status == ActionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_enrollment_draft_requires_explicit_flag(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("create_enrollment_draft", {"plan_id": "plan-1"}), record, live_context()
        )

        assert result.status == ActionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_enrollment_draft_requires_admin_creator(self, stack):
        record = await stack.store.save_record(make_record())
        await stack.store.save_profile("org-1", "admin-1", "crm_manager")

        result = await stack.executor.execute_action(
            action("create_enrollment_draft", {"explicit": True}), record, live_context()
        )

        assert result.output == {"reason": "Workflow creator is not crm_admin"}

    @pytest.mark.asyncio
    async def test_enrollment_draft_created(self, stack):
        record = await stack.store.save_record(make_record(title="Jane Doe"))
        await stack.store.save_profile("org-1", "admin-1", "crm_admin")

        result = await stack.executor.execute_action(
            action("create_enrollment_draft", {"explicit": True, "plan_id": "plan-1"}), record, live_context()
        )

        assert result.status == ActionStatus.SUCCESS
        draft = (await stack.store.list_entities("org-1", "enrollment_draft"))[0]
        assert draft["payload"]["member"]["first_name"] == "Jane"
        assert draft["payload"]["member"]["last_name"] == "Doe"
        stored = await stack.store.get_record("org-1", "rec-1")
        assert stored.data["enrollment_status"] == "draft"
        assert stored.data["enrollment_id"] == draft["id"]


class TestDelay:
    """Test cases for delay computation."""

    def test_delay_units_add_up(self):
        config = {"delay_minutes": 30, "delay_hours": 1, "delay_days": 1}
        assert ActionExecutor.delay_seconds(config, make_record()) == 1800 + 3600 + 86400

    def test_non_positive_delay_rejected(self):
        with pytest.raises(ValidationError):
            ActionExecutor.delay_seconds({}, make_record())

    def test_delay_from_date_field(self):
        follow_up = (utcnow() + timedelta(days=3)).isoformat()
        record = make_record(data={"follow_up_at": follow_up})

        delay = ActionExecutor.delay_seconds({"delay_field": "follow_up_at", "offset_days": -1}, record)

        assert 2 * 86400 - 60 < delay <= 2 * 86400

    @pytest.mark.asyncio
    async def test_delay_outside_workflow_fails(self, stack):
        record = await stack.store.save_record(make_record())

        result = await stack.executor.execute_action(
            action("delay_wait", {"delay_seconds": 30}), record, live_context(run_id=None)
        )

        assert result.status == ActionStatus.FAILED


class TestTemplates:
    """Test cases for placeholder rendering."""

    def test_render_template(self):
        record = make_record(data={"address": {"city": "Lisbon"}, "amount": 10})

        rendered = render_template("{{ title }} / {{record.stage}} / {{address.city}} / {{missing}}", record)

        assert rendered == "Acme Corp / new / Lisbon / "

    def test_render_value_nested(self):
        record = make_record()

        rendered = render_value({"a": ["{{email}}", 3], "b": {"c": "{{tags}}"}}, record)

        assert rendered == {"a": ["buyer@acme.example", 3], "b": {"c": "inbound"}}
