"""
Shared fixtures for automation service tests.

Builds the engine, executor and scheduler on top of an InMemoryStore with
outbound webhooks routed through an httpx mock transport.
"""

from dataclasses import dataclass, field
from typing import List

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_automation.app.actions.assignment import AssignmentService
from service_automation.app.actions.executor import ActionExecutor
from service_automation.app.actions.webhook import WebhookClient
from service_automation.app.persistence.memory import InMemoryStore
from service_automation.app.rules.engine import WorkflowEngine
from service_automation.app.rules.models import Record, Workflow
from service_automation.app.scheduler.cadence import CadenceService
from service_automation.app.scheduler.processor import SchedulerProcessor
from service_automation.app.scheduler.queue import JobQueue


@dataclass
class AutomationStack:
    store: InMemoryStore
    queue: JobQueue
    cadences: CadenceService
    webhook: WebhookClient
    executor: ActionExecutor
    engine: WorkflowEngine
    processor: SchedulerProcessor
    webhook_requests: List[httpx.Request] = field(default_factory=list)


@pytest.fixture
def stack() -> AutomationStack:
    """Wire the automation components against a fresh in-memory store."""
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/fail"):
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json={"ok": True})

    store = InMemoryStore()
    queue = JobQueue(store, max_attempts=3, retry_base_delay=60, retry_max_delay=3600)
    cadences = CadenceService(store)
    webhook = WebhookClient(timeout=5, max_attempts=2, base_delay=0, transport=httpx.MockTransport(handler))
    executor = ActionExecutor(store, queue, cadences, AssignmentService(store), webhook)
    engine = WorkflowEngine(store, executor)
    processor = SchedulerProcessor(store, queue, engine, cadences)
    return AutomationStack(store, queue, cadences, webhook, executor, engine, processor, requests)


def make_record(**overrides) -> Record:
    payload = {
        "id": "rec-1",
        "org_id": "org-1",
        "module_id": "leads",
        "title": "Acme Corp",
        "status": "open",
        "stage": "new",
        "owner_id": "agent-1",
        "created_by": "manager-1",
        "email": "buyer@acme.example",
        "phone": "+15550100",
        "tags": ["inbound"],
        "data": {"amount": 5000, "region": "EMEA"},
    }
    payload.update(overrides)
    return Record.from_dict(payload)


def make_workflow(**overrides) -> Workflow:
    payload = {
        "id": "wf-1",
        "org_id": "org-1",
        "module_id": "leads",
        "name": "Tag large deals",
        "trigger_type": "on_create",
        "conditions": [{"field": "amount", "operator": "gt", "value": 1000}],
        "actions": [
            {"id": "a1", "type": "add_tag", "config": {"tag": "large-deal"}, "order": 1},
            {"id": "a2", "type": "create_task", "config": {"title": "Call {{title}}"}, "order": 2},
        ],
        "created_by": "admin-1",
    }
    payload.update(overrides)
    return Workflow.from_dict(payload)
