"""
Rule data models for the Automation Service.
"""

import uuid
from typing import Dict, Any, Optional, List, Union
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from shared.errors import ValidationError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    """Record events a workflow can listen to."""
    ON_CREATE = "on_create"
    ON_UPDATE = "on_update"
    ON_STAGE_CHANGE = "on_stage_change"
    SCHEDULED = "scheduled"
    WEBFORM = "webform"
    INBOUND_WEBHOOK = "inbound_webhook"


class ConditionOperator(str, Enum):
    """Leaf comparison operators."""
    EQ = "eq"
    NE = "ne"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IS_EMPTY = "is_empty"
    NOT_EMPTY = "not_empty"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    CHANGED = "changed"
    CHANGED_TO = "changed_to"
    CHANGED_FROM = "changed_from"


OPERATOR_ALIASES = {
    "equals": ConditionOperator.EQ,
    "not_equals": ConditionOperator.NE,
    "neq": ConditionOperator.NE,
    "greater_than": ConditionOperator.GT,
    "less_than": ConditionOperator.LT,
    "is_not_empty": ConditionOperator.NOT_EMPTY,
}


class MatchMode(str, Enum):
    """Combinator for a condition group."""
    ALL = "all"
    ANY = "any"


class ActionType(str, Enum):
    """Action types understood by the executor."""
    UPDATE_FIELDS = "update_fields"
    MOVE_STAGE = "move_stage"
    ASSIGN_OWNER = "assign_owner"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    CREATE_TASK = "create_task"
    CREATE_ACTIVITY = "create_activity"
    ADD_NOTE = "add_note"
    NOTIFY = "notify"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    POST_WEBHOOK = "post_webhook"
    DELAY_WAIT = "delay_wait"
    START_CADENCE = "start_cadence"
    STOP_CADENCE = "stop_cadence"
    CREATE_ENROLLMENT_DRAFT = "create_enrollment_draft"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Lifecycle of an automation run row."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


class RunSource(str, Enum):
    WORKFLOW = "workflow"
    MACRO = "macro"
    CADENCE = "cadence"


class JobType(str, Enum):
    """Scheduler job types."""
    WORKFLOW_STEP = "workflow_step"
    SCHEDULED_WORKFLOW = "scheduled_workflow"
    RETRY = "retry"
    CADENCE_STEP = "cadence_step"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CrmRole(str, Enum):
    ADMIN = "crm_admin"
    MANAGER = "crm_manager"
    AGENT = "crm_agent"
    VIEWER = "crm_viewer"


class CadenceStepType(str, Enum):
    TASK = "task"
    EMAIL = "email"
    CALL = "call"
    WAIT = "wait"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AssignmentStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    TERRITORY = "territory"
    LEAST_LOADED = "least_loaded"
    FIXED = "fixed"


class MacroRunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


# Record columns stored outside the JSON data blob
SYSTEM_FIELDS = ("title", "status", "stage", "email", "phone", "owner_id", "tags")


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-ready values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept a datetime or ISO-8601 string; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid datetime: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Record:
    """A CRM record: a few indexed columns plus an opaque data blob."""
    id: str
    org_id: str
    module_id: str
    title: Optional[str] = None
    status: Optional[str] = None
    stage: Optional[str] = None
    owner_id: Optional[str] = None
    created_by: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_field(self, name: str) -> Any:
        """Resolve a field: column first, then data blob, then dotted path into data."""
        if name in ("id", "org_id", "module_id", "created_by", "created_at", "updated_at") or name in SYSTEM_FIELDS:
            return getattr(self, name)
        if name in self.data:
            return self.data[name]
        if "." in name:
            parts = name.split(".")
            if parts[0] == "data":
                parts = parts[1:]
            value: Any = self.data
            for part in parts:
                if isinstance(value, dict) and part in value:
                    value = value[part]
                else:
                    return None
            return value
        return None

    def resolve_user(self, target: Optional[str]) -> Optional[str]:
        """'owner' and 'creator' resolve against the record; anything else is a user id."""
        if target is None or target == "owner":
            return self.owner_id
        if target == "creator":
            return self.created_by
        return target

    def apply_updates(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply field updates in place; returns the column/data split written."""
        columns: Dict[str, Any] = {}
        data_updates: Dict[str, Any] = {}
        for key, value in updates.items():
            if key in SYSTEM_FIELDS:
                setattr(self, key, value)
                columns[key] = value
            else:
                self.data[key] = value
                data_updates[key] = value
        self.updated_at = utcnow()
        return {"columns": columns, "data": data_updates}

    def copy(self) -> "Record":
        return replace(self, tags=list(self.tags), data=dict(self.data))

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Record":
        return cls(
            id=payload.get("id") or new_id(),
            org_id=payload["org_id"],
            module_id=payload["module_id"],
            title=payload.get("title"),
            status=payload.get("status"),
            stage=payload.get("stage"),
            owner_id=payload.get("owner_id"),
            created_by=payload.get("created_by"),
            email=payload.get("email"),
            phone=payload.get("phone"),
            tags=list(payload.get("tags") or []),
            data=dict(payload.get("data") or {}),
            created_at=parse_datetime(payload.get("created_at")) or utcnow(),
            updated_at=parse_datetime(payload.get("updated_at")) or utcnow(),
        )


@dataclass
class Condition:
    """Leaf comparison."""
    field: str
    operator: ConditionOperator
    value: Any = None
    previous_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {"field": self.field, "operator": self.operator.value, "value": self.value}
        if self.previous_value is not None:
            payload["previous_value"] = self.previous_value
        return payload


@dataclass
class ConditionGroup:
    """AND/OR node of a condition tree."""
    match: MatchMode = MatchMode.ALL
    rules: List[Union[Condition, "ConditionGroup"]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"match": self.match.value, "rules": [rule.to_dict() for rule in self.rules]}

    @classmethod
    def from_raw(cls, raw: Any) -> "ConditionGroup":
        """Parse `{match, rules}`, `{logic, conditions}` or a bare list (all)."""
        if raw is None:
            return cls()
        if isinstance(raw, ConditionGroup):
            return raw
        if isinstance(raw, list):
            return cls(match=MatchMode.ALL, rules=[_parse_node(node) for node in raw])
        if not isinstance(raw, dict):
            raise ValidationError("Condition tree must be an object or a list", {"got": type(raw).__name__})
        if "field" in raw:
            return cls(match=MatchMode.ALL, rules=[_parse_node(raw)])

        if "match" in raw:
            mode = str(raw["match"]).lower()
        else:
            mode = {"and": "all", "or": "any"}.get(str(raw.get("logic", "AND")).lower(), "")
        if mode not in ("all", "any"):
            raise ValidationError("Condition group match must be all/any", {"match": raw.get("match", raw.get("logic"))})

        nodes = raw.get("rules", raw.get("conditions")) or []
        if not isinstance(nodes, list):
            raise ValidationError("Condition group rules must be a list")
        return cls(match=MatchMode(mode), rules=[_parse_node(node) for node in nodes])


def _parse_node(node: Any) -> Union[Condition, ConditionGroup]:
    if isinstance(node, (Condition, ConditionGroup)):
        return node
    if not isinstance(node, dict):
        raise ValidationError("Condition must be an object", {"got": type(node).__name__})
    if "field" not in node:
        if "operator" in node:
            raise ValidationError("Condition field is required", {"operator": node["operator"]})
        return ConditionGroup.from_raw(node)

    raw_operator = str(node.get("operator", "")).lower()
    if raw_operator in OPERATOR_ALIASES:
        operator = OPERATOR_ALIASES[raw_operator]
    else:
        try:
            operator = ConditionOperator(raw_operator)
        except ValueError:
            raise ValidationError("Unknown condition operator", {"operator": node.get("operator")})

    if not node["field"]:
        raise ValidationError("Condition field is required")
    if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN) and not isinstance(node.get("value"), list):
        raise ValidationError("in/not_in conditions need a list value", {"field": node["field"]})

    return Condition(
        field=str(node["field"]),
        operator=operator,
        value=node.get("value"),
        previous_value=node.get("previous_value", node.get("previousValue")),
    )


@dataclass
class WorkflowAction:
    """One step of a workflow's ordered action list."""
    id: str
    type: ActionType
    config: Dict[str, Any] = field(default_factory=dict)
    order: int = 0
    continue_on_failure: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], default_order: int = 0) -> "WorkflowAction":
        try:
            action_type = ActionType(payload["type"])
        except (KeyError, ValueError):
            raise ValidationError("Unknown action type", {"type": payload.get("type")})
        return cls(
            id=payload.get("id") or new_id(),
            type=action_type,
            config=dict(payload.get("config") or {}),
            order=int(payload["order"]) if payload.get("order") is not None else default_order,
            continue_on_failure=bool(payload.get("continue_on_failure", False)),
        )


@dataclass
class Workflow:
    """Trigger + condition tree + ordered action list."""
    id: str
    org_id: str
    module_id: str
    name: str
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = field(default_factory=dict)
    conditions: ConditionGroup = field(default_factory=ConditionGroup)
    actions: List[WorkflowAction] = field(default_factory=list)
    enabled: bool = True
    priority: int = 0
    description: Optional[str] = None
    webhook_secret: Optional[str] = None
    created_by: Optional[str] = None
    run_count: int = 0
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_scheduled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def sorted_actions(self) -> List[WorkflowAction]:
        return sorted(self.actions, key=lambda a: a.order)

    def to_dict(self) -> Dict[str, Any]:
        payload = to_jsonable(self)
        payload["conditions"] = self.conditions.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Workflow":
        try:
            trigger_type = TriggerType(payload["trigger_type"])
        except (KeyError, ValueError):
            raise ValidationError("Unknown trigger type", {"trigger_type": payload.get("trigger_type")})
        actions = [
            WorkflowAction.from_dict(action, default_order=index)
            for index, action in enumerate(payload.get("actions") or [])
        ]
        return cls(
            id=payload.get("id") or new_id(),
            org_id=payload["org_id"],
            module_id=payload["module_id"],
            name=payload["name"],
            trigger_type=trigger_type,
            trigger_config=dict(payload.get("trigger_config") or {}),
            conditions=ConditionGroup.from_raw(payload.get("conditions")),
            actions=actions,
            enabled=bool(payload.get("enabled", True)),
            priority=int(payload.get("priority", 0)),
            description=payload.get("description"),
            webhook_secret=payload.get("webhook_secret"),
            created_by=payload.get("created_by"),
            run_count=int(payload.get("run_count", 0)),
            last_run_at=parse_datetime(payload.get("last_run_at")),
            last_run_status=payload.get("last_run_status"),
            last_scheduled_at=parse_datetime(payload.get("last_scheduled_at")),
            created_at=parse_datetime(payload.get("created_at")) or utcnow(),
            updated_at=parse_datetime(payload.get("updated_at")) or utcnow(),
        )


@dataclass
class ActionResult:
    """Per-action log entry."""
    action_id: str
    type: str
    status: ActionStatus
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ActionResult":
        return cls(
            action_id=payload["action_id"],
            type=payload["type"],
            status=ActionStatus(payload["status"]),
            output=dict(payload.get("output") or {}),
            error=payload.get("error"),
        )


@dataclass
class AutomationRun:
    """Run log row: one per rule evaluation that got past its gates."""
    id: str
    org_id: str
    source: RunSource
    trigger: str
    status: RunStatus = RunStatus.RUNNING
    workflow_id: Optional[str] = None
    module_id: Optional[str] = None
    record_id: Optional[str] = None
    is_dry_run: bool = False
    input: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    actions_executed: List[ActionResult] = field(default_factory=list)
    error: Optional[str] = None
    idempotency_key: Optional[str] = None
    retry_count: int = 0
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AutomationRun":
        return cls(
            id=payload["id"],
            org_id=payload["org_id"],
            source=RunSource(payload["source"]),
            trigger=payload["trigger"],
            status=RunStatus(payload["status"]),
            workflow_id=payload.get("workflow_id"),
            module_id=payload.get("module_id"),
            record_id=payload.get("record_id"),
            is_dry_run=bool(payload.get("is_dry_run", False)),
            input=dict(payload.get("input") or {}),
            output=dict(payload.get("output") or {}),
            actions_executed=[ActionResult.from_dict(a) for a in payload.get("actions_executed") or []],
            error=payload.get("error"),
            idempotency_key=payload.get("idempotency_key"),
            retry_count=int(payload.get("retry_count", 0)),
            started_at=parse_datetime(payload.get("started_at")) or utcnow(),
            completed_at=parse_datetime(payload.get("completed_at")),
        )


@dataclass
class SchedulerJob:
    """Row of the polling job queue."""
    id: str
    org_id: str
    job_type: JobType
    entity_type: str
    entity_id: str
    run_at: datetime
    record_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SchedulerJob":
        return cls(
            id=payload["id"],
            org_id=payload["org_id"],
            job_type=JobType(payload["job_type"]),
            entity_type=payload["entity_type"],
            entity_id=payload["entity_id"],
            run_at=parse_datetime(payload["run_at"]),
            record_id=payload.get("record_id"),
            status=JobStatus(payload.get("status", "pending")),
            attempts=int(payload.get("attempts", 0)),
            max_attempts=int(payload.get("max_attempts", 3)),
            last_error=payload.get("last_error"),
            last_attempt_at=parse_datetime(payload.get("last_attempt_at")),
            payload=dict(payload.get("payload") or {}),
            result=payload.get("result"),
            idempotency_key=payload.get("idempotency_key"),
            created_at=parse_datetime(payload.get("created_at")) or utcnow(),
            completed_at=parse_datetime(payload.get("completed_at")),
        )


@dataclass
class CadenceStep:
    id: str
    type: CadenceStepType
    delay_days: float = 0
    config: Dict[str, Any] = field(default_factory=dict)
    order: int = 0


@dataclass
class Cadence:
    """Timed outreach sequence."""
    id: str
    org_id: str
    module_id: str
    name: str
    steps: List[CadenceStep] = field(default_factory=list)
    enabled: bool = True
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def sorted_steps(self) -> List[CadenceStep]:
        return sorted(self.steps, key=lambda s: s.order)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Cadence":
        steps = []
        for index, step in enumerate(payload.get("steps") or []):
            try:
                step_type = CadenceStepType(step["type"])
            except (KeyError, ValueError):
                raise ValidationError("Unknown cadence step type", {"type": step.get("type")})
            steps.append(CadenceStep(
                id=step.get("id") or new_id(),
                type=step_type,
                delay_days=float(step.get("delay_days") or 0),
                config=dict(step.get("config") or {}),
                order=int(step["order"]) if step.get("order") is not None else index,
            ))
        return cls(
            id=payload.get("id") or new_id(),
            org_id=payload["org_id"],
            module_id=payload["module_id"],
            name=payload["name"],
            steps=steps,
            enabled=bool(payload.get("enabled", True)),
            description=payload.get("description"),
            created_at=parse_datetime(payload.get("created_at")) or utcnow(),
        )


@dataclass
class CadenceEnrollment:
    id: str
    org_id: str
    cadence_id: str
    record_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step: int = 0
    next_step_at: Optional[datetime] = None
    enrolled_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CadenceEnrollment":
        return cls(
            id=payload["id"],
            org_id=payload["org_id"],
            cadence_id=payload["cadence_id"],
            record_id=payload["record_id"],
            status=EnrollmentStatus(payload.get("status", "active")),
            current_step=int(payload.get("current_step", 0)),
            next_step_at=parse_datetime(payload.get("next_step_at")),
            enrolled_by=payload.get("enrolled_by"),
            created_at=parse_datetime(payload.get("created_at")) or utcnow(),
            updated_at=parse_datetime(payload.get("updated_at")) or utcnow(),
        )


@dataclass
class Macro:
    """One-click action bundle."""
    id: str
    org_id: str
    module_id: str
    name: str
    actions: List[WorkflowAction] = field(default_factory=list)
    enabled: bool = True
    allowed_roles: List[CrmRole] = field(default_factory=lambda: [CrmRole.ADMIN, CrmRole.MANAGER, CrmRole.AGENT])
    description: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Macro":
        roles = payload.get("allowed_roles")
        return cls(
            id=payload.get("id") or new_id(),
            org_id=payload["org_id"],
            module_id=payload["module_id"],
            name=payload["name"],
            actions=[
                WorkflowAction.from_dict(action, default_order=index)
                for index, action in enumerate(payload.get("actions") or [])
            ],
            enabled=bool(payload.get("enabled", True)),
            allowed_roles=[CrmRole(r) for r in roles] if roles is not None else [CrmRole.ADMIN, CrmRole.MANAGER, CrmRole.AGENT],
            description=payload.get("description"),
            created_by=payload.get("created_by"),
            created_at=parse_datetime(payload.get("created_at")) or utcnow(),
        )


@dataclass
class MacroRun:
    """Outcome of running a macro against one record."""
    id: str
    org_id: str
    macro_id: str
    record_id: str
    status: MacroRunStatus
    run_id: Optional[str] = None
    executed_by: Optional[str] = None
    actions_executed: List[ActionResult] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass
class AssignmentRule:
    """Owner-selection rule referenced by assign_owner actions."""
    id: str
    org_id: str
    module_id: str
    name: str
    strategy: AssignmentStrategy
    config: Dict[str, Any] = field(default_factory=dict)
    conditions: ConditionGroup = field(default_factory=ConditionGroup)
    enabled: bool = True
    priority: int = 0

    def to_dict(self) -> Dict[str, Any]:
        payload = to_jsonable(self)
        payload["conditions"] = self.conditions.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AssignmentRule":
        try:
            strategy = AssignmentStrategy(payload["strategy"])
        except (KeyError, ValueError):
            raise ValidationError("Unknown assignment strategy", {"strategy": payload.get("strategy")})
        return cls(
            id=payload.get("id") or new_id(),
            org_id=payload["org_id"],
            module_id=payload["module_id"],
            name=payload["name"],
            strategy=strategy,
            config=dict(payload.get("config") or {}),
            conditions=ConditionGroup.from_raw(payload.get("conditions")),
            enabled=bool(payload.get("enabled", True)),
            priority=int(payload.get("priority", 0)),
        )


@dataclass
class AutomationContext:
    """Execution context handed to every action handler."""
    org_id: str
    module_id: str
    trigger: str
    dry_run: bool = False
    user_id: Optional[str] = None
    workflow_id: Optional[str] = None
    workflow_created_by: Optional[str] = None
    run_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    previous_record: Optional[Record] = None


@dataclass
class AutomationRunResult:
    """What execute_workflow hands back to callers."""
    status: RunStatus
    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None
    actions_executed: List[ActionResult] = field(default_factory=list)
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


# ---------------------------------------------------------------------------
# API request models
# ---------------------------------------------------------------------------

class ActionSpec(BaseModel):
    """Action as submitted through the API."""
    id: Optional[str] = Field(None, description="Action ID; generated when omitted")
    type: ActionType = Field(..., description="Action type")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    order: Optional[int] = Field(None, description="Execution order; list position when omitted")
    continue_on_failure: bool = Field(False, description="Keep executing later actions if this one fails")


class WorkflowCreateRequest(BaseModel):
    """Request model for creating a workflow."""
    name: str = Field(..., min_length=1, description="Workflow name")
    module_id: str = Field(..., description="CRM module the workflow watches")
    description: Optional[str] = Field(None, description="Workflow description")
    trigger_type: TriggerType = Field(..., description="Trigger type")
    trigger_config: Dict[str, Any] = Field(default_factory=dict, description="Trigger configuration")
    conditions: Union[Dict[str, Any], List[Dict[str, Any]]] = Field(default_factory=dict, description="Condition tree")
    actions: List[ActionSpec] = Field(default_factory=list, description="Ordered actions")
    enabled: bool = Field(True, description="Whether the workflow is enabled")
    priority: int = Field(0, description="Evaluation priority (ascending)")
    webhook_secret: Optional[str] = Field(None, description="HMAC secret for inbound webhooks")


class WorkflowUpdateRequest(BaseModel):
    """Request model for updating a workflow."""
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    trigger_config: Optional[Dict[str, Any]] = None
    conditions: Optional[Union[Dict[str, Any], List[Dict[str, Any]]]] = None
    actions: Optional[List[ActionSpec]] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None
    webhook_secret: Optional[str] = None


class RecordPayload(BaseModel):
    """Record as carried in event and seed requests."""
    id: Optional[str] = None
    module_id: str
    title: Optional[str] = None
    status: Optional[str] = None
    stage: Optional[str] = None
    owner_id: Optional[str] = None
    created_by: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)


class RecordEventRequest(BaseModel):
    """A record event to run matching workflows against."""
    trigger: TriggerType
    record: RecordPayload
    previous_record: Optional[RecordPayload] = None
    dry_run: bool = False
    idempotency_key: Optional[str] = None
    webform_id: Optional[str] = None


class WorkflowTestRequest(BaseModel):
    """Dry-run a workflow against a stored or inline record."""
    record_id: Optional[str] = None
    record: Optional[RecordPayload] = None
    previous_record: Optional[RecordPayload] = None


class MacroCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    module_id: str
    description: Optional[str] = None
    actions: List[ActionSpec] = Field(default_factory=list)
    enabled: bool = True
    allowed_roles: List[CrmRole] = Field(default_factory=lambda: [CrmRole.ADMIN, CrmRole.MANAGER, CrmRole.AGENT])


class MacroRunRequest(BaseModel):
    record_id: str


class JobScheduleRequest(BaseModel):
    """Manually enqueue a scheduler job."""
    job_type: JobType
    entity_type: str
    entity_id: str
    record_id: Optional[str] = None
    run_at: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    max_attempts: Optional[int] = Field(None, ge=1, le=20)
    idempotency_key: Optional[str] = None


class CadenceStepSpec(BaseModel):
    id: Optional[str] = None
    type: CadenceStepType
    delay_days: float = Field(0, ge=0)
    config: Dict[str, Any] = Field(default_factory=dict)
    order: Optional[int] = None


class CadenceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    module_id: str
    description: Optional[str] = None
    steps: List[CadenceStepSpec] = Field(default_factory=list)
    enabled: bool = True


class CadenceEnrollRequest(BaseModel):
    record_id: str


class AssignmentRuleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    module_id: str
    strategy: AssignmentStrategy
    config: Dict[str, Any] = Field(default_factory=dict)
    conditions: Union[Dict[str, Any], List[Dict[str, Any]]] = Field(default_factory=dict)
    enabled: bool = True
    priority: int = 0
