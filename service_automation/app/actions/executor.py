"""
Action executor for workflows, macros and resumed runs.

Every action yields exactly one ActionResult. Handler errors are recorded
as failed results and never raised to the caller.
"""

from datetime import timedelta
from typing import Dict, Any, List, Optional, Callable, Awaitable

from shared.logging import get_logger
from shared.errors import (
    AutomationError, ValidationError, NotFoundError, ConflictError, UnprocessableError
)
from ..rules.models import (
    ActionResult, ActionStatus, ActionType, AutomationContext, CrmRole, Record,
    WorkflowAction, parse_datetime, utcnow
)
from ..persistence.base import AutomationStore
from ..scheduler.cadence import CadenceService
from ..scheduler.queue import JobQueue
from .assignment import AssignmentService
from .templates import render_template, render_value
from .webhook import WebhookClient

Handler = Callable[[WorkflowAction, Record, AutomationContext], Awaitable[ActionResult]]

HALTED = "halted"
DEFERRED = "deferred"


def _result(action: WorkflowAction, status: ActionStatus, output: Optional[Dict[str, Any]] = None,
            error: Optional[str] = None) -> ActionResult:
    return ActionResult(
        action_id=action.id,
        type=action.type.value,
        status=status,
        output=output or {},
        error=error,
    )


class ActionExecutor:
    """Runs ordered action lists against a record."""

    def __init__(self, store: AutomationStore, queue: JobQueue, cadences: CadenceService,
                 assignment: AssignmentService, webhook: WebhookClient,
                 max_actions: int = 50, metrics=None):
        self.store = store
        self.queue = queue
        self.cadences = cadences
        self.assignment = assignment
        self.webhook = webhook
        self.max_actions = max_actions
        self.metrics = metrics
        self.logger = get_logger("automation.executor")

        self._handlers: Dict[ActionType, Handler] = {
            ActionType.UPDATE_FIELDS: self._update_fields,
            ActionType.MOVE_STAGE: self._move_stage,
            ActionType.ASSIGN_OWNER: self._assign_owner,
            ActionType.ADD_TAG: self._add_tag,
            ActionType.REMOVE_TAG: self._remove_tag,
            ActionType.CREATE_TASK: self._create_task,
            ActionType.CREATE_ACTIVITY: self._create_activity,
            ActionType.ADD_NOTE: self._add_note,
            ActionType.NOTIFY: self._notify,
            ActionType.SEND_EMAIL: self._send_email,
            ActionType.SEND_SMS: self._send_sms,
            ActionType.POST_WEBHOOK: self._post_webhook,
            ActionType.DELAY_WAIT: self._delay_wait,
            ActionType.START_CADENCE: self._start_cadence,
            ActionType.STOP_CADENCE: self._stop_cadence,
            ActionType.CREATE_ENROLLMENT_DRAFT: self._create_enrollment_draft,
        }

    async def execute_actions(self, actions: List[WorkflowAction], record: Record,
                              context: AutomationContext) -> List[ActionResult]:
        """Execute actions in `order`.

        A failed action halts the rest unless it sets continue_on_failure.
        A delay_wait defers the rest to a scheduled job. Halted and deferred
        actions are logged as skipped. Nothing halts in dry-run.
        """
        ordered = sorted(actions, key=lambda a: a.order)
        if len(ordered) > self.max_actions:
            self.logger.warning("Action list truncated", count=len(ordered), limit=self.max_actions,
                                workflow_id=context.workflow_id)
            ordered = ordered[:self.max_actions]

        results: List[ActionResult] = []
        stopped_reason: Optional[str] = None

        for action in ordered:
            if stopped_reason:
                results.append(_result(action, ActionStatus.SKIPPED, {"reason": stopped_reason}))
                continue

            result = await self.execute_action(action, record, context)
            results.append(result)

            if context.dry_run:
                continue
            if result.status == ActionStatus.FAILED and not action.continue_on_failure:
                stopped_reason = HALTED
            elif result.output.get(DEFERRED):
                stopped_reason = DEFERRED

        return results

    async def execute_action(self, action: WorkflowAction, record: Record,
                             context: AutomationContext) -> ActionResult:
        handler = self._handlers.get(action.type)
        if handler is None:
            result = _result(action, ActionStatus.FAILED, error=f"Unknown action type: {action.type}")
        else:
            try:
                result = await handler(action, record, context)
            except AutomationError as e:
                result = _result(action, ActionStatus.FAILED, error=e.message)
            except Exception as e:
                self.logger.error("Action handler raised", action_id=action.id,
                                  action_type=action.type.value, error=str(e), exc_info=True)
                result = _result(action, ActionStatus.FAILED, error=str(e))

        if self.metrics:
            self.metrics.record_action(action.type.value, result.status.value)
        log = self.logger.warning if result.status == ActionStatus.FAILED else self.logger.debug
        log(
            "Action executed",
            action_id=action.id,
            action_type=action.type.value,
            status=result.status.value,
            dry_run=context.dry_run,
            record_id=record.id,
            error=result.error
        )
        return result

    async def _write_record(self, record: Record, context: AutomationContext, updates: Dict[str, Any]):
        """Persist updates and mirror them on the in-memory record."""
        stored = await self.store.update_record(context.org_id, record.id, updates)
        if stored is None:
            raise NotFoundError("Record", record.id)
        record.apply_updates(updates)

    # Record mutations

    async def _update_fields(self, action, record, context) -> ActionResult:
        fields = action.config.get("fields") or {}
        if not isinstance(fields, dict) or not fields:
            raise ValidationError("update_fields needs a non-empty fields map")
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_update": fields})
        await self._write_record(record, context, fields)
        return _result(action, ActionStatus.SUCCESS, {"updated": fields})

    async def _move_stage(self, action, record, context) -> ActionResult:
        stage = action.config.get("stage")
        if not stage:
            raise ValidationError("move_stage needs a stage")
        from_stage = record.stage
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_move_to": stage, "from": from_stage})
        await self._write_record(record, context, {"stage": stage})
        return _result(action, ActionStatus.SUCCESS, {"moved_to": stage, "from": from_stage})

    async def _assign_owner(self, action, record, context) -> ActionResult:
        config = action.config
        user_id = config.get("user_id") or config.get("userId")
        rule_id = config.get("rule_id") or config.get("ruleId")

        if not user_id and rule_id:
            rule = await self.store.get_assignment_rule(context.org_id, rule_id)
            if rule is None:
                raise NotFoundError("Assignment rule", rule_id)
            user_id = await self.assignment.select_owner(rule, record, dry_run=context.dry_run)

        if not user_id:
            return _result(action, ActionStatus.SKIPPED, {"reason": "No user to assign"})
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_assign": user_id})
        await self._write_record(record, context, {"owner_id": user_id})
        return _result(action, ActionStatus.SUCCESS, {"assigned": user_id})

    @staticmethod
    def _tags_from(config: Dict[str, Any]) -> List[str]:
        tags = config.get("tags") or ([config["tag"]] if config.get("tag") else [])
        if not tags:
            raise ValidationError("Tag action needs tag or tags")
        return [str(t) for t in tags]

    async def _add_tag(self, action, record, context) -> ActionResult:
        added = [t for t in self._tags_from(action.config) if t not in record.tags]
        if not added:
            return _result(action, ActionStatus.SKIPPED, {"reason": "Tags already present"})
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_add": added})
        await self._write_record(record, context, {"tags": record.tags + added})
        return _result(action, ActionStatus.SUCCESS, {"added": added})

    async def _remove_tag(self, action, record, context) -> ActionResult:
        targets = self._tags_from(action.config)
        removed = [t for t in record.tags if t in targets]
        if not removed:
            return _result(action, ActionStatus.SKIPPED, {"reason": "Tags not present"})
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_remove": removed})
        await self._write_record(record, context, {"tags": [t for t in record.tags if t not in targets]})
        return _result(action, ActionStatus.SUCCESS, {"removed": removed})

    # Related entities

    async def _create_task(self, action, record, context) -> ActionResult:
        config = action.config
        if not config.get("title"):
            raise ValidationError("create_task needs a title")
        due_in_days = config.get("due_in_days", config.get("dueInDays"))
        task = {
            "title": render_template(config["title"], record),
            "description": render_template(config.get("description"), record),
            "due_at": (utcnow() + timedelta(days=float(due_in_days))).isoformat() if due_in_days else None,
            "priority": config.get("priority", "normal"),
            "assigned_to": record.resolve_user(config.get("assigned_to") or config.get("assignedTo")),
            "created_by": context.user_id,
        }
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_create": task})
        entity = await self.store.create_entity(context.org_id, "task", task, record_id=record.id)
        return _result(action, ActionStatus.SUCCESS, {"task_id": entity["id"]})

    async def _create_activity(self, action, record, context) -> ActionResult:
        config = action.config
        activity = {
            "activity_type": config.get("activity_type", "other"),
            "subject": render_template(config.get("subject") or config.get("title"), record),
            "body": render_template(config.get("body"), record),
            "created_by": context.user_id,
            "workflow_trigger": context.trigger,
        }
        if not activity["subject"]:
            raise ValidationError("create_activity needs a subject")
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_create": activity})
        entity = await self.store.create_entity(context.org_id, "activity", activity, record_id=record.id)
        return _result(action, ActionStatus.SUCCESS, {"activity_id": entity["id"]})

    async def _add_note(self, action, record, context) -> ActionResult:
        body = render_template(action.config.get("body"), record)
        if not body:
            raise ValidationError("add_note needs a body")
        note = {
            "body": body,
            "is_pinned": bool(action.config.get("is_pinned", action.config.get("isPinned", False))),
            "created_by": context.user_id,
        }
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_create": note})
        entity = await self.store.create_entity(context.org_id, "note", note, record_id=record.id)
        return _result(action, ActionStatus.SUCCESS, {"note_id": entity["id"]})

    async def _notify(self, action, record, context) -> ActionResult:
        config = action.config
        user_ids: List[str] = []
        for target in config.get("recipients") or ["owner"]:
            user_id = record.resolve_user(target)
            if user_id and user_id not in user_ids:
                user_ids.append(user_id)

        if not user_ids:
            return _result(action, ActionStatus.SKIPPED, {"reason": "No recipients"})

        title = render_template(config.get("title") or "Workflow notification", record)
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_notify": user_ids, "title": title})

        for user_id in user_ids:
            await self.store.create_entity(context.org_id, "notification", {
                "user_id": user_id,
                "title": title,
                "body": render_template(config.get("body"), record),
                "href": config.get("href") or f"/crm/r/{record.id}",
                "workflow_trigger": context.trigger,
            }, record_id=record.id)
        return _result(action, ActionStatus.SUCCESS, {"notified": user_ids})

    # Outbound messages

    async def _enqueue_message(self, action, record, context, channel: str, recipient: Optional[str],
                               message: Dict[str, Any]) -> ActionResult:
        if not recipient:
            return _result(action, ActionStatus.SKIPPED, {"reason": "No recipient"})
        payload = {"channel": channel, "to": recipient, "status": "queued", **message,
                   "workflow_id": context.workflow_id, "run_id": context.run_id}
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_send": payload})
        entity = await self.store.create_entity(context.org_id, "outbox", payload, record_id=record.id)
        return _result(action, ActionStatus.SUCCESS, {"message_id": entity["id"], "to": recipient})

    async def _send_email(self, action, record, context) -> ActionResult:
        config = action.config
        recipient = render_template(config["to"], record) if config.get("to") else record.email
        return await self._enqueue_message(action, record, context, "email", recipient, {
            "subject": render_template(config.get("subject"), record),
            "body": render_template(config.get("body"), record),
            "template_id": config.get("template_id"),
        })

    async def _send_sms(self, action, record, context) -> ActionResult:
        config = action.config
        recipient = render_template(config["to"], record) if config.get("to") else record.phone
        return await self._enqueue_message(action, record, context, "sms", recipient, {
            "body": render_template(config.get("body"), record),
        })

    async def _post_webhook(self, action, record, context) -> ActionResult:
        config = action.config
        url = config.get("url")
        if not url:
            raise ValidationError("post_webhook needs a url")
        method = str(config.get("method", "POST")).upper()

        if config.get("body_template") is not None:
            body = render_value(config["body_template"], record)
        else:
            body = {"record": record.to_dict(), "workflow_trigger": context.trigger}

        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_call": {"url": url, "method": method}})

        response = await self.webhook.send(
            url,
            body,
            method=method,
            headers=config.get("headers"),
            retry=bool(config.get("retry_on_failure", False)),
        )
        return _result(action, ActionStatus.SUCCESS, {"url": url, "status_code": response["status_code"]})

    # Flow control

    @staticmethod
    def delay_seconds(config: Dict[str, Any], record: Record) -> float:
        """Delay for a delay_wait action, in seconds."""
        if config.get("delay_field"):
            base = parse_datetime(record.get_field(config["delay_field"]))
            if base is None:
                raise ValidationError("Delay field is empty", {"field": config["delay_field"]})
            target = base + timedelta(days=float(config.get("offset_days", 0)),
                                      hours=float(config.get("offset_hours", 0)))
            return max(0.0, (target - utcnow()).total_seconds())

        seconds = (
            float(config.get("delay_seconds", 0))
            + float(config.get("delay_minutes", 0)) * 60
            + float(config.get("delay_hours", 0)) * 3600
            + float(config.get("delay_days", 0)) * 86400
        )
        if seconds <= 0:
            raise ValidationError("delay_wait needs a positive delay")
        return seconds

    async def _delay_wait(self, action, record, context) -> ActionResult:
        delay = self.delay_seconds(action.config, record)
        resume_at = utcnow() + timedelta(seconds=delay)
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {
                "would_delay_seconds": delay,
                "resume_at": resume_at.isoformat(),
            })
        if not context.run_id or not context.workflow_id:
            raise UnprocessableError("delay_wait can only run inside a workflow")

        job = await self.queue.schedule_workflow_step(
            org_id=context.org_id,
            run_id=context.run_id,
            workflow_id=context.workflow_id,
            step_id=action.id,
            record_id=record.id,
            resume_from=action.order,
            delay_seconds=delay,
        )
        return _result(action, ActionStatus.SUCCESS, {
            DEFERRED: True,
            "job_id": job.id,
            "resume_at": job.run_at.isoformat(),
        })

    async def _start_cadence(self, action, record, context) -> ActionResult:
        cadence_id = action.config.get("cadence_id") or action.config.get("cadenceId")
        if not cadence_id:
            raise ValidationError("start_cadence needs a cadence_id")
        try:
            enrollment = await self.cadences.enroll(
                context.org_id, cadence_id, record.id,
                enrolled_by=context.user_id, dry_run=context.dry_run
            )
        except ConflictError:
            return _result(action, ActionStatus.SKIPPED, {"reason": "Already enrolled in cadence"})
        except (NotFoundError, UnprocessableError) as e:
            return _result(action, ActionStatus.SKIPPED, {"reason": e.message})

        key = "would_enroll" if context.dry_run else "enrolled"
        return _result(action, ActionStatus.SUCCESS, {
            key: cadence_id,
            "next_step_at": enrollment.next_step_at.isoformat(),
        })

    async def _stop_cadence(self, action, record, context) -> ActionResult:
        cadence_id = action.config.get("cadence_id") or action.config.get("cadenceId")
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_stop": cadence_id or "all"})
        stopped = await self.cadences.unenroll(context.org_id, record.id, cadence_id)
        return _result(action, ActionStatus.SUCCESS, {"stopped": stopped})

    async def _create_enrollment_draft(self, action, record, context) -> ActionResult:
        config = action.config
        if config.get("explicit") is not True:
            return _result(action, ActionStatus.SKIPPED, {"reason": "Action config missing explicit:true flag"})

        creator = context.workflow_created_by
        role = await self.store.get_profile_role(context.org_id, creator) if creator else None
        if role != CrmRole.ADMIN.value:
            return _result(action, ActionStatus.SKIPPED, {"reason": "Workflow creator is not crm_admin"})

        name_parts = (record.title or "").split(" ")
        draft = {
            "status": "draft",
            "record_id": record.id,
            "plan_id": config.get("plan_id"),
            "effective_date": config.get("effective_date"),
            "member": {
                "first_name": record.data.get("first_name") or name_parts[0],
                "last_name": record.data.get("last_name") or " ".join(name_parts[1:]),
                "email": record.email or record.data.get("email"),
                "phone": record.phone or record.data.get("phone"),
                **(config.get("additional_data") or {}),
            },
            "created_by": context.user_id,
        }
        if context.dry_run:
            return _result(action, ActionStatus.SUCCESS, {"would_create": draft})

        entity = await self.store.create_entity(context.org_id, "enrollment_draft", draft, record_id=record.id)
        await self._write_record(record, context, {
            "enrollment_id": entity["id"],
            "enrollment_status": "draft",
        })
        return _result(action, ActionStatus.SUCCESS, {"enrollment_id": entity["id"]})
