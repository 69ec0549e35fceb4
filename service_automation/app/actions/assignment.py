"""
Owner selection for assign_owner actions.
"""

from typing import Optional

from shared.logging import get_logger
from ..rules.conditions import evaluate_conditions
from ..rules.models import AssignmentRule, AssignmentStrategy, Record
from ..persistence.base import AutomationStore


class AssignmentService:
    """Picks an owner for a record according to an assignment rule."""

    def __init__(self, store: AutomationStore):
        self.store = store
        self.logger = get_logger("automation.assignment")

    async def select_owner(self, rule: AssignmentRule, record: Record, dry_run: bool = False) -> Optional[str]:
        """Return the chosen user id, or None when the rule does not apply.

        Round-robin state advances only in live mode.
        """
        if not rule.enabled:
            return None
        if not evaluate_conditions(rule.conditions, record):
            self.logger.debug("Assignment rule conditions not met", rule_id=rule.id, record_id=record.id)
            return None

        config = rule.config
        if rule.strategy == AssignmentStrategy.FIXED:
            return config.get("user_id") or config.get("userId")

        if rule.strategy == AssignmentStrategy.ROUND_ROBIN:
            return await self._round_robin(rule, dry_run)

        if rule.strategy == AssignmentStrategy.TERRITORY:
            return self._territory(rule, record)

        if rule.strategy == AssignmentStrategy.LEAST_LOADED:
            return await self._least_loaded(rule)

        return None

    async def _round_robin(self, rule: AssignmentRule, dry_run: bool) -> Optional[str]:
        user_ids = rule.config.get("user_ids") or rule.config.get("userIds") or []
        if not user_ids:
            return None

        index = int(rule.config.get("current_index", rule.config.get("currentIndex", 0))) % len(user_ids)
        chosen = user_ids[index]

        if not dry_run:
            rule.config["current_index"] = (index + 1) % len(user_ids)
            await self.store.save_assignment_rule(rule)
            self.logger.info("Round robin advanced", rule_id=rule.id, user_id=chosen,
                             next_index=rule.config["current_index"])
        return chosen

    def _territory(self, rule: AssignmentRule, record: Record) -> Optional[str]:
        field_name = rule.config.get("field")
        fallback = rule.config.get("fallback_user_id") or rule.config.get("fallbackUserId")
        if not field_name:
            return fallback

        value = record.get_field(field_name)
        if value is not None:
            needle = str(value).strip().lower()
            for territory in rule.config.get("territories") or []:
                values = [str(v).strip().lower() for v in territory.get("values") or []]
                if needle in values:
                    return territory.get("user_id") or territory.get("userId")
        return fallback

    async def _least_loaded(self, rule: AssignmentRule) -> Optional[str]:
        user_ids = rule.config.get("user_ids") or rule.config.get("userIds") or []
        if not user_ids:
            return None

        counts = await self.store.count_open_records(rule.org_id, user_ids)
        # Ties go to the earliest user in the configured list
        return min(user_ids, key=lambda user_id: (counts.get(user_id, 0), user_ids.index(user_id)))
