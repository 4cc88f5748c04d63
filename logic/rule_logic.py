from collections.abc import Callable
from datetime import datetime
import uuid

from audit.decorators import audit_scope, log_audit_event
from models.api import AutomationRule, AutomationWorkflow, RuleExecution
from models.audit import EventSubtype, EventType
from rules.scheduler import AutomationScheduler, RuleNotFoundError

DEFAULT_HISTORY_LIMIT = 20


def new_rule_id(now: datetime) -> str:
    return f"rule_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"


class RuleLogic:
    """Rule lifecycle use-cases shared by the HTTP routes and the MCP tools."""

    def __init__(
        self,
        scheduler: AutomationScheduler,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._scheduler = scheduler
        self._clock = clock

    def _require(self, rule_id: str) -> AutomationRule:
        rule = self._scheduler.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    async def save_workflow(self, workflow: AutomationWorkflow) -> AutomationRule:
        """Assigns a fresh id to the parsed rule and registers it."""
        now = self._clock()
        rule = workflow.parsed_rule.model_copy(
            update={
                "id": new_rule_id(now),
                "created_at": now,
                "updated_at": now,
                "execution_count": 0,
                "last_executed": None,
            }
        )
        self._scheduler.add_rule(rule)
        await log_audit_event(
            EventType.RULE_LIFECYCLE,
            EventSubtype.RULE_CREATED,
            rule_id=rule.id,
            name=rule.name,
            success=True,
        )
        return rule

    def get_rules(self) -> list[AutomationRule]:
        return self._scheduler.get_rules()

    def get_rule(self, rule_id: str) -> AutomationRule:
        return self._require(rule_id)

    @audit_scope(
        event_type=EventType.RULE_LIFECYCLE,
        end_event=EventSubtype.RULE_UPDATED,
        rule_id="rule_id",
    )
    async def update_rule(self, rule_id: str, rule: AutomationRule) -> AutomationRule:
        """Replaces a rule's definition; identity and counters are kept."""
        existing = self._require(rule_id)
        updated = rule.model_copy(
            update={
                "id": existing.id,
                "created_at": existing.created_at,
                "execution_count": existing.execution_count,
                "last_executed": existing.last_executed,
                "updated_at": self._clock(),
            }
        )
        self._scheduler.add_rule(updated)
        return updated

    @audit_scope(
        event_type=EventType.RULE_LIFECYCLE,
        end_event=EventSubtype.RULE_DELETED,
        rule_id="rule_id",
    )
    async def delete_rule(self, rule_id: str) -> None:
        self._require(rule_id)
        self._scheduler.remove_rule(rule_id)

    @audit_scope(
        event_type=EventType.RULE_LIFECYCLE,
        end_event=EventSubtype.RULE_TOGGLED,
        rule_id="rule_id",
        enabled="enabled",
    )
    async def toggle_rule(self, rule_id: str, enabled: bool) -> AutomationRule:
        rule = self._scheduler.toggle_rule(rule_id, enabled)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    async def execute_rule(self, rule_id: str) -> RuleExecution:
        return await self._scheduler.manual_execute_rule(rule_id)

    def get_history(
        self, rule_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> tuple[list[RuleExecution], int]:
        """Newest `limit` executions plus the total number retained."""
        self._require(rule_id)
        history = self._scheduler.get_execution_history(rule_id)
        return history[: max(limit, 0)], len(history)
