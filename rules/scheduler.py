import asyncio
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from functools import partial
import logging
from typing import Any
import uuid

from audit.decorators import audit_scope, log_audit_event
from models.api import (
    ActionStatus,
    ActionType,
    AutomationRule,
    RuleAction,
    RuleActionResult,
    RuleConditionResult,
    RuleExecution,
    ScheduleType,
)
from models.audit import EventSubtype, EventType
from rules.conditions import ConditionEvaluator
from switchbot import SwitchBotClient
from timing.timers import TimerService

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
DEFAULT_POLL_MINUTES = 5


class RuleNotFoundError(ValueError):
    def __init__(self, rule_id: str):
        super().__init__(f"Rule not found: {rule_id}")
        self.rule_id = rule_id


def schedule_timer_id(rule_id: str) -> str:
    return f"rule_schedule({rule_id})"


def poll_interval(rule: AutomationRule) -> timedelta:
    """How often a rule is re-checked.

    Daily and weekly rules poll every minute so the two-minute schedule window is
    never skipped.
    """
    schedule = rule.schedule
    match schedule.type if schedule else None:
        case ScheduleType.INTERVAL:
            return timedelta(minutes=schedule.interval or DEFAULT_POLL_MINUTES)
        case ScheduleType.DAILY | ScheduleType.WEEKLY:
            return timedelta(minutes=1)
        case _:
            return timedelta(minutes=DEFAULT_POLL_MINUTES)


class AutomationScheduler:
    """Owns the registered rules, their recurring timers and their execution history.

    All mutation goes through this class. Timers are keyed by rule id so that removing
    or disabling a rule cancels its pending firings before returning.
    """

    def __init__(
        self,
        switchbot: SwitchBotClient,
        evaluator: ConditionEvaluator,
        timer_service: TimerService,
        history_limit: int = HISTORY_LIMIT,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._switchbot = switchbot
        self._evaluator = evaluator
        self._timer_service = timer_service
        self._history_limit = history_limit
        self._clock = clock

        self._rules: dict[str, AutomationRule] = {}
        self._history: dict[str, deque[RuleExecution]] = {}

    # Registration
    def add_rule(self, rule: AutomationRule) -> None:
        """Registers `rule`, replacing any rule with the same id and keeping its history."""
        self._timer_service.cancel_timer(schedule_timer_id(rule.id))
        self._rules[rule.id] = rule
        if rule.is_enabled:
            self._arm(rule)

    def remove_rule(self, rule_id: str) -> bool:
        self._timer_service.cancel_timer(schedule_timer_id(rule_id))
        self._history.pop(rule_id, None)
        return self._rules.pop(rule_id, None) is not None

    def toggle_rule(self, rule_id: str, enabled: bool) -> AutomationRule | None:
        rule = self._rules.get(rule_id)
        if rule is None:
            return None

        rule.is_enabled = enabled
        rule.updated_at = self._clock()
        if enabled:
            self._arm(rule)
        else:
            self._timer_service.cancel_timer(schedule_timer_id(rule_id))
        return rule

    def _arm(self, rule: AutomationRule) -> None:
        interval = poll_interval(rule)
        logger.debug("Arming rule %s every %s", rule.id, interval)
        self._timer_service.start_recurring_timer(
            schedule_timer_id(rule.id), interval, partial(self._on_tick, rule.id)
        )

    async def _on_tick(self, rule_id: str, timer_id: str) -> None:
        # Looked up on each firing so the current version of the rule is used
        rule = self._rules.get(rule_id)
        if rule is None or not rule.is_enabled:
            return
        await self.execute_rule_if_conditions_met(rule)

    def stop_all_schedules(self) -> None:
        """Cancels pending firings; executions already running are left to finish."""
        for rule_id in self._rules:
            self._timer_service.cancel_timer(schedule_timer_id(rule_id))

    # Queries
    def get_rules(self) -> list[AutomationRule]:
        return list(self._rules.values())

    def get_rule(self, rule_id: str) -> AutomationRule | None:
        return self._rules.get(rule_id)

    def get_execution_history(self, rule_id: str) -> list[RuleExecution]:
        """Newest first."""
        return list(self._history.get(rule_id, ()))

    # Execution
    async def execute_rule_if_conditions_met(
        self, rule: AutomationRule
    ) -> RuleExecution | None:
        try:
            if not self._evaluator.is_time_in_schedule(rule.schedule):
                return None

            evaluation = await self._evaluator.evaluate_conditions(rule.conditions)
            if not evaluation.all_met:
                logger.debug("Conditions not met for rule %s", rule.id)
                await log_audit_event(
                    EventType.EXECUTION_LIFECYCLE,
                    EventSubtype.CONDITIONS_NOT_MET,
                    rule_id=rule.id,
                    unmet=[r.condition_index for r in evaluation.results if not r.matched],
                )
                return None

            return await self.execute_rule(rule, evaluation.results)
        except Exception:
            logger.exception("Scheduled run of rule %s failed", rule.id)
            return None

    async def manual_execute_rule(self, rule_id: str) -> RuleExecution:
        """Runs a rule now, ignoring its schedule and conditions."""
        rule = self._rules.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return await self.execute_rule(rule)

    @audit_scope(
        event_type=EventType.EXECUTION_LIFECYCLE,
        start_event=EventSubtype.EXECUTION_STARTED,
        end_event=EventSubtype.EXECUTION_COMPLETED,
        error_event=EventSubtype.EXECUTION_FAILED,
        rule_id="rule.id",
    )
    async def execute_rule(
        self,
        rule: AutomationRule,
        condition_results: list[RuleConditionResult] | None = None,
    ) -> RuleExecution:
        """Runs every action of `rule` in order and records the outcome.

        A failing action never stops the ones after it.
        """
        executed_at = self._clock()
        logger.info("Executing rule %s [%s]", rule.name, rule.id)

        results = []
        for index, action in enumerate(rule.actions):
            results.append(await self._execute_action(action, index, executed_at))

        execution = RuleExecution(
            id=f"exec_{int(executed_at.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}",
            rule_id=rule.id,
            executed_at=executed_at,
            results=results,
            conditions=condition_results or [],
        )

        # A rule removed mid-execution leaves no history behind
        if rule.id in self._rules:
            history = self._history.setdefault(
                rule.id, deque(maxlen=self._history_limit)
            )
            history.appendleft(execution)

        rule.last_executed = executed_at
        rule.execution_count += 1
        rule.updated_at = executed_at

        logger.info(
            "Rule %s [%s] finished: %s", rule.name, rule.id, execution.status.value
        )
        return execution

    async def _execute_action(
        self, action: RuleAction, index: int, executed_at: datetime
    ) -> RuleActionResult:
        try:
            if action.delay and action.delay > 0:
                await asyncio.sleep(action.delay)

            match action.type:
                case ActionType.DEVICE_CONTROL:
                    outcome = await self._device_control(action)
                case ActionType.SCENE_EXECUTION:
                    outcome = await self._scene_execution(action)
                case ActionType.NOTIFICATION:
                    outcome = self._notify(action)
                case _:
                    kind = getattr(action.type, "value", action.type)
                    await log_audit_event(
                        EventType.EXECUTION_LIFECYCLE,
                        EventSubtype.ACTION_SKIPPED,
                        action_index=index,
                        action_type=kind,
                    )
                    return RuleActionResult(
                        action_index=index,
                        status=ActionStatus.SKIPPED,
                        executed_at=executed_at,
                        error=f"Unsupported action type: {kind}",
                    )
        except Exception as e:
            logger.warning("Action %d failed: %s", index, e)
            await log_audit_event(
                EventType.EXECUTION_LIFECYCLE,
                EventSubtype.ACTION_FAILED,
                action_index=index,
                success=False,
                error_message=str(e),
            )
            return RuleActionResult(
                action_index=index,
                status=ActionStatus.FAILURE,
                executed_at=executed_at,
                error=str(e),
            )

        await log_audit_event(
            EventType.EXECUTION_LIFECYCLE,
            EventSubtype.ACTION_COMPLETED,
            action_index=index,
            success=True,
        )
        return RuleActionResult(
            action_index=index,
            status=ActionStatus.SUCCESS,
            executed_at=executed_at,
            result=outcome,
        )

    async def _device_control(self, action: RuleAction) -> Any:
        if not action.device_id or not action.command:
            raise ValueError("device_control action requires deviceId and command")
        return await self._switchbot.send_command(
            action.device_id, action.command, action.parameters or None
        )

    async def _scene_execution(self, action: RuleAction) -> Any:
        if not action.scene_id:
            raise ValueError("scene_execution action requires sceneId")
        return await self._switchbot.execute_scene(action.scene_id)

    def _notify(self, action: RuleAction) -> dict[str, Any]:
        if not action.message:
            raise ValueError("notification action requires message")
        logger.info("Notification: %s", action.message)
        return {"message": action.message, "sentAt": self._clock().isoformat()}
