from collections.abc import Callable
from datetime import datetime
import json
import logging
from typing import Any

from models.api import (
    ConditionEvaluation,
    ConditionOperator,
    ConditionType,
    RuleCondition,
    RuleConditionResult,
    RuleSchedule,
)
from switchbot import SwitchBotClient, status_body
from util import hhmm, minute_of_day

logger = logging.getLogger(__name__)

DEFAULT_TIME_TOLERANCE = 2  # minutes
SCHEDULE_TOLERANCE = 2  # minutes
DEFAULT_SENSOR_TOLERANCE = {"temperature": 0.5, "humidity": 2.0}


class ConditionEvaluator:
    """Evaluates rule conditions against the wall clock and live device readings."""

    def __init__(
        self,
        switchbot: SwitchBotClient,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._switchbot = switchbot
        self._clock = clock

    async def evaluate_conditions(
        self, conditions: list[RuleCondition]
    ) -> ConditionEvaluation:
        """Evaluates every condition, in order, without short-circuiting.

        Never raises: a condition that cannot be evaluated is reported as unmatched.
        """
        results = []
        for index, condition in enumerate(conditions):
            results.append(await self.evaluate_condition(condition, index))
        return ConditionEvaluation(
            all_met=all(r.matched for r in results), results=results
        )

    async def evaluate_condition(
        self, condition: RuleCondition, index: int
    ) -> RuleConditionResult:
        evaluated_at = self._clock()
        try:
            match condition.type:
                case ConditionType.TIME:
                    matched, actual = self._evaluate_time(condition)
                case ConditionType.TEMPERATURE | ConditionType.HUMIDITY:
                    matched, actual = await self._evaluate_sensor(condition)
                case ConditionType.DEVICE_STATE:
                    matched, actual = await self._evaluate_device_state(condition)
                case _:
                    matched, actual = False, None
        except Exception as e:
            logger.warning(
                "Condition %d (%s) could not be evaluated: %s",
                index,
                condition.type.value,
                e,
            )
            matched, actual = False, None

        return RuleConditionResult(
            condition_index=index,
            matched=matched,
            actual_value=actual,
            expected_value=condition.value,
            evaluated_at=evaluated_at,
        )

    def _evaluate_time(self, condition: RuleCondition) -> tuple[bool, str]:
        now = self._clock()
        current = hhmm(now)
        expected = condition.value

        match condition.operator:
            case ConditionOperator.EQUALS:
                tolerance = (
                    condition.tolerance
                    if condition.tolerance is not None
                    else DEFAULT_TIME_TOLERANCE
                )
                # Plain minute-of-day distance; 23:59 and 00:01 are far apart
                diff = abs(now.hour * 60 + now.minute - minute_of_day(expected))
                matched = diff <= tolerance
            case ConditionOperator.GREATER_THAN:
                matched = current > str(expected)
            case ConditionOperator.LESS_THAN:
                matched = current < str(expected)
            case ConditionOperator.BETWEEN:
                matched = (
                    isinstance(expected, list)
                    and len(expected) == 2
                    and str(expected[0]) <= current <= str(expected[1])
                )
            case _:
                matched = False
        return matched, current

    async def _evaluate_sensor(self, condition: RuleCondition) -> tuple[bool, float]:
        field = condition.type.value
        if not condition.device_id:
            raise ValueError(f"{field} condition requires a deviceId")

        status = await self._switchbot.get_device_status(condition.device_id)
        reading = status_body(status).get(field)
        if reading is None:
            raise ValueError(f"No {field} reading for device {condition.device_id}")

        actual = float(reading)
        tolerance = (
            condition.tolerance
            if condition.tolerance is not None
            else DEFAULT_SENSOR_TOLERANCE[field]
        )

        match condition.operator:
            case ConditionOperator.EQUALS:
                matched = abs(actual - float(condition.value)) <= tolerance
            case ConditionOperator.GREATER_THAN:
                matched = actual > float(condition.value)
            case ConditionOperator.LESS_THAN:
                matched = actual < float(condition.value)
            case ConditionOperator.BETWEEN:
                low, high = condition.value
                matched = float(low) <= actual <= float(high)
            case _:
                matched = False
        return matched, reading

    async def _evaluate_device_state(
        self, condition: RuleCondition
    ) -> tuple[bool, Any]:
        if not condition.device_id:
            raise ValueError("device_state condition requires a deviceId")

        status = await self._switchbot.get_device_status(condition.device_id)
        actual = status_body(status)

        match condition.operator:
            case ConditionOperator.EQUALS:
                matched = actual == condition.value
            case ConditionOperator.CONTAINS:
                matched = isinstance(condition.value, str) and condition.value in (
                    json.dumps(actual, ensure_ascii=False, separators=(",", ":"))
                )
            case _:
                matched = False
        return matched, actual

    def is_time_in_schedule(self, schedule: RuleSchedule | None) -> bool:
        """Whether `schedule` is due right now.

        Days use 0=Sunday; a set time must be within two minutes of the clock.
        """
        if schedule is None:
            return True

        now = self._clock()
        if schedule.days:
            weekday = (now.weekday() + 1) % 7
            if weekday not in schedule.days:
                return False

        if schedule.time:
            current = now.hour * 60 + now.minute
            return abs(current - minute_of_day(schedule.time)) <= SCHEDULE_TOLERANCE

        return True
