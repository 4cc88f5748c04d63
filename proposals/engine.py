from collections.abc import Callable
from datetime import datetime
import logging
from typing import Any

from pydantic import BaseModel

from models.api import (
    AutomationAction,
    AutomationContext,
    AutomationEvent,
    AutomationProposal,
    AutomationSuggestion,
    ProposalValidation,
    TimeRange,
)
from switchbot import SwitchBotClient, status_body
from util import hhmm, minute_of_day, parse_hhmm

logger = logging.getLogger(__name__)


class HeuristicConditions(BaseModel):
    """Keys left as None match anything."""

    event_type: str | None = None
    device_type: str | None = None
    state: Any = None
    time_range: TimeRange | None = None
    sensor_threshold: dict[str, float] | None = None


class HeuristicRule(BaseModel):
    name: str
    conditions: HeuristicConditions
    suggestion: AutomationSuggestion


HEURISTIC_RULES = [
    HeuristicRule(
        name="帰宅照明",
        conditions=HeuristicConditions(
            event_type="deviceStateChange",
            device_type="Lock",
            state="unlocked",
            time_range=TimeRange(start="17:00", end="21:00"),
        ),
        suggestion=AutomationSuggestion(
            type="lighting",
            description="帰宅時の照明点灯",
            confidence=0.9,
            actions=[AutomationAction(device_id="light_entrance", command="turnOn")],
        ),
    ),
    HeuristicRule(
        name="高温エアコン",
        conditions=HeuristicConditions(
            event_type="sensorData",
            device_type="Meter",
            sensor_threshold={"temperature": 28},
        ),
        suggestion=AutomationSuggestion(
            type="climate",
            description="室温調整のためのエアコン運転",
            confidence=0.8,
            actions=[
                AutomationAction(
                    device_id="aircon_living",
                    command="turnOn",
                    parameters={"temperature": 25},
                )
            ],
        ),
    ),
]


def is_time_in_range(time: str, time_range: TimeRange) -> bool:
    """Inclusive range check; a start later than the end wraps past midnight."""
    current = minute_of_day(time)
    start = minute_of_day(time_range.start)
    end = minute_of_day(time_range.end)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def sensor_reading(sensor_data: Any, key: str) -> float | None:
    """Numeric reading for `key`, or None when it is absent or not a number."""
    if not isinstance(sensor_data, dict):
        return None
    try:
        return float(sensor_data[key])
    except (KeyError, TypeError, ValueError):
        return None


def exceeds_thresholds(sensor_data: Any, thresholds: dict[str, float]) -> bool:
    if not isinstance(sensor_data, dict):
        return False
    for key, limit in thresholds.items():
        reading = sensor_reading(sensor_data, key)
        if reading is None or reading <= limit:
            return False
    return True


def matches_rule(
    event: AutomationEvent, context: AutomationContext, rule: HeuristicRule
) -> bool:
    conditions = rule.conditions
    if conditions.event_type and event.event_type != conditions.event_type:
        return False
    if conditions.device_type and event.device_type != conditions.device_type:
        return False
    if conditions.state is not None and event.state != conditions.state:
        return False
    if conditions.time_range and not is_time_in_range(
        context.time, conditions.time_range
    ):
        return False
    if conditions.sensor_threshold and not exceeds_thresholds(
        event.state, conditions.sensor_threshold
    ):
        return False
    return True


def find_device(available_devices: list[str], keyword: str) -> str:
    for device in available_devices:
        if keyword in device:
            return device
    return available_devices[0] if available_devices else ""


class ProposalEngine:
    """Matches events and context snapshots against fixed heuristics."""

    def __init__(
        self,
        switchbot: SwitchBotClient,
        rules: list[HeuristicRule] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._switchbot = switchbot
        self._rules = HEURISTIC_RULES if rules is None else rules
        self._clock = clock

    def build_context(self, event: AutomationEvent) -> AutomationContext:
        event_context = event.context
        return AutomationContext(
            time=(event_context and event_context.time) or hhmm(self._clock()),
            location=(event_context and event_context.location) or "unknown",
            recent_events=[event.event_type],
            available_devices=[],
            sensor_data=event.state,
        )

    async def analyze_event(self, event: AutomationEvent) -> AutomationProposal:
        context = self.build_context(event)
        suggestions = [
            rule.suggestion.model_copy(
                update={"reasoning": f"ルール「{rule.name}」に基づく提案"}
            )
            for rule in self._rules
            if matches_rule(event, context, rule)
        ]
        confidence = (
            sum(s.confidence for s in suggestions) / len(suggestions)
            if suggestions
            else 0
        )
        return AutomationProposal(
            suggestions=suggestions, confidence=confidence, context=context
        )

    async def generate_proposal(
        self, context: AutomationContext
    ) -> AutomationSuggestion:
        hour, _ = parse_hhmm(context.time)
        evening = 17 <= hour <= 21

        if (
            evening
            and context.location == "entrance"
            and "door_unlock" in context.recent_events
        ):
            return AutomationSuggestion(
                type="lighting",
                description="帰宅時の照明点灯を提案します",
                confidence=0.85,
                actions=[
                    AutomationAction(
                        device_id=find_device(context.available_devices, "light"),
                        command="turnOn",
                    )
                ],
                reasoning="夕方の帰宅時に玄関の照明を点灯することで、安全で快適な入室をサポートします",
            )

        temperature = sensor_reading(context.sensor_data, "temperature")
        if temperature and temperature > 28 and context.location == "living_room":
            return AutomationSuggestion(
                type="climate",
                description="室温が高いためエアコンの運転を提案します",
                confidence=0.75,
                actions=[
                    AutomationAction(
                        device_id=find_device(context.available_devices, "aircon"),
                        command="turnOn",
                        parameters={"temperature": 25},
                    )
                ],
                reasoning="室温が28度を超えているため、快適な温度に調整します",
            )

        return AutomationSuggestion(
            type="comfort",
            description="現在の状況に基づく自動化提案",
            confidence=0.5,
            actions=[],
            reasoning="現在の状況では特別な自動化は必要ありません",
        )

    async def validate_proposal(
        self, suggestion: AutomationSuggestion
    ) -> ProposalValidation:
        """Checks every action against live device status; never raises."""
        issues = []
        for action in suggestion.actions:
            try:
                status = status_body(
                    await self._switchbot.get_device_status(action.device_id)
                )
            except Exception as e:
                logger.warning("Status check for %s failed: %s", action.device_id, e)
                issues.append(f"デバイス {action.device_id} の状態確認に失敗しました")
                continue

            if not status.get("online"):
                issues.append(f"デバイス {action.device_id} がオフラインです")
            if action.command == "turnOn" and status.get("power") == "on":
                issues.append(f"デバイス {action.device_id} は既にオンになっています")

        if issues:
            return ProposalValidation(
                is_valid=False, reason=f"問題があります: {', '.join(issues)}", issues=issues
            )
        return ProposalValidation(is_valid=True, reason="実行可能")
