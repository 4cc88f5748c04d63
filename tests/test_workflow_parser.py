"""Tests for natural-language workflow parsing."""

from datetime import datetime
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from llm import ChatResponse, LLMClient
from models.api import ActionType, ConditionOperator, ConditionType, ScheduleType
from rules.parser import (
    AIRCON_ID,
    AIRCON_TEMPERATURE_HINT,
    METER_ID,
    NO_ACTIONS_HINT,
    NO_CONDITIONS_HINT,
    WorkflowParser,
    parse_with_fallback,
)
from tests.test_helpers import FixedClock

NOW = datetime(2026, 10, 17, 9, 0)

HOT_MORNING = "朝6時くらいに部屋が暑かったらエアコンをつけておいてください"
DIM_AT_NIGHT = "夜8時になったら照明を暗くしてください"


def mock_llm(content: str | None = None, error: Exception | None = None) -> LLMClient:
    llm = MagicMock(spec=LLMClient)
    if error is not None:
        llm.chat = AsyncMock(side_effect=error)
    else:
        llm.chat = AsyncMock(return_value=ChatResponse(content=content or ""))
    return llm


class TestFallbackParsing:
    @pytest.mark.unit
    def test_hot_morning_air_conditioner(self):
        workflow = parse_with_fallback(HOT_MORNING, "user-1", NOW)
        rule = workflow.parsed_rule

        assert len(rule.conditions) == 1
        condition = rule.conditions[0]
        assert condition.type == ConditionType.TEMPERATURE
        assert condition.operator == ConditionOperator.GREATER_THAN
        assert condition.value == 26
        assert condition.device_id == METER_ID
        assert condition.tolerance == 1

        assert len(rule.actions) == 1
        assert rule.actions[0].type == ActionType.DEVICE_CONTROL
        assert rule.actions[0].command == "turnOn"
        assert rule.actions[0].device_id == AIRCON_ID

        assert rule.schedule.type == ScheduleType.DAILY
        assert rule.schedule.time == "06:00"
        assert rule.schedule.days == [0, 1, 2, 3, 4, 5, 6]

        assert workflow.confidence > 0.5
        assert workflow.confidence == 1.0
        assert rule.name == "暑い時のエアコン自動ON"
        assert rule.description == f"{HOT_MORNING}（自動生成）"
        assert rule.id == ""
        assert rule.user_id == "user-1"
        assert workflow.suggested_modifications == [AIRCON_TEMPERATURE_HINT]

    @pytest.mark.unit
    def test_night_dimming_becomes_schedule_not_condition(self):
        workflow = parse_with_fallback(DIM_AT_NIGHT, "user-1", NOW)
        rule = workflow.parsed_rule

        assert rule.schedule.time == "20:00"
        assert rule.conditions == []
        assert len(rule.actions) == 1
        assert rule.actions[0].command == "turnOff"
        assert rule.actions[0].device_id is None
        assert rule.name == "暗い時の照明自動ON"
        assert workflow.confidence == 0.7
        assert workflow.suggested_modifications == [NO_CONDITIONS_HINT]

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("朝になったら照明をつけて", "07:00"),
            ("昼に照明を消して", "12:00"),
            ("夕方に照明をつけて", "18:00"),
            ("15時に照明を消して", "15:00"),
        ],
    )
    def test_time_phrases(self, text, expected):
        rule = parse_with_fallback(text, "u", NOW).parsed_rule
        assert rule.schedule.time == expected

    @pytest.mark.unit
    def test_explicit_temperature_threshold(self):
        workflow = parse_with_fallback("温度が30度以上ならエアコンをつけて", "u", NOW)
        condition = workflow.parsed_rule.conditions[0]
        assert condition.operator == ConditionOperator.GREATER_THAN
        assert condition.value == 30
        assert workflow.parsed_rule.schedule is None
        assert workflow.confidence == 0.9
        assert AIRCON_TEMPERATURE_HINT not in workflow.suggested_modifications

    @pytest.mark.unit
    def test_cold_condition_and_name(self):
        rule = parse_with_fallback("寒かったらエアコンをつけて", "u", NOW).parsed_rule
        assert rule.conditions[0].operator == ConditionOperator.LESS_THAN
        assert rule.conditions[0].value == 20
        assert rule.name == "寒い時のエアコン自動ON"

    @pytest.mark.unit
    def test_multiple_actions_accumulate(self):
        rule = parse_with_fallback(
            "エアコンと照明をつけてください", "u", NOW
        ).parsed_rule
        assert [(a.device_id, a.command) for a in rule.actions] == [
            (AIRCON_ID, "turnOn"),
            (None, "turnOn"),
        ]

    @pytest.mark.unit
    def test_unrecognised_text(self):
        workflow = parse_with_fallback("こんにちは", "u", NOW)
        assert workflow.confidence == 0.3
        assert workflow.parsed_rule.name == "自動化ルール（2026/10/17）"
        assert workflow.suggested_modifications == [NO_CONDITIONS_HINT, NO_ACTIONS_HINT]


class TestWorkflowParser:
    @pytest.mark.unit
    async def test_without_llm_uses_fallback(self):
        parser = WorkflowParser(clock=FixedClock(NOW))
        workflow = await parser.parse_workflow(DIM_AT_NIGHT, "u")
        assert workflow.parsed_rule.schedule.time == "20:00"

    @pytest.mark.unit
    async def test_empty_text_is_rejected(self):
        parser = WorkflowParser()
        with pytest.raises(ValueError):
            await parser.parse_workflow("   ", "u")

    @pytest.mark.unit
    async def test_llm_answer_is_used_with_high_confidence(self):
        answer = {
            "name": "夜の消灯",
            "description": "夜に照明を消す",
            "conditions": [],
            "actions": [
                {"type": "device_control", "deviceId": "LIGHT1", "command": "turnOff"}
            ],
            "schedule": {"type": "daily", "time": "22:00"},
        }
        llm = mock_llm("```json\n" + json.dumps(answer, ensure_ascii=False) + "\n```")
        parser = WorkflowParser(llm, clock=FixedClock(NOW))

        workflow = await parser.parse_workflow("夜10時に照明を消して", "u")

        assert workflow.confidence == 0.9
        assert workflow.parsed_rule.name == "夜の消灯"
        assert workflow.parsed_rule.actions[0].device_id == "LIGHT1"
        assert workflow.parsed_rule.schedule.time == "22:00"

        request = llm.chat.call_args.args[0]
        assert request.temperature == 0.1
        assert request.max_tokens == 1000
        assert "夜10時に照明を消して" in request.messages[0].content
        assert METER_ID in request.messages[0].content

    @pytest.mark.unit
    async def test_llm_error_falls_back(self):
        parser = WorkflowParser(mock_llm(error=RuntimeError("boom")), clock=FixedClock(NOW))
        workflow = await parser.parse_workflow(HOT_MORNING, "u")
        assert workflow.parsed_rule.schedule.time == "06:00"
        assert workflow.confidence == 1.0

    @pytest.mark.unit
    @pytest.mark.parametrize("content", ["not json", "", "[1, 2]", '{"actions": [{}]}'])
    async def test_unusable_llm_answer_falls_back(self, content):
        parser = WorkflowParser(mock_llm(content), clock=FixedClock(NOW))
        workflow = await parser.parse_workflow(DIM_AT_NIGHT, "u")
        assert workflow.confidence == 0.7
        assert workflow.parsed_rule.schedule.time == "20:00"
