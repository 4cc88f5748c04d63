from datetime import datetime
import json
import logging
import re

from pydantic import ValidationError

from llm import ChatMessage, ChatRequest, LLMClient
from models.api import (
    ActionType,
    AutomationRule,
    AutomationWorkflow,
    ConditionOperator,
    ConditionType,
    RuleAction,
    RuleCondition,
    RuleSchedule,
    ScheduleType,
)

logger = logging.getLogger(__name__)

HUB_ID = "E1750C44657C"
METER_ID = "F66854E650BE"
AIRCON_ID = "02-202212241621-96856893"

EVERY_DAY = [0, 1, 2, 3, 4, 5, 6]

# First match wins; None means the hour comes from the captured group
TIME_PATTERNS: list[tuple[re.Pattern, int | None]] = [
    (re.compile(r"朝.*?(\d{1,2})時"), None),
    (re.compile(r"朝"), 7),
    (re.compile(r"昼"), 12),
    (re.compile(r"夕方"), 18),
    (re.compile(r"夜"), 20),
    (re.compile(r"(\d{1,2})時"), None),
]

# First match wins; a None value is read from the captured group
TEMPERATURE_PATTERNS: list[tuple[re.Pattern, ConditionOperator, float | None]] = [
    (re.compile(r"暑かっ?たら"), ConditionOperator.GREATER_THAN, 26),
    (re.compile(r"寒かっ?たら"), ConditionOperator.LESS_THAN, 20),
    (re.compile(r"温度.*?(\d+)度.*?以上"), ConditionOperator.GREATER_THAN, None),
    (re.compile(r"温度.*?(\d+)度.*?以下"), ConditionOperator.LESS_THAN, None),
]

# Every match appends; light actions are left unbound for the caller to assign
ACTION_PATTERNS: list[tuple[re.Pattern, str | None, str]] = [
    (re.compile(r"エアコン.*?つけ"), AIRCON_ID, "turnOn"),
    (re.compile(r"エアコン.*?消"), AIRCON_ID, "turnOff"),
    (re.compile(r"照明.*?つけ"), None, "turnOn"),
    (re.compile(r"照明.*?消"), None, "turnOff"),
    (re.compile(r"照明.*?暗く"), None, "turnOff"),
]

NO_CONDITIONS_HINT = "条件が明確でありません。時刻や温度などの条件を追加することをお勧めします。"
NO_ACTIONS_HINT = "実行するアクションが見つかりません。具体的な操作を指定してください。"
AIRCON_TEMPERATURE_HINT = "エアコンの設定温度も指定すると、より効果的です。"

LLM_CONFIDENCE = 0.9

PARSING_PROMPT = """以下の自然言語を自動化ルールに変換してください。

入力文: "{text}"

以下のJSON形式で出力してください：

{{
  "name": "ルール名",
  "description": "ルールの説明",
  "conditions": [
    {{
      "type": "time|temperature|humidity|device_state",
      "operator": "equals|greater_than|less_than|between",
      "value": "値",
      "deviceId": "デバイスID（必要な場合）",
      "tolerance": "許容誤差（必要な場合）"
    }}
  ],
  "actions": [
    {{
      "type": "device_control|scene_execution|notification",
      "deviceId": "デバイスID",
      "command": "コマンド",
      "parameters": {{}}
    }}
  ],
  "schedule": {{
    "type": "daily|weekly|interval|once",
    "time": "HH:MM",
    "days": [0,1,2,3,4,5,6],
    "interval": 60
  }}
}}

利用可能なデバイス:
- ハブミニ (ID: {hub})
- 温湿度計 (ID: {meter}) - 温度・湿度測定
- エアコン (ID: {aircon}) - エアコンリモート

重要:
- 時刻条件は "time" タイプを使用
- 温度条件は "temperature" タイプ、デバイスIDに温湿度計を指定
- エアコン操作は "device_control" タイプ、command は "turnOn", "turnOff", "setTemperature" など
- 曖昧な時刻表現（「朝」「夕方」など）は具体的な時刻に変換"""

_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


def rule_name(text: str, now: datetime) -> str:
    if "エアコン" in text and "暑" in text:
        return "暑い時のエアコン自動ON"
    if "エアコン" in text and "寒" in text:
        return "寒い時のエアコン自動ON"
    if "照明" in text and "暗" in text:
        return "暗い時の照明自動ON"
    return f"自動化ルール（{now:%Y/%m/%d}）"


def _extract_schedule(text: str) -> RuleSchedule | None:
    for pattern, hour in TIME_PATTERNS:
        match = pattern.search(text)
        if match:
            if hour is None:
                hour = int(match.group(1))
            return RuleSchedule(
                type=ScheduleType.DAILY, time=f"{hour:02d}:00", days=EVERY_DAY
            )
    return None


def _extract_conditions(text: str) -> list[RuleCondition]:
    for pattern, operator, value in TEMPERATURE_PATTERNS:
        match = pattern.search(text)
        if match:
            if value is None:
                value = int(match.group(1))
            return [
                RuleCondition(
                    type=ConditionType.TEMPERATURE,
                    operator=operator,
                    value=value,
                    device_id=METER_ID,
                    tolerance=1,
                )
            ]
    return []


def _extract_actions(text: str) -> list[RuleAction]:
    return [
        RuleAction(
            type=ActionType.DEVICE_CONTROL, device_id=device_id, command=command
        )
        for pattern, device_id, command in ACTION_PATTERNS
        if pattern.search(text)
    ]


def confidence_for(
    conditions: list[RuleCondition],
    actions: list[RuleAction],
    schedule: RuleSchedule | None,
) -> float:
    confidence = 0.3
    if conditions:
        confidence += 0.3
    if actions:
        confidence += 0.3
    if schedule is not None:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def suggestions_for(
    text: str, conditions: list[RuleCondition], actions: list[RuleAction]
) -> list[str]:
    suggestions = []
    if not conditions:
        suggestions.append(NO_CONDITIONS_HINT)
    if not actions:
        suggestions.append(NO_ACTIONS_HINT)
    if "エアコン" in text and "温度" not in text:
        suggestions.append(AIRCON_TEMPERATURE_HINT)
    return suggestions


def parse_with_fallback(
    natural_language: str, user_id: str, now: datetime | None = None
) -> AutomationWorkflow:
    """Deterministic phrase matching used whenever no LLM answer is usable.

    Time phrases become a daily schedule rather than a condition, so
    "夜8時になったら照明を暗くして" yields a 20:00 schedule and no conditions.
    """
    now = now or datetime.now()
    schedule = _extract_schedule(natural_language)
    conditions = _extract_conditions(natural_language)
    actions = _extract_actions(natural_language)

    rule = AutomationRule(
        id="",
        name=rule_name(natural_language, now),
        description=f"{natural_language}（自動生成）",
        is_enabled=True,
        conditions=conditions,
        actions=actions,
        schedule=schedule,
        created_at=now,
        updated_at=now,
        user_id=user_id,
        execution_count=0,
    )
    return AutomationWorkflow(
        natural_language=natural_language,
        parsed_rule=rule,
        confidence=confidence_for(conditions, actions, schedule),
        suggested_modifications=suggestions_for(natural_language, conditions, actions),
    )


def _strip_fence(content: str) -> str:
    match = _FENCE.match(content)
    return match.group(1) if match else content


class WorkflowParser:
    """Turns free text into an unsaved AutomationRule.

    Uses the LLM when one is configured and falls back to phrase matching on any
    failure, so parse_workflow never raises for a non-empty input.
    """

    def __init__(self, llm: LLMClient | None = None, clock=datetime.now):
        self._llm = llm
        self._clock = clock

    async def parse_workflow(
        self, natural_language: str, user_id: str
    ) -> AutomationWorkflow:
        if not natural_language or not natural_language.strip():
            raise ValueError("naturalLanguage must not be empty")

        now = self._clock()
        if self._llm is None:
            return parse_with_fallback(natural_language, user_id, now)

        try:
            response = await self._llm.chat(
                ChatRequest(
                    messages=[
                        ChatMessage(
                            role="user",
                            content=PARSING_PROMPT.format(
                                text=natural_language,
                                hub=HUB_ID,
                                meter=METER_ID,
                                aircon=AIRCON_ID,
                            ),
                        )
                    ],
                    temperature=0.1,
                    max_tokens=1000,
                )
            )
            if not response.content:
                raise ValueError("LLM returned an empty response")
            return self._build_from_llm(response.content, natural_language, user_id, now)
        except Exception as e:
            logger.warning("LLM parsing failed, using pattern fallback: %s", e)
            return parse_with_fallback(natural_language, user_id, now)

    def _build_from_llm(
        self, content: str, natural_language: str, user_id: str, now: datetime
    ) -> AutomationWorkflow:
        parsed = json.loads(_strip_fence(content))
        if not isinstance(parsed, dict):
            raise ValueError("LLM response is not a JSON object")

        try:
            rule = AutomationRule(
                id="",
                name=parsed.get("name") or rule_name(natural_language, now),
                description=parsed.get("description") or natural_language,
                is_enabled=True,
                conditions=parsed.get("conditions") or [],
                actions=parsed.get("actions") or [],
                schedule=parsed.get("schedule"),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                execution_count=0,
            )
        except ValidationError as e:
            raise ValueError(f"LLM rule failed validation: {e}") from e

        return AutomationWorkflow(
            natural_language=natural_language,
            parsed_rule=rule,
            confidence=LLM_CONFIDENCE,
            suggested_modifications=parsed.get("suggestedModifications") or [],
        )
