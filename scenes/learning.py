import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
import json
import logging
import uuid

from audit.decorators import audit_scope, log_audit_event
from models.api import (
    AutomationAction,
    CommandResult,
    LearnedScene,
    OperationPattern,
    OperationRecord,
    PatternType,
    SceneApplyResponse,
    SceneCandidate,
    SceneLearningContext,
    SceneSuggestion,
    SequentialPattern,
    TimeBasedPattern,
    TimeRange,
)
from models.audit import EventSubtype, EventType
from switchbot import SwitchBotClient
from util import parse_hhmm

logger = logging.getLogger(__name__)

SEQUENCE_WINDOW_MINUTES = 5
MIN_SCENE_CONFIDENCE = 0.5
MIN_SUGGESTION_RELEVANCE = 0.6

DAY_PARTS = ["00:00-06:00", "06:00-12:00", "12:00-18:00", "18:00-24:00"]

DEVICE_NAMES = {
    "light_entrance": "玄関照明",
    "light_living": "リビング照明",
    "aircon_living": "リビングエアコン",
    "lock_entrance": "玄関ロック",
}
# Sequences name the air conditioner without the room
SEQUENCE_DEVICE_NAMES = {**DEVICE_NAMES, "aircon_living": "エアコン"}
COMMAND_NAMES = {"turnOn": "点灯", "turnOff": "消灯", "lock": "施錠", "unlock": "解錠"}


def _pattern_key(device_id: str, command: str, parameters: dict) -> tuple[str, str, str]:
    return device_id, command, json.dumps(parameters, sort_keys=True, default=str)


def _local(moment: datetime) -> datetime:
    return moment.astimezone() if moment.tzinfo else moment


def day_part(hour: int) -> str:
    if 6 <= hour < 12:
        return "06:00-12:00"
    if 12 <= hour < 18:
        return "12:00-18:00"
    if 18 <= hour < 24:
        return "18:00-24:00"
    return "00:00-06:00"


def _as_action(op: OperationRecord | OperationPattern) -> AutomationAction:
    return AutomationAction(
        device_id=op.device_id, command=op.command, parameters=op.parameters
    )


def frequent_scene_name(pattern: OperationPattern) -> str:
    device = DEVICE_NAMES.get(pattern.device_id, pattern.device_id)
    return f"{device}{COMMAND_NAMES.get(pattern.command, pattern.command)}"


def sequential_scene_name(pattern: SequentialPattern) -> str:
    names = [SEQUENCE_DEVICE_NAMES.get(op.device_id, op.device_id) for op in pattern.operations]
    if "玄関照明" in names and "リビング照明" in names:
        return "帰宅シーン"
    return f"{'・'.join(names)}操作"


def time_scene_name(pattern: TimeBasedPattern) -> str:
    hour, _ = parse_hhmm(pattern.time_range.start)
    if 18 <= hour <= 21:
        return "夕方シーン"
    if hour >= 22 or hour <= 6:
        return "夜間シーン"
    if 6 <= hour <= 12:
        return "朝シーン"
    return "日中シーン"


class SceneLearningEngine:
    """Learns scenes from observed device operations.

    History and pattern tables are only mutated by record_operation; detection works
    on a snapshot of the history so it tolerates concurrent recording.
    """

    def __init__(
        self,
        switchbot: SwitchBotClient,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._switchbot = switchbot
        self._clock = clock
        self._history: list[OperationRecord] = []
        self._patterns: dict[tuple[str, str, str], OperationPattern] = {}
        self._scenes: dict[str, LearnedScene] = {}

    def record_operation(self, operation: OperationRecord) -> OperationPattern:
        self._history.append(operation)

        key = _pattern_key(operation.device_id, operation.command, operation.parameters)
        pattern = self._patterns.get(key)
        if pattern is None:
            pattern = OperationPattern(
                device_id=operation.device_id,
                command=operation.command,
                parameters=operation.parameters,
                frequency=1,
                last_used=operation.timestamp,
            )
            self._patterns[key] = pattern
        else:
            pattern.frequency += 1
            pattern.last_used = operation.timestamp
        return pattern

    def get_operation_patterns(self) -> list[OperationPattern]:
        return list(self._patterns.values())

    def get_operation_history(self) -> list[OperationRecord]:
        return list(self._history)

    def detect_patterns(
        self, window_minutes: int = SEQUENCE_WINDOW_MINUTES
    ) -> list[SequentialPattern]:
        """Pairs of adjacent operations, within `window_minutes`, seen at least twice."""
        ordered = sorted(list(self._history), key=lambda op: op.timestamp.timestamp())
        window = timedelta(minutes=window_minutes)

        found: dict[tuple[str, str, str, str], SequentialPattern] = {}
        for current, following in zip(ordered, ordered[1:]):
            if following.timestamp - current.timestamp > window:
                continue
            key = (
                current.device_id,
                current.command,
                following.device_id,
                following.command,
            )
            pattern = found.get(key)
            if pattern is None:
                found[key] = SequentialPattern(
                    operations=[current, following],
                    frequency=1,
                    time_window=window_minutes,
                    confidence=0.7,
                )
            else:
                pattern.frequency += 1
                pattern.confidence = round(min(0.95, pattern.confidence + 0.1), 2)

        return [p for p in found.values() if p.frequency >= 2]

    def detect_time_based_patterns(self) -> list[TimeBasedPattern]:
        buckets: dict[str, list[OperationRecord]] = {}
        for operation in list(self._history):
            part = day_part(_local(operation.timestamp).hour)
            buckets.setdefault(part, []).append(operation)

        patterns = []
        for part in DAY_PARTS:
            operations = buckets.get(part, [])
            if len(operations) < 3:
                continue
            start, end = part.split("-")
            patterns.append(
                TimeBasedPattern(
                    time_range=TimeRange(start=start, end=end),
                    operations=operations,
                    frequency=len(operations),
                    confidence=round(min(0.9, len(operations) * 0.1), 2),
                )
            )
        return patterns

    def generate_scene_candidates(self) -> list[SceneCandidate]:
        candidates = []

        for pattern in self.get_operation_patterns():
            if pattern.frequency < 5:
                continue
            candidates.append(
                SceneCandidate(
                    name=frequent_scene_name(pattern),
                    operations=[_as_action(pattern)],
                    confidence=round(min(0.95, pattern.frequency * 0.1), 2),
                    frequency=pattern.frequency,
                    pattern_type=PatternType.FREQUENT,
                    reasoning=f"{pattern.frequency}回実行された頻出操作",
                )
            )

        for pattern in self.detect_patterns():
            candidates.append(
                SceneCandidate(
                    name=sequential_scene_name(pattern),
                    operations=[_as_action(op) for op in pattern.operations],
                    confidence=pattern.confidence,
                    frequency=pattern.frequency,
                    pattern_type=PatternType.SEQUENTIAL,
                    reasoning=f"{pattern.frequency}回実行された順次操作パターン",
                )
            )

        for pattern in self.detect_time_based_patterns():
            time_range = pattern.time_range
            candidates.append(
                SceneCandidate(
                    name=time_scene_name(pattern),
                    operations=[_as_action(op) for op in pattern.operations],
                    confidence=pattern.confidence,
                    frequency=pattern.frequency,
                    pattern_type=PatternType.TIME_BASED,
                    reasoning=(
                        f"{time_range.start}-{time_range.end}の時間帯に"
                        f"{pattern.frequency}回実行"
                    ),
                )
            )

        return sorted(candidates, key=lambda c: c.confidence, reverse=True)

    async def create_scene_from_candidate(self, candidate: SceneCandidate) -> LearnedScene:
        if candidate.confidence < MIN_SCENE_CONFIDENCE:
            raise ValueError(
                f"Candidate confidence too low ({candidate.confidence} < "
                f"{MIN_SCENE_CONFIDENCE})"
            )

        now = self._clock()
        scene = LearnedScene(
            id=f"scene_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}",
            name=candidate.name,
            operations=candidate.operations,
            confidence=candidate.confidence,
            is_auto_generated=True,
            created_at=now,
            usage_count=0,
        )
        self._scenes[scene.id] = scene
        await log_audit_event(
            EventType.SCENE_LIFECYCLE,
            EventSubtype.LEARNED_SCENE_CREATED,
            scene_id=scene.id,
            name=scene.name,
            confidence=scene.confidence,
        )
        logger.info("Learned scene %s (%s) created", scene.name, scene.id)
        return scene

    def get_learned_scenes(self) -> list[LearnedScene]:
        return list(self._scenes.values())

    def scene_relevance(
        self, scene: LearnedScene, context: SceneLearningContext
    ) -> float:
        relevance = 0.0

        current_hour, _ = parse_hhmm(context.time)
        hour_diff = abs(current_hour - _local(scene.created_at).hour)
        if hour_diff <= 2:
            relevance += 0.3
        elif hour_diff <= 4:
            relevance += 0.1

        devices = [op.device_id for op in scene.operations]
        if devices:
            overlap = sum(1 for d in devices if d in context.available_devices)
            relevance += overlap / len(devices) * 0.4

        if "door_unlock" in context.recent_events and "帰宅" in scene.name:
            relevance += 0.3

        return min(1.0, relevance)

    def get_scene_suggestions(
        self, context: SceneLearningContext
    ) -> list[SceneSuggestion]:
        suggestions = []
        for scene in self.get_learned_scenes():
            relevance = self.scene_relevance(scene, context)
            if relevance <= MIN_SUGGESTION_RELEVANCE:
                continue
            suggestions.append(
                SceneSuggestion(
                    type="learned_scene",
                    scene_id=scene.id,
                    name=scene.name,
                    description=f"{scene.name}の実行を提案します",
                    confidence=round(scene.confidence * relevance, 4),
                    actions=scene.operations,
                    reasoning=(
                        "過去の使用パターンに基づく提案"
                        f"（信頼度: {scene.confidence * 100:.1f}%）"
                    ),
                )
            )

        recommended = self._recommended_scene(context)
        if recommended is not None:
            suggestions.append(recommended)

        return sorted(suggestions, key=lambda s: s.confidence, reverse=True)

    def _recommended_scene(self, context: SceneLearningContext) -> SceneSuggestion | None:
        hour, _ = parse_hhmm(context.time)
        if not (18 <= hour <= 21 and "door_unlock" in context.recent_events):
            return None
        return SceneSuggestion(
            type="recommended_scene",
            name="推奨帰宅シーン",
            description="帰宅時の推奨操作",
            confidence=0.8,
            actions=[
                AutomationAction(device_id="light_entrance", command="turnOn"),
                AutomationAction(device_id="light_living", command="turnOn"),
            ],
            reasoning="夕方の帰宅時に推奨される操作パターン",
        )

    @audit_scope(
        event_type=EventType.SCENE_LIFECYCLE,
        end_event=EventSubtype.LEARNED_SCENE_APPLIED,
        scene_id="scene_id",
    )
    async def apply_learned_scene(self, scene_id: str) -> SceneApplyResponse:
        """Sends every operation of a learned scene concurrently and reports failures."""
        scene = self._scenes.get(scene_id)
        if scene is None:
            raise ValueError(f"Learned scene '{scene_id}' not found")

        tasks = [
            (
                op,
                asyncio.create_task(
                    self._switchbot.send_command(
                        op.device_id, op.command, op.parameters or None
                    )
                ),
            )
            for op in scene.operations
        ]

        failed_commands = []
        for op, task in tasks:
            try:
                await task
            except Exception as e:
                failed_commands.append(
                    CommandResult(
                        device_id=op.device_id,
                        command=op.command,
                        parameters=op.parameters,
                        error=str(e),
                    )
                )

        scene.usage_count += 1
        total = len(scene.operations)
        if failed_commands:
            message = (
                f"Scene '{scene.name}' applied with {len(failed_commands)} failures out "
                f"of {total} commands"
            )
        else:
            message = f"Scene '{scene.name}' applied successfully ({total} commands)"

        return SceneApplyResponse(
            success=not failed_commands,
            scene_id=scene_id,
            message=message,
            failed_commands=failed_commands,
        )
