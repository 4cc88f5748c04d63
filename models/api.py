from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for wire models; camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Rule Models
class ConditionType(str, Enum):
    TIME = "time"
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    DEVICE_STATE = "device_state"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    CONTAINS = "contains"


class ActionType(str, Enum):
    DEVICE_CONTROL = "device_control"
    SCENE_EXECUTION = "scene_execution"
    NOTIFICATION = "notification"


class ScheduleType(str, Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    INTERVAL = "interval"


class RuleCondition(ApiModel):
    """A single predicate; value is a scalar, a [start, end] pair, or a state payload"""

    type: ConditionType
    operator: ConditionOperator
    value: Any
    device_id: str | None = None
    tolerance: float | None = None


class RuleAction(ApiModel):
    """One effect of a rule. Required fields are checked at execution time only."""

    # Unknown action types are accepted so they can be reported as skipped
    type: ActionType | str
    device_id: str | None = None
    command: str | None = None
    parameters: dict[str, Any] | None = None
    scene_id: str | None = None
    message: str | None = None
    delay: float | None = None  # seconds


class RuleSchedule(ApiModel):
    type: ScheduleType
    time: str | None = None  # HH:MM, local
    days: list[int] | None = None  # 0=Sunday .. 6=Saturday
    interval: int | None = None  # minutes


class AutomationRule(ApiModel):
    id: str = ""
    name: str
    description: str = ""
    is_enabled: bool = True
    conditions: list[RuleCondition] = []
    actions: list[RuleAction] = []
    schedule: RuleSchedule | None = None
    created_at: datetime
    updated_at: datetime
    user_id: str
    last_executed: datetime | None = None
    execution_count: int = 0


class AutomationWorkflow(ApiModel):
    natural_language: str
    parsed_rule: AutomationRule
    confidence: float
    suggested_modifications: list[str] | None = None


class RuleConditionResult(ApiModel):
    condition_index: int
    matched: bool
    actual_value: Any = None
    expected_value: Any = None
    evaluated_at: datetime


class ConditionEvaluation(ApiModel):
    all_met: bool
    results: list[RuleConditionResult]


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class RuleActionResult(ApiModel):
    action_index: int
    status: ActionStatus
    executed_at: datetime
    result: Any = None
    error: str | None = None


class RuleExecution(ApiModel):
    """Immutable record of one firing attempt"""

    model_config = ConfigDict(frozen=True)

    id: str
    rule_id: str
    executed_at: datetime
    results: list[RuleActionResult]
    conditions: list[RuleConditionResult] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> ExecutionStatus:
        failures = sum(1 for r in self.results if r.status == ActionStatus.FAILURE)
        successes = sum(1 for r in self.results if r.status == ActionStatus.SUCCESS)
        if failures == 0:
            return ExecutionStatus.SUCCESS
        if successes == 0:
            return ExecutionStatus.FAILURE
        return ExecutionStatus.PARTIAL


# Proposal Models
class EventContext(ApiModel):
    time: str | None = None
    location: str | None = None


class AutomationEvent(ApiModel):
    event_type: str
    device_type: str | None = None
    device_id: str | None = None
    state: Any = None
    timestamp: datetime | None = None
    context: EventContext | None = None


class AutomationContext(ApiModel):
    time: str
    location: str = "unknown"
    recent_events: list[str] = []
    available_devices: list[str] = []
    sensor_data: Any = None  # event state or sensor readings


class AutomationAction(ApiModel):
    device_id: str
    command: str
    parameters: dict[str, Any] = {}


class AutomationSuggestion(ApiModel):
    type: str
    description: str
    confidence: float
    actions: list[AutomationAction] = []
    reasoning: str | None = None


class AutomationProposal(ApiModel):
    suggestions: list[AutomationSuggestion]
    confidence: float
    context: AutomationContext


class ProposalValidation(ApiModel):
    is_valid: bool
    reason: str
    issues: list[str] | None = None


# Scene Learning Models
class OperationRecord(ApiModel):
    device_id: str
    command: str
    parameters: dict[str, Any] = {}
    timestamp: datetime
    user_id: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _local_naive(cls, value: datetime) -> datetime:
        # Stored timestamps are always naive local time
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value


class OperationPattern(ApiModel):
    device_id: str
    command: str
    parameters: dict[str, Any] = {}
    frequency: int
    last_used: datetime


class SequentialPattern(ApiModel):
    operations: list[OperationRecord]
    frequency: int
    time_window: int  # minutes
    confidence: float


class TimeRange(ApiModel):
    start: str
    end: str


class TimeBasedPattern(ApiModel):
    time_range: TimeRange
    operations: list[OperationRecord]
    frequency: int
    confidence: float


class PatternType(str, Enum):
    FREQUENT = "frequent"
    SEQUENTIAL = "sequential"
    TIME_BASED = "time_based"


class SceneCandidate(ApiModel):
    name: str
    operations: list[AutomationAction]
    confidence: float
    frequency: int = 0
    pattern_type: PatternType
    reasoning: str = ""


class LearnedScene(ApiModel):
    id: str
    name: str
    operations: list[AutomationAction]
    confidence: float
    is_auto_generated: bool = True
    created_at: datetime
    usage_count: int = 0


class SceneLearningContext(ApiModel):
    time: str
    location: str | None = None
    recent_events: list[str] = []
    available_devices: list[str] = []


class SceneSuggestion(ApiModel):
    type: str  # learned_scene | recommended_scene
    name: str
    description: str
    confidence: float
    actions: list[AutomationAction]
    reasoning: str
    scene_id: str | None = None


class CommandResult(ApiModel):
    """Result of a failed command"""

    device_id: str
    command: str
    parameters: dict[str, Any] = {}
    error: str


class SceneApplyResponse(ApiModel):
    """Response for applying a learned scene - only includes failures"""

    success: bool
    scene_id: str
    message: str
    failed_commands: list[CommandResult] = Field(default_factory=list)


# Request bodies
class ParseWorkflowRequest(ApiModel):
    natural_language: str
    user_id: str = "default-user"


class SaveWorkflowRequest(ApiModel):
    workflow: AutomationWorkflow


class UpdateRuleRequest(ApiModel):
    rule: AutomationRule


class ToggleRuleRequest(ApiModel):
    enabled: bool


class EvaluateConditionsRequest(ApiModel):
    conditions: list[RuleCondition]
