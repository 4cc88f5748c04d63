from datetime import datetime
from enum import Enum

from sqlalchemy import Column
from sqlalchemy import Enum as SQLEnum
from sqlmodel import Field, SQLModel


class EventType(str, Enum):
    """Top level grouping of audit events"""

    RULE_LIFECYCLE = "rule_lifecycle"
    EXECUTION_LIFECYCLE = "execution_lifecycle"
    DEVICE_CONTROL = "device_control"
    SCENE_LIFECYCLE = "scene_lifecycle"


class EventSubtype(str, Enum):
    # Rule lifecycle
    RULE_CREATED = "rule_created"
    RULE_UPDATED = "rule_updated"
    RULE_DELETED = "rule_deleted"
    RULE_TOGGLED = "rule_toggled"

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    CONDITIONS_NOT_MET = "conditions_not_met"
    ACTION_COMPLETED = "action_completed"
    ACTION_FAILED = "action_failed"
    ACTION_SKIPPED = "action_skipped"

    # Device control
    DEVICE_COMMAND = "device_command"
    DEVICE_COMMAND_FAILED = "device_command_failed"
    SCENE_EXECUTED = "scene_executed"

    # Learned scenes
    LEARNED_SCENE_CREATED = "learned_scene_created"
    LEARNED_SCENE_APPLIED = "learned_scene_applied"


class AuditLog(SQLModel, table=True):
    """One audit trail row; scope columns are indexed for filtering"""

    id: int | None = Field(primary_key=True, default=None, nullable=False)
    timestamp: datetime = Field(default_factory=datetime.now)

    event_type: EventType = Field(sa_column=Column(SQLEnum(EventType)))
    event_subtype: EventSubtype = Field(sa_column=Column(SQLEnum(EventSubtype)))

    rule_id: str | None = Field(index=True, default=None)
    scene_id: str | None = Field(index=True, default=None)
    device_id: str | None = Field(index=True, default=None)

    success: bool | None = None
    error_message: str | None = None
    execution_time_ms: float | None = None

    # Anything else, serialized as JSON
    context_data: str | None = None
