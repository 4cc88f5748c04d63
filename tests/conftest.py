"""Pytest configuration and shared fixtures."""

from datetime import datetime

import pytest
from sqlmodel import Session, SQLModel, create_engine

from audit import service as audit_service_module
from audit.service import AuditService
from logic.rule_logic import RuleLogic
from proposals.engine import ProposalEngine
from rules.conditions import ConditionEvaluator
from rules.scheduler import AutomationScheduler
from scenes.learning import SceneLearningEngine
from tests.test_helpers import (
    AIRCON_ID,
    METER_ID,
    FixedClock,
    create_mock_switchbot,
    create_mock_timer_service,
)


@pytest.fixture
def clock():
    """Saturday 2026-10-17 18:30 local time."""
    return FixedClock(datetime(2026, 10, 17, 18, 30))


@pytest.fixture
def mock_switchbot():
    """SwitchBot mock with a meter at 28.5C/55% and an air conditioner that is off."""
    return create_mock_switchbot(
        {
            METER_ID: {"temperature": 28.5, "humidity": 55, "online": True},
            AIRCON_ID: {"power": "off", "online": True},
        }
    )


@pytest.fixture
def mock_timer_service():
    return create_mock_timer_service()


@pytest.fixture
def evaluator(mock_switchbot, clock):
    return ConditionEvaluator(mock_switchbot, clock=clock)


@pytest.fixture
def scheduler(mock_switchbot, evaluator, mock_timer_service, clock):
    return AutomationScheduler(
        mock_switchbot, evaluator, mock_timer_service, clock=clock
    )


@pytest.fixture
def rule_logic(scheduler, clock):
    return RuleLogic(scheduler, clock=clock)


@pytest.fixture
def proposal_engine(mock_switchbot, clock):
    return ProposalEngine(mock_switchbot, clock=clock)


@pytest.fixture
def learning(mock_switchbot, clock):
    return SceneLearningEngine(mock_switchbot, clock=clock)


# Database Testing Fixtures


@pytest.fixture
def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
async def audit_service(db_engine):
    """Create and start an audit service for testing."""
    service = AuditService(db_engine)
    audit_service_module.audit_service = service
    service.start()
    yield service
    await service.stop()
    audit_service_module.audit_service = None
