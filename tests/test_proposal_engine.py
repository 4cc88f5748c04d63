"""Unit tests for the heuristic proposal engine."""

import pytest

from models.api import (
    AutomationAction,
    AutomationContext,
    AutomationEvent,
    AutomationSuggestion,
    TimeRange,
)
from proposals.engine import ProposalEngine, is_time_in_range
from tests.test_helpers import AIRCON_ID, METER_ID, create_mock_switchbot


def unlock_event(time: str | None = "18:00") -> AutomationEvent:
    return AutomationEvent.model_validate(
        {
            "eventType": "deviceStateChange",
            "deviceType": "Lock",
            "deviceId": "lock-1",
            "state": "unlocked",
            "context": {"time": time, "location": "entrance"} if time else None,
        }
    )


def meter_event(temperature: float | str | None) -> AutomationEvent:
    return AutomationEvent(
        event_type="sensorData",
        device_type="Meter",
        device_id=METER_ID,
        state={"temperature": temperature, "humidity": 50},
    )


class TestAnalyzeEvent:
    @pytest.mark.unit
    async def test_evening_unlock_suggests_entrance_light(self, proposal_engine):
        proposal = await proposal_engine.analyze_event(unlock_event("18:00"))

        assert len(proposal.suggestions) == 1
        suggestion = proposal.suggestions[0]
        assert suggestion.type == "lighting"
        assert suggestion.actions[0].device_id == "light_entrance"
        assert suggestion.reasoning == "ルール「帰宅照明」に基づく提案"
        assert proposal.confidence == 0.9
        assert proposal.context.time == "18:00"
        assert proposal.context.location == "entrance"
        assert proposal.context.recent_events == ["deviceStateChange"]

    @pytest.mark.unit
    async def test_unlock_outside_evening_suggests_nothing(self, proposal_engine):
        proposal = await proposal_engine.analyze_event(unlock_event("23:00"))
        assert proposal.suggestions == []
        assert proposal.confidence == 0

    @pytest.mark.unit
    async def test_missing_event_time_uses_clock(self, proposal_engine):
        # The fixture clock reads 18:30
        proposal = await proposal_engine.analyze_event(unlock_event(None))
        assert proposal.context.time == "18:30"
        assert proposal.context.location == "unknown"
        assert len(proposal.suggestions) == 1

    @pytest.mark.unit
    async def test_hot_reading_suggests_air_conditioner(self, proposal_engine):
        proposal = await proposal_engine.analyze_event(meter_event(30))

        assert [s.type for s in proposal.suggestions] == ["climate"]
        assert proposal.suggestions[0].actions[0].parameters == {"temperature": 25}
        assert proposal.confidence == 0.8
        assert proposal.context.sensor_data == {"temperature": 30, "humidity": 50}

    @pytest.mark.unit
    async def test_threshold_is_exclusive(self, proposal_engine):
        proposal = await proposal_engine.analyze_event(meter_event(28))
        assert proposal.suggestions == []

    @pytest.mark.unit
    async def test_numeric_string_reading_is_compared_as_number(self, proposal_engine):
        proposal = await proposal_engine.analyze_event(meter_event("30"))
        assert [s.type for s in proposal.suggestions] == ["climate"]

    @pytest.mark.unit
    @pytest.mark.parametrize("reading", ["hot", None])
    async def test_non_numeric_reading_suggests_nothing(self, proposal_engine, reading):
        proposal = await proposal_engine.analyze_event(meter_event(reading))
        assert proposal.suggestions == []

    @pytest.mark.unit
    async def test_unrelated_event(self, proposal_engine):
        proposal = await proposal_engine.analyze_event(
            AutomationEvent(event_type="motion", device_type="MotionSensor")
        )
        assert proposal.suggestions == []


class TestTimeRange:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "time, start, end, expected",
        [
            ("17:00", "17:00", "21:00", True),
            ("21:00", "17:00", "21:00", True),
            ("21:01", "17:00", "21:00", False),
            ("23:30", "22:00", "06:00", True),
            ("05:00", "22:00", "06:00", True),
            ("12:00", "22:00", "06:00", False),
        ],
    )
    def test_inclusive_and_wrapping(self, time, start, end, expected):
        assert is_time_in_range(time, TimeRange(start=start, end=end)) is expected


class TestGenerateProposal:
    @pytest.mark.unit
    async def test_evening_arrival(self, proposal_engine):
        suggestion = await proposal_engine.generate_proposal(
            AutomationContext(
                time="18:15",
                location="entrance",
                recent_events=["door_unlock"],
                available_devices=["aircon_living", "light_entrance"],
            )
        )
        assert suggestion.type == "lighting"
        assert suggestion.confidence == 0.85
        assert suggestion.actions[0].device_id == "light_entrance"
        assert suggestion.actions[0].command == "turnOn"

    @pytest.mark.unit
    async def test_hot_living_room(self, proposal_engine):
        suggestion = await proposal_engine.generate_proposal(
            AutomationContext(
                time="14:00",
                location="living_room",
                available_devices=["light_1", "aircon_living"],
                sensor_data={"temperature": 29.5},
            )
        )
        assert suggestion.type == "climate"
        assert suggestion.confidence == 0.75
        assert suggestion.actions[0].device_id == "aircon_living"
        assert suggestion.actions[0].parameters == {"temperature": 25}

    @pytest.mark.unit
    @pytest.mark.parametrize("reading, expected", [("29.5", "climate"), ("warm", "comfort")])
    async def test_string_temperature(self, proposal_engine, reading, expected):
        suggestion = await proposal_engine.generate_proposal(
            AutomationContext(
                time="14:00",
                location="living_room",
                available_devices=["aircon_living"],
                sensor_data={"temperature": reading},
            )
        )
        assert suggestion.type == expected

    @pytest.mark.unit
    async def test_device_falls_back_to_first_available(self, proposal_engine):
        suggestion = await proposal_engine.generate_proposal(
            AutomationContext(
                time="20:00",
                location="entrance",
                recent_events=["door_unlock"],
                available_devices=["hall_lamp"],
            )
        )
        assert suggestion.actions[0].device_id == "hall_lamp"

    @pytest.mark.unit
    async def test_nothing_special(self, proposal_engine):
        suggestion = await proposal_engine.generate_proposal(
            AutomationContext(time="10:00", location="entrance")
        )
        assert suggestion.type == "comfort"
        assert suggestion.confidence == 0.5
        assert suggestion.actions == []


class TestValidateProposal:
    @pytest.mark.unit
    async def test_online_device_that_is_off_is_valid(self, proposal_engine):
        validation = await proposal_engine.validate_proposal(
            AutomationSuggestion(
                type="climate",
                description="cool down",
                confidence=0.8,
                actions=[AutomationAction(device_id=AIRCON_ID, command="turnOn")],
            )
        )
        assert validation.is_valid is True
        assert validation.reason == "実行可能"

    @pytest.mark.unit
    async def test_problems_are_collected(self, clock):
        switchbot = create_mock_switchbot(
            {
                "offline": {"online": False},
                "already_on": {"online": True, "power": "on"},
            }
        )
        engine = ProposalEngine(switchbot, clock=clock)

        validation = await engine.validate_proposal(
            AutomationSuggestion(
                type="comfort",
                description="several",
                confidence=0.5,
                actions=[
                    AutomationAction(device_id="offline", command="turnOff"),
                    AutomationAction(device_id="already_on", command="turnOn"),
                    AutomationAction(device_id="unknown", command="turnOn"),
                ],
            )
        )

        assert validation.is_valid is False
        assert validation.issues == [
            "デバイス offline がオフラインです",
            "デバイス already_on は既にオンになっています",
            "デバイス unknown の状態確認に失敗しました",
        ]
        assert validation.reason.startswith("問題があります: ")

    @pytest.mark.unit
    async def test_no_actions_is_valid(self, proposal_engine):
        validation = await proposal_engine.validate_proposal(
            AutomationSuggestion(type="comfort", description="none", confidence=0.5)
        )
        assert validation.is_valid is True
