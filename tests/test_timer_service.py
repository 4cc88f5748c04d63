"""Unit tests for TimerService."""

import asyncio
from datetime import timedelta

import pytest

from timing.timers import TimerService


class TestTimerService:
    """Test class for TimerService functionality."""

    @pytest.mark.unit
    async def test_recurring_timer_fires_repeatedly(self):
        """A recurring timer keeps firing until cancelled."""
        service = TimerService()
        fired = []

        async def callback(timer_id: str):
            fired.append(timer_id)

        service.start_recurring_timer("tick", timedelta(seconds=0.05), callback)
        await asyncio.sleep(0.18)
        await service.stop()

        assert len(fired) >= 2, f"Expected at least 2 firings, got {len(fired)}"
        assert set(fired) == {"tick"}

    @pytest.mark.unit
    async def test_first_firing_waits_one_interval(self):
        service = TimerService()
        fired = []

        async def callback(timer_id: str):
            fired.append(timer_id)

        service.start_recurring_timer("slow", timedelta(seconds=0.3), callback)
        await asyncio.sleep(0.05)

        assert fired == []
        assert service.has_timer("slow")
        await service.stop()

    @pytest.mark.unit
    async def test_cancel_stops_future_firings(self):
        service = TimerService()
        fired = []

        async def callback(timer_id: str):
            fired.append(timer_id)

        service.start_recurring_timer("t", timedelta(seconds=0.05), callback)
        await asyncio.sleep(0.08)
        assert service.cancel_timer("t") is True
        count = len(fired)
        await asyncio.sleep(0.12)

        assert len(fired) == count
        assert not service.has_timer("t")
        assert service.cancel_timer("t") is False

    @pytest.mark.unit
    async def test_restart_replaces_existing_timer(self):
        service = TimerService()
        first, second = [], []

        async def first_callback(timer_id: str):
            first.append(timer_id)

        async def second_callback(timer_id: str):
            second.append(timer_id)

        service.start_recurring_timer("t", timedelta(seconds=0.05), first_callback)
        service.start_recurring_timer("t", timedelta(seconds=0.05), second_callback)
        await asyncio.sleep(0.12)
        await service.stop()

        assert first == []
        assert len(second) >= 1
        assert service.active_timer_ids() == []

    @pytest.mark.unit
    async def test_cancel_does_not_interrupt_running_callback(self):
        """Cancelling while a callback is mid-flight lets that callback finish."""
        service = TimerService()
        started = asyncio.Event()
        finished = []

        async def callback(timer_id: str):
            started.set()
            await asyncio.sleep(0.1)
            finished.append(timer_id)

        service.start_recurring_timer("t", timedelta(seconds=0.02), callback)
        await asyncio.wait_for(started.wait(), timeout=1)
        service.cancel_timer("t")
        await service.stop()

        assert finished and set(finished) == {"t"}

    @pytest.mark.unit
    async def test_failing_callback_keeps_timer_alive(self):
        service = TimerService()
        calls = []

        async def callback(timer_id: str):
            calls.append(timer_id)
            raise RuntimeError("boom")

        service.start_recurring_timer("t", timedelta(seconds=0.04), callback)
        await asyncio.sleep(0.15)
        await service.stop()

        assert len(calls) >= 2

    @pytest.mark.unit
    async def test_non_positive_interval_rejected(self):
        service = TimerService()

        async def callback(timer_id: str):
            pass

        with pytest.raises(ValueError):
            service.start_recurring_timer("t", timedelta(0), callback)
        assert not service.has_timer("t")

    @pytest.mark.unit
    async def test_multiple_timers_are_independent(self):
        service = TimerService()
        fired: dict[str, int] = {}

        async def callback(timer_id: str):
            fired[timer_id] = fired.get(timer_id, 0) + 1

        service.start_recurring_timer("a", timedelta(seconds=0.03), callback)
        service.start_recurring_timer("b", timedelta(seconds=0.03), callback)
        assert sorted(service.active_timer_ids()) == ["a", "b"]

        service.cancel_timer("a")
        await asyncio.sleep(0.1)
        await service.stop()

        assert "a" not in fired
        assert fired["b"] >= 1
