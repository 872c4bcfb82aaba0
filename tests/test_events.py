"""Unit tests for apply events."""

import json

import pytest

from events import ApplyEvent, EventBus, EventType

# ==================== EventType tests ====================


class TestEventType:
    """Tests for the EventType enum."""

    def test_values_match_names(self):
        for member in EventType:
            assert member.value == member.name

    def test_apply_finished_exists(self):
        assert EventType.APPLY_FINISHED.value == "APPLY_FINISHED"


# ==================== ApplyEvent tests ====================


class TestApplyEvent:
    """Tests for the ApplyEvent dataclass."""

    @pytest.fixture
    def sample_event(self):
        return ApplyEvent(
            event_type=EventType.ENTRY_APPLIED,
            environment="beta",
            logical_id="Net",
            operation="create",
            attempt=1,
            data={"physical_id": "net-1"},
            timestamp="2024-01-15T10:30:00+00:00",
        )

    def test_to_dict(self, sample_event):
        data = sample_event.to_dict()
        assert data["event_type"] == "ENTRY_APPLIED"
        assert data["logical_id"] == "Net"
        assert data["data"] == {"physical_id": "net-1"}

    def test_to_json(self, sample_event):
        payload = json.loads(sample_event.to_json())
        assert payload["environment"] == "beta"
        assert payload["timestamp"] == "2024-01-15T10:30:00+00:00"

    def test_timestamp_defaults(self):
        event = ApplyEvent(event_type=EventType.APPLY_FINISHED, environment="beta")
        assert event.timestamp
        assert event.logical_id is None


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for EventBus publish."""

    async def test_listener_called(self):
        bus = EventBus()
        seen = []
        bus.add_listener(seen.append)

        await bus.publish(ApplyEvent(EventType.APPLY_FINISHED, "beta"))

        assert [e.event_type for e in seen] == [EventType.APPLY_FINISHED]

    async def test_listeners_called_in_registration_order(self):
        bus = EventBus()
        seen = []
        bus.add_listener(lambda e: seen.append(("first", e.logical_id)))
        bus.add_listener(lambda e: seen.append(("second", e.logical_id)))

        await bus.publish(ApplyEvent(EventType.ENTRY_STARTED, "beta", "Net"))

        assert seen == [("first", "Net"), ("second", "Net")]

    async def test_failing_listener_does_not_stop_publish(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.add_listener(broken)
        bus.add_listener(seen.append)

        await bus.publish(ApplyEvent(EventType.APPLY_FINISHED, "beta"))

        assert len(seen) == 1

    async def test_publish_without_listeners(self):
        await EventBus().publish(ApplyEvent(EventType.APPLY_FINISHED, "beta"))
