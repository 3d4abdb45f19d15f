"""Tests for controlnet.core.events."""

from __future__ import annotations

from controlnet.core.clock import ManualClock
from controlnet.core.events import Event, EventBus
from controlnet.models.enums import EventName

# ===================================================================
# Delivery
# ===================================================================


class TestPublish:
    def test_handlers_run_in_subscription_order(self, bus: EventBus) -> None:
        calls: list[str] = []
        bus.subscribe(EventName.node_registered, lambda e: calls.append("first"))
        bus.subscribe(EventName.node_registered, lambda e: calls.append("second"))

        bus.publish(EventName.node_registered, {"id": "n1"}, source="test")

        assert calls == ["first", "second"]

    def test_only_matching_name_is_delivered(self, bus: EventBus) -> None:
        seen: list[Event] = []
        bus.subscribe(EventName.loop_output, seen.append)

        bus.publish(EventName.node_registered, {}, source="test")

        assert seen == []

    def test_event_is_stamped_from_clock(self, bus: EventBus, clock: ManualClock) -> None:
        clock.advance(5.0)
        event = bus.publish(EventName.alarm_raised, {"message": "x"}, source="safety")
        assert event.timestamp == 1005.0
        assert event.source == "safety"
        assert event.payload == {"message": "x"}

    def test_sequence_increases(self, bus: EventBus) -> None:
        first = bus.publish(EventName.loop_output, source="a")
        second = bus.publish(EventName.loop_output, source="a")
        assert second.sequence == first.sequence + 1

    def test_failing_handler_does_not_block_others(self, bus: EventBus) -> None:
        seen: list[Event] = []

        def _boom(event: Event) -> None:
            raise RuntimeError("handler failure")

        bus.subscribe(EventName.rule_triggered, _boom)
        bus.subscribe(EventName.rule_triggered, seen.append)

        event = bus.publish(EventName.rule_triggered, {"rule_id": "r1"}, source="test")

        assert seen == [event]
        assert bus.handler_errors == 1
        assert bus.published == 1


# ===================================================================
# Subscriptions
# ===================================================================


class TestSubscriptions:
    def test_unsubscribe_callable_stops_delivery(self, bus: EventBus) -> None:
        seen: list[Event] = []
        unsubscribe = bus.subscribe(EventName.loop_output, seen.append)
        assert bus.subscriber_count(EventName.loop_output) == 1

        unsubscribe()
        bus.publish(EventName.loop_output, source="test")

        assert seen == []
        assert bus.subscriber_count(EventName.loop_output) == 0

    def test_unsubscribe_by_handler(self, bus: EventBus) -> None:
        seen: list[Event] = []
        bus.subscribe(EventName.loop_output, seen.append)
        assert bus.unsubscribe(EventName.loop_output, seen.append) is True
        assert bus.unsubscribe(EventName.loop_output, seen.append) is False

    def test_handler_removed_mid_delivery_is_skipped(self, bus: EventBus) -> None:
        seen: list[str] = []
        holder: dict[str, object] = {}

        def _first(event: Event) -> None:
            seen.append("first")
            holder["unsub"]()  # type: ignore[operator]

        bus.subscribe(EventName.loop_output, _first)
        holder["unsub"] = bus.subscribe(EventName.loop_output, lambda e: seen.append("second"))

        bus.publish(EventName.loop_output, source="test")

        assert seen == ["first"]


# ===================================================================
# History
# ===================================================================


class TestHistory:
    def test_recent_is_bounded(self, clock: ManualClock) -> None:
        bus = EventBus(clock=clock, history_limit=2)
        for _ in range(3):
            bus.publish(EventName.loop_output, source="test")

        recent = bus.recent()
        assert [e.sequence for e in recent] == [2, 3]

    def test_recent_filters_by_name_and_limit(self, bus: EventBus) -> None:
        bus.publish(EventName.loop_output, source="test")
        bus.publish(EventName.node_registered, source="test")
        bus.publish(EventName.loop_output, source="test")

        assert len(bus.recent(name=EventName.loop_output)) == 2
        assert len(bus.recent(1, name=EventName.loop_output)) == 1
        assert bus.recent(0) == []

    def test_zero_history_keeps_nothing(self, clock: ManualClock) -> None:
        bus = EventBus(clock=clock, history_limit=0)
        bus.publish(EventName.loop_output, source="test")
        assert bus.recent() == []

    def test_clear_drops_subscribers_and_history(self, bus: EventBus) -> None:
        seen: list[Event] = []
        bus.subscribe(EventName.loop_output, seen.append)
        bus.publish(EventName.loop_output, source="test")

        bus.clear()
        bus.publish(EventName.loop_output, source="test")

        assert len(seen) == 1
        assert bus.subscriber_count(EventName.loop_output) == 0
        assert len(bus.recent()) == 1
