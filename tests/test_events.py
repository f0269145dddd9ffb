"""Tests for the event notifier."""

from __future__ import annotations

from cmdgate.events import CommandEvents, EventNotifier


class TestEventNotifier:
    """Fan-out and subscriber isolation."""

    def test_emit_without_subscribers(self) -> None:
        assert EventNotifier().emit(CommandEvents.PENDING, {}) == 0

    def test_delivers_in_subscription_order(self) -> None:
        notifier = EventNotifier()
        seen: list[tuple[str, object]] = []
        notifier.subscribe("x", lambda p: seen.append(("first", p)))
        notifier.subscribe("x", lambda p: seen.append(("second", p)))
        assert notifier.emit("x", 42) == 2
        assert seen == [("first", 42), ("second", 42)]

    def test_only_named_event_delivered(self) -> None:
        notifier = EventNotifier()
        seen: list[object] = []
        notifier.subscribe(CommandEvents.APPROVED, seen.append)
        notifier.emit(CommandEvents.DENIED, "nope")
        assert seen == []

    def test_failing_subscriber_is_isolated(self) -> None:
        notifier = EventNotifier()
        seen: list[object] = []

        def broken(payload: object) -> None:
            raise RuntimeError("subscriber bug")

        notifier.subscribe("x", broken)
        notifier.subscribe("x", seen.append)
        assert notifier.emit("x", "payload") == 1
        assert seen == ["payload"]

    def test_unsubscribe(self) -> None:
        notifier = EventNotifier()
        seen: list[object] = []
        notifier.subscribe("x", seen.append)
        assert notifier.unsubscribe("x", seen.append) is True
        assert notifier.unsubscribe("x", seen.append) is False
        notifier.emit("x", 1)
        assert seen == []

    def test_subscribe_during_emit_takes_effect_next_time(self) -> None:
        notifier = EventNotifier()
        seen: list[object] = []

        def late(payload: object) -> None:
            seen.append(("late", payload))

        def adder(payload: object) -> None:
            notifier.subscribe("x", late)

        notifier.subscribe("x", adder)
        notifier.emit("x", 1)
        assert seen == []
        notifier.emit("x", 2)
        assert seen == [("late", 2)]

    def test_event_names(self) -> None:
        assert CommandEvents.ALL == (
            "command:pending",
            "command:approved",
            "command:denied",
            "command:failed",
        )
