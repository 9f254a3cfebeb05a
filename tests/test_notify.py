"""Unit tests for NotificationBus."""

import pytest

from panopticon.notify import NotificationBus


class TestNotificationBus:
    """Test subscription and delivery."""

    def test_publish_to_all_subscribers(self, context, factory):
        """Test delivery to every handler."""
        bus = NotificationBus(context)
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)
        event = factory.project_created("A")
        assert bus.publish(event) == 2
        assert first == [event] and second == [event]

    def test_kind_filter(self, context, factory):
        """Test that filtered handlers only see their kinds."""
        bus = NotificationBus(context)
        received = []
        bus.subscribe(received.append, kinds=["task_started"])
        bus.publish(factory.project_created("A"))
        started = factory.task_started("t1")
        bus.publish(started)
        assert received == [started]

    def test_unknown_kind_rejected(self, context):
        """Test subscribing to a kind that does not exist."""
        with pytest.raises(ValueError):
            NotificationBus(context).subscribe(print, kinds=["task_exploded"])

    def test_unsubscribe(self, context, factory):
        """Test that the returned callable removes the handler."""
        bus = NotificationBus(context)
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        bus.publish(factory.project_created("A"))
        assert received == []

    def test_handler_errors_are_isolated(self, context, factory, caplog):
        """Test that one failing handler does not stop the others."""
        bus = NotificationBus(context)
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        with caplog.at_level("ERROR", logger="panopticon.test"):
            assert bus.publish(factory.project_created("A")) == 1
        assert len(received) == 1
        assert "boom" in caplog.text
