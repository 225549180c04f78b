"""
Tests for the in-process change feed.
"""

import threading

from common.feed import ChangeFeed


class TestSubscription:
    """Tests for filtered delivery and cancellation."""

    def test_predicate_filters_events(self):
        """Test that subscribers only see matching events."""
        feed = ChangeFeed()
        subscription = feed.subscribe(lambda e: e.record.get("merchant_id") == "m1")

        feed.publish("payments", "created", {"merchant_id": "m2"})
        feed.publish("payments", "created", {"merchant_id": "m1"})

        event = subscription.get(timeout=1)
        assert event.record == {"merchant_id": "m1"}
        assert subscription.get(timeout=0.05) is None

    def test_cancel_ends_updates_stream(self):
        """Test that cancel ends a blocking updates() loop."""
        feed = ChangeFeed()
        subscription = feed.subscribe()
        received = []

        def consume():
            for event in subscription.updates():
                received.append(event.action)

        consumer = threading.Thread(target=consume)
        consumer.start()
        feed.publish("customers", "created", {})
        feed.publish("customers", "updated", {})
        subscription.cancel()
        consumer.join(timeout=2)

        assert not consumer.is_alive()
        assert received == ["created", "updated"]
        assert feed.subscriber_count == 0

    def test_events_after_cancel_are_dropped(self):
        """Test that a cancelled subscription receives nothing more."""
        feed = ChangeFeed()
        subscription = feed.subscribe()
        subscription.cancel()

        feed.publish("customers", "created", {})

        assert subscription.closed
        assert subscription.get(timeout=0.05) is None

    def test_record_is_copied(self):
        """Test that subscribers get their own copy of the record."""
        feed = ChangeFeed()
        subscription = feed.subscribe()
        record = {"total_balance": 1}

        feed.publish("customers", "updated", record)
        record["total_balance"] = 2

        assert subscription.get(timeout=1).record == {"total_balance": 1}

    def test_failing_predicate_does_not_break_others(self):
        """Test that a raising predicate does not affect other subscribers."""
        feed = ChangeFeed()
        feed.subscribe(lambda e: 1 / 0)
        healthy = feed.subscribe()

        feed.publish("payments", "updated", {"id": 1})

        assert healthy.get(timeout=1).record == {"id": 1}

    def test_close_cancels_everyone(self):
        """Test that closing the feed cancels every subscription."""
        feed = ChangeFeed()
        first, second = feed.subscribe(), feed.subscribe()

        feed.close()

        assert first.closed and second.closed
        assert feed.subscriber_count == 0
