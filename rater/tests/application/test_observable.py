from rater.application.observable import Broadcaster


class TestBroadcaster:
    """Tests for the synchronous listener fan-out."""

    def setup_method(self):
        """Set up test fixtures."""
        self.value = 1
        self.broadcaster = Broadcaster(lambda: self.value)

    def test_subscribe_invokes_immediately(self):
        seen = []

        self.broadcaster.subscribe(seen.append)

        assert seen == [1]
        assert len(self.broadcaster) == 1

    def test_publish_skips_unchanged_values(self):
        seen = []
        self.broadcaster.subscribe(seen.append)

        assert self.broadcaster.publish() is False
        self.value = 2
        assert self.broadcaster.publish() is True
        assert self.broadcaster.publish(force=True) is True

        assert seen == [1, 2, 2]

    def test_listeners_run_in_subscription_order(self):
        order = []
        self.broadcaster.subscribe(lambda v: order.append(('first', v)))
        self.broadcaster.subscribe(lambda v: order.append(('second', v)))
        order.clear()

        self.value = 5
        self.broadcaster.publish()

        assert order == [('first', 5), ('second', 5)]

    def test_failing_listener_does_not_stop_others(self):
        """A listener that raises is logged and the rest still run."""
        seen = []

        def broken(value):
            raise RuntimeError("listener bug")

        self.broadcaster.subscribe(broken)
        self.broadcaster.subscribe(seen.append)
        self.value = 3
        self.broadcaster.publish()

        assert seen == [1, 3]

    def test_unsubscribe(self):
        seen = []
        unsubscribe = self.broadcaster.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        self.value = 9
        self.broadcaster.publish()

        assert seen == [1]
        assert len(self.broadcaster) == 0
