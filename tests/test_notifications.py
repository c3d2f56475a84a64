import threading

from billing.notifications import ConnectionRegistry, Notifier


def test_new_connection_replaces_previous_one():
    registry = ConnectionRegistry()
    first, second = [], []

    old_token = registry.register("user-1", first.append)
    registry.register("user-1", second.append)
    registry.notify("user-1", {"type": "pong"})

    assert first == []
    assert second == [{"type": "pong"}]
    assert registry.connection_count() == 1

    # The stale connection closing must not drop the live one.
    assert not registry.unregister("user-1", old_token)
    assert registry.is_connected("user-1")


def test_publish_skips_disconnected_users():
    notifier = Notifier(ConnectionRegistry())

    assert not notifier.publish("user-1", {"type": "balance_update"})
    assert notifier.deliver_pending() == 0


def test_full_queue_drops_instead_of_blocking():
    registry = ConnectionRegistry()
    registry.register("user-1", lambda event: None)
    notifier = Notifier(registry, max_queue=2)

    assert notifier.publish("user-1", {"type": "balance_update", "n": 1})
    assert notifier.publish("user-1", {"type": "balance_update", "n": 2})
    assert not notifier.publish("user-1", {"type": "balance_update", "n": 3})
    assert notifier.dropped == 1
    assert notifier.deliver_pending() == 2


def test_failing_sender_is_contained():
    registry = ConnectionRegistry()

    def broken(event):
        raise ConnectionResetError("socket closed")

    registry.register("user-1", broken)
    notifier = Notifier(registry)
    notifier.publish("user-1", {"type": "balance_update"})

    assert notifier.deliver_pending() == 0


def test_background_delivery():
    registry = ConnectionRegistry()
    received = threading.Event()
    events = []

    def sender(event):
        events.append(event)
        received.set()

    registry.register("user-1", sender)
    notifier = Notifier(registry)
    notifier.start()
    try:
        notifier.publish("user-1", {"type": "settlement_complete"})
        assert received.wait(2)
    finally:
        notifier.stop()

    assert events == [{"type": "settlement_complete"}]
