import pytest

from ticket_audit.services.events import ProgressEventChannel


def test_publish_filters_by_session():
    channel = ProgressEventChannel()
    mine = channel.subscribe("S-1")
    everything = channel.subscribe()

    channel.publish("S-1", "started", {"total": 3})
    channel.publish("S-2", "started", {"total": 5})

    assert [e.session_id for e in mine.drain()] == ["S-1"]
    assert [e.session_id for e in everything.drain()] == ["S-1", "S-2"]


def test_slow_subscriber_drops_oldest():
    channel = ProgressEventChannel(buffer_size=2)
    subscription = channel.subscribe("S-1")

    for percent in (10, 20, 30):
        channel.publish("S-1", "progress", {"percent": percent})

    assert [e.payload["percent"] for e in subscription.drain()] == [20, 30]
    assert subscription.dropped == 1


def test_unsubscribe_stops_delivery():
    channel = ProgressEventChannel()
    subscription = channel.subscribe("S-1")
    subscription.close()
    channel.publish("S-1", "started")
    assert subscription.drain() == []


@pytest.mark.asyncio
async def test_iteration_ends_after_completed():
    channel = ProgressEventChannel()
    subscription = channel.subscribe("S-1")
    channel.publish("S-1", "started")
    channel.publish("S-1", "progress", {"percent": 100})
    channel.publish("S-1", "completed", {"completed": 1})

    phases = [event.phase async for event in subscription]

    assert phases == ["started", "progress", "completed"]
