import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.event_bus import ALL_EVENTS, EventBus, event_envelope


def test_sync_subscribers_receive_matching_and_wildcard_events():
    bus = EventBus()
    specific, everything = [], []
    bus.subscribe("trade:executed", lambda event_type, data: specific.append(data))
    bus.subscribe(ALL_EVENTS, lambda event_type, data: everything.append(event_type))

    bus.publish("trade:executed", {"trade_id": 1})
    bus.publish("scan_complete")

    assert specific == [{"trade_id": 1}]
    assert everything == ["trade:executed", "scan_complete"]


def test_subscribe_is_deduplicated_and_unsubscribe_works():
    bus = EventBus()
    received = []

    def callback(event_type, data):
        received.append(event_type)

    bus.subscribe("error", callback)
    bus.subscribe("error", callback)
    bus.publish("error", {})
    assert received == ["error"]

    bus.unsubscribe("error", callback)
    bus.publish("error", {})
    assert received == ["error"]


def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event_type, data):
        raise RuntimeError("boom")

    bus.subscribe("snipe:copied", broken)
    bus.subscribe("snipe:copied", lambda event_type, data: received.append(data))

    bus.publish("snipe:copied", {"id": 3})

    assert received == [{"id": 3}]


@pytest.mark.asyncio
async def test_async_subscribers_run_in_background():
    bus = EventBus()
    received = []

    async def on_event(event_type, data):
        received.append((event_type, data))

    async def broken(event_type, data):
        raise RuntimeError("boom")

    bus.subscribe(ALL_EVENTS, on_event)
    bus.subscribe(ALL_EVENTS, broken)

    bus.publish("trade_closed", {"id": 9})
    assert received == []

    await bus.drain()
    assert received == [("trade_closed", {"id": 9})]


def test_event_envelope_shape():
    envelope = event_envelope("trade:resolved", {"pnl": 1.5})

    assert envelope["type"] == "trade:resolved"
    assert envelope["data"] == {"pnl": 1.5}
    assert envelope["timestamp"].endswith("Z")
