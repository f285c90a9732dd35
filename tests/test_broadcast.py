import asyncio
import json

from accesshub.monitoring import HealthMonitor
from accesshub.websocket import EVICTED_CLOSE_CODE, BroadcastHub


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def test_snapshot_then_live_events(fake_websocket):
    hub = BroadcastHub(queue_size=8)
    ws = fake_websocket()

    async def snapshot():
        # An event published while the snapshot is being built must follow it
        hub.publish("heartbeat", {"deviceId": "DEV1"})
        return {"devices": []}

    task = asyncio.create_task(hub.serve(ws, snapshot))
    await wait_for(lambda: len(ws.sent) == 2)
    assert ws.accepted
    assert [m["event"] for m in ws.sent] == ["snapshot", "heartbeat"]

    hub.publish("access", {"deviceId": "DEV1", "granted": True})
    await wait_for(lambda: len(ws.sent) == 3)
    assert ws.sent[-1] == {"event": "access", "data": {"deviceId": "DEV1", "granted": True}}

    ws.hang_up()
    await asyncio.wait_for(task, 2)
    assert hub.active_connections == 0


async def test_slow_subscriber_is_evicted(fake_websocket):
    monitor = HealthMonitor()
    hub = BroadcastHub(queue_size=4, monitor=monitor)
    slow = fake_websocket(stall=True)
    fast = fake_websocket()

    async def snapshot():
        return {}

    slow_task = asyncio.create_task(hub.serve(slow, snapshot))
    fast_task = asyncio.create_task(hub.serve(fast, snapshot))
    await wait_for(lambda: hub.active_connections == 2 and fast.sent and slow.sent)

    # The slow socket hangs on its first live event, its queue fills up
    for i in range(6):
        hub.publish("heartbeat", {"n": i})
        await asyncio.sleep(0.01)

    await asyncio.wait_for(slow_task, 2)
    assert slow.closed_with == EVICTED_CLOSE_CODE
    assert hub.active_connections == 1
    assert monitor.errors_by_type["subscriber_evicted"] == 1

    await wait_for(lambda: len(fast.sent) == 7)
    assert [m["data"]["n"] for m in fast.sent[1:]] == list(range(6))

    fast.hang_up()
    await asyncio.wait_for(fast_task, 2)


async def test_replies_share_the_subscriber_queue(fake_websocket):
    hub = BroadcastHub()
    ws = fake_websocket()

    async def snapshot():
        return {}

    async def on_message(data):
        return {"event": "echo", "data": data}

    task = asyncio.create_task(hub.serve(ws, snapshot, on_message))
    ws.feed(json.dumps({"action": "ping"}))
    ws.feed("not json")
    await wait_for(lambda: len(ws.sent) == 3)
    assert ws.sent[1] == {"event": "echo", "data": {"action": "ping"}}
    assert ws.sent[2]["event"] == "error"

    ws.hang_up()
    await asyncio.wait_for(task, 2)


def test_publish_without_subscribers_is_a_noop():
    BroadcastHub().publish("heartbeat", {"deviceId": "DEV1"})
