import threading

import pytest

from accesshub.commands import CommandQueue, PendingCommand, validate_command
from accesshub.errors import ValidationError
from accesshub.schemas import CommandRequest


def test_enroll_with_empty_name_is_rejected():
    request = CommandRequest(device_id="DEV1", kind="enroll", target_user_id=3, name="")
    with pytest.raises(ValidationError) as exc_info:
        validate_command(request)
    assert [e["field"] for e in exc_info.value.errors] == ["name"]


def test_validation_lists_every_problem():
    with pytest.raises(ValidationError) as exc_info:
        validate_command(CommandRequest(kind="launch"))
    assert {e["field"] for e in exc_info.value.errors} == {"deviceId", "kind"}
    assert exc_info.value.to_dict()["success"] is False


def test_valid_commands_are_normalized():
    command = validate_command(CommandRequest.model_validate(
        {"deviceId": " DEV1 ", "kind": "ENROLL", "userId": 3, "name": " An ", "phone": ""}
    ))
    assert (command.device_id, command.kind, command.target_user_id, command.name, command.phone) == (
        "DEV1", "enroll", 3, "An", None
    )
    assert validate_command(CommandRequest(device_id="DEV1", kind="clear")).kind == "clear"


def test_take_consumes_the_command():
    queue = CommandQueue()
    command = PendingCommand(device_id="DEV1", kind="getstatus")
    assert queue.submit(command) is None
    assert queue.take("DEV1") == command
    assert queue.take("DEV1") is None


def test_newer_submit_supersedes_pending_command():
    queue = CommandQueue()
    first = PendingCommand(device_id="DEV1", kind="delete", target_user_id=4)
    second = PendingCommand(device_id="DEV1", kind="clear")
    queue.submit(first)
    assert queue.submit(second) == first
    assert queue.pending() == [second]


def test_acknowledge_only_clears_the_same_command():
    queue = CommandQueue()
    first = PendingCommand(device_id="DEV1", kind="clear")
    queue.submit(first)
    second = PendingCommand(device_id="DEV1", kind="getstatus")
    queue.submit(second)
    assert queue.acknowledge("DEV1", first.command_id) is False
    assert queue.peek("DEV1") == second
    assert queue.acknowledge("DEV1", second.command_id) is True
    assert queue.peek("DEV1") is None


def test_concurrent_takes_deliver_exactly_once():
    for _ in range(50):
        queue = CommandQueue()
        queue.submit(PendingCommand(device_id="DEV1", kind="getstatus"))
        barrier = threading.Barrier(2)
        results = []

        def take():
            barrier.wait()
            results.append(queue.take("DEV1"))

        threads = [threading.Thread(target=take) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(result is not None for result in results) == 1


def test_wire_format_skips_empty_fields():
    wire = PendingCommand(device_id="DEV1", kind="enroll", target_user_id=3, name="An").to_wire()
    assert wire["kind"] == "enroll"
    assert wire["targetUserId"] == 3
    assert wire["name"] == "An"
    assert "phone" not in wire and "cardId" not in wire


async def test_dispatcher_queues_without_push_channel(services):
    result = await services.dispatcher.submit(CommandRequest(device_id="DEV1", kind="getstatus"))
    assert result.success is True
    assert result.channel == "queued"

    pulled = services.dispatcher.take("DEV1")
    assert pulled["commandId"] == result.command_id
    assert services.dispatcher.take("DEV1") == {"kind": "none"}


async def test_dispatcher_logs_superseded_command(services):
    await services.dispatcher.submit(CommandRequest(device_id="DEV1", kind="delete", target_user_id=4))
    await services.dispatcher.submit(CommandRequest(device_id="DEV1", kind="clear"))

    logs = await services.synchronizer.recent_system_logs(device_id="DEV1")
    assert len(logs) == 1
    assert logs[0].category == "system"
    assert "superseded" in logs[0].message
    assert services.dispatcher.take("DEV1")["kind"] == "clear"


class FakeDeviceChannels:
    def __init__(self, online):
        self.online = online
        self.sent = []

    async def send_personal_message(self, device_id, message):
        if not self.online:
            return False
        self.sent.append((device_id, message))
        return True


class FakeMqtt:
    def __init__(self, connected=True):
        self.connected = connected
        self.published = []

    def is_connected(self):
        return self.connected

    def publish_message(self, topic, payload, qos=1):
        self.published.append((topic, payload))
        return True


async def test_push_prefers_mqtt_then_websocket(services):
    dispatcher = services.dispatcher
    dispatcher.mqtt = FakeMqtt(connected=True)
    dispatcher.device_channels = FakeDeviceChannels(online=True)

    result = await dispatcher.submit(CommandRequest(device_id="DEV1", kind="getstatus"))
    assert result.channel == "mqtt"
    assert dispatcher.mqtt.published[0][0] == "fingerprint/DEV1/command"
    assert services.commands.peek("DEV1") is None

    dispatcher.mqtt.connected = False
    result = await dispatcher.submit(CommandRequest(device_id="DEV1", kind="clear"))
    assert result.channel == "websocket"
    assert dispatcher.device_channels.sent[0][1]["kind"] == "clear"
    assert services.commands.peek("DEV1") is None


async def test_pending_commands_are_redelivered(services):
    await services.dispatcher.submit(CommandRequest(device_id="DEV1", kind="getstatus"))
    await services.dispatcher.submit(CommandRequest(device_id="DEV2", kind="clear"))

    services.dispatcher.mqtt = FakeMqtt(connected=True)
    assert await services.dispatcher.redeliver_pending() == 2
    assert services.commands.pending() == []
