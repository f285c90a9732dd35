import time


def wait_until(fetch, timeout=3.0):
    deadline = time.monotonic() + timeout
    while True:
        result = fetch()
        if result:
            return result
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.02)


def test_http_ingest_persists_access_log(client):
    response = client.post("/device/DEV1/access", content=b'{"id":7,"granted":true}')
    assert response.status_code == 202
    assert response.json() == {"status": "accepted", "type": "access", "deviceId": "DEV1"}

    logs = wait_until(lambda: client.get("/api/logs/access").json())
    assert len(logs) == 1
    assert {k: logs[0][k] for k in ("deviceId", "userId", "userName", "granted")} == {
        "deviceId": "DEV1", "userId": 7, "userName": "Unknown", "granted": True,
    }
    assert "X-Request-ID" in response.headers


def test_unparseable_body_is_still_accepted(client):
    response = client.post("/device/DEV1/access", content=b"<<not json>>")
    assert response.status_code == 202
    assert response.json()["type"] == "unclassified"


def test_non_finite_user_id_is_accepted(client):
    response = client.post("/device/DEV1/access", content=b'{"id": 1e999}')
    assert response.status_code == 202
    assert response.json()["type"] == "access"

    logs = wait_until(lambda: client.get("/api/logs/access").json())
    assert logs[0]["userId"] == 0


def test_device_list_and_roster(client):
    client.post("/device/DEV1/status", json={"users": [{"id": 2, "name": "Binh"}, {"id": 1, "name": "An"}]})

    users = wait_until(lambda: client.get("/api/devices/DEV1/users").json())
    assert [(u["userId"], u["name"]) for u in users] == [(1, "An"), (2, "Binh")]

    devices = client.get("/api/devices").json()
    assert [(d["deviceId"], d["status"]) for d in devices] == [("DEV1", "online")]


def test_log_queries_filter_and_limit(client):
    for device_id in ("DEV1", "DEV2", "DEV2"):
        client.post(f"/device/{device_id}/device-event", json={"message": f"boot {device_id}"})

    wait_until(lambda: len(client.get("/api/logs/system").json()) == 3)
    assert len(client.get("/api/logs/system", params={"device_id": "DEV2"}).json()) == 2
    assert len(client.get("/api/logs/system", params={"limit": 1}).json()) == 1

    response = client.get("/api/logs/access", params={"limit": 0})
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_enroll_without_name_is_rejected(client):
    response = client.post("/api/commands", json={"deviceId": "DEV1", "kind": "enroll", "targetUserId": 3, "name": ""})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert [e["field"] for e in body["errors"]] == ["name"]
    assert client.get("/api/commands/pending").json() == []


def test_command_is_pulled_exactly_once(client):
    response = client.post("/api/commands", json={"deviceId": "DEV1", "kind": "delete", "targetUserId": 4})
    assert response.status_code == 200
    result = response.json()
    assert result["success"] is True
    assert result["channel"] == "queued"

    pending = client.get("/api/commands/pending").json()
    assert [c["commandId"] for c in pending] == [result["commandId"]]

    command = client.get("/device/DEV1/command").json()
    assert (command["kind"], command["targetUserId"]) == ("delete", 4)
    assert client.get("/device/DEV1/command").json() == {"kind": "none"}


def test_device_websocket_receives_pending_command(client):
    result = client.post("/api/commands", json={"deviceId": "DEV2", "kind": "getstatus"}).json()

    with client.websocket_connect("/ws/device/DEV2") as ws:
        command = ws.receive_json()
        assert command["commandId"] == result["commandId"]
        assert client.get("/device/DEV2/command").json() == {"kind": "none"}

        ws.send_text('{"type": "heartbeat", "ip": "10.1.1.9"}')
        devices = wait_until(lambda: client.get("/api/devices").json())
        assert devices[0]["deviceId"] == "DEV2"

        pushed = client.post("/api/commands", json={"deviceId": "DEV2", "kind": "clear"}).json()
        assert pushed["channel"] == "websocket"
        assert ws.receive_json()["kind"] == "clear"


def test_device_websocket_accepts_binary_frames(client):
    with client.websocket_connect("/ws/device/DEV7") as ws:
        ws.send_bytes(b'{"type": "heartbeat", "ip": "10.1.1.7"}')
        devices = wait_until(lambda: client.get("/api/devices").json())
        assert [(d["deviceId"], d["ip"]) for d in devices] == [("DEV7", "10.1.1.7")]

        ws.send_text('{"type": "access", "id": 4}')
        logs = wait_until(lambda: client.get("/api/logs/access").json())
        assert logs[0]["userId"] == 4


def test_dashboard_snapshot_includes_presence(client):
    client.post("/device/DEV1/heartbeat", json={"ip": "10.0.0.8", "rssi": -55})
    wait_until(lambda: client.get("/api/devices").json())

    with client.websocket_connect("/ws/updates") as ws:
        presence = ws.receive_json()["data"]["presence"]
    assert [(p["deviceId"], p["status"], p["signalStrength"]) for p in presence] == [("DEV1", "online", -55)]


def test_dashboard_gets_snapshot_then_live_events(client):
    with client.websocket_connect("/ws/updates") as ws:
        snapshot = ws.receive_json()
        assert snapshot["event"] == "snapshot"
        assert set(snapshot["data"]) == {"devices", "presence", "accessLogs", "systemLogs", "pendingCommands"}

        client.post("/device/DEV1/access", json={"id": 7, "granted": True})
        access = ws.receive_json()
        assert access["event"] == "access"
        assert (access["data"]["userId"], access["data"]["granted"]) == (7, True)

        persisted = [ws.receive_json(), ws.receive_json()]
        assert {m["event"] for m in persisted} == {"persisted"}
        assert [m["data"]["kind"] for m in persisted] == ["device", "access-log"]


def test_dashboard_can_submit_commands(client):
    with client.websocket_connect("/ws/updates") as ws:
        ws.receive_json()
        ws.send_json({"action": "command", "command": {"deviceId": "DEV1", "kind": "enroll", "targetUserId": 3}})
        reply = ws.receive_json()
        assert reply["event"] == "command-result"
        assert reply["data"]["success"] is False

        ws.send_json({"action": "command", "command": {"deviceId": "DEV1", "kind": "getstatus"}})
        events = [ws.receive_json(), ws.receive_json()]
        assert {e["event"] for e in events} == {"command-sent", "command-result"}


def test_template_endpoints(client):
    data = bytes(range(256)) * 2
    created = client.post("/api/templates", content=data)
    assert created.status_code == 201
    template_id = created.json()["templateId"]

    assert client.get(f"/api/templates/{template_id}").content == data
    assert client.post("/api/templates/match", content=data).json() == {"matched": True, "templateId": template_id}
    assert client.post("/api/templates/match", content=b"\x00" * 512).json()["matched"] is False

    assert client.put("/api/templates/T9", content=b"\x05" * 512).json()["templateId"] == "T9"
    assert client.post("/api/templates", content=b"\x01" * 10).status_code == 400
    assert client.get("/api/templates/missing").status_code == 404

    dump = b"\xff" * 256 + b"\x00" * 344
    assert client.post("/api/templates/extract", content=dump).status_code == 422

    dump = b"\xff" * 512 + b"\x00" * 88
    extracted = client.post("/api/templates/extract", params={"template_id": "T10"}, content=dump)
    assert extracted.status_code == 201
    assert extracted.json()["size"] == 512


def test_health_endpoints(client):
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["mqtt_connected"] is None

    detailed = client.get("/health/detailed").json()
    assert detailed["status"] in ("healthy", "degraded")
    assert "messages_by_type" in detailed["application"]

    assert client.get("/health/errors").json()["errors"] == []
