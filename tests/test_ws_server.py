import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from rover_relay.mjpeg_proxy import MJPEGProxy
from rover_relay.registry import ConnectionRegistry
from rover_relay.rover_command import RoverCommandBridge
from rover_relay.ws_server import WebSocketServer

from conftest import FakeClock, FakeWebSocket, run


@pytest.fixture
def server(registry, sink):
    proxy = MJPEGProxy(lambda: registry.camera_url)
    bridge = RoverCommandBridge(sink, topic="quest/rover/control", clock=FakeClock())
    return WebSocketServer(registry, proxy, rover_bridge=bridge)


@pytest.fixture
def client(server):
    with TestClient(server.app) as client:
        yield client


def test_configurator_and_viewer_flow(client, registry):
    with client.websocket_connect("/") as mobile, client.websocket_connect("/") as quest:
        mobile.send_json({"type": "register_mobile_configurator"})
        assert mobile.receive_json() == {
            "type": "url_ack", "url": None, "message": "No URL set on server yet",
        }

        quest.send_json({"type": "register_quest_viewer"})
        assert quest.receive_json() == {"type": "no_stream_url_set"}

        mobile.send_json({"type": "set_camera_url", "url": "http://192.168.1.20:8080/video"})
        assert mobile.receive_json()["message"] == "URL successfully updated on server"
        assert quest.receive_json() == {
            "type": "ip_webcam_url_update",
            "url": "http://192.168.1.20:8080/video",
            "useProxy": True,
        }

    assert registry.camera_url == "http://192.168.1.20:8080/video"


def test_second_configurator_closes_first(client, registry):
    with client.websocket_connect("/") as first, client.websocket_connect("/ws") as second:
        first.send_json({"type": "register_mobile_configurator"})
        first.receive_json()

        second.send_json({"type": "register_mobile_configurator"})
        assert second.receive_json()["type"] == "url_ack"

        with pytest.raises(WebSocketDisconnect) as exc_info:
            first.receive_json()
        assert exc_info.value.code == 1000

        assert registry.configurator is not None
        assert registry.configurator.client_id == "client_2"


def test_bad_message_keeps_connection_open(client):
    with client.websocket_connect("/") as ws:
        ws.send_text("{not json")
        assert ws.receive_json() == {"type": "error", "message": "Invalid JSON format"}

        ws.send_json({"type": "register_quest_viewer"})
        assert ws.receive_json() == {"type": "no_stream_url_set"}


def test_controller_input_echo_and_forward(client, sink):
    controller = {
        "type": "controller_input",
        "input": {"inputs": [{"handedness": "right", "axes": [0, 0, 0.9, 0.0], "buttons": []}]},
    }
    with client.websocket_connect("/") as quest:
        quest.send_json({"type": "register_quest_viewer"})
        quest.receive_json()

        quest.send_json(controller)
        assert quest.receive_json() == controller

        # Replies are ordered per connection, so once this error arrives the
        # controller message has been fully handled.
        quest.send_json({"type": "ping"})
        assert quest.receive_json()["type"] == "error"

    assert sink.published == [("quest/rover/control", "TURN_RIGHT_ON_SPOT")]


def test_health_reports_stats(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["proxy"]["active_sessions"] == 0
    assert body["registry"]["camera_url"] is None


def test_receive_loop_cleans_up_and_stops_rover(server, registry, sink):
    websocket = FakeWebSocket(frames=[
        json.dumps({"type": "register_quest_viewer"}),
        json.dumps({"type": "rover_command", "command": "MOVE_FORWARD"}),
    ])

    run(server._handle_websocket(websocket))

    assert websocket.sent == [{"type": "no_stream_url_set"}]
    assert registry.viewers() == []
    assert [p for _, p in sink.published] == ["MOVE_FORWARD", "STOP"]
    assert server.get_stats()["connected_clients"] == 0


def test_static_files_mounted_when_present(tmp_path, registry):
    (tmp_path / "index.html").write_text("<html>relay</html>")
    proxy = MJPEGProxy(lambda: registry.camera_url)
    server = WebSocketServer(registry, proxy, static_dir=str(tmp_path))

    client = TestClient(server.app)
    assert client.get("/").text == "<html>relay</html>"
    assert client.get("/health").status_code == 200


def test_receive_loop_logs_traceback_and_still_cleans_up(server, registry, sink, caplog):
    websocket = FakeWebSocket(frames=[
        json.dumps({"type": "register_quest_viewer"}),
        json.dumps({"type": "anything"}),
    ])
    handle = server.router.handle

    async def failing_handle(connection, raw):
        if json.loads(raw)["type"] == "anything":
            raise RuntimeError("router bug")
        await handle(connection, raw)

    server.router.handle = failing_handle
    run(server._handle_websocket(websocket))

    records = [r for r in caplog.records if r.name == "rover_relay.ws_server" and r.exc_info]
    assert len(records) == 1
    assert isinstance(records[0].exc_info[1], RuntimeError)
    assert registry.viewers() == []
    assert [p for _, p in sink.published] == ["STOP"]
