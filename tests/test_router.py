import json

import pytest

from rover_relay.registry import Role
from rover_relay.rover_command import RoverCommandBridge
from rover_relay.ws_server import MessageRouter

from conftest import FakeClock, FakeSink, make_connection, run, sent


@pytest.fixture
def bridge():
    return RoverCommandBridge(FakeSink(), topic="quest/rover/control", clock=FakeClock())


@pytest.fixture
def router(registry, bridge):
    return MessageRouter(registry, bridge)


def handle(router, connection, data):
    raw = data if isinstance(data, str) else json.dumps(data)
    run(router.handle(connection, raw))


def right_hand_input(x, y):
    return {"inputs": [{"handedness": "right", "axes": [0, 0, x, y]}]}


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"url": "http://x"}', '{"type": 5}'])
def test_malformed_messages_get_error_reply(router, registry, raw):
    conn = make_connection()
    handle(router, conn, raw)

    assert sent(conn)[-1]["type"] == "error"
    assert conn.role == Role.UNASSIGNED
    assert conn.websocket.close_calls == []
    assert registry.camera_url is None


def test_unknown_type_is_named_in_error(router):
    conn = make_connection()
    handle(router, conn, {"type": "make_coffee"})
    assert sent(conn) == [{"type": "error", "message": "Unknown command: make_coffee"}]


def test_set_url_then_new_viewer_gets_proxied_url(router):
    config = make_connection("config")
    handle(router, config, {"type": "register_mobile_configurator"})
    handle(router, config, {"type": "set_camera_url", "url": "http://X"})

    viewer = make_connection("viewer")
    handle(router, viewer, {"type": "register_quest_viewer"})

    assert sent(viewer) == [{"type": "ip_webcam_url_update", "url": "http://X", "useProxy": True}]


def test_legacy_set_message_name_is_accepted(router, registry):
    config = make_connection("config")
    handle(router, config, {"type": "register_mobile_configurator"})
    handle(router, config, {"type": "set_ip_webcam_url", "url": "http://legacy"})
    assert registry.camera_url == "http://legacy"


def test_setting_same_url_twice_broadcasts_twice(router):
    config = make_connection("config")
    viewer = make_connection("viewer")
    handle(router, config, {"type": "register_mobile_configurator"})
    handle(router, viewer, {"type": "register_quest_viewer"})

    handle(router, config, {"type": "set_camera_url", "url": "http://X"})
    handle(router, config, {"type": "set_camera_url", "url": "http://X"})

    updates = [m for m in sent(viewer) if m["type"] == "ip_webcam_url_update"]
    assert len(updates) == 2
    assert updates[0] == updates[1]
    assert not any(m["type"] == "error" for m in sent(config))


def test_ftp_url_rejected(router, registry):
    config = make_connection("config")
    handle(router, config, {"type": "register_mobile_configurator"})
    handle(router, config, {"type": "set_camera_url", "url": "ftp://x"})

    assert sent(config)[-1] == {
        "type": "error",
        "message": "Invalid URL format. Must start with http:// or https://",
    }
    assert registry.camera_url is None


def test_viewer_cannot_set_url(router, registry):
    viewer = make_connection("viewer")
    handle(router, viewer, {"type": "register_quest_viewer"})
    handle(router, viewer, {"type": "set_camera_url", "url": "http://X"})

    assert sent(viewer)[-1] == {"type": "error", "message": "Not authorized to set URL"}
    assert registry.camera_url is None
    assert viewer.is_open


def test_controller_input_echoed_to_sender_only(router, bridge):
    viewer = make_connection("viewer")
    other = make_connection("other")
    handle(router, viewer, {"type": "register_quest_viewer"})
    handle(router, other, {"type": "register_quest_viewer"})

    msg = {"type": "controller_input", "input": right_hand_input(0, -0.5)}
    handle(router, viewer, msg)

    assert sent(viewer)[-1] == msg
    assert sent(other) == [{"type": "no_stream_url_set"}]
    assert bridge.sink.published == [("quest/rover/control", "MOVE_FORWARD")]


def test_controller_input_requires_viewer(router, bridge):
    conn = make_connection()
    handle(router, conn, {"type": "controller_input", "input": right_hand_input(0, -0.5)})

    assert sent(conn)[-1]["type"] == "error"
    assert bridge.sink.published == []


def test_controller_input_without_usable_stick_is_still_echoed(router, bridge):
    viewer = make_connection("viewer")
    handle(router, viewer, {"type": "register_quest_viewer"})
    msg = {"type": "controller_input", "input": {"inputs": []}}
    handle(router, viewer, msg)

    assert sent(viewer)[-1] == msg
    assert bridge.sink.published == []


def test_rover_stick_input_forwarded_without_reply(router, bridge):
    viewer = make_connection("viewer")
    handle(router, viewer, {"type": "register_quest_viewer"})
    handle(router, viewer, {"type": "rover_stick_input", "input": {"pressed": True, "x": 0.5, "y": -1}})

    assert len(sent(viewer)) == 1
    topic, payload = bridge.sink.published[0]
    assert json.loads(payload) == {"pressed": True, "x": 0.5, "y": -1.0}


def test_rover_stick_input_rejects_bad_payload(router, bridge):
    viewer = make_connection("viewer")
    handle(router, viewer, {"type": "register_quest_viewer"})
    handle(router, viewer, {"type": "rover_stick_input", "input": {"pressed": True, "x": "left"}})

    assert sent(viewer)[-1]["type"] == "error"
    assert bridge.sink.published == []


def test_rover_command(router, bridge):
    viewer = make_connection("viewer")
    handle(router, viewer, {"type": "register_quest_viewer"})
    handle(router, viewer, {"type": "rover_command", "command": "TURN_LEFT_ON_SPOT"})
    handle(router, viewer, {"type": "rover_command", "command": "JUMP"})

    assert bridge.sink.published == [("quest/rover/control", "TURN_LEFT_ON_SPOT")]
    assert sent(viewer)[-1] == {"type": "error", "message": "Unknown rover command: JUMP"}


def test_stats_count_failures(router):
    conn = make_connection()
    handle(router, conn, "garbage")
    handle(router, conn, {"type": "rover_command", "command": "STOP"})

    stats = router.get_stats()
    assert stats["total_messages"] == 2
    assert stats["invalid_messages"] == 1
    assert stats["unauthorized_messages"] == 1


def test_oversized_axis_rejected_and_connection_survives(router, registry, bridge):
    viewer = make_connection("viewer")
    handle(router, viewer, {"type": "register_quest_viewer"})
    handle(router, viewer, '{"type": "rover_stick_input", "input": {"x": 1%s, "y": 0}}' % ("0" * 400))
    handle(router, viewer, {"type": "nope"})

    assert sent(viewer)[-2] == {"type": "error", "message": "Axis value out of range"}
    assert sent(viewer)[-1] == {"type": "error", "message": "Unknown command: nope"}
    assert viewer.websocket.close_calls == []
    assert registry.viewers() == [viewer]
    assert bridge.sink.published == []


def test_unexpected_handler_error_is_reported_and_logged(registry, caplog):
    class BrokenSink(FakeSink):
        async def publish(self, topic, payload):
            raise RuntimeError("sink exploded")

    router = MessageRouter(registry, RoverCommandBridge(BrokenSink(), clock=FakeClock()))
    viewer = make_connection("viewer")
    handle(router, viewer, {"type": "register_quest_viewer"})
    handle(router, viewer, {"type": "rover_command", "command": "STOP"})
    handle(router, viewer, {"type": "register_quest_viewer"})

    assert sent(viewer)[1] == {"type": "error", "message": "Internal error handling message"}
    assert sent(viewer)[2] == {"type": "no_stream_url_set"}
    assert router.get_stats()["failed_messages"] == 1
    records = [r for r in caplog.records if r.exc_info and r.name == "rover_relay.ws_server"]
    assert records and isinstance(records[0].exc_info[1], RuntimeError)
