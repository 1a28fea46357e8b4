"""WebSocket endpoint tests through Starlette's TestClient.

Learn: TestClient runs the app (lifespan included) on a portal event
loop in a background thread. Store and dispatcher coroutines are called
on that same loop through client.portal.call(), so the test can create
notifications and dispatch them while a socket is open.

A ping/pong round trip is used as a barrier: the server reads frames in
order, so once the pong arrives every earlier frame has been handled.
"""

import time

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from fakes import make_event, make_token


@pytest.fixture()
def ws_client(app):
    with TestClient(app) as client:
        yield client


def sync_barrier(ws) -> None:
    ws.send_json({"type": "ping"})
    while ws.receive_json()["type"] != "pong":
        pass


def wait_for_presence(client, registry, recipient_id, expected, timeout=2.0):
    """Session teardown finishes on the portal loop after the socket closes."""
    deadline = time.monotonic() + timeout
    while True:
        current = client.portal.call(registry.list_instances, recipient_id)
        if current == expected or time.monotonic() > deadline:
            return current
        time.sleep(0.01)


def test_invalid_token_rejected_with_4001(ws_client):
    with ws_client.websocket_connect("/ws/notifications?token=garbage") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4001


def test_expired_token_rejected_with_4002(ws_client):
    token = make_token("u1", minutes=-5)
    with ws_client.websocket_connect(f"/ws/notifications?token={token}") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4002


def test_backlog_delivered_on_connect(ws_client, store):
    """Notifications created while offline arrive, oldest first, on connect."""
    first, _ = ws_client.portal.call(store.create, make_event("u1", event_id="a"))
    second, _ = ws_client.portal.call(store.create, make_event("u1", event_id="b"))

    with ws_client.websocket_connect(f"/ws/notifications?token={make_token('u1')}") as ws:
        frames = [ws.receive_json(), ws.receive_json()]
        sync_barrier(ws)

    assert [f["type"] for f in frames] == ["notification", "notification"]
    assert [f["data"]["id"] for f in frames] == [str(first.id), str(second.id)]
    assert frames[0]["data"]["message"] == "ann liked your post"
    assert ws_client.portal.call(store.list_undelivered, "u1") == []


def test_bearer_header_authentication(ws_client, store):
    n, _ = ws_client.portal.call(store.create, make_event("u1"))
    headers = {"Authorization": f"Bearer {make_token('u1')}"}

    with ws_client.websocket_connect("/ws/notifications", headers=headers) as ws:
        assert ws.receive_json()["data"]["id"] == str(n.id)


def test_first_frame_authentication(ws_client, store):
    n, _ = ws_client.portal.call(store.create, make_event("u1"))

    with ws_client.websocket_connect("/ws/notifications") as ws:
        ws.send_json({"type": "auth", "token": make_token("u1")})
        assert ws.receive_json()["data"]["id"] == str(n.id)


def test_binary_frame_keeps_session_open(ws_client):
    with ws_client.websocket_connect(f"/ws/notifications?token={make_token('u1')}") as ws:
        ws.send_bytes(b"\x00\x01")
        assert ws.receive_json() == {"type": "error", "detail": "Invalid frame"}
        sync_barrier(ws)


def test_live_dispatch_and_read_ack(ws_client, runtime, store):
    with ws_client.websocket_connect(f"/ws/notifications?token={make_token('u1')}") as ws:
        sync_barrier(ws)

        n, created = ws_client.portal.call(store.create, make_event("u1", "mention"))
        assert created
        assert ws_client.portal.call(runtime.dispatcher.dispatch, n) == "relayed"

        frame = ws.receive_json()
        assert frame["type"] == "notification"
        assert frame["data"]["id"] == str(n.id)
        assert frame["data"]["priority"] == "HIGH"

        ws.send_json({"type": "ack", "id": str(n.id), "status": "read"})
        sync_barrier(ws)

    stored = ws_client.portal.call(store.get, n.id, "u1")
    assert stored.read_at is not None
    assert stored.delivered_at is not None


def test_offline_then_reconnect_scenario(ws_client, runtime, store, registry):
    """Dispatch while offline keeps the row; the next connect replays it."""
    n, _ = ws_client.portal.call(store.create, make_event("u1", "comment"))
    assert ws_client.portal.call(runtime.dispatcher.dispatch, n) == "backlog"
    assert ws_client.portal.call(registry.list_instances, "u1") == set()

    with ws_client.websocket_connect(f"/ws/notifications?token={make_token('u1')}") as ws:
        assert ws.receive_json()["data"]["id"] == str(n.id)
        sync_barrier(ws)
        assert ws_client.portal.call(registry.list_instances, "u1") == {"instance-a"}

    # presence dropped when the last socket closes
    assert wait_for_presence(ws_client, registry, "u1", set()) == set()


def test_two_tabs_share_presence(ws_client, runtime, store, registry):
    token = make_token("u1")
    with ws_client.websocket_connect(f"/ws/notifications?token={token}") as tab1:
        with ws_client.websocket_connect(f"/ws/notifications?token={token}") as tab2:
            sync_barrier(tab1)
            sync_barrier(tab2)
            assert runtime.connections.connection_count == 2

            n, _ = ws_client.portal.call(store.create, make_event("u1"))
            ws_client.portal.call(runtime.dispatcher.dispatch, n)
            assert tab1.receive_json()["data"]["id"] == str(n.id)
            assert tab2.receive_json()["data"]["id"] == str(n.id)

        sync_barrier(tab1)
        assert ws_client.portal.call(registry.list_instances, "u1") == {"instance-a"}
    assert wait_for_presence(ws_client, registry, "u1", set()) == set()
