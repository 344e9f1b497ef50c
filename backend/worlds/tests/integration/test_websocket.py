"""Integration tests for the world and lobby endpoints over the Starlette test client."""

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from worlds.messaging.router import NOT_FOUND_CLOSE_CODE, REJECTED_CLOSE_CODE
from worlds.server.app import create_app
from worlds.server.settings import HubServerSettings
from worlds.server.websocket import HANDSHAKE_TIMEOUT_CLOSE_CODE
from worlds.tests.helpers import make_registry

TOWN = "world-town-1"
ICEPEAK = "world-icepeak-1"


def world_url(slug: str, user_id: str, world_id: str, **params) -> str:
    query = "&".join(f"{k}={v}" for k, v in {"userId": user_id, "worldId": world_id, **params}.items())
    return f"/worlds/{slug}?{query}"


def join_world(ws, user_id: str, **fields) -> list[dict]:
    """Send joinWorld and return the confirmation and player list."""
    ws.send_json({"type": "joinWorld", "userID": user_id, **fields})
    confirmed = ws.receive_json()
    player_list = ws.receive_json()
    assert confirmed["type"] == "worldJoinedConfirmed"
    assert player_list["type"] == "playerList"
    return [confirmed, player_list]


@pytest.fixture
def app():
    settings = HubServerSettings(handshake_timeout_seconds=0.5)
    return create_app(settings=settings, registry=make_registry())


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


class TestWorldWebSocket:
    def test_join_and_receive_player_list(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN, zone="plaza")) as ws:
            confirmed, player_list = join_world(ws, "alice", username="Alice", x=1, y=2)

        assert confirmed["worldId"] == TOWN
        assert confirmed["zoneId"] == "plaza"
        assert player_list["players"] == []

    def test_peers_see_each_other(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as alice:
            join_world(alice, "alice", username="Alice")
            with client.websocket_connect(world_url("town", "bob", TOWN)) as bob:
                _, player_list = join_world(bob, "bob", username="Bob")
                joined = alice.receive_json()

                assert [p["userID"] for p in player_list["players"]] == ["alice"]
                assert joined["type"] == "playerJoined"
                assert joined["userID"] == "bob"

    def test_chat_echoes_to_sender_and_peers(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as alice:
            join_world(alice, "alice")
            with client.websocket_connect(world_url("town", "bob", TOWN)) as bob:
                join_world(bob, "bob")
                assert alice.receive_json()["type"] == "playerJoined"

                bob.send_json({"type": "chatMessage", "message": "hi all"})

                expected = {"type": "chatMessage", "userID": "bob", "message": "hi all"}
                assert bob.receive_json() == expected
                assert alice.receive_json() == expected

    def test_update_reaches_peers(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as alice:
            join_world(alice, "alice")
            with client.websocket_connect(world_url("town", "bob", TOWN)) as bob:
                join_world(bob, "bob")
                alice.receive_json()  # playerJoined

                bob.send_json({"type": "updatePlayer", "x": 7, "appearance": {"hat": "red"}})

                assert alice.receive_json() == {
                    "type": "playerUpdate",
                    "userID": "bob",
                    "x": 7,
                    "appearance": {"hat": "red"},
                }

    def test_disconnect_notifies_peers(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as alice:
            join_world(alice, "alice")
            with client.websocket_connect(world_url("town", "bob", TOWN)) as bob:
                join_world(bob, "bob")
                alice.receive_json()  # playerJoined

            left = alice.receive_json()

        assert left == {"type": "playerLeft", "userID": "bob", "reason": "disconnected"}

    def test_unknown_world_refused_before_accept(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(world_url("atlantis", "alice", TOWN)):
                pass

        assert exc_info.value.code == NOT_FOUND_CLOSE_CODE

    def test_world_id_mismatch_rejected(self, client):
        with client.websocket_connect(world_url("town", "alice", ICEPEAK)) as ws:
            error = ws.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert error["code"] == "invalid_handshake"
        assert exc_info.value.code == REJECTED_CLOSE_CODE

    def test_missing_user_id_rejected(self, client):
        with client.websocket_connect(f"/worlds/town?worldId={TOWN}") as ws:
            error = ws.receive_json()

        assert error == {"type": "error", "code": "invalid_handshake", "message": "invalid_handshake"}

    def test_full_world_rejects_third_player(self, client):
        with (
            client.websocket_connect(world_url("icepeak", "a", ICEPEAK)) as a,
            client.websocket_connect(world_url("icepeak", "b", ICEPEAK)) as b,
        ):
            join_world(a, "a")
            join_world(b, "b")
            with client.websocket_connect(world_url("icepeak", "c", ICEPEAK)) as c:
                c.send_json({"type": "joinWorld", "userID": "c"})
                error = c.receive_json()
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    c.receive_json()

        assert error["code"] == "world_full"
        assert exc_info.value.code == REJECTED_CLOSE_CODE

    def test_same_identity_in_two_worlds_rejected(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as first:
            join_world(first, "alice")
            with client.websocket_connect(world_url("icepeak", "alice", ICEPEAK)) as second:
                second.send_json({"type": "joinWorld", "userID": "alice"})
                error = second.receive_json()

        assert error["code"] == "duplicate_identity"

    def test_handshake_timeout_closes_connection(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == HANDSHAKE_TIMEOUT_CLOSE_CODE

    def test_malformed_frame_keeps_connection_open(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as ws:
            join_world(ws, "alice")
            ws.send_text("{broken")
            error = ws.receive_json()
            ws.send_json({"type": "ping"})
            pong = ws.receive_json()

        assert error["code"] == "invalid_message"
        assert pong == {"type": "pong"}

    def test_leave_world_closes_normally(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as ws:
            join_world(ws, "alice")
            ws.send_json({"type": "leaveWorld"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 1000


class TestLobbyWebSocket:
    def test_receives_world_list_on_connect(self, client):
        with client.websocket_connect("/game-api/worlds") as lobby:
            message = lobby.receive_json()

        assert message["type"] == "worldList"
        assert [w["id"] for w in message["worlds"]] == ["world-fireplane-1", ICEPEAK, TOWN]
        assert all(w["population"] == 0 for w in message["worlds"])

    def test_receives_update_on_join_and_leave(self, client):
        with client.websocket_connect("/game-api/worlds") as lobby:
            lobby.receive_json()  # worldList
            with client.websocket_connect(world_url("icepeak", "alice", ICEPEAK)) as ws:
                join_world(ws, "alice")
                joined_update = lobby.receive_json()
            left_update = lobby.receive_json()

        assert joined_update["type"] == "worldListUpdate"
        icepeak = next(w for w in joined_update["worlds"] if w["id"] == ICEPEAK)
        assert icepeak["population"] == 1
        assert icepeak["fullness"] == 0.5
        assert all(w["population"] == 0 for w in left_update["worlds"])

    def test_ping_and_refresh(self, client):
        with client.websocket_connect("/game-api/worlds") as lobby:
            lobby.receive_json()  # worldList
            lobby.send_json({"type": "ping"})
            pong = lobby.receive_json()
            lobby.send_json({"type": "getWorlds"})
            refreshed = lobby.receive_json()

        assert pong == {"type": "pong"}
        assert refreshed["type"] == "worldList"

    def test_invalid_lobby_message(self, client):
        with client.websocket_connect("/game-api/worlds") as lobby:
            lobby.receive_json()  # worldList
            lobby.send_json({"type": "joinWorld"})
            error = lobby.receive_json()

        assert error["code"] == "invalid_message"


class TestHttpEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_list_worlds(self, client):
        response = client.get("/game-api/worlds")

        assert response.status_code == 200
        worlds = response.json()["worlds"]
        assert [w["path"] for w in worlds] == ["/worlds/fireplane", "/worlds/icepeak", "/worlds/town"]
        assert worlds[1] == {
            "id": ICEPEAK,
            "name": "World-Icepeak-1",
            "path": "/worlds/icepeak",
            "population": 0,
            "capacity": 2,
            "fullness": 0.0,
            "meta": {"tag": "ice"},
        }

    def test_list_worlds_reflects_membership(self, client):
        with client.websocket_connect(world_url("town", "alice", TOWN)) as ws:
            join_world(ws, "alice")
            worlds = client.get("/game-api/worlds").json()["worlds"]

        assert next(w for w in worlds if w["id"] == TOWN)["population"] == 1

    def test_status(self, client):
        body = client.get("/status").json()

        assert body["worlds"] == 3
        assert body["players_online"] == 0


class TestAppLifecycle:
    def test_app_state_exposes_live_rooms(self, app):
        with TestClient(app) as client, client.websocket_connect(world_url("town", "alice", TOWN)) as ws:
            join_world(ws, "alice")
            room = app.state.registry.get(TOWN)
            assert room.population == 1

    def test_builds_registry_from_config(self, tmp_path):
        config = tmp_path / "worlds.yaml"
        config.write_text("worlds:\n  - id: world-a\n    name: A\n    path: /worlds/a\n")
        app = create_app(settings=HubServerSettings(config_path=config, default_capacity=4))

        with TestClient(app) as client:
            worlds = client.get("/game-api/worlds").json()["worlds"]

        assert worlds == [
            {
                "id": "world-a",
                "name": "A",
                "path": "/worlds/a",
                "population": 0,
                "capacity": 4,
                "fullness": 0.0,
                "meta": {},
            },
        ]
