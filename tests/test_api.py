import asyncio
import random

import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import build_playback_policy, create_app
from routers.ws_router import ConnectionManager
from services.errors import StoryLoadError
from services.playback import FixedDelayPlayback, PlaybackPolicy, PlaybackSignal
from tests.helpers.fakes import make_graph


def _settings(tmp_path, **overrides) -> Settings:
    values = {
        "video_dir": str(tmp_path / "no-videos"),
        "client_url": "https://watch.example.com",
        "results_reveal_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


def _make_app(tmp_path):
    return create_app(
        _settings(tmp_path),
        graph=make_graph(),
        rng=random.Random(1),
        playback=FixedDelayPlayback(0),
    )


def _receive_until(ws, msg_type: str, limit: int = 20) -> dict:
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == msg_type:
            return message
    raise AssertionError(f"{msg_type} not received")


def test_health(tmp_path) -> None:
    with TestClient(_make_app(tmp_path)) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_full_round_over_websocket(tmp_path) -> None:
    with TestClient(_make_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as host, client.websocket_connect("/ws") as voter:
            assert host.receive_json()["type"] == "connected"
            voter_id = voter.receive_json()["connectionId"]

            host.send_json({"type": "createSession"})
            created = _receive_until(host, "sessionCreated")
            sid = created["sessionId"]
            assert created["joinUrl"] == f"https://watch.example.com/session/{sid}"

            voter.send_json({"type": "joinSession", "data": {"sessionId": sid}})
            joined = _receive_until(voter, "sessionJoined")
            assert joined["currentPhase"] == "waiting"
            assert _receive_until(host, "userCountUpdate")["count"] == 1

            session = client.get(f"/api/sessions/{sid}").json()
            assert session["participantCount"] == 1
            assert session["nodeTitle"] == "The Crossroads"
            assert voter_id not in str(session)

            host.send_json({"type": "startVoting"})
            started = _receive_until(voter, "votingStarted")
            assert [o["id"] for o in started["options"]] == ["A", "B"]

            voter.send_json({"type": "vote", "data": {"sessionId": sid, "optionId": "B"}})
            recorded = _receive_until(voter, "voteRecorded")
            assert recorded == {"type": "voteRecorded", "voteCount": 1, "totalUsers": 1}

            results = _receive_until(host, "votingResults")
            assert results["winningOption"]["id"] == "B"
            play = _receive_until(host, "playVideo")
            assert play == {"type": "playVideo", "videoUrl": "/videos/b.mp4", "nodeId": "branch_b"}
            complete = _receive_until(host, "storyComplete")
            assert complete["storyPath"] == ["intro", "branch_b"]

            stats = client.get("/api/stats").json()
            assert stats["activeSessions"] == 1
            assert stats["connectedClients"] == 2
            assert stats["sessions"] == [{"sessionId": sid, "participantCount": 1, "phase": "complete"}]
            assert stats["storyStats"]["totalNodes"] == 3


def test_websocket_errors_go_to_requester(tmp_path) -> None:
    with TestClient(_make_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()

            ws.send_text("{not json")
            assert ws.receive_json()["code"] == "PARSE_ERROR"

            ws.send_json({"type": "teleport"})
            assert ws.receive_json()["code"] == "INVALID_COMMAND"

            ws.send_json({"type": "joinSession", "data": {}})
            assert ws.receive_json()["code"] == "INVALID_COMMAND"

            ws.send_json({"type": "joinSession", "data": {"sessionId": "missing"}})
            error = ws.receive_json()
            assert error == {"type": "error", "message": "Session not found", "code": "REJECTED"}

            ws.send_json({"type": "startVoting"})
            assert ws.receive_json()["message"] == "Not in a session"

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}


def test_disconnect_updates_user_count(tmp_path) -> None:
    with TestClient(_make_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as host:
            host.receive_json()
            host.send_json({"type": "createSession"})
            sid = _receive_until(host, "sessionCreated")["sessionId"]

            with client.websocket_connect("/ws") as voter:
                voter.receive_json()
                voter.send_json({"type": "joinSession", "data": {"sessionId": sid}})
                _receive_until(voter, "sessionJoined")
                assert _receive_until(host, "userCountUpdate")["count"] == 1

            assert _receive_until(host, "userCountUpdate")["count"] == 0
            assert client.get(f"/api/sessions/{sid}").json()["participantCount"] == 0


def test_unknown_session_lookup_is_404(tmp_path) -> None:
    with TestClient(_make_app(tmp_path)) as client:
        response = client.get("/api/sessions/nope")

    assert response.status_code == 404


def test_unloadable_story_aborts_startup(tmp_path) -> None:
    app = create_app(_settings(tmp_path, story_config_path=str(tmp_path / "missing.json")))

    with pytest.raises(StoryLoadError):
        with TestClient(app):
            pass


def test_playback_policy_from_settings(tmp_path) -> None:
    fixed = build_playback_policy(_settings(tmp_path, playback_settle_seconds=12))
    signal = build_playback_policy(_settings(tmp_path, playback_policy="signal"))

    assert isinstance(fixed, FixedDelayPlayback) and fixed.seconds == 12
    assert isinstance(signal, PlaybackSignal)


def test_playback_policy_requires_wait_for_end() -> None:
    class Incomplete(PlaybackPolicy):
        pass

    with pytest.raises(TypeError):
        Incomplete()


class _FakeSocket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def accept(self) -> None:
        pass

    async def send_json(self, message) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)


def test_broadcast_reaches_every_room_member() -> None:
    manager = ConnectionManager()
    host, voter, broken, outsider = _FakeSocket(), _FakeSocket(), _FakeSocket(fail=True), _FakeSocket()

    async def scenario():
        ids = [await manager.connect(ws) for ws in (host, voter, broken, outsider)]
        for cid in ids[:3]:
            manager.join_room("s1", cid)
        await manager.broadcast("s1", {"type": "userCountUpdate", "count": 2})
        return ids

    ids = asyncio.run(scenario())

    assert host.sent == voter.sent == [{"type": "userCountUpdate", "count": 2}]
    assert outsider.sent == []
    # A failed send keeps room membership so the session can still drop the participant
    assert manager.session_of(ids[2]) == "s1"
