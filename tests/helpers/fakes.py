from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from services.story_graph import StoryGraph


def two_branch_document() -> Dict[str, Any]:
    """intro (decision: A → branch_a, B → branch_b); both branches are endings."""
    return {
        "startNodeId": "intro",
        "nodes": [
            {
                "id": "intro",
                "videoFile": "intro.mp4",
                "type": "decision",
                "title": "The Crossroads",
                "options": [
                    {"id": "A", "text": "Go left", "nextNodeId": "branch_a"},
                    {"id": "B", "text": "Go right", "nextNodeId": "branch_b"},
                ],
            },
            {"id": "branch_a", "videoFile": "a.mp4", "type": "ending"},
            {"id": "branch_b", "videoFile": "b.mp4", "type": "ending"},
        ],
    }


def chain_document() -> Dict[str, Any]:
    """intro → middle (decision) → end_x / end_y."""
    return {
        "startNodeId": "intro",
        "nodes": [
            {
                "id": "intro",
                "videoFile": "intro.mp4",
                "type": "decision",
                "options": [{"id": "go", "text": "Continue", "nextNodeId": "middle"}],
            },
            {
                "id": "middle",
                "videoFile": "middle.mp4",
                "type": "decision",
                "title": "Halfway",
                "options": [
                    {"id": "x", "text": "X", "nextNodeId": "end_x"},
                    {"id": "y", "text": "Y", "nextNodeId": "end_y"},
                ],
            },
            {"id": "end_x", "videoFile": "x.mp4", "type": "ending"},
            {"id": "end_y", "videoFile": "y.mp4", "type": "ending"},
        ],
    }


def make_graph(document: Optional[Dict[str, Any]] = None) -> StoryGraph:
    return StoryGraph.from_document(document or two_branch_document())


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """In-memory stand-in for the WebSocket ConnectionManager."""

    def __init__(self):
        self.connections: Set[str] = set()
        self.rooms: Dict[str, Set[str]] = {}
        self.membership: Dict[str, str] = {}
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.broadcasts: List[Tuple[str, Dict[str, Any]]] = []

    async def send_to(self, connection_id: str, message: Dict[str, Any]) -> None:
        self.sent.append((connection_id, message))

    async def broadcast(self, session_id: str, message: Dict[str, Any]) -> None:
        self.broadcasts.append((session_id, message))

    def join_room(self, session_id: str, connection_id: str) -> None:
        self.connections.add(connection_id)
        self.leave_room(connection_id)
        self.rooms.setdefault(session_id, set()).add(connection_id)
        self.membership[connection_id] = session_id

    def leave_room(self, connection_id: str) -> Optional[str]:
        session_id = self.membership.pop(connection_id, None)
        if session_id:
            self.rooms.get(session_id, set()).discard(connection_id)
        return session_id

    def session_of(self, connection_id: str) -> Optional[str]:
        return self.membership.get(connection_id)

    def connection_count(self) -> int:
        return len(self.connections)

    # ── Assertions helpers ──

    def sent_to(self, connection_id: str, msg_type: str) -> List[Dict[str, Any]]:
        return [m for cid, m in self.sent if cid == connection_id and m["type"] == msg_type]

    def broadcast_types(self, session_id: str) -> List[str]:
        return [m["type"] for sid, m in self.broadcasts if sid == session_id]

    def last_broadcast(self, session_id: str, msg_type: str) -> Dict[str, Any]:
        matches = [m for sid, m in self.broadcasts if sid == session_id and m["type"] == msg_type]
        assert matches, f"no {msg_type} broadcast for {session_id}"
        return matches[-1]
