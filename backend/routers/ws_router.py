"""
WebSocket Hub — real-time connection management for viewing/voting rooms.

URL: /ws

Connection flow:
  1. Accept connection → assign a server-generated connection id
  2. Send private "connected" message carrying that id
  3. Message loop (frames parsed into typed commands, handed to the orchestrator)
  4. On disconnect: orchestrator drops the participant (and their ballot),
     then the socket is forgotten

Client → server message types:
  ping            — keep-alive heartbeat → responds with "pong"
  createSession   — host opens a new room (the host joins its room, not the voter set)
  joinSession     — voter joins a room          { sessionId }
  startVoting     — host opens a vote on the current node
  vote            — voter picks an option       { sessionId, optionId }
  closeVoting     — host tallies early with the ballots already in
  videoEnded      — host reports playback finished { nodeId? }

Server → client frames are flat JSON objects with a "type" field; see
services/orchestrator.py for the session events.
"""
import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from models.messages import parse_command
from services.errors import OperationRejected
from services.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


# ── Connection Manager ─────────────────────────────────────────────────────────

class ConnectionManager:
    """
    Tracks active WebSocket connections and which session room each belongs to.
    A connection is in at most one room at a time.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}
        # {session_id: {connection_id, ...}}
        self._rooms: Dict[str, set] = {}
        self._membership: Dict[str, str] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, ws: WebSocket) -> str:
        await ws.accept()
        connection_id = str(uuid.uuid4())
        self._sockets[connection_id] = ws
        logger.debug(f"{connection_id} connected ({self.connection_count()} total)")
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self.leave_room(connection_id)
        self._sockets.pop(connection_id, None)

    def connection_count(self) -> int:
        return len(self._sockets)

    # ── Rooms ──────────────────────────────────────────────────────────────────

    def join_room(self, session_id: str, connection_id: str) -> None:
        current = self._membership.get(connection_id)
        if current and current != session_id:
            self.leave_room(connection_id)
        self._rooms.setdefault(session_id, set()).add(connection_id)
        self._membership[connection_id] = session_id

    def leave_room(self, connection_id: str) -> Optional[str]:
        session_id = self._membership.pop(connection_id, None)
        if session_id:
            room = self._rooms.get(session_id, set())
            room.discard(connection_id)
            if not room:
                self._rooms.pop(session_id, None)
        return session_id

    def session_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(self, connection_id: str, message: Dict[str, Any]) -> None:
        """Send a private message to a single connection."""
        ws = self._sockets.get(connection_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"send_to {connection_id} failed: {exc}")
                self._sockets.pop(connection_id, None)

    async def broadcast(self, session_id: str, message: Dict[str, Any]) -> None:
        """Broadcast a message to every connection in a session room."""
        for cid in list(self._rooms.get(session_id, ())):
            ws = self._sockets.get(cid)
            if ws is None:
                continue
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning(f"[{session_id}] broadcast to {cid} failed: {exc}")
                self._sockets.pop(cid, None)


def _error(message: str, code: str) -> Dict[str, Any]:
    return {"type": "error", "message": message, "code": code}


# ── WebSocket endpoint ─────────────────────────────────────────────────────────

@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    orchestrator: SessionOrchestrator = ws.app.state.orchestrator
    manager: ConnectionManager = ws.app.state.connections

    connection_id = await manager.connect(ws)
    await manager.send_to(connection_id, {"type": "connected", "connectionId": connection_id})

    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(connection_id, _error("Invalid JSON", "PARSE_ERROR"))
                continue
            if not isinstance(data, dict):
                await manager.send_to(connection_id, _error("Expected a JSON object", "PARSE_ERROR"))
                continue
            await _handle_message(orchestrator, manager, connection_id, data)

    except WebSocketDisconnect:
        pass
    finally:
        try:
            await orchestrator.disconnect(connection_id)
        except Exception:
            logger.exception("Error while disconnecting %s", connection_id)
        manager.disconnect(connection_id)


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(
    orchestrator: SessionOrchestrator,
    manager: ConnectionManager,
    connection_id: str,
    data: Dict[str, Any],
) -> None:
    msg_type = data.get("type", "")
    try:
        command = parse_command(data)
    except ValidationError as exc:
        logger.debug("Invalid command from %s: %s", connection_id, exc)
        await manager.send_to(
            connection_id, _error(f"Invalid or unknown message: '{msg_type}'", "INVALID_COMMAND")
        )
        return

    try:
        await orchestrator.handle(connection_id, command)
    except WebSocketDisconnect:
        raise
    except OperationRejected as exc:
        logger.info("Rejected %s from %s: %s", msg_type, connection_id, exc)
        await manager.send_to(connection_id, _error(str(exc), "REJECTED"))
    except Exception:
        logger.exception("Unhandled error in _handle_message (type=%s)", msg_type)
        await manager.send_to(connection_id, _error("Internal server error", "SERVER_ERROR"))
