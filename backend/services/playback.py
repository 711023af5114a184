"""
Playback policies — how long the orchestrator waits after ``playVideo`` before
deciding whether the story continues or has ended.

FixedDelayPlayback   sleeps a fixed number of seconds (the default).
PlaybackSignal       waits for the host's ``videoEnded`` message, falling back
                     to a timeout so a vanished host cannot stall a session.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Tuple

logger = logging.getLogger(__name__)


class PlaybackPolicy(ABC):
    @abstractmethod
    async def wait_for_end(self, session_id: str, node_id: str) -> None:
        """Return once the video for ``node_id`` is considered finished."""

    def video_ended(self, session_id: str, node_id: str) -> bool:
        """Playback-finished signal from the client. Returns True if it was consumed."""
        return False


class FixedDelayPlayback(PlaybackPolicy):
    def __init__(self, seconds: float = 30.0):
        self.seconds = seconds

    async def wait_for_end(self, session_id: str, node_id: str) -> None:
        await asyncio.sleep(self.seconds)


class PlaybackSignal(PlaybackPolicy):
    def __init__(self, timeout_seconds: float = 300.0):
        self.timeout_seconds = timeout_seconds
        self._pending: Dict[Tuple[str, str], asyncio.Event] = {}

    async def wait_for_end(self, session_id: str, node_id: str) -> None:
        key = (session_id, node_id)
        event = self._pending.setdefault(key, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"[{session_id}] No videoEnded for {node_id} after {self.timeout_seconds}s, continuing"
            )
        finally:
            self._pending.pop(key, None)

    def video_ended(self, session_id: str, node_id: str) -> bool:
        # An empty node id ends whatever the session is currently playing
        matched = [
            event for (sid, nid), event in self._pending.items()
            if sid == session_id and (not node_id or nid == node_id)
        ]
        for event in matched:
            event.set()
        return bool(matched)
