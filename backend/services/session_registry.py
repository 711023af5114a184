"""
Session registry — the single owner of every live viewing/voting room.

Locking:
  - ``_lock`` guards the session collection itself (insert, delete, full scans).
  - each SessionState carries its own ``lock`` serializing that session's
    mutations, so work on different sessions never contends.
Lookups read the dict without the collection lock; a session deleted by the
reaper mid-operation simply reports as absent on the next call.

Callers only ever receive SessionSnapshot copies.
"""
import asyncio
import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, TypeVar

from models.session import CreatedSession, Phase, SessionSnapshot, _utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL = timedelta(hours=2)
DEFAULT_REAP_INTERVAL_SECONDS = 10 * 60


def new_session_id() -> str:
    """64 bits of entropy, URL-safe alphabet (11 characters)."""
    return secrets.token_urlsafe(8)


class SessionState:
    """Mutable per-session record. Only touched while ``lock`` is held."""

    __slots__ = (
        "session_id", "created_at", "participants", "votes",
        "phase", "current_node_id", "story_path", "lock",
    )

    def __init__(self, session_id: str, created_at: datetime, start_node_id: str):
        self.session_id = session_id
        self.created_at = created_at
        self.participants: Set[str] = set()
        self.votes: Dict[str, str] = {}
        self.phase = Phase.WAITING
        self.current_node_id = start_node_id
        self.story_path: List[str] = [start_node_id]
        self.lock = threading.RLock()

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            created_at=self.created_at,
            participants=frozenset(self.participants),
            votes=dict(self.votes),
            phase=self.phase,
            current_node_id=self.current_node_id,
            story_path=tuple(self.story_path),
        )


class SessionRegistry:
    def __init__(
        self,
        start_node_id: str,
        *,
        client_url: str = "http://localhost:5173",
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = new_session_id,
    ):
        self._start_node_id = start_node_id
        self._client_url = client_url.rstrip("/")
        self._ttl = ttl
        self._clock = clock
        self._id_factory = id_factory
        self._sessions: Dict[str, SessionState] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def join_url(self, session_id: str) -> str:
        return f"{self._client_url}/session/{session_id}"

    def create(self) -> CreatedSession:
        with self._lock:
            session_id = self._id_factory()
            while session_id in self._sessions:
                session_id = self._id_factory()
            self._sessions[session_id] = SessionState(
                session_id, self._clock(), self._start_node_id
            )
        return CreatedSession(session_id=session_id, join_url=self.join_url(session_id))

    def reap_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Delete every session older than the TTL. Returns the deleted ids."""
        now = now or self._clock()
        with self._lock:
            expired = [
                sid for sid, state in self._sessions.items()
                if now - state.created_at >= self._ttl
            ]
            for sid in expired:
                del self._sessions[sid]
        for sid in expired:
            logger.info(f"[{sid}] Cleaned up expired session")
        return expired

    async def run_reaper(
        self,
        interval_seconds: float = DEFAULT_REAP_INTERVAL_SECONDS,
        on_reaped: Optional[Callable[[List[str]], None]] = None,
    ) -> None:
        """Sweep expired sessions every ``interval_seconds`` until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                expired = self.reap_expired()
                if expired and on_reaped:
                    on_reaped(expired)
            except Exception:
                logger.exception("Session reaper sweep failed")

    # ── Reads ─────────────────────────────────────────────────────────────────

    def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[SessionSnapshot]:
        return self.transact(session_id, SessionState.snapshot)

    def participant_count(self, session_id: str) -> int:
        count = self.transact(session_id, lambda s: len(s.participants))
        return count or 0

    def active_count(self) -> int:
        return len(self._sessions)

    def session_stats(self) -> List[Dict[str, object]]:
        with self._lock:
            states = list(self._sessions.values())
        stats = []
        for state in states:
            with state.lock:
                stats.append({
                    "sessionId": state.session_id,
                    "participantCount": len(state.participants),
                    "phase": state.phase.value,
                })
        return stats

    # ── Mutations ─────────────────────────────────────────────────────────────

    def transact(self, session_id: str, fn: Callable[[SessionState], T]) -> Optional[T]:
        """Run ``fn`` against the session while holding its lock.

        Returns None when the session does not exist. ``fn`` must not keep a
        reference to the state past its own return.
        """
        state = self._sessions.get(session_id)
        if state is None:
            return None
        with state.lock:
            return fn(state)

    def add_participant(self, session_id: str, participant_id: str) -> bool:
        def _add(state: SessionState) -> bool:
            state.participants.add(participant_id)
            return True

        return bool(self.transact(session_id, _add))

    def remove_participant(self, session_id: str, participant_id: str) -> bool:
        def _remove(state: SessionState) -> bool:
            state.participants.discard(participant_id)
            state.votes.pop(participant_id, None)
            return True

        return bool(self.transact(session_id, _remove))

    def set_phase(self, session_id: str, phase: Phase) -> bool:
        def _set(state: SessionState) -> bool:
            if state.phase != phase:
                logger.info(f"[{session_id}] Phase: {state.phase.value} → {phase.value}")
            state.phase = phase
            return True

        return bool(self.transact(session_id, _set))

    def advance_to(self, session_id: str, node_id: str) -> bool:
        def _advance(state: SessionState) -> bool:
            state.current_node_id = node_id
            state.story_path.append(node_id)
            return True

        return bool(self.transact(session_id, _advance))

    def clear_votes(self, session_id: str) -> bool:
        def _clear(state: SessionState) -> bool:
            state.votes.clear()
            return True

        return bool(self.transact(session_id, _clear))
