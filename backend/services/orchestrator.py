"""
Session Orchestrator — inbound command handling and phase scheduling.

Phase cycle per session:
  waiting → voting → playing → waiting (loops)
                             → complete (the winning branch was an ending)
  waiting → complete directly when voting is started on an ending node.

Every transition of one session runs under that session's asyncio.Lock, so two
simultaneous "last votes" resolve the round exactly once. The lock is never
held across the playback wait: the playing → waiting/complete step is a
separate background task that re-acquires it.

Rejected requests raise OperationRejected before any state changes; the
transport turns that into an ``error`` frame for the requesting connection.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, Protocol, Set

from models.messages import (
    CastVote, CloseVoting, CreateSession, InboundCommand, JoinSession, Ping,
    StartVoting, VideoEnded,
)
from models.session import Phase, SessionSnapshot, VoteResult
from services.errors import OperationRejected
from services.join_code import JoinCodeRenderer, no_join_code, render_join_code
from services.playback import FixedDelayPlayback, PlaybackPolicy
from services.session_registry import SessionRegistry
from services.story_graph import StoryGraph
from services.voting import VotingCoordinator

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """What the orchestrator needs from the real-time transport."""

    async def send_to(self, connection_id: str, message: Dict[str, Any]) -> None: ...

    async def broadcast(self, session_id: str, message: Dict[str, Any]) -> None: ...

    def join_room(self, session_id: str, connection_id: str) -> None: ...

    def leave_room(self, connection_id: str) -> Optional[str]: ...

    def session_of(self, connection_id: str) -> Optional[str]: ...

    def connection_count(self) -> int: ...


class SessionOrchestrator:
    def __init__(
        self,
        graph: StoryGraph,
        registry: SessionRegistry,
        voting: VotingCoordinator,
        notifier: Notifier,
        *,
        playback: Optional[PlaybackPolicy] = None,
        results_reveal_seconds: float = 3.0,
        join_code_renderer: JoinCodeRenderer = no_join_code,
    ):
        self.graph = graph
        self.registry = registry
        self.voting = voting
        self.notifier = notifier
        self.playback = playback or FixedDelayPlayback()
        self.results_reveal_seconds = results_reveal_seconds
        self._join_code_renderer = join_code_renderer
        self._locks: Dict[str, asyncio.Lock] = {}
        self._hosts: Dict[str, str] = {}  # session_id → host connection_id
        self._tasks: Set[asyncio.Task] = set()

    # ── Bookkeeping ───────────────────────────────────────────────────────────

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def forget_sessions(self, session_ids: Iterable[str]) -> None:
        """Drop per-session bookkeeping for sessions the registry has reaped."""
        for session_id in session_ids:
            self._locks.pop(session_id, None)
            self._hosts.pop(session_id, None)

    def host_of(self, session_id: str) -> Optional[str]:
        return self._hosts.get(session_id)

    async def shutdown(self) -> None:
        """Cancel scheduled playback tasks (process shutdown only)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait until every scheduled playback task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _require_session(self, connection_id: str) -> str:
        session_id = self.notifier.session_of(connection_id)
        if not session_id:
            raise OperationRejected("Not in a session")
        if not self.registry.exists(session_id):
            raise OperationRejected("Session not found")
        return session_id

    def _require_host(self, connection_id: str) -> str:
        session_id = self._require_session(connection_id)
        if self._hosts.get(session_id) != connection_id:
            raise OperationRejected("Only the host can control this session")
        return session_id

    # ── Command dispatch ──────────────────────────────────────────────────────

    async def handle(self, connection_id: str, command: InboundCommand) -> None:
        if isinstance(command, Ping):
            await self.notifier.send_to(connection_id, {"type": "pong"})

        elif isinstance(command, CreateSession):
            await self.create_session(connection_id)

        elif isinstance(command, JoinSession):
            await self.join_session(connection_id, command.session_id)

        elif isinstance(command, StartVoting):
            await self.start_voting(connection_id)

        elif isinstance(command, CastVote):
            await self.vote(connection_id, command.session_id, command.option_id)

        elif isinstance(command, CloseVoting):
            await self.close_voting(connection_id)

        elif isinstance(command, VideoEnded):
            await self.video_ended(connection_id, command.node_id)

        else:
            raise OperationRejected(f"Unsupported command: {type(command).__name__}")

    # ── Handlers ──────────────────────────────────────────────────────────────

    async def create_session(self, connection_id: str) -> str:
        await self._leave_current(connection_id)
        created = self.registry.create()
        self._hosts[created.session_id] = connection_id
        self.notifier.join_room(created.session_id, connection_id)

        await self.notifier.send_to(connection_id, {
            "type": "sessionCreated",
            "sessionId": created.session_id,
            "joinUrl": created.join_url,
            "qrCodeDataUrl": render_join_code(self._join_code_renderer, created.join_url),
        })
        logger.info(f"[{created.session_id}] Session created by {connection_id}")
        return created.session_id

    async def join_session(self, connection_id: str, session_id: str) -> None:
        if not self.registry.exists(session_id):
            raise OperationRejected("Session not found")
        if self.notifier.session_of(connection_id) != session_id:
            await self._leave_current(connection_id)

        if not self.registry.add_participant(session_id, connection_id):
            raise OperationRejected("Session not found")
        self.notifier.join_room(session_id, connection_id)

        snapshot = self.registry.get(session_id)
        if snapshot is None:
            raise OperationRejected("Session not found")
        await self.notifier.send_to(connection_id, {
            "type": "sessionJoined",
            "sessionId": session_id,
            "currentPhase": snapshot.phase.value,
            "currentVideoNode": snapshot.current_node_id,
        })
        await self._broadcast_user_count(session_id)
        logger.info(
            f"[{session_id}] {connection_id} joined ({snapshot.participant_count} total)"
        )

    async def start_voting(self, connection_id: str) -> None:
        session_id = self._require_host(connection_id)
        async with self._lock_for(session_id):
            snapshot = self._snapshot_or_reject(session_id)
            if snapshot.phase != Phase.WAITING:
                raise OperationRejected(
                    f"Cannot start voting while the session is {snapshot.phase.value}"
                )

            node_id = snapshot.current_node_id
            if self.graph.is_ending(node_id):
                self.registry.set_phase(session_id, Phase.COMPLETE)
                await self._broadcast_story_complete(session_id, node_id)
                return

            if snapshot.participant_count == 0:
                raise OperationRejected("Cannot start voting with no participants connected")
            options = self.graph.get_options(node_id)
            if not options:
                raise OperationRejected("No voting options available for this node")

            self.voting.reset_for_next_round(session_id)
            self.registry.set_phase(session_id, Phase.VOTING)
            node = self.graph.get_node(node_id)
            await self.notifier.broadcast(session_id, {
                "type": "votingStarted",
                "options": [opt.to_public() for opt in options],
                "nodeTitle": node.title if node else None,
            })
        logger.info(f"[{session_id}] Voting started on {node_id}")

    async def vote(self, connection_id: str, session_id: str, option_id: str) -> None:
        snapshot = self._snapshot_or_reject(session_id)
        if snapshot.phase != Phase.VOTING:
            raise OperationRejected("Votes can only be cast while voting is open")
        valid_ids = {opt.id for opt in self.graph.get_options(snapshot.current_node_id)}
        if option_id not in valid_ids:
            raise OperationRejected(f"'{option_id}' is not a valid option")
        if not self.voting.cast_vote(session_id, connection_id, option_id):
            raise OperationRejected("Failed to record vote")

        after = self.registry.get(session_id)
        if after is None:
            return
        vote_count, total_users = len(after.votes), after.participant_count
        await self.notifier.send_to(connection_id, {
            "type": "voteRecorded",
            "voteCount": vote_count,
            "totalUsers": total_users,
        })
        logger.info(f"[{session_id}] Vote recorded: {vote_count}/{total_users}")

        if total_users > 0 and vote_count >= total_users:
            await self.resolve_round(session_id)

    async def close_voting(self, connection_id: str) -> None:
        session_id = self._require_host(connection_id)
        snapshot = self._snapshot_or_reject(session_id)
        if snapshot.phase != Phase.VOTING:
            raise OperationRejected("Voting is not open")
        if snapshot.participant_count == 0:
            await self._cancel_round(session_id)
            return
        # With no ballots in, the tie-break picks among all options
        await self.resolve_round(session_id, force=True)

    async def video_ended(self, connection_id: str, node_id: str) -> None:
        session_id = self._require_host(connection_id)
        if not self.playback.video_ended(session_id, node_id):
            logger.debug(f"[{session_id}] videoEnded ignored: nothing waiting on {node_id or 'any node'}")

    async def disconnect(self, connection_id: str) -> None:
        session_id = await self._leave_current(connection_id)
        if session_id:
            logger.info(
                f"[{session_id}] {connection_id} disconnected "
                f"({self.registry.participant_count(session_id)} remaining)"
            )

    async def _leave_current(self, connection_id: str) -> Optional[str]:
        session_id = self.notifier.leave_room(connection_id)
        if not session_id:
            return None
        if self.registry.remove_participant(session_id, connection_id):
            await self._broadcast_user_count(session_id)
            # The remaining participants may now all have voted
            await self.resolve_round(session_id)
        return session_id

    # ── Phase transitions ─────────────────────────────────────────────────────

    async def resolve_round(self, session_id: str, force: bool = False) -> Optional[VoteResult]:
        """voting → playing. Without ``force`` only fires once everyone present has voted."""
        async with self._lock_for(session_id):
            snapshot = self.registry.get(session_id)
            if snapshot is None or snapshot.phase != Phase.VOTING:
                return None
            if not force and (
                snapshot.participant_count == 0 or len(snapshot.votes) < snapshot.participant_count
            ):
                return None

            options = self.graph.get_options(snapshot.current_node_id)
            result = self.voting.tally(session_id, options)
            if result is None:
                return None

            next_node_id = result.winning_option.next_node_id
            if self.graph.get_node(next_node_id) is None:
                logger.error(
                    f"[{session_id}] Winning option {result.winning_option.id} points to "
                    f"missing node {next_node_id}, abandoning round"
                )
                self.registry.set_phase(session_id, Phase.WAITING)
                await self.notifier.broadcast(session_id, {
                    "type": "error",
                    "message": "The chosen branch is unavailable",
                    "code": "MISSING_NODE",
                })
                return None

            self.registry.set_phase(session_id, Phase.PLAYING)
            self.registry.advance_to(session_id, next_node_id)
            await self.notifier.broadcast(session_id, {
                "type": "votingResults",
                "winningOption": result.winning_option.to_public(),
                "voteBreakdown": [entry.to_public() for entry in result.vote_breakdown],
            })
            logger.info(
                f"[{session_id}] Voting results: "
                f"{[(e.option_id, e.votes) for e in result.vote_breakdown]} → {next_node_id}"
            )

        self._spawn(self._play_and_settle(session_id, next_node_id))
        return result

    async def _cancel_round(self, session_id: str) -> None:
        """voting → waiting when every voter has left. The node stays where it is."""
        async with self._lock_for(session_id):
            snapshot = self.registry.get(session_id)
            if snapshot is None or snapshot.phase != Phase.VOTING:
                return
            self.registry.clear_votes(session_id)
            self.registry.set_phase(session_id, Phase.WAITING)
            await self.notifier.broadcast(session_id, {
                "type": "votingCancelled",
                "reason": "No participants remain",
            })
        logger.info(f"[{session_id}] Voting cancelled, no participants remain")

    async def _play_and_settle(self, session_id: str, node_id: str) -> None:
        try:
            await asyncio.sleep(self.results_reveal_seconds)
            video_url = self.graph.video_ref(node_id)
            if video_url:
                await self.notifier.broadcast(session_id, {
                    "type": "playVideo",
                    "videoUrl": video_url,
                    "nodeId": node_id,
                })
                logger.info(f"[{session_id}] Playing video: {video_url}")
            await self.playback.wait_for_end(session_id, node_id)
            await self._settle(session_id, node_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"[{session_id}] Playback scheduling failed")

    async def _settle(self, session_id: str, node_id: str) -> None:
        """playing → complete (ending reached) or playing → waiting."""
        async with self._lock_for(session_id):
            snapshot = self.registry.get(session_id)
            if snapshot is None:
                logger.info(f"[{session_id}] Session expired during playback")
                return
            if snapshot.phase != Phase.PLAYING or snapshot.current_node_id != node_id:
                return
            if self.graph.is_ending(node_id):
                self.registry.set_phase(session_id, Phase.COMPLETE)
                await self._broadcast_story_complete(session_id, node_id)
            else:
                self.registry.set_phase(session_id, Phase.WAITING)

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _snapshot_or_reject(self, session_id: str) -> SessionSnapshot:
        snapshot = self.registry.get(session_id)
        if snapshot is None:
            raise OperationRejected("Session not found")
        return snapshot

    async def _broadcast_user_count(self, session_id: str) -> None:
        await self.notifier.broadcast(session_id, {
            "type": "userCountUpdate",
            "count": self.registry.participant_count(session_id),
        })

    async def _broadcast_story_complete(self, session_id: str, ending_node_id: str) -> None:
        snapshot = self.registry.get(session_id)
        story_path = list(snapshot.story_path) if snapshot else []
        await self.notifier.broadcast(session_id, {
            "type": "storyComplete",
            "endingNodeId": ending_node_id,
            "storyPath": story_path,
        })
        logger.info(f"[{session_id}] Story complete at {ending_node_id}: {story_path}")

    # ── Monitoring ────────────────────────────────────────────────────────────

    def stats(self) -> Dict[str, Any]:
        return {
            "activeSessions": self.registry.active_count(),
            "connectedClients": self.notifier.connection_count(),
            "sessions": self.registry.session_stats(),
            "storyStats": self.graph.stats(),
        }
