"""
Voting coordinator — ballot collection and tallying on top of the registry.

Pure in-memory logic, no I/O. Ties on the top count are broken uniformly at
random with the injected ``random.Random`` so a seeded instance replays the
same winners.
"""
import logging
import random
from typing import Dict, Optional, Sequence

from models.session import OptionVotes, Phase, VoteResult
from models.story import VotingOption
from services.session_registry import SessionRegistry, SessionState

logger = logging.getLogger(__name__)


class VotingCoordinator:
    def __init__(self, registry: SessionRegistry, rng: Optional[random.Random] = None):
        self._registry = registry
        self._rng = rng or random.Random()

    def cast_vote(self, session_id: str, participant_id: str, option_id: str) -> bool:
        """Record (or overwrite) a participant's ballot. Only accepted during voting."""

        def _cast(state: SessionState) -> bool:
            if state.phase != Phase.VOTING:
                logger.warning(
                    f"[{session_id}] Vote rejected: session is {state.phase.value}, not voting"
                )
                return False
            if participant_id not in state.participants:
                logger.warning(f"[{session_id}] Vote rejected: {participant_id} is not a participant")
                return False
            state.votes[participant_id] = option_id
            return True

        accepted = bool(self._registry.transact(session_id, _cast))
        if accepted:
            logger.debug(f"[{session_id}] Vote recorded: {participant_id} -> {option_id}")
        return accepted

    def vote_count(self, session_id: str) -> int:
        return self._registry.transact(session_id, lambda s: len(s.votes)) or 0

    def has_voted(self, session_id: str, participant_id: str) -> bool:
        return bool(self._registry.transact(session_id, lambda s: participant_id in s.votes))

    def tally(self, session_id: str, options: Sequence[VotingOption]) -> Optional[VoteResult]:
        """Count ballots per option and pick the winner.

        Ballots naming an option outside ``options`` are ignored, so the
        breakdown always sums to ``total_votes``. Returns None if the session
        does not exist or there is nothing to vote on.
        """
        ballots = self._registry.transact(session_id, lambda s: list(s.votes.values()))
        if ballots is None or not options:
            return None

        counts: Dict[str, int] = {opt.id: 0 for opt in options}
        for option_id in ballots:
            if option_id in counts:
                counts[option_id] += 1

        top = max(counts[opt.id] for opt in options)
        tied = [opt for opt in options if counts[opt.id] == top]
        winner = tied[0] if len(tied) == 1 else self._rng.choice(tied)
        if len(tied) > 1:
            logger.info(
                f"[{session_id}] Tie between {[o.id for o in tied]} at {top} vote(s), "
                f"randomly selected {winner.id}"
            )

        breakdown = [OptionVotes(option_id=opt.id, votes=counts[opt.id]) for opt in options]
        return VoteResult(
            winning_option=winner,
            vote_breakdown=breakdown,
            total_votes=sum(entry.votes for entry in breakdown),
        )

    def reset_for_next_round(self, session_id: str) -> None:
        if self._registry.clear_votes(session_id):
            logger.debug(f"[{session_id}] Votes cleared")

    def voting_stats(self, session_id: str) -> Dict[str, float]:
        def _stats(state: SessionState) -> Dict[str, float]:
            total_users = len(state.participants)
            total_votes = len(state.votes)
            rate = (total_votes / total_users) * 100 if total_users else 0
            return {"totalUsers": total_users, "totalVotes": total_votes, "participationRate": rate}

        return self._registry.transact(session_id, _stats) or {
            "totalUsers": 0, "totalVotes": 0, "participationRate": 0,
        }
