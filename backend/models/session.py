from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Tuple

from pydantic import BaseModel, ConfigDict

from models.story import VotingOption


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    WAITING = "waiting"
    VOTING = "voting"
    PLAYING = "playing"
    COMPLETE = "complete"


class SessionSnapshot(BaseModel):
    """Read-only copy of a session handed out by the registry."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    created_at: datetime
    participants: FrozenSet[str]
    votes: Dict[str, str]
    phase: Phase
    current_node_id: str
    story_path: Tuple[str, ...]

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    def to_public(self) -> Dict[str, Any]:
        """Safe representation; omits participant ids and individual ballots."""
        return {
            "sessionId": self.session_id,
            "createdAt": self.created_at.isoformat(),
            "participantCount": self.participant_count,
            "voteCount": len(self.votes),
            "phase": self.phase.value,
            "currentNodeId": self.current_node_id,
            "storyPath": list(self.story_path),
        }


class CreatedSession(BaseModel):
    session_id: str
    join_url: str


class OptionVotes(BaseModel):
    option_id: str
    votes: int

    def to_public(self) -> Dict[str, Any]:
        return {"optionId": self.option_id, "votes": self.votes}


class VoteResult(BaseModel):
    winning_option: VotingOption
    vote_breakdown: List[OptionVotes]
    total_votes: int
