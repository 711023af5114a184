from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class NodeType(str, Enum):
    DECISION = "decision"
    ENDING = "ending"


class VotingOption(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    text: str
    next_node_id: str = Field(alias="nextNodeId")

    def to_public(self) -> dict:
        return {"id": self.id, "text": self.text, "nextNodeId": self.next_node_id}


class StoryNode(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    video_file: str = Field(alias="videoFile")
    type: NodeType
    options: List[VotingOption] = []
    title: Optional[str] = None


class StoryConfig(BaseModel):
    """Story configuration document, as written in story-config.json."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    nodes: List[StoryNode]
    start_node_id: str = Field(alias="startNodeId")
