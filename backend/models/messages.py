"""
WebSocket message shapes.

Client → server frames look like ``{"type": "<command>", "data": {...}}``.
The inner ``data`` payload is merged with ``type`` and validated into one of
the command models below (a discriminated union on ``type``).

Server → client frames are flat: ``{"type": "<event>", ...camelCase fields}``.
"""
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Ping(_Command):
    type: Literal["ping"]


class CreateSession(_Command):
    type: Literal["createSession"]


class JoinSession(_Command):
    type: Literal["joinSession"]
    session_id: str = Field(alias="sessionId", min_length=1)


class StartVoting(_Command):
    type: Literal["startVoting"]


class CastVote(_Command):
    type: Literal["vote"]
    session_id: str = Field(alias="sessionId", min_length=1)
    option_id: str = Field(alias="optionId", min_length=1)


class CloseVoting(_Command):
    """Host closes the round early, tallying whatever ballots are in."""

    type: Literal["closeVoting"]


class VideoEnded(_Command):
    """Host reports that the current branch video finished playing."""

    type: Literal["videoEnded"]
    node_id: str = Field(alias="nodeId", default="")


InboundCommand = Annotated[
    Union[Ping, CreateSession, JoinSession, StartVoting, CastVote, CloseVoting, VideoEnded],
    Field(discriminator="type"),
]

_command_adapter: TypeAdapter = TypeAdapter(InboundCommand)


def parse_command(frame: Dict[str, Any]) -> InboundCommand:
    """Validate a decoded client frame. Raises pydantic.ValidationError."""
    inner = frame.get("data") if isinstance(frame.get("data"), dict) else {}
    return _command_adapter.validate_python({**inner, "type": frame.get("type")})
