"""Wire messages exchanged between clients and the hub.

Each message is a JSON object tagged by ``type``. Payloads are validated
here, at the boundary, before anything touches the session.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from amidakuji.ladder import Rung
from amidakuji.session import Phase, SessionSnapshot


class RungModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1, max_length=64)
    rail_left: int = Field(alias="railLeft")
    rail_right: int = Field(alias="railRight")
    y: float = Field(allow_inf_nan=False)

    @classmethod
    def from_rung(cls, rung: Rung) -> RungModel:
        return cls(id=rung.id, rail_left=rung.rail_left, rail_right=rung.rail_right, y=rung.y)

    def to_rung(self) -> Rung:
        return Rung(id=self.id, rail_left=self.rail_left, rail_right=self.rail_right, y=self.y)


# ── Hub-bound ────────────────────────────────────────────────────────

class DrawLineEvent(BaseModel):
    type: Literal["drawLine"] = "drawLine"
    rung: RungModel


class FinishEvent(BaseModel):
    type: Literal["finish"] = "finish"


class ResetEvent(BaseModel):
    type: Literal["reset"] = "reset"


class RequestStateEvent(BaseModel):
    type: Literal["requestState"] = "requestState"


ClientEvent = Annotated[
    Union[DrawLineEvent, FinishEvent, ResetEvent, RequestStateEvent],
    Field(discriminator="type"),
]

_client_events: TypeAdapter = TypeAdapter(ClientEvent)


def parse_client_event(data: object) -> DrawLineEvent | FinishEvent | ResetEvent | RequestStateEvent:
    """Validate a raw hub-bound payload. Raises ``pydantic.ValidationError``."""
    return _client_events.validate_python(data)


# ── Client-bound ─────────────────────────────────────────────────────

class InitMessage(BaseModel):
    type: Literal["init"] = "init"
    rungs: list[RungModel] = Field(default_factory=list)
    phase: Phase = Phase.DRAWING
    version: int = 0


class NewLineMessage(BaseModel):
    type: Literal["newLine"] = "newLine"
    rung: RungModel
    version: int = 0


class ShowResultsMessage(BaseModel):
    """Carries the full rung set so a client that missed a line still agrees."""

    type: Literal["showResults"] = "showResults"
    rungs: list[RungModel] = Field(default_factory=list)
    version: int = 0


class ResetMessage(BaseModel):
    type: Literal["reset"] = "reset"
    version: int = 0


class StateUpdateMessage(BaseModel):
    type: Literal["stateUpdate"] = "stateUpdate"
    rungs: list[RungModel] = Field(default_factory=list)
    phase: Phase = Phase.DRAWING
    version: int = 0


class RejectedMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["rejected"] = "rejected"
    rung_id: str = Field(alias="rungId")
    reason: str
    message: str = ""


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str


ServerMessage = Annotated[
    Union[
        InitMessage,
        NewLineMessage,
        ShowResultsMessage,
        ResetMessage,
        StateUpdateMessage,
        RejectedMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_server_messages: TypeAdapter = TypeAdapter(ServerMessage)


def parse_server_message(data: object):
    """Validate a raw client-bound payload. Raises ``pydantic.ValidationError``."""
    return _server_messages.validate_python(data)


def dump(message: BaseModel) -> dict:
    """JSON-ready dict using the camelCase wire names."""
    return message.model_dump(mode="json", by_alias=True)


# ── Builders ─────────────────────────────────────────────────────────

def _rung_models(snapshot: SessionSnapshot) -> list[RungModel]:
    return [RungModel.from_rung(r) for r in snapshot.rungs]


def init_message(snapshot: SessionSnapshot) -> InitMessage:
    return InitMessage(rungs=_rung_models(snapshot), phase=snapshot.phase, version=snapshot.version)


def state_update_message(snapshot: SessionSnapshot) -> StateUpdateMessage:
    return StateUpdateMessage(
        rungs=_rung_models(snapshot), phase=snapshot.phase, version=snapshot.version,
    )


def show_results_message(snapshot: SessionSnapshot) -> ShowResultsMessage:
    return ShowResultsMessage(rungs=_rung_models(snapshot), version=snapshot.version)


def snapshot_from_message(message: InitMessage | StateUpdateMessage) -> SessionSnapshot:
    return SessionSnapshot(
        rungs=tuple(r.to_rung() for r in message.rungs),
        phase=message.phase,
        version=message.version,
    )
