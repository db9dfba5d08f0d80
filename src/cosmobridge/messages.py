"""
Inbound client messages.

A closed tagged union on the "type" field. Anything that does not validate
against one of the arms raises MalformedMessage, which the hub answers with
an error to the sender only.
"""
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .ble_protocol import Command, SetColor, SetLuminosity
from .errors import MalformedMessage

Byte = Annotated[int, Field(ge=0, le=0xFF)]


class _ClientMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GetDevices(_ClientMessage):
    type: Literal["getDevices"]


class Scan(_ClientMessage):
    type: Literal["scan"]


class Connect(_ClientMessage):
    type: Literal["connect"]
    deviceId: str = Field(min_length=1)


class SetColorMessage(_ClientMessage):
    type: Literal["setColor"]
    deviceId: str = Field(min_length=1)
    data: list[int] = Field(min_length=3)

    def to_command(self) -> Command:
        r, g, b = self.data[:3]
        return SetColor(r, g, b)


class SetLuminosityMessage(_ClientMessage):
    type: Literal["setLuminosity"]
    deviceId: str = Field(min_length=1)
    data: list[int] = Field(min_length=1)

    def to_command(self) -> Command:
        return SetLuminosity(self.data[0])


class SendEventMessage(_ClientMessage):
    """Generic command form: eventType names the command, data its arguments."""

    type: Literal["sendEvent"]
    deviceId: str = Field(min_length=1)
    eventType: str
    data: list[int] = Field(default_factory=list)

    def to_command(self) -> Command | None:
        """The framed command, or None for an unknown eventType or short data."""
        if self.eventType == "setColor" and len(self.data) >= 3:
            r, g, b = self.data[:3]
            return SetColor(r, g, b)
        if self.eventType == "setLuminosity" and self.data:
            return SetLuminosity(self.data[0])
        return None


class WriteMessage(_ClientMessage):
    """Raw write of value bytes to one resolved characteristic."""

    type: Literal["write"]
    deviceId: str = Field(min_length=1)
    characteristicUUID: str = Field(min_length=1)
    value: list[Byte]


ClientMessage = Annotated[
    Union[
        GetDevices,
        Scan,
        Connect,
        SetColorMessage,
        SetLuminosityMessage,
        SendEventMessage,
        WriteMessage,
    ],
    Field(discriminator="type"),
]

_adapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """
    Decode one JSON text frame.

    Raises:
        MalformedMessage: invalid JSON, unknown type or invalid fields
    """
    try:
        return _adapter.validate_json(raw)
    except ValidationError as e:
        raise MalformedMessage(_describe(e)) from e


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    kind = first.get("type", "")
    if kind == "json_invalid":
        return "Invalid JSON"
    if kind == "union_tag_invalid":
        return f"Unknown message type: {first.get('ctx', {}).get('tag')}"
    if kind == "union_tag_not_found":
        return "Missing message type"
    location = ".".join(str(part) for part in first.get("loc", ())[1:])
    if location:
        return f"Invalid field '{location}': {first.get('msg')}"
    return f"Invalid message: {first.get('msg')}"
