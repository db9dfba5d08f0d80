"""
Events produced by device sessions and consumed by the broadcast hub.

Each event knows its wire representation (`to_message`), so the BLE layer
never builds JSON and the WebSocket layer never inspects device state.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar


class Event(ABC):
    """Base class of the tagged event union."""

    type: ClassVar[str] = ""

    @abstractmethod
    def to_message(self) -> dict[str, Any]:
        """JSON-ready dict broadcast to clients."""


@dataclass(frozen=True)
class _DeviceSnapshotEvent(Event):
    device: dict[str, Any]

    @property
    def device_id(self) -> str:
        return self.device["id"]

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "device": self.device}


@dataclass(frozen=True)
class DeviceDiscovered(_DeviceSnapshotEvent):
    type: ClassVar[str] = "deviceDiscovered"


@dataclass(frozen=True)
class DeviceConnected(_DeviceSnapshotEvent):
    type: ClassVar[str] = "deviceConnected"


@dataclass(frozen=True)
class DeviceDisconnected(_DeviceSnapshotEvent):
    type: ClassVar[str] = "deviceDisconnected"


@dataclass(frozen=True)
class DeviceUpdated(_DeviceSnapshotEvent):
    type: ClassVar[str] = "deviceUpdated"


@dataclass(frozen=True)
class ButtonEvent(Event):
    type: ClassVar[str] = "buttonEvent"

    device_id: str
    pressed: bool
    value: int

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "deviceId": self.device_id,
            "pressed": self.pressed,
            "value": self.value,
        }


@dataclass(frozen=True)
class SensorEvent(Event):
    type: ClassVar[str] = "sensorEvent"

    device_id: str
    value: list[int] = field(default_factory=list)

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "deviceId": self.device_id, "value": list(self.value)}


@dataclass(frozen=True)
class CharacteristicChanged(Event):
    type: ClassVar[str] = "characteristicChanged"

    device_id: str
    characteristic_uuid: str
    value: list[int] = field(default_factory=list)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "deviceId": self.device_id,
            "characteristicUUID": self.characteristic_uuid,
            "value": list(self.value),
        }


@dataclass(frozen=True)
class Error(Event):
    """Error surfaced to every client, e.g. a failed connect or radio power loss."""

    type: ClassVar[str] = "error"

    message: str
    device_id: str | None = None
    code: str = "error"

    def to_message(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": self.type, "message": self.message, "code": self.code}
        if self.device_id is not None:
            msg["deviceId"] = self.device_id
        return msg
