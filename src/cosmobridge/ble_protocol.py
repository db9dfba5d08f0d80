"""
BLE Protocol Constants, Encoders and Decoders

Everything that knows about the byte layout of the Cosmo GATT profile:

- Service and characteristic UUIDs, kept in canonical (normalized) form
- UUID normalization shared by the adapters and the session
- Command framing for set-color and set-luminosity
- Decoders for sensor, button-status, battery and device-information payloads

All functions here are pure. Decoders raise MalformedNotification for
payloads shorter than their format; callers log and discard those.
"""

import logging
from dataclasses import dataclass

from .errors import MalformedNotification

logger = logging.getLogger(__name__)

BLUETOOTH_BASE_UUID_SUFFIX = "00001000800000805f9b34fb"


def normalize_uuid(uuid: str) -> str:
    """
    Return the canonical form of a UUID: lowercase 128-bit hex, no hyphens.

    BLE stacks report UUIDs as "180A", "0x180a", "0000180a-0000-1000-8000-00805f9b34fb"
    or uppercase variants. 16- and 32-bit short forms are expanded onto the
    Bluetooth base UUID so all of these compare equal. Idempotent.
    """
    value = uuid.strip().lower().replace("-", "")
    if value.startswith("0x"):
        value = value[2:]
    if len(value) == 4:
        value = "0000" + value
    if len(value) == 8:
        value = value + BLUETOOTH_BASE_UUID_SUFFIX
    return value


# ── GATT profile (canonical UUIDs) ──────────────────────────────────

COSMO_SERVICE_UUID = normalize_uuid("00001523-1212-efde-1523-785feabcd123")
SENSOR_CHAR_UUID = normalize_uuid("00001524-1212-efde-1523-785feabcd123")
BUTTON_STATUS_CHAR_UUID = normalize_uuid("00001525-1212-efde-1523-785feabcd123")
COMMAND_CHAR_UUID = normalize_uuid("00001528-1212-efde-1523-785feabcd123")

DEVICE_INFO_SERVICE_UUID = normalize_uuid("180a")
SERIAL_NUMBER_CHAR_UUID = normalize_uuid("2a25")
FIRMWARE_REVISION_CHAR_UUID = normalize_uuid("2a26")
HARDWARE_REVISION_CHAR_UUID = normalize_uuid("2a27")

BATTERY_SERVICE_UUID = normalize_uuid("180f")
BATTERY_LEVEL_CHAR_UUID = normalize_uuid("2a19")

# Characteristics that must notify for a session to become Ready
MANDATORY_NOTIFY_UUIDS = (SENSOR_CHAR_UUID, BUTTON_STATUS_CHAR_UUID)

# ── Command opcodes and limits ──────────────────────────────────────

OPCODE_SET_LUMINOSITY = 0x01
OPCODE_SET_COLOR = 0x02

COLOR_MIN, COLOR_MAX = 0, 4
LUMINOSITY_MIN, LUMINOSITY_MAX = 5, 64
COLOR_MODE = 1
DEFAULT_LUMINOSITY_DELAY = 1

BUTTON_PRESSED = 1


def clamp(value: int, low: int, high: int) -> int:
    """Clamp value into [low, high]"""
    return max(low, min(high, int(value)))


def encode_set_color(r: int, g: int, b: int) -> bytes:
    """Frame a set-color command: [0x02, r, g, b, mode] with r,g,b in [0, 4]."""
    return bytes([
        OPCODE_SET_COLOR,
        clamp(r, COLOR_MIN, COLOR_MAX),
        clamp(g, COLOR_MIN, COLOR_MAX),
        clamp(b, COLOR_MIN, COLOR_MAX),
        COLOR_MODE,
    ])


def encode_set_luminosity(intensity: int, delay: int = DEFAULT_LUMINOSITY_DELAY) -> bytes:
    """Frame a set-luminosity command: [0x01, intensity, delay] with intensity in [5, 64]."""
    return bytes([
        OPCODE_SET_LUMINOSITY,
        clamp(intensity, LUMINOSITY_MIN, LUMINOSITY_MAX),
        clamp(delay, 0, 0xFF),
    ])


@dataclass(frozen=True)
class SetColor:
    """Set the LED color; components are clamped when framed."""

    r: int
    g: int
    b: int
    mode: int = COLOR_MODE

    ack_required = False

    def encode(self) -> bytes:
        return encode_set_color(self.r, self.g, self.b)


@dataclass(frozen=True)
class SetLuminosity:
    """Set the LED intensity; intensity is clamped when framed."""

    intensity: int
    delay: int = DEFAULT_LUMINOSITY_DELAY

    ack_required = False

    def encode(self) -> bytes:
        return encode_set_luminosity(self.intensity, self.delay)


Command = SetColor | SetLuminosity


def _require_length(payload: bytes, minimum: int, kind: str) -> None:
    if len(payload) < minimum:
        raise MalformedNotification(
            f"{kind} payload too short: expected >= {minimum} bytes, got {len(payload)}"
        )


def decode_sensor(payload: bytes) -> int:
    """Sensor notification: byte 0 is the raw sensor value."""
    _require_length(payload, 1, "sensor")
    return payload[0]


def decode_button(payload: bytes) -> tuple[bool, int]:
    """Button-status notification: byte 0 pressed flag (1 = pressed), byte 1 force."""
    _require_length(payload, 2, "button")
    return payload[0] == BUTTON_PRESSED, payload[1]


def decode_battery(payload: bytes) -> int:
    """Battery level notification/read: byte 0 is the percentage."""
    _require_length(payload, 1, "battery")
    return min(payload[0], 100)


def decode_text(payload: bytes) -> str:
    """Device-information strings are UTF-8, sometimes NUL padded"""
    return bytes(payload).rstrip(b"\x00").decode("utf-8", errors="replace").strip()
