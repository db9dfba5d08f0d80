"""Domain-specific errors for the Cosmo bridge."""


class BridgeError(Exception):
    """Base error for cosmobridge."""


class AdapterError(BridgeError):
    """Raised when the BLE radio cannot serve a request."""


class AdapterNotReady(AdapterError):
    """Raised when the radio is not powered on (off, unauthorized, unsupported)."""


class DeviceError(BridgeError):
    """Base error for failures scoped to one device."""

    def __init__(self, message: str, device_id: str | None = None):
        super().__init__(message)
        self.device_id = device_id


class DeviceNotFound(DeviceError):
    """Raised when an operation names a device id the registry does not know."""


class DeviceNotReady(DeviceError):
    """Raised when a command targets a device that is not in the Ready state."""


class ConnectFailed(DeviceError):
    """Raised when the radio connection to a device cannot be established."""


class ConnectTimeout(ConnectFailed):
    """Raised when a connect attempt exceeds its time bound."""


class ServiceNotFound(DeviceError):
    """Raised when the primary device service is missing after connect."""


class CharacteristicNotFound(DeviceError):
    """Raised when a mandatory characteristic is missing from a service."""


class GattIOError(DeviceError):
    """Raised on GATT read, write or subscribe failures."""


class MalformedNotification(BridgeError):
    """Raised when a notification payload is shorter than its format requires."""


class MalformedMessage(BridgeError):
    """Raised when a client message cannot be decoded into a known command."""
