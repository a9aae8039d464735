"""Error taxonomy for OTA sessions.

Error kinds are a closed set grouped by origin. The numeric code attached to
each kind is only used at the callback boundary, where existing callers map
it to localized text.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ErrorCategory(str, Enum):
    """Where a failure originated."""

    ENVIRONMENT = "environment"
    PERMISSION = "permission"
    DISCOVERY = "discovery"
    CONNECTION = "connection"
    UPGRADE = "upgrade"
    TRANSPORT = "transport"
    GENERAL = "general"


class ErrorKind(Enum):
    """Closed set of failure kinds, each carrying (code, category)."""

    # Environment (1xx)
    CONTEXT_NOT_SET = (101, ErrorCategory.ENVIRONMENT)
    BLUETOOTH_NOT_SUPPORTED = (102, ErrorCategory.ENVIRONMENT)
    BLE_NOT_SUPPORTED = (103, ErrorCategory.ENVIRONMENT)
    BLUETOOTH_DISABLED = (104, ErrorCategory.ENVIRONMENT)
    API_VERSION_TOO_LOW = (105, ErrorCategory.ENVIRONMENT)

    # Permission (2xx)
    PERMISSION_DENIED = (201, ErrorCategory.PERMISSION)
    PERMISSION_SCAN_DENIED = (202, ErrorCategory.PERMISSION)
    PERMISSION_CONNECT_DENIED = (203, ErrorCategory.PERMISSION)
    PERMISSION_RUNTIME_REVOKED = (204, ErrorCategory.PERMISSION)

    # Discovery and connection (3xx)
    DEVICE_SCAN_FAILED = (301, ErrorCategory.DISCOVERY)
    DEVICE_NOT_FOUND = (302, ErrorCategory.DISCOVERY)
    DEVICE_SCAN_TIMEOUT = (303, ErrorCategory.DISCOVERY)
    DEVICE_CONNECT_FAILED = (304, ErrorCategory.CONNECTION)
    DEVICE_DISCONNECTED = (305, ErrorCategory.CONNECTION)
    GATT_SERVICE_DISCOVERY_FAILED = (306, ErrorCategory.CONNECTION)
    GATT_SERVICE_NOT_FOUND = (307, ErrorCategory.CONNECTION)
    GATT_CHARACTERISTIC_NOT_FOUND = (308, ErrorCategory.CONNECTION)

    # Upgrade protocol (4xx)
    OTA_COMMAND_SEND_FAILED = (401, ErrorCategory.UPGRADE)
    OTA_MODE_ENTER_FAILED = (402, ErrorCategory.UPGRADE)
    FIRMWARE_FILE_NOT_FOUND = (403, ErrorCategory.UPGRADE)
    FIRMWARE_COPY_FAILED = (404, ErrorCategory.UPGRADE)
    TRANSFER_INIT_FAILED = (405, ErrorCategory.UPGRADE)
    TRANSFER_FAILED = (406, ErrorCategory.UPGRADE)

    # Transport writes (5xx)
    BLE_WRITE_FAILED = (501, ErrorCategory.TRANSPORT)
    BLE_WRITE_QUEUE_FAILED = (502, ErrorCategory.TRANSPORT)
    DATA_TRANSMISSION_FAILED = (503, ErrorCategory.TRANSPORT)
    GATT_OPERATION_REJECTED = (504, ErrorCategory.TRANSPORT)

    # Catch-all (9xx)
    UNKNOWN_ERROR = (901, ErrorCategory.GENERAL)
    OPERATION_CANCELLED = (902, ErrorCategory.GENERAL)
    TIMEOUT = (903, ErrorCategory.GENERAL)

    def __init__(self, code: int, category: ErrorCategory):
        self.code = code
        self.category = category

    @classmethod
    def from_code(cls, code: int) -> "ErrorKind":
        """Look up a kind by its numeric code.

        Raises:
            ValueError: If no kind carries this code
        """
        for kind in cls:
            if kind.code == code:
                return kind
        raise ValueError(f"Unknown error code: {code}")


_HINTS = {
    ErrorCategory.ENVIRONMENT: "Bluetooth is unavailable on this host",
    ErrorCategory.PERMISSION: "Grant Bluetooth permissions and retry",
    ErrorCategory.DISCOVERY: "Device not found, check its name and that it is advertising",
    ErrorCategory.CONNECTION: "Connection to the device failed, retry or check the device model",
    ErrorCategory.UPGRADE: "Firmware transfer failed, retry",
    ErrorCategory.TRANSPORT: "Data transmission failed, retry",
    ErrorCategory.GENERAL: "Upgrade failed",
}


def describe(kind: ErrorKind) -> str:
    """Short user-facing hint for an error kind."""
    if kind is ErrorKind.BLUETOOTH_DISABLED:
        return "Turn Bluetooth on and retry"
    if kind is ErrorKind.FIRMWARE_FILE_NOT_FOUND:
        return "Firmware file does not exist"
    if kind is ErrorKind.OPERATION_CANCELLED:
        return "Operation cancelled"
    if kind is ErrorKind.TIMEOUT:
        return "Operation timed out, retry"
    return _HINTS[kind.category]


class ErrorRecord(BaseModel):
    """A resolved failure: one kind plus a free-text diagnostic."""

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind = Field(..., description="Failure kind")
    message: str = Field(..., description="Diagnostic text, not meant for parsing")

    @property
    def code(self) -> int:
        return self.kind.code

    def __str__(self) -> str:
        return f"[{self.code}] {self.kind.name}: {self.message}"


class OtaError(Exception):
    """Raised by transports and session steps; carries an ErrorRecord."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.record = ErrorRecord(kind=kind, message=message)

    @property
    def kind(self) -> ErrorKind:
        return self.record.kind
