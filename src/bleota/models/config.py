"""Per-session BLE transport configuration."""

from pydantic import BaseModel, Field, field_validator

UUID_PATTERN = r"^[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}$"

DEFAULT_SERVICE_UUID = "0000ffe0-0000-1000-8000-00805f9b34fb"
DEFAULT_TX_CHARACTERISTIC_UUID = "0000ffe1-0000-1000-8000-00805f9b34fb"
DEFAULT_RX_CHARACTERISTIC_UUID = "0000ffe2-0000-1000-8000-00805f9b34fb"
DEFAULT_OTA_COMMAND = "5A0007230510000000A5"


class BleConfig(BaseModel):
    """Transport and timing configuration supplied with each start().

    The peer exposes one service with a write (TX) characteristic and a
    notify (RX) characteristic. Writing ``ota_command`` to TX switches the
    peer into its bootloader, after which the firmware is streamed through
    the same characteristic pair.

    Example:
        {
            "service_uuid": "0000ffe0-0000-1000-8000-00805f9b34fb",
            "tx_characteristic_uuid": "0000ffe1-0000-1000-8000-00805f9b34fb",
            "rx_characteristic_uuid": "0000ffe2-0000-1000-8000-00805f9b34fb",
            "ota_command": "5A0007230510000000A5"
        }
    """

    service_uuid: str = Field(
        DEFAULT_SERVICE_UUID, pattern=UUID_PATTERN, description="OTA GATT service UUID"
    )
    tx_characteristic_uuid: str = Field(
        DEFAULT_TX_CHARACTERISTIC_UUID,
        pattern=UUID_PATTERN,
        description="Characteristic written by the host",
    )
    rx_characteristic_uuid: str = Field(
        DEFAULT_RX_CHARACTERISTIC_UUID,
        pattern=UUID_PATTERN,
        description="Characteristic the peer notifies on",
    )
    ota_command: str = Field(
        DEFAULT_OTA_COMMAND,
        pattern=r"^([0-9A-Fa-f]{2})+$",
        description="Mode-switch command as hex text",
    )
    max_frame_size: int = Field(
        20, gt=0, description="Largest single write in bytes (BLE default MTU payload)"
    )
    scan_timeout: float = Field(10.0, gt=0, description="Seconds to scan for the peer")
    arm_settle_delay: float = Field(
        1.0, ge=0, description="Seconds to wait after arming notifications"
    )
    mode_grace_delay: float = Field(
        2.0, ge=0, description="Seconds to wait after the mode-switch command"
    )
    send_size: int = Field(128, description="Transfer engine block size (128 or 1024)")
    check_md5: str = Field(
        "",
        pattern=r"^([a-fA-F0-9]{32})?$",
        description="Expected firmware MD5, empty to skip the check",
    )

    @field_validator("service_uuid", "tx_characteristic_uuid", "rx_characteristic_uuid")
    @classmethod
    def normalise_uuid(cls, v: str) -> str:
        """Compare UUIDs case-insensitively by storing them lower case."""
        return v.lower()

    @field_validator("send_size")
    @classmethod
    def supported_block_size(cls, v: int) -> int:
        if v not in (128, 1024):
            raise ValueError("send_size must be 128 or 1024")
        return v

    def ota_command_bytes(self) -> bytes:
        """Decode the mode-switch command into raw bytes."""
        return bytes.fromhex(self.ota_command)

    @classmethod
    def default(cls) -> "BleConfig":
        return cls()

    @classmethod
    def create(
        cls, service_uuid: str, tx_characteristic_uuid: str, rx_characteristic_uuid: str
    ) -> "BleConfig":
        """Custom UUIDs with the default mode-switch command."""
        return cls(
            service_uuid=service_uuid,
            tx_characteristic_uuid=tx_characteristic_uuid,
            rx_characteristic_uuid=rx_characteristic_uuid,
        )
