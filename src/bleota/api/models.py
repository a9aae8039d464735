"""Pydantic models for HTTP API requests and responses."""

from typing import Optional
from pydantic import BaseModel, Field

from bleota.models.config import BleConfig
from bleota.models.status import PhaseEnum


class StartRequest(BaseModel):
    """POST /api/v1.0/ota/start payload.

    Starts a BLE OTA session, superseding any session in progress.

    Example:
        {
            "firmware_path": "./firmware/fw-1.2.0.bin",
            "device_name": "TOPE-BLE-01",
            "config": {"max_frame_size": 20, "scan_timeout": 10.0}
        }
    """

    firmware_path: str = Field(
        ...,
        min_length=1,
        description="Local path of the firmware image",
        examples=["./firmware/fw-1.2.0.bin"],
    )
    device_name: str = Field(
        ...,
        min_length=1,
        description="Advertised BLE name of the target device",
        examples=["TOPE-BLE-01"],
    )
    config: Optional[BleConfig] = Field(
        None, description="Transport configuration, defaults when omitted"
    )


class ProgressData(BaseModel):
    """Progress data nested in response."""

    phase: PhaseEnum = Field(..., description="Current session phase")
    sent: int = Field(0, ge=0, description="Bytes confirmed sent (clamped to total)")
    total: int = Field(0, ge=0, description="Firmware size in bytes")
    percent: int = Field(0, ge=0, le=100, description="Percentage completion (0-100)")
    message: str = Field(..., description="Latest status line")
    error_code: Optional[int] = Field(None, description="Numeric error code if phase == failed")
    error: Optional[str] = Field(None, description="Error message if phase == failed")


class ProgressResponse(BaseModel):
    """GET /api/v1.0/progress response.

    Returns current status state with application-level status code.
    """

    code: int = Field(..., description="Application-level status code (200/500)")
    msg: str = Field(..., description="Status message or error description")
    data: ProgressData = Field(..., description="Progress data")


class SuccessResponse(BaseModel):
    """Success response for command endpoints.

    Used by POST /ota/start and POST /ota/stop.
    """

    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success", description="Success message")
    data: Optional[dict] = Field(None, description="Optional response data")


class ErrorResponse(BaseModel):
    """Error response for all endpoints.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (400/404/500)")
    msg: str = Field(..., description="Error message")


class ReportPayload(BaseModel):
    """Payload POSTed to the report endpoint on phase changes and progress steps."""

    session_id: str = Field(..., description="Session the report belongs to")
    phase: PhaseEnum = Field(..., description="Current session phase")
    percent: int = Field(..., ge=0, le=100, description="Percentage completion")
    message: str = Field(..., description="Human-readable status description")
    error_code: Optional[int] = Field(None, description="Numeric error code if phase == failed")
    error: Optional[str] = Field(None, description="Error message if phase == failed")
