"""API route handlers for BLE OTA endpoints."""

from pathlib import Path
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from bleota.api.models import ProgressResponse, StartRequest, SuccessResponse
from bleota.models.status import PhaseEnum
from bleota.services.manager import OtaManager
from bleota.services.reporter import ReportService
from bleota.services.state_manager import StateManager, StatusTrackingCallback

router = APIRouter(prefix="/api/v1.0")

# Upstream progress endpoint; reporting is disabled when None
REPORT_URL: Optional[str] = None


@router.get("/progress", response_model=ProgressResponse)
async def get_progress():
    """GET /api/v1.0/progress - Query current OTA session status.

    Response format (success):
        {
            "code": 200,
            "msg": "success",
            "data": {
                "phase": "transferring",
                "sent": 2048,
                "total": 8192,
                "percent": 25,
                "message": "Received 1 bytes: 06",
                "error_code": null,
                "error": null
            }
        }

    Response format (failed phase):
        {
            "code": 500,
            "msg": "OTA failed: DEVICE_SCAN_TIMEOUT: Scan timed out ...",
            "data": {"phase": "failed", ..., "error_code": 303, "error": "..."}
        }
    """
    status = StateManager().get_status()

    if status.phase == PhaseEnum.FAILED:
        msg = f"OTA failed: {status.error}" if status.error else "OTA failed"
        return ProgressResponse(code=500, msg=msg, data=status)
    return ProgressResponse(code=200, msg="success", data=status)


@router.post("/ota/start", response_model=SuccessResponse)
async def post_start(request: StartRequest):
    """POST /api/v1.0/ota/start - Start an OTA session.

    A session already running is stopped first.

    Returns:
        SuccessResponse with the new session id, or code 404 if the firmware
        file does not exist
    """
    firmware = Path(request.firmware_path)
    if not firmware.is_file():
        return JSONResponse(
            status_code=200,
            content={"code": 404, "msg": f"Firmware file not found: {request.firmware_path}"},
        )

    reporter = ReportService(REPORT_URL) if REPORT_URL else None
    callback = StatusTrackingCallback(StateManager(), reporter)
    session = await OtaManager().start(
        firmware, request.device_name, callback=callback, config=request.config
    )
    callback.bind(session)

    return SuccessResponse(
        data={"session_id": session.session_id, "device_name": session.device_name}
    )


@router.post("/ota/stop", response_model=SuccessResponse)
async def post_stop():
    """POST /api/v1.0/ota/stop - Stop the running session. Succeeds when idle."""
    manager = OtaManager()
    was_active = manager.is_active
    await manager.stop()
    if was_active:
        StateManager().update_status(PhaseEnum.STOPPED, "OTA upgrade stopped")
    return SuccessResponse()
