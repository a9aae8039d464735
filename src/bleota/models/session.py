"""Session model: one upgrade attempt."""

from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel, Field

from bleota.models.config import BleConfig
from bleota.models.status import PhaseEnum


class Session(BaseModel):
    """State of a single OTA attempt.

    Exactly one Session is live per process. It is owned by the OtaManager
    and only mutated by its ConnectionStateMachine.
    """

    session_id: str = Field(
        default_factory=lambda: uuid4().hex[:8], description="Short id used in logs"
    )
    device_name: str = Field(..., min_length=1, description="Advertised name of the peer")
    firmware_path: Path = Field(..., description="Firmware image handed to the transfer engine")
    config: BleConfig = Field(default_factory=BleConfig, description="Transport configuration")
    phase: PhaseEnum = Field(default=PhaseEnum.IDLE, description="Current phase")
    cancelled: bool = Field(default=False, description="Set once the session is torn down")
    mode_entered: bool = Field(
        default=False, description="Peer assumed to be in OTA mode after the grace delay"
    )
