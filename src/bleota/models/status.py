"""Phase enum for the OTA session state machine."""

from enum import Enum


class PhaseEnum(str, Enum):
    """OTA session phases.

    State transitions:
    idle → scanning → connecting → discoveringServices → armingNotifications
         → sendingModeCommand → awaitingModeAck → transferring → succeeded
               ↓           ↓               ↓                 ↓           ↓
             failed ←───────────────────────────────────────────────────
    Any non-terminal phase → stopped on an explicit stop.
    """

    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discoveringServices"
    ARMING_NOTIFICATIONS = "armingNotifications"
    SENDING_MODE_COMMAND = "sendingModeCommand"
    AWAITING_MODE_ACK = "awaitingModeAck"
    TRANSFERRING = "transferring"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (PhaseEnum.SUCCEEDED, PhaseEnum.FAILED, PhaseEnum.STOPPED)
