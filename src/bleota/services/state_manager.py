"""State manager for the in-memory status served by GET /progress."""

import asyncio
from typing import Optional, Set

from bleota.api.models import ProgressData
from bleota.models.errors import ErrorKind
from bleota.models.session import Session
from bleota.models.status import PhaseEnum
from bleota.services.dispatcher import SessionCallback
from bleota.services.reporter import ReportService
from bleota.utils.logging import get_logger


class StateManager:
    """Singleton holding the latest status of the OTA session.

    Written only from the delivery loop (through StatusTrackingCallback), read
    by the HTTP handlers.
    """

    _instance: Optional["StateManager"] = None

    def __new__(cls):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize state manager (only once due to singleton)."""
        if self._initialized:
            return

        self.logger = get_logger("state_manager")

        self._phase: PhaseEnum = PhaseEnum.IDLE
        self._sent: int = 0
        self._total: int = 0
        self._message: str = "OTA ready"
        self._error_code: Optional[int] = None
        self._error: Optional[str] = None

        self._initialized = True
        self.logger.info("StateManager initialized")

    @property
    def percent(self) -> int:
        if self._total <= 0:
            return 0
        return min(100, self._sent * 100 // self._total)

    def get_status(self) -> ProgressData:
        """Get current status for GET /progress endpoint."""
        return ProgressData(
            phase=self._phase,
            sent=self._sent,
            total=self._total,
            percent=self.percent,
            message=self._message,
            error_code=self._error_code,
            error=self._error,
        )

    def update_status(
        self,
        phase: PhaseEnum,
        message: Optional[str] = None,
        error_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Update phase and status line; error fields are replaced, not merged.

        Args:
            phase: Current session phase
            message: Latest status line, unchanged when None
            error_code: Numeric error code if phase == failed
            error: Error message if phase == failed
        """
        self._phase = phase
        if message is not None:
            self._message = message
        self._error_code = error_code
        self._error = error
        self.logger.debug(f"Status updated: phase={phase.value}, message={self._message}")

    def update_progress(self, sent: int, total: int) -> None:
        self._sent = max(0, sent)
        self._total = max(0, total)

    def reset(self) -> None:
        """Reset to idle state (called when a new session starts)."""
        self._phase = PhaseEnum.IDLE
        self._sent = 0
        self._total = 0
        self._message = "OTA ready"
        self._error_code = None
        self._error = None
        self.logger.info("State reset to idle")


class StatusTrackingCallback(SessionCallback):
    """Mirrors session notifications into the StateManager.

    The phase is taken from ``on_phase_changed`` notifications, which arrive
    in order with the status lines, so each status is recorded under the
    phase it was issued in even when the session has already moved on.

    With a ReportService attached, phase changes, terminal results and every
    5% of progress are also reported upstream in the background.
    """

    REPORT_STEP = 5

    def __init__(
        self,
        state_manager: Optional[StateManager] = None,
        reporter: Optional[ReportService] = None,
    ):
        self.logger = get_logger("state_manager")
        self.state_manager = state_manager or StateManager()
        self.reporter = reporter
        self.session: Optional[Session] = None
        self._phase = PhaseEnum.IDLE
        self._last_phase: Optional[PhaseEnum] = None
        self._last_reported_percent = -1
        self._tasks: Set[asyncio.Task] = set()

    def bind(self, session: Session) -> None:
        """Attach the session being tracked."""
        self.session = session
        self.state_manager.reset()

    @property
    def phase(self) -> PhaseEnum:
        return self._phase

    def on_phase_changed(self, phase: PhaseEnum) -> None:
        self._phase = phase
        self.state_manager.update_status(phase)

    def on_status_update(self, status: str) -> None:
        phase = self._phase
        self.state_manager.update_status(phase, status)
        if phase != self._last_phase:
            self._last_phase = phase
            self._report(phase, status)

    def on_progress(self, sent: int, total: int) -> None:
        self.state_manager.update_progress(sent, total)
        percent = self.state_manager.percent
        if percent >= self._last_reported_percent + self.REPORT_STEP or percent == 100:
            if percent != self._last_reported_percent:
                self._last_reported_percent = percent
                self._report(self.phase, f"Transferring firmware: {percent}%")

    def on_success(self) -> None:
        message = "OTA upgrade succeeded"
        self.state_manager.update_status(PhaseEnum.SUCCEEDED, message)
        self._report(PhaseEnum.SUCCEEDED, message)

    def on_failed(self, code: int, message: str) -> None:
        try:
            name = ErrorKind.from_code(code).name
        except ValueError:
            name = "UNKNOWN_ERROR"
        error = f"{name}: {message}"
        self.state_manager.update_status(
            PhaseEnum.FAILED, "OTA upgrade failed", error_code=code, error=error
        )
        self._report(PhaseEnum.FAILED, "OTA upgrade failed", error_code=code, error=error)

    def _report(
        self,
        phase: PhaseEnum,
        message: str,
        error_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.reporter is None:
            return
        session_id = self.session.session_id if self.session is not None else "-"
        coro = self.reporter.report_progress(
            session_id, phase, self.state_manager.percent, message, error_code, error
        )
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
