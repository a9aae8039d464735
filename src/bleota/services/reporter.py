"""Progress reporting service for upstream status callbacks."""

from typing import Optional

import httpx

from bleota.api.models import ReportPayload
from bleota.models.status import PhaseEnum
from bleota.utils.logging import get_logger


class ReportService:
    """Posts OTA session progress to an upstream HTTP endpoint."""

    def __init__(self, report_url: str = "http://localhost:9080/api/v1.0/ota/report"):
        """Initialize report service.

        Args:
            report_url: Full URL receiving ReportPayload POSTs
        """
        self.logger = get_logger("reporter")
        self.report_url = report_url

    async def report_progress(
        self,
        session_id: str,
        phase: PhaseEnum,
        percent: int,
        message: str,
        error_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Send a progress report.

        Args:
            session_id: Session the report belongs to
            phase: Current session phase
            percent: Percentage completion (0-100)
            message: Human-readable status description
            error_code: Numeric error code if phase == failed
            error: Error message if phase == failed

        Note:
            Failures are logged but not raised to avoid blocking OTA operations
        """
        payload = ReportPayload(
            session_id=session_id,
            phase=phase,
            percent=percent,
            message=message,
            error_code=error_code,
            error=error,
        )

        self.logger.debug(f"Reporting: session={session_id}, phase={phase.value}, percent={percent}%")

        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.post(
                    self.report_url,
                    json=payload.model_dump(mode="json"),
                )
                response.raise_for_status()
                self.logger.debug("Report sent successfully")

        except httpx.HTTPError as e:
            self.logger.warning(f"Failed to report progress: {e}. Continuing OTA operation...")
        except Exception as e:
            self.logger.error(
                f"Unexpected error reporting progress: {e}",
                exc_info=True,
            )
