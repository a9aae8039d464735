"""Outward session notifications delivered on a fixed event loop."""

import asyncio
from typing import Any, Optional

from bleota.models.errors import ErrorRecord
from bleota.models.status import PhaseEnum
from bleota.utils.logging import get_logger


class SessionCallback:
    """Caller-side notifications for one OTA session.

    Per session the caller sees any number of status and progress calls,
    then exactly one of ``on_success``/``on_failed``, unless the session is
    stopped, in which case no terminal call is made.

    ``on_phase_changed`` is delivered in the same order as the other calls,
    so each status arrives after the phase it was issued in.
    """

    def on_phase_changed(self, phase: PhaseEnum) -> None:
        pass

    def on_progress(self, sent: int, total: int) -> None:
        pass

    def on_status_update(self, status: str) -> None:
        pass

    def on_success(self) -> None:
        pass

    def on_failed(self, code: int, message: str) -> None:
        pass


class CallbackDispatcher:
    """Schedules SessionCallback calls onto the delivery loop.

    Calls are delivered in the order they were issued. Once a terminal
    notification has been issued, or the dispatcher is closed, everything
    after it is dropped.
    """

    def __init__(
        self,
        callback: Optional[SessionCallback],
        loop: Optional[asyncio.AbstractEventLoop] = None,
        name: str = "session",
    ):
        self.logger = get_logger("dispatcher")
        self.name = name
        self._callback = callback
        self._loop = loop or asyncio.get_running_loop()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def phase_changed(self, phase: PhaseEnum) -> None:
        self._post("on_phase_changed", phase)

    def status(self, text: str) -> None:
        self.logger.debug(f"[{self.name}] status: {text}")
        self._post("on_status_update", text)

    def progress(self, sent: int, total: int) -> None:
        self._post("on_progress", sent, total)

    def success(self) -> None:
        self._post_terminal("on_success")

    def failed(self, record: ErrorRecord) -> None:
        self._post_terminal("on_failed", record.code, record.message)

    def close(self) -> None:
        """Drop all further notifications (used when a session is stopped)."""
        self._finished = True

    def _post(self, method: str, *args: Any) -> None:
        if self._finished:
            return
        self._schedule(method, args)

    def _post_terminal(self, method: str, *args: Any) -> None:
        if self._finished:
            self.logger.warning(f"[{self.name}] Suppressed {method}: session already finished")
            return
        self._finished = True
        self._schedule(method, args)

    def _schedule(self, method: str, args: tuple) -> None:
        if self._callback is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, method, args)
        except RuntimeError:
            self.logger.warning(f"[{self.name}] Delivery loop closed, {method} not delivered")

    def _deliver(self, method: str, args: tuple) -> None:
        try:
            getattr(self._callback, method)(*args)
        except Exception:
            self.logger.error(f"[{self.name}] Callback {method} raised", exc_info=True)
