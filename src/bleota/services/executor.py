"""Serial executor: the background context that owns a session."""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

from bleota.utils.logging import get_logger

_STOP = object()


class SerialExecutor:
    """Runs posted messages one at a time on a single worker task.

    Every transport event, timer and transfer engine callback of a session is
    funneled through ``post()``, so the handler never runs concurrently with
    itself. ``post()`` may be called from any thread; messages are handled in
    the order they were posted.

    Timers (``post_delayed``) post a message when they fire instead of
    blocking the worker. ``close()`` discards anything not yet handled and
    cancels pending timers, so no callback can run after teardown.
    """

    def __init__(self, handler: Callable[[Any], Awaitable[None]], name: str = "ota-session"):
        """Initialize executor.

        Args:
            handler: Coroutine function called once per message
            name: Worker task name, also used as log prefix
        """
        self.logger = get_logger("executor")
        self.name = name
        self._handler = handler
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._mailbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._timers: Set[asyncio.TimerHandle] = set()
        self._closed = False

    def start(self) -> None:
        """Create the worker task on the running loop."""
        if self._task is not None:
            raise RuntimeError(f"Executor {self.name} already started")
        self._loop = asyncio.get_running_loop()
        self._mailbox = asyncio.Queue()
        self._task = self._loop.create_task(self._run(), name=self.name)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def in_worker(self) -> bool:
        """True when called from inside the worker task."""
        try:
            return self._task is not None and asyncio.current_task() is self._task
        except RuntimeError:
            # No running loop in this thread
            return False

    def post(self, message: Any) -> bool:
        """Queue a message for the worker. Thread-safe.

        Returns:
            False if the executor is closed and the message was dropped
        """
        if self._closed or self._loop is None:
            self.logger.debug(f"[{self.name}] Dropped {type(message).__name__}: executor closed")
            return False
        try:
            self._loop.call_soon_threadsafe(self._enqueue, message)
        except RuntimeError:
            self.logger.warning(
                f"[{self.name}] Dropped {type(message).__name__}: event loop is closed"
            )
            return False
        return True

    def post_delayed(self, delay: float, message: Any) -> Optional[asyncio.TimerHandle]:
        """Post ``message`` after ``delay`` seconds. Must be called on the loop thread.

        Returns:
            Timer handle, or None if the executor is closed
        """
        if self._closed or self._loop is None:
            return None

        def fire() -> None:
            self._timers.discard(handle)
            self._enqueue(message)

        handle = self._loop.call_later(delay, fire)
        self._timers.add(handle)
        return handle

    def cancel_timer(self, handle: Optional[asyncio.TimerHandle]) -> None:
        if handle is None:
            return
        handle.cancel()
        self._timers.discard(handle)

    def cancel_timers(self) -> None:
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()

    def close(self) -> None:
        """Stop accepting messages. Idempotent; safe to call from the worker."""
        if self._closed:
            return
        self._closed = True
        self.cancel_timers()
        if self._mailbox is not None:
            self._mailbox.put_nowait(_STOP)
        self.logger.debug(f"[{self.name}] Executor closed")

    async def shutdown(self) -> None:
        """Close and wait for the worker to finish its current message.

        Called from inside the worker this only closes, since the worker
        cannot wait for itself.
        """
        self.close()
        if self._task is None or self.in_worker():
            return
        await self._task

    def _enqueue(self, message: Any) -> None:
        if self._closed:
            self.logger.debug(f"[{self.name}] Dropped {type(message).__name__}: executor closed")
            return
        self._mailbox.put_nowait(message)

    async def _run(self) -> None:
        while True:
            message = await self._mailbox.get()
            if message is _STOP:
                break
            if self._closed:
                self.logger.debug(f"[{self.name}] Discarded {type(message).__name__} after close")
                continue
            try:
                await self._handler(message)
            except Exception:
                self.logger.error(
                    f"[{self.name}] Unhandled error while handling {type(message).__name__}",
                    exc_info=True,
                )
        self.logger.debug(f"[{self.name}] Worker finished")
