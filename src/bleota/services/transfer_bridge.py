"""Adapter between a transfer engine and the session's write path."""

from typing import NamedTuple, Optional

from bleota.engine.base import TransferEngine, TransferListener
from bleota.models.events import (
    EngineDataReady,
    EngineFailed,
    EngineProgress,
    EngineSucceeded,
)
from bleota.services.dispatcher import CallbackDispatcher
from bleota.services.executor import SerialExecutor
from bleota.services.write_queue import WriteQueue
from bleota.utils.framing import split_frames
from bleota.utils.logging import get_logger


class TransferState(NamedTuple):
    """Last forwarded progress."""

    sent: int = 0
    total: int = 0


class TransferBridge(TransferListener):
    """Connects a TransferEngine to the WriteQueue and the session callback.

    The listener methods called by the engine only post messages to the
    session executor, so the engine is never blocked and never re-enters
    the state machine. The state machine then calls ``deliver``,
    ``report_progress`` and ``received`` from its worker.
    """

    def __init__(
        self,
        executor: SerialExecutor,
        write_queue: WriteQueue,
        dispatcher: CallbackDispatcher,
        max_frame_size: int,
    ):
        self.logger = get_logger("transfer_bridge")
        self._executor = executor
        self._write_queue = write_queue
        self._dispatcher = dispatcher
        self.max_frame_size = max_frame_size
        self.engine: Optional[TransferEngine] = None
        self.state = TransferState()

    # Engine-facing side (any thread)

    def on_data_ready(self, data: bytes) -> None:
        self._executor.post(EngineDataReady(bytes(data)))

    def on_progress(self, sent: int, total: int) -> None:
        self._executor.post(EngineProgress(sent, total))

    def on_success(self) -> None:
        self._executor.post(EngineSucceeded())

    def on_failed(self, reason: str) -> None:
        self._executor.post(EngineFailed(reason))

    # Session-facing side (executor worker only)

    def attach(self, engine: TransferEngine) -> None:
        self.engine = engine
        self.state = TransferState()

    def detach(self) -> None:
        """Stop and forget the engine. Idempotent."""
        engine, self.engine = self.engine, None
        if engine is None:
            return
        try:
            engine.stop()
        except Exception as e:
            self.logger.warning(f"Transfer engine stop failed: {e}")

    def deliver(self, data: bytes) -> int:
        """Split engine output into frames, queue them and pump.

        Returns:
            Number of frames queued
        """
        frames = split_frames(data, self.max_frame_size)
        if not frames:
            self.logger.debug("Engine produced an empty payload, nothing queued")
            return 0
        for frame in frames:
            self._write_queue.enqueue(frame)
        self.logger.debug(f"Queued {len(data)} bytes as {len(frames)} frames")
        self._write_queue.pump()
        return len(frames)

    def report_progress(self, sent: int, total: int) -> TransferState:
        """Clamp ``sent`` to ``total`` and forward to the caller."""
        clamped = min(sent, total)
        self.state = TransferState(clamped, total)
        self.logger.debug(f"Transfer progress {clamped}/{total} (reported {sent}/{total})")
        self._dispatcher.progress(clamped, total)
        return self.state

    def received(self, data: bytes) -> bool:
        """Forward inbound bytes to the engine; dropped when none is running."""
        if self.engine is None:
            self.logger.warning(f"No transfer engine, dropped {len(data)} inbound bytes")
            return False
        self.engine.received(bytes(data))
        return True
