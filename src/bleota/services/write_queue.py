"""Serialized outbound write queue with single-flight discipline."""

import threading
from collections import deque
from typing import Callable, Deque, Optional

from bleota.models.errors import ErrorRecord, OtaError
from bleota.utils.logging import get_logger

Writer = Callable[[bytes], bool]


class AtomicFlag:
    """Boolean with test-and-set semantics, safe across threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = False

    def test_and_set(self) -> bool:
        """Set the flag. Returns True if this call changed it from False."""
        with self._lock:
            if self._value:
                return False
            self._value = True
            return True

    def clear(self) -> None:
        with self._lock:
            self._value = False

    def is_set(self) -> bool:
        with self._lock:
            return self._value


class WriteQueue:
    """FIFO of outbound frames with at most one frame in flight.

    The in-flight flag is set when a frame is handed to the writer and
    cleared by ``on_write_complete()``, which then pumps the next frame. A
    completion must be reported for every submitted frame, successful or
    not, otherwise the queue stalls.

    The writer returns True when the frame was submitted (a completion will
    follow), False when the transport rejected it outright (the frame is
    dropped and the next one tried), or raises OtaError for a fatal failure
    (the queue is emptied and the error passed to ``on_error``).
    """

    def __init__(
        self,
        max_frame_size: int = 20,
        on_error: Optional[Callable[[ErrorRecord], None]] = None,
    ):
        """Initialize write queue.

        Args:
            max_frame_size: Frames longer than this are skipped
            on_error: Called with the ErrorRecord of a fatal writer failure
        """
        self.logger = get_logger("write_queue")
        self.max_frame_size = max_frame_size
        self._on_error = on_error
        self._frames: Deque[bytes] = deque()
        self._in_flight = AtomicFlag()
        self._writer: Optional[Writer] = None

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def in_flight(self) -> bool:
        return self._in_flight.is_set()

    def attach(self, writer: Writer) -> None:
        """Bind the queue to a transport writer."""
        self._writer = writer

    def enqueue(self, frame: bytes) -> None:
        """Append a frame to the tail. Never blocks."""
        self._frames.append(bytes(frame))

    def pump(self) -> None:
        """Submit the head frame unless one is already in flight.

        No-op when the queue is empty or a frame is outstanding. Without an
        attached writer the queue is dropped silently; the owner reports the
        lost connection once.
        """
        while self._frames:
            if self._writer is None:
                self.logger.warning(f"No transport, dropping {len(self._frames)} queued frames")
                self._frames.clear()
                self._in_flight.clear()
                return

            if not self._in_flight.test_and_set():
                return

            try:
                frame = self._frames.popleft()
            except IndexError:
                self._in_flight.clear()
                return

            if len(frame) > self.max_frame_size:
                self.logger.error(f"Oversized frame in queue, skipped: {len(frame)} bytes")
                self._in_flight.clear()
                continue

            try:
                submitted = self._writer(frame)
            except OtaError as e:
                self.logger.error(f"Write failed, clearing queue: {e.record}")
                self._frames.clear()
                self._in_flight.clear()
                if self._on_error is not None:
                    self._on_error(e.record)
                return

            if submitted:
                self.logger.debug(f"Submitted frame: {len(frame)} bytes")
                return

            self.logger.warning(f"Transport rejected frame: {len(frame)} bytes")
            self._in_flight.clear()

    def on_write_complete(self, ok: bool = True) -> None:
        """Transport completion for the in-flight frame: clear and pump once."""
        if not ok:
            self.logger.warning("Write completed with failure status")
        self._in_flight.clear()
        self.pump()

    def reset(self) -> None:
        """Drop all frames, detach the writer and force the flag off."""
        dropped = len(self._frames)
        self._frames.clear()
        self._in_flight.clear()
        self._writer = None
        if dropped:
            self.logger.debug(f"Write queue reset, {dropped} frames dropped")
