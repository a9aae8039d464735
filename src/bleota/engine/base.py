"""Contract between the orchestrator and a byte-transfer protocol engine."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable


class TransferListener(ABC):
    """Receives the engine's emit/progress/done/fail callbacks.

    Implementations must not block: engines call these from inside their
    own protocol handling.
    """

    @abstractmethod
    def on_data_ready(self, data: bytes) -> None:
        """Engine asks for ``data`` to be delivered to the peer."""

    @abstractmethod
    def on_progress(self, sent: int, total: int) -> None:
        """Bytes sent so far; ``sent`` may exceed ``total`` by protocol overhead."""

    @abstractmethod
    def on_success(self) -> None:
        """Transfer confirmed complete by the peer."""

    @abstractmethod
    def on_failed(self, reason: str) -> None:
        """Transfer aborted."""


class TransferEngine(ABC):
    """A chunked byte-transfer protocol driven by inbound bytes."""

    def __init__(
        self,
        source: Path,
        file_name: str,
        check_md5: str,
        send_size: int,
        listener: TransferListener,
    ):
        """Initialize engine.

        Args:
            source: Firmware image path, read by the engine
            file_name: Logical file name announced to the peer
            check_md5: Expected MD5 of the image, empty to skip the check
            send_size: Payload bytes per protocol step
            listener: Receiver of the engine's callbacks
        """
        self.source = Path(source)
        self.file_name = file_name
        self.check_md5 = check_md5
        self.send_size = send_size
        self.listener = listener

    @abstractmethod
    def start(self) -> None:
        """Begin the protocol."""

    @abstractmethod
    def stop(self) -> None:
        """Abort the protocol. Idempotent."""

    @abstractmethod
    def received(self, data: bytes) -> None:
        """Feed bytes that arrived from the peer."""


EngineFactory = Callable[[Path, str, str, int, TransferListener], TransferEngine]
