"""Capability set the state machine drives the BLE stack through."""

from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

from bleota.models.events import Peer

EventSink = Callable[[Any], Any]


class Transport(ABC):
    """Narrow interface over a platform Bluetooth stack.

    Initiating methods return immediately; their outcome arrives later as an
    event message pushed into the bound sink (``PeerFound``, ``Connected``,
    ``ServicesDiscovered``, ``NotifyArmed``, ``WriteCompleted``,
    ``NotificationReceived``, ``Disconnected``...). The sink is thread-safe,
    so implementations may call it from any thread.

    Any method may raise ``OtaError`` with a permission kind when the host
    denies or revokes Bluetooth access.
    """

    def __init__(self):
        self._sink: Optional[EventSink] = None

    def bind(self, sink: EventSink) -> None:
        """Route transport events into ``sink``."""
        self._sink = sink

    def emit(self, event: Any) -> None:
        if self._sink is not None:
            self._sink(event)

    @property
    def max_frame_size(self) -> Optional[int]:
        """Largest write negotiated with the peer, None if unknown."""
        return None

    def missing_permissions(self) -> List[str]:
        """Names of required permissions not granted. Empty when all granted."""
        return []

    @abstractmethod
    async def check_adapter(self) -> None:
        """Verify an adapter exists, is enabled and can scan.

        Raises:
            OtaError: With an environment kind
        """

    @abstractmethod
    def start_scan(self, name: str) -> None:
        """Start scanning; emits PeerFound for each advertisement, ScanFailed on error."""

    @abstractmethod
    def stop_scan(self) -> None:
        """Stop scanning. Idempotent."""

    @abstractmethod
    def connect(self, peer: Peer) -> None:
        """Connect; emits Connected, ConnectFailed or Disconnected."""

    @abstractmethod
    def discover_services(self) -> None:
        """Resolve the GATT table; emits ServicesDiscovered or DiscoveryFailed."""

    @abstractmethod
    def set_notify(self, characteristic: str, enabled: bool) -> None:
        """Arm notifications; emits NotifyArmed. Inbound data arrives as NotificationReceived."""

    @abstractmethod
    def write(self, characteristic: str, data: bytes) -> bool:
        """Submit one write.

        Returns:
            True if submitted (a WriteCompleted event follows), False if rejected
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the connection and any scan. Idempotent."""
