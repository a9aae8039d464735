"""Typed messages posted onto a session's serial executor.

Transport callbacks, timers and transfer engine callbacks never touch session
state directly; they post one of these and the state machine handles it on
its own worker.
"""

from typing import Any, Dict, FrozenSet, NamedTuple, Optional

from bleota.models.errors import ErrorRecord


class Peer(NamedTuple):
    """A discovered remote device."""

    name: Optional[str]
    address: str
    handle: Any = None


class StartRequested(NamedTuple):
    pass


class StopRequested(NamedTuple):
    pass


class PeerFound(NamedTuple):
    peer: Peer


class ScanFailed(NamedTuple):
    reason: str


class ScanTimedOut(NamedTuple):
    pass


class Connected(NamedTuple):
    pass


class ConnectFailed(NamedTuple):
    reason: str


class Disconnected(NamedTuple):
    reason: str = "link lost"


class ServicesDiscovered(NamedTuple):
    """Resolved GATT table: service UUID -> characteristic UUIDs (lower case)."""

    services: Dict[str, FrozenSet[str]]


class DiscoveryFailed(NamedTuple):
    reason: str


class NotifyArmed(NamedTuple):
    ok: bool
    reason: str = ""


class ModeCommandDue(NamedTuple):
    pass


class ModeGraceElapsed(NamedTuple):
    pass


class WriteCompleted(NamedTuple):
    ok: bool
    reason: str = ""


class TransportFault(NamedTuple):
    """A fatal transport failure already resolved to an error record."""

    error: ErrorRecord


class NotificationReceived(NamedTuple):
    data: bytes


class EngineDataReady(NamedTuple):
    data: bytes


class EngineProgress(NamedTuple):
    sent: int
    total: int


class EngineSucceeded(NamedTuple):
    pass


class EngineFailed(NamedTuple):
    reason: str
