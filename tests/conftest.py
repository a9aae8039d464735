"""Global pytest fixtures and configuration."""

import asyncio
import sys
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bleota.engine.base import TransferEngine  # noqa: E402
from bleota.models.config import (  # noqa: E402
    DEFAULT_RX_CHARACTERISTIC_UUID,
    DEFAULT_SERVICE_UUID,
    DEFAULT_TX_CHARACTERISTIC_UUID,
    BleConfig,
)
from bleota.models.events import (  # noqa: E402
    ConnectFailed,
    Connected,
    NotificationReceived,
    NotifyArmed,
    Peer,
    PeerFound,
    ServicesDiscovered,
    WriteCompleted,
)
from bleota.services.dispatcher import SessionCallback  # noqa: E402
from bleota.services.manager import OtaManager  # noqa: E402
from bleota.services.state_manager import StateManager  # noqa: E402
from bleota.transport.base import Transport  # noqa: E402

DEVICE_NAME = "OTA-TEST-01"


class FakeTransport(Transport):
    """Scripted transport: every initiator answers with the configured event.

    Writes complete on the next loop iteration. ``responder`` may return bytes
    to notify back after a write completes.
    """

    def __init__(
        self,
        peers: Optional[List[str]] = None,
        services: Optional[Dict[str, FrozenSet[str]]] = None,
        connect_error: Optional[str] = None,
        notify_ok: bool = True,
        accept_writes: bool = True,
        frame_size: Optional[int] = None,
    ):
        super().__init__()
        self.peer_names = [DEVICE_NAME] if peers is None else peers
        self.services = services if services is not None else {
            DEFAULT_SERVICE_UUID: frozenset({DEFAULT_TX_CHARACTERISTIC_UUID, DEFAULT_RX_CHARACTERISTIC_UUID})
        }
        self.connect_error = connect_error
        self.notify_ok = notify_ok
        self.accept_writes = accept_writes
        self.frame_size = frame_size
        self.missing: List[str] = []
        self.responder: Optional[Callable[[bytes], Optional[bytes]]] = None
        self.calls: List[str] = []
        self.writes: List[bytes] = []
        self.connected_peer: Optional[Peer] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False
        self.close_calls = 0

    @property
    def max_frame_size(self) -> Optional[int]:
        return self.frame_size

    def missing_permissions(self) -> List[str]:
        return list(self.missing)

    async def check_adapter(self) -> None:
        self.calls.append("check_adapter")

    def start_scan(self, name: str) -> None:
        self.calls.append("start_scan")
        for i, peer_name in enumerate(self.peer_names):
            self.emit(PeerFound(Peer(peer_name, f"AA:BB:CC:DD:EE:{i:02X}")))

    def stop_scan(self) -> None:
        self.calls.append("stop_scan")

    def connect(self, peer: Peer) -> None:
        self.calls.append("connect")
        self.connected_peer = peer
        if self.connect_error:
            self.emit(ConnectFailed(self.connect_error))
        else:
            self.emit(Connected())

    def discover_services(self) -> None:
        self.calls.append("discover_services")
        self.emit(ServicesDiscovered(self.services))

    def set_notify(self, characteristic: str, enabled: bool) -> None:
        self.calls.append("set_notify")
        self.emit(NotifyArmed(self.notify_ok, "" if self.notify_ok else "descriptor write failed"))

    def write(self, characteristic: str, data: bytes) -> bool:
        if self.closed or not self.accept_writes:
            return False
        self.writes.append(bytes(data))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        asyncio.get_running_loop().call_soon(self._complete, bytes(data))
        return True

    def _complete(self, data: bytes) -> None:
        self.in_flight -= 1
        if self.closed:
            return
        self.emit(WriteCompleted(True))
        if self.responder is not None:
            reply = self.responder(data)
            if reply:
                self.emit(NotificationReceived(reply))

    async def close(self) -> None:
        self.calls.append("close")
        self.close_calls += 1
        self.closed = True


class FakeEngine(TransferEngine):
    """Sends the image in fixed chunks, one chunk per inbound ACK byte.

    Progress deliberately overshoots by 28 bytes to exercise the clamp.
    """

    OVERSHOOT = 28

    def __init__(self, source, file_name, check_md5, send_size, listener, chunk_size=100):
        super().__init__(source, file_name, check_md5, send_size, listener)
        self.chunk_size = chunk_size
        self.data = b""
        self.offset = 0
        self.started = False
        self.stopped = False
        self.received_data: List[bytes] = []

    def start(self) -> None:
        self.data = self.source.read_bytes()
        self.started = True
        self._send_next()

    def stop(self) -> None:
        self.stopped = True

    def received(self, data: bytes) -> None:
        self.received_data.append(data)
        if self.stopped:
            return
        self.listener.on_progress(self.offset + self.OVERSHOOT, len(self.data))
        if self.offset >= len(self.data):
            self.listener.on_success()
        else:
            self._send_next()

    def _send_next(self) -> None:
        chunk = self.data[self.offset : self.offset + self.chunk_size]
        self.offset += len(chunk)
        self.listener.on_data_ready(chunk)


class RecordingCallback(SessionCallback):
    """Records every notification in delivery order."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.done = asyncio.Event()

    def on_progress(self, sent: int, total: int) -> None:
        self.calls.append(("progress", sent, total))

    def on_status_update(self, status: str) -> None:
        self.calls.append(("status", status))

    def on_success(self) -> None:
        self.calls.append(("success",))
        self.done.set()

    def on_failed(self, code: int, message: str) -> None:
        self.calls.append(("failed", code, message))
        self.done.set()

    def of(self, kind: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == kind]

    @property
    def terminals(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("success", "failed")]

    @property
    def statuses(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "status"]


async def flush(iterations: int = 10) -> None:
    """Let pending loop callbacks run."""
    for _ in range(iterations):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.005)


def ack_every(frames: int, command: bytes) -> Callable[[bytes], Optional[bytes]]:
    """Responder acknowledging each ``frames`` data frames, ignoring the mode command."""
    count = {"n": 0}

    def respond(data: bytes) -> Optional[bytes]:
        if data == command:
            return None
        count["n"] += 1
        if count["n"] % frames == 0:
            return b"\x06"
        return None

    return respond


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset singletons before and after each test."""
    OtaManager._instance = None
    StateManager._instance = None
    yield
    OtaManager._instance = None
    StateManager._instance = None


@pytest.fixture
def fast_config():
    """BleConfig with the timing shortened for tests."""
    return BleConfig(scan_timeout=0.1, arm_settle_delay=0, mode_grace_delay=0)


@pytest.fixture
def firmware_file(tmp_path):
    """500-byte firmware image."""
    path = tmp_path / "firmware.bin"
    path.write_bytes(bytes(i % 256 for i in range(500)))
    return path


@pytest.fixture
def engines():
    """Engines built by ``engine_factory``, in creation order."""
    return []


@pytest.fixture
def engine_factory(engines):
    """FakeEngine factory recording what it builds."""

    def factory(source, file_name, check_md5, send_size, listener):
        engine = FakeEngine(source, file_name, check_md5, send_size, listener)
        engines.append(engine)
        return engine

    return factory
