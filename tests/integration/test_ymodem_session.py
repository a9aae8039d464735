"""Integration tests: OtaManager + YModemSender against a simulated YMODEM peer."""

import asyncio
import binascii
import hashlib
import pytest
from typing import Optional

from conftest import FakeTransport, RecordingCallback
from bleota.engine.ymodem import ACK, CAN, CRC_REQUEST, EOT, NAK, SOH, STX, YModemSender
from bleota.models.config import BleConfig
from bleota.models.events import NotificationReceived
from bleota.models.status import PhaseEnum
from bleota.services.manager import OtaManager
from bleota.services.state_manager import StateManager, StatusTrackingCallback


class YModemPeer:
    """Bootloader side of the link: reassembles frames and answers like a YMODEM receiver.

    After the mode command it keeps requesting with 'C' until the first
    packet arrives, as real receivers do.
    """

    def __init__(self, transport: FakeTransport, command: bytes, nak_first_block: bool = False,
                 cancel_after_header: bool = False):
        self.transport = transport
        self.command = command
        self.nak_first_block = nak_first_block
        self.cancel_after_header = cancel_after_header
        self.buffer = bytearray()
        self.file_name: Optional[str] = None
        self.file_size = 0
        self.received = bytearray()
        self.expected_seq = 1
        self.eot_count = 0
        self.finished = False
        self.crc_errors = 0
        self._requesting = False
        self._naked = False
        transport.responder = self

    def __call__(self, data: bytes) -> Optional[bytes]:
        if data == self.command:
            self._requesting = True
            asyncio.get_running_loop().call_later(0.01, self._request)
            return None
        self._requesting = False
        self.buffer += data
        return self._consume()

    def _request(self) -> None:
        # stop asking once the sender has started writing packets
        if not self._requesting or self.transport.closed or len(self.transport.writes) > 1:
            return
        self.transport.emit(NotificationReceived(bytes([CRC_REQUEST])))
        asyncio.get_running_loop().call_later(0.05, self._request)

    def _consume(self) -> Optional[bytes]:
        if not self.buffer:
            return None
        head = self.buffer[0]
        if head == EOT:
            del self.buffer[:1]
            self.eot_count += 1
            if self.eot_count == 1:
                return bytes([NAK])
            return bytes([ACK, CRC_REQUEST])

        size = 128 if head == SOH else 1024 if head == STX else None
        assert size is not None, f"unexpected packet header {head:#x}"
        if len(self.buffer) < size + 5:
            return None

        packet = bytes(self.buffer[: size + 5])
        del self.buffer[: size + 5]
        seq, inverse, body = packet[1], packet[2], packet[3 : 3 + size]
        assert seq + inverse == 0xFF
        if int.from_bytes(packet[-2:], "big") != binascii.crc_hqx(body, 0):
            self.crc_errors += 1
            return bytes([NAK])

        if seq == 0 and self.eot_count >= 2:
            self.finished = True
            return bytes([ACK])
        if seq == 0:
            name, _, rest = body.partition(b"\x00")
            self.file_name = name.decode()
            self.file_size = int(rest.split(b"\x00")[0])
            if self.cancel_after_header:
                return bytes([CAN, CAN])
            return bytes([ACK, CRC_REQUEST])

        if self.nak_first_block and not self._naked:
            self._naked = True
            return bytes([NAK])
        if seq == self.expected_seq & 0xFF:
            self.received += body
            self.expected_seq += 1
        return bytes([ACK])

    @property
    def image(self) -> bytes:
        return bytes(self.received[: self.file_size])


@pytest.fixture
def peers():
    return []


@pytest.fixture
def manager(peers):
    def transport_factory():
        transport = FakeTransport()
        peers.append(transport)
        return transport

    manager = OtaManager()
    manager.configure(transport_factory=transport_factory, engine_factory=YModemSender)
    return manager


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "app-1.2.0.bin"
    path.write_bytes(hashlib.sha256(b"seed").digest() * 70)  # 2240 bytes
    return path


@pytest.mark.integration
class TestYModemSession:

    async def _run(self, manager, peers, image, config, callback, **peer_kwargs):
        await manager.start(image, "OTA-TEST-01", callback, config)
        peer = YModemPeer(peers[-1], config.ota_command_bytes(), **peer_kwargs)
        await asyncio.wait_for(callback.done.wait(), 5.0)
        await manager.stop()
        return peer

    @pytest.mark.asyncio
    async def test_firmware_delivered_intact(self, manager, peers, image):
        config = BleConfig(scan_timeout=1.0, arm_settle_delay=0, mode_grace_delay=0)
        callback = RecordingCallback()

        peer = await self._run(manager, peers, image, config, callback)

        assert callback.terminals == [("success",)]
        assert peer.finished
        assert peer.file_name == "app-1.2.0.bin"
        assert peer.file_size == 2240
        assert peer.image == image.read_bytes()
        assert peer.crc_errors == 0
        assert all(len(frame) <= 20 for frame in peers[-1].writes)
        assert peers[-1].max_in_flight == 1

        progress = callback.of("progress")
        assert progress[-1][1:] == (2240, 2240)
        assert all(sent <= total for _, sent, total in progress)

    @pytest.mark.asyncio
    async def test_1024_blocks_with_md5_and_large_frames(self, manager, peers, image):
        md5 = hashlib.md5(image.read_bytes()).hexdigest()
        config = BleConfig(
            scan_timeout=1.0,
            arm_settle_delay=0,
            mode_grace_delay=0,
            send_size=1024,
            max_frame_size=182,
            check_md5=md5,
        )
        callback = RecordingCallback()

        peer = await self._run(manager, peers, image, config, callback)

        assert callback.terminals == [("success",)]
        assert peer.image == image.read_bytes()

    @pytest.mark.asyncio
    async def test_nak_is_recovered(self, manager, peers, image):
        config = BleConfig(scan_timeout=1.0, arm_settle_delay=0, mode_grace_delay=0)
        callback = RecordingCallback()

        peer = await self._run(manager, peers, image, config, callback, nak_first_block=True)

        assert callback.terminals == [("success",)]
        assert peer.image == image.read_bytes()

    @pytest.mark.asyncio
    async def test_md5_mismatch_fails_init(self, manager, peers, image):
        config = BleConfig(
            scan_timeout=1.0, arm_settle_delay=0, mode_grace_delay=0, check_md5="0" * 32
        )
        callback = RecordingCallback()

        await self._run(manager, peers, image, config, callback)

        assert callback.terminals[0][1] == 405
        assert "MD5_MISMATCH" in callback.terminals[0][2]

    @pytest.mark.asyncio
    async def test_receiver_cancel_fails_transfer(self, manager, peers, image):
        config = BleConfig(scan_timeout=1.0, arm_settle_delay=0, mode_grace_delay=0)
        callback = RecordingCallback()

        await self._run(manager, peers, image, config, callback, cancel_after_header=True)

        assert callback.terminals == [
            ("failed", 406, "Firmware transfer failed: Transfer cancelled by receiver")
        ]
        assert peers[-1].closed

    @pytest.mark.asyncio
    async def test_status_tracking_reflects_success(self, manager, peers, image):
        """StatusTrackingCallback 应把会话结果同步到 StateManager。"""
        config = BleConfig(scan_timeout=1.0, arm_settle_delay=0, mode_grace_delay=0)
        done = asyncio.Event()

        class Tracking(StatusTrackingCallback):
            def on_success(self):
                super().on_success()
                done.set()

        callback = Tracking()
        session = await manager.start(image, "OTA-TEST-01", callback, config)
        callback.bind(session)
        YModemPeer(peers[-1], config.ota_command_bytes())
        await asyncio.wait_for(done.wait(), 5.0)

        status = StateManager().get_status()
        assert status.phase == PhaseEnum.SUCCEEDED
        assert status.percent == 100
        assert status.total == 2240
        await manager.stop()
