"""YMODEM (CRC-16) sender driven by inbound bytes.

The sender never reads from the link itself: every byte the receiver
notifies is pushed in through ``received()``, and every packet to send is
handed to ``listener.on_data_ready()``. This lets the BLE session own all
I/O while the protocol stays a plain state machine.

Sequence:
    receiver 'C' → block 0 (name NUL size) → ACK
    receiver 'C' → block 1..n, each ACKed (NAK → resend)
    EOT → NAK → EOT → ACK
    receiver 'C' → null block 0 → ACK → done
"""

import asyncio
import binascii
import struct
from enum import Enum
from pathlib import Path
from typing import List, Optional

from bleota.engine.base import TransferEngine, TransferListener
from bleota.utils.logging import get_logger
from bleota.utils.verification import verify_md5_or_raise

SOH = 0x01
STX = 0x02
EOT = 0x04
ACK = 0x06
NAK = 0x15
CAN = 0x18
CRC_REQUEST = 0x43  # 'C'
CPMEOF = 0x1A


class Stage(str, Enum):
    IDLE = "idle"
    WAIT_HEADER_REQUEST = "waitHeaderRequest"
    WAIT_HEADER_ACK = "waitHeaderAck"
    WAIT_DATA_REQUEST = "waitDataRequest"
    WAIT_DATA_ACK = "waitDataAck"
    WAIT_EOT_ACK = "waitEotAck"
    WAIT_FINAL_REQUEST = "waitFinalRequest"
    WAIT_FINAL_ACK = "waitFinalAck"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"


_AWAITING_ACK = (Stage.WAIT_HEADER_ACK, Stage.WAIT_DATA_ACK, Stage.WAIT_EOT_ACK, Stage.WAIT_FINAL_ACK)
_FINISHED = (Stage.DONE, Stage.FAILED, Stage.STOPPED)


def build_packet(seq: int, payload: bytes, block_size: int, pad: int = CPMEOF) -> bytes:
    """Frame one YMODEM block: header, seq, ~seq, padded data, CRC-16 (big endian)."""
    if len(payload) > block_size:
        raise ValueError(f"Payload of {len(payload)} bytes exceeds block size {block_size}")
    header = SOH if block_size == 128 else STX
    body = payload.ljust(block_size, bytes([pad]))
    seq &= 0xFF
    return struct.pack(
        f">BBB{block_size}sH", header, seq, 0xFF - seq, body, binascii.crc_hqx(body, 0)
    )


def build_header_packet(file_name: str, file_size: int) -> bytes:
    """Block 0 announcing name and size."""
    info = file_name.encode("utf-8") + b"\x00" + str(file_size).encode("ascii")
    block_size = 128 if len(info) <= 128 else 1024
    return build_packet(0, info, block_size, pad=0x00)


def build_null_packet() -> bytes:
    """Empty block 0 that ends the batch."""
    return build_packet(0, b"", 128, pad=0x00)


class YModemSender(TransferEngine):
    """Sends one file with YMODEM over a byte-oriented duplex channel."""

    def __init__(
        self,
        source: Path,
        file_name: str,
        check_md5: str,
        send_size: int,
        listener: TransferListener,
        max_retries: int = 10,
        response_timeout: Optional[float] = 10.0,
    ):
        """Initialize sender.

        Args:
            source: Firmware image path
            file_name: Name announced in block 0
            check_md5: Expected MD5 of the image, empty to skip
            send_size: Data block size, 128 (SOH) or 1024 (STX)
            listener: Receiver of packets and progress
            max_retries: Consecutive NAKs/timeouts tolerated before failing
            response_timeout: Seconds without a reply before retrying, None to disable
        """
        super().__init__(source, file_name, check_md5, send_size, listener)
        if send_size not in (128, 1024):
            raise ValueError(f"send_size must be 128 or 1024, got {send_size}")
        self.logger = get_logger("ymodem")
        self.max_retries = max_retries
        self.response_timeout = response_timeout
        self.stage = Stage.IDLE
        self._data = b""
        self._blocks: List[bytes] = []
        self._block = 0
        self._packet: Optional[bytes] = None
        self._errors = 0
        self._cancels = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def total(self) -> int:
        return len(self._data)

    def start(self) -> None:
        """Load the image and wait for the receiver's first 'C'.

        Raises:
            RuntimeError: If already started
            ValueError: If the MD5 check fails or the image is empty
            FileNotFoundError: If the image does not exist
        """
        if self.stage is not Stage.IDLE:
            raise RuntimeError(f"YMODEM sender already started (stage={self.stage.value})")

        if self.check_md5:
            verify_md5_or_raise(self.source, self.check_md5)

        self._data = self.source.read_bytes()
        if not self._data:
            raise ValueError(f"Firmware image is empty: {self.source}")
        self._blocks = [
            self._data[i : i + self.send_size] for i in range(0, len(self._data), self.send_size)
        ]

        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

        self.stage = Stage.WAIT_HEADER_REQUEST
        self._arm_timer()
        self.logger.info(
            f"YMODEM send started: {self.file_name}, {len(self._data)} bytes, "
            f"{len(self._blocks)} blocks of {self.send_size}"
        )

    def stop(self) -> None:
        if self.stage in _FINISHED:
            return
        self._cancel_timer()
        self.stage = Stage.STOPPED
        self.logger.info("YMODEM send stopped")

    def received(self, data: bytes) -> None:
        for byte in data:
            if self.stage in _FINISHED or self.stage is Stage.IDLE:
                return
            self._on_byte(byte)

    def _on_byte(self, byte: int) -> None:
        if byte == CAN:
            self._cancels += 1
            if self._cancels >= 2:
                self._fail("Transfer cancelled by receiver")
            return
        self._cancels = 0

        stage = self.stage
        if stage is Stage.WAIT_HEADER_REQUEST:
            if byte == CRC_REQUEST:
                self._send(build_header_packet(self.file_name, len(self._data)), Stage.WAIT_HEADER_ACK)
        elif stage is Stage.WAIT_HEADER_ACK:
            if byte == ACK:
                self._errors = 0
                self.stage = Stage.WAIT_DATA_REQUEST
                self._arm_timer()
            elif byte in (NAK, CRC_REQUEST):
                self._retry("header rejected")
        elif stage is Stage.WAIT_DATA_REQUEST:
            if byte == CRC_REQUEST:
                self._block = 0
                self._send_block()
        elif stage is Stage.WAIT_DATA_ACK:
            if byte == ACK:
                self._errors = 0
                self._block += 1
                self.listener.on_progress(self._block * self.send_size, len(self._data))
                if self._block < len(self._blocks):
                    self._send_block()
                else:
                    self._send(bytes([EOT]), Stage.WAIT_EOT_ACK)
            elif byte == NAK:
                self._retry(f"block {self._block + 1} NAKed")
        elif stage is Stage.WAIT_EOT_ACK:
            if byte == ACK:
                self._errors = 0
                self.stage = Stage.WAIT_FINAL_REQUEST
                self._arm_timer()
            elif byte == NAK:
                self._retry("EOT NAKed")
        elif stage is Stage.WAIT_FINAL_REQUEST:
            if byte == CRC_REQUEST:
                self._send(build_null_packet(), Stage.WAIT_FINAL_ACK)
        elif stage is Stage.WAIT_FINAL_ACK:
            if byte == ACK:
                self._finish()
            elif byte == NAK:
                self._retry("final block NAKed")

    def _send_block(self) -> None:
        packet = build_packet(self._block + 1, self._blocks[self._block], self.send_size)
        self._send(packet, Stage.WAIT_DATA_ACK)

    def _send(self, packet: bytes, next_stage: Stage) -> None:
        self._packet = packet
        self.stage = next_stage
        self._arm_timer()
        self.listener.on_data_ready(packet)

    def _retry(self, why: str) -> None:
        self._errors += 1
        if self._errors > self.max_retries:
            self._fail(f"Too many retries ({self.max_retries}) in {self.stage.value}: {why}")
            return
        self.logger.warning(f"YMODEM retry {self._errors}/{self.max_retries}: {why}")
        self._arm_timer()
        if self.stage in _AWAITING_ACK and self._packet is not None:
            self.listener.on_data_ready(self._packet)

    def _finish(self) -> None:
        self._cancel_timer()
        self.stage = Stage.DONE
        self.logger.info(f"YMODEM send complete: {self.file_name}")
        self.listener.on_success()

    def _fail(self, reason: str) -> None:
        self._cancel_timer()
        self.stage = Stage.FAILED
        self.logger.error(f"YMODEM send failed: {reason}")
        self.listener.on_failed(reason)

    def _arm_timer(self) -> None:
        self._cancel_timer()
        if self._loop is None or not self.response_timeout:
            return
        self._timer = self._loop.call_later(self.response_timeout, self._on_timeout)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        self._timer = None
        if self.stage in _FINISHED:
            return
        self._retry(f"no response within {self.response_timeout}s")
