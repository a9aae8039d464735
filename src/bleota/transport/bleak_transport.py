"""Transport implementation on top of bleak."""

import asyncio
from typing import Any, Coroutine, Optional, Set

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from bleota.models.errors import ErrorKind, ErrorRecord, OtaError
from bleota.models.events import (
    ConnectFailed,
    Connected,
    Disconnected,
    DiscoveryFailed,
    NotificationReceived,
    NotifyArmed,
    Peer,
    PeerFound,
    ScanFailed,
    ServicesDiscovered,
    TransportFault,
    WriteCompleted,
)
from bleota.transport.base import Transport
from bleota.utils.logging import get_logger

# 3 bytes of ATT header per write
ATT_HEADER_SIZE = 3


def _adapter_error(e: Exception) -> OtaError:
    """Map a scanner start failure to an environment kind."""
    text = str(e).lower()
    if "turned off" in text or "powered off" in text or "not powered" in text:
        return OtaError(ErrorKind.BLUETOOTH_DISABLED, f"Bluetooth adapter is disabled: {e}")
    if "no bluetooth adapters" in text or "not found" in text or "unavailable" in text:
        return OtaError(ErrorKind.BLUETOOTH_NOT_SUPPORTED, f"No Bluetooth adapter: {e}")
    return OtaError(ErrorKind.BLE_NOT_SUPPORTED, f"BLE scanning unavailable: {e}")


class BleakTransport(Transport):
    """BLE central over bleak.

    Every initiating call spawns a task on the running loop and returns
    immediately; the task reports its outcome through ``emit()``. bleak
    invokes its callbacks on the event loop, so they emit directly.
    """

    def __init__(
        self,
        adapter: Optional[str] = None,
        connect_timeout: float = 10.0,
        close_timeout: float = 5.0,
        adapter_timeout: float = 5.0,
    ):
        """Initialize transport.

        Args:
            adapter: Host adapter name (e.g. "hci0"), None for the default
            connect_timeout: Seconds allowed for connection establishment
            close_timeout: Seconds allowed for scanner stop and disconnect on close
            adapter_timeout: Seconds allowed for each step of the adapter check
        """
        super().__init__()
        self.logger = get_logger("transport.bleak")
        self.adapter = adapter
        self.connect_timeout = connect_timeout
        self.close_timeout = close_timeout
        self.adapter_timeout = adapter_timeout
        self._scanner: Optional[BleakScanner] = None
        self._client: Optional[BleakClient] = None
        self._tasks: Set[asyncio.Task] = set()
        self._cleanup: Set[asyncio.Task] = set()
        self._closing = False

    @property
    def max_frame_size(self) -> Optional[int]:
        if self._client is None or not self._client.is_connected:
            return None
        mtu = self._client.mtu_size
        if not mtu or mtu <= ATT_HEADER_SIZE:
            return None
        return mtu - ATT_HEADER_SIZE

    def _scanner_kwargs(self) -> dict:
        kwargs = {"detection_callback": self._on_detection}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        return kwargs

    async def check_adapter(self) -> None:
        """Check the adapter by starting and stopping a scanner.

        Each step is bounded by ``adapter_timeout`` so a stalled adapter
        cannot hold the session worker.
        """
        try:
            scanner = BleakScanner(**self._scanner_kwargs())
            await asyncio.wait_for(scanner.start(), self.adapter_timeout)
            await asyncio.wait_for(scanner.stop(), self.adapter_timeout)
        except PermissionError as e:
            raise OtaError(ErrorKind.PERMISSION_SCAN_DENIED, f"Bluetooth scan not permitted: {e}") from e
        except asyncio.TimeoutError as e:
            raise OtaError(
                ErrorKind.BLE_NOT_SUPPORTED,
                f"Bluetooth adapter did not respond within {self.adapter_timeout:g}s",
            ) from e
        except (BleakError, OSError) as e:
            raise _adapter_error(e) from e
        self._scanner = scanner
        self.logger.debug("Bluetooth adapter available")

    def start_scan(self, name: str) -> None:
        self._spawn(self._scan(name))

    def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self._spawn(self._stop_scanner(scanner), cleanup=True)

    def connect(self, peer: Peer) -> None:
        self._spawn(self._connect(peer))

    def discover_services(self) -> None:
        self._spawn(self._discover())

    def set_notify(self, characteristic: str, enabled: bool) -> None:
        self._spawn(self._set_notify(characteristic, enabled))

    def write(self, characteristic: str, data: bytes) -> bool:
        if self._closing or self._client is None or not self._client.is_connected:
            self.logger.warning(f"Write refused, not connected ({len(data)} bytes)")
            return False
        self._spawn(self._write(characteristic, bytes(data)))
        return True

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        # Pending scanner stops run to completion
        if self._cleanup:
            await asyncio.gather(*self._cleanup, return_exceptions=True)

        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            await self._stop_scanner(scanner)

        client, self._client = self._client, None
        if client is not None:
            try:
                await asyncio.wait_for(client.disconnect(), self.close_timeout)
                self.logger.info("BLE connection closed")
            except (BleakError, OSError, asyncio.TimeoutError) as e:
                self.logger.warning(f"Disconnect failed: {e}")

    # ------------------------------------------------------------------
    # Background operations
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], cleanup: bool = False) -> None:
        if self._closing:
            coro.close()
            return
        tasks = self._cleanup if cleanup else self._tasks
        task = asyncio.get_running_loop().create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    def _fault(self, kind: ErrorKind, message: str) -> None:
        self.emit(TransportFault(ErrorRecord(kind=kind, message=message)))

    async def _scan(self, name: str) -> None:
        try:
            if self._scanner is None:
                self._scanner = BleakScanner(**self._scanner_kwargs())
            await self._scanner.start()
            self.logger.info(f"Scanning for '{name}'")
        except PermissionError as e:
            self._fault(ErrorKind.PERMISSION_SCAN_DENIED, f"Bluetooth scan not permitted: {e}")
        except (BleakError, OSError) as e:
            self.emit(ScanFailed(str(e)))

    async def _stop_scanner(self, scanner: BleakScanner) -> None:
        try:
            await asyncio.wait_for(scanner.stop(), self.close_timeout)
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Failed to stop scanner: {e}")

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        name = advertisement.local_name or device.name
        self.emit(PeerFound(Peer(name=name, address=device.address, handle=device)))

    async def _connect(self, peer: Peer) -> None:
        client = BleakClient(
            peer.handle if peer.handle is not None else peer.address,
            disconnected_callback=self._on_disconnected,
            timeout=self.connect_timeout,
        )
        self._client = client
        try:
            await client.connect()
        except PermissionError as e:
            self._fault(ErrorKind.PERMISSION_CONNECT_DENIED, f"Connect not permitted: {e}")
            return
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            self.emit(ConnectFailed(str(e) or type(e).__name__))
            return
        self.logger.info(f"Connected to {peer.name} ({peer.address}), MTU {client.mtu_size}")
        self.emit(Connected())

    def _on_disconnected(self, client: BleakClient) -> None:
        if self._closing:
            return
        self.logger.warning("Peer disconnected")
        self.emit(Disconnected())

    async def _discover(self) -> None:
        client = self._client
        if client is None:
            self.emit(DiscoveryFailed("not connected"))
            return
        try:
            services = {
                service.uuid.lower(): frozenset(c.uuid.lower() for c in service.characteristics)
                for service in client.services
            }
        except PermissionError as e:
            self._fault(ErrorKind.PERMISSION_RUNTIME_REVOKED, f"Service discovery not permitted: {e}")
            return
        except (BleakError, OSError) as e:
            self.emit(DiscoveryFailed(str(e)))
            return
        self.logger.debug(f"Discovered {len(services)} services")
        self.emit(ServicesDiscovered(services))

    async def _set_notify(self, characteristic: str, enabled: bool) -> None:
        client = self._client
        if client is None:
            self.emit(NotifyArmed(False, "not connected"))
            return
        try:
            if enabled:
                await client.start_notify(characteristic, self._on_notification)
            else:
                await client.stop_notify(characteristic)
        except PermissionError as e:
            self._fault(ErrorKind.PERMISSION_RUNTIME_REVOKED, f"Notification setup not permitted: {e}")
            return
        except (BleakError, OSError) as e:
            self.emit(NotifyArmed(False, str(e)))
            return
        self.emit(NotifyArmed(True))

    def _on_notification(self, sender: BleakGATTCharacteristic, data: bytearray) -> None:
        self.emit(NotificationReceived(bytes(data)))

    async def _write(self, characteristic: str, data: bytes) -> None:
        client = self._client
        if client is None:
            self.emit(WriteCompleted(False, "not connected"))
            return
        try:
            await client.write_gatt_char(characteristic, data, response=True)
        except PermissionError as e:
            self._fault(ErrorKind.PERMISSION_RUNTIME_REVOKED, f"Write not permitted: {e}")
            return
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            self.emit(WriteCompleted(False, str(e) or type(e).__name__))
            return
        self.emit(WriteCompleted(True))
