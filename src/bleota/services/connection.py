"""Connection and transfer state machine for one OTA session."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from bleota.engine.base import EngineFactory
from bleota.models.errors import ErrorKind, ErrorRecord, OtaError
from bleota.models.events import (
    ConnectFailed,
    Connected,
    Disconnected,
    DiscoveryFailed,
    EngineDataReady,
    EngineFailed,
    EngineProgress,
    EngineSucceeded,
    ModeCommandDue,
    ModeGraceElapsed,
    NotificationReceived,
    NotifyArmed,
    PeerFound,
    ScanFailed,
    ScanTimedOut,
    ServicesDiscovered,
    StartRequested,
    StopRequested,
    TransportFault,
    WriteCompleted,
)
from bleota.models.session import Session
from bleota.models.status import PhaseEnum
from bleota.services.dispatcher import CallbackDispatcher
from bleota.services.executor import SerialExecutor
from bleota.services.transfer_bridge import TransferBridge
from bleota.services.write_queue import WriteQueue
from bleota.transport.base import Transport
from bleota.utils.framing import to_hex
from bleota.utils.logging import get_logger


class ConnectionStateMachine:
    """Drives one session from scan to transfer and tears it down.

    Every transport event, timer and engine callback is a message handled on
    the session's SerialExecutor, so transitions never overlap. Every exit
    (success, failure, stop) goes through ``_teardown()`` before the caller
    is notified, and ``_teardown()`` runs at most once.

    The settle delay after arming notifications and the grace delay after
    the mode-switch command stand in for peer acknowledgements that this
    class of device does not reliably send.
    """

    def __init__(
        self,
        session: Session,
        transport: Optional[Transport],
        engine_factory: EngineFactory,
        dispatcher: CallbackDispatcher,
    ):
        """Initialize state machine.

        Args:
            session: Session to drive (phase must be idle)
            transport: BLE transport, None when no Bluetooth context exists
            engine_factory: Builds the transfer engine once the peer is in OTA mode
            dispatcher: Delivery of outward notifications
        """
        self.logger = get_logger("connection")
        self.session = session
        self._transport = transport
        self._engine_factory = engine_factory
        self._dispatcher = dispatcher
        self._executor = SerialExecutor(self._handle, name=f"ota-{session.session_id}")
        self._write_queue = WriteQueue(
            max_frame_size=session.config.max_frame_size, on_error=self._on_queue_error
        )
        self._bridge = TransferBridge(
            self._executor, self._write_queue, dispatcher, session.config.max_frame_size
        )
        self._finished: Optional[asyncio.Future] = None
        self._torn_down = False
        self._scanning = False
        self._scan_timer: Optional[asyncio.TimerHandle] = None
        # The mode command bypasses the write queue; its completion is ours
        self._command_in_flight = False
        self._grace_elapsed = False

        self._handlers: Dict[type, Callable[[Any], Awaitable[None]]] = {
            StartRequested: self._on_start,
            StopRequested: self._on_stop,
            PeerFound: self._on_peer_found,
            ScanTimedOut: self._on_scan_timed_out,
            ScanFailed: self._on_scan_failed,
            Connected: self._on_connected,
            ConnectFailed: self._on_connect_failed,
            Disconnected: self._on_disconnected,
            ServicesDiscovered: self._on_services_discovered,
            DiscoveryFailed: self._on_discovery_failed,
            NotifyArmed: self._on_notify_armed,
            ModeCommandDue: self._on_mode_command_due,
            ModeGraceElapsed: self._on_mode_grace_elapsed,
            WriteCompleted: self._on_write_completed,
            TransportFault: self._on_transport_fault,
            NotificationReceived: self._on_notification,
            EngineDataReady: self._on_engine_data,
            EngineProgress: self._on_engine_progress,
            EngineSucceeded: self._on_engine_succeeded,
            EngineFailed: self._on_engine_failed,
        }

    @property
    def phase(self) -> PhaseEnum:
        return self.session.phase

    @property
    def executor(self) -> SerialExecutor:
        return self._executor

    @property
    def write_queue(self) -> WriteQueue:
        return self._write_queue

    @property
    def bridge(self) -> TransferBridge:
        return self._bridge

    @property
    def is_finished(self) -> bool:
        return self._finished is not None and self._finished.done()

    def start(self) -> None:
        """Start the worker and queue the first transition. Must run on the event loop."""
        self._finished = asyncio.get_running_loop().create_future()
        self._executor.start()
        if self._transport is not None:
            self._transport.bind(self._executor.post)
        self._executor.post(StartRequested())

    async def stop(self) -> PhaseEnum:
        """Stop the session and wait until its resources are released.

        Safe to call repeatedly and after the session already finished.
        """
        if self._finished is None:
            return self.phase
        if not self._finished.done():
            self._executor.post(StopRequested())
            await asyncio.shield(self._finished)
        await self._executor.shutdown()
        return self.phase

    async def wait_finished(self) -> PhaseEnum:
        """Wait for the session to reach a terminal phase."""
        if self._finished is None:
            raise RuntimeError("Session was never started")
        return await asyncio.shield(self._finished)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _handle(self, event: Any) -> None:
        name = type(event).__name__
        if self._torn_down:
            self.logger.debug(f"[{self.session.session_id}] Ignored {name} after teardown")
            return

        handler = self._handlers.get(type(event))
        if handler is None:
            self.logger.warning(f"[{self.session.session_id}] No handler for {name}")
            return

        try:
            await handler(event)
        except OtaError as e:
            await self._fail(e.record)
        except Exception as e:
            self.logger.error(
                f"[{self.session.session_id}] Unexpected error handling {name}", exc_info=True
            )
            await self._fail(
                ErrorRecord(kind=ErrorKind.UNKNOWN_ERROR, message=f"{type(e).__name__}: {e}")
            )

    def _set_phase(self, phase: PhaseEnum) -> None:
        previous = self.session.phase
        self.session.phase = phase
        self.logger.info(f"[{self.session.session_id}] Phase {previous.value} → {phase.value}")
        self._dispatcher.phase_changed(phase)

    def _status(self, text: str) -> None:
        self._dispatcher.status(text)

    def _check_permissions(self, kind: ErrorKind, action: str) -> None:
        missing = self._transport.missing_permissions()
        if missing:
            raise OtaError(
                kind,
                f"Permission check failed while {action}: missing {', '.join(missing)}. "
                f"Grant these permissions and retry.",
            )

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def _on_start(self, event: StartRequested) -> None:
        if self.phase is not PhaseEnum.IDLE:
            self.logger.warning(f"Start ignored in phase {self.phase.value}")
            return

        self._status("Starting OTA upgrade...")
        if self._transport is None:
            raise OtaError(ErrorKind.CONTEXT_NOT_SET, "No Bluetooth transport configured")

        self._check_permissions(ErrorKind.PERMISSION_DENIED, "starting the upgrade")
        await self._transport.check_adapter()
        self._status("Bluetooth initialized")

        self._check_permissions(ErrorKind.PERMISSION_RUNTIME_REVOKED, "scanning")
        name = self.session.device_name
        self._set_phase(PhaseEnum.SCANNING)
        self._status(f"Scanning for BLE device '{name}'...")
        try:
            self._transport.start_scan(name)
        except OtaError:
            raise
        except Exception as e:
            raise OtaError(ErrorKind.DEVICE_SCAN_FAILED, f"Failed to start BLE scan: {e}") from e

        self._scanning = True
        self._scan_timer = self._executor.post_delayed(
            self.session.config.scan_timeout, ScanTimedOut()
        )

    async def _on_peer_found(self, event: PeerFound) -> None:
        if self.phase is not PhaseEnum.SCANNING:
            return

        peer = event.peer
        if not peer.name:
            return
        if peer.name != self.session.device_name:
            self._status(f"Discovered BLE device: {peer.name}")
            return

        self._status(f"Found target device: {peer.name} ({peer.address})")
        self._executor.cancel_timer(self._scan_timer)
        self._scan_timer = None
        self._stop_scan()

        self._check_permissions(ErrorKind.PERMISSION_CONNECT_DENIED, "connecting")
        self._set_phase(PhaseEnum.CONNECTING)
        self._status(f"Connecting to {peer.name}...")
        try:
            self._transport.connect(peer)
        except OtaError:
            raise
        except Exception as e:
            raise OtaError(
                ErrorKind.DEVICE_CONNECT_FAILED, f"Failed to connect to {peer.name}: {e}"
            ) from e

    async def _on_scan_timed_out(self, event: ScanTimedOut) -> None:
        if self.phase is not PhaseEnum.SCANNING:
            return
        self._stop_scan()
        raise OtaError(
            ErrorKind.DEVICE_SCAN_TIMEOUT,
            f"Scan timed out: device '{self.session.device_name}' not found within "
            f"{self.session.config.scan_timeout:g}s. Check the device name and that it is connectable.",
        )

    async def _on_scan_failed(self, event: ScanFailed) -> None:
        if self.phase is not PhaseEnum.SCANNING:
            return
        self._scanning = False
        raise OtaError(ErrorKind.DEVICE_SCAN_FAILED, f"BLE scan failed: {event.reason}")

    def _stop_scan(self) -> None:
        if not self._scanning:
            return
        self._scanning = False
        try:
            self._transport.stop_scan()
            self._status("BLE scan stopped")
        except Exception as e:
            self.logger.warning(f"Failed to stop scan: {e}")

    # ------------------------------------------------------------------
    # Connection and GATT setup
    # ------------------------------------------------------------------

    async def _on_connected(self, event: Connected) -> None:
        if self.phase is not PhaseEnum.CONNECTING:
            return

        self._status("BLE device connected, discovering services...")
        self._check_permissions(ErrorKind.PERMISSION_RUNTIME_REVOKED, "discovering services")
        self._set_phase(PhaseEnum.DISCOVERING_SERVICES)
        try:
            self._transport.discover_services()
        except OtaError:
            raise
        except Exception as e:
            raise OtaError(
                ErrorKind.GATT_SERVICE_DISCOVERY_FAILED, f"Service discovery failed: {e}"
            ) from e

    async def _on_connect_failed(self, event: ConnectFailed) -> None:
        if self.phase is not PhaseEnum.CONNECTING:
            self.logger.warning(f"Connect failure reported in phase {self.phase.value}: {event.reason}")
            return
        raise OtaError(ErrorKind.DEVICE_CONNECT_FAILED, f"Failed to connect: {event.reason}")

    async def _on_disconnected(self, event: Disconnected) -> None:
        self._status("BLE device disconnected")
        self.session.mode_entered = False
        self._write_queue.reset()
        raise OtaError(ErrorKind.DEVICE_DISCONNECTED, f"BLE device disconnected: {event.reason}")

    async def _on_services_discovered(self, event: ServicesDiscovered) -> None:
        if self.phase is not PhaseEnum.DISCOVERING_SERVICES:
            return

        config = self.session.config
        services = {
            uuid.lower(): {c.lower() for c in chars} for uuid, chars in event.services.items()
        }
        characteristics = services.get(config.service_uuid)
        if characteristics is None:
            raise OtaError(
                ErrorKind.GATT_SERVICE_NOT_FOUND,
                f"Required BLE service not found: {config.service_uuid}",
            )

        missing = [
            uuid
            for uuid in (config.tx_characteristic_uuid, config.rx_characteristic_uuid)
            if uuid not in characteristics
        ]
        if missing:
            raise OtaError(
                ErrorKind.GATT_CHARACTERISTIC_NOT_FOUND,
                f"Required BLE characteristics not found: {', '.join(missing)}",
            )

        self._status("BLE services discovered, enabling notifications...")
        self._set_phase(PhaseEnum.ARMING_NOTIFICATIONS)
        try:
            self._transport.set_notify(config.rx_characteristic_uuid, True)
        except OtaError:
            raise
        except Exception as e:
            # The descriptor acknowledgement is advisory; proceed as if it failed
            self.logger.warning(f"Enabling notifications failed: {e}")
            self._executor.post(NotifyArmed(False, str(e)))

    async def _on_discovery_failed(self, event: DiscoveryFailed) -> None:
        if self.phase is not PhaseEnum.DISCOVERING_SERVICES:
            return
        raise OtaError(
            ErrorKind.GATT_SERVICE_DISCOVERY_FAILED, f"BLE service discovery failed: {event.reason}"
        )

    async def _on_notify_armed(self, event: NotifyArmed) -> None:
        if self.phase is not PhaseEnum.ARMING_NOTIFICATIONS:
            return

        if event.ok:
            self._status("Notifications enabled, device ready")
        else:
            self._status(f"Notification descriptor write failed: {event.reason}")

        self._set_phase(PhaseEnum.SENDING_MODE_COMMAND)
        self._executor.post_delayed(self.session.config.arm_settle_delay, ModeCommandDue())

    # ------------------------------------------------------------------
    # Mode switch
    # ------------------------------------------------------------------

    async def _on_mode_command_due(self, event: ModeCommandDue) -> None:
        if self.phase is not PhaseEnum.SENDING_MODE_COMMAND:
            return

        config = self.session.config
        self._check_permissions(ErrorKind.PERMISSION_RUNTIME_REVOKED, "sending the OTA command")
        command = config.ota_command_bytes()
        self._status("Sending OTA mode command...")
        self.logger.debug(f"OTA command ({len(command)} bytes): {to_hex(command)}")
        try:
            submitted = self._transport.write(config.tx_characteristic_uuid, command)
        except OtaError:
            raise
        except Exception as e:
            raise OtaError(
                ErrorKind.OTA_COMMAND_SEND_FAILED, f"Failed to send OTA command: {e}"
            ) from e

        if not submitted:
            raise OtaError(
                ErrorKind.GATT_OPERATION_REJECTED, "OTA command rejected: GATT write refused"
            )

        self._command_in_flight = True
        self._status(f"OTA mode command sent: {config.ota_command}, waiting for device...")
        self._set_phase(PhaseEnum.AWAITING_MODE_ACK)
        self._executor.post_delayed(config.mode_grace_delay, ModeGraceElapsed())

    async def _on_mode_grace_elapsed(self, event: ModeGraceElapsed) -> None:
        if self.phase is not PhaseEnum.AWAITING_MODE_ACK:
            return

        self._grace_elapsed = True
        if self._command_in_flight:
            # Data frames must not overlap the command write
            self.logger.debug(f"[{self.session.session_id}] Grace elapsed, OTA command still in flight")
            return
        self._enter_transfer()

    async def _on_command_completed(self, event: WriteCompleted) -> None:
        self._command_in_flight = False
        if not event.ok:
            self._status(f"OTA command write failed: {event.reason or 'unknown status'}")
        if self.phase is PhaseEnum.AWAITING_MODE_ACK and self._grace_elapsed:
            self._enter_transfer()

    def _enter_transfer(self) -> None:
        self.session.mode_entered = True
        self._status("Device should be in OTA mode, starting firmware transfer...")
        self._set_phase(PhaseEnum.TRANSFERRING)
        self._start_transfer()

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def _start_transfer(self) -> None:
        if not self.session.mode_entered:
            raise OtaError(ErrorKind.OTA_MODE_ENTER_FAILED, "Device did not enter OTA mode")

        firmware = self.session.firmware_path
        if not firmware.is_file():
            raise OtaError(ErrorKind.FIRMWARE_FILE_NOT_FOUND, f"Firmware file not found: {firmware}")

        config = self.session.config
        frame_size = config.max_frame_size
        negotiated = self._transport.max_frame_size
        if negotiated:
            frame_size = min(frame_size, negotiated)
        self._bridge.max_frame_size = frame_size
        self._write_queue.max_frame_size = frame_size
        self._write_queue.attach(self._write_frame)

        self._status(f"Preparing transfer of {firmware.name}")
        try:
            engine = self._engine_factory(
                firmware, firmware.name, config.check_md5, config.send_size, self._bridge
            )
            self._bridge.attach(engine)
            engine.start()
        except Exception as e:
            raise OtaError(
                ErrorKind.TRANSFER_INIT_FAILED, f"Transfer engine init failed: {e}"
            ) from e

        self._status(f"Firmware transfer started: {firmware.name}")

    def _write_frame(self, frame: bytes) -> bool:
        missing = self._transport.missing_permissions()
        if missing:
            raise OtaError(
                ErrorKind.PERMISSION_RUNTIME_REVOKED,
                f"Data transmission failed: missing {', '.join(missing)}",
            )
        try:
            return self._transport.write(self.session.config.tx_characteristic_uuid, frame)
        except OtaError:
            raise
        except Exception as e:
            raise OtaError(ErrorKind.BLE_WRITE_FAILED, f"Data write failed: {e}") from e

    def _on_queue_error(self, record: ErrorRecord) -> None:
        self._executor.post(TransportFault(record))

    async def _on_write_completed(self, event: WriteCompleted) -> None:
        if self._command_in_flight:
            await self._on_command_completed(event)
            return
        if not event.ok:
            self._status(f"Data write failed: {event.reason or 'unknown status'}")
        self._write_queue.on_write_complete(event.ok)

    async def _on_transport_fault(self, event: TransportFault) -> None:
        await self._fail(event.error)

    async def _on_notification(self, event: NotificationReceived) -> None:
        data = event.data
        if not data:
            self.logger.warning("Received empty notification")
            return
        self._status(f"Received {len(data)} bytes: {to_hex(data)}")
        self._bridge.received(data)

    async def _on_engine_data(self, event: EngineDataReady) -> None:
        if self.phase is not PhaseEnum.TRANSFERRING:
            self.logger.warning(f"Engine data dropped in phase {self.phase.value}")
            return
        self._bridge.deliver(event.data)

    async def _on_engine_progress(self, event: EngineProgress) -> None:
        if self.phase is not PhaseEnum.TRANSFERRING:
            return
        self._bridge.report_progress(event.sent, event.total)

    async def _on_engine_succeeded(self, event: EngineSucceeded) -> None:
        if self.phase is not PhaseEnum.TRANSFERRING:
            return
        self._status("Firmware transfer complete, disconnecting...")
        await self._teardown(PhaseEnum.SUCCEEDED)
        self._status("Disconnected, upgrade finished")
        self._dispatcher.success()

    async def _on_engine_failed(self, event: EngineFailed) -> None:
        if self.phase is not PhaseEnum.TRANSFERRING:
            return
        raise OtaError(ErrorKind.TRANSFER_FAILED, f"Firmware transfer failed: {event.reason}")

    # ------------------------------------------------------------------
    # Exit paths
    # ------------------------------------------------------------------

    async def _on_stop(self, event: StopRequested) -> None:
        await self._teardown(PhaseEnum.STOPPED)
        self._status("OTA upgrade stopped")
        self._dispatcher.close()

    async def _fail(self, record: ErrorRecord) -> None:
        self.logger.error(f"[{self.session.session_id}] OTA failed {record}")
        await self._teardown(PhaseEnum.FAILED)
        self._dispatcher.failed(record)

    async def _teardown(self, final_phase: PhaseEnum) -> None:
        """Release every session resource. Runs once; later calls return immediately."""
        if self._torn_down:
            return
        self._torn_down = True
        self.logger.info(
            f"[{self.session.session_id}] Tearing down from {self.phase.value} "
            f"(final={final_phase.value})"
        )

        self._executor.cancel_timers()
        self._scan_timer = None
        self._bridge.detach()
        if self._transport is not None:
            self._stop_scan()
        self._write_queue.reset()
        self.session.mode_entered = False

        if self._transport is not None:
            try:
                await self._transport.close()
            except Exception as e:
                self.logger.warning(f"Transport close failed: {e}")

        self.session.cancelled = True
        self._set_phase(final_phase)
        if self._finished is not None and not self._finished.done():
            self._finished.set_result(final_phase)
        self._executor.close()
        self.logger.info(f"[{self.session.session_id}] Session resources released")
