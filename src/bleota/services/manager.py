"""Process-wide entry point for BLE OTA upgrades."""

import asyncio
from pathlib import Path
from typing import Callable, Optional, Union

from bleota.engine.base import EngineFactory
from bleota.engine.ymodem import YModemSender
from bleota.models.config import BleConfig
from bleota.models.session import Session
from bleota.models.status import PhaseEnum
from bleota.services.connection import ConnectionStateMachine
from bleota.services.dispatcher import CallbackDispatcher, SessionCallback
from bleota.transport.base import Transport
from bleota.transport.bleak_transport import BleakTransport
from bleota.utils.logging import get_logger

TransportFactory = Callable[[], Optional[Transport]]


def default_transport_factory() -> Transport:
    return BleakTransport()


class OtaManager:
    """Singleton facade owning the one live OTA session.

    ``start()`` supersedes: any active session is fully torn down before the
    next one is built. ``stop()`` is idempotent and safe when idle.
    """

    _instance: Optional["OtaManager"] = None

    def __new__(cls):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize manager (only once due to singleton)."""
        if self._initialized:
            return

        self.logger = get_logger("manager")
        self._transport_factory: TransportFactory = default_transport_factory
        self._engine_factory: EngineFactory = YModemSender
        self._machine: Optional[ConnectionStateMachine] = None
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

        self._initialized = True
        self.logger.info("OtaManager initialized")

    @classmethod
    def get_instance(cls) -> "OtaManager":
        return cls()

    def configure(
        self,
        transport_factory: Optional[TransportFactory] = None,
        engine_factory: Optional[EngineFactory] = None,
    ) -> None:
        """Replace the transport and/or transfer engine used by later sessions.

        Args:
            transport_factory: Returns a fresh Transport per session (None result
                means no Bluetooth context is available)
            engine_factory: Builds the transfer engine for a session
        """
        if transport_factory is not None:
            self._transport_factory = transport_factory
        if engine_factory is not None:
            self._engine_factory = engine_factory

    @property
    def current(self) -> Optional[Session]:
        """Session of the live state machine, None when idle."""
        if self._machine is None:
            return None
        return self._machine.session

    @property
    def is_active(self) -> bool:
        return self._machine is not None and not self._machine.is_finished

    async def start(
        self,
        firmware_path: Union[str, Path],
        device_name: str,
        callback: Optional[SessionCallback] = None,
        config: Optional[BleConfig] = None,
        delivery_loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Session:
        """Start a new session, tearing down any previous one first.

        Args:
            firmware_path: Firmware image to transfer
            device_name: Advertised name of the target peer
            callback: Receiver of session notifications
            config: Transport configuration, defaults when None
            delivery_loop: Loop callbacks are delivered on, defaults to the current loop

        Returns:
            The new session (already running)

        Raises:
            pydantic.ValidationError: If device_name is empty
        """
        async with self._get_lock():
            await self._stop_machine(reason="superseded by a new start")

            session = Session(
                device_name=device_name,
                firmware_path=Path(firmware_path),
                config=config or BleConfig.default(),
            )
            dispatcher = CallbackDispatcher(callback, loop=delivery_loop, name=session.session_id)

            try:
                transport = self._transport_factory()
            except Exception as e:
                # Reported to the caller as a missing Bluetooth context
                self.logger.error(f"Failed to create transport: {e}", exc_info=True)
                transport = None

            machine = ConnectionStateMachine(session, transport, self._engine_factory, dispatcher)
            self._machine = machine
            machine.start()
            self.logger.info(
                f"[{session.session_id}] OTA session started: device={device_name}, "
                f"firmware={session.firmware_path}"
            )
            return session

    async def stop(self) -> None:
        """Stop the active session, if any. Idempotent."""
        async with self._get_lock():
            await self._stop_machine(reason="stop requested")

    async def wait_finished(self, timeout: Optional[float] = None) -> Optional[PhaseEnum]:
        """Wait for the current session to finish.

        Returns:
            Final phase, or None when idle

        Raises:
            asyncio.TimeoutError: If the session is still running after timeout
        """
        machine = self._machine
        if machine is None:
            return None
        return await asyncio.wait_for(machine.wait_finished(), timeout)

    def reset(self) -> None:
        """Forget the current session without stopping it (tests only)."""
        self._machine = None
        self._lock = None
        self._lock_loop = None

    async def _stop_machine(self, reason: str) -> None:
        machine, self._machine = self._machine, None
        if machine is None:
            return
        self.logger.info(f"[{machine.session.session_id}] Stopping session: {reason}")
        final = await machine.stop()
        self.logger.info(f"[{machine.session.session_id}] Session ended in {final.value}")

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock
