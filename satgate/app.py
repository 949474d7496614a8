"""Main application entry-point for satgate."""

from __future__ import annotations

import asyncio
import logging
import socket
from enum import Enum
from typing import Any, Optional

from . import constants
from .adapters import MissionControlClient, MQTTSatelliteLink
from .config import GatewayConfig, load_config
from .dispatcher import CommandDispatcher
from .errors import LinkConnectionError
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


class GatewayState(str, Enum):
    COLD_START = "cold_start"
    AWAITING_LINK = "awaiting_link"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class GatewayApp:
    """Coordinates gateway startup and shutdown.

    The supervisor connects the satellite link, starts the mission control
    listener and wires both into a :class:`CommandDispatcher`. Adapters can
    be injected for testing.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        control: Optional[Any] = None,
        link: Optional[Any] = None,
    ) -> None:
        self._config = config or load_config()
        self._control = control or MissionControlClient(self._config.control)
        self._link = link or MQTTSatelliteLink(
            self._config.link, client_id=_build_client_id(self._config.link.system)
        )
        self._dispatcher: Optional[CommandDispatcher] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = GatewayState.COLD_START
        self._retry_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def dispatcher(self) -> Optional[CommandDispatcher]:
        return self._dispatcher

    async def run(self) -> None:
        """Run the supervisor until :meth:`request_shutdown` is called."""

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()

        LOGGER.info("satgate starting with config: %s", self._config.path)
        self._register_link_handlers()
        started = await self._start_services()
        if not started:
            LOGGER.warning("Service startup incomplete; running in degraded mode")
            self._retry_task = asyncio.create_task(self._retry_start())

        try:
            await self._idle_loop()
        except asyncio.CancelledError:
            LOGGER.info("satgate received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[GatewayConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_traffic=instance._config.logging.log_traffic,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("satgate received shutdown signal")

    def _transition_state(self, state: GatewayState, *, detail: Optional[str] = None) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.info(
            "Gateway state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )

    async def _idle_loop(self) -> None:
        LOGGER.info("satgate supervisor active; awaiting shutdown signal")
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
        await self._shutdown_event.wait()

    def _register_link_handlers(self) -> None:
        register = getattr(self._link, "register_disconnect_handler", None)
        if register is not None:
            register(self._on_link_disconnect)
        register = getattr(self._link, "register_connect_handler", None)
        if register is not None:
            register(self._on_link_connect)

    async def _start_services(self) -> bool:
        self._transition_state(GatewayState.AWAITING_LINK, detail="connecting satellite link")

        try:
            await self._link.connect()
        except LinkConnectionError as exc:
            LOGGER.error("Satellite link unavailable: %s", exc)
            self._transition_state(GatewayState.DEGRADED, detail="satellite link unavailable")
            return False

        self._config.transfer.staging_dir.mkdir(parents=True, exist_ok=True)

        self._dispatcher = CommandDispatcher(self._config, self._control, self._link)
        await self._dispatcher.start()
        await self._control.start()

        self._transition_state(GatewayState.ACTIVE, detail="accepting commands")
        return True

    async def _retry_start(self) -> None:
        """Retry service startup with exponential backoff until it succeeds.

        Sleeps are cut short by :meth:`request_shutdown`.
        """
        settings = self._config.link
        delay = max(0.01, settings.reconnect_initial_seconds)
        max_delay = max(delay, settings.reconnect_max_seconds)
        shutdown = self._shutdown_event or asyncio.Event()

        attempt = 1
        while self._dispatcher is None and not shutdown.is_set():
            LOGGER.info("Retrying service startup in %.2fs", delay)
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            attempt += 1
            if await self._start_services():
                LOGGER.info("Services started after %d attempts", attempt)
                break
            delay = min(delay * 2, max_delay)

    async def _stop_services(self) -> None:
        if self._retry_task is not None:
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
            self._retry_task = None

        self._transition_state(GatewayState.STOPPING)

        if self._dispatcher is not None:
            await self._dispatcher.stop()
            self._dispatcher = None

        try:
            await self._control.stop()
        except Exception:  # pragma: no cover - best-effort shutdown
            LOGGER.exception("Failed to stop mission control client")

        try:
            await self._link.disconnect()
        except Exception:  # pragma: no cover - best-effort shutdown
            LOGGER.exception("Failed to disconnect satellite link")

    def _on_link_connect(self, rc: int) -> None:
        if self._state == GatewayState.DEGRADED and self._dispatcher is not None:
            self._transition_state(GatewayState.ACTIVE, detail="satellite link restored")

    def _on_link_disconnect(self, rc: int) -> None:
        if self._state == GatewayState.STOPPING:
            return
        if rc != 0:
            self._transition_state(
                GatewayState.DEGRADED, detail=f"satellite link lost (rc={rc})"
            )


def _build_client_id(system: str) -> str:
    return f"{constants.APP_NAME}-{system}-{socket.gethostname()}"
