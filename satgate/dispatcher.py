"""Command dispatch and link-traffic routing for the gateway."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .bus import UpdateBus
from .command_names import PASSTHROUGH_COMMANDS, CommandNames
from .config import GatewayConfig
from .core import ControlSystemClient, SatelliteLinkClient
from .errors import ProtocolDecodeError, UnknownCommandType, UnknownUpdateType, ValidationError
from .handshake import HandshakeSession
from .hardware import GroundStation
from .logging import log_traffic
from .messages import (
    ChecksumPong,
    Command,
    CommandState,
    FileChunk,
    ProgressChannel,
    UnknownUpdate,
    decode_link_message,
)
from .passthrough import forward_to_link
from .tasks import Phase, PhasedTaskRunner
from .transfer import DownlinkPipeline, TransferSessions, UplinkPipeline

LOGGER = logging.getLogger(__name__)

ORIENTATION_LABEL = "Antenna degrees rotated"

CommandRoutine = Callable[[Command], Awaitable[None]]


class CommandDispatcher:
    """Accepts commands from mission control and routes traffic from the link.

    Every accepted command is reported as ``preparing_on_gateway`` before its
    handler is scheduled. Handlers run as tasks owned by the dispatcher and
    report their own transitions through the :class:`UpdateBus`.
    """

    def __init__(
        self,
        config: GatewayConfig,
        control: ControlSystemClient,
        link: SatelliteLinkClient,
        *,
        bus: Optional[UpdateBus] = None,
        ground_station: Optional[GroundStation] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config
        self._control = control
        self._link = link
        self._bus = bus or UpdateBus(control)
        self._ground = ground_station or GroundStation(config.hardware, rng=rng)
        self._sessions = TransferSessions()
        self._uplink = UplinkPipeline(
            self._bus,
            link,
            control,
            self._sessions,
            progress_floor=config.transfer.uplink_progress_floor,
        )
        self._downlink = DownlinkPipeline(
            self._bus, link, control, self._sessions, config.transfer
        )
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._started = False

    @property
    def bus(self) -> UpdateBus:
        return self._bus

    @property
    def sessions(self) -> TransferSessions:
        return self._sessions

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("CommandDispatcher already started")

        self._control.set_command_handler(self.submit_command)
        self._link.set_message_handler(self.receive_link_message)
        self._started = True
        LOGGER.info("Command dispatcher started")

    async def stop(self) -> None:
        if not self._started:
            return

        self._control.set_command_handler(None)
        self._link.set_message_handler(None)
        self._started = False

        pending = list(self._tasks.values())
        for task in pending:
            task.cancel()
        if pending:
            LOGGER.info("Cancelling %d outstanding command(s)", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    async def join(self) -> None:
        """Wait until every scheduled handler has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def submit_command(
        self, payload: Mapping[str, Any]
    ) -> Optional["asyncio.Task[None]"]:
        """Accept a command from mission control.

        Returns the handler task, or None when the command was rejected.
        """
        log_traffic("command", payload)

        try:
            command = Command.from_payload(payload)
        except ValidationError as exc:
            LOGGER.warning("Invalid command payload: %s", exc)
            await self._bus.event(
                "commandError",
                "error",
                str(exc),
                debug={"received": payload},
            )
            return None

        tracker = self._bus.tracker
        if (
            command.id in self._tasks
            or tracker.is_inflight(command.id)
            or tracker.is_terminal(command.id)
        ):
            LOGGER.warning("Ignoring duplicate delivery of command %s", command.id)
            await self._bus.event(
                "commandError",
                "error",
                f"Command {command.id} has already been received by the gateway",
                debug={"id": command.id, "type": command.type},
            )
            return None

        await self._bus.command_update(command.id, CommandState.PREPARING_ON_GATEWAY)

        routine = self._routine_for(command)
        if routine is None:
            error = UnknownCommandType(command.type, command_id=command.id)
            LOGGER.warning("%s (id=%s)", error, command.id)
            tracker.forget(command.id)
            await self._bus.event(
                "commandError",
                "error",
                str(error),
                debug={"id": command.id, "type": command.type},
            )
            return None

        task = asyncio.create_task(
            self._run(command, routine), name=f"command:{command.type}:{command.id}"
        )
        self._tasks[command.id] = task
        task.add_done_callback(lambda _, command_id=command.id: self._tasks.pop(command_id, None))
        return task

    async def receive_link_message(self, raw: Any) -> None:
        """Decode and route one message received from the satellite link."""
        try:
            message = decode_link_message(raw)
        except ProtocolDecodeError as exc:
            LOGGER.warning("Dropping undecodable link payload: %s", exc)
            await self._bus.event(
                "formatError",
                "error",
                "There was a problem receiving downlinked data",
                debug={"errors": [str(exc)], "received": exc.received},
            )
            return

        registry = self._bus.registry

        if isinstance(message, FileChunk):
            if not registry.deliver_to(message.downlink_id, message):
                LOGGER.warning(
                    "File contents received for %s with no active downlink",
                    message.downlink_id,
                )
                await self._bus.event(
                    "transferError",
                    "warning",
                    f"Received file contents for command {message.downlink_id}, "
                    "which has no active downlink",
                    debug={"downlink_id": message.downlink_id},
                )
            return

        registry.broadcast(message)

        if isinstance(message, ChecksumPong):
            return

        if isinstance(message, UnknownUpdate):
            error = UnknownUpdateType(message.payload.get("type"))
            LOGGER.warning("%s: %r", error, error.update_type)
            await self._bus.event("updateError", "warning", str(error), debug=message.payload)
            return

        await self._bus.publish(message)

    def _routine_for(self, command: Command) -> Optional[CommandRoutine]:
        if command.type in PASSTHROUGH_COMMANDS:
            return self._handle_passthrough
        if command.type == CommandNames.UPLINK_FILE:
            return self._uplink.run
        if command.type == CommandNames.DOWNLINK_FILE:
            return self._downlink.run
        if command.type == CommandNames.CONNECT:
            return self._handle_connect
        return None

    async def _run(self, command: Command, routine: CommandRoutine) -> None:
        try:
            await routine(command)
        except Exception as exc:
            LOGGER.exception("Handler for command %s (%s) raised", command.id, command.type)
            if not self._bus.tracker.is_terminal(command.id):
                await self._bus.fail(command.id, [str(exc)])

    async def _handle_passthrough(self, command: Command) -> None:
        await forward_to_link(self._bus, self._link, command.id, command.to_link_payload())

    async def _handle_connect(self, command: Command) -> None:
        command_id = command.id
        bus = self._bus
        runner = PhasedTaskRunner(f"connect:{command_id}")

        async def report_status(percent: float, status: Any) -> None:
            await bus.command_update(
                command_id,
                CommandState.PREPARING_ON_GATEWAY,
                progress_1=ProgressChannel(percent, 100, status),
                status=status,
            )

        async def report_orientation(done: float, remaining: Any) -> None:
            await bus.command_update(
                command_id,
                CommandState.PREPARING_ON_GATEWAY,
                progress_2=ProgressChannel(done, done + remaining, ORIENTATION_LABEL),
            )

        async def report_sync(state: CommandState, channel: Optional[ProgressChannel]) -> None:
            await bus.command_update(command_id, state, progress_1=channel)

        async def report_checksum(_percent: float, status: Any) -> None:
            await bus.command_update(
                command_id, CommandState.PROCESSING_ON_GATEWAY, status=status
            )

        handshake = HandshakeSession(
            command_id,
            self._link,
            bus.registry,
            max_attempts=self._config.handshake.max_attempts,
            retry_interval=self._config.handshake.retry_interval_seconds,
        )

        try:
            await runner.run_parallel(
                [
                    Phase(self._ground.prep_ground_hardware(), report_status),
                    Phase(self._ground.orient_antenna(), report_orientation),
                ]
            )
            await runner.run_sequence([Phase(self._ground.broadcast_carrier(), report_status)])
            echoed = await handshake.run(report_sync)
            LOGGER.debug("Carriers synchronised for command %s (%s)", command_id, echoed)
            (checksum,) = await runner.run_sequence(
                [Phase(self._ground.validate_checksum(), report_checksum)]
            )
        except Exception as exc:
            LOGGER.warning("connect command %s failed: %s", command_id, exc)
            await bus.fail(command_id, [str(exc)])
            return

        await bus.command_update(
            command_id, CommandState.COMPLETED, payload=f"Checksum: {checksum}"
        )
