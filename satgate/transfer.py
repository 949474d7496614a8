"""Chunked file transfers between mission control and the satellite."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Optional

from .bus import UpdateBus
from .config import TransferConfig
from .core import ControlSystemClient, SatelliteLinkClient
from .errors import GatewayError, TransferIOError, UpstreamIOError, ValidationError
from .messages import (
    Command,
    CommandState,
    CommandUpdate,
    FileChunk,
    LinkMessage,
    LinkMessageType,
    ProgressChannel,
    encode_chunk,
)
from .passthrough import forward_to_link

LOGGER = logging.getLogger(__name__)

UPLINK_PATH_FIELD = "gateway_download_path"
DOWNLINK_FILENAME_FIELD = "filename"
UPLINK_PROGRESS_LABEL = "File Chunks Sent"
DOWNLINK_PROGRESS_LABEL = "File chunks downlinked"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class TransferSession:
    """Chunk accounting for one command's transfer."""

    command_id: str
    direction: str
    chunks: int = 0
    path: Optional[Path] = None
    stream: Optional[BinaryIO] = None

    def next_sequence(self) -> int:
        self.chunks += 1
        return self.chunks

    def write(self, data: bytes) -> None:
        if self.stream is None:
            raise OSError(f"No open sink for the {self.direction} of command {self.command_id}")
        self.stream.write(data)

    def close(self) -> None:
        if self.stream is not None and not self.stream.closed:
            self.stream.close()


class TransferSessions:
    """Active transfers keyed by command id; at most one per command."""

    def __init__(self) -> None:
        self._sessions: Dict[str, TransferSession] = {}

    def open(self, session: TransferSession) -> TransferSession:
        if session.command_id in self._sessions:
            raise GatewayError(
                f"A transfer is already active for command {session.command_id}",
                code="transfer_active",
                command_id=session.command_id,
            )
        self._sessions[session.command_id] = session
        return session

    def get(self, command_id: str) -> Optional[TransferSession]:
        return self._sessions.get(command_id)

    def close(self, command_id: str) -> None:
        session = self._sessions.pop(command_id, None)
        if session is not None:
            session.close()

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


def _soft_max(current: int, floor: int) -> int:
    return max(floor, current + 2)


async def _fail_missing_field(bus: UpdateBus, error: ValidationError) -> None:
    LOGGER.warning("Rejecting command %s: %s", error.command_id, error)
    await bus.fail(str(error.command_id), [str(error)])


class UplinkPipeline:
    """Streams a file staged on mission control to the satellite."""

    def __init__(
        self,
        bus: UpdateBus,
        link: SatelliteLinkClient,
        control: ControlSystemClient,
        sessions: TransferSessions,
        *,
        progress_floor: int = 10,
    ) -> None:
        self._bus = bus
        self._link = link
        self._control = control
        self._sessions = sessions
        self._floor = progress_floor

    async def run(self, command: Command) -> None:
        download_path = command.field_value(UPLINK_PATH_FIELD)
        if not download_path:
            await _fail_missing_field(
                self._bus,
                ValidationError(
                    "uplink_file failed because the value for "
                    f"{UPLINK_PATH_FIELD} was not provided",
                    command_id=command.id,
                ),
            )
            return

        session = self._sessions.open(TransferSession(command.id, "uplink"))
        try:
            await self._bus.command_update(
                command.id,
                CommandState.UPLINKING_TO_SYSTEM,
                progress_1=ProgressChannel(0, self._floor, UPLINK_PROGRESS_LABEL),
            )
            try:
                async for chunk in self._control.download_staged_file(download_path):
                    if not chunk:
                        continue
                    sequence = session.next_sequence()
                    self._link.send(
                        {
                            "id": command.id,
                            "type": LinkMessageType.UPLINK_FILE_CHUNK.value,
                            "chunk": encode_chunk(bytes(chunk)),
                            "chunksSent": sequence,
                        }
                    )
                    await self._bus.command_update(
                        command.id,
                        CommandState.UPLINKING_TO_SYSTEM,
                        progress_1=ProgressChannel(
                            sequence,
                            _soft_max(sequence, self._floor),
                            UPLINK_PROGRESS_LABEL,
                        ),
                    )
                self._link.send(
                    {"id": command.id, "type": LinkMessageType.UPLINK_ENDED.value}
                )
            except Exception as exc:
                error = TransferIOError(
                    f"Problem streaming {download_path} to the satellite",
                    command_id=command.id,
                )
                LOGGER.warning("%s after %d chunk(s): %s", error, session.chunks, exc)
                await self._bus.fail(command.id, [str(error), str(exc)])
                return

            LOGGER.info(
                "Uplinked %s for command %s in %d chunk(s)",
                download_path,
                command.id,
                session.chunks,
            )
            await self._bus.command_update(command.id, CommandState.TRANSMITTED_TO_SYSTEM)
        finally:
            self._sessions.close(command.id)


class DownlinkPipeline:
    """Collects a file downlinked from the satellite and uploads it upstream.

    The command is forwarded to the satellite as-is; the satellite answers
    with ``file_contents_update`` chunks and a closing
    ``file_contents_finished`` message, which may carry one last chunk.
    The staging file is always removed once the upload has been attempted.
    """

    def __init__(
        self,
        bus: UpdateBus,
        link: SatelliteLinkClient,
        control: ControlSystemClient,
        sessions: TransferSessions,
        config: Optional[TransferConfig] = None,
        *,
        clock=time.time,
    ) -> None:
        self._bus = bus
        self._link = link
        self._control = control
        self._sessions = sessions
        self._config = config or TransferConfig()
        self._clock = clock

    def staging_path(self, command_id: str, filename: str) -> Path:
        safe_id = _UNSAFE_CHARS.sub("_", command_id)
        safe_name = _UNSAFE_CHARS.sub("_", Path(filename).name) or "download"
        return self._config.staging_dir / f"{safe_id}_{safe_name}"

    async def run(self, command: Command) -> None:
        filename = command.field_value(DOWNLINK_FILENAME_FIELD)
        if not filename:
            await _fail_missing_field(
                self._bus,
                ValidationError(
                    "No value received for field filename in downlink_file command",
                    command_id=command.id,
                ),
            )
            return

        staging = self.staging_path(command.id, filename)
        inbox: "asyncio.Queue[LinkMessage]" = asyncio.Queue()

        def listener(message: LinkMessage) -> None:
            if isinstance(message, FileChunk) and message.downlink_id == command.id:
                inbox.put_nowait(message)
            elif (
                isinstance(message, CommandUpdate)
                and message.command_id == command.id
                and message.state.is_terminal
            ):
                inbox.put_nowait(message)

        session = self._sessions.open(
            TransferSession(command.id, "downlink", path=staging)
        )
        registry = self._bus.registry
        registry.subscribe(command.id, listener)
        try:
            try:
                staging.parent.mkdir(parents=True, exist_ok=True)
                session.stream = staging.open("wb")
            except OSError as exc:
                await self._fail_io(command.id, f"Cannot stage {filename} on the gateway", exc)
                return

            try:
                forwarded = await forward_to_link(
                    self._bus,
                    self._link,
                    command.id,
                    command.to_link_payload(filename=filename),
                )
                if not forwarded:
                    return

                if not await self._collect(command.id, filename, session, inbox):
                    return

                await self._upload(command, filename, staging)
            finally:
                session.close()
                staging.unlink(missing_ok=True)
        finally:
            registry.unsubscribe(command.id, listener)
            self._sessions.close(command.id)

    async def _collect(
        self,
        command_id: str,
        filename: str,
        session: TransferSession,
        inbox: "asyncio.Queue[LinkMessage]",
    ) -> bool:
        while True:
            message = await inbox.get()
            if isinstance(message, CommandUpdate):
                LOGGER.info(
                    "Downlink of %s for command %s ended by the satellite (%s)",
                    filename,
                    command_id,
                    message.state.value,
                )
                return False

            if message.finished and not message.data:
                break

            try:
                session.write(message.data)
            except OSError as exc:
                await self._fail_io(
                    command_id, f"Problem writing downlinked data for {filename}", exc
                )
                return False

            sequence = session.next_sequence()
            maximum = sequence if message.finished else _soft_max(
                sequence, self._config.uplink_progress_floor
            )
            await self._bus.command_update(
                command_id,
                CommandState.DOWNLINKING_FROM_SYSTEM,
                progress_1=ProgressChannel(sequence, maximum, DOWNLINK_PROGRESS_LABEL),
            )
            if message.finished:
                break

        try:
            session.close()
        except OSError as exc:
            await self._fail_io(command_id, f"Problem closing downlinked file {filename}", exc)
            return False
        return True

    async def _upload(self, command: Command, filename: str, staging: Path) -> None:
        await self._bus.command_update(
            command.id,
            CommandState.PROCESSING_ON_GATEWAY,
            status="Uploading file to mission control",
        )
        try:
            await self._control.upload_downlinked_file(
                filename,
                staging,
                command.system,
                int(self._clock() * 1000),
                self._config.content_type,
                command.id,
            )
        except Exception as exc:
            error = UpstreamIOError(
                f"Problem uploading the file {filename} to mission control",
                command_id=command.id,
            )
            LOGGER.warning("%s: %s", error, exc)
            await self._bus.fail(command.id, [str(error), str(exc)])
            return

        await self._bus.command_update(
            command.id,
            CommandState.COMPLETED,
            payload=f"Downlink of {filename} for command {command.id} complete",
        )

    async def _fail_io(self, command_id: str, message: str, exc: BaseException) -> None:
        error = TransferIOError(message, command_id=command_id)
        LOGGER.warning("%s: %s", error, exc)
        await self._bus.fail(command_id, [str(error), str(exc)])
