"""Message types exchanged with mission control and the satellite link.

Inbound link payloads are decoded once, at the boundary, into one of the
tagged message classes below. Everything past :func:`decode_link_message`
operates on these types instead of raw mappings.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import ProtocolDecodeError, ValidationError


class CommandState(str, Enum):
    """Lifecycle states of a command; declaration order is lifecycle order."""

    PREPARING_ON_GATEWAY = "preparing_on_gateway"
    UPLINKING_TO_SYSTEM = "uplinking_to_system"
    TRANSMITTED_TO_SYSTEM = "transmitted_to_system"
    ACKED_BY_SYSTEM = "acked_by_system"
    EXECUTING_ON_SYSTEM = "executing_on_system"
    DOWNLINKING_FROM_SYSTEM = "downlinking_from_system"
    PROCESSING_ON_GATEWAY = "processing_on_gateway"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (CommandState.COMPLETED, CommandState.FAILED)


_STATE_ORDER = list(CommandState)


class LinkMessageType(str, Enum):
    """Type tags carried by messages on the satellite link."""

    COMMAND_UPDATE = "command_update"
    MEASUREMENTS = "measurements"
    EVENT = "event"
    COMMAND_DEFINITIONS_UPDATE = "command_definitions_update"
    FILE_LIST = "file_list"
    FILE_METADATA_UPDATE = "file_metadata_update"
    FILE_CONTENTS_UPDATE = "file_contents_update"
    FILE_CONTENTS_FINISHED = "file_contents_finished"
    CHECKSUM_PING = "checksum_ping"
    CHECKSUM_PONG = "checksum_pong"
    UPLINK_FILE_CHUNK = "uplink_file_chunk"
    UPLINK_ENDED = "uplink_ended"


PASSTHROUGH_TYPES = frozenset(
    {
        LinkMessageType.COMMAND_DEFINITIONS_UPDATE.value,
        LinkMessageType.FILE_LIST.value,
        LinkMessageType.FILE_METADATA_UPDATE.value,
    }
)


@dataclass(slots=True)
class CommandField:
    name: str
    value: str


@dataclass(slots=True)
class Command:
    """A command received from mission control."""

    id: str
    type: str
    fields: List[CommandField] = field(default_factory=list)
    system: Optional[str] = None
    state: CommandState = CommandState.PREPARING_ON_GATEWAY
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Command":
        if not isinstance(payload, Mapping):
            raise ValidationError("Command payload must be an object")

        command_id = payload.get("id")
        if command_id is None or str(command_id).strip() == "":
            raise ValidationError("Command is missing an id")
        command_id = str(command_id)

        command_type = payload.get("type")
        if not isinstance(command_type, str) or not command_type.strip():
            raise ValidationError("Command is missing a type", command_id=command_id)

        raw_fields = payload.get("fields")
        if raw_fields is None:
            raw_fields = []
        elif not isinstance(raw_fields, list):
            raise ValidationError("Command fields must be a list", command_id=command_id)

        fields: List[CommandField] = []
        for entry in raw_fields:
            if not isinstance(entry, Mapping) or "name" not in entry:
                raise ValidationError(
                    "Command fields must be objects with a name",
                    command_id=command_id,
                )
            value = entry.get("value")
            fields.append(
                CommandField(
                    name=str(entry["name"]),
                    value="" if value is None else str(value),
                )
            )

        system = payload.get("system")
        return cls(
            id=command_id,
            type=command_type.strip(),
            fields=fields,
            system=str(system) if system is not None else None,
            raw=dict(payload),
        )

    def field_value(self, name: str) -> Optional[str]:
        for entry in self.fields:
            if entry.name == name:
                return entry.value or None
        return None

    def to_link_payload(self, **extra: Any) -> Dict[str, Any]:
        """The command as forwarded, unmodified, to the satellite."""
        payload = dict(self.raw)
        payload.update(extra)
        return payload


@dataclass(slots=True)
class ProgressChannel:
    current: float
    max: float
    label: Optional[str] = None


@dataclass(slots=True)
class CommandUpdate:
    command_id: str
    state: CommandState
    progress_1: Optional[ProgressChannel] = None
    progress_2: Optional[ProgressChannel] = None
    status: Optional[str] = None
    payload: Any = None
    errors: Optional[List[str]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def command_fields(self) -> Dict[str, Any]:
        document: Dict[str, Any] = dict(self.extra)
        document["id"] = self.command_id
        document["state"] = self.state.value
        for prefix, channel in (
            ("progress_1", self.progress_1),
            ("progress_2", self.progress_2),
        ):
            if channel is None:
                continue
            document[f"{prefix}_current"] = channel.current
            document[f"{prefix}_max"] = channel.max
            if channel.label is not None:
                document[f"{prefix}_label"] = channel.label
        if self.status is not None:
            document["status"] = self.status
        if self.payload is not None:
            document["payload"] = self.payload
        if self.errors is not None:
            document["errors"] = list(self.errors)
        return document

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "command_update", "command": self.command_fields()}


@dataclass(slots=True)
class MeasurementsUpdate:
    measurements: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "measurements", "measurements": self.measurements}


@dataclass(slots=True)
class GatewayEvent:
    event_type: str
    level: str
    message: str
    debug: Any = None

    def as_event(self) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "type": self.event_type,
            "level": self.level,
            "message": self.message,
        }
        if self.debug is not None:
            event["debug"] = self.debug
        return event

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "event", "event": self.as_event()}


@dataclass(slots=True)
class PassthroughUpdate:
    """File list, file metadata and command definition updates."""

    payload: Dict[str, Any]

    @property
    def update_type(self) -> str:
        return str(self.payload.get("type"))

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.payload)


@dataclass(slots=True)
class FileChunk:
    downlink_id: str
    data: bytes
    finished: bool = False


@dataclass(slots=True)
class ChecksumPong:
    word: Optional[str]


@dataclass(slots=True)
class UnknownUpdate:
    payload: Any


GatewayUpdate = Union[CommandUpdate, MeasurementsUpdate, GatewayEvent, PassthroughUpdate]

LinkMessage = Union[
    CommandUpdate,
    MeasurementsUpdate,
    GatewayEvent,
    PassthroughUpdate,
    FileChunk,
    ChecksumPong,
    UnknownUpdate,
]


def decode_link_message(raw: Any) -> LinkMessage:
    """Decode a payload received from the satellite link.

    Raises:
        ProtocolDecodeError: If the payload is neither JSON text/bytes nor an
            already-structured mapping, or a recognised message is malformed.
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolDecodeError(
                "Payload is not valid UTF-8", received=_printable(raw)
            ) from exc
        data = _loads(text, raw)
    elif isinstance(raw, str):
        data = _loads(raw, raw)
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise ProtocolDecodeError(
            "Received a serial packet string or buffer that was not recognizable",
            received=_printable(raw),
        )

    message_type = data.get("type")
    if message_type is not None and not isinstance(message_type, str):
        raise ProtocolDecodeError(
            f"Link message type must be a string, got {type(message_type).__name__}",
            received=_printable(raw),
        )

    if message_type == LinkMessageType.COMMAND_UPDATE.value:
        return _decode_command_update(data)
    if message_type == LinkMessageType.MEASUREMENTS.value:
        measurements = data.get("measurements")
        if not isinstance(measurements, list):
            raise ProtocolDecodeError(
                "measurements update must carry a list", received=dict(data)
            )
        return MeasurementsUpdate(measurements=list(measurements))
    if message_type == LinkMessageType.EVENT.value:
        event = data.get("event")
        if not isinstance(event, Mapping):
            raise ProtocolDecodeError("event update must carry an object", received=dict(data))
        return GatewayEvent(
            event_type=str(event.get("type", "satelliteEvent")),
            level=str(event.get("level", "info")),
            message=str(event.get("message", "")),
            debug=event.get("debug"),
        )
    if message_type in PASSTHROUGH_TYPES:
        return PassthroughUpdate(payload=dict(data))
    if message_type in (
        LinkMessageType.FILE_CONTENTS_UPDATE.value,
        LinkMessageType.FILE_CONTENTS_FINISHED.value,
    ):
        downlink_id = data.get("downlink_id")
        if downlink_id is None:
            raise ProtocolDecodeError(
                "file contents message is missing downlink_id", received=dict(data)
            )
        return FileChunk(
            downlink_id=str(downlink_id),
            data=decode_chunk(data.get("chunk")),
            finished=message_type == LinkMessageType.FILE_CONTENTS_FINISHED.value,
        )
    if message_type == LinkMessageType.CHECKSUM_PONG.value:
        word = data.get("word")
        return ChecksumPong(word=str(word) if word is not None else None)

    return UnknownUpdate(payload=dict(data))


def encode_chunk(data: bytes) -> Dict[str, Any]:
    return {"type": "Buffer", "data": list(data)}


def decode_chunk(chunk: Any) -> bytes:
    """Extract the bytes of a chunk as serialised on the link."""
    if chunk is None:
        return b""
    if isinstance(chunk, (bytes, bytearray)):
        return bytes(chunk)
    if isinstance(chunk, str):
        return _b64decode(chunk)
    if isinstance(chunk, Mapping):
        return decode_chunk(chunk.get("data"))
    if isinstance(chunk, list):
        try:
            return bytes(chunk)
        except (TypeError, ValueError) as exc:
            raise ProtocolDecodeError("chunk data is not a byte sequence") from exc
    raise ProtocolDecodeError("chunk data is not a byte sequence")


def _decode_command_update(data: Mapping[str, Any]) -> CommandUpdate:
    command = data.get("command")
    if not isinstance(command, Mapping):
        raise ProtocolDecodeError(
            "command_update must carry a command object", received=dict(data)
        )

    command_id = command.get("id")
    try:
        state = CommandState(command.get("state"))
    except ValueError as exc:
        raise ProtocolDecodeError(
            f"command_update has an unknown state: {command.get('state')!r}",
            received=dict(data),
        ) from exc
    if command_id is None:
        raise ProtocolDecodeError("command_update is missing an id", received=dict(data))

    known = {"id", "state", "status", "payload", "errors"}
    progress: Dict[str, Optional[ProgressChannel]] = {}
    for prefix in ("progress_1", "progress_2"):
        keys = (f"{prefix}_current", f"{prefix}_max", f"{prefix}_label")
        known.update(keys)
        if keys[0] in command or keys[1] in command:
            progress[prefix] = ProgressChannel(
                current=command.get(keys[0], 0),
                max=command.get(keys[1], 0),
                label=command.get(keys[2]),
            )

    errors = command.get("errors")
    if errors is not None and not isinstance(errors, list):
        errors = [errors]

    return CommandUpdate(
        command_id=str(command_id),
        state=state,
        progress_1=progress.get("progress_1"),
        progress_2=progress.get("progress_2"),
        status=command.get("status"),
        payload=command.get("payload"),
        errors=[str(item) for item in errors] if errors is not None else None,
        extra={key: value for key, value in command.items() if key not in known},
    )


def _loads(text: str, raw: Any) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolDecodeError(
            "Received a serial packet string or buffer that was not recognizable",
            received=_printable(raw),
        ) from exc


def _b64decode(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolDecodeError("chunk data is not valid base64") from exc


def _printable(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return bytes(raw).decode("utf-8", errors="replace")
    if isinstance(raw, (str, int, float, bool)) or raw is None:
        return raw
    return repr(raw)
