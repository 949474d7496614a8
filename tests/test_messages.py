"""Tests for message decoding and command parsing."""

import base64

import pytest

from satgate.errors import ProtocolDecodeError, ValidationError
from satgate.messages import (
    ChecksumPong,
    Command,
    CommandState,
    CommandUpdate,
    FileChunk,
    GatewayEvent,
    MeasurementsUpdate,
    PassthroughUpdate,
    ProgressChannel,
    UnknownUpdate,
    decode_chunk,
    decode_link_message,
    encode_chunk,
)


def test_command_from_payload_keeps_raw_document() -> None:
    payload = {
        "id": 17,
        "type": "downlink_file",
        "system": "sat-1",
        "fields": [{"name": "filename", "value": "image.jpg"}],
    }

    command = Command.from_payload(payload)

    assert command.id == "17"
    assert command.type == "downlink_file"
    assert command.system == "sat-1"
    assert command.field_value("filename") == "image.jpg"
    assert command.field_value("missing") is None
    assert command.to_link_payload(filename="image.jpg") == {**payload, "filename": "image.jpg"}


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "ping"},
        {"id": "", "type": "ping"},
        {"id": "c1"},
        {"id": "c1", "type": "ping", "fields": ["bad"]},
        {"id": "c1", "type": "ping", "fields": 5},
        {"id": "c1", "type": "ping", "fields": {"name": "mode", "value": "on"}},
    ],
)
def test_command_from_payload_rejects_malformed(payload) -> None:
    with pytest.raises(ValidationError):
        Command.from_payload(payload)


def test_empty_field_value_is_treated_as_missing() -> None:
    command = Command.from_payload(
        {"id": "c1", "type": "uplink_file", "fields": [{"name": "gateway_download_path", "value": ""}]}
    )

    assert command.field_value("gateway_download_path") is None


def test_command_states_are_ordered_by_lifecycle() -> None:
    assert CommandState.PREPARING_ON_GATEWAY.rank < CommandState.ACKED_BY_SYSTEM.rank
    assert CommandState.DOWNLINKING_FROM_SYSTEM.rank < CommandState.PROCESSING_ON_GATEWAY.rank
    assert CommandState.COMPLETED.is_terminal
    assert CommandState.FAILED.is_terminal
    assert not CommandState.EXECUTING_ON_SYSTEM.is_terminal


def test_command_update_flattens_progress_channels() -> None:
    update = CommandUpdate(
        command_id="c1",
        state=CommandState.PREPARING_ON_GATEWAY,
        progress_1=ProgressChannel(50, 100, "radio power cycle"),
        progress_2=ProgressChannel(12, 90),
        status="radio power cycle",
    )

    assert update.to_dict() == {
        "type": "command_update",
        "command": {
            "id": "c1",
            "state": "preparing_on_gateway",
            "progress_1_current": 50,
            "progress_1_max": 100,
            "progress_1_label": "radio power cycle",
            "progress_2_current": 12,
            "progress_2_max": 90,
            "status": "radio power cycle",
        },
    }


def test_decode_command_update_from_bytes() -> None:
    raw = (
        b'{"type": "command_update", "command": {"id": "c9", "state": "executing_on_system",'
        b' "progress_1_current": 1, "progress_1_max": 4, "custom": true}}'
    )

    message = decode_link_message(raw)

    assert isinstance(message, CommandUpdate)
    assert message.command_id == "c9"
    assert message.state is CommandState.EXECUTING_ON_SYSTEM
    assert message.progress_1 == ProgressChannel(1, 4, None)
    assert message.extra == {"custom": True}


def test_decode_routes_each_known_type() -> None:
    assert isinstance(
        decode_link_message({"type": "measurements", "measurements": []}), MeasurementsUpdate
    )
    event = decode_link_message(
        {"type": "event", "event": {"type": "temperature", "level": "warning", "message": "hot"}}
    )
    assert event == GatewayEvent("temperature", "warning", "hot")
    for passthrough in ("command_definitions_update", "file_list", "file_metadata_update"):
        message = decode_link_message({"type": passthrough, "files": []})
        assert isinstance(message, PassthroughUpdate)
        assert message.update_type == passthrough
    assert decode_link_message('{"type": "checksum_pong", "word": "ALBUM"}') == ChecksumPong("ALBUM")


def test_decode_file_contents() -> None:
    chunk = decode_link_message(
        {"type": "file_contents_update", "downlink_id": "d1", "chunk": encode_chunk(b"abc")}
    )
    finished = decode_link_message({"type": "file_contents_finished", "downlink_id": "d1"})

    assert chunk == FileChunk("d1", b"abc", finished=False)
    assert finished == FileChunk("d1", b"", finished=True)


def test_unknown_type_is_not_an_error() -> None:
    message = decode_link_message({"type": "mystery", "value": 1})

    assert isinstance(message, UnknownUpdate)
    assert message.payload == {"type": "mystery", "value": 1}


@pytest.mark.parametrize("raw", ["not json", b"\xff\xfe", "[1, 2]", 42])
def test_unrecognisable_payload_raises(raw) -> None:
    with pytest.raises(ProtocolDecodeError) as excinfo:
        decode_link_message(raw)

    assert excinfo.value.code == "format_error"


def test_decode_chunk_accepts_serialised_buffers_and_base64() -> None:
    assert encode_chunk(b"\x00\x01") == {"type": "Buffer", "data": [0, 1]}
    assert decode_chunk({"type": "Buffer", "data": [104, 105]}) == b"hi"
    assert decode_chunk(base64.b64encode(b"hi").decode()) == b"hi"
    assert decode_chunk(None) == b""

    with pytest.raises(ProtocolDecodeError):
        decode_chunk({"data": [300]})


@pytest.mark.parametrize(
    "raw",
    [
        '{"type": ["command_update"]}',
        {"type": {"name": "file_list"}},
        {"type": 7, "measurements": []},
    ],
)
def test_non_string_type_tag_raises(raw) -> None:
    with pytest.raises(ProtocolDecodeError) as excinfo:
        decode_link_message(raw)

    assert "type must be a string" in str(excinfo.value)
