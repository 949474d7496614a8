"""Tests for the uplink and downlink transfer pipelines."""

import asyncio
import io
from pathlib import Path

import pytest

from conftest import FakeControl, FakeLink
from satgate.bus import UpdateBus
from satgate.config import TransferConfig
from satgate.errors import GatewayError
from satgate.messages import (
    Command,
    CommandState,
    CommandUpdate,
    FileChunk,
    decode_chunk,
)
from satgate.transfer import (
    DownlinkPipeline,
    TransferSession,
    TransferSessions,
    UplinkPipeline,
)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


def uplink_command(path: str = "/files/firmware.bin") -> Command:
    fields = [{"name": "gateway_download_path", "value": path}] if path else []
    return Command.from_payload(
        {"id": "up-1", "type": "uplink_file", "system": "sat-1", "fields": fields}
    )


def downlink_command(filename: str = "image.jpg") -> Command:
    fields = [{"name": "filename", "value": filename}] if filename else []
    return Command.from_payload(
        {"id": "down-1", "type": "downlink_file", "system": "sat-1", "fields": fields}
    )


# ----------------------------------------------------------------------
# Uplink
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_uplink_streams_chunks_then_end_marker() -> None:
    control = FakeControl(files={"/files/firmware.bin": [b"ab", b"", b"cd", b"e"]})
    link = FakeLink()
    sessions = TransferSessions()
    pipeline = UplinkPipeline(UpdateBus(control), link, control, sessions)

    await pipeline.run(uplink_command())

    chunks = link.sent_of_type("uplink_file_chunk")
    assert [message["chunksSent"] for message in chunks] == [1, 2, 3]
    assert b"".join(decode_chunk(message["chunk"]) for message in chunks) == b"abcde"
    assert all(message["id"] == "up-1" for message in chunks)
    assert link.sent[-1] == {"id": "up-1", "type": "uplink_ended"}
    assert len(link.sent) == 4

    updates = control.updates_for("up-1")
    assert updates[0]["progress_1_current"] == 0
    assert updates[0]["progress_1_max"] == 10
    assert [update["progress_1_current"] for update in updates[1:4]] == [1, 2, 3]
    assert all(update["progress_1_label"] == "File Chunks Sent" for update in updates[:4])
    assert updates[-1]["state"] == "transmitted_to_system"
    assert len(sessions) == 0


@pytest.mark.asyncio
async def test_uplink_progress_max_stays_ahead_of_current() -> None:
    control = FakeControl(files={"/big": [b"x"] * 12})
    pipeline = UplinkPipeline(UpdateBus(control), FakeLink(), control, TransferSessions())

    await pipeline.run(uplink_command("/big"))

    progress = [
        (update["progress_1_current"], update["progress_1_max"])
        for update in control.updates_for("up-1")
        if "progress_1_current" in update
    ]
    assert progress[8] == (8, 10)
    assert progress[-1] == (12, 14)


@pytest.mark.asyncio
async def test_uplink_without_path_fails_without_link_traffic() -> None:
    control = FakeControl()
    link = FakeLink()
    pipeline = UplinkPipeline(UpdateBus(control), link, control, TransferSessions())

    await pipeline.run(uplink_command(path=""))

    assert link.sent == []
    [update] = control.updates_for("up-1")
    assert update["state"] == "failed"
    assert "gateway_download_path" in update["errors"][0]


@pytest.mark.asyncio
async def test_uplink_stream_failure_fails_command() -> None:
    control = FakeControl(files={"/files/firmware.bin": [b"ab"]})
    control.download_error = ConnectionResetError("connection reset")
    link = FakeLink()
    sessions = TransferSessions()
    pipeline = UplinkPipeline(UpdateBus(control), link, control, sessions)

    await pipeline.run(uplink_command())

    assert link.sent_of_type("uplink_ended") == []
    last = control.updates_for("up-1")[-1]
    assert last["state"] == "failed"
    assert last["errors"] == [
        "Problem streaming /files/firmware.bin to the satellite",
        "connection reset",
    ]
    assert len(sessions) == 0


# ----------------------------------------------------------------------
# Downlink
# ----------------------------------------------------------------------


def make_downlink(tmp_path: Path, control: FakeControl, link: FakeLink):
    bus = UpdateBus(control)
    sessions = TransferSessions()
    pipeline = DownlinkPipeline(
        bus,
        link,
        control,
        sessions,
        TransferConfig(staging_dir=tmp_path / "staging"),
        clock=lambda: 1_600_000_000.5,
    )
    return bus, sessions, pipeline


@pytest.mark.asyncio
async def test_downlink_collects_chunks_and_uploads(tmp_path: Path) -> None:
    control = FakeControl()
    link = FakeLink()
    bus, sessions, pipeline = make_downlink(tmp_path, control, link)
    command = downlink_command()

    task = asyncio.create_task(pipeline.run(command))
    await wait_until(lambda: link.sent)

    forwarded = link.sent[0]
    assert forwarded["type"] == "downlink_file"
    assert forwarded["filename"] == "image.jpg"
    assert "down-1" in sessions

    bus.registry.deliver_to("down-1", FileChunk("down-1", b"abc"))
    bus.registry.deliver_to("down-1", FileChunk("down-1", b"def"))
    bus.registry.deliver_to("down-1", FileChunk("down-1", b"gh", finished=True))
    await asyncio.wait_for(task, timeout=1.0)

    [upload] = control.uploads
    assert upload["content"] == b"abcdefgh"
    assert upload["filename"] == "image.jpg"
    assert upload["system"] == "sat-1"
    assert upload["timestamp"] == 1_600_000_000_500
    assert upload["content_type"] == "image/jpeg"
    assert upload["path"].name == "down-1_image.jpg"
    assert not upload["path"].exists()

    assert control.states_for("down-1") == [
        "uplinking_to_system",
        "transmitted_to_system",
        "downlinking_from_system",
        "downlinking_from_system",
        "downlinking_from_system",
        "processing_on_gateway",
        "completed",
    ]
    chunk_updates = [
        update
        for update in control.updates_for("down-1")
        if update["state"] == "downlinking_from_system"
    ]
    assert [(u["progress_1_current"], u["progress_1_max"]) for u in chunk_updates] == [
        (1, 10),
        (2, 10),
        (3, 3),
    ]
    assert control.updates_for("down-1")[-2]["status"] == "Uploading file to mission control"
    assert (
        control.updates_for("down-1")[-1]["payload"]
        == "Downlink of image.jpg for command down-1 complete"
    )
    assert len(sessions) == 0
    assert not bus.registry.has_subscribers("down-1")


@pytest.mark.asyncio
async def test_downlink_empty_final_chunk_is_not_counted(tmp_path: Path) -> None:
    control = FakeControl()
    link = FakeLink()
    bus, _, pipeline = make_downlink(tmp_path, control, link)

    task = asyncio.create_task(pipeline.run(downlink_command()))
    await wait_until(lambda: link.sent)
    bus.registry.deliver_to("down-1", FileChunk("down-1", b"only"))
    bus.registry.deliver_to("down-1", FileChunk("down-1", b"", finished=True))
    await asyncio.wait_for(task, timeout=1.0)

    assert control.uploads[0]["content"] == b"only"
    assert control.states_for("down-1").count("downlinking_from_system") == 1


@pytest.mark.asyncio
async def test_downlink_upload_failure_removes_staging_file(tmp_path: Path) -> None:
    control = FakeControl()
    control.upload_error = RuntimeError("storage unavailable")
    link = FakeLink()
    bus, sessions, pipeline = make_downlink(tmp_path, control, link)

    task = asyncio.create_task(pipeline.run(downlink_command()))
    await wait_until(lambda: link.sent)
    bus.registry.deliver_to("down-1", FileChunk("down-1", b"data", finished=True))
    await asyncio.wait_for(task, timeout=1.0)

    last = control.updates_for("down-1")[-1]
    assert last["state"] == "failed"
    assert last["errors"] == [
        "Problem uploading the file image.jpg to mission control",
        "storage unavailable",
    ]
    assert not control.uploads[0]["path"].exists()
    assert list((tmp_path / "staging").iterdir()) == []
    assert len(sessions) == 0


@pytest.mark.asyncio
async def test_downlink_without_filename_fails_without_link_traffic(tmp_path: Path) -> None:
    control = FakeControl()
    link = FakeLink()
    _, _, pipeline = make_downlink(tmp_path, control, link)

    await pipeline.run(downlink_command(filename=""))

    assert link.sent == []
    assert control.states_for("down-1") == ["failed"]


@pytest.mark.asyncio
async def test_downlink_stops_when_satellite_fails_command(tmp_path: Path) -> None:
    control = FakeControl()
    link = FakeLink()
    bus, sessions, pipeline = make_downlink(tmp_path, control, link)

    task = asyncio.create_task(pipeline.run(downlink_command()))
    await wait_until(lambda: link.sent)
    bus.registry.deliver_to("down-1", FileChunk("down-1", b"partial"))
    await wait_until(lambda: "downlinking_from_system" in control.states_for("down-1"))

    failure = CommandUpdate("down-1", CommandState.FAILED, errors=["file not found"])
    bus.registry.broadcast(failure)
    await bus.publish(failure)
    await asyncio.wait_for(task, timeout=1.0)

    assert control.uploads == []
    assert control.states_for("down-1")[-1] == "failed"
    assert "completed" not in control.states_for("down-1")
    assert list((tmp_path / "staging").iterdir()) == []
    assert len(sessions) == 0


@pytest.mark.asyncio
async def test_downlink_staging_failure_fails_command(tmp_path: Path) -> None:
    blocker = tmp_path / "staging"
    blocker.write_text("not a directory", encoding="utf-8")
    control = FakeControl()
    link = FakeLink()
    _, sessions, pipeline = make_downlink(tmp_path, control, link)

    await pipeline.run(downlink_command())

    assert link.sent == []
    last = control.updates_for("down-1")[-1]
    assert last["state"] == "failed"
    assert last["errors"][0] == "Cannot stage image.jpg on the gateway"
    assert len(sessions) == 0


class FullDiskSink(io.BytesIO):
    def write(self, data) -> int:
        raise OSError("disk full")


@pytest.mark.asyncio
async def test_downlink_write_failure_fails_command_and_removes_staging(
    tmp_path: Path,
) -> None:
    control = FakeControl()
    link = FakeLink()
    bus, sessions, pipeline = make_downlink(tmp_path, control, link)

    task = asyncio.create_task(pipeline.run(downlink_command()))
    await wait_until(lambda: link.sent)

    session = sessions.get("down-1")
    assert session is not None
    session.close()
    session.stream = FullDiskSink()

    bus.registry.deliver_to("down-1", FileChunk("down-1", b"abc"))
    await asyncio.wait_for(task, timeout=1.0)

    last = control.updates_for("down-1")[-1]
    assert last["state"] == "failed"
    assert last["errors"] == ["Problem writing downlinked data for image.jpg", "disk full"]
    assert "downlinking_from_system" not in control.states_for("down-1")
    assert control.uploads == []
    assert list((tmp_path / "staging").iterdir()) == []
    assert len(sessions) == 0


def test_one_transfer_session_per_command() -> None:
    sessions = TransferSessions()
    first = sessions.open(TransferSession("c1", "uplink"))

    with pytest.raises(GatewayError) as excinfo:
        sessions.open(TransferSession("c1", "downlink"))

    assert excinfo.value.code == "transfer_active"
    assert sessions.get("c1") is first
    assert first.next_sequence() == 1
    assert first.next_sequence() == 2

    sessions.close("c1")
    sessions.open(TransferSession("c1", "downlink"))
    assert len(sessions) == 1
