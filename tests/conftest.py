import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import pytest

from satgate.config import GatewayConfig, load_config


class FakeControl:
    """Records everything the gateway sends to mission control."""

    def __init__(self, files: Optional[Dict[str, List[bytes]]] = None) -> None:
        self.handler = None
        self.updates: list[dict[str, Any]] = []
        self.metrics: list[list[dict[str, Any]]] = []
        self.events: list[dict[str, Any]] = []
        self.forwarded: list[dict[str, Any]] = []
        self.files = files or {}
        self.download_error: Optional[Exception] = None
        self.upload_error: Optional[Exception] = None
        self.uploads: list[dict[str, Any]] = []

    def set_command_handler(self, handler) -> None:
        self.handler = handler

    async def transmit_command_update(
        self, command_id: str, state: str, command: Mapping[str, Any]
    ) -> None:
        document = dict(command)
        assert document["id"] == command_id
        assert document["state"] == state
        self.updates.append(document)

    async def transmit_metrics(self, measurements: list[dict[str, Any]]) -> None:
        self.metrics.append(measurements)

    async def transmit_events(self, events: list[dict[str, Any]]) -> None:
        self.events.extend(events)

    async def transmit(self, payload: Mapping[str, Any]) -> None:
        self.forwarded.append(dict(payload))

    async def download_staged_file(self, path: str):
        for chunk in self.files[path]:
            yield chunk
        if self.download_error is not None:
            raise self.download_error

    async def upload_downlinked_file(
        self,
        filename: str,
        path: Any,
        system: Optional[str],
        timestamp: int,
        content_type: str,
        command_id: str,
    ) -> None:
        self.uploads.append(
            {
                "filename": filename,
                "path": Path(path),
                "content": Path(path).read_bytes(),
                "system": system,
                "timestamp": timestamp,
                "content_type": content_type,
                "command_id": command_id,
            }
        )
        if self.upload_error is not None:
            raise self.upload_error

    def updates_for(self, command_id: str) -> list[dict[str, Any]]:
        return [update for update in self.updates if update["id"] == command_id]

    def states_for(self, command_id: str) -> list[str]:
        return [update["state"] for update in self.updates_for(command_id)]

    def events_of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.events if event["type"] == event_type]


class FakeLink:
    """Records messages sent to the satellite."""

    def __init__(self, on_send: Optional[Callable[[dict[str, Any]], None]] = None) -> None:
        self.handler = None
        self.sent: list[dict[str, Any]] = []
        self.on_send = on_send
        self.fail_with: Optional[Exception] = None

    def set_message_handler(self, handler) -> None:
        self.handler = handler

    def send(self, message: Mapping[str, Any]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        # Round-trip through JSON like the real transport does.
        document = json.loads(json.dumps(message))
        self.sent.append(document)
        if self.on_send is not None:
            self.on_send(document)

    def sent_of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [message for message in self.sent if message.get("type") == message_type]


@pytest.fixture
def fake_control() -> FakeControl:
    return FakeControl()


@pytest.fixture
def fake_link() -> FakeLink:
    return FakeLink()


@pytest.fixture
def gateway_config(tmp_path: Path) -> GatewayConfig:
    config_path = tmp_path / "satgate.cfg"
    config_path.write_text(
        f"""
[handshake]
retry_interval_seconds = 0.02

[hardware]
prep_tick_seconds = 0
orient_tick_seconds = 0
orient_step_degrees = 40
broadcast_tick_seconds = 0.001
broadcast_max_wait_seconds = 0.003
checksum_latency_seconds = 0

[transfer]
staging_dir = {tmp_path / "staging"}

[logging]
path =
        """.strip()
        + "\n",
        encoding="utf-8",
    )
    return load_config(config_path)
