"""Protocol definitions for the gateway's transport adapters."""

from __future__ import annotations

from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Protocol

CommandHandler = Callable[[Mapping[str, Any]], Awaitable[None] | None]
LinkMessageHandler = Callable[[Any], Awaitable[None] | None]


class ControlSystemClient(Protocol):
    """Minimal contract for the connection to mission control."""

    def set_command_handler(self, handler: Optional[CommandHandler]) -> None:
        """Route commands received from mission control to ``handler``."""
        ...

    async def transmit_command_update(
        self, command_id: str, state: str, command: Mapping[str, Any]
    ) -> None:
        """Report a command state transition and its progress fields."""
        ...

    async def transmit_metrics(self, measurements: list[dict[str, Any]]) -> None:
        """Forward a batch of telemetry measurements."""
        ...

    async def transmit_events(self, events: list[dict[str, Any]]) -> None:
        """Forward gateway or satellite events."""
        ...

    async def transmit(self, payload: Mapping[str, Any]) -> None:
        """Forward an arbitrary message verbatim."""
        ...

    def download_staged_file(self, path: str) -> AsyncIterator[bytes]:
        """Stream a file staged on mission control for uplink.

        Args:
            path: Download path supplied in the uplink command.

        Returns:
            An async iterator yielding the file's bytes chunk by chunk.
        """
        ...

    async def upload_downlinked_file(
        self,
        filename: str,
        path: Any,
        system: Optional[str],
        timestamp: int,
        content_type: str,
        command_id: str,
    ) -> None:
        """Upload a file downlinked from the satellite.

        Raises:
            Exception: Any failure; the caller wraps it with context.
        """
        ...


class SatelliteLinkClient(Protocol):
    """Minimal contract for the satellite link transport."""

    def set_message_handler(self, handler: Optional[LinkMessageHandler]) -> None:
        """Route raw messages received from the link to ``handler``."""
        ...

    def send(self, message: Mapping[str, Any]) -> None:
        """Serialise and transmit a message to the satellite."""
        ...
