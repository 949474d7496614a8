"""Error taxonomy for the gateway."""

from __future__ import annotations

from typing import Optional


class GatewayError(RuntimeError):
    """Base class for errors raised while handling commands and link traffic."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        command_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.command_id = command_id


class GatewayConfigurationError(GatewayError):
    """Raised when the gateway cannot be configured."""


class ValidationError(GatewayError):
    """A command is missing a field its operation requires."""

    def __init__(self, message: str, *, command_id: Optional[str] = None) -> None:
        super().__init__(message, code="invalid_fields", command_id=command_id)


class LinkTimeoutError(GatewayError):
    """The handshake exhausted its attempts without synchronising."""

    def __init__(
        self,
        *,
        acknowledged: bool,
        attempts: int,
        command_id: Optional[str] = None,
    ) -> None:
        if acknowledged:
            message = "Contact made with satellite but could not sync carriers"
            code = "link_unsynchronized"
        else:
            message = f"No contact with satellite after {attempts} attempts"
            code = "link_no_contact"
        super().__init__(message, code=code, command_id=command_id)
        self.acknowledged = acknowledged
        self.attempts = attempts


class TransferIOError(GatewayError):
    """Reading from or writing to a transfer sink or source failed."""

    def __init__(self, message: str, *, command_id: Optional[str] = None) -> None:
        super().__init__(message, code="transfer_io", command_id=command_id)


class UpstreamIOError(GatewayError):
    """Uploading an artifact to the control system failed."""

    def __init__(self, message: str, *, command_id: Optional[str] = None) -> None:
        super().__init__(message, code="upstream_io", command_id=command_id)


class ProtocolDecodeError(GatewayError):
    """An inbound link payload could not be decoded."""

    def __init__(self, message: str, *, received: object = None) -> None:
        super().__init__(message, code="format_error")
        self.received = received


class UnknownCommandType(GatewayError):
    """The gateway has no implementation for a command type."""

    def __init__(self, command_type: str, *, command_id: Optional[str] = None) -> None:
        super().__init__(
            f"Gateway has no implementation for command type {command_type}",
            code="unknown_command",
            command_id=command_id,
        )
        self.command_type = command_type


class UnknownUpdateType(GatewayError):
    """The link sent an update whose type the gateway does not route."""

    def __init__(self, update_type: object) -> None:
        super().__init__(
            "The gateway received an update that it did not understand",
            code="unknown_update",
        )
        self.update_type = update_type


class TerminalStateError(GatewayError):
    """An update arrived for a command that already reached a terminal state."""


class InvalidTransitionError(GatewayError):
    """An update would move a command backwards through its lifecycle."""


class ControlConnectionError(GatewayError):
    """Raised when the mission control connection is unavailable."""


class LinkConnectionError(GatewayError):
    """Raised when the satellite link transport fails."""
