"""Core primitives for satgate."""

from .protocols import (
    CommandHandler,
    ControlSystemClient,
    LinkMessageHandler,
    SatelliteLinkClient,
)

__all__ = [
    "CommandHandler",
    "ControlSystemClient",
    "LinkMessageHandler",
    "SatelliteLinkClient",
]
