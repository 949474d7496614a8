"""Forwarding of commands the satellite executes on its own."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from .bus import UpdateBus
from .core import SatelliteLinkClient
from .messages import CommandState

LOGGER = logging.getLogger(__name__)


async def forward_to_link(
    bus: UpdateBus,
    link: SatelliteLinkClient,
    command_id: str,
    payload: Mapping[str, Any],
) -> bool:
    """Send ``payload`` to the satellite, reporting uplinking then transmitted.

    Returns False when the link refused the message; the command has then
    been failed.
    """
    await bus.command_update(command_id, CommandState.UPLINKING_TO_SYSTEM)
    try:
        link.send(payload)
    except Exception as exc:
        LOGGER.warning("Failed to send command %s to the satellite: %s", command_id, exc)
        await bus.fail(
            command_id,
            [f"Failed to send {payload.get('type')} command to the satellite", str(exc)],
        )
        return False
    await bus.command_update(command_id, CommandState.TRANSMITTED_TO_SYSTEM)
    return True
