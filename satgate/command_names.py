"""Command type names accepted from mission control.

These names arrive in the ``type`` field of every inbound command:
    {"id": "...", "type": "<name>", "fields": [...]}

Pass-through commands are executed by the satellite; the gateway only
forwards them. The remaining commands are orchestrated by the gateway.
"""

from __future__ import annotations


class CommandNames:
    """Command type constants."""

    # -------------------------------------------------------------------------
    # Pass-through commands (forwarded verbatim to the satellite)
    # -------------------------------------------------------------------------

    PING = "ping"
    """Round-trip liveness check answered by the satellite."""

    TELEMETRY = "telemetry"
    """Ask the satellite to start or stop telemetry."""

    UPDATE_FILE_LIST = "update_file_list"
    """Ask the satellite for its current file listing."""

    SAFEMODE = "safemode"
    """Put the satellite into safe mode."""

    # -------------------------------------------------------------------------
    # Gateway-orchestrated commands
    # -------------------------------------------------------------------------

    UPLINK_FILE = "uplink_file"
    """Stream a file staged on mission control up to the satellite."""

    DOWNLINK_FILE = "downlink_file"
    """Collect a file from the satellite and upload it to mission control."""

    CONNECT = "connect"
    """Prepare the ground hardware and synchronise carriers with the satellite."""


PASSTHROUGH_COMMANDS = frozenset(
    {
        CommandNames.PING,
        CommandNames.TELEMETRY,
        CommandNames.UPDATE_FILE_LIST,
        CommandNames.SAFEMODE,
    }
)
