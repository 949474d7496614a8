"""Adapter modules for external integrations."""

from .control import MissionControlClient
from .mqtt import MQTTSatelliteLink

__all__ = [
    "MissionControlClient",
    "MQTTSatelliteLink",
]
