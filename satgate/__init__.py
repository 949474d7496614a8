"""Ground-station gateway between mission control and a satellite link."""

__version__ = "0.1.0"
