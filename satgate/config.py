"""Configuration loader for satgate."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants
from .errors import GatewayConfigurationError


@dataclass(slots=True)
class ControlConfig:
    base_url: str = constants.DEFAULT_CONTROL_BASE_URL
    gateway_token: Optional[str] = None
    download_chunk_size: int = 64 * 1024
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0


@dataclass(slots=True)
class LinkConfig:
    broker_host: str = constants.DEFAULT_BROKER_HOST
    broker_port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    topic_prefix: str = constants.DEFAULT_TOPIC_PREFIX
    system: str = constants.DEFAULT_SYSTEM_NAME
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0

    @property
    def uplink_topic(self) -> str:
        return f"{self.topic_prefix}/{self.system}/uplink"

    @property
    def downlink_topic(self) -> str:
        return f"{self.topic_prefix}/{self.system}/downlink"


@dataclass(slots=True)
class HandshakeConfig:
    max_attempts: int = 10
    retry_interval_seconds: float = 1.0


@dataclass(slots=True)
class HardwareConfig:
    prep_tick_seconds: float = 1.7
    orient_tick_seconds: float = 0.2
    orient_step_degrees: int = 3
    orient_max_degrees: int = 268
    broadcast_tick_seconds: float = 1.0
    broadcast_max_wait_seconds: float = 6.0
    checksum_latency_seconds: float = 1.5


@dataclass(slots=True)
class TransferConfig:
    staging_dir: Path = constants.DEFAULT_STAGING_DIR
    content_type: str = "image/jpeg"
    uplink_progress_floor: int = 10


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_traffic: bool = True
    log_network: bool = False


@dataclass(slots=True)
class GatewayConfig:
    control: ControlConfig
    link: LinkConfig
    handshake: HandshakeConfig
    hardware: HardwareConfig
    transfer: TransferConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def load_config(path: Optional[Path] = None) -> GatewayConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "control": {
                "base_url": constants.DEFAULT_CONTROL_BASE_URL,
                "download_chunk_size": str(64 * 1024),
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
            },
            "link": {
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_BROKER_PORT),
                "topic_prefix": constants.DEFAULT_TOPIC_PREFIX,
                "system": constants.DEFAULT_SYSTEM_NAME,
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
            },
            "handshake": {
                "max_attempts": "10",
                "retry_interval_seconds": "1.0",
            },
            "hardware": {
                "prep_tick_seconds": "1.7",
                "orient_tick_seconds": "0.2",
                "orient_step_degrees": "3",
                "orient_max_degrees": "268",
                "broadcast_tick_seconds": "1.0",
                "broadcast_max_wait_seconds": "6.0",
                "checksum_latency_seconds": "1.5",
            },
            "transfer": {
                "staging_dir": str(constants.DEFAULT_STAGING_DIR),
                "content_type": "image/jpeg",
                "uplink_progress_floor": "10",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_traffic": "true",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host_value = parser.get("link", "broker_host")
    broker_port_value = parser.getint(
        "link", "broker_port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("link", "broker_host", host_part)
            parser.set("link", "broker_port", str(parsed_port))

    control = ControlConfig(
        base_url=parser.get("control", "base_url"),
        gateway_token=parser.get("control", "gateway_token", fallback=None),
        download_chunk_size=max(
            1, parser.getint("control", "download_chunk_size", fallback=64 * 1024)
        ),
        reconnect_initial_seconds=parser.getfloat(
            "control", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "control", "reconnect_max_seconds", fallback=30.0
        ),
    )

    link = LinkConfig(
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=parser.get("link", "username", fallback=None),
        password=parser.get("link", "password", fallback=None),
        topic_prefix=parser.get("link", "topic_prefix").strip("/"),
        system=parser.get("link", "system"),
        reconnect_initial_seconds=parser.getfloat(
            "link", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "link", "reconnect_max_seconds", fallback=30.0
        ),
    )

    retry_interval = parser.getfloat("handshake", "retry_interval_seconds", fallback=1.0)
    if retry_interval <= 0:
        raise GatewayConfigurationError(
            f"handshake retry_interval_seconds must be positive, got {retry_interval}"
        )

    handshake = HandshakeConfig(
        max_attempts=max(1, parser.getint("handshake", "max_attempts", fallback=10)),
        retry_interval_seconds=retry_interval,
    )

    hardware_defaults = HardwareConfig()

    hardware = HardwareConfig(
        prep_tick_seconds=parser.getfloat(
            "hardware", "prep_tick_seconds", fallback=hardware_defaults.prep_tick_seconds
        ),
        orient_tick_seconds=parser.getfloat(
            "hardware",
            "orient_tick_seconds",
            fallback=hardware_defaults.orient_tick_seconds,
        ),
        orient_step_degrees=max(
            1,
            parser.getint(
                "hardware",
                "orient_step_degrees",
                fallback=hardware_defaults.orient_step_degrees,
            ),
        ),
        orient_max_degrees=max(
            0,
            parser.getint(
                "hardware",
                "orient_max_degrees",
                fallback=hardware_defaults.orient_max_degrees,
            ),
        ),
        broadcast_tick_seconds=parser.getfloat(
            "hardware",
            "broadcast_tick_seconds",
            fallback=hardware_defaults.broadcast_tick_seconds,
        ),
        broadcast_max_wait_seconds=parser.getfloat(
            "hardware",
            "broadcast_max_wait_seconds",
            fallback=hardware_defaults.broadcast_max_wait_seconds,
        ),
        checksum_latency_seconds=parser.getfloat(
            "hardware",
            "checksum_latency_seconds",
            fallback=hardware_defaults.checksum_latency_seconds,
        ),
    )

    transfer = TransferConfig(
        staging_dir=Path(
            parser.get(
                "transfer", "staging_dir", fallback=str(constants.DEFAULT_STAGING_DIR)
            )
        ).expanduser(),
        content_type=parser.get("transfer", "content_type", fallback="image/jpeg"),
        uplink_progress_floor=max(
            1, parser.getint("transfer", "uplink_progress_floor", fallback=10)
        ),
    )

    log_path_value = parser.get(
        "logging", "path", fallback=str(constants.DEFAULT_LOG_PATH)
    ).strip()

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_traffic=parser.getboolean("logging", "log_traffic", fallback=True),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return GatewayConfig(
        control=control,
        link=link,
        handshake=handshake,
        hardware=hardware,
        transfer=transfer,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: GatewayConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
