"""Configuration loader for the Moxie control core.

Loads settings from environment variables (.env file) and config/default.yaml,
with environment variables taking precedence over YAML defaults.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv


# Project root is two levels up from this file (moxie_control/core/config.py -> project root)
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_ENGINE_PATHS = (
    "/usr/local/bin/docker",
    "/opt/homebrew/bin/docker",
    "/usr/bin/docker",
    "/Applications/Docker.app/Contents/Resources/bin/docker",
)

DEFAULT_TELEMETRY_TOPICS = (
    "moxie/conversation/#",
    "/devices/{device_id}/commands/+",
    "/devices/{device_id}/wakeword",
)


@dataclass(frozen=True)
class Settings:
    """Immutable configuration for the Moxie control core."""

    # Broker
    broker_host: str
    broker_port: int
    broker_use_tls: bool
    broker_username: str
    broker_password: str
    broker_client_id: str
    broker_keepalive: int

    # Topics
    device_id: str
    control_topic: str
    telemetry_topics: tuple[str, ...]

    # Reconnection
    reconnect_initial_delay: float
    reconnect_max_delay: float
    offline_after_failures: int

    # Container engine
    engine_paths: tuple[str, ...]
    engine_install_command: str
    container_name: str
    image_name: str
    deploy_dir: str

    # Orchestration
    health_check_timeout: float
    pull_timeout: float
    retry_attempts: int
    retry_initial_delay: float
    retry_max_delay: float
    poll_attempts: int
    health_poll_interval: float

    # Logging
    log_level: str


def _load_yaml_defaults(yaml_path: Path) -> dict[str, Any]:
    """Load default values from a YAML config file.

    Args:
        yaml_path: Path to the YAML configuration file.

    Returns:
        Dictionary of configuration values. Empty dict if file not found.
    """
    if not yaml_path.exists():
        return {}
    with open(yaml_path) as f:
        data = yaml.safe_load(f)
    return data if data else {}


def _get(env_key: str, yaml_defaults: dict[str, Any], yaml_key: str, default: Any = None) -> Any:
    """Get a config value with precedence: env var > yaml default > hardcoded default.

    Args:
        env_key: Environment variable name.
        yaml_defaults: Dictionary from YAML config file.
        yaml_key: Dot-separated key path in YAML (e.g., "broker.port").
        default: Fallback default value.

    Returns:
        The resolved configuration value.
    """
    # Environment variable takes precedence
    env_val = os.environ.get(env_key)
    if env_val is not None and env_val != "":
        return env_val

    # Walk nested YAML keys
    parts = yaml_key.split(".")
    node = yaml_defaults
    for part in parts:
        if isinstance(node, dict) and part in node:
            node = node[part]
        else:
            return default
    return node if node is not None else default


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_tuple(value: Any) -> tuple[str, ...]:
    """Accept a YAML list or a comma-separated env string."""
    if isinstance(value, (list, tuple)):
        return tuple(str(v).strip() for v in value if str(v).strip())
    return tuple(part.strip() for part in str(value).split(",") if part.strip())


def load_settings(
    env_path: Path | None = None,
    yaml_path: Path | None = None,
) -> Settings:
    """Load settings from .env and config/default.yaml.

    Environment variables take precedence over YAML defaults. Topic values may
    contain a ``{device_id}`` placeholder which is expanded here.

    Args:
        env_path: Path to .env file. Defaults to PROJECT_ROOT/.env.
        yaml_path: Path to YAML config. Defaults to PROJECT_ROOT/config/default.yaml.

    Returns:
        Frozen Settings dataclass with all configuration values.

    Raises:
        ValueError: If a value cannot be converted or is out of range.
    """
    if env_path is None:
        env_path = PROJECT_ROOT / ".env"
    if yaml_path is None:
        yaml_path = PROJECT_ROOT / "config" / "default.yaml"

    load_dotenv(env_path, override=False)
    y = _load_yaml_defaults(yaml_path)

    device_id = str(_get("MOXIE_DEVICE_ID", y, "device.id", "d_openmoxie_ios"))

    def topic(value: Any) -> str:
        return str(value).replace("{device_id}", device_id)

    broker_port = int(_get("MQTT_PORT", y, "broker.port", 1883))
    if not 0 < broker_port < 65536:
        raise ValueError(f"MQTT_PORT must be between 1 and 65535, got {broker_port}")

    retry_attempts = int(_get("RETRY_ATTEMPTS", y, "orchestration.retry_attempts", 3))
    poll_attempts = int(_get("POLL_ATTEMPTS", y, "orchestration.poll_attempts", 5))
    if retry_attempts < 1 or poll_attempts < 1:
        raise ValueError("RETRY_ATTEMPTS and POLL_ATTEMPTS must be at least 1")

    return Settings(
        broker_host=str(_get("MQTT_HOST", y, "broker.host", "localhost")),
        broker_port=broker_port,
        broker_use_tls=_as_bool(_get("MQTT_TLS", y, "broker.tls", False)),
        broker_username=str(_get("MQTT_USERNAME", y, "broker.username", "unknown")),
        broker_password=str(_get("MQTT_PASSWORD", y, "broker.password", "")),
        broker_client_id=str(
            _get("MQTT_CLIENT_ID", y, "broker.client_id", "SimpleMoxieSwitcher")
        ),
        broker_keepalive=int(_get("MQTT_KEEPALIVE", y, "broker.keepalive", 60)),
        device_id=device_id,
        control_topic=topic(
            _get("CONTROL_TOPIC", y, "topics.control",
                 "/devices/{device_id}/events/remote-chat")
        ),
        telemetry_topics=tuple(
            topic(t) for t in _as_tuple(
                _get("TELEMETRY_TOPICS", y, "topics.telemetry", DEFAULT_TELEMETRY_TOPICS)
            )
        ),
        reconnect_initial_delay=float(
            _get("RECONNECT_INITIAL_DELAY", y, "broker.reconnect_initial_delay", 1.0)
        ),
        reconnect_max_delay=float(
            _get("RECONNECT_MAX_DELAY", y, "broker.reconnect_max_delay", 60.0)
        ),
        offline_after_failures=int(
            _get("OFFLINE_AFTER_FAILURES", y, "broker.offline_after_failures", 5)
        ),
        engine_paths=_as_tuple(
            _get("ENGINE_PATHS", y, "engine.paths", DEFAULT_ENGINE_PATHS)
        ),
        engine_install_command=str(
            _get("ENGINE_INSTALL_COMMAND", y, "engine.install_command", "")
        ),
        container_name=str(
            _get("CONTAINER_NAME", y, "container.name", "openmoxie-server")
        ),
        image_name=str(
            _get("IMAGE_NAME", y, "container.image", "openmoxie/openmoxie-server:latest")
        ),
        deploy_dir=str(
            _get("DEPLOY_DIR", y, "container.deploy_dir", str(Path.home() / "OpenMoxie"))
        ),
        health_check_timeout=float(
            _get("HEALTH_CHECK_TIMEOUT", y, "orchestration.health_check_timeout", 10.0)
        ),
        pull_timeout=float(
            _get("PULL_TIMEOUT", y, "orchestration.pull_timeout", 600.0)
        ),
        retry_attempts=retry_attempts,
        retry_initial_delay=float(
            _get("RETRY_INITIAL_DELAY", y, "orchestration.retry_initial_delay", 3.0)
        ),
        retry_max_delay=float(
            _get("RETRY_MAX_DELAY", y, "orchestration.retry_max_delay", 30.0)
        ),
        poll_attempts=poll_attempts,
        health_poll_interval=float(
            _get("HEALTH_POLL_INTERVAL", y, "orchestration.health_poll_interval", 30.0)
        ),
        log_level=str(_get("LOG_LEVEL", y, "logging.level", "INFO")),
    )
