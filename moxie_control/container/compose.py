"""Compose deployment file for the OpenMoxie backend and its MQTT broker."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

COMPOSE_FILENAME = "docker-compose.yml"
BROKER_IMAGE = "openmoxie/openmoxie-mqtt:latest"


def build_compose_config(
    container_name: str,
    image_name: str,
    broker_port: int = 1883,
) -> dict:
    """Describe the server container and the broker container it depends on.

    Args:
        container_name: Name of the backend server container.
        image_name: Image for the backend server.
        broker_port: Host port mapped to the broker's plain MQTT port.

    Returns:
        Compose configuration as a plain dict.
    """
    return {
        "services": {
            container_name: {
                "image": image_name,
                "container_name": container_name,
                "ports": ["8001:8000"],
                "volumes": ["./local:/app/local"],
                "restart": "unless-stopped",
                "depends_on": ["mqtt"],
                "networks": ["openmoxie"],
            },
            "mqtt": {
                "image": BROKER_IMAGE,
                "container_name": "openmoxie-mqtt",
                "ports": [f"{broker_port}:1883", "8883:8883"],
                "restart": "unless-stopped",
                "networks": ["openmoxie"],
            },
        },
        "networks": {"openmoxie": {"driver": "bridge"}},
    }


def ensure_compose_file(
    deploy_dir: str | Path,
    container_name: str,
    image_name: str,
    broker_port: int = 1883,
) -> Path:
    """Create the deployment directory and compose file if missing.

    An existing compose file is left untouched so user edits survive.

    Returns:
        Path to the compose file.
    """
    directory = Path(deploy_dir)
    directory.mkdir(parents=True, exist_ok=True)
    compose_path = directory / COMPOSE_FILENAME
    if compose_path.exists():
        logger.info("Using existing compose file %s", compose_path)
        return compose_path

    config = build_compose_config(container_name, image_name, broker_port)
    with open(compose_path, "w") as f:
        yaml.safe_dump(config, f, sort_keys=False)
    logger.info("Wrote compose file %s", compose_path)
    return compose_path
