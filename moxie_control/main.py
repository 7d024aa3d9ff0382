"""Moxie control core entry point.

Usage:
    python -m moxie_control                        # connect and run
    python -m moxie_control --setup                # provision the backend first
    python -m moxie_control --config my.yaml --env .env.local
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from moxie_control.container.orchestrator import ContainerOrchestrator
from moxie_control.container.runner import ProcessRunner
from moxie_control.core.config import Settings, load_settings
from moxie_control.core.controller import CompanionController
from moxie_control.core.errors import OperationInProgress, SetupFailed
from moxie_control.messaging.client import MessageChannelClient

log = logging.getLogger("moxie_control")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Moxie control core")
    p.add_argument("--env", type=Path, default=None, help="Path to .env file")
    p.add_argument("--config", type=Path, default=None, help="Path to YAML config")
    p.add_argument("--log-level", default=None, help="Log level (overrides config)")
    p.add_argument(
        "--setup",
        action="store_true",
        help="Provision the backend (compose file, images, containers) before running",
    )
    return p.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(name)-32s %(levelname)-7s %(message)s",
        datefmt="%H:%M:%S",
    )


async def async_main(settings: Settings, run_setup: bool = False) -> int:
    """Build the control core from settings and run it until signalled.

    Returns:
        Process exit code.
    """
    runner = ProcessRunner()
    orchestrator = ContainerOrchestrator.from_settings(settings, runner)
    client = MessageChannelClient.from_settings(settings)

    if run_setup:
        orchestrator.setup_events.subscribe(
            lambda progress: log.info(
                "setup: %s (%d%%)", progress.stage.name, progress.percent_complete
            )
        )
        try:
            await orchestrator.run_setup()
        except (SetupFailed, OperationInProgress) as e:
            log.error("%s", e)
            return 1

    controller = CompanionController(settings, orchestrator, client)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(controller.stop()))

    try:
        await controller.start()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings(env_path=args.env, yaml_path=args.config)
    configure_logging(args.log_level or settings.log_level)

    try:
        code = asyncio.run(async_main(settings, run_setup=args.setup))
    except KeyboardInterrupt:
        code = 130
    log.info("moxie control shut down")
    return code


if __name__ == "__main__":
    raise SystemExit(main())
