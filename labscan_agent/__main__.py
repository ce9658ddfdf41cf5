"""LabScan agent entry point.

Usage:
    python -m labscan_agent [--config CONFIG_PATH] [--fake]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from .agent import FleetSimulator, LabscanAgent
from .config import AgentConfig

logger = logging.getLogger(__name__)


def build_config(args: argparse.Namespace) -> AgentConfig:
    """Load the settings file (if given) and apply CLI overrides."""
    if args.config:
        config = AgentConfig.load(args.config)
        logger.info("Using config from %s", args.config)
    else:
        config = AgentConfig()

    if args.state:
        config.state_path = args.state
    if args.count is not None and args.count > 0:
        config.fake_agent_count = args.count
    return config


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="LabScan Agent")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to an agent settings JSON file (optional)",
    )
    parser.add_argument(
        "--state",
        default=None,
        help="Path to the persisted provisioning state (overrides config)",
    )
    parser.add_argument(
        "--fake",
        action="store_true",
        help="Run in fake provisioning mode (simulated fleet)",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=None,
        help="Number of simulated agents in fake mode (overrides config)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    # Logging
    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = build_config(args)

    runner = FleetSimulator(config) if args.fake else LabscanAgent(config)

    loop = asyncio.new_event_loop()
    main_task = loop.create_task(runner.run())

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, shutting down", sig)
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown, sig)
        except NotImplementedError:
            pass  # Windows

    try:
        loop.run_until_complete(main_task)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        loop.close()


if __name__ == "__main__":
    main()
