"""Main entry point for the XRP vault orchestrator."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from config import CONFIG_PATH_ENV, OrchestratorConfig
from core.errors import ConfigurationError
from orchestrator import Orchestrator


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler("orchestrator.log"),
        ],
    )


def load_config(config_path: str = "") -> OrchestratorConfig:
    """Load configuration from a TOML file if given, else from the environment.

    Raises:
        ConfigurationError: If the configuration is missing or invalid
    """
    config = OrchestratorConfig.load(config_path)
    config.validate()
    return config


def install_signal_handlers(orchestrator: Orchestrator) -> None:
    """Stop the orchestrator cleanly on SIGINT / SIGTERM."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    stopping = set()

    def _handle(signame: str) -> None:
        if stopping or not orchestrator.running:
            return
        logger.info(f"Received {signame}, shutting down...")
        task = loop.create_task(orchestrator.stop())
        stopping.add(task)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle, sig.name)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass


async def async_main(config_path: str = "") -> int:
    """Async main function.

    Returns:
        Exit code
    """
    logger = logging.getLogger(__name__)

    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    logger.info(f"Configuration: {config.summary()}")

    try:
        orchestrator = Orchestrator(config)
        install_signal_handlers(orchestrator)
        await orchestrator.run()
        return 0
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="XRP vault position orchestrator")
    parser.add_argument("--config", default="", help="Path to a TOML configuration file")
    parser.add_argument("--api", action="store_true", help="Serve the HTTP API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    log_level = os.getenv("LOG_LEVEL", "INFO")
    setup_logging(log_level)

    logger = logging.getLogger(__name__)
    logger.info("Starting XRP vault orchestrator...")

    if args.api:
        import uvicorn

        if args.config:
            os.environ[CONFIG_PATH_ENV] = args.config
        uvicorn.run("api.main:app", host=args.host, port=args.port, log_level=log_level.lower())
        return

    try:
        exit_code = asyncio.run(async_main(args.config))
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
