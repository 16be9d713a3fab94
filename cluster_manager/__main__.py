"""
Cluster manager CLI entry point.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from cluster_manager.config.settings import ClusterManagerConfig, LoggingConfig
from cluster_manager.logging_config import setup_logging as setup_full_logging
from cluster_manager.manager import ClusterManager

DEFAULT_CONFIG_PATH = "/etc/cluster-manager/config.yml"


def setup_logging(settings: LoggingConfig, verbose: bool = False) -> None:
    """Setup file and console logging, falling back to basic logging."""
    console_level = "DEBUG" if verbose else settings.console_level

    # Use the configured directory if writable, otherwise a local one
    log_dir = settings.log_dir
    if not os.access(Path(log_dir).parent, os.W_OK):
        log_dir = str(Path.home() / ".local" / "log" / "cluster-manager")

    try:
        setup_full_logging(
            log_dir=log_dir,
            console_level=console_level,
            file_level=settings.file_level,
            use_json=settings.use_json,
        )
    except PermissionError:
        logging.basicConfig(
            level=getattr(logging, console_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Cluster manager - ClickHouse telemetry cluster lifecycle service"
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file",
    )

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )

    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    args = parser.parse_args()

    if args.generate_config:
        config = ClusterManagerConfig()
        config.save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return 0

    if args.validate_config:
        try:
            ClusterManagerConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return 0
        except Exception as e:
            print(f"Configuration invalid: {e}")
            return 1

    try:
        config = ClusterManagerConfig.from_file(args.config)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.logging, args.verbose)
    logger = logging.getLogger(__name__)
    logger.info(f"Loaded configuration from {args.config}")

    try:
        manager = ClusterManager(config)
        asyncio.run(manager.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Error running cluster manager: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
