"""
modbus-influx - Entry Point

Polls Modbus TCP devices described by templates and writes the decoded
values to InfluxDB.

Usage:
    modbus-influx                          # Start with config.toml
    modbus-influx --config site.yaml       # Use custom config file
    modbus-influx --dry-run                # Validate config, print targets, exit
    modbus-influx --loglevel info          # More verbose logging
"""

import argparse
import asyncio
import sys

from modbus_influx import __version__
from modbus_influx.common.config import AppConfig
from modbus_influx.common.exceptions import ConfigError
from modbus_influx.common.logging_setup import LOG_LEVELS, configure_logging, get_service_logger
from modbus_influx.services.config.loader import load_config
from modbus_influx.services.config.settings import EnvSettings
from modbus_influx.services.device.service import PollerService, format_interval

logger = get_service_logger("main")


def build_parser(env: EnvSettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="modbus-influx",
        description="Poll Modbus TCP input registers and write them to InfluxDB",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    modbus-influx                          # Start with config.toml
    modbus-influx -c site.yaml             # Use custom config file
    modbus-influx --dry-run                # Validate config and exit
    modbus-influx --loglevel debug --log-format text
        """
    )

    parser.add_argument(
        "--config", "-c",
        type=str,
        default=env.config,
        help=f"Path to configuration file, .toml or .yaml (default: {env.config})"
    )

    parser.add_argument(
        "--loglevel",
        choices=sorted(set(LOG_LEVELS) - {"warning"}),
        default=env.log_level.lower(),
        help=f"Log level (default: {env.log_level.lower()})"
    )

    parser.add_argument(
        "--logfile",
        type=str,
        default=env.log_file,
        help="Write logs to this file instead of stdout"
    )

    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default=env.log_format.lower(),
        help=f"Log line format (default: {env.log_format.lower()})"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration, print the poll targets and exit"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"modbus-influx {__version__}"
    )

    return parser


def print_config_errors(error: ConfigError) -> None:
    print("Configuration errors:", file=sys.stderr)
    for message in error.errors:
        print(f"  - {message}", file=sys.stderr)


def print_target_table(config: AppConfig) -> None:
    """Print the resolved poll targets."""
    influx = config.influxdb
    print()
    print(f"  Sink: {influx.api.value} at {influx.write_url}")
    print(f"  Templates: {len(config.templates)}  Targets: {len(config.targets)}")
    print()

    header = ("TARGET", "ENDPOINT", "UNIT", "INTERVAL", "FIELDS", "REQUESTS")
    rows = [
        (
            target.name,
            str(target.endpoint),
            str(target.unit_id),
            format_interval(target.interval),
            str(len(target.template.fields)),
            str(len(target.template.read_blocks)),
        )
        for target in config.targets
    ]
    widths = [max(len(row[i]) for row in [header, *rows]) for i in range(len(header))]
    for row in [header, *rows]:
        print("  " + "  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())
    print()


async def main_async(config: AppConfig) -> None:
    """Run the poller until a shutdown signal arrives."""
    service = PollerService(config)
    try:
        await service.run()
    except Exception as e:
        logger.critical(f"Poller failed: {e}")
        raise


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    env = EnvSettings()
    args = build_parser(env).parse_args(argv)

    configure_logging(args.loglevel, json_format=args.log_format == "json", log_file=args.logfile)

    try:
        config = load_config(args.config, env)
    except ConfigError as e:
        print_config_errors(e)
        return 1

    if args.dry_run:
        print_target_table(config)
        print("Dry run mode - configuration valid")
        return 0

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        print("\nStopped by user")
    except Exception as e:
        print(f"\nFatal error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
