"""
Garage Door Monitor - Entry Point

Usage:
    python -m garage_monitor                    # Start with environment settings
    python -m garage_monitor --config my.yaml   # Overlay settings from a YAML file
    python -m garage_monitor --dry-run          # Print settings and exit
    python -m garage_monitor --verbose          # Enable debug logging
"""

import argparse
import sys

import uvicorn

from .common.config import load_settings
from .common.exceptions import ConfigError
from .common.logging_setup import configure_levels
from .main import create_app

SECRET_FIELDS = {"twilio_account_token", "function_key"}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Garage Door Monitor - texts you while the garage door stays open",
    )
    parser.add_argument("--config", "-c", help="YAML settings file")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", "-p", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--dry-run", action="store_true", help="Print settings and exit")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        overrides = {"log_level": "DEBUG"} if args.verbose else {}
        settings = load_settings(args.config, **overrides)
    except ConfigError as e:
        print(f"Error loading configuration: {e}")
        return 1

    configure_levels(settings.log_level, settings.log_format.lower() == "json")

    if args.dry_run:
        print("=" * 50)
        print("Garage Door Monitor settings")
        print("=" * 50)
        for name, value in settings.model_dump().items():
            if name in SECRET_FIELDS and value:
                value = "********"
            print(f"  {name}: {value}")
        return 0

    uvicorn.run(create_app(settings), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
