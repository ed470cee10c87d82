#!/usr/bin/env python3
"""Main entry point for the stateless calculator MCP server."""

import argparse
import json
import sys
from typing import Optional
import structlog
import uvicorn

from calculator_server.config import ServerConfig, create_sample_config, load_config
from calculator_server.logging import setup_logging
from calculator_server.server import create_app


def build_config(
    config_file: Optional[str] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    debug: bool = False,
) -> ServerConfig:
    """Load configuration and apply command line overrides on top of it."""
    config = load_config(config_file)
    overrides = {key: value for key, value in (("host", host), ("port", port)) if value is not None}
    if debug:
        overrides.update(debug=True, log_level="debug")
    if overrides:
        config = ServerConfig(**{**config.to_dict(), **overrides})
    return config


def run_server(
    config_file: Optional[str] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    debug: bool = False,
) -> None:
    """Run the HTTP server until interrupted."""
    config = build_config(config_file, host, port, debug)

    setup_logging(config.log_level, config.debug)
    logger = structlog.get_logger()

    logger.info(
        "Starting MCP server",
        server_name=config.server_name,
        version=config.server_version,
        host=config.host,
        port=config.port,
        pattern="stateless",
    )

    try:
        app = create_app(config)
        uvicorn.run(
            app,
            host=config.host,
            port=config.port,
            log_level="warning" if config.log_level == "warn" else config.log_level,
            log_config=None,
        )
    except Exception as e:
        logger.error("Server error", error=str(e), exc_info=True)
        sys.exit(1)
    finally:
        logger.info("MCP server stopped")


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Stateless calculator MCP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run on the default address (127.0.0.1:1071)
  python main.py

  # Run with custom config file
  python main.py --config config.json

  # Generate sample config
  python main.py --sample-config

  # Register the sample echo tool
  SAMPLE_TOOL_NAME=echo python main.py
"""
    )

    parser.add_argument(
        "--config",
        "-c",
        help="Configuration file path (JSON format)"
    )
    parser.add_argument(
        "--sample-config",
        action="store_true",
        help="Generate sample configuration and exit"
    )
    parser.add_argument(
        "--validate-config",
        action="store_true",
        help="Validate configuration and exit"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", "-p", type=int, help="Bind port")

    args = parser.parse_args()

    if args.sample_config:
        sample_config = create_sample_config()
        print(json.dumps(sample_config, indent=2))
        return

    if args.validate_config:
        try:
            config = load_config(args.config)
            print("Configuration is valid")
            print(json.dumps(config.to_dict(), indent=2))
        except Exception as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            sys.exit(1)
        return

    try:
        run_server(args.config, args.host, args.port, args.debug)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
