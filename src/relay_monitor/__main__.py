"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .app import RelayMonitorApp
from .config_store import ConfigError, ConfigStore, MissingAccountError
from .engine import describe_rules

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Watch GitHub repositories and group chats, relay matches to chat targets"
    )
    parser.add_argument("--config", default="config.json", help="Path to the JSON configuration")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument(
        "--show-rules",
        action="store_true",
        help="Print the configured rules and exit",
    )
    parser.add_argument(
        "--write-default",
        action="store_true",
        help="Write a default configuration file and exit",
    )
    args = parser.parse_args()

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    store = ConfigStore(Path(args.config))
    if args.write_default:
        store.write_default()
        return
    if not store.exists():
        store.write_default()
        logger.error("No configuration found, edit %s and start again", store.path)
        sys.exit(2)

    try:
        config = store.load()
    except MissingAccountError:
        logger.error("Set account.uin in %s before starting", store.path)
        sys.exit(2)
    except ConfigError as exc:
        logger.error("%s", exc)
        sys.exit(2)

    if args.show_rules:
        print(describe_rules(config.rules))
        return

    app = RelayMonitorApp(config)
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Stopped by user")


if __name__ == "__main__":
    main()
