"""
Main entry point for the Playlist Manager backend.

This script loads the configuration, sets up logging, builds the controller,
and serves the message bridge on stdin/stdout until the input is closed.
"""

import sys
import logging
import asyncio
import argparse
from types import TracebackType
from typing import List, Optional, Type

from playlist_manager.bridge import MessageBridge
from playlist_manager.config import ConfigManager
from playlist_manager.constants import CONFIG_FILE, DATABASE_FILE, TEMP_DOWNLOAD_DIR
from playlist_manager.controller import AppController
from playlist_manager.datastore import Database
from playlist_manager.logging_config import setup_logging
from playlist_manager._version import __version__


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Playlist download and conversion backend.")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--database', default=str(DATABASE_FILE), help="Path to the SQLite database.")
    parser.add_argument('--log-level', help="Overrides the configured log level.")
    parser.add_argument('--no-update-check', action='store_true', help="Skip the GitHub release check.")
    return parser.parse_args(argv)


async def run(controller: AppController):
    """Serves the bridge and shuts the queue down once the front end disconnects."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_async_exception)

    await controller.run_startup_checks()
    if controller.update_info:
        logging.info(f"Update available: {controller.update_info['version']} ({controller.update_info['url']})")
    bridge = MessageBridge(controller)
    try:
        await bridge.serve_stdio()
    finally:
        await controller.shutdown()


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)

    # 1. Ensure temp directory exists before anything else
    TEMP_DOWNLOAD_DIR.mkdir(parents=True, exist_ok=True)

    # 2. Load configuration before setting up logging
    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()
    if args.no_update_check:
        config.check_for_updates_on_startup = False

    # 3. Log to file and stderr; stdout belongs to the bridge
    setup_logging(None, args.log_level or config.log_level)
    sys.excepthook = handle_exception

    database = Database(args.database)
    controller = AppController(config_manager, config, database)
    try:
        asyncio.run(run(controller))
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")


if __name__ == "__main__":
    main()
