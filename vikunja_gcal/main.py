from __future__ import annotations

import argparse
import logging
import os
from typing import Sequence

import uvicorn

from vikunja_gcal.config_manager import ConfigError, ConfigManager
from vikunja_gcal.sync_engine import SyncEngine
from vikunja_gcal.web_feed import AppContext, create_app


logger = logging.getLogger("vikunja_gcal")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_SYNC_FAILED = 2


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync Vikunja tasks into Google Calendar")
    parser.add_argument(
        "command",
        nargs="?",
        choices=("sync", "serve"),
        default="sync",
        help="sync: run one cycle and exit; serve: iCal feed server with periodic sync",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("VIKUNJA_GCAL_CONFIG", "config.yaml"),
        help="Optional YAML config file; environment variables take precedence",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    parser.add_argument("--no-sync", action="store_true", help="serve: only expose the feed")
    return parser.parse_args(argv)


def run_sync(config_manager: ConfigManager) -> int:
    config = config_manager.load_validated()
    result = SyncEngine.from_config(config).run_once(trigger="cli")
    if result.status == "error":
        return EXIT_SYNC_FAILED
    return EXIT_OK


def serve(config_manager: ConfigManager, with_sync: bool) -> int:
    context = AppContext.from_config_manager(config_manager, with_sync=with_sync)
    app = create_app(context)
    uvicorn.run(app, host=context.config.feed.host, port=context.config.feed.port, reload=False)
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    config_manager = ConfigManager(args.config)
    try:
        if args.command == "serve":
            return serve(config_manager, with_sync=not args.no_sync)
        return run_sync(config_manager)
    except ConfigError as exc:
        logger.error("FATAL: %s. Please check your .env file or %s.", exc, args.config)
        return EXIT_CONFIG
    except Exception:
        logger.exception("Unhandled error")
        return EXIT_SYNC_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
