"""
Command line entry point: ``gh-actions-scaler``.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from ghscaler import __version__
from ghscaler.core.config import default_config_path, load_config
from ghscaler.core.errors import ConfigurationError
from ghscaler.core.utils import demote_ray_logging, install_stdout_logger, parse_log_level

logger = logging.getLogger("ghscaler.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gh-actions-scaler",
        description="Autoscale GitHub Actions self-hosted runner containers across SSH-reachable machines.",
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help=f"configuration file (default: $GH_ACTIONS_SCALER_CONFIG or {default_config_path()})",
    )
    parser.add_argument(
        "-l",
        "--log-level",
        metavar="LEVEL",
        help="trace, debug, info, warn, error or off (overrides the configuration file)",
    )
    parser.add_argument("--once", action="store_true", help="run a single reconciliation cycle and print its report")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        level_name = args.log_level or config.log_level
        level = parse_log_level(level_name)
    except (ConfigurationError, ValueError) as exc:
        print(f"gh-actions-scaler: {exc}", file=sys.stderr)
        return 1
    if args.log_level:
        config.log_level = args.log_level.lower()

    install_stdout_logger(level)
    demote_ray_logging()
    logger.debug("Configuration: %r", config)

    import ray

    from ghscaler.core.actors.head import AutoscalerHead

    ray.init(ignore_reinit_error=True, include_dashboard=False, logging_level=logging.WARNING)
    head = AutoscalerHead(config)
    try:
        if args.once:
            report = head.reconcile_once()
            print(json.dumps(report, indent=2, ensure_ascii=False))
            return 0

        stopped = threading.Event()

        def _handle_signal(signum, _frame):
            logger.info("Received signal %s, shutting down ..", signum)
            stopped.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

        head.start()
        while not stopped.wait(1.0):
            status = head.status()
            if status.get("fatal_error"):
                logger.critical("Autoscaler stopped: %s", status["fatal_error"])
                return 2
        return 0
    finally:
        head.stop()
        ray.shutdown()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
