"""
``press-worker``: the typesetting-processor side of the command protocol.

Run it where pandoc, xelatex and pdftk are installed, with the same workspace
mounted as the API. It executes every ``<uuid>.cmd`` that appears in the
commands directory and answers with ``<uuid>.cmd.result``.
"""

from __future__ import annotations

import argparse
import logging
import signal
from pathlib import Path
from typing import Optional, Sequence

from .configuration import load_press_config
from .dispatcher import CancellationToken, CommandWorker, ShellRunner

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="press-worker", description="Execute dispatched typesetting commands.")
    parser.add_argument("--workspace", type=Path, default=None, help="Workspace root (defaults to paths.workspace).")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds to sleep when the inbox is empty.")
    parser.add_argument("--once", action="store_true", help="Process the pending commands and exit.")
    parser.add_argument("--log-level", default=None, help="Logging level (defaults to logging.level).")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    overrides = {"paths": {"workspace": str(args.workspace)}} if args.workspace else {}
    config = load_press_config(overrides)
    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    runner = ShellRunner(config.workspace_root, command_timeout=config.dispatcher.timeout)
    worker = CommandWorker(config.commands_dir, runner, result_ttl=config.dispatcher.result_ttl)

    if args.once:
        processed = worker.process_pending()
        logger.info(f"Processed {processed} command(s), removed {worker.sweep_results()} stale result(s)")
        return 0

    token = CancellationToken()

    def stop(signum, _frame) -> None:
        logger.info(f"Received signal {signum}, stopping")
        token.cancel()

    signal.signal(signal.SIGINT, stop)
    signal.signal(signal.SIGTERM, stop)

    poll_interval = args.poll_interval if args.poll_interval is not None else config.dispatcher.poll_interval
    worker.serve(token, idle_interval=poll_interval)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
