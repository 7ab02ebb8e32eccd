"""
Command-line entry point - Run with: python -m stepflow (or `stepflow`)

    stepflow run -d flow                 run every flow in ./flow
    stepflow run -d flow -n 002_users    run one flow by name
    stepflow -f smoke.yaml -v base=http://localhost:8080
    stepflow list -d flow
"""

import argparse
import logging
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from . import config
from .engine.executor_interface import StepError
from .engine.export import VariableExporter
from .engine.run_log import RunLog
from .engine.runner import FlowRunner
from .loader import (
    FlowLoadError, list_flows, load_flow, parse_var_overrides,
    resolve_export_file_path, resolve_flow_targets,
)

logger = logging.getLogger("stepflow")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="stepflow",
        description="Run declarative HTTP / SQL / MongoDB / gRPC flows defined in YAML files",
    )
    parser.add_argument(
        "command",
        nargs="?",
        choices=("run", "list"),
        default="run",
        help="run flows (default) or list the flows of a directory",
    )
    parser.add_argument(
        "-f", "--file",
        help="Explicit path to a flow file (overrides dir/flow)",
    )
    parser.add_argument(
        "-d", "--dir",
        default=None,
        help="Directory containing flow files (default: $STEPFLOW_FLOW_DIR or 'flow')",
    )
    parser.add_argument(
        "-n", "--flow",
        default="",
        help="Flow name (file name without extension) within dir",
    )
    parser.add_argument(
        "-v", "--var",
        action="append",
        default=[],
        help="Override flow variable (format key=value). Can be provided multiple times",
    )
    parser.add_argument(
        "-e", "--export-file",
        default=None,
        help="Path (or directory) to export collected variables as JSON",
    )
    parser.add_argument(
        "--log-dir",
        default=None,
        help="Directory for the JSON run log (default: $STEPFLOW_LOG_DIR, disabled if unset)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Suppress noisy library loggers even in verbose mode
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("grpc").setLevel(logging.WARNING)


def list_command(args: argparse.Namespace) -> int:
    directory = args.dir or config.get_flow_dir()
    try:
        flows = list_flows(directory)
    except FlowLoadError as e:
        logger.error(str(e))
        return 1

    for flow in flows:
        print(flow.name)
    return 0


def run_command(args: argparse.Namespace) -> int:
    directory = args.dir or config.get_flow_dir()
    try:
        targets = resolve_flow_targets(args.file, directory, args.flow)
        overrides = parse_var_overrides(args.var)
    except (FlowLoadError, ValueError) as e:
        logger.error(str(e))
        return 1

    export_path = resolve_export_file_path(args.export_file or config.get_export_file())
    log_dir = args.log_dir or config.get_log_dir()

    runner = FlowRunner(
        exporter=VariableExporter(export_path),
        run_log=RunLog(log_dir) if log_dir else None,
    )

    shutdown_requested = False

    # Handle Ctrl+C: first press cancels the run, second forces exit
    def shutdown(signum, frame):
        nonlocal shutdown_requested
        signame = signal.Signals(signum).name

        if shutdown_requested:
            logger.warning(f"Received {signame} again, forcing exit...")
            os._exit(1)

        shutdown_requested = True
        logger.info(f"Received {signame}, cancelling run... (press again to force quit)")
        runner.cancel()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        for target in targets:
            flow = load_flow(target.path)
            logger.info(f"=== Flow: {target.name} ({target.path}) ===")
            runner.run_flow(flow, overrides, name=target.name)
    except FlowLoadError as e:
        logger.error(str(e))
        return 1
    except StepError as e:
        logger.error(f"Flow failed: {e}")
        return 1
    finally:
        runner.close()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    # Load .env before anything reads configuration
    load_dotenv()

    args = parse_args(argv)
    configure_logging(args.verbose)

    if args.command == "list":
        return list_command(args)
    return run_command(args)


if __name__ == "__main__":
    sys.exit(main())
