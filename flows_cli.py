import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from applications import ApplicationRegistry
from flow_logging import configure_logging, get_logger
from flow_models import FLOW_EXTENSIONS, FlowsSettings, RunOptions, load_flow_file
from flow_orchestrator import orchestrator_for

logger = get_logger("CLI")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="flows", description="Run a YAML flow against an environment")
    parser.add_argument("--file", "-f", dest="file", help="Path to the flow definition YAML file")
    parser.add_argument("--env", "-e", dest="env", help="Environment name (an <app>/env/<name>.env file)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--applications-dir",
        dest="applications_dir",
        default=None,
        help="Directory holding the applications (default: $FLOWS_APPLICATIONS_DIR or ~/flows/applications)",
    )
    parser.add_argument(
        "--summary",
        action="store_true",
        help="Print the applications and their methods, then exit",
    )
    return parser.parse_args(argv)


def fail(message: str) -> int:
    print(f"ERROR: {message}", file=sys.stderr)
    return 1


def run(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = FlowsSettings.load()
    configure_logging(args.debug or settings.log_level == "DEBUG")

    registry = ApplicationRegistry(args.applications_dir or settings.applications_dir)

    if args.summary:
        print(registry.summary())
        return 0

    if not args.file:
        return fail("--file is required")
    if not args.env:
        return fail("--env is required")

    flow_path = Path(args.file)
    if flow_path.suffix.lower() not in FLOW_EXTENSIONS:
        return fail(f"Flow file must be a YAML file: {flow_path}")
    if not flow_path.is_file():
        return fail(f"Flow file not found: {flow_path}")

    try:
        flow = load_flow_file(flow_path)
        orchestrator_cls = orchestrator_for(flow.version)
    except ValueError as e:
        return fail(str(e))

    orchestrator = orchestrator_cls(registry)
    options = RunOptions(environment=args.env, cli=True, debug=args.debug)
    try:
        result = asyncio.run(orchestrator.run(flow, options))
    except KeyboardInterrupt:
        print("Stopping flow...")
        return 130

    if not result.passed:
        error = result.execution.error or {}
        print(f"ERROR: {error.get('name', 'ProcessorError')}: {error.get('message', '')}", file=sys.stderr)
    return result.exit_code


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
