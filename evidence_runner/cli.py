# evidence_runner/cli.py
"""
Command line entry point.

Exit codes:
    0    every task PASSED (or SKIPPED)
    1    at least one task FAILED
    2    fatal error (invalid specification, bad configuration, crash)
    130  interrupted (Ctrl-C)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from evidence_runner import __version__
from evidence_runner.config import Settings
from evidence_runner.engine import EngineConfig, ExecutionEngine
from evidence_runner.logging_setup import setup_logging
from evidence_runner.plugin_registry import PluginRegistry
from evidence_runner.types import SchemaValidationError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="evidence-runner",
        description="🧪 Evidence Runner - execute JSON test specifications with an audit trail",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Run a specification:
    evidence-runner specs/login.json

  Keep going after failed tasks, extra plugins:
    evidence-runner specs/all.json --plugin-dir ./my-plugins

  CI/CD mode (plain logs, stop at the first failed task):
    evidence-runner specs/all.json --ci-mode --stop-on-failure

  Show discovered plugins:
    evidence-runner --list-plugins
""",
    )
    p.add_argument("spec", nargs="?", help="Path to the test specification JSON")
    p.add_argument("--evidence-dir", help="Evidence output directory (default: ./evidence)")
    p.add_argument("--plugin-dir", action="append", dest="plugin_dirs", metavar="DIR",
                   help="Extra plugin root (repeatable)")
    p.add_argument("--stop-on-failure", action="store_true", default=None,
                   help="Skip remaining tasks after the first FAILED task")
    p.add_argument("--continue-on-error", action="store_true",
                   help="Keep running a task's steps after a failed step")
    p.add_argument("--dry-run", action="store_true", default=None,
                   help="Validate and resolve executors without running anything")
    p.add_argument("--list-plugins", action="store_true", help="List discovered plugins and exit")
    p.add_argument("--ci-mode", action="store_true", help="Plain log output for CI systems")
    p.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def list_plugins(registry: PluginRegistry) -> None:
    listing = registry.list_all()
    print("\n🔌 Executors:")
    for action_type, names in listing["executors"].items():
        print(f"  {action_type:<24} {', '.join(names)}")
    for key, title in (
        ("failure_analyzers", "🔍 Failure analyzers"),
        ("debt_detectors", "⚠️  Technical debt detectors"),
        ("validators", "✓ Validators"),
        ("reporters", "📄 Reporters"),
    ):
        print(f"\n{title}:")
        for entry in listing[key] or ["(none)"]:
            print(f"  {entry}")
    if registry.load_errors:
        print("\n❌ Skipped plugins:")
        for error in registry.load_errors:
            print(f"  {error}")
    print()


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as e:
        setup_logging(verbose=args.verbose, ci_mode=args.ci_mode)
        logger.error(f"❌ Invalid configuration: {e}")
        return EXIT_FATAL

    setup_logging(verbose=args.verbose, ci_mode=args.ci_mode, level=settings.log_level)

    config = EngineConfig.from_settings(
        settings,
        evidence_dir=args.evidence_dir,
        plugin_dirs=args.plugin_dirs,
        stop_on_failure=args.stop_on_failure,
        halt_on_error=False if args.continue_on_error else None,
        dry_run=args.dry_run,
    )

    if args.list_plugins:
        list_plugins(PluginRegistry(config.plugin_dirs).load_all())
        return EXIT_OK

    if not args.spec:
        parser.error("a specification path is required (or use --list-plugins)")

    engine = ExecutionEngine(config=config, settings=settings)
    try:
        report = asyncio.run(engine.run(args.spec))
    except SchemaValidationError as e:
        logger.error(f"❌ {e}")
        for problem in e.errors[1:20]:
            logger.error(f"   • {problem}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        print("\n\n👋 Cancelled by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception(f"💥 Run failed: {e}")
        return EXIT_FATAL

    if args.ci_mode:
        print(json.dumps({"runId": report.run_id, **report.summary}))
    return EXIT_FAILED if report.has_failures else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
