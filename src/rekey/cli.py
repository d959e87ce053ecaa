"""CLI entry point for rekey."""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import yaml

from rekey.config import RekeyConfig, apply_env_overrides, apply_overrides, load_config
from rekey.errors import ConfigError, LookupLoadError, StoreSetupError
from rekey.logging_config import configure_audit_log, configure_logging
from rekey.metrics import serve_metrics
from rekey.models import RenameOutcome
from rekey.runner import RunReport, run_remediation

EXIT_OK = 0
EXIT_SETUP_ERROR = 1
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].

    Returns:
        Parsed argument namespace.
    """
    parser = argparse.ArgumentParser(
        prog="rekey",
        description="rekey - bulk remediation of S3 object keys",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: built-in defaults)",
    )
    parser.add_argument(
        "--bucket",
        type=str,
        default=None,
        help="Bucket to remediate (overrides config)",
    )
    parser.add_argument(
        "--endpoint-url",
        type=str,
        default=None,
        help="S3 endpoint URL, e.g. for a local S3-compatible server",
    )
    parser.add_argument(
        "--strategy",
        type=str,
        default=None,
        choices=["reversed-id", "lookup"],
        help="Key mapping strategy (overrides config)",
    )
    parser.add_argument(
        "--parallelism",
        type=int,
        default=None,
        help="Maximum number of tasks in flight (default: 12)",
    )
    parser.add_argument(
        "--verify-only",
        action="store_true",
        default=None,
        help="Audit keys without renaming anything",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config, default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        type=str,
        default=None,
        choices=["text", "json"],
        help="Log format: 'text' (human-readable) or 'json' (structured)",
    )
    parser.add_argument(
        "--audit-path",
        type=str,
        default=None,
        help="File to append audit lines to (default: stdout)",
    )
    return parser.parse_args(argv)


def cli_overrides(args: argparse.Namespace) -> dict[str, dict[str, Any]]:
    """Collect the options given on the command line, per config section."""
    candidates = {
        "store": {"bucket": args.bucket, "endpoint_url": args.endpoint_url},
        "remediation": {
            "strategy": args.strategy,
            "parallelism": args.parallelism,
            "verify_only": args.verify_only,
        },
        "logging": {
            "level": args.log_level,
            "format": args.log_format,
            "audit_path": args.audit_path,
        },
    }
    return {
        section: {name: value for name, value in fields.items() if value is not None}
        for section, fields in candidates.items()
    }


def build_config(args: argparse.Namespace) -> RekeyConfig:
    """Resolve configuration: CLI options over environment over YAML.

    Raises:
        FileNotFoundError: If --config names a missing file.
        ConfigError: If any layer holds an invalid value.
    """
    config = load_config(args.config) if args.config is not None else RekeyConfig()
    config = apply_env_overrides(config)
    return apply_overrides(config, cli_overrides(args))


def log_summary(logger: logging.Logger, report: RunReport) -> None:
    for outcome in RenameOutcome:
        count = report.count(outcome)
        if count:
            logger.info("%-24s %d", outcome.label, count)
    logger.info(
        "%d objects in %d tasks (%d failed, %d cancelled)",
        report.objects_processed,
        report.tasks.submitted,
        report.tasks.failed,
        report.tasks.cancelled,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the rekey CLI.

    Resolves configuration, configures logging and the audit log, then
    remediates the bucket. SIGINT and SIGTERM stop scheduling new tasks
    and drain the ones in flight.

    Args:
        argv: Argument list to parse. Defaults to sys.argv[1:].
    """
    args = parse_args(argv)

    # Use a basic stderr logger for config-loading errors
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    logger = logging.getLogger("rekey")

    try:
        config = build_config(args)
    except FileNotFoundError:
        logger.error("Config file not found: %s", args.config)
        sys.exit(EXIT_SETUP_ERROR)
    except (ConfigError, yaml.YAMLError) as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(EXIT_SETUP_ERROR)

    # Configure structured logging (replaces basicConfig)
    configure_logging(level=config.logging.level, fmt=config.logging.format)
    try:
        configure_audit_log(config.logging.audit_path)
    except OSError as exc:
        logger.error("Cannot open audit log %s: %s", config.logging.audit_path, exc)
        sys.exit(EXIT_SETUP_ERROR)

    if config.observability.metrics:
        serve_metrics(config.observability.metrics_port)
        logger.info("Serving metrics on port %d", config.observability.metrics_port)

    logger.info(
        "Remediating bucket %s (strategy=%s, parallelism=%d, verify_only=%s)",
        config.store.bucket,
        config.remediation.strategy,
        config.remediation.parallelism,
        config.remediation.verify_only,
    )

    try:
        report = asyncio.run(
            run_remediation(config, stop_signals=(signal.SIGINT, signal.SIGTERM))
        )
    except (StoreSetupError, LookupLoadError) as exc:
        logger.error("%s", exc.message)
        sys.exit(EXIT_SETUP_ERROR)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        sys.exit(EXIT_INTERRUPTED)

    log_summary(logger, report)
    if report.interrupted:
        sys.exit(EXIT_INTERRUPTED)
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
