"""CLI utility functions and error handling.

Shared helpers for the promoter CLI: exit codes, stderr/stdout output
helpers and configuration loading. Errors go to stderr as plain text with a
non-zero exit code so CI pipelines can branch on the failure reason.
"""

from __future__ import annotations

import os
import sys
from collections.abc import Callable
from enum import IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click

from image_promoter.errors import ConfigError
from image_promoter.schemas.config import load_config
from image_promoter.schemas.promotion import FailureReason
from image_promoter.telemetry.logging import configure_logging

if TYPE_CHECKING:
    from typing import NoReturn

    from image_promoter.schemas.config import PromoterConfig
    from image_promoter.schemas.promotion import PromotionOutcome

F = TypeVar("F", bound=Callable[..., Any])

CONFIG_ENV_VAR = "PROMOTER_CONFIG"
DEFAULT_CONFIG_PATH = Path("promoter.yaml")


class ExitCode(IntEnum):
    """Exit codes for CLI commands, one per promotion failure reason."""

    SUCCESS = 0
    """Promotion succeeded (or command completed)."""

    GENERAL_ERROR = 1
    """General error (catch-all for failures)."""

    USAGE_ERROR = 2
    """Invalid usage or configuration."""

    NOT_FOUND = 3
    """Source image not found in the registry."""

    POLICY_VIOLATION = 4
    """Target tag broke a naming or versioning rule."""

    REGISTRY_ERROR = 5
    """Registry operation failed."""

    SCAN_FAILED = 6
    """Scan gate blocked the image or could not produce a verdict."""

    APPROVAL_DENIED = 7
    """Approval rejected or timed out."""

    CONFLICT = 8
    """Another promotion to the same tag is in flight."""

    CANCELLED = 9
    """Promotion cancelled while awaiting approval."""


FAILURE_EXIT_CODES: dict[FailureReason, ExitCode] = {
    FailureReason.NOT_FOUND: ExitCode.NOT_FOUND,
    FailureReason.POLICY_VIOLATION: ExitCode.POLICY_VIOLATION,
    FailureReason.SCAN_FAILED: ExitCode.SCAN_FAILED,
    FailureReason.APPROVAL_REJECTED: ExitCode.APPROVAL_DENIED,
    FailureReason.APPROVAL_TIMEOUT: ExitCode.APPROVAL_DENIED,
    FailureReason.REGISTRY_ERROR: ExitCode.REGISTRY_ERROR,
    FailureReason.CONFLICT: ExitCode.CONFLICT,
    FailureReason.CANCELLED: ExitCode.CANCELLED,
}


def exit_code_for(outcome: PromotionOutcome) -> ExitCode:
    """Map a terminal outcome to its CLI exit code."""
    if outcome.reason is None:
        return ExitCode.SUCCESS
    return FAILURE_EXIT_CODES[outcome.reason]


def error(message: str, **context: str | int | bool | None) -> None:
    """Print an error message to stderr.

    Example:
        error("Config file not found", path="promoter.yaml")
        # Output: Error: Config file not found (path=promoter.yaml)
    """
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Error: {message} ({context_str})"
    else:
        full_message = f"Error: {message}"

    click.echo(full_message, err=True)


def error_exit(
    message: str,
    exit_code: ExitCode = ExitCode.GENERAL_ERROR,
    **context: str | int | bool | None,
) -> NoReturn:
    """Print an error message to stderr and exit with a code."""
    error(message, **context)
    sys.exit(exit_code)


def warn(message: str, **context: str | int | bool | None) -> None:
    """Print a warning message to stderr."""
    if context:
        context_str = ", ".join(f"{k}={v}" for k, v in context.items() if v is not None)
        full_message = f"Warning: {message} ({context_str})"
    else:
        full_message = f"Warning: {message}"

    click.echo(full_message, err=True)


def success(message: str) -> None:
    """Print a success message to stdout."""
    click.echo(message)


def info(message: str) -> None:
    """Print an informational message to stderr.

    Used for progress updates that should not be captured by stdout
    redirection (e.g. when ``--output json`` is piped to jq).
    """
    click.echo(message, err=True)


def config_option(func: F) -> F:
    """Add the shared ``--config`` option (falls back to $PROMOTER_CONFIG)."""
    return click.option(
        "--config",
        "-c",
        "config_path",
        type=click.Path(dir_okay=False, path_type=Path),
        envvar=CONFIG_ENV_VAR,
        default=None,
        help=f"Path to promoter YAML config. Defaults to ${CONFIG_ENV_VAR} or ./promoter.yaml.",
        metavar="PATH",
    )(func)


def output_option(func: F) -> F:
    return click.option(
        "--output",
        type=click.Choice(["table", "json"], case_sensitive=False),
        default="table",
        show_default=True,
        help="Output format.",
    )(func)


def load_cli_config(config_path: Path | None) -> PromoterConfig:
    """Load the service config and configure logging from it.

    Exits with USAGE_ERROR if the config cannot be loaded.
    """
    path = config_path
    if path is None:
        env_value = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_value) if env_value else DEFAULT_CONFIG_PATH
    try:
        config = load_config(path)
    except ConfigError as e:
        error_exit(str(e), exit_code=ExitCode.USAGE_ERROR)

    configure_logging(config.logging.level, json_output=config.logging.json_output)
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "FAILURE_EXIT_CODES",
    "ExitCode",
    "config_option",
    "error",
    "error_exit",
    "exit_code_for",
    "info",
    "load_cli_config",
    "output_option",
    "success",
    "warn",
]
