"""Promote and resume commands.

Example:
    $ promoter promote abc1234 --tag staging --env staging
    $ promoter promote abc1234 --tag v1.0.0 --env production --output json
    $ promoter resume
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click
import structlog

from image_promoter.audit import outcome_to_dict
from image_promoter.cli.utils import (
    ExitCode,
    config_option,
    error,
    exit_code_for,
    info,
    load_cli_config,
    output_option,
    success,
    warn,
)
from image_promoter.orchestrator import PromotionOrchestrator
from image_promoter.scanning.sarif import export_sarif
from image_promoter.schemas.promotion import Environment, PromotionOutcome, PromotionRequest

logger = structlog.get_logger(__name__)


def format_outcome(outcome: PromotionOutcome, output_format: str) -> str:
    """Format an outcome for CLI output.

    Args:
        outcome: Terminal promotion outcome.
        output_format: "table" or "json".
    """
    if output_format == "json":
        return json.dumps(outcome_to_dict(outcome), indent=2)

    request = outcome.request
    lines = [
        "",
        f"Request ID:   {request.request_id}",
        f"Source:       {outcome.source_reference or request.source_sha}",
        f"Target Tag:   {request.target_tag}",
        f"Environment:  {request.environment.value}",
        f"Final State:  {outcome.final_state.value}",
    ]
    if outcome.source_digest:
        lines.append(f"Digest:       {outcome.source_digest}")
    if outcome.resulting_reference is not None:
        lines.append(f"Promoted To:  {outcome.resulting_reference}")
    if outcome.failure is not None:
        lines.append(f"Reason:       {outcome.failure.reason.value}")
        lines.append(f"Stage:        {outcome.failure.stage.value}")
        lines.append(f"Message:      {outcome.failure.message}")
        if outcome.failure.retryable:
            lines.append("Retryable:    yes (submit a new request)")
    if outcome.trace_id:
        lines.append(f"Trace ID:     {outcome.trace_id}")

    if outcome.scan_result is not None:
        counts = outcome.scan_result.severity_counts()
        summary = ", ".join(f"{k}={v}" for k, v in counts.items() if v)
        lines.append("")
        lines.append(
            f"Scan:         {outcome.scan_result.verdict.value} "
            f"({outcome.scan_result.scanner}{': ' + summary if summary else ''})"
        )

    if outcome.approval is not None:
        lines.append(
            f"Approval:     {outcome.approval.decision.value} by "
            f"{outcome.approval.approver_identity}"
        )

    lines.append("")
    lines.append("Stages:")
    for state, timestamp in outcome.stage_timestamps.items():
        lines.append(f"  {state.value:<13} {timestamp.isoformat()}")

    if outcome.warnings:
        lines.append("")
        lines.append("Warnings:")
        for warning in outcome.warnings:
            lines.append(f"  ! {warning}")

    return "\n".join(lines)


@click.command(
    name="promote",
    help="Promote a built image to a target tag and environment.",
    epilog="""
Examples:
    $ promoter promote abc1234 --tag staging --env staging
    $ promoter promote abc1234 --tag v1.0.0 --env production --output json

Exit Codes:
    0 - Promoted
    2 - Usage or configuration error
    3 - Source image not found
    4 - Policy violation
    5 - Registry error
    6 - Scan gate failed
    7 - Approval rejected or timed out
    8 - Another promotion to the tag is in flight
    9 - Cancelled
""",
)
@click.argument("source_sha")
@click.option("--tag", "-t", "target_tag", required=True, help="Target tag.", metavar="TAG")
@click.option(
    "--env",
    "-e",
    "environment",
    required=True,
    type=click.Choice([e.value for e in Environment], case_sensitive=False),
    help="Target environment.",
)
@click.option(
    "--requested-by",
    default=None,
    help="Requester identity. Defaults to $USER.",
    metavar="IDENTITY",
)
@click.option(
    "--sarif",
    "sarif_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write scan findings as SARIF 2.1.0 to this path.",
    metavar="PATH",
)
@output_option
@config_option
def promote_command(
    source_sha: str,
    target_tag: str,
    environment: str,
    requested_by: str | None,
    sarif_path: Path | None,
    output: str,
    config_path: Path | None,
) -> None:
    """Promote SOURCE_SHA (the image's build tag) to --tag in --env."""
    import os

    from pydantic import ValidationError

    config = load_cli_config(config_path)

    try:
        request = PromotionRequest(
            source_sha=source_sha,
            target_tag=target_tag,
            environment=Environment(environment.lower()),
            requested_by=requested_by or os.environ.get("USER"),
        )
    except ValidationError as e:
        error(f"Invalid promotion request: {e.errors()[0]['msg']}", source_sha=source_sha)
        sys.exit(ExitCode.USAGE_ERROR)

    orchestrator = PromotionOrchestrator.from_config(config)

    if output == "table":
        info(
            f"Promoting {source_sha} to {target_tag} ({request.environment.value}), "
            f"request {request.request_id}"
        )
        if request.environment.is_protected:
            info(
                "Approval required. Decide with: "
                f"promoter approve {request.request_id} --approver <identity> [--reject]"
            )

    outcome = orchestrator.promote_sync(request)

    if sarif_path is not None and outcome.scan_result is not None:
        export_sarif(outcome.scan_result, sarif_path)
        if output == "table":
            info(f"SARIF written to {sarif_path}")

    click.echo(format_outcome(outcome, output))

    if output == "table":
        if outcome.failure is None:
            success(f"Promoted {outcome.resulting_reference}")
        else:
            warn(f"Promotion failed: {outcome.failure.message}")

    sys.exit(exit_code_for(outcome))


@click.command(
    name="resume",
    help="Resume promotions that were waiting for approval when the service stopped.",
)
@output_option
@config_option
def resume_command(output: str, config_path: Path | None) -> None:
    """Resume persisted Gating attempts and wait for their decisions."""
    config = load_cli_config(config_path)
    orchestrator = PromotionOrchestrator.from_config(config)

    outcomes = orchestrator.resume_pending_sync()
    if not outcomes:
        info("No pending approvals to resume")
        sys.exit(ExitCode.SUCCESS)

    if output == "json":
        click.echo(json.dumps([outcome_to_dict(o) for o in outcomes], indent=2))
    else:
        for outcome in outcomes:
            click.echo(format_outcome(outcome, output))

    failures = [exit_code_for(o) for o in outcomes if not o.promoted]
    sys.exit(failures[0] if failures else ExitCode.SUCCESS)


__all__ = ["format_outcome", "promote_command", "resume_command"]
