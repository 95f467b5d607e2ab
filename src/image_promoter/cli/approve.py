"""Approval commands: approve, pending, cancel.

Decisions are written to the shared approval store; the promotion waiting
on the request picks them up on its next poll.

Example:
    $ promoter pending
    $ promoter approve 6f1c...-... --approver alice --comment "release train 42"
    $ promoter approve 6f1c...-... --approver alice --reject
    $ promoter cancel 6f1c...-...
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from uuid import UUID

import click

from image_promoter.approval import ApprovalGate, FileApprovalStore
from image_promoter.cli.utils import (
    ExitCode,
    config_option,
    error_exit,
    info,
    load_cli_config,
    output_option,
    success,
)
from image_promoter.schemas.promotion import ApprovalDecision


def _parse_request_id(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        error_exit("Invalid request id", exit_code=ExitCode.USAGE_ERROR, request_id=value)


def _gate(config_path: Path | None) -> ApprovalGate:
    config = load_cli_config(config_path)
    return ApprovalGate(
        FileApprovalStore(config.approval.store_dir),
        poll_interval_seconds=config.approval.poll_interval_seconds,
    )


@click.command(name="approve", help="Approve or reject a promotion awaiting approval.")
@click.argument("request_id")
@click.option("--approver", required=True, help="Approver identity.", metavar="IDENTITY")
@click.option("--reject", is_flag=True, default=False, help="Reject instead of approving.")
@click.option("--comment", default=None, help="Optional comment for the audit trail.")
@config_option
def approve_command(
    request_id: str,
    approver: str,
    reject: bool,
    comment: str | None,
    config_path: Path | None,
) -> None:
    """Record a decision for REQUEST_ID."""
    parsed_id = _parse_request_id(request_id)
    gate = _gate(config_path)
    decision = ApprovalDecision.REJECT if reject else ApprovalDecision.APPROVE

    if not gate.resolve(parsed_id, decision, approver, comment):
        error_exit(
            "Request is not awaiting approval",
            exit_code=ExitCode.GENERAL_ERROR,
            request_id=request_id,
        )
    success(f"Recorded {decision.value} for {parsed_id}")


@click.command(name="cancel", help="Cancel a promotion awaiting approval.")
@click.argument("request_id")
@config_option
def cancel_command(request_id: str, config_path: Path | None) -> None:
    """Cancel REQUEST_ID while it waits for approval."""
    parsed_id = _parse_request_id(request_id)
    gate = _gate(config_path)
    if not gate.cancel(parsed_id):
        error_exit(
            "Request is not awaiting approval",
            exit_code=ExitCode.GENERAL_ERROR,
            request_id=request_id,
        )
    success(f"Cancelled {parsed_id}")


@click.command(name="pending", help="List promotions awaiting approval.")
@output_option
@config_option
def pending_command(output: str, config_path: Path | None) -> None:
    gate = _gate(config_path)
    records = gate.pending()

    if output == "json":
        click.echo(
            json.dumps([json.loads(r.model_dump_json()) for r in records], indent=2)
        )
        sys.exit(ExitCode.SUCCESS)

    if not records:
        info("No promotions awaiting approval")
        sys.exit(ExitCode.SUCCESS)

    click.echo(f"{'REQUEST ID':<36}  {'SOURCE':<12}  {'TAG':<16}  {'REQUESTED BY':<16}  DEADLINE")
    for record in records:
        request = record.request
        click.echo(
            f"{request.request_id!s:<36}  {request.source_sha:<12}  {request.target_tag:<16}  "
            f"{request.requested_by or '-':<16}  {record.deadline.isoformat()}"
        )


__all__ = ["approve_command", "cancel_command", "pending_command"]
