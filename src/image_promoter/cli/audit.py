"""Audit query command.

Example:
    $ promoter audit --env production --state failed
    $ promoter audit --tag v1.0.0 --output json
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import click

from image_promoter.audit import AuditFilter, JsonlAuditLog, outcome_to_dict
from image_promoter.cli.utils import config_option, info, load_cli_config, output_option
from image_promoter.schemas.promotion import Environment, FailureReason, PromotionState


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@click.command(name="audit", help="Query the promotion audit log.")
@click.option(
    "--env",
    "environment",
    type=click.Choice([e.value for e in Environment]),
    default=None,
    help="Only this environment.",
)
@click.option(
    "--state",
    "final_state",
    type=click.Choice([PromotionState.PROMOTED.value, PromotionState.FAILED.value]),
    default=None,
    help="Only this final state.",
)
@click.option(
    "--reason",
    type=click.Choice([r.value for r in FailureReason]),
    default=None,
    help="Only this failure reason.",
)
@click.option("--tag", "target_tag", default=None, help="Only this target tag.")
@click.option("--source-sha", default=None, help="Only this build tag.")
@click.option(
    "--since",
    type=click.DateTime(),
    default=None,
    help="Only requests at or after this time (UTC if no offset).",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Show at most N records.",
)
@output_option
@config_option
def audit_command(
    environment: str | None,
    final_state: str | None,
    reason: str | None,
    target_tag: str | None,
    source_sha: str | None,
    since: datetime | None,
    limit: int | None,
    output: str,
    config_path: Path | None,
) -> None:
    """List audit records matching the filters, oldest first."""
    config = load_cli_config(config_path)
    log = JsonlAuditLog(config.audit.path)

    audit_filter = AuditFilter(
        environment=Environment(environment) if environment else None,
        final_state=PromotionState(final_state) if final_state else None,
        reason=FailureReason(reason) if reason else None,
        source_sha=source_sha,
        target_tag=target_tag,
        since=_as_utc(since),
    )
    outcomes = []
    for outcome in log.query(audit_filter):
        outcomes.append(outcome)
        if limit is not None and len(outcomes) >= limit:
            break

    if output == "json":
        click.echo(json.dumps([outcome_to_dict(o) for o in outcomes], indent=2))
        return

    if not outcomes:
        info("No matching audit records")
        return

    click.echo(
        f"{'REQUESTED AT':<25}  {'SOURCE':<12}  {'TAG':<16}  {'ENV':<10}  {'STATE':<8}  REASON"
    )
    for outcome in outcomes:
        request = outcome.request
        click.echo(
            f"{request.requested_at.isoformat(timespec='seconds'):<25}  "
            f"{request.source_sha:<12}  {request.target_tag:<16}  "
            f"{request.environment.value:<10}  {outcome.final_state.value:<8}  "
            f"{outcome.reason.value if outcome.reason else '-'}"
        )


__all__ = ["audit_command"]
