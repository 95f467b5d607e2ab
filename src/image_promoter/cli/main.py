"""Main entry point for the promoter CLI.

Commands:
    promoter promote: Promote a built image to a target tag
    promoter approve: Approve or reject a pending production promotion
    promoter cancel: Cancel a promotion awaiting approval
    promoter pending: List promotions awaiting approval
    promoter resume: Resume promotions persisted while awaiting approval
    promoter audit: Query the audit log

Example:
    $ promoter --help
    $ promoter promote abc1234 --tag staging --env staging --config promoter.yaml
"""

from __future__ import annotations

import sys
from importlib.metadata import version as get_version

import click

from image_promoter.cli.approve import approve_command, cancel_command, pending_command
from image_promoter.cli.audit import audit_command
from image_promoter.cli.promote import promote_command, resume_command


def _get_version() -> str:
    """Get the installed package version, or 'unknown' if not installed."""
    try:
        return get_version("image-promoter")
    except Exception:
        return "unknown"


@click.group(
    name="promoter",
    help="promoter - Promote built container images through validated stages.",
    epilog="Use 'promoter <command> --help' for command-specific help.",
    context_settings={
        "help_option_names": ["-h", "--help"],
    },
)
@click.version_option(
    version=_get_version(),
    prog_name="promoter",
    message="%(prog)s %(version)s",
)
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Root command group for the promoter CLI."""
    ctx.ensure_object(dict)


cli.add_command(promote_command)
cli.add_command(resume_command)
cli.add_command(approve_command)
cli.add_command(cancel_command)
cli.add_command(pending_command)
cli.add_command(audit_command)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the promoter CLI.

    Args:
        argv: Command-line arguments (uses sys.argv if None).
    """
    try:
        cli(args=argv, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
