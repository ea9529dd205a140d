"""
Command line interface.

    volume-backup                      - run one backup for the environment config
    volume-backup --source <volume>    - run one backup for a labelled volume
    volume-backup --foreground         - schedule all confd and label configs
"""

from typing import Optional

import typer

from volumebackup import configure_logging
from volumebackup.config import FROM_ENVIRONMENT
from volumebackup.scheduler import Command


app = typer.Typer(
    name="volume-backup",
    help="Back up Docker volumes to local or remote storage",
    add_completion=False,
)


@app.command()
def main(
    foreground: bool = typer.Option(False, "--foreground", help="Run as a long running scheduler"),
    profile: Optional[str] = typer.Option(None, "--profile", help="Cron expression for logging resource usage"),
    source: str = typer.Option(FROM_ENVIRONMENT, "--source", help="Source of the config to run once"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Run a single backup, or schedule backups with --foreground."""
    configure_logging(debug)

    command = Command()
    error = None
    try:
        if foreground:
            command.run_in_foreground(profile_cron=profile)
        else:
            command.run_as_command(source)
    except Exception as e:
        error = e
    command.must(error)
