"""
Main CLI entry point for CarChat.

Provides the ``carchat`` command with subcommands for backend resolution,
configuration inspection and terminal voice sessions.
"""

import logging

import click

from .. import __version__
from ..core.config import Config
from ..core.logging import configure_logging
from .config import config_commands
from .session import session_commands

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--debug", "-d", is_flag=True, help="Enable debug output")
@click.option("--json-logs", is_flag=True, help="Render logs as JSON")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool, json_logs: bool) -> None:
    """
    CarChat CLI

    Hands-free voice conversations with a language model backend, either
    turn by turn or over a full-duplex realtime connection.
    """
    ctx.ensure_object(dict)

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    else:
        level = "WARNING"
    configure_logging(level, json_format=json_logs or Config.from_env().json_logs)

    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


for command in config_commands.commands.values():
    config.add_command(command)
for command in session_commands.commands.values():
    cli.add_command(command)


def main() -> None:
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
