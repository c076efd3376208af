"""
Configuration commands for the CarChat CLI.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import click
import yaml

from ..core.config import Config

logger = logging.getLogger(__name__)


@click.group()
def config_commands() -> None:
    """Configuration management commands."""
    pass


@config_commands.command()
@click.option(
    "--format",
    type=click.Choice(["json", "yaml", "table"]),
    default="table",
    help="Output format",
)
@click.option("--section", help="Show specific configuration section")
def show(format: str, section: Optional[str]) -> None:
    """Show current configuration."""
    data = Config.from_env().to_dict()

    if section:
        if section not in data or not isinstance(data[section], dict):
            click.echo(f"Unknown section: {section}", err=True)
            raise click.Abort()
        data = data[section]

    if format == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    elif format == "yaml":
        click.echo(yaml.dump(data, default_flow_style=False))
    else:
        title = f"{section.title()} Configuration" if section else "CarChat Configuration"
        click.echo(title)
        click.echo("=" * 40)
        _echo_table(data)


def _echo_table(data: dict, indent: int = 0) -> None:
    for key, value in data.items():
        if isinstance(value, dict) and value:
            click.echo(f"{' ' * indent}{key}:")
            _echo_table(value, indent + 2)
        else:
            click.echo(f"{' ' * indent}{key}: {value}")


@config_commands.command()
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
def save(output: Path) -> None:
    """Write the effective configuration to a YAML file."""
    try:
        Config.from_env().save(output)
    except OSError as e:
        raise click.ClickException(f"Could not write {output}: {e}")
    click.echo(f"Configuration saved to {output}")
