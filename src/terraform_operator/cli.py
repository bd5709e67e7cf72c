"""Terraform operator CLI (tfo).

Usage:
    tfo run                          # Run the operator (configured via environment)
    tfo watches validate FILE        # Validate a watches file
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .main import main as operator_main
from .watches import WatchLoadError, load


@click.group()
def cli() -> None:
    """Terraform operator."""


@cli.command()
def run() -> None:
    """Run the operator until SIGTERM/SIGINT."""
    sys.exit(asyncio.run(operator_main()))


@cli.group()
def watches() -> None:
    """Watches file commands."""


@watches.command("validate")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
def validate(path: Path) -> None:
    """Validate a watches file and print the normalized entries."""
    try:
        entries = load(path)
    except WatchLoadError as e:
        raise click.ClickException(str(e)) from e

    if not entries:
        click.echo("No watches defined.")
        return

    for watch in entries:
        click.echo(f"{watch.gvk}")
        click.echo(f"  template: {watch.template_dir}")
        click.echo(f"  watchDependentResources: {watch.watch_dependent_resources}")
        for key in sorted(watch.override_values):
            click.echo(f"  override: {key}={watch.override_values[key]}")

    click.echo(click.style(f"{len(entries)} watch(es) valid", fg="green"))


if __name__ == "__main__":
    cli()
