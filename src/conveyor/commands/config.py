# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for Conveyor.

Validates the config file and shows the effective settings.
"""

from typing import Optional

import typer

from conveyor.config import RUN_SETTINGS, load_config, resolve_config_path
from conveyor.errors import ValidationError
from conveyor.notifier import build_channel

app = typer.Typer(help="Manage and validate configuration")


@app.command()
def validate(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """
    Validate configuration file.

    Checks that the config file exists, is valid YAML, that run settings
    are in range and that the notify channel can be built.
    """
    typer.echo("Validating configuration...")
    typer.echo()

    try:
        path = resolve_config_path(config_path)
        config = load_config(config_path)
        channel = build_channel(config.get("notify"))
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ValidationError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Config file: {path if path else '(none, using defaults)'}")
    typer.echo()
    for key in RUN_SETTINGS:
        typer.echo(f"{key}: {config[key]}")
    typer.echo(f"notify channel: {channel.name}")
    typer.echo(f"history_dir: {config['history_dir']}")
    typer.echo(f"events_log: {config['events_log']}")
    typer.echo()
    typer.echo("Configuration validation complete!")
