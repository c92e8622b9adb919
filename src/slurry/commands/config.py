# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Config command for Slurry.

Validates the configuration file and summarizes what it sets up.
"""

import typer

from slurry.config import ConfigError, config_path, load_config

app = typer.Typer(help="Manage and validate configuration")


@app.command()
def validate(
    ctx: typer.Context,
    path: str = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """
    Validate configuration file.

    Checks that the file is valid YAML with known keys and sane values.
    """
    if path is None and ctx.obj:
        path = ctx.obj.get("config_path")

    typer.echo(f"Validating configuration: {config_path(path)}")
    typer.echo()

    try:
        config = load_config(path)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(1)

    typer.echo("Configuration structure is valid")
    typer.echo()
    for name, host in config.hosts.items():
        target = "local" if host.local else f"{host.username + '@' if host.username else ''}{host.hostname}:{host.port}"
        typer.echo(f"Host {name}: {target}")
    typer.echo(
        f"Poll interval: {config.poller.interval_s}s, missing after {config.poller.missing_cycles} cycles, "
        f"fallback: {config.poller.missing_fallback}"
    )
    typer.echo()
    typer.echo("Configuration validation complete!")
