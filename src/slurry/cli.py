# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for Slurry.

Thin trigger: parses args, loads config and job specs, drives the Engine
and renders its output. No tracking logic lives here.
"""

import asyncio
import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import typer

from slurry import __version__
from slurry.builder import InvalidSpec, build, load_spec_yaml
from slurry.channel import ChannelError
from slurry.config import ConfigError, SlurryConfig, load_config
from slurry.engine import Engine, SubmissionFailed, channel_for
from slurry.exporter import GROUPINGS, export, to_ocel, write_json
from slurry.parser import parse, queue_command
from slurry.schemas import JobStatus, Observation, TypedEvent

app = typer.Typer(
    name="slurry",
    help="Observable, versioned tracking of SLURM batch jobs",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Submit, poll and export SLURM jobs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config_path


def _load_config(ctx: typer.Context) -> SlurryConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except (FileNotFoundError, ConfigError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _parse_now(value: Optional[str]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        typer.echo(f"Error: --now must be an ISO timestamp, got: {value}", err=True)
        raise typer.Exit(1)


def _format_event(event: TypedEvent) -> str:
    parts = [event.timestamp.isoformat(), event.kind.value]
    if event.handle:
        parts.append(event.handle)
    if event.old_status is not None and event.new_status is not None:
        parts.append(f"{event.old_status.value} -> {event.new_status.value}")
    elif event.new_status is not None:
        parts.append(event.new_status.value)
    if event.field:
        parts.append(event.field)
    if event.anomaly is not None:
        parts.append(event.anomaly.value)
    if event.detail:
        parts.append(event.detail)
    return "  ".join(parts)


def _observation_row(obs: Observation) -> Dict[str, str]:
    extra = obs.extra_dict
    return {
        "job_id": obs.remote_job_id or "?",
        "status": obs.status.value,
        "state": obs.raw_state or extra.get("raw", ""),
        "elapsed": "" if obs.elapsed_s is None else str(obs.elapsed_s),
        "nodes": ",".join(obs.assigned_nodes),
        "name": extra.get("name", ""),
        "partition": extra.get("partition", ""),
    }


def _render_table(rows: List[Dict[str, str]]) -> None:
    """Render rows as a simple table."""
    if not rows:
        typer.echo("(no jobs)")
        return
    keys = list(rows[0].keys())
    widths = {k: max(len(k), max(len(str(r.get(k, ""))) for r in rows)) for k in keys}
    header = " | ".join(k.ljust(widths[k]) for k in keys)
    typer.echo(header)
    typer.echo("-" * len(header))
    for row in rows:
        typer.echo(" | ".join(str(row.get(k, "")).ljust(widths[k]) for k in keys))


@app.command()
def version():
    """Show version information."""
    typer.echo(f"slurry version {__version__}")


@app.command()
def render(
    spec_path: Path = typer.Argument(..., help="Job spec YAML file"),
    now: Optional[str] = typer.Option(None, "--now", help="Render timestamp (ISO 8601)"),
    script_dir: str = typer.Option("~/.slurry/scripts", "--script-dir", help="Remote script directory"),
):
    """Print the batch script(s) for a job spec without submitting."""
    rendered_at = _parse_now(now)
    try:
        specs = load_spec_yaml(spec_path)
        for spec in specs:
            request = build(spec, rendered_at, script_dir)
            typer.echo(f"# {request.command}")
            typer.echo(request.script, nl=False)
    except InvalidSpec as e:
        typer.echo(f"Invalid spec: {e}", err=True)
        raise typer.Exit(1)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def run(
    ctx: typer.Context,
    spec_path: Path = typer.Argument(..., help="Job spec YAML file"),
    host: Optional[str] = typer.Option(None, "--host", "-H", help="Override the host of every job"),
    export_path: Optional[Path] = typer.Option(None, "--export", help="Write the event log here"),
    ocel_path: Optional[Path] = typer.Option(None, "--ocel", help="Write an OCEL event log here"),
    group_by: Optional[str] = typer.Option(None, "--group-by", help="Trace grouping: job, name, host, partition"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up waiting after this many seconds"),
):
    """Submit jobs, poll until all are finished and print their traces."""
    if group_by is not None and group_by not in GROUPINGS:
        typer.echo(f"Error: unknown grouping: {group_by} (expected one of {', '.join(GROUPINGS)})", err=True)
        raise typer.Exit(1)
    config = _load_config(ctx)
    try:
        specs = load_spec_yaml(spec_path)
    except InvalidSpec as e:
        typer.echo(f"Invalid spec: {e}", err=True)
        raise typer.Exit(1)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if host:
        specs = [replace(spec, host=host) for spec in specs]

    async def _run() -> Engine:
        engine = Engine(config, channels={
            name: channel_for(h, config.poller.command_timeout_s) for name, h in config.hosts.items()
        })
        try:
            handles = [await engine.submit(spec) for spec in specs]
            for handle in handles:
                record = engine.get_status(handle)
                typer.echo(f"Submitted {record.spec.name} as job {record.remote_job_id} (handle {handle})")
            try:
                await engine.wait_until_settled(handles, timeout=timeout)
            except asyncio.TimeoutError as e:
                typer.echo(f"Warning: {e}", err=True)
        finally:
            await engine.close()
        return engine

    try:
        engine = asyncio.run(_run())
    except InvalidSpec as e:
        typer.echo(f"Invalid spec: {e}", err=True)
        raise typer.Exit(1)
    except SubmissionFailed as e:
        typer.echo(f"Submission failed: {e}", err=True)
        raise typer.Exit(1)

    failed = False
    for record in engine.registry.records():
        typer.echo()
        typer.echo(f"Job {record.spec.name} ({record.remote_job_id}): {record.status.value}")
        if record.lost:
            typer.echo("  (left the queue with no accounting record)")
        for event in export(record):
            typer.echo(f"  {_format_event(event)}")
        failed = failed or record.status != JobStatus.COMPLETED

    if export_path:
        write_json(engine.export_log(grouping=group_by), export_path)
        typer.echo(f"Event log written to {export_path}")
    if ocel_path:
        write_json(to_ocel(engine.registry.records()), ocel_path)
        typer.echo(f"OCEL log written to {ocel_path}")
    if failed:
        raise typer.Exit(1)


@app.command()
def queue(
    ctx: typer.Context,
    host: str = typer.Option("default", "--host", "-H", help="Configured host to query"),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
    save: Optional[Path] = typer.Option(None, "--save", help="Directory to store the snapshot in"),
):
    """Show a one-shot snapshot of your queue on a host."""
    config = _load_config(ctx)
    if host not in config.hosts:
        typer.echo(f"Error: unknown host: {host} (configured: {', '.join(config.hosts)})", err=True)
        raise typer.Exit(1)

    async def _snapshot():
        channel = channel_for(config.hosts[host], config.poller.command_timeout_s)
        try:
            return await channel.execute(queue_command(), timeout=config.poller.command_timeout_s)
        finally:
            await channel.close()

    try:
        result = asyncio.run(_snapshot())
    except ChannelError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if not result.ok:
        typer.echo(f"Error: squeue exited with {result.exit_code}: {result.stderr.strip()}", err=True)
        raise typer.Exit(1)

    observed_at = datetime.now(timezone.utc)
    rows = [_observation_row(obs) for obs in parse(result.stdout, observed_at)]

    if save:
        path = Path(save).expanduser() / f"queue-{host}-{observed_at.strftime('%Y%m%dT%H%M%S')}.json"
        write_json({"host": host, "observed_at": observed_at.isoformat(), "jobs": rows}, path)
        typer.echo(f"Snapshot saved to {path}", err=True)

    if format == "json":
        for row in rows:
            typer.echo(json.dumps(row))
    else:
        _render_table(rows)


# Static commands
from slurry.commands import config as config_command

app.add_typer(config_command.app, name="config")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
