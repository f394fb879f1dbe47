# src/tokenflow/cli.py
"""Tokenflow Command Line Interface.

Entry point for the tokenflow CLI tool.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from tokenflow import __version__
from tokenflow.contracts import FormulaFailed, TickCompleted
from tokenflow.core.config import TokenflowSettings, load_settings
from tokenflow.core.events import EventBus
from tokenflow.core.graph import ScenarioGraph
from tokenflow.core.scenario import ScenarioValidationError, read_scenario_data, validate_scenario

__all__ = [
    "app",
]

app = typer.Typer(
    name="tokenflow",
    help="Tokenflow: discrete-event token flow simulation with lineage and replay.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"tokenflow version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load TOKENFLOW_* overrides from a .env file.

    Raises:
        typer.Exit: If an explicit env_file doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)
    return load_dotenv(override=False)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """Tokenflow: discrete-event token flow simulation with lineage and replay."""
    from tokenflow.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")
    ctx.obj = {"verbose": verbose, "json_logs": json_logs}

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)


def _format_validation_error(title: str, message: str, details: list[str] | None = None, hint: str | None = None) -> None:
    typer.secho(f"❌ {title}", fg=typer.colors.RED, err=True)
    typer.echo(f"  {message}", err=True)
    for detail in details or []:
        typer.echo(f"  - {detail}", err=True)
    if hint:
        typer.echo(f"  Hint: {hint}", err=True)


def _load_engine_settings(ctx: typer.Context, settings: str | None, *, machine_output: bool = False) -> TokenflowSettings:
    """Load engine settings and apply their logging section unless flags override it.

    With machine_output, logging stays at WARNING or above so that JSON
    written to stdout is not interleaved with log lines.
    """
    from tokenflow.core.logging import configure_logging

    settings_path = Path(settings).expanduser() if settings is not None else None
    try:
        config = load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        _format_validation_error(
            title="YAML Syntax Error",
            message=f"Failed to parse {settings}",
            details=[str(e.problem)] if hasattr(e, "problem") else None,
        )
        raise typer.Exit(1) from None
    except FileNotFoundError:
        _format_validation_error(title="File Not Found", message=f"Settings file does not exist: {settings}")
        raise typer.Exit(1) from None
    except ValidationError as e:
        details = [f"{'.'.join(str(x) for x in error['loc'])}: {error['msg']}" for error in e.errors()]
        _format_validation_error(
            title="Configuration Validation Failed",
            message=f"Invalid settings in {settings}",
            details=details,
            hint="Check field names, types, and required values.",
        )
        raise typer.Exit(1) from None
    except ValueError as e:
        # Environment variable expansion errors
        _format_validation_error(title="Configuration Error", message=str(e))
        raise typer.Exit(1) from None

    flags = ctx.obj or {}
    if not flags.get("verbose"):
        level = config.logging.level
        if machine_output and level in ("DEBUG", "INFO"):
            level = "WARNING"
        configure_logging(
            json_output=flags.get("json_logs", False) or config.logging.json_output,
            level=level,
        )
    return config


def _read_scenario(path: str) -> Any:
    scenario_path = Path(path).expanduser()
    try:
        return read_scenario_data(scenario_path)
    except FileNotFoundError:
        _format_validation_error(title="File Not Found", message=f"Scenario file does not exist: {path}")
        raise typer.Exit(1) from None
    except ScenarioValidationError as e:
        _format_validation_error(title="Scenario Parse Error", message=f"Failed to parse {scenario_path.name}", details=e.errors)
        raise typer.Exit(1) from None


@app.command()
def validate(
    scenario: str = typer.Argument(..., help="Path to scenario YAML or JSON file."),
) -> None:
    """Validate a scenario file without running it."""
    data = _read_scenario(scenario)
    config, errors = validate_scenario(data)
    if config is None:
        _format_validation_error(
            title="Scenario Validation Failed",
            message=f"{len(errors)} configuration error(s) in {Path(scenario).name}",
            details=errors,
        )
        raise typer.Exit(1)

    report = ScenarioGraph.from_scenario(config).validate()
    typer.echo("✅ Scenario valid!")
    typer.echo(f"  Name: {config.name}")
    typer.echo(f"  Nodes: {len(config.nodes)}")
    for warning in report.warnings:
        typer.secho(f"  Warning: {warning}", fg=typer.colors.YELLOW)


def _summarize(view: dict[str, Any]) -> dict[str, Any]:
    nodes: dict[str, Any] = {}
    for node_id, state in view["node_states"].items():
        summary: dict[str, Any] = {"state": state["state_machine"]["current_state"]}
        if "input_buffer" in state:
            summary["buffered"] = len(state["input_buffer"])
            summary["pending_output"] = len(state["output_buffer"])
        if "input_buffers" in state:
            summary["buffered"] = sum(len(ids) for ids in state["input_buffers"].values())
        if "consumed_token_count" in state:
            summary["consumed"] = state["consumed_token_count"]
            summary["recent_values"] = [view["tokens"][t]["value"] for t in state["consumed_tokens"]]
        nodes[node_id] = summary
    return {"time": view["current_time"], "events_logged": view["event_counter"], "nodes": nodes}


def _echo_summary(summary: dict[str, Any], errors: list[str], output_format: str) -> None:
    if output_format == "json":
        typer.echo(json.dumps({**summary, "errors": errors}))
        return
    typer.echo(f"Simulation time: {summary['time']}  (activity entries: {summary['events_logged']})")
    for node_id, node in summary["nodes"].items():
        parts = [f"{key}={value}" for key, value in node.items() if key not in ("state", "recent_values")]
        typer.echo(f"  {node_id:<20} {node['state']:<22} {' '.join(parts)}")
    if errors:
        typer.secho(f"Errors ({len(errors)}):", fg=typer.colors.YELLOW)
        for message in errors[:20]:
            typer.echo(f"  - {message}")


@app.command()
def run(
    ctx: typer.Context,
    scenario: str = typer.Argument(..., help="Path to scenario YAML or JSON file."),
    ticks: int = typer.Option(10, "--ticks", "-t", min=1, help="Number of ticks to simulate."),
    settings: str | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to engine settings YAML file.",
    ),
    record: Path | None = typer.Option(
        None,
        "--record",
        "-r",
        help="Write a replayable scenario record (JSON) to this path.",
    ),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Run a scenario for a number of ticks and print the final state."""
    from tokenflow.engine.replay import EventRecorder, ScenarioStore
    from tokenflow.engine.scheduler import Scheduler

    config = _load_engine_settings(ctx, settings, machine_output=output_format == "json")
    data = _read_scenario(scenario)

    bus = EventBus()
    if output_format == "console":

        def _format_formula_failed(event: FormulaFailed) -> None:
            typer.secho(f"  formula error at {event.node_id}[{event.output_index}]: {event.error}", fg=typer.colors.YELLOW, err=True)

        def _format_progress(event: TickCompleted) -> None:
            if event.time % 100 == 0:
                typer.echo(f"  t={event.time}: {event.tokens_created} token(s) created this tick", err=True)

        bus.subscribe(FormulaFailed, _format_formula_failed)
        bus.subscribe(TickCompleted, _format_progress)

    scheduler = Scheduler(config, event_bus=bus)
    errors = scheduler.load_scenario(data)
    if errors:
        _format_validation_error(title="Scenario Validation Failed", message=f"Cannot load {scenario}", details=errors)
        raise typer.Exit(1)

    recorder = None
    if record is not None:
        recorder = EventRecorder(Path(scenario).stem, snapshot_interval=config.replay.snapshot_interval)
        recorder.start(scheduler)

    scheduler.step(ticks)

    if recorder is not None:
        assert record is not None
        store = ScenarioStore()
        saved = store.create(recorder.stop())
        record.write_text(store.export_json(saved.id), encoding="utf-8")
        if output_format == "console":
            typer.echo(f"Recorded {len(saved.events)} events, {len(saved.snapshots)} snapshots to {record}")

    _echo_summary(_summarize(scheduler.view()), scheduler.errors, output_format)


def _read_record(path: Path) -> Any:
    from tokenflow.engine.replay import ReplayError, load_record

    if not path.exists():
        _format_validation_error(title="File Not Found", message=f"Record file does not exist: {path}")
        raise typer.Exit(1)
    try:
        return load_record(path.read_text(encoding="utf-8"))
    except ReplayError as e:
        _format_validation_error(title="Invalid Record", message=str(e))
        raise typer.Exit(1) from None


@app.command()
def replay(
    record_file: Path = typer.Argument(..., help="Scenario record written by 'run --record'."),
    target_time: int | None = typer.Option(
        None,
        "--target-time",
        help="Stop replay at this simulation time (starts from the nearest snapshot).",
    ),
    no_snapshots: bool = typer.Option(
        False,
        "--no-snapshots",
        help="Always replay from the initial state.",
    ),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Replay a recorded scenario and validate it against its snapshots."""
    from tokenflow.engine.replay import ReplayEngine, ReplayError

    recorded = _read_record(record_file)
    try:
        result = ReplayEngine().replay(recorded, target_time=target_time, use_snapshots=not no_snapshots, validate=True)
    except ReplayError as e:
        _format_validation_error(title="Replay Failed", message=str(e))
        raise typer.Exit(1) from None

    summary = _summarize(result.scheduler.view())
    validation = result.validation
    if output_format == "json":
        typer.echo(
            json.dumps(
                {
                    **summary,
                    "events_applied": result.events_applied,
                    "started_from_snapshot": result.started_from_snapshot,
                    "validation": None
                    if validation is None
                    else {
                        "snapshot_id": validation.snapshot_id,
                        "is_valid": validation.is_valid,
                        "errors": validation.errors,
                        "warnings": validation.warnings,
                    },
                    "warnings": result.warnings,
                }
            )
        )
    else:
        origin = result.started_from_snapshot or "initial state"
        typer.echo(f"Replayed {result.events_applied} events from {origin}")
        _echo_summary(summary, result.scheduler.errors, output_format)
        for warning in result.warnings:
            typer.secho(f"  Warning: {warning}", fg=typer.colors.YELLOW)
        if validation is None:
            typer.echo("No snapshot to validate against.")
        elif validation.is_valid:
            typer.echo(f"✅ Replay matches snapshot {validation.snapshot_id}")
            for warning in validation.warnings:
                typer.secho(f"  Warning: {warning}", fg=typer.colors.YELLOW)
        else:
            typer.secho(f"❌ Replay diverges from snapshot {validation.snapshot_id}", fg=typer.colors.RED)
            for message in validation.errors:
                typer.echo(f"  - {message}")

    if validation is not None and not validation.is_valid:
        raise typer.Exit(1)


@app.command()
def compare(
    record_file: Path = typer.Argument(..., help="Scenario record written by 'run --record'."),
    model: str = typer.Argument(..., help="Alternative scenario (YAML or JSON) to replay the same events against."),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Replay a record against its own model and another one, and diff the outcomes."""
    from tokenflow.engine.replay import ReplayEngine, ReplayError

    recorded = _read_record(record_file)
    alternative = _read_scenario(model)

    try:
        comparison = ReplayEngine().compare(recorded, alternative)
    except ReplayError as e:
        _format_validation_error(title="Comparison Failed", message=str(e))
        raise typer.Exit(1) from None

    if output_format == "json":
        typer.echo(
            json.dumps(
                [
                    {
                        "timestamp": d.timestamp,
                        "field": d.field,
                        "value_a": d.value_a,
                        "value_b": d.value_b,
                        "significance": d.significance.value,
                    }
                    for d in comparison.differences
                ]
            )
        )
        return

    if not comparison.differences:
        typer.echo("✅ No differences between models")
        return
    typer.echo(f"{len(comparison.differences)} difference(s), {len(comparison.major_differences)} major:")
    for d in comparison.differences:
        colour = typer.colors.RED if d.significance.value == "major" else None
        typer.secho(f"  [{d.significance.value}] {d.field}: {d.value_a!r} -> {d.value_b!r}", fg=colour)


@app.command()
def lineage(
    ctx: typer.Context,
    scenario: str = typer.Argument(..., help="Path to scenario YAML or JSON file."),
    token_id: str = typer.Argument(..., help="Token id to trace, e.g. tk-12."),
    ticks: int = typer.Option(10, "--ticks", "-t", min=1, help="Number of ticks to simulate first."),
    settings: str | None = typer.Option(None, "--settings", "-s", help="Path to engine settings YAML file."),
) -> None:
    """Run a scenario and print the lineage of one token."""
    from tokenflow.engine.scheduler import Scheduler

    config = _load_engine_settings(ctx, settings)
    scheduler = Scheduler(config)
    errors = scheduler.load_scenario(_read_scenario(scenario))
    if errors:
        _format_validation_error(title="Scenario Validation Failed", message=f"Cannot load {scenario}", details=errors)
        raise typer.Exit(1)
    scheduler.step(ticks)

    try:
        result = scheduler.derive_lineage(token_id)
    except KeyError:
        _format_validation_error(
            title="Unknown Token",
            message=f"{token_id} was not created in {ticks} ticks (or has been evicted)",
        )
        raise typer.Exit(1) from None

    token = result.token
    typer.echo(f"{token.token_id} = {token.value!r} ({token.operation_type.value} at {token.origin_node_id}, t={token.created_at})")
    for ancestor in result.ancestors:
        record = ancestor.record
        typer.echo(f"  {'  ' * (ancestor.generation - 1)}<- {record.token_id} = {record.value!r} ({record.origin_node_id})")
    typer.echo(f"Roots: {', '.join(r.token_id for r in result.roots) or '-'}")
    typer.echo(f"Descendants: {', '.join(d.record.token_id for d in result.descendants) or '-'}")
