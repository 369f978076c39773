# src/factcounters/cli.py
"""factcounters Command Line Interface.

Entry point for the factcounters CLI tool. Command results are JSON on
stdout (one document, or one line per fact); logs and errors go to stderr.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from factcounters import __version__
from factcounters.contracts.errors import ConfigurationError, StorageError
from factcounters.contracts.facts import Fact
from factcounters.core.config import FactCountersSettings, load_settings
from factcounters.core.logging import configure_logging
from factcounters.engine.processor import FactProcessor, build_processor, build_registry, compile_rules

__all__ = ["app"]


@dataclass(frozen=True)
class _CliOptions:
    """Global flags, carried to subcommands on the click context."""

    verbose: bool = False
    json_logs: bool = False


app = typer.Typer(
    name="factcounters",
    help="factcounters: rolling counters over indexed business facts.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"factcounters version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from a .env file.

    Raises:
        typer.Exit: If an explicit env_file path doesn't exist.
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
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Skip loading .env file."),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Output structured JSON logs."),
) -> None:
    """factcounters: rolling counters over indexed business facts."""
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")
    ctx.obj = _CliOptions(verbose=verbose, json_logs=json_logs)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)


def _format_error(title: str, message: str, hint: str | None = None, details: list[str] | None = None) -> None:
    """Display a formatted error panel on stderr."""
    from rich.console import Console
    from rich.panel import Panel
    from rich.text import Text

    console = Console(stderr=True)
    content = Text()
    content.append(message, style="white")
    if details:
        content.append("\n\n")
        for detail in details:
            content.append(f"  • {detail}\n", style="dim")
    if hint:
        content.append("\n")
        content.append("Hint: ", style="yellow bold")
        content.append(hint, style="yellow")
    console.print(Panel(content, title=f"[red bold]{title}[/]", border_style="red", padding=(0, 1)))


def _load(ctx: typer.Context, settings: str, *, memory: bool = False) -> FactCountersSettings:
    """Load settings or exit with a formatted error.

    Logging is reconfigured from the settings unless a global flag
    already chose the level or format.
    """
    settings_path = Path(settings).expanduser()
    try:
        config = load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        _format_error(
            "YAML Syntax Error",
            f"Failed to parse {settings_path.name}",
            details=[str(e.problem)] if hasattr(e, "problem") else None,
            hint="Check for unclosed brackets, incorrect indentation, or invalid characters.",
        )
        raise typer.Exit(1) from None
    except FileNotFoundError as e:
        _format_error("File Not Found", str(e), hint="Check the path and ensure the file exists.")
        raise typer.Exit(1) from None
    except ValidationError as e:
        # Must precede ValueError: ValidationError subclasses it
        details = [f"{'.'.join(str(x) for x in error['loc'])}: {error['msg']}" for error in e.errors()]
        _format_error(
            "Configuration Validation Failed",
            f"Invalid settings in {settings_path.name}",
            details=details,
            hint="Check field names, types, and required values.",
        )
        raise typer.Exit(1) from None
    except ValueError as e:
        _format_error("Configuration Error", str(e))
        raise typer.Exit(1) from None

    options: _CliOptions = ctx.obj or _CliOptions()
    configure_logging(
        json_output=options.json_logs or config.logging.json_output,
        level="DEBUG" if options.verbose else config.logging.level,
    )
    if memory:
        config = config.model_copy(update={"storage": config.storage.model_copy(update={"backend": "memory"})})
    return config


def _processor(config: FactCountersSettings) -> FactProcessor:
    try:
        return build_processor(config)
    except ConfigurationError as e:
        _format_error("Invalid Counter Configuration", "Rules failed validation", details=e.problems)
        raise typer.Exit(1) from None
    except StorageError as e:
        _format_error("Storage Unavailable", str(e), hint="Check database.url and that the database is reachable.")
        raise typer.Exit(1) from None


def _read_facts(path: Path, processor: FactProcessor) -> Iterator[Fact]:
    """Yield facts from a JSON Lines file, skipping blank lines.

    Data values are typed by the processor's field kinds so date and
    number text in payloads compares like the rule literals.

    Raises:
        typer.Exit: On an unreadable file or a malformed line
    """
    if not path.exists():
        _format_error("File Not Found", f"Facts file does not exist: {path}")
        raise typer.Exit(1)
    with path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                fact = processor.fact_from_payload(json.loads(line))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                _format_error("Malformed Fact", f"{path.name} line {line_number}: {e}")
                raise typer.Exit(1) from None
            yield fact


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _echo_json(data: Any, *, indent: int | None = None) -> None:
    typer.echo(json.dumps(data, default=_json_default, ensure_ascii=False, indent=indent))


@app.command("compile")
def compile_command(
    ctx: typer.Context,
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
) -> None:
    """Compile the configured rules and print the report.

    Exits 1 when any rule failed to compile.
    """
    config = _load(ctx, settings)
    try:
        report = compile_rules(config)
    except (FileNotFoundError, ValueError) as e:
        _format_error("Rule File Error", str(e))
        raise typer.Exit(1) from None
    _echo_json(report.to_dict(), indent=2)
    if report.errors:
        raise typer.Exit(1)


@app.command()
def check(
    ctx: typer.Context,
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
) -> None:
    """Validate settings, rules and the counter registry without touching storage."""
    config = _load(ctx, settings)
    try:
        report = compile_rules(config)
        registry = build_registry(config, report)
    except (FileNotFoundError, ValueError) as e:
        _format_error("Rule File Error", str(e))
        raise typer.Exit(1) from None
    except ConfigurationError as e:
        _format_error("Invalid Counter Configuration", "Rules failed validation", details=e.problems)
        raise typer.Exit(1) from None

    groups = registry.groups_for(registry.rules)
    _echo_json(
        {
            "valid": not report.errors,
            "strategy": config.strategy.value,
            "rules": len(registry.rules),
            "dropped_rows": report.dropped_rows,
            "warnings": [str(d) for d in report.warnings],
            "errors": [str(d) for d in report.errors],
            "index_types": sorted({m.index_type_name for m in registry.mappings}),
            "groups": {group.name: list(group.counter_names) for group in groups},
        },
        indent=2,
    )
    if report.errors:
        raise typer.Exit(1)


@app.command()
def ingest(
    ctx: typer.Context,
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    facts: Path = typer.Option(..., "--facts", "-f", help="JSON Lines file of facts."),
    memory: bool = typer.Option(False, "--memory", help="Use an in-memory store."),
) -> None:
    """Persist facts and their index entries without computing counters."""
    config = _load(ctx, settings, memory=memory)
    failed = 0
    with _processor(config) as processor:
        for fact in _read_facts(facts, processor):
            try:
                result = processor.ingest(fact)
            except StorageError as e:
                failed += 1
                _echo_json({"fact_id": fact.id, "error": str(e)})
                continue
            failed += bool(result.errors)
            _echo_json(
                {
                    "fact_id": fact.id,
                    "fact": result.fact_outcome,
                    "entries_inserted": result.entries_inserted,
                    "entries_updated": result.entries_updated,
                    "entries_unchanged": result.entries_unchanged,
                    "errors": result.errors,
                }
            )
    if failed:
        raise typer.Exit(1)


@app.command()
def counters(
    ctx: typer.Context,
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    facts: Path = typer.Option(..., "--facts", "-f", help="JSON Lines file of triggering facts."),
    memory: bool = typer.Option(False, "--memory", help="Use an in-memory store."),
    persist: bool = typer.Option(True, "--persist/--no-persist", help="Persist each fact before counting."),
    summary: bool = typer.Option(False, "--summary", help="Print aggregate request metrics to stderr."),
) -> None:
    """Compute counters for each fact in order, printing one result per line."""
    config = _load(ctx, settings, memory=memory)
    with _processor(config) as processor:
        for fact in _read_facts(facts, processor):
            result = processor.process(fact, persist=persist)
            _echo_json(result.to_dict())
        if summary:
            typer.echo(json.dumps(processor.collector.snapshot(), indent=2), err=True)


if __name__ == "__main__":
    app()
