# src/testpulse/cli.py
"""testpulse Command Line Interface.

Entry point for the testpulse CLI tool.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from testpulse import __version__
from testpulse.core.config import PulseSettings, load_settings
from testpulse.core.context import BuildContext
from testpulse.usage.report import UsageStats
from testpulse.usage.store import WorkerDataStore

__all__ = ["app"]

app = typer.Typer(
    name="testpulse",
    help="testpulse: test-run event pipeline and usage reporting.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"testpulse version {__version__}")
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
    """testpulse: test-run event pipeline and usage reporting."""
    from testpulse.core.logging import configure_logging

    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)


def _format_error(title: str, message: str, hint: str | None = None, details: list[str] | None = None) -> None:
    """Display a formatted error with optional hint and details."""
    from rich.console import Console
    from rich.panel import Panel
    from rich.text import Text

    content = Text()
    content.append(message, style="white")
    if details:
        content.append("\n\n")
        for detail in details:
            content.append(f"  - {detail}\n", style="dim")
    if hint:
        content.append("\n")
        content.append("Hint: ", style="yellow bold")
        content.append(hint, style="yellow")

    Console(stderr=True).print(Panel(content, title=f"[red bold]{title}[/]", border_style="red"))


def _load_settings_or_exit(settings: str | None) -> PulseSettings:
    if settings is None:
        return PulseSettings()

    settings_path = Path(settings).expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        _format_error(
            title="YAML Syntax Error",
            message=f"Failed to parse {settings_path.name}",
            details=[str(e.problem)] if hasattr(e, "problem") else None,
            hint="Check for unclosed brackets, incorrect indentation, or invalid characters.",
        )
        raise typer.Exit(1) from None
    except FileNotFoundError:
        _format_error(
            title="File Not Found",
            message=f"Settings file does not exist: {settings}",
            hint="Check the path and ensure the file exists.",
        )
        raise typer.Exit(1) from None
    except ValidationError as e:
        # Must come before ValueError: ValidationError inherits from it
        details = [f"{'.'.join(str(x) for x in error['loc'])}: {error['msg']}" for error in e.errors()]
        _format_error(
            title="Configuration Validation Failed",
            message=f"Invalid settings in {settings_path.name}",
            details=details,
            hint="Check field names, types, and required values.",
        )
        raise typer.Exit(1) from None


@app.command()
def report(
    workers_dir: Path | None = typer.Option(
        None,
        "--workers-dir",
        "-w",
        help="Directory of worker snapshots (defaults to the configured one).",
    ),
    settings: str | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    build_hashed_id: str | None = typer.Option(
        None,
        "--build-hashed-id",
        help="Build id to put in the report (defaults to TESTPULSE_BUILD_HASHED_ID).",
    ),
    cleanup: bool = typer.Option(
        False,
        "--cleanup",
        help="Remove the worker snapshot directory after reporting.",
    ),
) -> None:
    """Merge worker usage snapshots and print the build usage report as JSON."""
    config = _load_settings_or_exit(settings)
    directory = workers_dir if workers_dir is not None else Path(config.workers.directory)
    store = WorkerDataStore(directory)

    context = BuildContext.from_env()
    if build_hashed_id is not None:
        context = BuildContext(jwt=context.jwt, build_hashed_id=build_hashed_id, build_ready=context.is_build_ready())

    from testpulse.core.logging import bind_build_context

    bind_build_context(context)

    workers_data = store.load_all()
    usage = UsageStats().get_formatted_data(
        workers_data,
        context=context,
        enabled=config.enabled,
        manually_set=config.manually_set,
    )
    typer.echo(json.dumps(usage, indent=2, sort_keys=True))

    if cleanup:
        store.remove()


@app.command("check-config")
def check_config(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Validate a settings file without sending anything."""
    from testpulse.contracts.config import RuntimeDispatchConfig

    config = _load_settings_or_exit(settings)
    runtime = RuntimeDispatchConfig.from_settings(config)
    typer.echo(f"Configuration valid: {Path(settings).name}")
    typer.echo(f"  Endpoint: {config.endpoint.url}/{config.endpoint.batch_path}")
    typer.echo(f"  Batch size: {runtime.batch_size}, flush interval: {runtime.flush_interval}s")
    typer.echo(f"  Enabled events: {', '.join(sorted(e.value for e in runtime.enabled_events))}")


if __name__ == "__main__":
    app()
