"""Typer CLI entry point for resilient-ui diagnostics."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from resilient_ui import __version__
from resilient_ui.config import Settings, format_validation_error
from resilient_ui.events.bus import EventBus
from resilient_ui.events.models import EventKind, StateRecovered
from resilient_ui.exceptions import StateCorruptionError, StorageError
from resilient_ui.logging import configure_from_settings
from resilient_ui.reporting.classifier import ErrorClassifier
from resilient_ui.state.models import TIMESTAMP_KEY, VERSION_KEY
from resilient_ui.state.storage import JsonFileStorage
from resilient_ui.state.store import StateStore
from resilient_ui.transport import HttpxTransport, RequestConfig

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="resilient-ui",
    help="Diagnostics for the resilient UI runtime: errors, state and connectivity.",
    no_args_is_help=True,
)

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config YAML file."),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging."),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(
    config_path: Path | None = None,
    verbose: bool = False,
    **overrides: Any,
) -> Settings:
    """Load settings with error handling and user-friendly messages.

    Logging is configured from the loaded settings.
    """
    from pydantic import ValidationError

    if verbose:
        overrides["logging"] = {"level": "DEBUG"}
    try:
        settings = Settings.load(config_path=config_path, **overrides)
    except ValidationError as exc:
        err_console.print(
            Panel(
                format_validation_error(exc),
                title="Configuration Error",
                border_style="red",
            )
        )
        raise typer.Exit(code=1) from exc
    configure_from_settings(settings.logging)
    logger.debug("settings_loaded", config_path=str(config_path or ""))
    return settings


def _offline_store(
    settings: Settings, directory: Path, bus: EventBus | None = None
) -> StateStore:
    return StateStore(
        bus or EventBus(),
        JsonFileStorage(directory),
        None,
        settings=settings.state.model_copy(update={"sync_enabled": False}),
    )


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]resilient-ui[/bold] {__version__}")
        raise typer.Exit


@app.callback()
def common(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=_version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """resilient-ui global options."""


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def classify(
    message: Annotated[str, typer.Argument(help="Error message to classify.")],
    stack: Annotated[
        str | None,
        typer.Option("--stack", help="Stack trace text to match as well."),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the classification as JSON."),
    ] = False,
) -> None:
    """Show how an error message would be classified."""
    classifier = ErrorClassifier()
    result = classifier.classify(message, stack)
    component = classifier.extract_component_name(message)

    if as_json:
        payload = {**result.model_dump(mode="json"), "component": component}
        console.print_json(json.dumps(payload))
        return

    table = Table(title="Error Classification", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Category", result.category.value)
    table.add_row("Severity", result.severity.value)
    table.add_row(
        "Recoverable", "[green]yes[/green]" if result.recoverable else "[red]no[/red]"
    )
    table.add_row("Strategy", result.strategy.value)
    if component:
        table.add_row("Component", component)
    console.print(table)


@app.command(name="inspect-state")
def inspect_state(
    directory: Annotated[
        Path, typer.Argument(help="Directory holding persisted state records.")
    ],
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """List persisted state records and check their integrity."""
    settings = _load_settings(config, verbose)
    if not directory.is_dir():
        err_console.print(f"[red]State directory not found:[/red] {directory}")
        raise typer.Exit(code=1)

    storage = JsonFileStorage(directory)
    store = _offline_store(settings, directory)
    keys = storage.keys()
    if not keys:
        console.print("[yellow]No state records found.[/yellow]")
        return

    table = Table(title=f"State records in {directory}", show_lines=True)
    table.add_column("Record", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Version", justify="right")
    table.add_column("Timestamp", justify="right")
    table.add_column("Bytes", justify="right")
    table.add_column("Details")

    corrupt = 0
    backup_prefix = f"{settings.state.storage_key}_backup_"
    for key in keys:
        if key.startswith(backup_prefix):
            table.add_row(key, "[dim]BACKUP[/dim]", "-", "-", "-", "")
            continue
        try:
            raw = storage.get_item(key) or ""
            document = store.parse_record(raw)
        except (StateCorruptionError, StorageError) as exc:
            corrupt += 1
            table.add_row(key, "[red]CORRUPT[/red]", "-", "-", "-", str(exc))
            continue
        invalid = store.failing_keys(document)
        status = "[yellow]PARTIAL[/yellow]" if invalid else "[green]OK[/green]"
        details = f"invalid keys: {', '.join(invalid)}" if invalid else ""
        table.add_row(
            key,
            status,
            str(document[VERSION_KEY]),
            str(document[TIMESTAMP_KEY]),
            str(len(raw.encode("utf-8"))),
            details,
        )
    console.print(table)
    if corrupt:
        raise typer.Exit(code=1)


@app.command(name="repair-state")
def repair_state(
    directory: Annotated[
        Path, typer.Argument(help="Directory holding persisted state records.")
    ],
    config: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Load the durable state record, repairing or replacing it if damaged."""
    settings = _load_settings(config, verbose)
    recovered = asyncio.run(_repair(settings, directory))

    if recovered is None:
        console.print("[green]State record is healthy; nothing to repair.[/green]")
        return
    if recovered.fallback_used:
        backup = recovered.backup_key or "not written"
        console.print(
            Panel(
                f"{recovered.reason}\n\nBackup: {backup}",
                title="Replaced with default state",
                border_style="yellow",
            )
        )
    else:
        stripped = ", ".join(recovered.stripped_keys)
        console.print(f"[yellow]Stripped invalid keys:[/yellow] {stripped}")


async def _repair(settings: Settings, directory: Path) -> StateRecovered | None:
    bus = EventBus()
    outcomes: list[StateRecovered] = []
    bus.subscribe(EventKind.STATE_RECOVERED, outcomes.append)
    store = _offline_store(settings, directory, bus)
    await store.load()
    return outcomes[-1] if outcomes else None


@app.command()
def probe(config: ConfigOption = None, verbose: VerboseOption = False) -> None:
    """Check that the configured endpoint is reachable."""
    settings = _load_settings(config, verbose)
    request_config = RequestConfig.from_settings(settings.transport)
    url = request_config.probe_url or request_config.endpoint
    reachable = asyncio.run(_probe(request_config))
    logger.info("endpoint_probed", url=url, reachable=reachable)
    if reachable:
        console.print(f"[green]Reachable:[/green] {url}")
        return
    err_console.print(f"[red]Unreachable:[/red] {url}")
    raise typer.Exit(code=1)


async def _probe(request_config: RequestConfig) -> bool:
    transport = HttpxTransport(request_config)
    try:
        return await transport.probe()
    finally:
        await transport.aclose()


@app.command(name="config")
def show_config(
    config: ConfigOption = None, verbose: VerboseOption = False
) -> None:
    """Print the resolved configuration (token masked)."""
    settings = _load_settings(config, verbose)
    data = settings.model_dump(mode="json")
    if data["transport"].get("token"):
        data["transport"]["token"] = "***"
    console.print_json(json.dumps(data))


@app.command()
def version() -> None:
    """Print the installed version."""
    console.print(f"[bold]resilient-ui[/bold] {__version__}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
