"""
CLI entry point for ctxlog.

This module provides the Typer-based command-line interface for inspecting
and appending to a ctxlog store.

Commands:
    tail        Show the most recent records of a type
    stats       Summarize every data file
    locks       List lock markers (optionally clearing stale ones)
    scan        Scan text for PII
    append      Append one record from the shell

Architecture Note:
    The CLI is intentionally thin - it parses arguments and delegates to
    Writer, Reader, LockManager and PIIDetector. Everything it does is
    available programmatically.
"""

import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ctxlog import __version__
from ctxlog.errors import CtxlogError
from ctxlog.schema import Record, RecordType, StoreConfig, load_config
from ctxlog.security.pii import PIIDetector, mask_secret
from ctxlog.store.reader import Reader
from ctxlog.store.writer import Writer, build_record

# Initialize Typer app with metadata
app = typer.Typer(
    name="ctxlog",
    help="Inspect and append to an append-only agent memory store.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()
err_console = Console(stderr=True)


@dataclass
class CliState:
    """Options shared by every command."""

    root: Path
    config: StoreConfig


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]ctxlog[/bold] version {__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    """Route library logging through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose)],
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    root: Annotated[
        Path,
        typer.Option(
            "--root",
            "-r",
            help="Project root containing the data directory.",
            file_okay=False,
            resolve_path=True,
        ),
    ] = Path("."),
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to a YAML store configuration.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Enable debug logging.",
        ),
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    ctxlog - Append-only, line-numbered memory store for agents.

    Records live in one pipe-delimited file per type under the project's
    data directory (.ctxlog by default).
    """
    configure_logging(verbose)
    try:
        config = load_config(config_path) if config_path else StoreConfig()
    except (OSError, ValidationError) as e:
        err_console.print(f"[red]Error loading config: {e}[/red]")
        raise typer.Exit(code=1) from e
    ctx.obj = CliState(root=root, config=config)


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _fail(error: CtxlogError, json_output: bool) -> typer.Exit:
    """Report a ctxlog error; the caller raises the returned Exit."""
    if json_output:
        print(json.dumps({"error": True, **error.to_dict()}, indent=2, default=str))
    else:
        console.print(f"[red]{escape(str(error))}[/red]")
    return typer.Exit(code=1)


def _parse_pairs(pairs: list[str], option: str) -> dict[str, str]:
    """Parse repeated key=value options."""
    parsed: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected key=value, got {pair!r}", param_hint=option)
        parsed[key] = value
    return parsed


def _record_json(record: Record) -> dict[str, Any]:
    return record.model_dump(mode="json")


@app.command()
def tail(
    ctx: typer.Context,
    record_type: Annotated[
        RecordType,
        typer.Argument(help="Record type to read.", case_sensitive=False),
    ],
    count: Annotated[
        int,
        typer.Option(
            "--count",
            "-n",
            help="Number of records to show.",
        ),
    ] = 10,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output records in JSON format.",
        ),
    ] = False,
) -> None:
    """
    Show the most recent records of a type, oldest first.

    Example:
        $ ctxlog tail DECISIONS -n 5
    """
    state = _state(ctx)
    try:
        records = Reader(state.root, state.config).get_last_n(record_type, count)
    except CtxlogError as e:
        raise _fail(e, json_output) from None

    if json_output:
        print(json.dumps({"records": [_record_json(r) for r in records], "count": len(records)}, indent=2))
        return

    if not records:
        console.print(f"[dim]No {record_type.value} records found.[/dim]")
        return

    for record in records:
        console.print(f"[bold cyan]@{record.type.value}[/bold cyan]:[bold]{escape(record.id)}[/bold]")
        for key, value in record.fields.items():
            console.print(f"  {key} = {value}", markup=False, highlight=False)
        for key, value in record.metadata.items():
            console.print(f"  [dim]meta.{escape(key)} = {escape(value)}[/dim]")
        console.print()


@app.command()
def stats(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output statistics in JSON format.",
        ),
    ] = False,
) -> None:
    """
    Summarize every data file: size, read mode, sections, skipped lines.

    Example:
        $ ctxlog --root ./my-agent stats
    """
    state = _state(ctx)
    try:
        summary = Reader(state.root, state.config).stats()
    except CtxlogError as e:
        raise _fail(e, json_output) from None

    if json_output:
        print(json.dumps({"files": summary}, indent=2))
        return

    table = Table(show_header=True, header_style="bold", title="ctxlog store")
    table.add_column("Type", style="cyan")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Mode")
    table.add_column("Sections", justify="right")
    table.add_column("Last line", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Locked")

    for type_name, entry in summary.items():
        skipped = entry["skipped"]
        table.add_row(
            type_name,
            entry["file"] if entry["exists"] else f"[dim]{entry['file']}[/dim]",
            str(entry["size_bytes"]),
            entry["mode"],
            str(entry["sections"]),
            str(entry["last_line"]),
            f"[yellow]{skipped}[/yellow]" if skipped else "0",
            "[yellow]yes[/yellow]" if entry["locked"] else "no",
        )

    console.print(table)


@app.command()
def locks(
    ctx: typer.Context,
    clear_stale: Annotated[
        bool,
        typer.Option(
            "--clear-stale",
            help="Remove markers left by crashed writers.",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output lock markers in JSON format.",
        ),
    ] = False,
) -> None:
    """
    List lock markers in the data directory.

    Example:
        $ ctxlog locks --clear-stale
    """
    state = _state(ctx)
    try:
        reader = Reader(state.root, state.config)
        manager = reader.locks
        entries = []
        for info in manager.list_locks(reader.data_dir):
            stale = manager.is_stale(info)
            cleared = False
            if stale and clear_stale:
                resource = Path(str(info.marker)[: -len(".lock")])
                cleared = manager.reclaim_if_stale(resource)
            entries.append({**info.to_dict(), "stale": stale, "cleared": cleared})
    except CtxlogError as e:
        raise _fail(e, json_output) from None

    if json_output:
        print(json.dumps({"locks": entries, "count": len(entries)}, indent=2))
        return

    if not entries:
        console.print("[dim]No lock markers found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", title="Lock markers")
    table.add_column("Marker", style="cyan")
    table.add_column("PID", justify="right")
    table.add_column("Host")
    table.add_column("Age", justify="right")
    table.add_column("State")

    for entry in entries:
        if entry["cleared"]:
            status = "[green]cleared[/green]"
        elif entry["stale"]:
            status = "[yellow]stale[/yellow]"
        else:
            status = "held"
        table.add_row(
            Path(entry["marker"]).name,
            str(entry["pid"] if entry["pid"] is not None else "?"),
            entry["host"] or "?",
            f"{entry['age_seconds']:.1f}s",
            status,
        )

    console.print(table)


@app.command()
def scan(
    text: Annotated[
        Optional[str],
        typer.Argument(help="Text to scan. Reads --file or stdin when omitted."),
    ] = None,
    file: Annotated[
        Optional[Path],
        typer.Option(
            "--file",
            "-f",
            help="Scan the contents of a file.",
            exists=True,
            readable=True,
            dir_okay=False,
        ),
    ] = None,
    redact: Annotated[
        bool,
        typer.Option(
            "--redact",
            help="Print the redacted text instead of the findings.",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output findings in JSON format.",
        ),
    ] = False,
) -> None:
    """
    Scan text for PII and secrets.

    Exits with status 2 when anything is found, so it can gate scripts.

    Example:
        $ ctxlog scan "contact me at jane@example.com"
    """
    if text is None:
        text = file.read_text(encoding="utf-8") if file else sys.stdin.read()

    result = PIIDetector().redact(text)

    if redact:
        print(result.text)
    elif json_output:
        output = {
            "detections": result.detections,
            "types": result.types,
            "matches": [
                {
                    "type": m.type,
                    "start": m.start,
                    "end": m.end,
                    "value": mask_secret(m.value),
                }
                for m in result.matches
            ],
        }
        print(json.dumps(output, indent=2))
    elif not result.detections:
        console.print("[green]No PII detected.[/green]")
    else:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Type", style="yellow")
        table.add_column("Span", justify="right")
        table.add_column("Value (masked)")
        for match in result.matches:
            table.add_row(match.type, f"{match.start}-{match.end}", mask_secret(match.value))
        console.print(table)
        console.print(f"[dim]{result.detections} detection(s): {', '.join(result.types)}[/dim]")

    if result.detections:
        raise typer.Exit(code=2)


@app.command()
def append(
    ctx: typer.Context,
    record_type: Annotated[
        RecordType,
        typer.Argument(help="Record type to append.", case_sensitive=False),
    ],
    record_id: Annotated[
        str,
        typer.Argument(help="Record identifier."),
    ],
    field: Annotated[
        Optional[list[str]],
        typer.Option(
            "--field",
            "-f",
            help="Field as key=value (repeatable).",
        ),
    ] = None,
    meta: Annotated[
        Optional[list[str]],
        typer.Option(
            "--meta",
            "-m",
            help="Metadata as key=value (repeatable).",
        ),
    ] = None,
    redact_pii: Annotated[
        Optional[bool],
        typer.Option(
            "--redact-pii/--no-redact-pii",
            help="Override the configured PII redaction for this record.",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output the result in JSON format.",
        ),
    ] = False,
) -> None:
    """
    Append one record.

    Example:
        $ ctxlog append DECISIONS d-42 -f decision="Use SQLite" \\
            -f rationale="Zero config" -f timestamp=2025-01-02T10:00:00
    """
    state = _state(ctx)
    fields = _parse_pairs(field or [], "--field")
    metadata = _parse_pairs(meta or [], "--meta")

    try:
        writer = Writer(state.root, state.config)
        record = build_record(record_type, record_id, fields, metadata)
        line_count = writer.append_record(record, redact_pii=redact_pii)
    except CtxlogError as e:
        raise _fail(e, json_output) from None

    if json_output:
        print(json.dumps({
            "type": record_type.value,
            "id": record_id,
            "line_count": line_count,
            "file": str(writer.paths[record_type]),
        }, indent=2))
    else:
        console.print(
            f"[green]✓[/green] Appended {record_type.value}:{escape(record_id)} "
            f"(line count {line_count})"
        )


if __name__ == "__main__":
    app()
