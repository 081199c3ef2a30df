"""Typer CLI for Corrispettivi-Engine."""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

app = typer.Typer(
    name="corrispettivi",
    help="Corrispettivi-Engine: electronic receipts, journals and daily reports",
)
console = Console()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(4000, help="Bind port"),
):
    """Start the elaboration point API server."""
    import uvicorn
    from corrispettivi_engine.app import create_app
    from corrispettivi_engine.common.config import get_settings
    from corrispettivi_engine.common.logging import setup_logging

    setup_logging(get_settings().log_level)
    console.print(f"[bold green]Starting Corrispettivi-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command("verify-journal")
def verify_journal(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Exported journal JSON"),
):
    """Verify an exported journal offline (hash chain, numbering, totals)."""
    from corrispettivi_engine.common.exceptions import IntegrityError
    from corrispettivi_engine.journal.integrity import check_journal_integrity

    try:
        journal = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[bold red]Error:[/bold red] cannot read {path}: {e}")
        raise typer.Exit(2)
    if not isinstance(journal, dict):
        console.print("[bold red]Error:[/bold red] journal must be a JSON object")
        raise typer.Exit(2)

    report = check_journal_integrity(journal)
    try:
        report.raise_for_errors()
    except IntegrityError as e:
        console.print(f"[bold red]INVALID[/bold red] {e.message}")
        for error in e.errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    entries = report.chain.entries_checked if report.chain else 0
    console.print(
        f"[bold green]VALID[/bold green] {entries} entries, "
        f"total {report.computed_total} EUR"
    )


@app.command()
def health(
    url: Optional[str] = typer.Option(None, help="Server URL (default: CORRISPETTIVI_PEL_URL)"),
):
    """Check Corrispettivi-Engine server health."""
    from corrispettivi_engine.client import PELClient
    from corrispettivi_engine.common.config import get_settings
    from corrispettivi_engine.common.exceptions import TransportError

    settings = get_settings()
    try:
        with PELClient(url or settings.pel_url, timeout=settings.pel_timeout) as client:
            data = client.health()
    except TransportError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(1)
    console.print(f"[bold green]{data['status']}[/bold green] v{data['version']}")


if __name__ == "__main__":
    app()
