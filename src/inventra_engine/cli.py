"""Typer CLI for Inventra-Engine."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from inventra_engine.common.exceptions import InventraError

app = typer.Typer(name="inventra", help="Inventra-Engine: multi-tenant data access and maintenance")
console = Console()


def _load_config(path: Path) -> dict:
    try:
        return json.loads(path.read_text())
    except (OSError, ValueError) as e:
        console.print(f"[bold red]Cannot read descriptor {path}:[/bold red] {e}")
        raise typer.Exit(2)


def _fail(exc: InventraError) -> None:
    engine = f" ({exc.engine})" if exc.engine else ""
    console.print(f"[bold red]{exc.code}[/bold red]{engine}: {exc.message}")
    raise typer.Exit(1)


def _manager():
    from inventra_engine.deps import get_connection_manager
    return get_connection_manager()


def _run(coro):
    """Run ``coro``, then close every pool it opened."""
    async def _wrapped():
        try:
            return await coro
        finally:
            await _manager().dispose_all()
    return asyncio.run(_wrapped())


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Inventra-Engine API server."""
    import uvicorn
    from inventra_engine.app import create_app

    console.print(f"[bold green]Starting Inventra-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command("test-connection")
def test_connection(
    config: Path = typer.Option(..., "--config", "-c", help="Descriptor JSON file"),
):
    """Check a backend with one no-op round trip."""
    from inventra_engine.descriptors.validator import validate_descriptor

    raw = _load_config(config)
    try:
        descriptor = validate_descriptor(raw)
        _run(_manager().test_connection(descriptor))
    except InventraError as exc:
        _fail(exc)
    console.print(
        f"[bold green]Connected[/bold green] to {descriptor.engine.upper()} "
        f"{descriptor.host}/{descriptor.database}"
    )


@app.command("fix-indexes")
def fix_indexes(
    config: Path = typer.Option(..., "--config", "-c", help="Descriptor JSON file"),
    entity: Optional[list[str]] = typer.Option(None, "--entity", "-e", help="Limit to these entities"),
):
    """Drop tenant-unsafe unique indexes and create the declared ones."""
    from inventra_engine.deps import get_enforcer

    raw = _load_config(config)
    try:
        report = _run(get_enforcer().reconcile(raw, entities=entity))
    except InventraError as exc:
        _fail(exc)

    table = Table(title=f"Indexes on {report.engine}/{report.database}")
    for column in ("Entity", "Index", "Keys", "Unique", "Action"):
        table.add_column(column)
    for outcome in report.outcomes:
        table.add_row(
            outcome.entity, outcome.index, ", ".join(outcome.keys),
            "yes" if outcome.unique else "", outcome.action.value,
        )
    console.print(table)
    console.print(report.summary())
    if report.failed:
        raise typer.Exit(1)


@app.command()
def migrate(
    config: Path = typer.Option(..., "--config", "-c", help="MongoDB descriptor JSON file"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be migrated"),
):
    """Copy legacy per-tenant collections into the shared collections."""
    from inventra_engine.deps import get_migrator

    raw = _load_config(config)
    try:
        report = _run(get_migrator().run(raw, dry_run=dry_run))
    except InventraError as exc:
        _fail(exc)

    if not report.collections:
        console.print("No legacy collections found. Migration not needed.")
        return

    table = Table(title="Dry run" if dry_run else "Migration")
    for column in ("Collection", "Entity", "Tenant", "Documents", "Inserted", "Duplicates", "Failed"):
        table.add_column(column)
    for c in report.collections:
        table.add_row(
            c.legacy_collection, c.entity, c.tenant_id,
            str(c.documents), str(c.inserted), str(c.duplicates), str(c.failed),
        )
    console.print(table)
    console.print("\nLegacy collections were kept. Drop them manually once verified:")
    for command in report.drop_commands:
        console.print(f"  {command}")
    if report.failed:
        raise typer.Exit(1)


@app.command("check-username")
def check_username(
    username: str = typer.Argument(..., help="Username to check"),
    cluster_url: Optional[str] = typer.Option(None, help="Managed cluster host"),
    database: Optional[str] = typer.Option(None, help="Database holding the users store"),
    db_type: str = typer.Option("mongodb", help="Engine of the target database"),
    skip_cloud_check: bool = typer.Option(False, help="Syntax checks only"),
):
    """Check whether a username is valid and free."""
    from inventra_engine.deps import get_username_checker

    try:
        result = _run(get_username_checker().check(
            username, cluster_url=cluster_url, database=database,
            db_type=db_type, skip_cloud_check=skip_cloud_check,
        ))
    except InventraError as exc:
        _fail(exc)
    color = "green" if result.available else "red"
    console.print(f"[bold {color}]{result.message}[/bold {color}]")
    if not result.available:
        raise typer.Exit(1)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Inventra-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] v{data['version']}")
    except (httpx.HTTPError, ValueError, KeyError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
