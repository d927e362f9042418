from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
import uvicorn

from perfstat.config import settings
from perfstat.data.catalog import FormCatalog
from perfstat.engine.evaluator import evaluate as evaluate_expression
from perfstat.engine.rollup import load_rollup_config
from perfstat.exceptions import FormulaError, PerfStatError

cli = typer.Typer(help="PerfStat CLI (performance form engine)")


@cli.command()
def version() -> None:
    """Print runtime version."""
    typer.echo(f"PerfStat {settings.app.version}")


@cli.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host to bind"),
    port: int = typer.Option(8000, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload for local development"),
) -> None:
    """Run the PerfStat API server."""
    uvicorn.run(
        "perfstat.api.main:app",
        host=host,
        port=port,
        reload=reload,
        app_dir="src",
    )


@cli.command()
def evaluate(expression: str = typer.Argument(..., help='Arithmetic expression, e.g. "2+3*4"')) -> None:
    """Evaluate a formula expression with the form engine's evaluator."""
    try:
        typer.echo(evaluate_expression(expression))
    except FormulaError as exc:
        typer.echo(f"{type(exc).__name__}: {exc}", err=True)
        raise typer.Exit(code=1)


@cli.command("check-config")
def check_config(
    catalog_path: Optional[Path] = typer.Option(None, "--catalog", help="Catalog file (defaults to settings)"),
    rollup_path: Optional[Path] = typer.Option(None, "--rollup", help="Roll-up mapping file (defaults to settings)"),
) -> None:
    """Validate the catalog formulas and roll-up mappings."""
    try:
        catalog = FormCatalog.from_file(catalog_path or settings.paths.catalog_path)
        rollup = load_rollup_config(rollup_path or settings.paths.rollup_path)
    except PerfStatError as exc:
        typer.echo(f"{type(exc).__name__}: {exc}", err=True)
        raise typer.Exit(code=2)

    problems = catalog.problems(rollup)
    for problem in problems:
        typer.echo(f"- {problem}", err=True)
    if problems:
        raise typer.Exit(code=1)
    topics = sum(len(m.topics) for m in catalog.modules)
    typer.echo(f"OK: {len(catalog.modules)} modules, {topics} topics, {len(rollup.mappings)} roll-up mappings")


if __name__ == "__main__":
    cli()
