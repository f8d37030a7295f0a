# decay_mem/cli.py

"""CLI commands for decay-mem maintenance."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from decay_mem import __version__
from decay_mem.logging_config import setup_logging
from decay_mem.markdown import export_as_markdown, migrate_markdown
from decay_mem.memory import Memory

app = typer.Typer(
    name="decay-mem",
    help="decay-mem - self-organizing memory store maintenance",
    no_args_is_help=True,
)

console = Console()

DEFAULT_DB = "~/.decay_mem/memories.db"

DbOption = typer.Option(DEFAULT_DB, "--db", envvar="DECAY_MEM_DB", help="SQLite database path")


def version_callback(value: bool):
    if value:
        console.print(f"decay-mem v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
    log_level: str = typer.Option(None, "--log-level", help="Override $LOG_LEVEL"),
):
    """decay-mem - self-organizing memory store maintenance."""
    setup_logging(log_level.upper() if log_level else None)


def _open(db: str) -> Memory:
    return Memory({"sqlite_path": db})


@app.command()
def decay(db: str = DbOption):
    """Apply one decay run to every unpinned memory."""
    with _open(db) as memory:
        result = memory.apply_decay()
    console.print(
        f"[green]✓[/green] Decayed {result.decayed_count} memories "
        f"over {result.days_elapsed} day(s)"
    )


@app.command()
def prune(
    threshold: float = typer.Option(10.0, "--threshold", "-t", help="Importance floor"),
    db: str = DbOption,
):
    """Delete memories whose importance is below the threshold."""
    with _open(db) as memory:
        pruned = memory.prune_memories(threshold)
    console.print(f"[green]✓[/green] Pruned {pruned} memories below {threshold:g}")


@app.command()
def maintain(
    threshold: float = typer.Option(10.0, "--threshold", "-t", help="Importance floor"),
    db: str = DbOption,
):
    """Decay, then prune. Meant for a daily scheduler."""
    with _open(db) as memory:
        result, pruned = memory.run_maintenance(threshold)
    console.print(
        f"[green]✓[/green] Decayed {result.decayed_count} "
        f"({result.days_elapsed} day(s)), pruned {pruned}"
    )


@app.command()
def stats(db: str = DbOption):
    """Show store statistics."""
    with _open(db) as memory:
        snapshot = memory.get_stats()

    console.print(f"Total memories: [bold]{snapshot.total_memories}[/bold]")
    console.print(f"Hot memories: [bold]{snapshot.hot_memories}[/bold]")

    counters = Table(title="Counters")
    counters.add_column("Counter", style="cyan")
    counters.add_column("Value", justify="right")
    for name, value in sorted(snapshot.counters.items()):
        if not name.startswith("category_"):
            counters.add_row(name, f"{value:g}")
    console.print(counters)

    categories = Table(title="Categories")
    categories.add_column("Category", style="cyan")
    categories.add_column("Memories", justify="right")
    for name, count in snapshot.categories.items():
        categories.add_row(name, str(count))
    console.print(categories)


@app.command()
def export(
    output: Path = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
    per_category: int = typer.Option(50, "--per-category", help="Rows per category"),
    db: str = DbOption,
):
    """Export memories as markdown tables."""
    with _open(db) as memory:
        text = export_as_markdown(memory, per_category=per_category)

    if output is None:
        console.print(text, markup=False, highlight=False)
    else:
        output.write_text(text, encoding="utf-8")
        console.print(f"[green]✓[/green] Wrote {output}")


@app.command()
def migrate(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Legacy markdown file"),
    confidence: float = typer.Option(85.0, "--confidence", help="Confidence for imported rows"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Count without writing"),
    db: str = DbOption,
):
    """Import legacy markdown memory tables."""
    text = source.read_text(encoding="utf-8")
    with _open(db) as memory:
        result = migrate_markdown(memory, text, confidence=confidence, dry_run=dry_run)

    prefix = "[yellow]DRY RUN[/yellow] " if dry_run else ""
    console.print(
        f"{prefix}Migrated {result.migrated}, skipped {result.skipped}, "
        f"tables {result.tables}"
    )


if __name__ == "__main__":
    app()
