# ABOUTME: Runs the full edX pipeline: course structure first, then every student's event log.
# ABOUTME: Writes course lookup files, bucketed trajectories, and the three user lists.

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from src.common.config import load_normalizer_config
from src.course_tree.builder import CourseStructureError, build_course_structure, write_course_outputs
from src.course_tree.resolver import ModuleResolver
from src.trajectory.pipeline import normalize_directory, summary_table

console = Console()
app = typer.Typer(help="Build the course structure and normalize all student event logs.")


@app.command()
def run(
    course_json: Path = typer.Option(..., "--course-json", exists=True, dir_okay=False, help="Course structure JSON export."),
    events_dir: Path = typer.Option(..., "--events-dir", exists=True, file_okay=False, help="Directory of per-student event CSVs."),
    course_dir: Path = typer.Option(Path("data/course"), "--course-dir", help="Directory for metadata and lookup CSVs."),
    output_dir: Path = typer.Option(Path("data/studentevents_processed"), "--output-dir", help="Directory for trajectory files."),
    userlists_dir: Path = typer.Option(Path("data/userlists"), "--userlists-dir", help="Directory for user list files."),
    config_path: Optional[Path] = typer.Option(Path("configs/normalizer.yaml"), "--config", help="Normalizer YAML config."),
) -> None:
    """Build the module lookup table, then normalize every student log against it."""
    console.rule("[bold blue]edX Course Pipeline[/bold blue]")

    try:
        config = load_normalizer_config(config_path if config_path and config_path.exists() else None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    try:
        structure = build_course_structure(course_json)
    except CourseStructureError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1) from exc

    meta_path, lookup_path = write_course_outputs(structure, course_dir)
    console.print(f"[green]✓[/green] Course {structure.course_id}: {len(structure.modules):,} modules → {lookup_path}")
    if structure.unresolved:
        console.print(f"[yellow]Warning:[/] {len(structure.unresolved)} modules sit outside the 4-level hierarchy")
    if structure.missing_children:
        console.print(f"[yellow]Warning:[/] {len(structure.missing_children)} child references point at blocks missing from the export")

    resolver = ModuleResolver(structure.modules)
    summary = normalize_directory(events_dir, resolver, output_dir, userlists_dir, config)

    console.print()
    console.print(summary_table(summary))
    for failure in summary.failures:
        console.print(f"[red]✗ {failure.path.name}: {failure.error}[/red]")
    console.print(f"[bold]Metadata:[/] {meta_path}")
    console.print(f"[bold]Trajectories:[/] {output_dir}")
    console.print(f"[bold]User lists:[/] {userlists_dir}")


@app.command("show-config")
def show_config(
    config_path: Optional[Path] = typer.Option(Path("configs/normalizer.yaml"), "--config", help="Normalizer YAML config."),
) -> None:
    """Print the effective normalizer settings."""
    try:
        config = load_normalizer_config(config_path if config_path and config_path.exists() else None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    table = Table(title="Normalizer Config", show_header=True, header_style="bold magenta")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("session_break_minutes", str(config.session_break_minutes))
    table.add_row("min_events", str(config.min_events))
    table.add_row("reestimate_outliers", str(config.reestimate_outliers))
    table.add_row("final_period", config.final_period)
    table.add_row("workers", str(config.workers))
    for name, value in vars(config.retention).items():
        table.add_row(f"retention.{name}", str(value))
    console.print(table)


if __name__ == "__main__":
    app()
