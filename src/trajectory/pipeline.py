# ABOUTME: Normalizes a directory of per-student event logs into trajectory files and user lists.
# ABOUTME: Routes each student to the active, zero-event, or unusable bucket and isolates failures.

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import pandas as pd
import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from src.common.config import NormalizerConfig, load_normalizer_config
from src.common.schemas import StudentOutcome, StudentResult
from src.course_tree.resolver import ModuleResolver

from .normalizer import family_counts, load_raw_events, normalize_student_events

ZERO_EVENTS_DIR = "zero_events"
NO_USABLE_EVENTS_DIR = "no_usable_events"
USER_LIST_SUFFIXES = {
    StudentOutcome.ACTIVE: "active",
    StudentOutcome.INACTIVE: "inactive",
    StudentOutcome.UNUSABLE: "unusableActivity",
}
PREVIEW_COLUMNS = ["order", "mod_hex_id", "module_type", "event_type", "period", "tsess"]

console = Console()
app = typer.Typer(help="Normalize per-student edX event logs into ordered course trajectories.")


@dataclass(frozen=True)
class StudentFailure:
    """A student log that raised while being processed."""

    user_id: str
    path: Path
    error: str


@dataclass
class BatchSummary:
    results: List[StudentResult] = field(default_factory=list)
    failures: List[StudentFailure] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def user_ids(self, outcome: StudentOutcome) -> List[str]:
        return sorted({result.user_id for result in self.results if result.outcome is outcome})

    def counts(self) -> Dict[str, int]:
        counts = {outcome.value: len(self.user_ids(outcome)) for outcome in StudentOutcome}
        counts["failed"] = len(self.failures)
        return counts

    def dropped_unresolved(self) -> int:
        return sum(result.dropped_unresolved for result in self.results)


def discover_event_files(events_dir: Path) -> List[Path]:
    """Per-student CSV logs in a stable order."""
    return sorted(Path(events_dir).glob("*.csv"))


def output_path_for(result: StudentResult, output_dir: Path) -> Path:
    output_dir = Path(output_dir)
    if result.outcome is StudentOutcome.INACTIVE:
        output_dir = output_dir / ZERO_EVENTS_DIR
    elif result.outcome is StudentOutcome.UNUSABLE:
        output_dir = output_dir / NO_USABLE_EVENTS_DIR
    return output_dir / f"{result.user_id}.csv"


def write_student_result(result: StudentResult, output_dir: Path) -> Path:
    path = output_path_for(result, output_dir)
    # A student whose bucket changed since an earlier run keeps only the new file.
    for bucket in (output_dir, output_dir / ZERO_EVENTS_DIR, output_dir / NO_USABLE_EVENTS_DIR):
        stale = bucket / path.name
        if stale != path:
            stale.unlink(missing_ok=True)
    path.parent.mkdir(parents=True, exist_ok=True)
    result.trajectory.to_csv(path, index=False)
    return path


def process_student_file(
    path: Path,
    resolver: ModuleResolver,
    config: Optional[NormalizerConfig] = None,
) -> StudentResult:
    raw = load_raw_events(path)
    return normalize_student_events(raw, resolver, config, user_id=Path(path).stem)


def run_batch(
    event_files: Sequence[Path],
    resolver: ModuleResolver,
    output_dir: Path,
    config: Optional[NormalizerConfig] = None,
    on_progress: Optional[Callable[[Path], None]] = None,
) -> BatchSummary:
    """
    Normalize and write every student log.

    Students are independent: one that raises is recorded as a failure and the
    rest of the batch continues. With `config.workers > 1` logs are processed on
    a thread pool; results are reported in input order either way.
    """

    config = config or NormalizerConfig()
    started = time.perf_counter()

    def _process(path: Path) -> Union[StudentResult, StudentFailure]:
        try:
            result = process_student_file(path, resolver, config)
            write_student_result(result, output_dir)
            return result
        except Exception as exc:
            return StudentFailure(user_id=Path(path).stem, path=Path(path), error=f"{type(exc).__name__}: {exc}")

    outcomes: Dict[int, Union[StudentResult, StudentFailure]] = {}
    if config.workers > 1:
        with ThreadPoolExecutor(max_workers=config.workers) as executor:
            futures = {executor.submit(_process, path): index for index, path in enumerate(event_files)}
            for future in as_completed(futures):
                index = futures[future]
                outcomes[index] = future.result()
                if on_progress is not None:
                    on_progress(event_files[index])
    else:
        for index, path in enumerate(event_files):
            outcomes[index] = _process(path)
            if on_progress is not None:
                on_progress(path)

    summary = BatchSummary()
    for index in range(len(event_files)):
        outcome = outcomes[index]
        if isinstance(outcome, StudentFailure):
            summary.failures.append(outcome)
        else:
            summary.results.append(outcome)
    summary.elapsed_seconds = time.perf_counter() - started
    return summary


def user_list_name(course_id: str, outcome: StudentOutcome) -> str:
    return f"{course_id.replace('+', '-')}-auth_user-students-{USER_LIST_SUFFIXES[outcome]}.csv"


def write_user_lists(summary: BatchSummary, userlists_dir: Path, course_id: str) -> Dict[StudentOutcome, Path]:
    """Write one sorted `user_id` list per outcome, empty lists included."""

    userlists_dir = Path(userlists_dir)
    userlists_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[StudentOutcome, Path] = {}
    for outcome in StudentOutcome:
        path = userlists_dir / user_list_name(course_id, outcome)
        pd.DataFrame({"user_id": summary.user_ids(outcome)}).to_csv(path, index=False)
        written[outcome] = path
    return written


def summary_table(summary: BatchSummary) -> Table:
    table = Table(title="Normalization Summary")
    table.add_column("Bucket")
    table.add_column("Students", justify="right")
    for bucket, count in summary.counts().items():
        table.add_row(bucket, f"{count:,}")
    table.add_section()
    table.add_row("unresolved events dropped", f"{summary.dropped_unresolved():,}")
    table.add_row("elapsed seconds", f"{summary.elapsed_seconds:.1f}")
    return table


def normalize_directory(
    events_dir: Path,
    resolver: ModuleResolver,
    output_dir: Path,
    userlists_dir: Path,
    config: NormalizerConfig,
) -> BatchSummary:
    """Run a full batch with a progress display, then write the user lists."""

    event_files = discover_event_files(events_dir)
    console.print(f"[dim]Found {len(event_files):,} student logs in {events_dir}[/dim]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
    ) as progress:
        task = progress.add_task("Normalizing students...", total=len(event_files))
        summary = run_batch(
            event_files,
            resolver,
            output_dir,
            config,
            on_progress=lambda _: progress.advance(task),
        )

    course_id = resolver.course_id or Path(events_dir).name
    write_user_lists(summary, userlists_dir, course_id)
    return summary


@app.command()
def normalize(
    events_dir: Path = typer.Option(..., "--events-dir", exists=True, file_okay=False, help="Directory of per-student event CSVs."),
    lookup: Path = typer.Option(..., "--lookup", exists=True, dir_okay=False, help="Module lookup CSV for the course."),
    output_dir: Path = typer.Option(Path("data/studentevents_processed"), "--output-dir", help="Directory for trajectory files."),
    userlists_dir: Path = typer.Option(Path("data/userlists"), "--userlists-dir", help="Directory for user list files."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML config with a `normalizer` section."),
    workers: Optional[int] = typer.Option(None, "--workers", help="Override the configured worker count."),
):
    """
    Normalize every student log in a directory.
    """

    try:
        config = load_normalizer_config(config_path)
        if workers is not None:
            config = replace(config, workers=workers)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    console.rule("[bold blue]edX Trajectory Normalization[/bold blue]")
    resolver = ModuleResolver.from_csv(lookup)
    console.print(f"[bold]Course:[/] {resolver.course_id}  [bold]Modules:[/] {len(resolver):,}")

    summary = normalize_directory(events_dir, resolver, output_dir, userlists_dir, config)

    console.print()
    console.print(summary_table(summary))
    for failure in summary.failures:
        console.print(f"[red]✗ {failure.path.name}: {failure.error}[/red]")
    console.print(f"[green]✓ Finished in {summary.elapsed_seconds:.1f}s; trajectories in {output_dir}[/green]")


@app.command()
def preview(
    events_file: Path = typer.Option(..., "--events-file", exists=True, dir_okay=False, help="One student's event CSV."),
    lookup: Path = typer.Option(..., "--lookup", exists=True, dir_okay=False, help="Module lookup CSV for the course."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML config with a `normalizer` section."),
    rows: int = typer.Option(15, "--rows", help="Number of trajectory rows to show."),
):
    """
    Normalize a single student log and print the result without writing files.
    """

    try:
        config = load_normalizer_config(config_path)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    resolver = ModuleResolver.from_csv(lookup)
    raw = load_raw_events(events_file)
    result = normalize_student_events(raw, resolver, config, user_id=events_file.stem)

    console.print(f"[bold]Student:[/] {result.user_id}")
    console.print(f"[bold]State:[/] {result.state.value} ({result.outcome.value})")
    console.print(f"[bold]Raw events:[/] {result.raw_rows:,}  [bold]Unresolved dropped:[/] {result.dropped_unresolved:,}")

    families = Table(title="Event Families")
    families.add_column("Family")
    families.add_column("Events", justify="right")
    for family, count in sorted(family_counts(raw).items()):
        families.add_row(family, f"{count:,}")
    console.print(families)

    shown = result.trajectory.head(rows)[PREVIEW_COLUMNS].astype(str)
    trajectory = Table(title="Trajectory")
    for column in PREVIEW_COLUMNS:
        trajectory.add_column(column)
    for values in shown.itertuples(index=False):
        trajectory.add_row(*values)
    console.print(trajectory)


def main():
    app()


if __name__ == "__main__":
    main()
