# ABOUTME: Builds the module lookup table from an edX course structure JSON export.
# ABOUTME: Assigns tree levels, ancestor links, and the canonical course traversal order.

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from src.common.schemas import CONTENT_LEVEL, MODULE_LOOKUP_COLUMNS, UNRESOLVED_LEVEL, CourseMetadata

console = Console()
app = typer.Typer(help="Build the module lookup table from an edX course structure export.")

ORDER_KEYS = ["chapter_order", "sequential_order", "vertical_order", "leaf_flag", "childOrder"]


class CourseStructureError(ValueError):
    """Raised when a course tree cannot be turned into a consistent module table."""


@dataclass(frozen=True)
class CourseStructure:
    """Course metadata plus the ordered module lookup table."""

    metadata: CourseMetadata
    modules: pd.DataFrame
    missing_children: List[str] = field(default_factory=list)

    @property
    def course_id(self) -> str:
        return self.metadata.id

    @property
    def unresolved(self) -> List[str]:
        """Hex ids of modules that could not be placed in the 4-level hierarchy."""
        mask = self.modules["treelevel"] == UNRESOLVED_LEVEL
        return self.modules.loc[mask, "mod_hex_id"].tolist()


def load_course_tree(path: Path) -> Dict[str, Dict[str, Any]]:
    tree = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(tree, dict) or not tree:
        raise CourseStructureError(f"{path} does not contain a course structure mapping.")
    return tree


def hex_id(block_id: str) -> str:
    """
    Extract the short module identifier from a full block id.

    `block-v1:Org+Course+Run+type@problem+block@<hex>` yields `<hex>`; legacy
    `i4x://Org/Course/problem/<hex>` locations yield the last path segment.
    """

    text = str(block_id)
    parts = text.split("@")
    if len(parts) >= 3:
        return parts[2]
    return text.rstrip("/").rsplit("/", 1)[-1]


def extract_course_id(block_id: str) -> str:
    """Return `Org+Course+Run` from a course-scoped block or course key."""

    locator = str(block_id).split(":", 1)[-1]
    if "+" in locator:
        return "+".join(locator.split("+")[:3])
    segments = [segment for segment in locator.split("/") if segment]
    if len(segments) >= 3:
        return "+".join([segments[0], segments[1], segments[-1]])
    return locator


def find_course_root(tree: Mapping[str, Mapping[str, Any]]) -> str:
    roots = [module_id for module_id, record in tree.items() if _is_course_root(module_id, record)]
    if not roots:
        raise CourseStructureError("Course structure has no course root node.")
    if len(roots) > 1:
        raise CourseStructureError(f"Course structure has {len(roots)} root nodes: {', '.join(sorted(roots))}.")
    return roots[0]


def extract_course_metadata(tree: Mapping[str, Mapping[str, Any]]) -> CourseMetadata:
    root_id = find_course_root(tree)
    record = tree[root_id]
    return CourseMetadata(
        id=_course_id_for_root(root_id, record),
        display_name=_field(record, "display_name"),
        category=record.get("category") or "course",
        start=_timestamp(_field(record, "start")),
        end=_timestamp(_field(record, "end")),
        enrollment_start=_timestamp(_field(record, "enrollment_start")),
        enrollment_end=_timestamp(_field(record, "enrollment_end")),
    )


def flatten_course_tree(tree: Mapping[str, Mapping[str, Any]]) -> pd.DataFrame:
    """One row per module with the fields shared by every module type."""

    rows = []
    for module_id, record in tree.items():
        rows.append(
            {
                "id": module_id,
                "category": record.get("category"),
                "display_name": _field(record, "display_name"),
                "markdown": _field(record, "markdown"),
            }
        )
    return pd.DataFrame(rows, columns=["id", "category", "display_name", "markdown"])


def parent_child_triples(tree: Mapping[str, Mapping[str, Any]]) -> pd.DataFrame:
    """
    Unpivot every node's ordered child references into (id, parent_id, childOrder) rows.

    Positions count every reference a parent lists, including references to
    blocks missing from the export, so child indexes match the authored order.
    """

    rows = [{"parent_id": parent_id, "id": _child_references(record)} for parent_id, record in tree.items()]
    triples = pd.DataFrame(rows, columns=["parent_id", "id"]).explode("id").dropna(subset=["id"])
    triples["childOrder"] = triples.groupby("parent_id", sort=False).cumcount() + 1

    duplicated = triples[triples["id"].duplicated(keep=False)]
    if not duplicated.empty:
        claimed = sorted(set(duplicated["id"]))
        raise CourseStructureError(f"Modules listed as a child more than once: {', '.join(claimed)}.")

    return triples[["id", "parent_id", "childOrder"]].reset_index(drop=True)


def missing_child_references(tree: Mapping[str, Mapping[str, Any]]) -> List[str]:
    """Child references that point at blocks absent from the export."""

    known = set(tree)
    missing = {child for record in tree.values() for child in _child_references(record) if child not in known}
    return sorted(missing)


def build_module_table(tree: Mapping[str, Mapping[str, Any]]) -> pd.DataFrame:
    """Flatten the course tree into the ordered module lookup table."""

    root_id = find_course_root(tree)
    course_id = _course_id_for_root(root_id, tree[root_id])

    triples = parent_child_triples(tree)
    if root_id in set(triples["id"]):
        raise CourseStructureError(f"Course root {root_id} is listed as the child of another module.")

    modules = flatten_course_tree(tree).merge(triples, on="id", how="left", validate="one_to_one")
    modules["mod_hex_id"] = modules["id"].map(hex_id)
    duplicated_hex = modules[modules["mod_hex_id"].duplicated(keep=False)]
    if not duplicated_hex.empty:
        raise CourseStructureError(
            f"Short module ids are not unique: {', '.join(sorted(set(duplicated_hex['mod_hex_id'])))}."
        )

    # Root and parentless modules point at themselves with child order 0.
    modules["parent"] = modules["parent_id"].map(hex_id, na_action="ignore")
    modules["parent"] = modules["parent"].fillna(modules["mod_hex_id"])
    modules["childOrder"] = modules["childOrder"].fillna(0).astype("int64")

    known = set(modules["id"])
    children_of: Dict[str, List[str]] = {}
    for child, parent in zip(triples["id"], triples["parent_id"]):
        if child in known:
            children_of.setdefault(parent, []).append(child)

    levels, ancestors = _propagate_levels(root_id, children_of)
    _check_for_cycles(modules["id"], levels, dict(zip(triples["id"], triples["parent_id"])))

    child_order = dict(zip(modules["id"], modules["childOrder"]))
    hex_of = dict(zip(modules["id"], modules["mod_hex_id"]))
    empty_chain = (None, None, None)

    modules["treelevel"] = [levels.get(module_id, UNRESOLVED_LEVEL) for module_id in modules["id"]]
    for slot, (parent_column, order_column) in enumerate(
        [("chpModPar", "chapter_order"), ("seqModPar", "sequential_order"), ("vrtModPar", "vertical_order")]
    ):
        chain = [ancestors.get(module_id, empty_chain)[slot] for module_id in modules["id"]]
        modules[parent_column] = [hex_of[a] if a is not None else None for a in chain]
        modules[order_column] = [child_order[a] if a is not None else 0 for a in chain]

    modules["leaf_flag"] = np.where(modules["treelevel"] == CONTENT_LEVEL, 1, 0)
    modules = modules.sort_values(ORDER_KEYS, kind="mergesort").reset_index(drop=True)
    modules["order"] = range(1, len(modules) + 1)
    modules["modparent_childlevel"] = modules["parent"] + "/" + modules["childOrder"].astype(str)
    modules["courseID"] = course_id
    modules = modules.rename(columns={"category": "mod_type", "display_name": "name"})
    return modules[MODULE_LOOKUP_COLUMNS]


def validate_module_table(modules: pd.DataFrame) -> None:
    """Check the structural invariants of a module lookup table."""

    roots = modules[modules["treelevel"] == 0]
    if len(roots) != 1:
        raise CourseStructureError(f"Expected exactly one level-0 module, found {len(roots)}.")

    expected = list(range(1, len(modules) + 1))
    if sorted(modules["order"].tolist()) != expected:
        raise CourseStructureError("Module order is not a contiguous permutation of 1..N.")

    level_of = dict(zip(modules["mod_hex_id"], modules["treelevel"]))
    placed = modules[modules["treelevel"] > 0]
    for module_hex, parent_hex, level in zip(placed["mod_hex_id"], placed["parent"], placed["treelevel"]):
        if level_of.get(parent_hex) != level - 1:
            raise CourseStructureError(f"Module {module_hex} at level {level} has a parent at level {level_of.get(parent_hex)}.")


def build_course_structure(course_json: Path) -> CourseStructure:
    tree = load_course_tree(course_json)
    metadata = extract_course_metadata(tree)
    modules = build_module_table(tree)
    validate_module_table(modules)
    return CourseStructure(metadata=metadata, modules=modules, missing_children=missing_child_references(tree))


def write_course_outputs(structure: CourseStructure, output_dir: Path) -> Tuple[Path, Path]:
    """Write `{courseID}-meta.csv` and `{courseID}-module-lookup.csv`."""

    output_dir.mkdir(parents=True, exist_ok=True)
    meta_path = output_dir / f"{structure.course_id}-meta.csv"
    lookup_path = output_dir / f"{structure.course_id}-module-lookup.csv"
    structure.metadata.to_frame().to_csv(meta_path, index=False)
    structure.modules.to_csv(lookup_path, index=False)
    return meta_path, lookup_path


def find_module_lookup(course_dir: Path) -> Path:
    matches = sorted(course_dir.glob("*-module-lookup.csv"))
    if not matches:
        raise FileNotFoundError(f"No *-module-lookup.csv file found in {course_dir}.")
    return matches[0]


@app.command()
def build(
    course_json: Path = typer.Option(..., "--course-json", exists=True, dir_okay=False, help="Course structure JSON export."),
    output_dir: Path = typer.Option(Path("data/course"), "--output-dir", help="Directory for metadata and lookup CSVs."),
) -> None:
    """Build course metadata and the module lookup table."""
    console.rule("[bold blue]Course Structure[/bold blue]")
    try:
        structure = build_course_structure(course_json)
    except CourseStructureError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1) from exc

    meta_path, lookup_path = write_course_outputs(structure, output_dir)
    console.print(f"[green]✓[/green] Course {structure.course_id}: {len(structure.modules):,} modules")
    console.print(f"  Metadata → {meta_path}")
    console.print(f"  Lookup   → {lookup_path}")
    if structure.unresolved:
        console.print(
            f"[yellow]Warning:[/] {len(structure.unresolved)} modules sit outside the 4-level hierarchy "
            f"(treelevel={UNRESOLVED_LEVEL}): {', '.join(structure.unresolved[:5])}"
        )
    if structure.missing_children:
        console.print(
            f"[yellow]Warning:[/] {len(structure.missing_children)} child references point at blocks missing "
            f"from the export: {', '.join(structure.missing_children[:5])}"
        )


@app.command()
def describe(
    lookup: Path = typer.Option(..., "--lookup", exists=True, dir_okay=False, help="Module lookup CSV."),
) -> None:
    """Print module counts per tree level and module type."""
    modules = pd.read_csv(lookup, dtype={"mod_hex_id": "string", "mod_type": "string"})
    counts = modules.groupby(["treelevel", "mod_type"]).size().reset_index(name="modules")

    table = Table(title=f"Modules in {lookup.name}", show_header=True, header_style="bold magenta")
    table.add_column("Level", justify="right")
    table.add_column("Type")
    table.add_column("Modules", justify="right")
    for _, row in counts.iterrows():
        table.add_row(str(row["treelevel"]), str(row["mod_type"]), f"{row['modules']:,}")
    console.print(table)


def _is_course_root(module_id: str, record: Mapping[str, Any]) -> bool:
    # Match the whole block type so course_info and similar categories are not taken for roots.
    key = str(module_id)
    return record.get("category") == "course" or "+type@course+" in key or "/course/" in key


def _course_id_for_root(root_id: str, record: Mapping[str, Any]) -> str:
    course_id = extract_course_id(root_id)
    if "+" in course_id:
        return course_id
    children = _child_references(record)
    return extract_course_id(children[0]) if children else course_id


def _field(record: Mapping[str, Any], name: str) -> Optional[Any]:
    if name in record:
        return record[name]
    metadata = record.get("metadata") or {}
    return metadata.get(name)


def _timestamp(value: Optional[Any]) -> Optional[pd.Timestamp]:
    if value in (None, ""):
        return None
    parsed = pd.to_datetime(value, utc=True, errors="coerce")
    return None if pd.isna(parsed) else parsed


def _children_field_rank(name: str) -> Tuple[int, str]:
    suffix = name[len("children"):]
    if suffix == "":
        return (0, name)
    if suffix.isdigit():
        return (int(suffix), name)
    return (1 << 30, name)


def _child_references(record: Mapping[str, Any]) -> List[str]:
    references: List[str] = []
    for key in sorted((k for k in record if k.startswith("children")), key=_children_field_rank):
        value = record[key]
        if value is None:
            continue
        if isinstance(value, str):
            references.append(value)
        else:
            references.extend(str(item) for item in value if item is not None)
    return references


def _propagate_levels(
    root_id: str, children_of: Mapping[str, List[str]]
) -> Tuple[Dict[str, int], Dict[str, Tuple[Optional[str], ...]]]:
    """
    Breadth-first walk from the root assigning levels 0..4.

    Each node also receives its ancestor-or-self chain at levels 1-3
    (chapter, sequential, vertical). Nodes below level 4 are left unplaced.
    """

    levels: Dict[str, int] = {root_id: 0}
    ancestors: Dict[str, Tuple[Optional[str], ...]] = {root_id: (None, None, None)}
    queue = deque([root_id])
    while queue:
        current = queue.popleft()
        child_level = levels[current] + 1
        if child_level > CONTENT_LEVEL:
            continue
        for child in children_of.get(current, []):
            chain = list(ancestors[current])
            if child_level < CONTENT_LEVEL:
                chain[child_level - 1] = child
            levels[child] = child_level
            ancestors[child] = tuple(chain)
            queue.append(child)
    return levels, ancestors


def _check_for_cycles(module_ids: pd.Series, levels: Mapping[str, int], parent_of: Mapping[str, str]) -> None:
    for module_id in module_ids:
        if module_id in levels:
            continue
        seen = set()
        node = module_id
        while node in parent_of:
            if node in seen:
                raise CourseStructureError(f"Cyclic parent chain through module {hex_id(node)}.")
            seen.add(node)
            node = parent_of[node]


if __name__ == "__main__":
    app()
