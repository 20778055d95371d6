# ABOUTME: Resolves branch-level module references down to concrete content modules.
# ABOUTME: Uses the parent/child-index key of the module lookup table, one level per step.

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from src.common.schemas import BRANCH_LEVELS, CONTENT_LEVEL, MODULE_LOOKUP_COLUMNS, UNRESOLVED_LEVEL

DEFAULT_CHILD_INDEX = 1


@dataclass(frozen=True)
class ResolvedModule:
    """Lookup-table fields attached to an event once its module is known."""

    mod_hex_id: str
    module_type: str
    tree_level: int
    order: int
    parent: str


@dataclass(frozen=True)
class ModuleReference:
    """A module mentioned by an event, before resolution against the course tree."""

    module_type: Optional[str]
    hex_id: str
    child_ref: Optional[int] = None

    @property
    def is_branch(self) -> bool:
        return self.module_type in BRANCH_LEVELS


class ModuleResolver:
    """Read-only index over the module lookup table."""

    def __init__(self, modules: pd.DataFrame) -> None:
        missing = [column for column in ("mod_hex_id", "mod_type", "treelevel", "order", "parent", "modparent_childlevel") if column not in modules.columns]
        if missing:
            raise ValueError(f"Module lookup table is missing columns: {', '.join(missing)}.")

        self._by_hex: Dict[str, ResolvedModule] = {}
        self._by_parent_child: Dict[str, ResolvedModule] = {}
        for row in modules.itertuples(index=False):
            resolved = ResolvedModule(
                mod_hex_id=str(row.mod_hex_id),
                module_type=str(row.mod_type),
                tree_level=int(row.treelevel),
                order=int(row.order),
                parent=str(row.parent),
            )
            self._by_hex[resolved.mod_hex_id] = resolved
            self._by_parent_child[str(row.modparent_childlevel)] = resolved

        course_ids = modules["courseID"].dropna().unique() if "courseID" in modules.columns else []
        self._course_id = str(course_ids[0]) if len(course_ids) else None

    @classmethod
    def from_csv(cls, path: Path) -> "ModuleResolver":
        modules = pd.read_csv(
            path,
            dtype={
                "id": "string",
                "mod_hex_id": "string",
                "courseID": "string",
                "mod_type": "string",
                "parent": "string",
                "modparent_childlevel": "string",
            },
            usecols=lambda column: column in MODULE_LOOKUP_COLUMNS,
        )
        return cls(modules)

    @property
    def course_id(self) -> Optional[str]:
        return self._course_id

    def __len__(self) -> int:
        return len(self._by_hex)

    def lookup(self, hex_id: str) -> Optional[ResolvedModule]:
        return self._by_hex.get(hex_id)

    def child(self, parent_hex: str, child_index: int) -> Optional[ResolvedModule]:
        return self._by_parent_child.get(f"{parent_hex}/{child_index}")

    def descend_to_content(
        self,
        hex_id: str,
        child_ref: Optional[int] = None,
        start_level: Optional[int] = None,
    ) -> Optional[ResolvedModule]:
        """
        Walk from a chapter, sequential, or vertical module down to a content module.

        The first step follows the child reference carried by the event; every
        later step takes the first child. A missing child reference also means
        the first child, so navigation without a position lands on the leftmost
        descendant.
        """

        current = self.lookup(hex_id)
        level = current.tree_level if current is not None else start_level
        if level is None or level < 1:
            return None
        if level >= CONTENT_LEVEL:
            return current

        parent_hex = hex_id
        index = child_ref if child_ref is not None and child_ref > 0 else DEFAULT_CHILD_INDEX
        # Each step descends exactly one level, so the walk is bounded by the tree depth.
        for _ in range(CONTENT_LEVEL):
            current = self.child(parent_hex, index)
            if current is None or current.tree_level <= level:
                return None
            if current.tree_level >= CONTENT_LEVEL:
                return current
            parent_hex, level, index = current.mod_hex_id, current.tree_level, DEFAULT_CHILD_INDEX
        return None

    def resolve(self, reference: Optional[ModuleReference]) -> Optional[ResolvedModule]:
        """Resolve an event's module reference; branch modules are promoted to content."""
        if reference is None or not reference.hex_id:
            return None
        found = self.lookup(reference.hex_id)
        # Modules outside the 4-level hierarchy have no course position.
        if found is not None and found.tree_level == UNRESOLVED_LEVEL:
            return None
        level = found.tree_level if found is not None else BRANCH_LEVELS.get(reference.module_type or "")
        if level is not None and 1 <= level < CONTENT_LEVEL:
            return self.descend_to_content(reference.hex_id, child_ref=reference.child_ref, start_level=level)
        return found
