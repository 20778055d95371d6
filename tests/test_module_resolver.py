# ABOUTME: Tests resolution of module references against the module lookup table.
# ABOUTME: Checks parent/child keys, branch promotion to content, and misses.

import json
import tempfile
from pathlib import Path

import pandas as pd
import pytest

from src.course_tree.builder import build_course_structure, build_module_table, write_course_outputs
from src.course_tree.resolver import ModuleReference, ModuleResolver
from tests.course_fixtures import (
    COURSE,
    VIDEO_HEX,
    course_key,
    course_node,
    course_resolver,
    course_tree,
    order_of,
)


def test_every_parent_child_key_resolves():
    modules = build_module_table(course_tree())
    resolver = ModuleResolver(modules)

    for row in modules.itertuples(index=False):
        resolved = resolver.child(row.parent, row.childOrder)
        assert resolved is not None
        assert resolved.mod_hex_id == row.mod_hex_id


def test_sequential_without_child_reference_lands_on_first_leaf():
    resolver = course_resolver()

    resolved = resolver.resolve(ModuleReference("sequential", "seqA"))

    assert resolved.mod_hex_id == "leafA"
    assert resolved.order == order_of("leafA")
    assert resolved.tree_level == 4


def test_child_reference_applies_to_first_step_only():
    resolver = course_resolver()

    resolved = resolver.resolve(ModuleReference("sequential", "seqA", child_ref=2))

    assert resolved.mod_hex_id == "leafB"
    assert resolved.parent == "vertA2"


def test_chapter_and_vertical_references_descend():
    resolver = course_resolver()

    assert resolver.resolve(ModuleReference("chapter", "chapterB")).mod_hex_id == "leafC"
    assert resolver.resolve(ModuleReference("vertical", "vertA", child_ref=2)).mod_hex_id == VIDEO_HEX


def test_content_reference_is_looked_up_directly():
    resolver = course_resolver()

    resolved = resolver.resolve(ModuleReference("problem", "leafC"))

    assert resolved.order == order_of("leafC")
    assert resolved.module_type == "problem"


@pytest.mark.parametrize(
    "reference",
    [
        ModuleReference("problem", "ghost"),
        ModuleReference("sequential", "ghost"),
        ModuleReference("sequential", "seqA", child_ref=7),
        None,
    ],
)
def test_misses_resolve_to_none(reference):
    assert course_resolver().resolve(reference) is None


def test_modules_below_content_level_do_not_resolve():
    tree = course_tree()
    tree[course_key("vertical", "vertB")]["children"].append(course_key("library_content", "lib"))
    tree[course_key("library_content", "lib")] = course_node("library_content", [course_key("problem", "deep")])
    tree[course_key("problem", "deep")] = course_node("problem")
    resolver = ModuleResolver(build_module_table(tree))

    assert resolver.lookup("deep").tree_level == -1
    assert resolver.resolve(ModuleReference("problem", "deep")) is None
    assert resolver.resolve(ModuleReference("library_content", "lib")).mod_hex_id == "lib"


def test_resolver_round_trips_through_csv():
    with tempfile.TemporaryDirectory() as tmpdir:
        course_json = Path(tmpdir) / "course.json"
        course_json.write_text(json.dumps(course_tree()), encoding="utf-8")
        structure = build_course_structure(course_json)
        _, lookup_path = write_course_outputs(structure, Path(tmpdir) / "course")

        resolver = ModuleResolver.from_csv(lookup_path)

    assert resolver.course_id == COURSE
    assert len(resolver) == len(course_tree())
    assert resolver.resolve(ModuleReference("sequential", "seqB")).order == order_of("leafC")


def test_missing_columns_are_rejected():
    with pytest.raises(ValueError, match="missing columns"):
        ModuleResolver(pd.DataFrame({"mod_hex_id": ["a"]}))
