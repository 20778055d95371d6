# ABOUTME: Exposes the course structure builder and module resolver.
# ABOUTME: Shared by the course CLI and the event trajectory normalizer.

from .builder import (
    CourseStructure,
    CourseStructureError,
    build_course_structure,
    build_module_table,
    hex_id,
    write_course_outputs,
)
from .resolver import ModuleReference, ModuleResolver, ResolvedModule

__all__ = [
    "CourseStructure",
    "CourseStructureError",
    "ModuleReference",
    "ModuleResolver",
    "ResolvedModule",
    "build_course_structure",
    "build_module_table",
    "hex_id",
    "write_course_outputs",
]
