# ABOUTME: Makes the shared common package importable across the pipeline stages.
# ABOUTME: Re-exports schema types and run configuration for convenience.

from .config import NormalizerConfig, RetentionPolicy, load_normalizer_config
from .schemas import (
    MODULE_LOOKUP_COLUMNS,
    TRAJECTORY_COLUMNS,
    CourseMetadata,
    StudentOutcome,
    StudentResult,
    StudentState,
)

__all__ = [
    "MODULE_LOOKUP_COLUMNS",
    "TRAJECTORY_COLUMNS",
    "CourseMetadata",
    "NormalizerConfig",
    "RetentionPolicy",
    "StudentOutcome",
    "StudentResult",
    "StudentState",
    "load_normalizer_config",
]
