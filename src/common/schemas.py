# ABOUTME: Defines canonical data structures shared by the course and trajectory packages.
# ABOUTME: Centralizes module lookup columns, trajectory columns, and student outcome buckets.

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import pandas as pd

MODULE_LOOKUP_COLUMNS = [
    "id",
    "mod_hex_id",
    "courseID",
    "mod_type",
    "name",
    "markdown",
    "order",
    "childOrder",
    "treelevel",
    "chpModPar",
    "seqModPar",
    "vrtModPar",
    "parent",
    "modparent_childlevel",
]

COURSE_METADATA_COLUMNS = [
    "id",
    "display_name",
    "category",
    "start",
    "end",
    "enrollment_start",
    "enrollment_end",
]

# Raw tracking-log columns read by name; absent ones are filled with nulls.
RAW_EVENT_COLUMNS = [
    "username",
    "context.user_id",
    "context.course_id",
    "context.path",
    "context.module.usage_key",
    "module_id",
    "time",
    "event_type",
    "event",
    "event_source",
    "session",
    "event.attempts",
    "event.grade",
    "event.max_grade",
    "event.success",
]

TRAJECTORY_COLUMNS = [
    "user_id",
    "mod_hex_id",
    "order",
    "mod_parent_id",
    "module_type",
    "event_type",
    "time",
    "period",
    "session",
    "tsess",
    "event.attempts",
    "event.grade",
    "event.max_grade",
    "event.success",
]

CONTENT_LEVEL = 4
UNRESOLVED_LEVEL = -1
BRANCH_TYPES = ("chapter", "sequential", "vertical")
BRANCH_LEVELS = {"chapter": 1, "sequential": 2, "vertical": 3}


class StudentOutcome(str, Enum):
    """Output bucket a student's log is routed to."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    UNUSABLE = "unusable"


class StudentState(str, Enum):
    """Terminal processing states of a single student log."""

    EMPTY = "empty"
    TOO_FEW = "too_few"
    ALL_FILTERED = "all_filtered"
    NO_ORDER = "no_order"
    FINAL = "final"

    @property
    def outcome(self) -> StudentOutcome:
        if self is StudentState.EMPTY:
            return StudentOutcome.INACTIVE
        if self is StudentState.FINAL:
            return StudentOutcome.ACTIVE
        return StudentOutcome.UNUSABLE


@dataclass(frozen=True)
class CourseMetadata:
    """Administrative fields of the course root node."""

    id: str
    display_name: Optional[str]
    category: str
    start: Optional[pd.Timestamp] = None
    end: Optional[pd.Timestamp] = None
    enrollment_start: Optional[pd.Timestamp] = None
    enrollment_end: Optional[pd.Timestamp] = None

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{column: getattr(self, column) for column in COURSE_METADATA_COLUMNS}])


@dataclass(frozen=True)
class StudentResult:
    """Normalized trajectory for one student plus the bucket it belongs to."""

    user_id: str
    state: StudentState
    trajectory: pd.DataFrame
    raw_rows: int = 0
    dropped_unresolved: int = 0

    @property
    def outcome(self) -> StudentOutcome:
        return self.state.outcome


def empty_trajectory(user_id: Optional[str] = None, rows: int = 1) -> pd.DataFrame:
    """Placeholder trajectory with the canonical columns and NA values."""

    frame = pd.DataFrame({column: [pd.NA] * rows for column in TRAJECTORY_COLUMNS})
    if user_id is not None:
        frame["user_id"] = user_id
    return frame
