# ABOUTME: Tests per-student normalization of raw event logs into course trajectories.
# ABOUTME: Covers output buckets, branch promotion, period recomputation, and idempotence.

import tempfile
import unittest
from pathlib import Path

import pandas as pd

from src.common.config import NormalizerConfig
from src.common.schemas import RAW_EVENT_COLUMNS, TRAJECTORY_COLUMNS, StudentOutcome, StudentState
from src.course_tree.builder import build_module_table
from src.course_tree.resolver import ModuleResolver
from src.trajectory.normalizer import load_raw_events, normalize_student_events
from tests.course_fixtures import (
    COURSE,
    VIDEO_HEX,
    course_key,
    course_node,
    course_resolver,
    course_tree,
    event_row,
    order_of,
    raw_events,
)

COURSEWARE_URL = f"/courses/course-v1:{COURSE}/courseware/chapterA/seqA/"


def _full_log() -> pd.DataFrame:
    return raw_events(
        event_row("2017-03-01T10:00:00+00:00", COURSEWARE_URL, '{"POST": {}, "GET": {}}', source="server", session="s1"),
        event_row("2017-03-01T10:05:00+00:00", "problem_check", "{}", usage_key=course_key("problem", "leafA")),
        event_row("2017-03-01T10:07:00+00:00", "load_video", {"id": f"i4x-MITx-6_00x-video-{VIDEO_HEX}"}, source="browser"),
        event_row(
            "2017-03-01T10:10:00+00:00",
            "play_video",
            {"id": f"i4x-MITx-6_00x-video-{VIDEO_HEX}", "currentTime": 0},
            source="browser",
            session="s1",
        ),
        event_row(
            "2017-03-01T11:40:00+00:00",
            "seq_goto",
            {"id": course_key("sequential", "seqA"), "old": 1, "new": 2},
            source="browser",
        ),
        event_row(
            "2017-03-01T11:50:00+00:00",
            "problem_check",
            "{}",
            usage_key=course_key("problem", "ghost"),
            session="s2",
        ),
    )


def test_full_log_becomes_ordered_trajectory():
    result = normalize_student_events(_full_log(), course_resolver())
    trajectory = result.trajectory

    assert result.state is StudentState.FINAL
    assert result.outcome is StudentOutcome.ACTIVE
    assert result.user_id == "42"
    assert result.raw_rows == 6
    assert result.dropped_unresolved == 1
    assert list(trajectory.columns) == TRAJECTORY_COLUMNS
    assert trajectory["order"].tolist() == [order_of("leafA"), order_of("leafA"), order_of(VIDEO_HEX), order_of("leafB")]
    assert trajectory["mod_hex_id"].tolist() == ["leafA", "leafA", VIDEO_HEX, "leafB"]
    assert trajectory["event_type"].tolist() == ["mod_access", "problem_check", "play_video", "seq_goto"]
    assert trajectory["module_type"].tolist() == ["problem", "problem", "video", "html"]
    assert trajectory["mod_parent_id"].tolist() == ["vertA", "vertA", "vertA", "vertA2"]
    # The 90-minute gap is capped, then re-estimated from the median of the uncapped periods.
    assert trajectory["period"].tolist() == [5.0, 5.0, 5.0, 10.0]
    # Temporal sessions come from the full log, including dropped events.
    assert trajectory["tsess"].tolist() == [1, 1, 1, 2]
    assert trajectory["session"].tolist() == ["s1", "s1", "s1", "s2"]
    assert set(trajectory["user_id"]) == {"42"}


def test_without_reestimation_capped_period_is_kept():
    config = NormalizerConfig(reestimate_outliers=False)
    result = normalize_student_events(_full_log(), course_resolver(), config)
    assert result.trajectory["period"].tolist() == [5.0, 5.0, 60.0, 10.0]


def test_sequential_event_without_position_resolves_to_first_leaf():
    raw = raw_events(
        event_row("2017-03-01T10:00:00+00:00", "seq_goto", {"id": course_key("sequential", "seqA")}, source="browser"),
    )

    result = normalize_student_events(raw, course_resolver())

    assert result.state is StudentState.FINAL
    assert result.trajectory["order"].tolist() == [order_of("leafA")]
    assert result.trajectory["period"].tolist() == [0.0]


def test_zero_rows_is_inactive_with_full_schema():
    result = normalize_student_events(raw_events(), course_resolver(), user_id="77")

    assert result.state is StudentState.EMPTY
    assert result.outcome is StudentOutcome.INACTIVE
    assert result.user_id == "77"
    assert list(result.trajectory.columns) == TRAJECTORY_COLUMNS
    assert len(result.trajectory) == 1
    assert result.trajectory.loc[0, "user_id"] == "77"
    assert result.trajectory.drop(columns="user_id").isna().all(axis=None)


def test_only_unknown_module_is_unusable():
    raw = raw_events(
        event_row("2017-03-01T10:00:00+00:00", "problem_check", "{}", usage_key=course_key("problem", "ghost")),
    )

    result = normalize_student_events(raw, course_resolver())

    assert result.state is StudentState.NO_ORDER
    assert result.outcome is StudentOutcome.UNUSABLE
    assert result.dropped_unresolved == 1
    assert list(result.trajectory.columns) == TRAJECTORY_COLUMNS
    assert result.trajectory["order"].isna().all()


def test_events_below_content_level_are_dropped():
    tree = course_tree()
    tree[course_key("vertical", "vertB")]["children"].append(course_key("library_content", "lib"))
    tree[course_key("library_content", "lib")] = course_node("library_content", [course_key("problem", "deep")])
    tree[course_key("problem", "deep")] = course_node("problem")
    raw = raw_events(
        event_row("2017-03-01T10:00:00+00:00", "problem_check", "{}", usage_key=course_key("problem", "deep")),
        event_row("2017-03-01T10:03:00+00:00", "problem_check", "{}", usage_key=course_key("problem", "leafC")),
    )

    result = normalize_student_events(raw, ModuleResolver(build_module_table(tree)))

    assert result.state is StudentState.FINAL
    assert result.dropped_unresolved == 1
    assert result.trajectory["mod_hex_id"].tolist() == ["leafC"]


def test_untyped_event_is_recorded_as_mod_access():
    raw = raw_events(
        event_row("2017-03-01T10:00:00+00:00", None, "{}", usage_key=course_key("problem", "leafC")),
    )

    result = normalize_student_events(raw, course_resolver())

    assert result.state is StudentState.FINAL
    assert result.trajectory["event_type"].tolist() == ["mod_access"]
    assert result.trajectory["order"].tolist() == [order_of("leafC")]


def test_only_filtered_events_is_unusable():
    raw = raw_events(
        event_row("2017-03-01T10:00:00+00:00", "edx.course.enrollment.activated", "{}"),
        event_row("2017-03-01T10:01:00+00:00", "load_video", "{}", source="browser"),
    )

    result = normalize_student_events(raw, course_resolver())

    assert result.state is StudentState.ALL_FILTERED
    assert result.outcome is StudentOutcome.UNUSABLE
    assert len(result.trajectory) == 2


def test_min_events_routes_short_logs_to_unusable():
    config = NormalizerConfig(min_events=10)
    result = normalize_student_events(_full_log(), course_resolver(), config)

    assert result.state is StudentState.TOO_FEW
    assert result.outcome is StudentOutcome.UNUSABLE
    assert list(result.trajectory.columns) == TRAJECTORY_COLUMNS


def test_unparseable_times_are_dropped():
    raw = raw_events(
        event_row("not a time", "problem_check", "{}", usage_key=course_key("problem", "leafC")),
        event_row("2017-03-01T10:00:00+00:00", "problem_check", "{}", usage_key=course_key("problem", "leafC")),
    )

    result = normalize_student_events(raw, course_resolver())

    assert result.raw_rows == 2
    assert len(result.trajectory) == 1


def test_fallback_user_id_when_log_has_none():
    raw = raw_events(
        event_row("2017-03-01T10:00:00+00:00", "problem_check", "{}", usage_key=course_key("problem", "leafC"), user_id=None),
    )
    result = normalize_student_events(raw, course_resolver(), user_id="file-stem")
    assert result.user_id == "file-stem"


def test_normalization_is_idempotent():
    resolver = course_resolver()
    first = normalize_student_events(_full_log(), resolver).trajectory.to_csv(index=False)
    second = normalize_student_events(_full_log(), resolver).trajectory.to_csv(index=False)
    assert first == second


class LoadRawEventsTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_missing_columns_are_filled_with_nulls(self) -> None:
        path = self.root / "42.csv"
        path.write_text(
            'time,event_type,event\n2017-03-01T10:00:00+00:00,seq_goto,"{""id"": ""x"", ""new"": 2}"\n',
            encoding="utf-8",
        )

        events = load_raw_events(path)

        self.assertEqual(list(events.columns), RAW_EVENT_COLUMNS)
        self.assertEqual(events.loc[0, "event_type"], "seq_goto")
        self.assertEqual(events.loc[0, "event"], '{"id": "x", "new": 2}')
        self.assertTrue(pd.isna(events.loc[0, "session"]))

    def test_empty_file_loads_as_zero_rows(self) -> None:
        path = self.root / "43.csv"
        path.write_text("", encoding="utf-8")

        events = load_raw_events(path)

        self.assertEqual(len(events), 0)
        self.assertEqual(list(events.columns), RAW_EVENT_COLUMNS)

    def test_written_trajectory_reloads_identically(self) -> None:
        resolver = course_resolver()
        path = self.root / "42.csv"
        _full_log().to_csv(path, index=False)

        first = normalize_student_events(load_raw_events(path), resolver).trajectory.to_csv(index=False)
        second = normalize_student_events(load_raw_events(path), resolver).trajectory.to_csv(index=False)

        self.assertEqual(first, second)


if __name__ == "__main__":
    unittest.main()
