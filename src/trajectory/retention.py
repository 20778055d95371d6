# ABOUTME: Decides which raw events survive into a trajectory and labels why the rest are dropped.
# ABOUTME: Optional categories follow RetentionPolicy switches; administrative noise always drops.

from typing import List, Tuple

import pandas as pd

from src.common.config import RetentionPolicy

NON_CONTENT = "non_content"
ENROLLMENT = "enrollment"
PAGE_CLOSE = "page_close"
ASSESSMENT_UPLOAD = "assessment_upload"
GRADING_CALLBACK = "grading_callback"
SERVER_NAVIGATION = "server_navigation"
DRAG_AND_DROP = "drag_and_drop"
PROBLEM_SERVER = "problem_server"
VIDEO_LOW_SIGNAL = "video_low_signal"
TRANSCRIPT = "transcript"


def _column(events: pd.DataFrame, name: str) -> pd.Series:
    if name not in events.columns:
        return pd.Series("", index=events.index, dtype="object")
    return events[name].fillna("").astype(str)


def _has(series: pd.Series, *needles: str) -> pd.Series:
    mask = pd.Series(False, index=series.index)
    for needle in needles:
        mask |= series.str.contains(needle, regex=False)
    return mask


def _rules(events: pd.DataFrame, policy: RetentionPolicy) -> List[Tuple[str, bool, pd.Series]]:
    event_type = _column(events, "event_type")
    payload = _column(events, "event")
    source = _column(events, "event_source")

    non_content = (
        payload.str.contains("{}", regex=False) & event_type.str.contains("info|progress|wiki", regex=True)
    ) | _has(payload, "/progress", "/settings")

    return [
        (NON_CONTENT, not policy.keep_non_content, non_content),
        (ENROLLMENT, True, _has(event_type, "edx.course.enrollment")),
        (PAGE_CLOSE, True, _has(event_type, "page_close")),
        (ASSESSMENT_UPLOAD, True, _has(event_type, "openassessment.upload")),
        (
            GRADING_CALLBACK,
            True,
            _has(event_type, "edx.grades.problem.submitted", "edx.grades.subsection.grade_calculated"),
        ),
        (SERVER_NAVIGATION, True, _has(event_type, "xmodule_handler", "jump_to")),
        (
            DRAG_AND_DROP,
            not policy.keep_drag_and_drop,
            _has(event_type, "type@drag-and-drop-v2", "edx.drag_and_drop_v2.feedback.opened"),
        ),
        (
            PROBLEM_SERVER,
            not policy.keep_problem_server,
            _has(event_type, "save_problem_success", "showanswer")
            | (_has(event_type, "problem_check") & (source == "browser")),
        ),
        (
            VIDEO_LOW_SIGNAL,
            not policy.keep_video_low_signal,
            _has(event_type, "load_video", "speed_change_video", "cc_menu"),
        ),
        (
            TRANSCRIPT,
            not policy.keep_transcript,
            event_type.str.contains(r"\w_transcript", regex=True) | _has(event_type, "publish_completion"),
        ),
    ]


def drop_reasons(events: pd.DataFrame, policy: RetentionPolicy) -> pd.Series:
    """
    Label every event with the first rule that drops it.

    Returns an object Series aligned to `events`; retained events hold NA.
    """

    reasons = pd.Series(pd.NA, index=events.index, dtype="object")
    for reason, active, mask in _rules(events, policy):
        if not active:
            continue
        reasons.loc[reasons.isna() & mask] = reason
    return reasons


def retention_mask(events: pd.DataFrame, policy: RetentionPolicy) -> pd.Series:
    return drop_reasons(events, policy).isna()
