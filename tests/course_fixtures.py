# ABOUTME: Small edX course tree and event-row helpers shared by the test modules.
# ABOUTME: Two chapters holding four content modules, one of them a video with a 32-char id.

import json
from typing import Optional

import pandas as pd

from src.common.schemas import RAW_EVENT_COLUMNS
from src.course_tree.builder import build_module_table
from src.course_tree.resolver import ModuleResolver

COURSE = "MITx+6.00x+2017_T1"
VIDEO_HEX = "0123456789abcdef0123456789abcdef"

# Depth-first order of the tree below.
EXPECTED_ORDER = [
    "course", "chapterA", "seqA", "vertA", "leafA", VIDEO_HEX,
    "vertA2", "leafB", "chapterB", "seqB", "vertB", "leafC",
]


def course_key(kind: str, block: str) -> str:
    return f"block-v1:{COURSE}+type@{kind}+block@{block}"


def course_node(category: str, children=(), display_name=None) -> dict:
    return {
        "category": category,
        "children": list(children),
        "metadata": {"display_name": display_name or category},
    }


def course_tree() -> dict:
    root = course_node("course", [course_key("chapter", "chapterA"), course_key("chapter", "chapterB")], "Intro to CS")
    root["metadata"].update({"start": "2017-02-01T00:00:00Z", "end": "2017-05-01T00:00:00Z"})
    return {
        course_key("course", "course"): root,
        course_key("chapter", "chapterA"): course_node("chapter", [course_key("sequential", "seqA")]),
        course_key("sequential", "seqA"): course_node(
            "sequential", [course_key("vertical", "vertA"), course_key("vertical", "vertA2")]
        ),
        course_key("vertical", "vertA"): course_node(
            "vertical", [course_key("problem", "leafA"), course_key("video", VIDEO_HEX)]
        ),
        course_key("problem", "leafA"): course_node("problem"),
        course_key("video", VIDEO_HEX): course_node("video"),
        course_key("vertical", "vertA2"): course_node("vertical", [course_key("html", "leafB")]),
        course_key("html", "leafB"): course_node("html"),
        course_key("chapter", "chapterB"): course_node("chapter", [course_key("sequential", "seqB")]),
        course_key("sequential", "seqB"): course_node("sequential", [course_key("vertical", "vertB")]),
        course_key("vertical", "vertB"): course_node("vertical", [course_key("problem", "leafC")]),
        course_key("problem", "leafC"): course_node("problem"),
    }


def course_resolver() -> ModuleResolver:
    return ModuleResolver(build_module_table(course_tree()))


def order_of(hex_id: str) -> int:
    return EXPECTED_ORDER.index(hex_id) + 1


def event_row(
    time: str,
    event_type: str,
    payload: Optional[object] = None,
    usage_key: Optional[str] = None,
    source: str = "server",
    session: Optional[str] = None,
    user_id: Optional[str] = "42",
) -> dict:
    """One raw tracking-log row; dict payloads are serialized like the browser does."""

    row = dict.fromkeys(RAW_EVENT_COLUMNS)
    row.update(
        {
            "context.user_id": user_id,
            "context.course_id": f"course-v1:{COURSE}",
            "context.module.usage_key": usage_key,
            "time": time,
            "event_type": event_type,
            "event": json.dumps(payload) if isinstance(payload, dict) else payload,
            "event_source": source,
            "session": session,
        }
    )
    return row


def raw_events(*rows: dict) -> pd.DataFrame:
    return pd.DataFrame(list(rows), columns=RAW_EVENT_COLUMNS)
