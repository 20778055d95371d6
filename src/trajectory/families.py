# ABOUTME: Classifies raw tracking-log events into families and extracts their module references.
# ABOUTME: Each family has its own extractor; URL-typed events collapse to a generic module access.

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import pandas as pd

from src.course_tree.resolver import ModuleReference

MOD_ACCESS = "mod_access"

BLOCK_KEY = re.compile(r"type@(?P<type>[^+@/\s\"\\]+)\+block@(?P<hex>[^+@/\s\"\\?#]+)")
HEX_TOKEN = re.compile(r"[0-9A-Za-z]{32}")
VIDEO_EVENT = re.compile(r"\w_video|cc_menu")
TRANSCRIPT_EVENT = re.compile(r"\w_transcript")


class EventFamily(str, Enum):
    PROBLEM_SHOW = "problem_show"
    VIDEO = "video"
    TRANSCRIPT = "transcript"
    SEQ_GOTO = "seq_goto"
    SEQ_PREV_NEXT = "seq_prev_next"
    COURSEWARE = "courseware"
    PAGE = "page"
    DIRECT = "direct"


@dataclass(frozen=True)
class EventFields:
    """The raw fields an extractor may inspect."""

    event_type: str
    payload: str = ""
    usage_key: Optional[str] = None
    module_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EventFields":
        return cls(
            event_type=_text(row.get("event_type")),
            payload=_text(row.get("event")),
            usage_key=_text(row.get("context.module.usage_key")) or None,
            module_id=_text(row.get("module_id")) or None,
        )


def is_url_event_type(event_type: Optional[str]) -> bool:
    text = _text(event_type)
    return text.startswith("/") or "course-v1" in text or "://" in text


def normalize_event_type(event_type: Optional[str]) -> Optional[str]:
    """Untyped events and page visits logged with their URL as the event type become `mod_access`."""
    if not _text(event_type).strip() or is_url_event_type(event_type):
        return MOD_ACCESS
    return event_type


def classify_event(event_type: Optional[str]) -> EventFamily:
    text = _text(event_type)
    if "problem_show" in text:
        return EventFamily.PROBLEM_SHOW
    if "seq_goto" in text:
        return EventFamily.SEQ_GOTO
    if "seq_next" in text or "seq_prev" in text:
        return EventFamily.SEQ_PREV_NEXT
    if "/courseware" in text:
        return EventFamily.COURSEWARE
    if is_url_event_type(text):
        return EventFamily.PAGE
    if TRANSCRIPT_EVENT.search(text):
        return EventFamily.TRANSCRIPT
    if VIDEO_EVENT.search(text):
        return EventFamily.VIDEO
    return EventFamily.DIRECT


def parse_payload(payload: Any) -> Dict[str, Any]:
    """Decode an event payload; browser events are often JSON encoded twice."""

    if isinstance(payload, Mapping):
        return dict(payload)
    value: Any = _text(payload)
    for _ in range(2):
        if not value:
            return {}
        try:
            value = json.loads(value)
        except (TypeError, ValueError):
            return {}
        if isinstance(value, dict):
            return value
        if not isinstance(value, str):
            return {}
    return {}


def parse_module_key(key: Optional[str]) -> Optional[ModuleReference]:
    """
    Parse a module location into (type, short id).

    Accepts `block-v1:...+type@<type>+block@<id>` usage keys, legacy
    `i4x://Org/Course/<type>/<id>` locations, and `Org/Course/<type>/<id>` module ids.
    """

    text = _text(key).strip()
    if not text:
        return None
    match = BLOCK_KEY.search(text)
    if match:
        return ModuleReference(module_type=match.group("type"), hex_id=match.group("hex"))
    segments = [segment for segment in text.split("://", 1)[-1].split("/") if segment]
    if len(segments) >= 4:
        return ModuleReference(module_type=segments[2], hex_id=segments[3][:32])
    return None


def parse_child_ref(value: Any) -> Optional[int]:
    digits = re.sub(r"[^0-9A-Za-z]", "", _text(value))
    if not digits.isdigit():
        return None
    return int(digits)


def extract_module_reference(fields: EventFields) -> Tuple[EventFamily, Optional[ModuleReference]]:
    family = classify_event(fields.event_type)
    return family, EXTRACTORS[family](fields)


def _extract_direct(fields: EventFields) -> Optional[ModuleReference]:
    return parse_module_key(fields.usage_key) or parse_module_key(fields.module_id)


def _extract_problem_show(fields: EventFields) -> Optional[ModuleReference]:
    problem = _payload_value(fields.payload, "problem")
    return parse_module_key(problem) or _extract_direct(fields)


def _extract_video(fields: EventFields) -> Optional[ModuleReference]:
    video_id = _payload_value(fields.payload, "id")
    reference = parse_module_key(video_id)
    if reference is not None:
        return reference
    token = HEX_TOKEN.search(_text(video_id) or fields.payload)
    if token:
        return ModuleReference(module_type="video", hex_id=token.group(0))
    return _extract_direct(fields)


def _extract_seq_goto(fields: EventFields) -> Optional[ModuleReference]:
    reference = parse_module_key(_payload_value(fields.payload, "id")) or _extract_direct(fields)
    if reference is None:
        return None
    child = parse_child_ref(_payload_value(fields.payload, "new"))
    if child is None:
        child = parse_child_ref(_payload_value(fields.payload, "target_tab"))
    return ModuleReference(reference.module_type, reference.hex_id, child)


def _extract_seq_prev_next(fields: EventFields) -> Optional[ModuleReference]:
    reference = parse_module_key(_payload_value(fields.payload, "id")) or _extract_direct(fields)
    if reference is None:
        return None
    child = parse_child_ref(_payload_value(fields.payload, "new"))
    if child is None:
        old = parse_child_ref(_payload_value(fields.payload, "old"))
        if old is not None:
            child = old + 1 if "seq_next" in fields.event_type else old - 1
    if child is not None and child < 1:
        child = None
    return ModuleReference(reference.module_type, reference.hex_id, child)


def _extract_courseware(fields: EventFields) -> Optional[ModuleReference]:
    # /courses/<course key>/courseware/<chapter>/<sequential>/...
    segments = fields.event_type.split("/")
    position = segments.index("courseware") if "courseware" in segments else -1
    after = [segment for segment in segments[position + 1 :] if segment] if position >= 0 else []
    if len(after) >= 2:
        return ModuleReference(module_type="sequential", hex_id=after[1], child_ref=1)
    if len(after) == 1:
        return ModuleReference(module_type="chapter", hex_id=after[0], child_ref=1)
    return _extract_direct(fields)


def _extract_page(fields: EventFields) -> Optional[ModuleReference]:
    match = BLOCK_KEY.search(fields.event_type)
    if match:
        return ModuleReference(module_type=match.group("type"), hex_id=match.group("hex"))
    return _extract_direct(fields)


EXTRACTORS: Dict[EventFamily, Callable[[EventFields], Optional[ModuleReference]]] = {
    EventFamily.PROBLEM_SHOW: _extract_problem_show,
    EventFamily.VIDEO: _extract_video,
    EventFamily.TRANSCRIPT: _extract_video,
    EventFamily.SEQ_GOTO: _extract_seq_goto,
    EventFamily.SEQ_PREV_NEXT: _extract_seq_prev_next,
    EventFamily.COURSEWARE: _extract_courseware,
    EventFamily.PAGE: _extract_page,
    EventFamily.DIRECT: _extract_direct,
}


def _payload_value(payload: str, name: str) -> Optional[str]:
    parsed = parse_payload(payload)
    if name in parsed:
        value = parsed[name]
        return None if value is None else str(value)
    # Fallback for truncated or otherwise non-JSON payload text.
    match = re.search(r'\\?"' + re.escape(name) + r'\\?"\s*:\s*\\?"?([^"\\,}]+)', payload or "")
    return match.group(1).strip() if match else None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    if value is pd.NA:
        return ""
    return str(value)
