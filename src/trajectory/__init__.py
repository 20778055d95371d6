# ABOUTME: Exposes the per-student event normalizer and the batch pipeline.
# ABOUTME: Submodules cover event families, retention, sessions, and output routing.

from .families import EventFamily, classify_event, extract_module_reference, normalize_event_type
from .normalizer import load_raw_events, normalize_student_events
from .pipeline import BatchSummary, StudentFailure, run_batch, write_user_lists

__all__ = [
    "BatchSummary",
    "EventFamily",
    "StudentFailure",
    "classify_event",
    "extract_module_reference",
    "load_raw_events",
    "normalize_event_type",
    "normalize_student_events",
    "run_batch",
    "write_user_lists",
]
