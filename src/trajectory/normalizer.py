# ABOUTME: Turns one student's raw tracking-log rows into an ordered course trajectory.
# ABOUTME: Filters noise, resolves modules to content order, and computes periods and sessions.

from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.csv as pv

from src.common.config import NormalizerConfig
from src.common.schemas import (
    RAW_EVENT_COLUMNS,
    TRAJECTORY_COLUMNS,
    StudentResult,
    StudentState,
    empty_trajectory,
)
from src.course_tree.resolver import ModuleReference, ModuleResolver, ResolvedModule

from .families import EventFields, extract_module_reference, normalize_event_type
from .retention import drop_reasons
from .sessions import (
    cap_periods,
    forward_periods,
    impute_final_period,
    reestimate_outlier_periods,
    segment_sessions,
)

RESOLVED_COLUMNS = ["mod_hex_id", "module_type", "treelevel", "order", "mod_parent_id"]


def load_raw_events(path: Path) -> pd.DataFrame:
    """Read a per-student tracking-log CSV; every column is kept as text."""

    path = Path(path)
    if path.stat().st_size == 0:
        return pd.DataFrame({column: pd.Series(dtype="object") for column in RAW_EVENT_COLUMNS})

    convert_options = pv.ConvertOptions(
        include_columns=RAW_EVENT_COLUMNS,
        include_missing_columns=True,
        column_types={column: pa.string() for column in RAW_EVENT_COLUMNS},
        strings_can_be_null=True,
    )
    parse_options = pv.ParseOptions(newlines_in_values=True)
    table = pv.read_csv(
        path,
        parse_options=parse_options,
        convert_options=convert_options,
        read_options=pv.ReadOptions(block_size=1 << 22),
    )
    return table.to_pandas()


def student_id_from_events(events: pd.DataFrame, fallback: Optional[str] = None) -> Optional[str]:
    for column in ("context.user_id", "username"):
        if column in events.columns:
            values = events[column].dropna().astype(str)
            values = values[values.str.strip() != ""]
            if len(values):
                return _clean_id(values.iloc[0])
    return fallback


def _clean_id(value: str) -> str:
    # Numeric ids exported through spreadsheets sometimes come back as "123.0".
    text = value.strip()
    if text.endswith(".0") and text[:-2].isdigit():
        return text[:-2]
    return text


def _parse_times(values: pd.Series) -> pd.Series:
    return pd.to_datetime(values, utc=True, errors="coerce", format="mixed")


def _prepare(raw: pd.DataFrame) -> pd.DataFrame:
    events = raw.reindex(columns=list(dict.fromkeys(RAW_EVENT_COLUMNS + list(raw.columns))))
    events = events.copy()
    events["time"] = _parse_times(events["time"])
    events = events.dropna(subset=["time"])
    return events.sort_values("time", kind="mergesort").reset_index(drop=True)


def _resolve_events(events: pd.DataFrame, resolver: ModuleResolver) -> pd.DataFrame:
    """Attach lookup fields to every event; unresolvable events get nulls."""

    cache: Dict[Optional[ModuleReference], Optional[ResolvedModule]] = {}
    records: List[Dict[str, Any]] = []
    for row in events.to_dict(orient="records"):
        _, reference = extract_module_reference(EventFields.from_row(row))
        if reference not in cache:
            cache[reference] = resolver.resolve(reference)
        resolved = cache[reference]
        if resolved is None:
            records.append(dict.fromkeys(RESOLVED_COLUMNS))
            continue
        records.append(
            {
                "mod_hex_id": resolved.mod_hex_id,
                "module_type": resolved.module_type,
                "treelevel": resolved.tree_level,
                "order": resolved.order,
                "mod_parent_id": resolved.parent,
            }
        )

    resolved_frame = pd.DataFrame(records, index=events.index, columns=RESOLVED_COLUMNS)
    return pd.concat([events, resolved_frame], axis=1)


def trajectory_frame(events: pd.DataFrame, user_id: Optional[str]) -> pd.DataFrame:
    """Project events onto the canonical trajectory columns."""

    frame = events.reindex(columns=TRAJECTORY_COLUMNS).copy()
    frame["user_id"] = user_id
    frame["order"] = pd.to_numeric(frame["order"], errors="coerce").astype("Int64")
    frame["tsess"] = pd.to_numeric(frame["tsess"], errors="coerce").astype("Int64")
    frame["period"] = pd.to_numeric(frame["period"], errors="coerce")
    return frame.reset_index(drop=True)


def normalize_student_events(
    raw: pd.DataFrame,
    resolver: ModuleResolver,
    config: Optional[NormalizerConfig] = None,
    user_id: Optional[str] = None,
) -> StudentResult:
    """
    Normalize one student's raw events.

    Steps:
        1. Parse and sort timestamps; compute temporal sessions over the full log.
        2. Drop noise events according to the retention policy.
        3. Resolve every retained event to a content module and its course order.
        4. Recompute periods over the retained events and drop unresolved ones.
        5. Rename URL event types and re-estimate capped periods.

    Args:
        raw: Tracking-log rows for a single student, any column order.
        resolver: Module index for the course.
        config: Normalizer settings; defaults apply when omitted.
        user_id: Fallback identifier when the log carries no user id.
    """

    config = config or NormalizerConfig()
    threshold = float(config.session_break_minutes)
    user_id = student_id_from_events(raw, fallback=user_id)
    raw_rows = len(raw)

    if raw_rows == 0:
        return StudentResult(user_id or "", StudentState.EMPTY, empty_trajectory(user_id), raw_rows=0)

    events = _prepare(raw)
    if config.min_events and raw_rows < config.min_events:
        return StudentResult(user_id or "", StudentState.TOO_FEW, trajectory_frame(events, user_id), raw_rows)
    if events.empty:
        return StudentResult(user_id or "", StudentState.ALL_FILTERED, empty_trajectory(user_id), raw_rows)

    segments = segment_sessions(
        events["time"],
        events["session"],
        threshold,
        final_period=config.final_period,
        event_types=events["event_type"],
    )
    events["period"] = segments.period
    events["tsess"] = segments.tsess
    events["session"] = segments.session

    retained = events[drop_reasons(events, config.retention).isna()].reset_index(drop=True)
    if retained.empty:
        return StudentResult(user_id or "", StudentState.ALL_FILTERED, trajectory_frame(events, user_id), raw_rows)

    retained = _resolve_events(retained, resolver)
    retained["period"] = impute_final_period(
        cap_periods(forward_periods(retained["time"]), threshold),
        config.final_period,
        retained["event_type"],
    )

    resolved = retained[retained["order"].notna()].reset_index(drop=True)
    dropped_unresolved = len(retained) - len(resolved)
    if resolved.empty:
        return StudentResult(
            user_id or "",
            StudentState.NO_ORDER,
            trajectory_frame(retained, user_id),
            raw_rows,
            dropped_unresolved,
        )

    resolved["event_type"] = resolved["event_type"].map(normalize_event_type)
    if config.reestimate_outliers:
        resolved["period"] = reestimate_outlier_periods(resolved["period"], resolved["event_type"], threshold)

    return StudentResult(
        user_id or "",
        StudentState.FINAL,
        trajectory_frame(resolved, user_id),
        raw_rows,
        dropped_unresolved,
    )


def family_counts(raw: pd.DataFrame) -> Dict[str, int]:
    """Count raw events per event family, for inspection."""

    counts: Dict[str, int] = {}
    for row in _prepare(raw).to_dict(orient="records"):
        family, _ = extract_module_reference(EventFields.from_row(row))
        counts[family.value] = counts.get(family.value, 0) + 1
    return counts
