# ABOUTME: Computes inter-event periods and session segmentation for one student's ordered events.
# ABOUTME: Periods are capped at the break threshold; capped gaps start a new temporal session.

from dataclasses import dataclass
from typing import Optional

import pandas as pd

TRAILING_SESSION = "lastsession"


@dataclass(frozen=True)
class SessionSegments:
    period: pd.Series
    tsess: pd.Series
    session: pd.Series


def forward_periods(times: pd.Series) -> pd.Series:
    """Minutes from each event to the next one; the last event has no successor and is NaN."""

    if len(times) == 0:
        return pd.Series(dtype="float64", index=times.index)
    deltas = times.shift(-1) - times
    return deltas.dt.total_seconds() / 60.0


def cap_periods(periods: pd.Series, threshold: float) -> pd.Series:
    return periods.clip(upper=threshold)


def temporal_sessions(periods: pd.Series, threshold: float) -> pd.Series:
    """
    Number temporal sessions from 1.

    An event belongs to session 1 + (number of capped gaps before it). The last
    event has no outgoing gap, so whatever value sits in its period slot never
    opens a session.
    """

    boundary = (periods >= threshold).astype(bool)
    if len(boundary):
        boundary.iloc[-1] = False
    return (1 + boundary.shift(1, fill_value=False).cumsum()).astype("int64")


def backfill_sessions(sessions: pd.Series, sentinel: str = TRAILING_SESSION) -> pd.Series:
    """Fill missing session ids from the next event that has one; trailing gaps get the sentinel."""

    values = sessions.astype("object")
    values = values.where(values.notna() & (values.astype(str) != ""))
    return values.bfill().fillna(sentinel)


def impute_final_period(
    periods: pd.Series,
    method: str = "mean",
    event_types: Optional[pd.Series] = None,
) -> pd.Series:
    """
    Give the last event an estimated period.

    `mean` uses the mean of the student's other periods. `type_median` uses the
    median of earlier periods with the same event type and falls back to the
    mean. A lone event gets 0.
    """

    if len(periods) == 0:
        return periods
    result = periods.astype("float64").copy()
    earlier = result.iloc[:-1].dropna()
    value = float(earlier.mean()) if len(earlier) else 0.0

    if method == "type_median" and event_types is not None and len(earlier):
        types = event_types.reset_index(drop=True)
        same_type = result.iloc[:-1][(types.iloc[:-1] == types.iloc[-1]).to_numpy()].dropna()
        if len(same_type):
            value = float(same_type.median())

    result.iloc[-1] = value
    return result


def reestimate_outlier_periods(periods: pd.Series, event_types: pd.Series, threshold: float) -> pd.Series:
    """
    Replace capped periods with a typical value for the event type.

    A capped period becomes the median of the student's uncapped periods of the
    same event type; with none available, the median of all uncapped periods.
    Periods with neither stay capped.
    """

    result = periods.astype("float64").copy()
    types = pd.Series(event_types.to_numpy(), index=result.index).fillna("")
    capped = result >= threshold
    if not capped.any():
        return result

    uncapped = result < threshold
    global_median = result[uncapped].median()
    for event_type in pd.unique(types[capped]):
        same_type = types == event_type
        reference = result[uncapped & same_type].median()
        if pd.isna(reference):
            reference = global_median
        if pd.isna(reference):
            continue
        result[capped & same_type] = reference
    return result


def segment_sessions(
    times: pd.Series,
    sessions: pd.Series,
    threshold: float,
    final_period: str = "mean",
    event_types: Optional[pd.Series] = None,
) -> SessionSegments:
    """Periods, temporal sessions, and back-filled session ids for time-sorted events."""

    capped = cap_periods(forward_periods(times), threshold)
    return SessionSegments(
        period=impute_final_period(capped, final_period, event_types),
        tsess=temporal_sessions(capped, threshold),
        session=backfill_sessions(sessions),
    )
