# ABOUTME: Loads normalizer run settings from YAML into frozen dataclasses.
# ABOUTME: Holds the session-break threshold, retention switches, and worker count.

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

FINAL_PERIOD_METHODS = ("mean", "type_median")


@dataclass(frozen=True)
class RetentionPolicy:
    """Switches for event categories that may be kept; everything defaults to drop."""

    keep_non_content: bool = False
    keep_problem_server: bool = False
    keep_video_low_signal: bool = False
    keep_transcript: bool = False
    keep_drag_and_drop: bool = False


@dataclass(frozen=True)
class NormalizerConfig:
    """Configuration for per-student event log normalization."""

    session_break_minutes: float = 60.0
    min_events: int = 0
    reestimate_outliers: bool = True
    final_period: str = "mean"
    workers: int = 1
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    def __post_init__(self) -> None:
        if self.session_break_minutes <= 0:
            raise ValueError("session_break_minutes must be positive.")
        if self.final_period not in FINAL_PERIOD_METHODS:
            raise ValueError(
                f"Unsupported final_period '{self.final_period}'. Expected one of: {', '.join(FINAL_PERIOD_METHODS)}."
            )
        if self.min_events < 0:
            raise ValueError("min_events cannot be negative.")
        if self.workers < 1:
            raise ValueError("workers must be at least 1.")


def config_from_mapping(section: Optional[Mapping[str, Any]]) -> NormalizerConfig:
    """Build a NormalizerConfig from the `normalizer` section of a YAML document."""

    if not section:
        return NormalizerConfig()
    values = dict(section)
    _reject_unknown(values, NormalizerConfig, "normalizer")

    retention_values = values.pop("retention", None) or {}
    _reject_unknown(retention_values, RetentionPolicy, "normalizer.retention")
    return NormalizerConfig(retention=RetentionPolicy(**retention_values), **values)


def load_normalizer_config(config_path: Optional[Path]) -> NormalizerConfig:
    """Read a YAML config file; a missing path yields the defaults."""

    if config_path is None:
        return NormalizerConfig()
    with open(config_path) as f:
        cfg = yaml.safe_load(f) or {}
    return config_from_mapping(cfg.get("normalizer"))


def _reject_unknown(values: Mapping[str, Any], schema: type, section: str) -> None:
    allowed = {f.name for f in fields(schema)}
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise ValueError(f"Unknown keys in '{section}': {', '.join(unknown)}.")
