"""Pipeline configuration, operating modes and the quality-adaptive threshold policy."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from facegate.io_utils import load_yaml

LOGGER = logging.getLogger("facegate.config")

DEFAULT_SPOOF_WEIGHTS: Dict[str, float] = {
    "texture": 0.30,
    "landmarks": 0.25,
    "frequency": 0.25,
    "eye_reflection": 0.10,
    "motion": 0.10,
}

DEFAULT_QUALITY_BOUNDARIES: Dict[str, int] = {"good": 90, "fair": 75, "low": 60}
DEFAULT_QUALITY_THRESHOLDS: Dict[str, float] = {"high": 0.60, "good": 0.70, "fair": 0.80, "low": 0.90}


@dataclass(frozen=True)
class OperatingMode:
    """Session-wide behaviour switch selected once (group capture vs. self-verification)."""

    name: str
    multi_subject: bool
    threshold_boost: float = 0.0
    use_back_camera: bool = False
    warmup_delay_ms: int = 0
    # "first" or "largest"; only consulted in single-subject mode
    single_subject_pick: str = "first"


MULTI_SUBJECT = OperatingMode(
    name="multi",
    multi_subject=True,
    threshold_boost=0.0,
    use_back_camera=True,
    warmup_delay_ms=1500,
)

SINGLE_SUBJECT = OperatingMode(
    name="single",
    multi_subject=False,
    threshold_boost=0.10,
    use_back_camera=False,
    warmup_delay_ms=500,
)

_MODE_ALIASES = {
    "multi": MULTI_SUBJECT,
    "group": MULTI_SUBJECT,
    "student": MULTI_SUBJECT,
    "single": SINGLE_SUBJECT,
    "self": SINGLE_SUBJECT,
    "teacher": SINGLE_SUBJECT,
}


def mode_from_name(name: str) -> OperatingMode:
    try:
        return _MODE_ALIASES[name.strip().lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown operating mode {name!r}; expected one of {sorted(_MODE_ALIASES)}") from exc


@dataclass
class PipelineConfig:
    # Admission control
    enable_frame_skipping: bool = True
    skip_interval: int = 2
    # Detection / duplicate filtering
    enable_duplicate_filtering: bool = True
    iou_threshold: float = 0.30
    # Quality
    max_pose_angle: float = 30.0
    enable_quality_early_exit: bool = True
    quality_early_exit: int = 30
    quality_boundaries: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_QUALITY_BOUNDARIES))
    quality_thresholds: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_QUALITY_THRESHOLDS))
    # Recognition
    top_k: int = 3
    max_cached_embeddings: int = 5000
    # Liveness
    enable_anti_spoofing: bool = True
    spoof_threshold: float = 0.5
    spoof_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SPOOF_WEIGHTS))
    texture_scale: float = 64.0
    frequency_scale: float = 16.0
    # Execution
    pipeline_timeout_ms: int = 2000
    subject_workers: int = 1
    mode: str = "multi"

    def __post_init__(self) -> None:
        if self.skip_interval < 1:
            raise ValueError("skip_interval must be >= 1")
        if not 0.0 <= self.iou_threshold <= 1.0:
            raise ValueError("iou_threshold must be within [0, 1]")
        if self.max_pose_angle <= 0:
            raise ValueError("max_pose_angle must be positive")
        if self.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if self.subject_workers < 1:
            raise ValueError("subject_workers must be >= 1")
        if any(w < 0 for w in self.spoof_weights.values()):
            raise ValueError("spoof_weights must be non-negative")
        # Partial YAML overrides fill in from the defaults
        self.quality_boundaries = _merge_table("quality_boundaries", self.quality_boundaries, DEFAULT_QUALITY_BOUNDARIES)
        self.quality_thresholds = _merge_table("quality_thresholds", self.quality_thresholds, DEFAULT_QUALITY_THRESHOLDS)
        bounds = self.quality_boundaries
        if not 0 <= bounds["low"] <= bounds["fair"] <= bounds["good"] <= 100:
            raise ValueError("quality_boundaries must satisfy 0 <= low <= fair <= good <= 100")
        thresholds = self.quality_thresholds
        if not 0.0 <= thresholds["high"] <= thresholds["good"] <= thresholds["fair"] <= thresholds["low"] <= 1.0:
            raise ValueError("quality_thresholds must satisfy 0 <= high <= good <= fair <= low <= 1")
        mode_from_name(self.mode)

    @property
    def operating_mode(self) -> OperatingMode:
        return mode_from_name(self.mode)

    def threshold_for_quality(self, quality_percentage: int) -> float:
        """Similarity required for a face of the given quality (lower quality, stricter)."""
        bounds = self.quality_boundaries
        thresholds = self.quality_thresholds
        if quality_percentage >= bounds["good"]:
            return thresholds["high"]
        if quality_percentage >= bounds["fair"]:
            return thresholds["good"]
        if quality_percentage >= bounds["low"]:
            return thresholds["fair"]
        return thresholds["low"]

    def threshold_for(self, quality_percentage: int, mode: OperatingMode) -> float:
        base = self.threshold_for_quality(quality_percentage)
        return float(min(1.0, max(0.0, base + mode.threshold_boost)))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PipelineConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown pipeline config keys: {unknown}")
        return cls(**data)


def _merge_table(name: str, given: Optional[Dict[str, Any]], defaults: Dict[str, Any]) -> Dict[str, Any]:
    given = dict(given or {})
    unknown = sorted(set(given) - set(defaults))
    if unknown:
        raise ValueError(f"Unknown {name} keys: {unknown}; expected {sorted(defaults)}")
    merged = dict(defaults)
    merged.update(given)
    return merged


def get_dynamic_threshold(quality_percentage: int, config: Optional[PipelineConfig] = None) -> float:
    """Module-level shortcut for the default threshold table."""
    return (config or PipelineConfig()).threshold_for_quality(quality_percentage)


def load_config(path: Optional[Path]) -> PipelineConfig:
    """Load a PipelineConfig from YAML; a missing path yields defaults."""
    if path is None:
        return PipelineConfig()
    path = Path(path)
    if not path.exists():
        LOGGER.warning("Pipeline config %s not found; using defaults", path)
        return PipelineConfig()
    data = load_yaml(path)
    pipeline_section = data.get("pipeline", data)
    config = PipelineConfig.from_dict(pipeline_section)
    LOGGER.info("Loaded pipeline config %s (mode=%s skip_interval=%d)", path, config.mode, config.skip_interval)
    return config
