"""
KosFace — Configuration
========================
Loads config.yaml, merges it over DEFAULT_CONFIG and produces a typed,
validated CaptureConfig.

  load_config(path)        -> merged dict (defaults when file missing)
  CaptureConfig.from_dict  -> typed config, raises ValueError on bad values
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from kosface_types import CANONICAL_STEPS, CaptureMode, LivenessStep


_log = logging.getLogger("KosFaceConfig")

_config_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.yaml")

# ─── Defaults ────────────────────────────────────────────────
DEFAULT_CONFIG: dict[str, dict[str, Any]] = {
    "camera": {
        "camera_id": 0,
        "width": 640,
        "height": 480,
        "start_timeout_s": 10.0,
    },
    "analyzer": {
        "model_dir": "models",
        "landmarker_model": "face_landmarker.task",
        "embedding_model": "arcface_r100.onnx",
        "detection_threshold": 0.5,
    },
    "liveness": {
        "enabled": True,
        "required_steps": [s.value for s in CANONICAL_STEPS],
        "ear_threshold": 0.25,
        "blink_debounce_ms": 500,
        "required_blinks": 2,
        "yaw_threshold_deg": 15.0,
        "pose_reference_distance": 100.0,
        "smile_mode": "presence",
        "smile_mouth_ratio": 3.2,
    },
    "anti_spoof": {
        "enabled": True,
        "deviation_threshold": 10.0,
        "midpoint": 128.0,
    },
    "capture": {
        "polling_interval_ms": 100,
        "failure_reset_ms": 2000,
        "success_reset_ms": 1000,
        "max_consecutive_analysis_failures": 50,
        "jpeg_quality": 80,
        "strict": {"register": True, "login": False},
    },
    "matching": {
        "threshold": 0.6,
        "required_photos": 3,
    },
    "overlay": {
        "enabled": False,
    },
    "logging": {
        "level": "INFO",
        "audit_dir": "logs",
    },
}

SMILE_MODES = ("presence", "mouth_ratio")


def merge_config(base: dict, override: Optional[dict]) -> dict:
    """Section-wise merge: override keys win, nested dicts merged recursively."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration from config.yaml merged over DEFAULT_CONFIG."""
    target = path or _config_path
    if not os.path.exists(target):
        if path is not None:
            _log.warning("Config file %s not found; using defaults", target)
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(target, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{target}: top level must be a mapping")
    return merge_config(DEFAULT_CONFIG, data)


# ─── Typed config ────────────────────────────────────────────

def parse_steps(names) -> tuple[LivenessStep, ...]:
    """Validate a step list: known names, canonical order, no duplicates."""
    steps = []
    for name in names or ():
        try:
            step = LivenessStep(str(name).lower())
        except ValueError:
            raise ValueError(f"unknown liveness step: {name!r}") from None
        if step == LivenessStep.COMPLETE:
            raise ValueError("'complete' is not a required step")
        steps.append(step)
    if len(set(steps)) != len(steps):
        raise ValueError(f"duplicate liveness steps: {[s.value for s in steps]}")
    order = [CANONICAL_STEPS.index(s) for s in steps]
    if order != sorted(order):
        raise ValueError(
            "liveness steps must follow the order "
            + " -> ".join(s.value for s in CANONICAL_STEPS)
        )
    return tuple(steps)


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


@dataclass
class CaptureConfig:
    """Every knob of the capture pipeline, validated."""

    # camera
    camera_id: int = 0
    frame_width: int = 640
    frame_height: int = 480
    camera_start_timeout_s: float = 10.0

    # analyzer
    model_dir: str = "models"
    landmarker_model: str = "face_landmarker.task"
    embedding_model: str = "arcface_r100.onnx"
    detection_threshold: float = 0.5

    # liveness
    liveness_enabled: bool = True
    required_steps: tuple[LivenessStep, ...] = CANONICAL_STEPS
    ear_threshold: float = 0.25
    blink_debounce_ms: float = 500.0
    required_blinks: int = 2
    yaw_threshold_deg: float = 15.0
    pose_reference_distance: float = 100.0
    smile_mode: str = "presence"
    smile_mouth_ratio: float = 3.2

    # anti-spoof
    anti_spoof_enabled: bool = True
    spoof_deviation_threshold: float = 10.0
    spoof_midpoint: float = 128.0

    # capture
    polling_interval_ms: float = 100.0
    failure_reset_ms: float = 2000.0
    success_reset_ms: float = 1000.0
    max_consecutive_analysis_failures: int = 50
    jpeg_quality: int = 80
    strict_modes: dict = field(
        default_factory=lambda: {CaptureMode.REGISTER: True, CaptureMode.LOGIN: False}
    )

    # matching / enrollment
    match_threshold: float = 0.6
    required_photos: int = 3

    overlay_enabled: bool = False

    log_level: str = "INFO"
    audit_dir: str = "logs"

    def __post_init__(self) -> None:
        self.required_steps = tuple(self.required_steps)
        self.validate()

    def validate(self) -> None:
        _require(0.0 <= self.detection_threshold <= 1.0,
                 "detection_threshold must be in [0, 1]")
        _require(self.ear_threshold > 0, "ear_threshold must be positive")
        _require(self.blink_debounce_ms >= 0, "blink_debounce_ms must be >= 0")
        _require(self.required_blinks >= 1, "required_blinks must be >= 1")
        _require(0 < self.yaw_threshold_deg < 90, "yaw_threshold_deg must be in (0, 90)")
        _require(self.pose_reference_distance > 0,
                 "pose_reference_distance must be positive")
        _require(self.smile_mode in SMILE_MODES,
                 f"smile_mode must be one of {SMILE_MODES}")
        _require(self.smile_mouth_ratio > 0, "smile_mouth_ratio must be positive")
        _require(self.spoof_deviation_threshold >= 0,
                 "deviation_threshold must be >= 0")
        _require(self.polling_interval_ms > 0, "polling_interval_ms must be positive")
        _require(self.failure_reset_ms >= 0, "failure_reset_ms must be >= 0")
        _require(self.success_reset_ms >= 0, "success_reset_ms must be >= 0")
        _require(self.camera_start_timeout_s > 0, "start_timeout_s must be positive")
        _require(self.max_consecutive_analysis_failures >= 1,
                 "max_consecutive_analysis_failures must be >= 1")
        _require(1 <= self.jpeg_quality <= 100, "jpeg_quality must be in [1, 100]")
        _require(self.match_threshold > 0, "match threshold must be positive")
        _require(self.required_photos >= 1, "required_photos must be >= 1")
        _require(self.frame_width > 0 and self.frame_height > 0,
                 "camera resolution must be positive")

    @property
    def active_steps(self) -> tuple[LivenessStep, ...]:
        """Steps the engine enforces; empty when liveness is switched off."""
        return self.required_steps if self.liveness_enabled else ()

    def is_strict(self, mode: CaptureMode) -> bool:
        return bool(self.strict_modes.get(CaptureMode(mode), False))

    @classmethod
    def from_dict(cls, data: Optional[dict] = None) -> "CaptureConfig":
        """Build from a (possibly partial) nested config dict."""
        cfg = merge_config(DEFAULT_CONFIG, data)
        cam = cfg["camera"]
        ana = cfg["analyzer"]
        liv = cfg["liveness"]
        spoof = cfg["anti_spoof"]
        cap = cfg["capture"]
        match = cfg["matching"]

        strict = {}
        for name, value in (cap.get("strict") or {}).items():
            try:
                strict[CaptureMode(str(name).lower())] = bool(value)
            except ValueError:
                raise ValueError(f"unknown capture mode in strict: {name!r}") from None

        return cls(
            camera_id=int(cam["camera_id"]),
            frame_width=int(cam["width"]),
            frame_height=int(cam["height"]),
            camera_start_timeout_s=float(cam["start_timeout_s"]),
            model_dir=str(ana["model_dir"]),
            landmarker_model=str(ana["landmarker_model"]),
            embedding_model=str(ana["embedding_model"]),
            detection_threshold=float(ana["detection_threshold"]),
            liveness_enabled=bool(liv["enabled"]),
            required_steps=parse_steps(liv["required_steps"]),
            ear_threshold=float(liv["ear_threshold"]),
            blink_debounce_ms=float(liv["blink_debounce_ms"]),
            required_blinks=int(liv["required_blinks"]),
            yaw_threshold_deg=float(liv["yaw_threshold_deg"]),
            pose_reference_distance=float(liv["pose_reference_distance"]),
            smile_mode=str(liv["smile_mode"]),
            smile_mouth_ratio=float(liv["smile_mouth_ratio"]),
            anti_spoof_enabled=bool(spoof["enabled"]),
            spoof_deviation_threshold=float(spoof["deviation_threshold"]),
            spoof_midpoint=float(spoof["midpoint"]),
            polling_interval_ms=float(cap["polling_interval_ms"]),
            failure_reset_ms=float(cap["failure_reset_ms"]),
            success_reset_ms=float(cap["success_reset_ms"]),
            max_consecutive_analysis_failures=int(cap["max_consecutive_analysis_failures"]),
            jpeg_quality=int(cap["jpeg_quality"]),
            strict_modes=strict,
            match_threshold=float(match["threshold"]),
            required_photos=int(match["required_photos"]),
            overlay_enabled=bool(cfg["overlay"]["enabled"]),
            log_level=str(cfg["logging"]["level"]).upper(),
            audit_dir=str(cfg["logging"]["audit_dir"]),
        )

    @classmethod
    def load(cls, path: Optional[str] = None) -> "CaptureConfig":
        return cls.from_dict(load_config(path))
