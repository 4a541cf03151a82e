"""
KosFace — Configuration Tests
==============================
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from kosface_config import (
    DEFAULT_CONFIG,
    CaptureConfig,
    load_config,
    merge_config,
    parse_steps,
)
from kosface_types import CANONICAL_STEPS, CaptureMode, LivenessStep


def test_missing_file_gives_defaults(tmp_path):
    assert load_config(str(tmp_path / "absent.yaml")) == DEFAULT_CONFIG


def test_repository_config_matches_defaults():
    config = CaptureConfig.load(str(Path(_project_root) / "config.yaml"))
    assert config == CaptureConfig()


def test_yaml_overrides_are_merged(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "liveness": {"required_steps": ["blink", "smile"], "ear_threshold": 0.2},
        "capture": {"strict": {"login": True}},
    }), encoding="utf-8")

    config = CaptureConfig.load(str(path))

    assert config.required_steps == (LivenessStep.BLINK, LivenessStep.SMILE)
    assert config.ear_threshold == 0.2
    assert config.blink_debounce_ms == 500.0
    assert config.is_strict(CaptureMode.LOGIN) is True
    assert config.is_strict(CaptureMode.REGISTER) is True


def test_empty_yaml_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(str(path)) == DEFAULT_CONFIG


def test_non_mapping_yaml_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))


def test_merge_config_does_not_mutate_base():
    base = {"a": {"x": 1, "y": 2}}
    merged = merge_config(base, {"a": {"y": 3}, "b": 4})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 4}
    assert base == {"a": {"x": 1, "y": 2}}


def test_default_strictness():
    config = CaptureConfig()
    assert config.is_strict(CaptureMode.REGISTER) is True
    assert config.is_strict(CaptureMode.LOGIN) is False


def test_disabled_liveness_has_no_active_steps():
    config = CaptureConfig.from_dict({"liveness": {"enabled": False}})
    assert config.required_steps == CANONICAL_STEPS
    assert config.active_steps == ()


@pytest.mark.parametrize("steps", [
    ["wink"],
    ["complete"],
    ["blink", "blink"],
    ["smile", "blink"],
])
def test_invalid_step_lists(steps):
    with pytest.raises(ValueError):
        parse_steps(steps)


def test_step_names_are_case_insensitive():
    assert parse_steps(["BLINK", "Turn_Left"]) == (LivenessStep.BLINK, LivenessStep.TURN_LEFT)


@pytest.mark.parametrize("section,key,value", [
    ("analyzer", "detection_threshold", 1.5),
    ("liveness", "smile_mode", "grin"),
    ("liveness", "yaw_threshold_deg", 0),
    ("capture", "jpeg_quality", 0),
    ("capture", "polling_interval_ms", 0),
    ("capture", "max_consecutive_analysis_failures", 0),
    ("matching", "required_photos", 0),
])
def test_out_of_range_values_rejected(section, key, value):
    with pytest.raises(ValueError):
        CaptureConfig.from_dict({section: {key: value}})


def test_unknown_strict_mode_rejected():
    with pytest.raises(ValueError):
        CaptureConfig.from_dict({"capture": {"strict": {"guest": True}}})
