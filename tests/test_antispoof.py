"""
KosFace — Anti-Spoof Signal Tests
==================================
"""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from kosface_antispoof import AntiSpoofChecker
from kosface_config import CaptureConfig


def test_uniform_gray_frame_is_flagged():
    frame = np.full((480, 640, 3), 128, dtype=np.uint8)
    signal = AntiSpoofChecker().check(frame)
    assert signal.spoof_detected is True
    assert signal.deviation == pytest.approx(0.0)


def test_high_frequency_noise_is_not_flagged():
    rng = np.random.RandomState(0)
    frame = rng.randint(0, 256, size=(480, 640, 3), dtype=np.uint8)
    signal = AntiSpoofChecker().check(frame)
    assert signal.spoof_detected is False
    assert signal.deviation > 10.0


def test_near_midpoint_frame_below_threshold():
    frame = np.full((240, 320, 3), 135, dtype=np.uint8)
    signal = AntiSpoofChecker().check(frame)
    assert signal.deviation == pytest.approx(7.0, abs=0.5)
    assert signal.spoof_detected is True


def test_threshold_and_midpoint_are_configurable():
    frame = np.full((240, 320, 3), 135, dtype=np.uint8)
    assert AntiSpoofChecker(deviation_threshold=5.0).check(frame).spoof_detected is False
    assert AntiSpoofChecker(midpoint=100.0).check(frame).spoof_detected is False


def test_grayscale_input_accepted():
    frame = np.full((240, 320), 128, dtype=np.uint8)
    assert AntiSpoofChecker().check(frame).spoof_detected is True


def test_from_config():
    config = CaptureConfig(spoof_deviation_threshold=3.0, spoof_midpoint=64.0)
    checker = AntiSpoofChecker.from_config(config)
    assert checker.deviation_threshold == 3.0
    assert checker.midpoint == 64.0
