"""Synthetic 68-point faces for liveness and controller tests."""

from __future__ import annotations

import math
import sys
from pathlib import Path

import numpy as np

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from kosface_types import BoundingBox, FaceLandmarks, FrameAnalysis

OPEN, CLOSED = 0.3, 0.1


def make_landmarks(ear: float = 0.3, nose_dx: float = 0.0,
                   mouth_width: float = 80.0, mouth_height: float = 30.0) -> FaceLandmarks:
    """Frontal face: outer eye corners at x=230/410, y=200; nose tip at
    (320 + nose_dx, 259). Positive nose_dx is a turn to the subject's left.
    Eye openness set so both eyes have EAR `ear`."""
    pts = np.zeros((68, 2), dtype=np.float32)
    for i in range(17):
        angle = math.pi * i / 16
        pts[i] = (320 - 130 * math.cos(angle), 220 + 150 * math.sin(angle))
    pts[17:22] = [(225 + 15 * i, 175) for i in range(5)]
    pts[22:27] = [(355 + 15 * i, 175) for i in range(5)]
    pts[27:31] = [(320 + nose_dx * k / 3, 205 + 18 * k) for k in range(4)]
    pts[31:36] = [(300 + 10 * i + nose_dx, 270) for i in range(5)]

    v = 20.0 * ear  # EAR = v / 20 for a 40 px wide eye
    pts[36:42] = [(230, 200), (243, 200 - v), (257, 200 - v), (270, 200), (257, 200 + v), (243, 200 + v)]
    pts[42:48] = [(370, 200), (383, 200 - v), (397, 200 - v), (410, 200), (397, 200 + v), (383, 200 + v)]

    cx, cy = 320.0, 330.0
    hw, hh = mouth_width / 2, mouth_height / 2
    outer = [(cx - hw, cy), (cx - hw / 2, cy - hh * 0.8), (cx - hw / 6, cy - hh), (cx, cy - hh),
             (cx + hw / 6, cy - hh), (cx + hw / 2, cy - hh * 0.8), (cx + hw, cy),
             (cx + hw / 2, cy + hh * 0.8), (cx + hw / 6, cy + hh), (cx, cy + hh),
             (cx - hw / 6, cy + hh), (cx - hw / 2, cy + hh * 0.8)]
    inner = [(cx - hw * 0.8, cy), (cx - hw / 3, cy - hh / 3), (cx, cy - hh / 3), (cx + hw / 3, cy - hh / 3),
             (cx + hw * 0.8, cy), (cx + hw / 3, cy + hh / 3), (cx, cy + hh / 3), (cx - hw / 3, cy + hh / 3)]
    pts[48:60] = outer
    pts[60:68] = inner
    return FaceLandmarks(pts)


def make_analysis(score: float = 0.9, **kwargs) -> FrameAnalysis:
    return FrameAnalysis(
        box=BoundingBox(180, 160, 280, 230),
        landmarks=make_landmarks(**kwargs),
        descriptor=np.linspace(0, 1, 128, dtype=np.float32),
        detection_score=score,
    )
