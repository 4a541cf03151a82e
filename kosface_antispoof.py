"""
KosFace — Passive Anti-Spoofing Signal
=======================================
Flat-texture heuristic: printed photos and screens held close to the
camera tend to produce a frame with little intensity spread around the
mid-gray level.

    deviation = mean(|gray - midpoint|) over the full frame
    spoof     = deviation < threshold

The signal annotates the capture; it never blocks it.
"""

from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from kosface_types import FrameAnalysis, SpoofSignal


_log = logging.getLogger("KosFaceAntiSpoof")


class AntiSpoofChecker:
    """Grayscale deviation texture check."""

    def __init__(self, deviation_threshold: float = 10.0, midpoint: float = 128.0) -> None:
        self.deviation_threshold = deviation_threshold
        self.midpoint = midpoint

    @classmethod
    def from_config(cls, config) -> "AntiSpoofChecker":
        return cls(config.spoof_deviation_threshold, config.spoof_midpoint)

    def deviation(self, frame: np.ndarray) -> float:
        if frame.ndim == 3:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        else:
            gray = frame
        return float(np.mean(np.abs(gray.astype(np.float32) - self.midpoint)))

    def check(self, frame: np.ndarray, analysis: Optional[FrameAnalysis] = None) -> SpoofSignal:
        # analysis is accepted for interface symmetry; the heuristic is full-frame
        dev = self.deviation(frame)
        spoof = dev < self.deviation_threshold
        if spoof:
            _log.debug("Flat texture: deviation %.2f < %.2f", dev, self.deviation_threshold)
        return SpoofSignal(spoof_detected=spoof, deviation=round(dev, 3))
