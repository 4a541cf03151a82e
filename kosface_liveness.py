"""
KosFace — Active Liveness Engine
=================================
Sequential challenge state machine driven by per-frame landmarks:

    BLINK → TURN_LEFT → TURN_RIGHT → SMILE → COMPLETE

Features:
  - Eye Aspect Ratio blink detection with debounce
  - Head pose (yaw/pitch/roll) from nose tip vs. eye midpoint
  - Smile check: landmark presence (default) or mouth width/height ratio
  - Pure update(): every tick returns a new LivenessState
  - Configurable required step sequence (empty = liveness disabled)
"""

from __future__ import annotations

import dataclasses
import logging
import math
from typing import Iterable, Optional

import numpy as np

from kosface_types import (
    CANONICAL_STEPS,
    FaceLandmarks,
    FrameAnalysis,
    HeadPose,
    LivenessState,
    LivenessStep,
)


_log = logging.getLogger("KosFaceLiveness")


# ─── Geometry ────────────────────────────────────────────────

def compute_ear(eye: np.ndarray) -> Optional[float]:
    """Eye Aspect Ratio from 6 landmark points.

    EAR = (||p2-p6|| + ||p3-p5||) / (2 * ||p1-p4||)
    Open eye ~0.25-0.3, closed ~0.1-0.15.
    """
    if eye is None or len(eye) < 6:
        return None
    p1, p2, p3, p4, p5, p6 = (np.asarray(p, dtype=np.float64) for p in eye[:6])
    h_dist = float(np.linalg.norm(p1 - p4))
    if h_dist <= 1e-6:
        return None
    v1 = float(np.linalg.norm(p2 - p6))
    v2 = float(np.linalg.norm(p3 - p5))
    return (v1 + v2) / (2.0 * h_dist)


def average_ear(landmarks: FaceLandmarks) -> Optional[float]:
    values = [e for e in (compute_ear(landmarks.left_eye), compute_ear(landmarks.right_eye))
              if e is not None]
    if not values:
        return None
    return float(sum(values) / len(values))


def estimate_head_pose(landmarks: FaceLandmarks, reference_distance: float = 100.0) -> Optional[HeadPose]:
    """Approximate head rotation in degrees.

    yaw/pitch: angle of the nose tip offset from the midpoint of the
    outer eye corners against a fixed reference distance (pixels).
    roll: slope of the line through the outer eye corners.

    Yaw is expressed in the subject's frame for an unmirrored camera
    image: a turn to the subject's left moves the nose toward image-right
    and gives negative yaw; a turn to their right gives positive yaw.
    """
    nose = landmarks.nose_tip
    left = landmarks.left_eye_outer
    right = landmarks.right_eye_outer
    if nose is None or left is None or right is None:
        return None

    mid_x = (float(left[0]) + float(right[0])) / 2.0
    mid_y = (float(left[1]) + float(right[1])) / 2.0
    yaw = math.degrees(math.atan2(mid_x - float(nose[0]), reference_distance))
    pitch = math.degrees(math.atan2(float(nose[1]) - mid_y, reference_distance))
    roll = math.degrees(math.atan2(float(right[1]) - float(left[1]),
                                   float(right[0]) - float(left[0])))
    return HeadPose(yaw=round(yaw, 3), pitch=round(pitch, 3), roll=round(roll, 3))


def mouth_ratio(landmarks: FaceLandmarks) -> Optional[float]:
    """Outer-lip width / height (corners 48-54, lips 51-57)."""
    mouth = landmarks.mouth
    if len(mouth) < 12:
        return None
    width = float(np.linalg.norm(mouth[6] - mouth[0]))
    height = float(np.linalg.norm(mouth[9] - mouth[3]))
    if height <= 1e-6:
        return None
    return width / height


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


# ─── Engine ──────────────────────────────────────────────────

class LivenessEngine:
    """Folds per-frame analyses into LivenessState.

    The engine holds only thresholds; all progress lives in the
    LivenessState values it returns.
    """

    def __init__(
        self,
        required_steps: Iterable[LivenessStep] = CANONICAL_STEPS,
        ear_threshold: float = 0.25,
        blink_debounce_ms: float = 500.0,
        required_blinks: int = 2,
        yaw_threshold_deg: float = 15.0,
        pose_reference_distance: float = 100.0,
        smile_mode: str = "presence",
        smile_mouth_ratio: float = 3.2,
    ) -> None:
        self.required_steps = tuple(required_steps)
        self.ear_threshold = ear_threshold
        self.blink_debounce_s = blink_debounce_ms / 1000.0
        self.required_blinks = required_blinks
        self.yaw_threshold_deg = yaw_threshold_deg
        self.pose_reference_distance = pose_reference_distance
        self.smile_mode = smile_mode
        self.smile_mouth_ratio = smile_mouth_ratio

    @classmethod
    def from_config(cls, config) -> "LivenessEngine":
        return cls(
            required_steps=config.active_steps,
            ear_threshold=config.ear_threshold,
            blink_debounce_ms=config.blink_debounce_ms,
            required_blinks=config.required_blinks,
            yaw_threshold_deg=config.yaw_threshold_deg,
            pose_reference_distance=config.pose_reference_distance,
            smile_mode=config.smile_mode,
            smile_mouth_ratio=config.smile_mouth_ratio,
        )

    def new_state(self, required_steps: Optional[Iterable[LivenessStep]] = None) -> LivenessState:
        """Session-start state. Empty sequence → already COMPLETE."""
        steps = self.required_steps if required_steps is None else tuple(required_steps)
        return LivenessState(
            required_steps=steps,
            current_step=steps[0] if steps else LivenessStep.COMPLETE,
            liveness_score=0.0 if steps else 100.0,
        )

    def update(self, state: LivenessState, analysis: Optional[FrameAnalysis], now: float) -> LivenessState:
        """Fold one tick. `now` is in seconds on a monotonic clock.

        No analysis → the same state is returned unchanged.
        """
        if analysis is None:
            return state

        landmarks = analysis.landmarks
        ear = average_ear(landmarks)
        pose = estimate_head_pose(landmarks, self.pose_reference_distance)

        blink_count = state.blink_count
        last_blink = state.last_blink_timestamp
        if self._is_blink(state.eye_aspect_ratio, ear, last_blink, now):
            blink_count += 1
            last_blink = now
            _log.debug("Blink %d at %.3f (EAR %.3f)", blink_count, now, ear)

        completed = state.completed_steps
        current = state.current_step
        if current != LivenessStep.COMPLETE and self._step_satisfied(current, blink_count, pose, landmarks):
            completed = completed + (current,)
            remaining = state.required_steps[len(completed):]
            current = remaining[0] if remaining else LivenessStep.COMPLETE
            _log.info("Liveness step %s completed → %s", completed[-1].value, current.value)

        total = len(state.required_steps)
        liveness = 100.0 if total == 0 else _clamp(len(completed) / total * 100.0)

        return dataclasses.replace(
            state,
            current_step=current,
            completed_steps=completed,
            blink_count=blink_count,
            last_blink_timestamp=last_blink,
            eye_aspect_ratio=ear if ear is not None else state.eye_aspect_ratio,
            head_pose=pose if pose is not None else state.head_pose,
            quality_score=_clamp(float(analysis.detection_score) * 100.0),
            liveness_score=liveness,
        )

    # ── Step checks ───────────────────────────────────────────

    def _is_blink(self, previous: Optional[float], current: Optional[float],
                  last_blink: Optional[float], now: float) -> bool:
        if previous is None or current is None:
            return False
        if not (previous >= self.ear_threshold and current < self.ear_threshold):
            return False
        return last_blink is None or (now - last_blink) >= self.blink_debounce_s

    def _step_satisfied(self, step: LivenessStep, blink_count: int,
                        pose: Optional[HeadPose], landmarks: FaceLandmarks) -> bool:
        if step == LivenessStep.BLINK:
            return blink_count >= self.required_blinks
        if step == LivenessStep.TURN_LEFT:
            return pose is not None and pose.yaw < -self.yaw_threshold_deg
        if step == LivenessStep.TURN_RIGHT:
            return pose is not None and pose.yaw > self.yaw_threshold_deg
        if step == LivenessStep.SMILE:
            return self._is_smiling(landmarks)
        return False

    def _is_smiling(self, landmarks: FaceLandmarks) -> bool:
        mouth = landmarks.mouth
        if len(mouth) == 0 or not np.isfinite(mouth).all():
            return False
        if self.smile_mode == "mouth_ratio":
            ratio = mouth_ratio(landmarks)
            return ratio is not None and ratio >= self.smile_mouth_ratio
        return True
