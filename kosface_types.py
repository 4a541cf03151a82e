"""
KosFace — Shared Data Types
============================
Typed records passed between the camera, analyzer, liveness engine,
anti-spoof checker and capture controller.

Landmarks follow the iBUG 68-point layout (0-indexed):
  0-16  jaw          17-21 right brow    22-26 left brow
  27-35 nose (30 = tip)                  36-41 left eye
  42-47 right eye    48-67 mouth
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np


# ═══════════════════════════════════════════════════════════════
# Face analysis
# ═══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BoundingBox:
    """Face box in pixel coordinates."""
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def as_int_tuple(self) -> tuple[int, int, int, int]:
        return int(self.x), int(self.y), int(self.width), int(self.height)


@dataclass(frozen=True, eq=False)
class FaceLandmarks:
    """68 pixel-space (x, y) points with named regions."""
    points: np.ndarray  # (68, 2) float32

    NUM_POINTS = 68

    def __post_init__(self) -> None:
        pts = np.asarray(self.points, dtype=np.float32)
        if pts.ndim != 2 or pts.shape[1] != 2:
            raise ValueError(f"landmarks must be (N, 2), got {pts.shape}")
        object.__setattr__(self, "points", pts)

    def __len__(self) -> int:
        return int(self.points.shape[0])

    def _region(self, start: int, stop: int) -> np.ndarray:
        if self.points.shape[0] < stop:
            return np.empty((0, 2), dtype=np.float32)
        return self.points[start:stop]

    @property
    def jaw(self) -> np.ndarray:
        return self._region(0, 17)

    @property
    def left_eye(self) -> np.ndarray:
        return self._region(36, 42)

    @property
    def right_eye(self) -> np.ndarray:
        return self._region(42, 48)

    @property
    def nose(self) -> np.ndarray:
        return self._region(27, 36)

    @property
    def nose_tip(self) -> Optional[np.ndarray]:
        nose = self.nose
        return nose[3] if len(nose) else None

    @property
    def mouth(self) -> np.ndarray:
        return self._region(48, 68)

    @property
    def left_eye_outer(self) -> Optional[np.ndarray]:
        eye = self.left_eye
        return eye[0] if len(eye) else None

    @property
    def right_eye_outer(self) -> Optional[np.ndarray]:
        eye = self.right_eye
        return eye[3] if len(eye) else None


@dataclass(frozen=True, eq=False)
class FrameAnalysis:
    """Result of analyzing one frame.

    Attributes:
        box: Face bounding box.
        landmarks: 68-point landmarks.
        descriptor: Face embedding, or None when no embedding model is
            loaded.
        detection_score: Detector confidence in [0.0, 1.0].
    """
    box: BoundingBox
    landmarks: FaceLandmarks
    descriptor: Optional[np.ndarray]
    detection_score: float


@dataclass(frozen=True)
class HeadPose:
    """Head rotation in degrees. (0, 0, 0) = frontal."""
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0

    def to_dict(self) -> dict:
        return {"yaw": self.yaw, "pitch": self.pitch, "roll": self.roll}


# ═══════════════════════════════════════════════════════════════
# Liveness
# ═══════════════════════════════════════════════════════════════

class LivenessStep(str, Enum):
    BLINK = "blink"
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"
    SMILE = "smile"
    COMPLETE = "complete"


CANONICAL_STEPS: tuple[LivenessStep, ...] = (
    LivenessStep.BLINK,
    LivenessStep.TURN_LEFT,
    LivenessStep.TURN_RIGHT,
    LivenessStep.SMILE,
)


@dataclass(frozen=True)
class LivenessState:
    """Liveness progress for one capture session.

    Never mutated: the engine returns a new instance each tick.
    completed_steps is always a prefix of required_steps, and
    current_step is the first required step not yet completed
    (COMPLETE once all are done).
    """
    required_steps: tuple[LivenessStep, ...] = CANONICAL_STEPS
    current_step: LivenessStep = LivenessStep.BLINK
    completed_steps: tuple[LivenessStep, ...] = ()
    blink_count: int = 0
    last_blink_timestamp: Optional[float] = None
    eye_aspect_ratio: Optional[float] = None
    head_pose: Optional[HeadPose] = None
    quality_score: float = 0.0
    liveness_score: float = 0.0

    @property
    def is_complete(self) -> bool:
        return self.current_step == LivenessStep.COMPLETE

    @property
    def blink_detected(self) -> bool:
        return self.blink_count > 0

    def to_dict(self) -> dict:
        return {
            "current_step": self.current_step.value,
            "completed_steps": [s.value for s in self.completed_steps],
            "blink_count": self.blink_count,
            "eye_aspect_ratio": self.eye_aspect_ratio,
            "head_pose": self.head_pose.to_dict() if self.head_pose else None,
            "quality_score": self.quality_score,
            "liveness_score": self.liveness_score,
        }


@dataclass(frozen=True)
class SpoofSignal:
    """Texture signal for one frame."""
    spoof_detected: bool
    deviation: float


# ═══════════════════════════════════════════════════════════════
# Capture session
# ═══════════════════════════════════════════════════════════════

class CaptureMode(str, Enum):
    REGISTER = "register"
    LOGIN = "login"


class CaptureStep(str, Enum):
    READY = "ready"
    LOADING = "loading"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class CaptureSession:
    """Mutable state of the active capture session.

    Owned by CaptureController; discarded on cancel, success or
    unrecoverable error.
    """
    session_id: str
    mode: CaptureMode
    generation: int
    started_at: float
    liveness: LivenessState
    step: CaptureStep = CaptureStep.LOADING
    last_frame: Optional[np.ndarray] = None
    last_frame_timestamp: float = 0.0
    last_analysis: Optional[FrameAnalysis] = None
    last_spoof: Optional[SpoofSignal] = None
    ticks: int = 0
    consecutive_failures: int = 0


@dataclass(frozen=True)
class CapturePayload:
    """Finished capture handed to the submission sink."""
    image_data: str
    timestamp: str
    face_detected: bool
    blink_detected: bool
    anti_spoofing_passed: bool
    face_descriptor: Optional[tuple[float, ...]] = None
    liveness_score: Optional[float] = None
    quality_score: Optional[float] = None
    head_pose: Optional[HeadPose] = None
    mode: CaptureMode = CaptureMode.LOGIN
    session_id: str = ""

    def to_dict(self) -> dict:
        """Serialize with the client's camelCase keys, omitting empty optionals."""
        data = {
            "imageData": self.image_data,
            "timestamp": self.timestamp,
            "faceDetected": self.face_detected,
            "blinkDetected": self.blink_detected,
            "antiSpoofingPassed": self.anti_spoofing_passed,
            "mode": self.mode.value,
            "sessionId": self.session_id,
        }
        if self.face_descriptor is not None:
            data["faceDescriptor"] = list(self.face_descriptor)
        if self.liveness_score is not None:
            data["livenessScore"] = self.liveness_score
        if self.quality_score is not None:
            data["qualityScore"] = self.quality_score
        if self.head_pose is not None:
            data["headPose"] = self.head_pose.to_dict()
        return data


@dataclass(frozen=True, eq=False)
class ControllerSnapshot:
    """Merged state republished to UI listeners after every change."""
    step: CaptureStep
    mode: Optional[CaptureMode]
    session_id: Optional[str]
    liveness: Optional[LivenessState]
    face_detected: bool
    spoof: Optional[SpoofSignal]
    analysis: Optional[FrameAnalysis]
    status_message: str
    error: Optional[Exception] = None
    extra: dict = field(default_factory=dict)
