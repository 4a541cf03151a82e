import logging
import time
from typing import Optional, Tuple

import cv2
import numpy as np

from kosface_types import CaptureStep, ControllerSnapshot, FaceLandmarks

_log = logging.getLogger("KosFaceHUD")

# (start, stop, closed) slices of the 68-point layout
_LANDMARK_PATHS = (
    (0, 17, False),   # jaw
    (17, 22, False),  # brow
    (22, 27, False),  # brow
    (27, 31, False),  # nose bridge
    (31, 36, False),  # nostrils
    (36, 42, True),   # eye
    (42, 48, True),   # eye
    (48, 60, True),   # outer lip
    (60, 68, True),   # inner lip
)


class CaptureHUD:
    """Preview overlay: face box, landmark outline, liveness progress and status bar."""

    STEP_COLORS = {
        CaptureStep.READY:      (200, 200, 200),
        CaptureStep.LOADING:    (0, 200, 255),
        CaptureStep.CAPTURING:  (255, 200, 0),
        CaptureStep.PROCESSING: (0, 255, 255),
        CaptureStep.SUCCESS:    (0, 200, 0),
        CaptureStep.FAILED:     (0, 0, 255),
    }
    NO_FACE_COLOR = (100, 100, 100)
    LANDMARK_COLOR = (0, 255, 128)
    SPOOF_COLOR = (0, 165, 255)

    def __init__(self, show_landmarks: bool = True):
        self.show_landmarks = show_landmarks
        _log.info("CaptureHUD initialized (landmarks=%s)", show_landmarks)

    def render(self, frame: np.ndarray, snapshot: Optional[ControllerSnapshot]) -> Tuple[Optional[np.ndarray], float]:
        """Draw the overlay on a copy of `frame`.

        Returns:
            (annotated_frame, render_time_seconds)
        """
        t_start = time.monotonic()
        if frame is None:
            return None, 0.0

        viz = frame.copy()
        if snapshot is not None:
            color = self.STEP_COLORS.get(snapshot.step, self.NO_FACE_COLOR)
            if snapshot.analysis is not None:
                self._draw_face(viz, snapshot, color)
            if snapshot.liveness is not None:
                self._draw_progress(viz, snapshot)
            self._draw_status_bar(viz, snapshot, color)

        return viz, time.monotonic() - t_start

    def _draw_face(self, frame: np.ndarray, snapshot: ControllerSnapshot, color):
        x, y, w, h = snapshot.analysis.box.as_int_tuple()
        cv2.rectangle(frame, (x, y), (x + w, y + h), color, 2)
        if self.show_landmarks:
            self._draw_landmarks(frame, snapshot.analysis.landmarks)
        if snapshot.spoof is not None and snapshot.spoof.spoof_detected:
            cv2.putText(frame, "FLAT TEXTURE", (x, max(15, y - 8)),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, self.SPOOF_COLOR, 1)

    def _draw_landmarks(self, frame: np.ndarray, landmarks: FaceLandmarks):
        pts = np.round(landmarks.points).astype(np.int32)
        for start, stop, closed in _LANDMARK_PATHS:
            if pts.shape[0] < stop:
                continue
            cv2.polylines(frame, [pts[start:stop].reshape(-1, 1, 2)], closed, self.LANDMARK_COLOR, 1)

    def _draw_progress(self, frame: np.ndarray, snapshot: ControllerSnapshot):
        """Checklist of liveness steps in the top-left corner."""
        liveness = snapshot.liveness
        y = 24
        for step in liveness.required_steps:
            done = step in liveness.completed_steps
            current = step == liveness.current_step
            mark = "[x]" if done else ("[>]" if current else "[ ]")
            color = (0, 200, 0) if done else ((0, 255, 255) if current else (180, 180, 180))
            cv2.putText(frame, f"{mark} {step.value}", (10, y),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.5, color, 1)
            y += 20
        cv2.putText(frame, f"Liveness {liveness.liveness_score:.0f}%  Quality {liveness.quality_score:.0f}",
                    (10, y), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)

    def _draw_status_bar(self, frame: np.ndarray, snapshot: ControllerSnapshot, color):
        h, w = frame.shape[:2]
        bar_h = 36
        overlay = frame.copy()
        cv2.rectangle(overlay, (0, h - bar_h), (w, h), (0, 0, 0), -1)
        alpha = 0.6
        cv2.addWeighted(overlay, alpha, frame, 1 - alpha, 0, frame)

        cv2.putText(frame, snapshot.step.value.upper(), (10, h - 12),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.55, color, 2)
        cv2.putText(frame, snapshot.status_message, (130, h - 12),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 255, 255), 1)
