"""
KosFace — Face Analysis Backend
================================
Owns ALL face detection and embedding. The capture flow only depends on
the FaceAnalyzer.analyze(frame) contract.

Features:
  - FaceAnalyzer abstract base (load / analyze / release)
  - MediaPipe FaceLandmarker backend (VIDEO mode, 478-point mesh)
  - 478→68 landmark conversion (iBUG layout)
  - Bounding box and detection score derived from the landmarks
  - ArcFace ONNX embedding (112x112 RGB, 512-d, L2-normalized)
  - Graceful degradation: missing landmarker → analyzer unavailable,
    missing embedding model → descriptor=None
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import cv2
import numpy as np

from kosface_errors import AnalysisError
from kosface_types import BoundingBox, FaceLandmarks, FrameAnalysis


_log = logging.getLogger("KosFaceAnalyzer")

_PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))


# ═══════════════════════════════════════════════════════════════
# MediaPipe 478 → iBUG 68 mapping
# ═══════════════════════════════════════════════════════════════
# Image-left eye (36-41) and image-right eye (42-47) are listed
# p1..p6 in EAR order: outer corner, two upper lids, inner corner,
# two lower lids (mirrored for the second eye).

_JAW = [234, 93, 132, 58, 172, 136, 150, 149, 152,
        378, 379, 365, 397, 288, 361, 323, 454]            # 0-16
_BROW_A = [70, 63, 105, 66, 107]                            # 17-21
_BROW_B = [336, 296, 334, 293, 300]                         # 22-26
_NOSE = [168, 6, 197, 1, 98, 97, 2, 326, 327]               # 27-35, tip=30
_EYE_A = [33, 160, 158, 133, 153, 144]                      # 36-41
_EYE_B = [362, 385, 387, 263, 373, 380]                     # 42-47
_MOUTH_OUTER = [61, 40, 37, 0, 267, 270,
                291, 321, 314, 17, 84, 91]                  # 48-59
_MOUTH_INNER = [78, 81, 13, 311, 308, 402, 14, 178]         # 60-67

MP_478_TO_68 = np.array(
    _JAW + _BROW_A + _BROW_B + _NOSE + _EYE_A + _EYE_B
    + _MOUTH_OUTER + _MOUTH_INNER,
    dtype=np.int64,
)
if MP_478_TO_68.shape != (68,):
    raise ValueError(f"478->68 mapping must have 68 entries, got {MP_478_TO_68.shape}")

BOX_MARGIN_PX = 10
EMBEDDING_SIZE = 112


def mesh_to_pixels(mesh: np.ndarray, frame_width: int, frame_height: int) -> np.ndarray:
    """Normalized (478, 2+) MediaPipe mesh → (478, 2) pixel coordinates."""
    mesh = np.asarray(mesh, dtype=np.float32)
    if mesh.ndim != 2 or mesh.shape[0] <= int(MP_478_TO_68.max()):
        raise ValueError(f"expected a 478-point mesh, got {mesh.shape}")
    pts = mesh[:, :2].copy()
    pts[:, 0] *= frame_width
    pts[:, 1] *= frame_height
    return pts


def convert_478_to_68(mesh: np.ndarray, frame_width: int, frame_height: int) -> np.ndarray:
    """Normalized (478, 2+) MediaPipe mesh → (68, 2) pixel landmarks."""
    return mesh_to_pixels(mesh, frame_width, frame_height)[MP_478_TO_68]


def box_from_points(points: np.ndarray, frame_width: int, frame_height: int) -> BoundingBox:
    """Landmark extent padded by BOX_MARGIN_PX and clipped to the frame."""
    x_min = max(0.0, float(points[:, 0].min()) - BOX_MARGIN_PX)
    y_min = max(0.0, float(points[:, 1].min()) - BOX_MARGIN_PX)
    x_max = min(float(frame_width), float(points[:, 0].max()) + BOX_MARGIN_PX)
    y_max = min(float(frame_height), float(points[:, 1].max()) + BOX_MARGIN_PX)
    return BoundingBox(x_min, y_min, max(0.0, x_max - x_min), max(0.0, y_max - y_min))


def landmark_confidence(points: np.ndarray, box: BoundingBox) -> float:
    """Landmark quality from spatial consistency, in [0, 1].

    Well-placed landmarks lie inside the box and spread across it;
    clumped or out-of-bounds landmarks score low. The box is padded
    around the same points and clipped to the frame, so coverage only
    drops below 1.0 when the face runs off the frame edge; spread is
    what penalizes a collapsed mesh.
    """
    if box.width <= 0 or box.height <= 0 or points.shape[0] == 0:
        return 0.0

    in_box = (
        (points[:, 0] >= box.x)
        & (points[:, 0] <= box.x + box.width)
        & (points[:, 1] >= box.y)
        & (points[:, 1] <= box.y + box.height)
    )
    coverage = float(in_box.sum()) / points.shape[0]

    x_spread = float(points[:, 0].std()) / max(box.width, 1.0)
    y_spread = float(points[:, 1].std()) / max(box.height, 1.0)
    spread = min(1.0, (x_spread + y_spread) / 0.5)

    return round(min(1.0, max(0.0, coverage * 0.6 + spread * 0.4)), 3)


def preprocess_for_embedding(face_crop: np.ndarray) -> np.ndarray:
    """BGR crop → (1, 3, 112, 112) float32 in ArcFace normalization."""
    img = cv2.resize(face_crop, (EMBEDDING_SIZE, EMBEDDING_SIZE))
    img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
    img = np.transpose(img, (2, 0, 1)).astype(np.float32)
    img = (img - 127.5) / 128.0
    return np.expand_dims(img, axis=0)


# ═══════════════════════════════════════════════════════════════
# Contract
# ═══════════════════════════════════════════════════════════════

class FaceAnalyzer(ABC):
    """Per-frame face analysis backend."""

    def load(self) -> bool:
        """Load models. Returns is_available; never raises."""
        return self.is_available

    @property
    def is_available(self) -> bool:
        return True

    @abstractmethod
    def analyze(self, frame: np.ndarray) -> Optional[FrameAnalysis]:
        """Analyze one BGR frame.

        Returns:
            FrameAnalysis of the first detected face, or None when no face
            passes the detection threshold (or the backend is unavailable).

        Raises:
            AnalysisError: the backend failed on this frame.
        """

    def release(self) -> None:
        pass

    def __enter__(self) -> "FaceAnalyzer":
        self.load()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


# ═══════════════════════════════════════════════════════════════
# MediaPipe + ArcFace backend
# ═══════════════════════════════════════════════════════════════

class MediaPipeFaceAnalyzer(FaceAnalyzer):
    """FaceLandmarker landmarks + ArcFace ONNX descriptor."""

    FRAME_STEP_MS = 33  # VIDEO mode needs strictly increasing timestamps

    def __init__(
        self,
        model_dir: str = "models",
        landmarker_model: str = "face_landmarker.task",
        embedding_model: Optional[str] = "arcface_r100.onnx",
        detection_threshold: float = 0.5,
        max_faces: int = 1,
    ) -> None:
        self._model_dir = model_dir if os.path.isabs(model_dir) else os.path.join(_PROJECT_DIR, model_dir)
        self._landmarker_model = landmarker_model
        self._embedding_model = embedding_model
        self.detection_threshold = detection_threshold
        self._max_faces = max_faces

        self._landmarker = None
        self._session = None
        self._input_name: Optional[str] = None
        self._loaded = False
        self._frame_timestamp_ms = 0

    @classmethod
    def from_config(cls, config) -> "MediaPipeFaceAnalyzer":
        return cls(
            model_dir=config.model_dir,
            landmarker_model=config.landmarker_model,
            embedding_model=config.embedding_model,
            detection_threshold=config.detection_threshold,
        )

    @property
    def is_available(self) -> bool:
        return self._landmarker is not None

    @property
    def has_embedder(self) -> bool:
        return self._session is not None

    def load(self) -> bool:
        if self._loaded:
            return self.is_available
        self._loaded = True
        self._load_landmarker()
        if self._landmarker is not None:
            self._load_embedder()
        return self.is_available

    def _load_landmarker(self) -> None:
        path = os.path.join(self._model_dir, self._landmarker_model)
        if not os.path.exists(path):
            _log.error("FaceLandmarker model not found: %s — analysis disabled", path)
            return
        try:
            from mediapipe.tasks import python
            from mediapipe.tasks.python import vision

            base_options = python.BaseOptions(
                model_asset_path=path,
                delegate=python.BaseOptions.Delegate.CPU,
            )
            options = vision.FaceLandmarkerOptions(
                base_options=base_options,
                running_mode=vision.RunningMode.VIDEO,
                num_faces=self._max_faces,
                min_face_detection_confidence=self.detection_threshold,
                min_face_presence_confidence=self.detection_threshold,
                min_tracking_confidence=0.5,
            )
            self._landmarker = vision.FaceLandmarker.create_from_options(options)
        except Exception as exc:
            _log.error("FaceLandmarker failed to load (%s) — analysis disabled", exc)
            self._landmarker = None
            return
        _log.info(
            "FaceLandmarker loaded: %s (%.1f MB)",
            path, os.path.getsize(path) / 1024 / 1024,
        )

    def _load_embedder(self) -> None:
        if not self._embedding_model:
            return
        path = os.path.join(self._model_dir, self._embedding_model)
        if not os.path.exists(path):
            _log.warning("Embedding model not found at %s — descriptors disabled", path)
            return
        try:
            import onnxruntime as ort

            self._session = ort.InferenceSession(path, providers=["CPUExecutionProvider"])
            self._input_name = self._session.get_inputs()[0].name
        except Exception as exc:
            _log.error("Embedding model failed to load (%s) — descriptors disabled", exc)
            self._session = None
            return
        _log.info("Embedding model loaded: %s", path)

    def analyze(self, frame: np.ndarray) -> Optional[FrameAnalysis]:
        if not self._loaded:
            self.load()
        if not self.is_available:
            return None
        if frame is None or frame.ndim != 3 or frame.shape[2] != 3:
            raise AnalysisError(f"expected a BGR frame, got {getattr(frame, 'shape', None)}")

        h, w = frame.shape[:2]
        try:
            meshes = self._detect(frame)
        except Exception as exc:
            raise AnalysisError(f"landmark detection failed: {exc}") from exc
        if not meshes:
            return None

        mesh_px = mesh_to_pixels(meshes[0], w, h)
        points = mesh_px[MP_478_TO_68]
        box = box_from_points(mesh_px, w, h)
        score = landmark_confidence(mesh_px, box)
        if score < self.detection_threshold:
            _log.debug("Face below detection threshold (%.3f < %.3f)", score, self.detection_threshold)
            return None

        descriptor = None
        if self._session is not None:
            try:
                descriptor = self._embed(frame, box)
            except Exception as exc:
                raise AnalysisError(f"embedding failed: {exc}") from exc

        return FrameAnalysis(
            box=box,
            landmarks=FaceLandmarks(points),
            descriptor=descriptor,
            detection_score=score,
        )

    def release(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
        self._session = None
        self._loaded = False
        _log.info("MediaPipeFaceAnalyzer released")

    # ── Private: backends ─────────────────────────────────────

    def _detect(self, frame: np.ndarray) -> list[np.ndarray]:
        """Run FaceLandmarker; one normalized (478, 3) mesh per face."""
        import mediapipe as mp

        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
        self._frame_timestamp_ms += self.FRAME_STEP_MS
        result = self._landmarker.detect_for_video(image, self._frame_timestamp_ms)
        if not result or not result.face_landmarks:
            return []
        return [
            np.array([[lm.x, lm.y, lm.z] for lm in face], dtype=np.float32)
            for face in result.face_landmarks
        ]

    def _embed(self, frame: np.ndarray, box: BoundingBox) -> Optional[np.ndarray]:
        x, y, bw, bh = box.as_int_tuple()
        crop = frame[y:y + bh, x:x + bw]
        if crop.size == 0:
            return None
        blob = preprocess_for_embedding(crop)
        vector = np.asarray(
            self._session.run(None, {self._input_name: blob})[0][0], dtype=np.float32
        ).ravel()
        norm = float(np.linalg.norm(vector))
        return vector / norm if norm > 0 else vector
