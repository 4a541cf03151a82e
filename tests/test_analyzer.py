"""
KosFace — Face Analyzer Tests
==============================
Landmark conversion and the analyze() contract with the MediaPipe and
ONNX backends mocked out.
"""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from kosface_analyzer import (
    MP_478_TO_68,
    FaceAnalyzer,
    MediaPipeFaceAnalyzer,
    box_from_points,
    convert_478_to_68,
    landmark_confidence,
    mesh_to_pixels,
    preprocess_for_embedding,
)
from kosface_errors import AnalysisError
from kosface_types import BoundingBox, FrameAnalysis


def _make_mesh(seed: int = 0) -> np.ndarray:
    """Normalized 478-point mesh spread over the frame centre."""
    rng = np.random.RandomState(seed)
    mesh = np.zeros((478, 3), dtype=np.float32)
    mesh[:, 0] = rng.uniform(0.3, 0.7, 478)
    mesh[:, 1] = rng.uniform(0.25, 0.75, 478)
    return mesh


def _make_frame() -> np.ndarray:
    rng = np.random.RandomState(1)
    return rng.randint(40, 220, size=(480, 640, 3), dtype=np.uint8)


def _ready_analyzer(**kwargs) -> MediaPipeFaceAnalyzer:
    analyzer = MediaPipeFaceAnalyzer(model_dir="/nonexistent", **kwargs)
    analyzer._loaded = True
    analyzer._landmarker = MagicMock()
    return analyzer


# ─── Landmark geometry ────────────────────────────────────────

def test_mapping_has_68_unique_mesh_indices():
    assert MP_478_TO_68.shape == (68,)
    assert len(set(MP_478_TO_68.tolist())) == 68
    assert MP_478_TO_68.max() < 478
    assert MP_478_TO_68[30] == 1      # nose tip
    assert MP_478_TO_68[36] == 33     # outer eye corner
    assert MP_478_TO_68[45] == 263    # outer eye corner


def test_convert_478_to_68_scales_to_pixels():
    mesh = _make_mesh()
    pts = convert_478_to_68(mesh, 640, 480)
    assert pts.shape == (68, 2)
    assert pts[30, 0] == pytest.approx(mesh[1, 0] * 640)
    assert pts[30, 1] == pytest.approx(mesh[1, 1] * 480)
    assert pts[45, 0] == pytest.approx(mesh[263, 0] * 640)


def test_convert_rejects_short_mesh():
    with pytest.raises(ValueError):
        convert_478_to_68(np.zeros((68, 3)), 640, 480)


def test_box_from_points_is_padded_and_clipped():
    pts = np.array([[5, 5], [100, 200]], dtype=np.float32)
    box = box_from_points(pts, 105, 300)
    assert (box.x, box.y) == (0.0, 0.0)
    assert box.width == pytest.approx(105.0)
    assert box.height == pytest.approx(210.0)


def test_landmark_confidence_range():
    pts = convert_478_to_68(_make_mesh(), 640, 480)
    box = box_from_points(pts, 640, 480)
    score = landmark_confidence(pts, box)
    assert 0.6 <= score <= 1.0
    assert landmark_confidence(pts, BoundingBox(0, 0, 0, 0)) == 0.0


def test_preprocess_for_embedding_shape():
    blob = preprocess_for_embedding(_make_frame()[:200, :150])
    assert blob.shape == (1, 3, 112, 112)
    assert blob.dtype == np.float32
    assert blob.min() >= -1.0 and blob.max() <= 1.0


# ─── Availability ─────────────────────────────────────────────

def test_missing_landmarker_model_degrades_to_unavailable(tmp_path):
    analyzer = MediaPipeFaceAnalyzer(model_dir=str(tmp_path))
    assert analyzer.load() is False
    assert analyzer.is_available is False
    assert analyzer.analyze(_make_frame()) is None


def test_landmarker_load_exception_degrades(tmp_path):
    (tmp_path / "face_landmarker.task").write_bytes(b"not a model")
    analyzer = MediaPipeFaceAnalyzer(model_dir=str(tmp_path))
    with patch.dict(sys.modules, {"mediapipe": None, "mediapipe.tasks": None,
                                  "mediapipe.tasks.python": None}):
        assert analyzer.load() is False
    assert analyzer.analyze(_make_frame()) is None


def test_missing_embedding_model_leaves_descriptor_none(tmp_path):
    analyzer = MediaPipeFaceAnalyzer(model_dir=str(tmp_path))
    analyzer._landmarker = MagicMock()
    analyzer._load_embedder()
    assert analyzer.has_embedder is False


# ─── analyze() contract ───────────────────────────────────────

def test_analyze_returns_first_face():
    analyzer = _ready_analyzer()
    first, second = _make_mesh(0), _make_mesh(1)
    with patch.object(analyzer, "_detect", return_value=[first, second]):
        result = analyzer.analyze(_make_frame())

    assert isinstance(result, FrameAnalysis)
    assert result.descriptor is None
    assert 0.5 <= result.detection_score <= 1.0
    expected = convert_478_to_68(first, 640, 480)
    assert np.allclose(result.landmarks.points, expected)


def test_analyze_no_face_returns_none():
    analyzer = _ready_analyzer()
    with patch.object(analyzer, "_detect", return_value=[]):
        assert analyzer.analyze(_make_frame()) is None


def test_analyze_below_threshold_returns_none():
    analyzer = _ready_analyzer(detection_threshold=0.7)
    clumped = np.full((478, 3), 0.5, dtype=np.float32)  # zero spread → score 0.6
    with patch.object(analyzer, "_detect", return_value=[clumped]):
        assert analyzer.analyze(_make_frame()) is None


def test_face_running_off_frame_scores_below_centred_face():
    clipped = _make_mesh(2)
    clipped[:, 0] = np.random.RandomState(2).uniform(0.8, 1.3, 478)  # ~60% past the right edge

    centred_px = mesh_to_pixels(_make_mesh(2), 640, 480)
    clipped_px = mesh_to_pixels(clipped, 640, 480)
    centred_score = landmark_confidence(centred_px, box_from_points(centred_px, 640, 480))
    clipped_score = landmark_confidence(clipped_px, box_from_points(clipped_px, 640, 480))

    assert centred_score >= 0.95
    assert clipped_score < 0.7

    analyzer = _ready_analyzer(detection_threshold=0.7)
    with patch.object(analyzer, "_detect", return_value=[clipped]):
        assert analyzer.analyze(_make_frame()) is None
    with patch.object(analyzer, "_detect", return_value=[_make_mesh(2)]):
        assert analyzer.analyze(_make_frame()) is not None


def test_box_spans_full_mesh():
    analyzer = _ready_analyzer()
    mesh = _make_mesh()
    with patch.object(analyzer, "_detect", return_value=[mesh]):
        result = analyzer.analyze(_make_frame())
    expected = box_from_points(mesh_to_pixels(mesh, 640, 480), 640, 480)
    assert result.box == expected


def test_backend_exception_becomes_analysis_error():
    analyzer = _ready_analyzer()
    with patch.object(analyzer, "_detect", side_effect=RuntimeError("graph failed")):
        with pytest.raises(AnalysisError):
            analyzer.analyze(_make_frame())


def test_bad_frame_is_analysis_error():
    analyzer = _ready_analyzer()
    with pytest.raises(AnalysisError):
        analyzer.analyze(np.zeros((480, 640), dtype=np.uint8))


def test_descriptor_is_l2_normalized():
    analyzer = _ready_analyzer()
    session = MagicMock()
    session.run.return_value = [np.full((1, 512), 3.0, dtype=np.float32)]
    analyzer._session = session
    analyzer._input_name = "input.1"

    with patch.object(analyzer, "_detect", return_value=[_make_mesh()]):
        result = analyzer.analyze(_make_frame())

    assert result.descriptor.shape == (512,)
    assert np.linalg.norm(result.descriptor) == pytest.approx(1.0, abs=1e-5)
    blob = session.run.call_args[0][1]["input.1"]
    assert blob.shape == (1, 3, 112, 112)


def test_embedding_failure_is_analysis_error():
    analyzer = _ready_analyzer()
    analyzer._session = MagicMock()
    analyzer._session.run.side_effect = RuntimeError("onnx")
    analyzer._input_name = "input.1"
    with patch.object(analyzer, "_detect", return_value=[_make_mesh()]):
        with pytest.raises(AnalysisError):
            analyzer.analyze(_make_frame())


def test_release_closes_landmarker():
    analyzer = _ready_analyzer()
    landmarker = analyzer._landmarker
    analyzer.release()
    landmarker.close.assert_called_once()
    assert analyzer.is_available is False


def test_face_analyzer_is_abstract():
    with pytest.raises(TypeError):
        FaceAnalyzer()
