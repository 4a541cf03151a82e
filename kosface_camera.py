"""
KosFace — Camera Frame Source
==============================
Owns ALL camera interaction. No other module touches
cv2.VideoCapture directly.

Features:
  - Deferred open: the device is acquired in start(), not __init__
  - Background reader thread that keeps only the latest valid frame
  - Bounded start (first frame must arrive before the deadline)
  - OS/OpenCV failures mapped to CameraError kinds
  - Per-frame validation (shape, dtype, channel count, brightness)
  - Health reporting (FPS, drop rate, last frame age)
  - Idempotent stop(), context manager support
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from collections import deque
from typing import Callable, Optional

import cv2
import numpy as np

from kosface_errors import CameraError, CameraErrorKind


_log = logging.getLogger("KosFaceCamera")


class FrameSource:
    """Threaded, validated webcam source.

    Usage:
        with FrameSource(0) as src:
            src.start(timeout=10.0)
            frame, ts = src.read_latest()
    """

    # ── Validation constants ──────────────────────────────────
    MIN_HEIGHT: int = 120
    MIN_WIDTH: int = 160
    EXPECTED_CHANNELS: int = 3
    MIN_MEAN_BRIGHTNESS: float = 5.0    # lens cap / hw failure
    MAX_MEAN_BRIGHTNESS: float = 250.0  # sensor saturation
    FPS_WINDOW: int = 30
    READ_RETRY_DELAY_S: float = 0.005

    def __init__(
        self,
        camera_id: int = 0,
        width: int = 640,
        height: int = 480,
        backend: int = cv2.CAP_ANY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._camera_id = camera_id
        self._width = width
        self._height = height
        self._backend = backend
        self._clock = clock

        self._cap: Optional[cv2.VideoCapture] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._first_frame = threading.Event()
        self._lock = threading.Lock()

        self._latest: Optional[np.ndarray] = None
        self._latest_ts: float = 0.0
        self._resolution: tuple[int, int] = (0, 0)

        self._frames_total = 0
        self._frames_dropped = 0
        self._frame_times: deque[float] = deque(maxlen=self.FPS_WINDOW)

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def camera_id(self) -> int:
        return self._camera_id

    def start(self, timeout: float = 10.0) -> None:
        """Acquire the device and wait for the first valid frame.

        Raises:
            CameraError: kind PERMISSION_DENIED, NOT_FOUND, UNAVAILABLE
                or TIMEOUT. The device is released before raising.
        """
        if self._cap is not None:
            return

        self._cap = self._open_capture()
        self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._width)
        self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._height)
        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._resolution = (
            int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0),
            int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0),
        )

        self._stop_event.clear()
        self._first_frame.clear()
        self._thread = threading.Thread(
            target=self._reader, name=f"KosFaceCamera-{self._camera_id}", daemon=True
        )
        self._thread.start()

        if not self._first_frame.wait(timeout):
            self.stop()
            raise CameraError(
                CameraErrorKind.TIMEOUT,
                f"no frame from camera {self._camera_id} within {timeout:.1f}s",
            )

        _log.info(
            "Camera %d started — resolution=%s buffer=1",
            self._camera_id, self._resolution,
        )

    def stop(self) -> None:
        """Stop the reader and release the device. Safe to call repeatedly."""
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

        cap, self._cap = self._cap, None
        if cap is None:
            return
        cap.release()
        with self._lock:
            self._latest = None
            self._latest_ts = 0.0
        health = self.get_health_status()
        _log.info(
            "Camera %d released — total=%d dropped=%d (%.1f%%) avg_fps=%.1f",
            self._camera_id,
            health["frames_total"],
            health["frames_dropped"],
            health["drop_rate_pct"],
            health["fps_actual"],
        )

    def __enter__(self) -> "FrameSource":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # ── Frame access ──────────────────────────────────────────

    def read_latest(self) -> tuple[Optional[np.ndarray], float]:
        """Most recent valid frame and its timestamp, or (None, 0.0)."""
        with self._lock:
            return self._latest, self._latest_ts

    def get_health_status(self) -> dict:
        now = self._clock()
        with self._lock:
            last_ts = self._latest_ts
        last_age_ms = (now - last_ts) * 1000.0 if last_ts > 0 else float("inf")
        return {
            "running": self.is_running,
            "fps_actual": self._calculate_fps(),
            "frames_total": self._frames_total,
            "frames_dropped": self._frames_dropped,
            "drop_rate_pct": (
                self._frames_dropped / self._frames_total * 100.0
                if self._frames_total else 0.0
            ),
            "last_valid_frame_age_ms": round(last_age_ms, 2),
            "resolution": self._resolution,
        }

    # ── Private helpers ───────────────────────────────────────

    def _open_capture(self) -> cv2.VideoCapture:
        try:
            cap = cv2.VideoCapture(self._camera_id, self._backend)
        except PermissionError as exc:
            raise CameraError(CameraErrorKind.PERMISSION_DENIED, str(exc)) from exc
        except cv2.error as exc:
            raise CameraError(CameraErrorKind.UNAVAILABLE, str(exc)) from exc
        except OSError as exc:
            raise CameraError(CameraErrorKind.UNAVAILABLE, str(exc)) from exc

        if not cap.isOpened():
            cap.release()
            kind = self._probe_device() or CameraErrorKind.NOT_FOUND
            raise CameraError(kind, f"cannot open camera {self._camera_id}")
        return cap

    def _probe_device(self) -> Optional[CameraErrorKind]:
        """Explain a failed open from the device node (Linux only)."""
        if not sys.platform.startswith("linux"):
            return None
        node = f"/dev/video{self._camera_id}"
        if not os.path.exists(node):
            return CameraErrorKind.NOT_FOUND
        if not os.access(node, os.R_OK | os.W_OK):
            return CameraErrorKind.PERMISSION_DENIED
        return None

    def _reader(self) -> None:
        """Background thread: keep the latest valid frame."""
        while not self._stop_event.is_set():
            cap = self._cap
            if cap is None:
                break
            try:
                ok, frame = cap.read()
            except cv2.error:
                _log.exception("Camera %d read failed", self._camera_id)
                ok, frame = False, None

            self._frames_total += 1
            reason = self._validate_frame(ok, frame)
            if reason is not None:
                self._frames_dropped += 1
                _log.debug("Frame rejected: %s", reason)
                self._stop_event.wait(self.READ_RETRY_DELAY_S)
                continue

            ts = self._clock()
            with self._lock:
                if self._stop_event.is_set():
                    break
                self._latest = frame
                self._latest_ts = ts
            self._frame_times.append(ts)
            self._first_frame.set()

    def _validate_frame(self, ok: bool, frame) -> Optional[str]:
        """Return None for a usable frame, otherwise the rejection reason."""
        if not ok or frame is None:
            return "read failed"
        if not isinstance(frame, np.ndarray) or frame.ndim != 3:
            return "expected an (H, W, C) array"
        if frame.shape[2] != self.EXPECTED_CHANNELS:
            return f"channels={frame.shape[2]}"
        if frame.dtype != np.uint8:
            return f"dtype={frame.dtype}"
        h, w = frame.shape[:2]
        if h < self.MIN_HEIGHT or w < self.MIN_WIDTH:
            return f"resolution {w}x{h} below {self.MIN_WIDTH}x{self.MIN_HEIGHT}"
        brightness = float(frame.mean())
        if brightness <= self.MIN_MEAN_BRIGHTNESS:
            return f"all-black frame (mean={brightness:.2f})"
        if brightness >= self.MAX_MEAN_BRIGHTNESS:
            return f"all-white frame (mean={brightness:.2f})"
        return None

    def _calculate_fps(self) -> float:
        times = list(self._frame_times)
        if len(times) < 2:
            return 0.0
        elapsed = times[-1] - times[0]
        if elapsed <= 0:
            return 0.0
        return (len(times) - 1) / elapsed
