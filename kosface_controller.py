"""
KosFace — Capture Controller
=============================
Orchestrates one face capture session at a time:

    READY → LOADING → CAPTURING → PROCESSING → SUCCESS | FAILED
                                                   ↓        ↓
                                    READY (after 1 s / 2 s)

Features:
  - Single camera owner: start() tears down any active session first
  - PollingTask: one daemon thread, so analyze() calls are serialized
  - Generation token: results from a cancelled/replaced session are dropped
  - Strict (liveness must be COMPLETE) vs. lenient capture per mode
  - Bounded tolerance for consecutive analysis failures
  - Listener snapshots after every state change
  - Audit events for the session lifecycle
"""

from __future__ import annotations

import base64
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import cv2
import numpy as np

from kosface_analyzer import FaceAnalyzer
from kosface_antispoof import AntiSpoofChecker
from kosface_camera import FrameSource
from kosface_config import CaptureConfig
from kosface_errors import (
    AnalysisError,
    CameraError,
    CaptureError,
    KosFaceError,
    SubmissionError,
)
from kosface_liveness import LivenessEngine
from kosface_logger import AuditLogger
from kosface_types import (
    CaptureMode,
    CapturePayload,
    CaptureSession,
    CaptureStep,
    ControllerSnapshot,
    LivenessState,
    LivenessStep,
)


_log = logging.getLogger("KosFaceCapture")

Sink = Callable[[CapturePayload], bool]
Listener = Callable[[ControllerSnapshot], None]


# ─── Status text ─────────────────────────────────────────────

MSG_READY = "Posisikan wajah di depan kamera dan tekan tombol foto"
MSG_LOADING_MODELS = "Memuat model AI..."
MSG_CONNECTING = "Menghubungkan kamera..."
MSG_NO_FACE = "Posisikan wajah Anda di dalam frame"
MSG_FACE_READY = "Wajah terdeteksi - Siap mengambil foto"
MSG_PROCESSING = "Memproses wajah..."
MSG_SUCCESS = "Wajah berhasil dideteksi!"
MSG_FAILED = "Gagal mendeteksi wajah"
MSG_LIVENESS_PENDING = "Selesaikan verifikasi liveness terlebih dahulu"

STEP_PROMPTS = {
    LivenessStep.BLINK: "Kedipkan mata Anda dua kali",
    LivenessStep.TURN_LEFT: "Tolehkan kepala perlahan ke kiri",
    LivenessStep.TURN_RIGHT: "Tolehkan kepala perlahan ke kanan",
    LivenessStep.SMILE: "Tersenyumlah ke arah kamera",
}


def status_message(
    step: CaptureStep,
    liveness: Optional[LivenessState] = None,
    face_detected: bool = False,
    error: Optional[BaseException] = None,
    loading_phase: str = "models",
) -> str:
    """Localized status line for the current controller state."""
    if step == CaptureStep.LOADING:
        return MSG_CONNECTING if loading_phase == "camera" else MSG_LOADING_MODELS
    if step == CaptureStep.CAPTURING:
        if not face_detected:
            return MSG_NO_FACE
        if liveness is not None and not liveness.is_complete:
            return STEP_PROMPTS.get(liveness.current_step, MSG_NO_FACE)
        return MSG_FACE_READY
    if step == CaptureStep.PROCESSING:
        return MSG_PROCESSING
    if step == CaptureStep.SUCCESS:
        return MSG_SUCCESS
    if step == CaptureStep.FAILED:
        return error.user_message if isinstance(error, KosFaceError) else MSG_FAILED
    if isinstance(error, KosFaceError):
        return error.user_message
    return MSG_READY


# ─── Helpers ─────────────────────────────────────────────────

def encode_data_url(frame: np.ndarray, quality: int = 80) -> str:
    """BGR frame → 'data:image/jpeg;base64,...'."""
    try:
        ok, buf = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    except cv2.error as exc:
        raise CaptureError(f"JPEG encoding failed: {exc}") from exc
    if not ok:
        raise CaptureError("JPEG encoding failed")
    return "data:image/jpeg;base64," + base64.b64encode(buf.tobytes()).decode("ascii")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PollingTask:
    """Calls `callback` every `interval_s` on one daemon thread until stopped."""

    def __init__(self, callback: Callable[[], object], interval_s: float, name: str = "KosFacePoll"):
        self._callback = callback
        self._interval = interval_s
        self._name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Signal the loop and wait for the in-flight tick to finish."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self._callback()
            except Exception:
                _log.exception("Polling tick failed")
            delay = max(0.0, self._interval - (time.monotonic() - started))
            if self._stop.wait(delay):
                break


# ═══════════════════════════════════════════════════════════════
# Controller
# ═══════════════════════════════════════════════════════════════

class CaptureController:
    """Owns the capture session, its camera and its polling task.

    Listeners are invoked with the controller lock held, on whichever
    thread caused the change (the polling thread for ticks). Keep them
    short and do not block on other threads from inside one.
    """

    def __init__(
        self,
        analyzer: FaceAnalyzer,
        config: Optional[CaptureConfig] = None,
        sink: Optional[Sink] = None,
        source_factory: Optional[Callable[[], FrameSource]] = None,
        audit: Optional[AuditLogger] = None,
        engine: Optional[LivenessEngine] = None,
        checker: Optional[AntiSpoofChecker] = None,
        clock: Callable[[], float] = time.monotonic,
        auto_poll: bool = True,
    ) -> None:
        self.config = config or CaptureConfig()
        self.analyzer = analyzer
        self.engine = engine or LivenessEngine.from_config(self.config)
        self.checker = checker or AntiSpoofChecker.from_config(self.config)
        self._sink = sink
        self._source_factory = source_factory or self._default_source
        self._audit_log = audit
        self._clock = clock
        self.auto_poll = auto_poll

        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._session: Optional[CaptureSession] = None
        self._step = CaptureStep.READY
        self._mode: Optional[CaptureMode] = None
        self._generation = 0
        self._source: Optional[FrameSource] = None
        self._poller: Optional[PollingTask] = None
        self._reset_timer: Optional[threading.Timer] = None
        self._last_error: Optional[KosFaceError] = None
        self._loading_phase = "models"

    def _default_source(self) -> FrameSource:
        cfg = self.config
        return FrameSource(cfg.camera_id, cfg.frame_width, cfg.frame_height)

    # ── Read-only state ───────────────────────────────────────

    @property
    def step(self) -> CaptureStep:
        return self._step

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def last_error(self) -> Optional[KosFaceError]:
        return self._last_error

    @property
    def is_polling(self) -> bool:
        poller = self._poller
        return poller is not None and poller.is_running

    def snapshot(self) -> ControllerSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def latest_frame(self) -> Optional[np.ndarray]:
        """Most recent camera frame for preview, or None."""
        with self._lock:
            source = self._source
        if source is None:
            return None
        frame, _ = source.read_latest()
        return frame

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self, mode: CaptureMode = CaptureMode.LOGIN) -> ControllerSnapshot:
        """Begin a session: warm up the analyzer, acquire the camera, poll.

        Raises:
            CameraError: camera acquisition failed. The controller is
                left in FAILED (auto-reset to READY) and never reached
                CAPTURING.
        """
        mode = CaptureMode(mode)
        with self._lock:
            stale = self._detach_locked()
            self._cancel_reset_timer_locked()
            self._generation += 1
            gen = self._generation
            self._session = CaptureSession(
                session_id=uuid.uuid4().hex[:12],
                mode=mode,
                generation=gen,
                started_at=self._clock(),
                liveness=self.engine.new_state(),
            )
            session_id = self._session.session_id
            self._mode = mode
            self._set_step_locked(CaptureStep.LOADING)
            self._last_error = None
            self._loading_phase = "models"
            self._publish_locked()
        self._release(*stale)

        _log.info("Session %s started (mode=%s)", session_id, mode.value)
        self._audit("session_started", session_id, mode=mode.value,
                    required_steps=[s.value for s in self.engine.required_steps])

        if not self.analyzer.load():
            _log.warning("Face analyzer unavailable; liveness cannot progress")

        with self._lock:
            if self._generation != gen:
                return self._snapshot_locked()
            self._loading_phase = "camera"
            self._publish_locked()

        source = self._source_factory()
        try:
            source.start(timeout=self.config.camera_start_timeout_s)
        except CameraError as exc:
            source.stop()
            with self._lock:
                current = self._generation == gen
                if current:
                    self._fail_locked(exc)
            if current:
                self._audit_error("camera_failed", exc, session_id, kind=exc.kind.value)
                raise
            return self.snapshot()

        with self._lock:
            if self._generation != gen:
                orphan = source
            else:
                orphan = None
                self._source = source
                self._set_step_locked(CaptureStep.CAPTURING)
                if self.auto_poll:
                    self._poller = PollingTask(
                        self.poll_once,
                        self.config.polling_interval_ms / 1000.0,
                        name=f"KosFacePoll-{session_id}",
                    )
                    self._poller.start()
            snap = self._publish_locked() if orphan is None else self._snapshot_locked()
        if orphan is not None:
            orphan.stop()
        return snap

    def cancel(self) -> None:
        """Stop polling, release the camera and return to READY.

        Once this returns no further snapshot from the cancelled session
        reaches listeners.
        """
        with self._lock:
            session = self._session
            was = self._step
            self._cancel_reset_timer_locked()
            self._generation += 1
            stale = self._detach_locked()
            self._session = None
            self._set_step_locked(CaptureStep.READY)
            self._last_error = None
            if session is not None or was != CaptureStep.READY:
                self._publish_locked()
        self._release(*stale)
        if session is not None:
            _log.info("Session %s cancelled", session.session_id)
            self._audit("session_cancelled", session.session_id, step=was.value,
                        ticks=session.ticks)

    def close(self) -> None:
        self.cancel()
        with self._lock:
            self._listeners.clear()

    def __enter__(self) -> "CaptureController":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ── Polling ───────────────────────────────────────────────

    def poll_once(self) -> Optional[ControllerSnapshot]:
        """Run one tick. Returns the published snapshot, or None when the
        tick produced nothing (no session, no frame, stale result)."""
        with self._lock:
            session = self._session
            source = self._source
            if session is None or source is None or self._step != CaptureStep.CAPTURING:
                return None
            gen = session.generation

        frame, frame_ts = source.read_latest()
        if frame is None:
            return None

        try:
            analysis = self.analyzer.analyze(frame)
        except Exception as exc:
            return self._on_analysis_failure(gen, exc)

        spoof = self.checker.check(frame, analysis) if self.config.anti_spoof_enabled else None
        now = self._clock()

        with self._lock:
            if not self._is_current_locked(gen):
                return None
            session.consecutive_failures = 0
            session.liveness = self.engine.update(session.liveness, analysis, now)
            session.last_frame = frame
            session.last_frame_timestamp = frame_ts
            session.last_analysis = analysis
            session.last_spoof = spoof
            session.ticks += 1
            self._last_error = None
            return self._publish_locked()

    def _on_analysis_failure(self, gen: int, exc: Exception) -> Optional[ControllerSnapshot]:
        error = exc if isinstance(exc, AnalysisError) else AnalysisError(str(exc))
        limit = self.config.max_consecutive_analysis_failures
        with self._lock:
            if not self._is_current_locked(gen):
                return None
            session = self._session
            session.consecutive_failures += 1
            failures = session.consecutive_failures
            _log.warning("Analysis failed (%d/%d): %s", failures, limit, exc)
            if failures < limit:
                return None
            stale = self._fail_locked(error)
            snap = self._snapshot_locked()
        self._release(*stale)
        self._audit_error("analysis_failed", error, session.session_id,
                          consecutive_failures=failures)
        return snap

    # ── Capture ───────────────────────────────────────────────

    def capture(self) -> Optional[CapturePayload]:
        """Take the current frame, build the payload and hand it to the sink.

        Returns None when not CAPTURING (request ignored).

        Raises:
            CaptureError: strict mode with liveness incomplete (session
                stays CAPTURING), or the frame could not be encoded
                (session FAILED).
            SubmissionError: the sink rejected the payload (session READY).
        """
        with self._lock:
            session = self._session
            if session is None or self._step != CaptureStep.CAPTURING:
                _log.info("capture() ignored in step %s", self._step.value)
                return None
            if self.config.is_strict(session.mode) and not session.liveness.is_complete:
                error = CaptureError(
                    f"liveness incomplete (step={session.liveness.current_step.value})",
                    user_message=MSG_LIVENESS_PENDING,
                )
                self._last_error = error
                self._publish_locked()
                raise error

            frame, analysis = session.last_frame, session.last_analysis
            if frame is None and self._source is not None:
                frame, _ = self._source.read_latest()
                analysis = None
            spoof = session.last_spoof
            liveness = session.liveness

            self._generation += 1
            gen = self._generation
            self._set_step_locked(CaptureStep.PROCESSING)
            self._last_error = None
            stale = self._detach_locked()
            self._publish_locked()
        self._release(*stale)

        try:
            if frame is None:
                raise CaptureError("no frame available")
            image_data = encode_data_url(frame, self.config.jpeg_quality)
        except CaptureError as exc:
            with self._lock:
                if self._generation == gen:
                    self._fail_locked(exc)
            self._audit_error("capture_failed", exc, session.session_id)
            raise

        payload = self._build_payload(session, image_data, analysis, spoof, liveness)

        with self._lock:
            if self._generation != gen:
                return None
            self._set_step_locked(CaptureStep.SUCCESS)
            self._session = None
            self._schedule_reset_locked(self.config.success_reset_ms)
            self._publish_locked()

        self._submit(payload, gen)
        _log.info("Session %s captured (face=%s, liveness=%.0f)",
                  session.session_id, payload.face_detected, liveness.liveness_score)
        self._audit(
            "capture_completed", session.session_id,
            face_detected=payload.face_detected,
            blink_detected=payload.blink_detected,
            anti_spoofing_passed=payload.anti_spoofing_passed,
            liveness_score=payload.liveness_score,
            quality_score=payload.quality_score,
            completed_steps=[s.value for s in liveness.completed_steps],
        )
        return payload

    def _build_payload(self, session, image_data, analysis, spoof, liveness) -> CapturePayload:
        descriptor = None
        if analysis is not None and analysis.descriptor is not None:
            descriptor = tuple(float(v) for v in np.asarray(analysis.descriptor).ravel())
        if spoof is not None:
            spoof_passed = not spoof.spoof_detected
        else:
            spoof_passed = not self.config.anti_spoof_enabled
        return CapturePayload(
            image_data=image_data,
            timestamp=utc_timestamp(),
            face_detected=analysis is not None,
            blink_detected=liveness.blink_detected,
            anti_spoofing_passed=spoof_passed,
            face_descriptor=descriptor,
            liveness_score=liveness.liveness_score if self.config.liveness_enabled else None,
            quality_score=liveness.quality_score if analysis is not None else None,
            head_pose=liveness.head_pose,
            mode=session.mode,
            session_id=session.session_id,
        )

    def _submit(self, payload: CapturePayload, gen: int) -> None:
        if self._sink is None:
            return
        cause = None
        try:
            accepted = bool(self._sink(payload))
        except Exception as exc:
            _log.exception("Submission sink raised")
            accepted, cause = False, exc
        if accepted:
            return

        error = SubmissionError(f"sink rejected payload: {cause}" if cause else "sink rejected payload")
        with self._lock:
            if self._generation == gen:
                self._cancel_reset_timer_locked()
                self._set_step_locked(CaptureStep.READY)
                self._last_error = error
                self._publish_locked()
        self._audit_error("submission_failed", error, payload.session_id)
        raise error from cause

    # ── Internal state handling (lock held) ───────────────────

    def _set_step_locked(self, step: CaptureStep) -> None:
        self._step = step
        if self._session is not None:
            self._session.step = step

    def _is_current_locked(self, gen: int) -> bool:
        return (
            self._session is not None
            and self._session.generation == gen
            and self._generation == gen
            and self._step == CaptureStep.CAPTURING
        )

    def _detach_locked(self) -> tuple:
        poller, source = self._poller, self._source
        self._poller = None
        self._source = None
        return poller, source

    def _fail_locked(self, error: KosFaceError) -> tuple:
        self._generation += 1
        self._set_step_locked(CaptureStep.FAILED)
        self._last_error = error
        self._session = None
        stale = self._detach_locked()
        self._schedule_reset_locked(self.config.failure_reset_ms)
        self._publish_locked()
        return stale

    def _schedule_reset_locked(self, delay_ms: float) -> None:
        self._cancel_reset_timer_locked()
        timer = threading.Timer(delay_ms / 1000.0, self._auto_reset, args=(self._generation,))
        timer.daemon = True
        self._reset_timer = timer
        timer.start()

    def _cancel_reset_timer_locked(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _auto_reset(self, gen: int) -> None:
        with self._lock:
            if self._generation != gen or self._step not in (CaptureStep.FAILED, CaptureStep.SUCCESS):
                return
            self._reset_timer = None
            self._set_step_locked(CaptureStep.READY)
            self._last_error = None
            self._publish_locked()

    def _snapshot_locked(self) -> ControllerSnapshot:
        session = self._session
        liveness = session.liveness if session else None
        analysis = session.last_analysis if session else None
        return ControllerSnapshot(
            step=self._step,
            mode=session.mode if session else self._mode,
            session_id=session.session_id if session else None,
            liveness=liveness,
            face_detected=analysis is not None,
            spoof=session.last_spoof if session else None,
            analysis=analysis,
            status_message=status_message(
                self._step, liveness, analysis is not None, self._last_error, self._loading_phase
            ),
            error=self._last_error,
            extra={"ticks": session.ticks} if session else {},
        )

    def _publish_locked(self) -> ControllerSnapshot:
        snap = self._snapshot_locked()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                _log.exception("Snapshot listener failed")
        return snap

    @staticmethod
    def _release(poller: Optional[PollingTask], source: Optional[FrameSource]) -> None:
        if poller is not None:
            poller.stop()
        if source is not None:
            source.stop()

    # ── Audit ─────────────────────────────────────────────────

    def _audit(self, event: str, session_id: str, **data) -> None:
        if self._audit_log is not None:
            self._audit_log.log(event, {"session_id": session_id, **data})

    def _audit_error(self, event: str, error: BaseException, session_id: str, **data) -> None:
        if self._audit_log is not None:
            self._audit_log.error(event, str(error), exception=error, session_id=session_id, **data)
        else:
            _log.error("%s: %s", event, error)
