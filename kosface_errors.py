"""
KosFace — Error Taxonomy
=========================
Every failure the capture flow can surface, with the localized
(Indonesian) message shown to the user.

  CameraError      — device acquisition failed; fatal to the session
  AnalysisError    — one analyze() call failed; recovered locally
  CaptureError     — final frame could not be captured / encoded
  SubmissionError  — sink rejected the finished payload
"""

from __future__ import annotations

from enum import Enum


class KosFaceError(Exception):
    """Base class for all capture pipeline errors."""

    user_message: str = "Terjadi kesalahan. Silakan coba lagi."

    def __init__(self, message: str = "", user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class CameraErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"


_CAMERA_MESSAGES = {
    CameraErrorKind.PERMISSION_DENIED:
        "Izin kamera ditolak. Silakan beri izin akses kamera lalu coba lagi.",
    CameraErrorKind.NOT_FOUND:
        "Tidak dapat mengakses kamera: kamera tidak ditemukan.",
    CameraErrorKind.UNAVAILABLE:
        "Tidak dapat mengakses kamera: kamera sedang digunakan "
        "aplikasi lain atau tidak tersedia.",
    CameraErrorKind.TIMEOUT:
        "Tidak dapat mengakses kamera: kamera tidak merespons. "
        "Silakan coba lagi.",
}


class CameraError(KosFaceError):
    """Camera could not be acquired."""

    def __init__(self, kind: CameraErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        message = f"camera {kind.value}"
        if detail:
            message += f": {detail}"
        super().__init__(message, user_message=_CAMERA_MESSAGES[kind])


class AnalysisError(KosFaceError):
    """A single face analysis call failed."""

    user_message = "Gagal memproses wajah. Silakan coba lagi."


class CaptureError(KosFaceError):
    """The still frame could not be captured or encoded."""

    user_message = "Gagal mengambil foto. Silakan coba lagi."


class SubmissionError(KosFaceError):
    """The submission sink rejected the capture payload."""

    user_message = "Wajah tidak dikenali atau tidak cocok. Silakan coba lagi."
