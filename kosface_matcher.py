"""
KosFace — Descriptor Matching & Enrollment
===========================================
Compares face descriptors and assembles multi-photo registrations.

  euclidean_distance / is_same_person — descriptor comparison
  FaceMatcher.verify                  — login probe vs. enrolled record
  EnrollmentCollector                 — register-mode multi-photo intake
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from kosface_types import CaptureMode, CapturePayload


_log = logging.getLogger("KosFaceMatcher")

DEFAULT_MATCH_THRESHOLD = 0.6

PHOTO_INSTRUCTIONS = (
    "Foto 1: Hadap lurus ke kamera dengan ekspresi normal",
    "Foto 2: Sedikit miringkan kepala ke kiri",
    "Foto 3: Sedikit miringkan kepala ke kanan",
)


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """L2 distance over the common prefix of two descriptors."""
    n = min(len(a), len(b))
    if n == 0:
        raise ValueError("cannot compare empty descriptors")
    if len(a) != len(b):
        _log.debug("Descriptor length mismatch (%d vs %d); comparing first %d", len(a), len(b), n)
    return math.sqrt(sum((float(a[i]) - float(b[i])) ** 2 for i in range(n)))


def is_same_person(a: Sequence[float], b: Sequence[float],
                   threshold: float = DEFAULT_MATCH_THRESHOLD) -> bool:
    return euclidean_distance(a, b) < threshold


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    distance: Optional[float]
    threshold: float


class FaceMatcher:
    """Verifies a login capture against an enrolled descriptor."""

    def __init__(self, threshold: float = DEFAULT_MATCH_THRESHOLD) -> None:
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold

    def verify(self, probe: CapturePayload, enrolled_descriptor: Optional[Sequence[float]]) -> MatchResult:
        if probe.face_descriptor is None or not enrolled_descriptor:
            _log.info("Verification impossible: missing descriptor")
            return MatchResult(False, None, self.threshold)
        distance = euclidean_distance(probe.face_descriptor, enrolled_descriptor)
        matched = distance < self.threshold
        _log.info("Verification %s (distance=%.4f, threshold=%.2f)",
                  "matched" if matched else "rejected", distance, self.threshold)
        return MatchResult(matched, round(distance, 6), self.threshold)


@dataclass
class EnrollmentRecord:
    """Combined registration: primary descriptor plus every photo taken."""
    face_descriptor: Optional[tuple[float, ...]]
    primary_image: str
    photos: list[CapturePayload] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "faceDescriptor": list(self.face_descriptor) if self.face_descriptor else None,
            "imageData": self.primary_image,
            "photos": [p.to_dict() for p in self.photos],
            "photoCount": len(self.photos),
        }


class EnrollmentCollector:
    """Accumulates register-mode captures until enough photos are taken."""

    def __init__(self, required_photos: int = 3) -> None:
        if required_photos < 1:
            raise ValueError("required_photos must be >= 1")
        self.required_photos = required_photos
        self._photos: list[CapturePayload] = []

    @property
    def photos(self) -> tuple[CapturePayload, ...]:
        return tuple(self._photos)

    @property
    def remaining(self) -> int:
        return max(0, self.required_photos - len(self._photos))

    @property
    def is_complete(self) -> bool:
        return self.remaining == 0

    def instruction(self) -> Optional[str]:
        """Prompt for the next photo, or None once complete."""
        if self.is_complete:
            return None
        index = len(self._photos)
        if index < len(PHOTO_INSTRUCTIONS):
            return PHOTO_INSTRUCTIONS[index]
        return f"Foto {index + 1}: Hadap lurus ke kamera"

    def add(self, payload: CapturePayload) -> int:
        """Add a capture; returns the number of photos still needed."""
        if payload.mode != CaptureMode.REGISTER:
            raise ValueError("only register-mode captures can be enrolled")
        if self.is_complete:
            raise ValueError(f"already have {self.required_photos} photos")
        self._photos.append(payload)
        _log.info("Enrollment photo %d/%d (descriptor=%s)",
                  len(self._photos), self.required_photos, payload.face_descriptor is not None)
        return self.remaining

    def reset(self) -> None:
        self._photos.clear()

    def build(self) -> EnrollmentRecord:
        """First photo carrying a descriptor becomes primary (else the first)."""
        if not self.is_complete:
            raise ValueError(f"{self.remaining} more photo(s) required")
        primary = next((p for p in self._photos if p.face_descriptor is not None), self._photos[0])
        return EnrollmentRecord(
            face_descriptor=primary.face_descriptor,
            primary_image=primary.image_data,
            photos=list(self._photos),
        )
