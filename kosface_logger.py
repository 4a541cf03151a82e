"""
KosFace — Logging
==================
Console logging setup plus a structured JSONL audit log for capture
session lifecycle events.

Key Features:
  - setup_logger(): named console loggers with the shared format
  - AuditLogger: thread-safe JSONL writer (one event per line)
  - NumPy-aware JSON encoder
  - Biometric fields (images, descriptors) are stripped before writing
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from enum import Enum
from typing import Any, Optional

import numpy as np


# Keys that must never reach disk
REDACTED_KEYS = frozenset({
    "image_data", "imageData", "face_descriptor", "faceDescriptor",
    "descriptor", "frame",
})


LOGGER_NAMES = (
    "KosFaceCamera", "KosFaceAnalyzer", "KosFaceLiveness", "KosFaceAntiSpoof",
    "KosFaceCapture", "KosFaceMatcher", "KosFaceConfig", "KosFaceHUD", "KosFaceAudit",
)


def setup_logger(name: str, level=logging.INFO) -> logging.Logger:
    """Create a configured console logger for KosFace modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class KosFaceJSONEncoder(json.JSONEncoder):
    """Handles NumPy types and enums for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def redact(data: dict) -> dict:
    return {k: v for k, v in data.items() if k not in REDACTED_KEYS}


class AuditLogger:
    """Append-only JSONL audit trail for capture sessions.

    Entry layout:
        {"timestamp": <epoch s>, "level": ..., "event": ..., "data": {...}}
    """

    def __init__(self, log_dir: str = "logs", filename: str = "kosface_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()
        self._console = logging.getLogger("KosFaceAudit")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def log(self, event: str, data: Optional[dict[str, Any]] = None, level: str = "AUDIT"):
        """Append one event."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event,
            "data": redact(data or {}),
        }
        line = json.dumps(entry, cls=KosFaceJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def warn(self, event: str, message: str, **context):
        self._console.warning(message)
        self.log(event, {"message": message, **context}, level="WARN")

    def error(self, event: str, message: str, exception: Optional[BaseException] = None, **context):
        """Log structured error with exception details."""
        self._console.error(message)
        details = f"{type(exception).__name__}: {exception}" if exception else None
        self.log(event, {"message": message, "exception": details, **context}, level="ERROR")

    def close(self):
        with self._lock:
            if not self._file.closed:
                self._file.close()

    def __enter__(self) -> "AuditLogger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
