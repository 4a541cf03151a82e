"""
KosFace — Launcher
===================
Runs a face registration or face login capture from the local webcam.

Usage:
  python kosface.py --mode register --output enrollment.json
  python kosface.py --mode login --enrolled enrollment.json [--headless]

Keys (preview window): SPACE = take photo, ESC = cancel.
"""

import argparse
import json
import logging
import os
import sys
import time

import cv2

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from kosface_analyzer import MediaPipeFaceAnalyzer
from kosface_config import CaptureConfig
from kosface_controller import CaptureController
from kosface_errors import CameraError, CaptureError, SubmissionError
from kosface_hud import CaptureHUD
from kosface_logger import LOGGER_NAMES, AuditLogger, setup_logger
from kosface_matcher import EnrollmentCollector, FaceMatcher
from kosface_types import CaptureMode, CaptureStep

WINDOW_NAME = "KosFace"
KEY_ESC = 27
KEY_SPACE = 32

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CAMERA = 2


def build_parser():
    parser = argparse.ArgumentParser(description="KosFace face capture")
    parser.add_argument("--mode", choices=[m.value for m in CaptureMode], default="login",
                        help="register (multi-photo enrollment) or login (single capture)")
    parser.add_argument("--camera", type=int, default=None, help="Camera index (overrides config)")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--output", type=str, default=None, help="Where to write the JSON result")
    parser.add_argument("--enrolled", type=str, default=None,
                        help="Enrollment JSON to verify a login capture against")
    parser.add_argument("--headless", action="store_true",
                        help="No preview window; capture automatically once liveness completes")
    parser.add_argument("--timeout", type=float, default=60.0,
                        help="Give up after this many seconds per photo (headless)")
    return parser


def load_enrolled_descriptor(path):
    with open(path, "r", encoding="utf-8") as f:
        record = json.load(f)
    descriptor = record.get("faceDescriptor")
    if not descriptor:
        raise ValueError(f"{path}: enrollment has no faceDescriptor")
    return descriptor


def write_json(path, data):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    print(f"[KOSFACE] Result written to {path}")


def capture_once(controller, mode, hud, headless, timeout):
    """Run one session until a payload is accepted. None = cancelled/failed."""
    controller.start(mode)
    deadline = time.monotonic() + timeout
    interval = controller.config.polling_interval_ms / 1000.0

    while True:
        snap = controller.snapshot()
        if snap.step == CaptureStep.FAILED:
            print(f"[KOSFACE] {snap.status_message}")
            return None

        want_capture = False
        if headless:
            if time.monotonic() > deadline:
                print("[KOSFACE] Timed out waiting for a face.")
                controller.cancel()
                return None
            liveness = snap.liveness
            want_capture = snap.face_detected and liveness is not None and liveness.is_complete
            time.sleep(interval)
        else:
            frame = controller.latest_frame()
            if frame is not None:
                viz, _ = hud.render(frame, snap)
                cv2.imshow(WINDOW_NAME, viz)
            key = cv2.waitKey(30) & 0xFF
            if key == KEY_ESC:
                controller.cancel()
                return None
            want_capture = key == KEY_SPACE

        if not want_capture:
            continue
        try:
            payload = controller.capture()
        except CaptureError as exc:
            print(f"[KOSFACE] {exc.user_message}")
            if controller.step == CaptureStep.FAILED:
                return None
            continue
        if payload is not None:
            return payload


def run(args):
    config = CaptureConfig.load(args.config)
    if args.camera is not None:
        config.camera_id = args.camera

    level = getattr(logging, config.log_level, logging.INFO)
    for name in LOGGER_NAMES:
        setup_logger(name, level)

    mode = CaptureMode(args.mode)
    output = args.output or ("enrollment.json" if mode == CaptureMode.REGISTER else "capture.json")

    collector = EnrollmentCollector(config.required_photos)
    matcher = FaceMatcher(config.match_threshold)
    enrolled = load_enrolled_descriptor(args.enrolled) if args.enrolled else None
    results = {}

    def sink(payload):
        if mode == CaptureMode.REGISTER:
            collector.add(payload)
            return True
        result = matcher.verify(payload, enrolled) if enrolled is not None else None
        results["match"] = result
        return result is None or result.matched

    print("=" * 60)
    print(f"  KosFace — {mode.value}")
    print(f"  Camera: {config.camera_id}   Config: {args.config or 'config.yaml'}")
    print("=" * 60)

    analyzer = MediaPipeFaceAnalyzer.from_config(config)
    hud = CaptureHUD(show_landmarks=config.overlay_enabled)
    audit = AuditLogger(config.audit_dir)
    controller = CaptureController(analyzer, config, sink=sink, audit=audit)

    try:
        while True:
            if mode == CaptureMode.REGISTER:
                if collector.is_complete:
                    write_json(output, collector.build().to_dict())
                    return EXIT_OK
                print(f"[KOSFACE] {collector.instruction()}")
            try:
                payload = capture_once(controller, mode, hud, args.headless, args.timeout)
            except SubmissionError as exc:
                print(f"[KOSFACE] {exc.user_message}")
                return EXIT_FAILED
            if payload is None:
                return EXIT_FAILED
            if mode == CaptureMode.LOGIN:
                data = payload.to_dict()
                match = results.get("match")
                if match is not None:
                    data["match"] = {"matched": match.matched, "distance": match.distance,
                                     "threshold": match.threshold}
                    print(f"[KOSFACE] Verifikasi berhasil (distance={match.distance:.3f})")
                write_json(output, data)
                return EXIT_OK
            print(f"[KOSFACE] Foto {len(collector.photos)} berhasil. "
                  f"Ambil {collector.remaining} foto lagi")
    except CameraError as exc:
        print(f"[KOSFACE] {exc.user_message}")
        return EXIT_CAMERA
    except KeyboardInterrupt:
        print("\n[KOSFACE] Interrupted by user.")
        return EXIT_FAILED
    finally:
        controller.close()
        analyzer.release()
        audit.close()
        if not args.headless:
            cv2.destroyAllWindows()


def main(argv=None):
    args = build_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
