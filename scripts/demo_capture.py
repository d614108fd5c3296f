"""
Capture Demo Script - Guided Palm and Finger Capture

This script runs the complete capture session on a webcam:
1. Palm capture inside the square window
2. Thumb, Index, Middle, Ring and Pinky captures inside the finger oval
3. Optional verification scan matched against the stored fingers

Hand landmarks come from MediaPipe, placement and sequencing from the
capture state machine, and each shutter crop is mapped through the
geometry engine and stored as JPEG under storage/frames.

Usage:
    python scripts/demo_capture.py
    python scripts/demo_capture.py --camera 1 --no-mirror
    python scripts/demo_capture.py --fresh        # discard saved progress

Controls:
    - SPACE  take photo (hand must be detected)
    - c      confirm the captured image
    - r      retake the captured image
    - v      start a verification scan
    - x      reset (leaves the Error screen)
    - q      quit
"""

import cv2
import sys
import time
import argparse
import logging
import threading
from pathlib import Path
from typing import Optional

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from biocapture.capture_state import (
    AllDone,
    AwaitingFinger,
    AwaitingPalm,
    FingerCaptured,
    FingerDetected,
    PalmCaptured,
    PalmDetected,
    Verification,
    VerificationDetected,
    WarningEvent,
    describe_state,
)
from biocapture.config import get_section_or_default, setup_logging
from biocapture.exceptions import StorageError, log_error
from biocapture.frames import Frame, FrameGeometry
from biocapture.hand_detector import get_hand_detector
from biocapture.matcher import get_finger_matcher
from biocapture.service import create_capture_service
from biocapture.ui_overlay import (
    draw_capture_window,
    draw_hand_landmarks,
    draw_progress,
    draw_prompt,
    draw_warning_banner,
)

logger = logging.getLogger("demo_capture")


class LatestFrame:
    """Holds the most recent webcam frame for the shutter."""

    def __init__(self):
        self._lock = threading.Lock()
        self._frame: Optional[Frame] = None

    def set(self, frame: Frame) -> None:
        with self._lock:
            self._frame = frame

    def __call__(self) -> Optional[Frame]:
        with self._lock:
            return self._frame


def progress_of(state):
    """(palm_done, fingers_done) for the progress dots."""
    if isinstance(state, AllDone):
        return True, 5
    if isinstance(state, (AwaitingFinger, FingerDetected, FingerCaptured)):
        return True, state.finger_index
    return False, 0


def main():
    parser = argparse.ArgumentParser(
        description="Guided palm and finger capture demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("--camera", type=int, default=0, help="Webcam index (default: 0)")
    parser.add_argument("--no-mirror", action="store_true", help="Do not mirror the preview")
    parser.add_argument("--fresh", action="store_true", help="Discard saved session progress")
    args = parser.parse_args()

    setup_logging()

    cap = cv2.VideoCapture(args.camera)
    if not cap.isOpened():
        logger.error("Could not open webcam!")
        return 1
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, 1280)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, 720)

    ok, image = cap.read()
    if not ok:
        logger.error("Could not read from webcam!")
        return 1
    h, w = image.shape[:2]

    mirrored = not args.no_mirror
    detector_config = dict(get_section_or_default("detector"))
    detector_config["mirrored"] = mirrored
    detector = get_hand_detector(detector_config)

    latest = LatestFrame()
    service = create_capture_service(latest, overlay_size=(w, h), detector=detector.detect)
    machine = service.machine
    matcher = get_finger_matcher()
    frame_store = service.coordinator.frame_store

    if args.fresh:
        machine.reset(discard_session=True)

    last_warning = {"text": None, "at": 0.0}

    def on_event(event):
        if isinstance(event, WarningEvent):
            last_warning["text"] = event.message
            last_warning["at"] = time.time()

    service.subscribe(on_event)
    service.start()
    verified_ref = None

    try:
        while True:
            ok, image = cap.read()
            if not ok:
                break
            if mirrored:
                image = cv2.flip(image, 1)

            frame = Frame(image=image, geometry=FrameGeometry(w, h, display_width=w, display_height=h))
            latest.set(frame)
            service.on_frame(frame)

            state = machine.current_state
            display = image.copy()

            if isinstance(state, (AwaitingPalm, PalmDetected, PalmCaptured)):
                window, stadium = service.coordinator.palm_layout.window, False
            else:
                window, stadium = service.coordinator.finger_layout.window, True
            detected = isinstance(state, (PalmDetected, FingerDetected, VerificationDetected))
            draw_capture_window(display, window, stadium=stadium, detected=detected)

            observation = getattr(state, "observation", None) or getattr(state, "landmarks", None)
            if observation is not None:
                highlight = state.finger_index if isinstance(state, FingerDetected) else None
                draw_hand_landmarks(display, observation.landmarks, highlight)

            draw_prompt(display, describe_state(state))
            draw_progress(display, *progress_of(state))

            head = service.pipeline.head_warning
            if head is not None:
                draw_warning_banner(display, head.title, head.message, service.pipeline.warning_count)
            elif last_warning["text"] and time.time() - last_warning["at"] < 2.0:
                draw_warning_banner(display, "Warning", last_warning["text"])

            if isinstance(state, Verification) and state.frame_ref != verified_ref:
                verified_ref = state.frame_ref
                result = matcher.verify(frame_store.load(state.frame_ref), frame_store)
                logger.info(f"Verification match={result.is_match} score={result.score} "
                            f"best={result.best_ref}")

            cv2.imshow("Biometric Capture Demo", display)

            key = cv2.waitKey(1) & 0xFF
            try:
                if key == ord('q'):
                    break
                elif key == ord(' '):
                    service.take_photo()
                elif key == ord('c'):
                    machine.confirm_step()
                elif key == ord('r'):
                    machine.retake()
                elif key == ord('v'):
                    machine.start_verification()
                elif key == ord('x'):
                    machine.reset()
            except StorageError as e:
                log_error(e)

    finally:
        service.stop()
        detector.close()
        cap.release()
        cv2.destroyAllWindows()

    return 0


if __name__ == "__main__":
    sys.exit(main())
