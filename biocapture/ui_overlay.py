"""
Shared UI overlay helpers for hand capture screens.

Provides:
- draw_capture_window()  - palm square or finger stadium with dimmed surroundings
- draw_hand_landmarks()  - the 21 detected landmarks and finger bones
- draw_prompt()          - state instruction text at the top of the frame
- draw_warning_banner()  - head warning plus how many more are active
- draw_progress()        - palm/finger progress dots
"""

import cv2
import numpy as np
from typing import Optional, Sequence

from biocapture.geometry import CaptureWindow
from biocapture.landmarks import FINGER_COUNT, FINGER_LANDMARK_INDEXES, WRIST, to_pixel_point


# ---------------------------------------------------------------------------
# Capture window
# ---------------------------------------------------------------------------

def draw_capture_window(
    frame: np.ndarray,
    window: CaptureWindow,
    stadium: bool = False,
    detected: bool = False,
    dim: float = 0.5,
) -> None:
    """Draw the capture window, dimming everything outside it.

    Args:
        frame: BGR image to draw on (modified in-place).
        window: Window in frame pixel coordinates.
        stadium: Draw a rounded finger "oval" instead of a square.
        detected: If True the outline is drawn green, otherwise white.
        dim: Darkening factor applied outside the window (0 = none).
    """
    h, w = frame.shape[:2]
    x1, y1, x2, y2 = [int(round(v)) for v in (
        window.center_x - window.half_width,
        window.center_y - window.half_height,
        window.center_x + window.half_width,
        window.center_y + window.half_height,
    )]

    mask = np.zeros((h, w), dtype=np.uint8)
    radius = int(round(window.half_width))
    if stadium:
        # Two semicircles joined by a rectangle
        cx = int(round(window.center_x))
        cv2.rectangle(mask, (x1, y1 + radius), (x2, y2 - radius), 255, -1)
        cv2.circle(mask, (cx, y1 + radius), radius, 255, -1)
        cv2.circle(mask, (cx, y2 - radius), radius, 255, -1)
    else:
        cv2.rectangle(mask, (x1, y1), (x2, y2), 255, -1)

    if dim > 0:
        darkened = (frame * (1.0 - dim)).astype(frame.dtype)
        frame[mask == 0] = darkened[mask == 0]

    color = (0, 200, 0) if detected else (255, 255, 255)
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    cv2.drawContours(frame, contours, -1, color, 2, cv2.LINE_AA)


# ---------------------------------------------------------------------------
# Landmarks
# ---------------------------------------------------------------------------

def draw_hand_landmarks(
    frame: np.ndarray,
    landmarks: Sequence,
    highlight_finger: Optional[int] = None,
) -> None:
    """Draw finger bones from the wrist, highlighting one finger in yellow."""
    h, w = frame.shape[:2]
    points = np.asarray(landmarks)
    wrist = to_pixel_point(points[WRIST], w, h)

    for finger, indexes in FINGER_LANDMARK_INDEXES.items():
        color = (0, 255, 255) if highlight_finger == int(finger) else (200, 200, 200)
        chain = [wrist] + [to_pixel_point(points[i], w, h) for i in indexes if i != WRIST]
        for a, b in zip(chain, chain[1:]):
            cv2.line(frame, a, b, color, 2, cv2.LINE_AA)
        for p in chain[1:]:
            cv2.circle(frame, p, 3, color, -1, cv2.LINE_AA)

    cv2.circle(frame, wrist, 4, (255, 128, 0), -1, cv2.LINE_AA)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

def draw_prompt(frame: np.ndarray, message: str, color=(255, 255, 255)) -> None:
    """Centered instruction text at the top of the frame."""
    w = frame.shape[1]
    text_size = cv2.getTextSize(message, cv2.FONT_HERSHEY_SIMPLEX, 0.6, 2)[0]
    tx = max(5, (w - text_size[0]) // 2)
    cv2.putText(frame, message, (tx, 30), cv2.FONT_HERSHEY_SIMPLEX,
                0.6, (0, 0, 0), 4, cv2.LINE_AA)
    cv2.putText(frame, message, (tx, 30), cv2.FONT_HERSHEY_SIMPLEX,
                0.6, color, 2, cv2.LINE_AA)


def draw_warning_banner(frame: np.ndarray, title: str, message: str, count: int = 1) -> None:
    """Semi-transparent banner at the bottom with the head warning."""
    h, w = frame.shape[:2]
    top = h - 60

    overlay = frame.copy()
    cv2.rectangle(overlay, (0, top), (w, h), (0, 0, 80), -1)
    cv2.addWeighted(overlay, 0.6, frame, 0.4, 0, frame)

    header = title if count <= 1 else f"{title} (+{count - 1} more)"
    cv2.putText(frame, header, (10, top + 22), cv2.FONT_HERSHEY_SIMPLEX,
                0.55, (0, 200, 255), 1, cv2.LINE_AA)
    cv2.putText(frame, message, (10, top + 46), cv2.FONT_HERSHEY_SIMPLEX,
                0.5, (255, 255, 255), 1, cv2.LINE_AA)


_DOT_R = 7


def draw_progress(frame: np.ndarray, palm_done: bool, fingers_done: int) -> None:
    """One dot for the palm plus one per finger in the top-right corner."""
    w = frame.shape[1]
    total = 1 + FINGER_COUNT
    x0 = w - total * (2 * _DOT_R + 6) - 10
    for i in range(total):
        done = palm_done if i == 0 else (i - 1) < fingers_done
        center = (x0 + i * (2 * _DOT_R + 6) + _DOT_R, 50)
        if done:
            cv2.circle(frame, center, _DOT_R, (0, 220, 0), -1, cv2.LINE_AA)
        else:
            cv2.circle(frame, center, _DOT_R, (150, 150, 150), 1, cv2.LINE_AA)
