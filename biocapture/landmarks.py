"""
Hand Landmark Helpers

Index constants for the 21-point MediaPipe hand model and the placement
tests the capture session uses to decide whether a palm or a specific
finger sits inside the capture window.

All coordinates are normalised to [0, 1] relative to the analysed frame,
with y pointing down.
"""

import numpy as np
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional, Sequence, Tuple


# MediaPipe hand landmark indices
WRIST = 0
THUMB_CMC, THUMB_MCP, THUMB_IP, THUMB_TIP = 1, 2, 3, 4
INDEX_FINGER_MCP, INDEX_FINGER_PIP, INDEX_FINGER_DIP, INDEX_FINGER_TIP = 5, 6, 7, 8
MIDDLE_FINGER_MCP, MIDDLE_FINGER_PIP, MIDDLE_FINGER_DIP, MIDDLE_FINGER_TIP = 9, 10, 11, 12
RING_FINGER_MCP, RING_FINGER_PIP, RING_FINGER_DIP, RING_FINGER_TIP = 13, 14, 15, 16
PINKY_MCP, PINKY_PIP, PINKY_DIP, PINKY_TIP = 17, 18, 19, 20

NUM_HAND_LANDMARKS = 21


class HandSide(Enum):
    LEFT = "Left"
    RIGHT = "Right"

    def __str__(self) -> str:
        return self.value


class Finger(IntEnum):
    """Capture order of the fingers."""

    THUMB = 0
    INDEX = 1
    MIDDLE = 2
    RING = 3
    PINKY = 4

    @property
    def display_name(self) -> str:
        return self.name.capitalize()


FINGER_SEQUENCE: Tuple[Finger, ...] = tuple(Finger)
FINGER_COUNT = len(FINGER_SEQUENCE)

# Landmarks whose centroid locates each finger. The thumb includes the wrist
# because its three joints alone sit too far off the hand's axis.
FINGER_LANDMARK_INDEXES = {
    Finger.THUMB: (THUMB_MCP, THUMB_IP, THUMB_TIP, WRIST),
    Finger.INDEX: (INDEX_FINGER_MCP, INDEX_FINGER_PIP, INDEX_FINGER_DIP, INDEX_FINGER_TIP),
    Finger.MIDDLE: (MIDDLE_FINGER_MCP, MIDDLE_FINGER_PIP, MIDDLE_FINGER_DIP, MIDDLE_FINGER_TIP),
    Finger.RING: (RING_FINGER_MCP, RING_FINGER_PIP, RING_FINGER_DIP, RING_FINGER_TIP),
    Finger.PINKY: (PINKY_MCP, PINKY_PIP, PINKY_DIP, PINKY_TIP),
}


@dataclass(frozen=True)
class HandObservation:
    """
    One hand found by the landmark detector in an analysed frame.

    Attributes:
        hand_side: Which hand this is (after any mirroring correction).
        is_palm_side: True if the palm (not the back of the hand) faces the camera.
        landmarks: Normalised landmark coordinates, shape (21, 2) or (21, 3).
        timestamp: Unix timestamp of the analysed frame.
        confidence: Handedness/detection confidence in [0, 1].
    """

    hand_side: HandSide
    is_palm_side: bool
    landmarks: np.ndarray = field(compare=False)
    timestamp: float = 0.0
    confidence: float = 1.0

    @property
    def wrist(self) -> Tuple[float, float]:
        point = np.asarray(self.landmarks)[WRIST]
        return (float(point[0]), float(point[1]))


@dataclass(frozen=True)
class PlacementWindow:
    """Normalised region the finger centroid must fall into (exclusive bounds)."""

    x_range: Tuple[float, float] = (0.4, 0.6)
    y_range: Tuple[float, float] = (0.35, 0.65)

    @classmethod
    def from_config(cls, config: dict) -> "PlacementWindow":
        return cls(
            x_range=tuple(config.get("x_range", (0.4, 0.6))),
            y_range=tuple(config.get("y_range", (0.35, 0.65))),
        )

    def contains(self, x: float, y: float) -> bool:
        return self.x_range[0] < x < self.x_range[1] and self.y_range[0] < y < self.y_range[1]


def get_finger_landmarks(landmarks: Sequence, finger_index: int) -> np.ndarray:
    """
    Select the landmark subset for one finger.

    Returns an empty (0, 2) array for an invalid index or a landmark list
    that is too short.
    """
    points = np.asarray(landmarks, dtype=np.float64)
    if finger_index < 0 or finger_index >= FINGER_COUNT or points.ndim != 2:
        return np.zeros((0, 2))
    if len(points) < NUM_HAND_LANDMARKS:
        return np.zeros((0, 2))
    indexes = FINGER_LANDMARK_INDEXES[Finger(finger_index)]
    return points[list(indexes), :2]


def landmark_centroid(points: np.ndarray) -> Optional[Tuple[float, float]]:
    if len(points) == 0:
        return None
    mean = points[:, :2].mean(axis=0)
    return (float(mean[0]), float(mean[1]))


def is_finger_in_position(
    landmarks: Sequence, finger_index: int, window: PlacementWindow = PlacementWindow()
) -> bool:
    """True if the finger's landmark centroid lies inside the placement window."""
    centroid = landmark_centroid(get_finger_landmarks(landmarks, finger_index))
    if centroid is None:
        return False
    return window.contains(*centroid)


def find_finger_in_position(
    landmarks: Sequence, window: PlacementWindow = PlacementWindow()
) -> int:
    """Index of the first finger inside the window, or -1."""
    for finger in FINGER_SEQUENCE:
        if is_finger_in_position(landmarks, int(finger), window):
            return int(finger)
    return -1


def is_full_hand(landmarks: Sequence, required: int = NUM_HAND_LANDMARKS) -> bool:
    """A full hand has every landmark, all inside the frame."""
    points = np.asarray(landmarks, dtype=np.float64)
    if points.ndim != 2 or len(points) < required:
        return False
    xy = points[:required, :2]
    return bool(np.all((xy >= 0.0) & (xy <= 1.0)))


def palm_normal_z(landmarks: Sequence) -> float:
    """
    z component of (index_mcp - wrist) x (pinky_mcp - wrist) in image
    coordinates. Its sign flips between the palm and the back of the hand.
    """
    points = np.asarray(landmarks, dtype=np.float64)[:, :2]
    a = points[INDEX_FINGER_MCP] - points[WRIST]
    b = points[PINKY_MCP] - points[WRIST]
    return float(a[0] * b[1] - a[1] * b[0])


def is_palm_facing(landmarks: Sequence, hand_side: HandSide, mirrored: bool = False) -> bool:
    """
    Decide whether the palm faces the camera.

    Seen from an unmirrored camera, a right palm has the index finger on the
    image's right of the pinky (negative normal), a left palm the opposite.
    A mirrored preview swaps both.
    """
    normal = palm_normal_z(landmarks)
    palm_negative = hand_side == HandSide.RIGHT
    if mirrored:
        palm_negative = not palm_negative
    return normal < 0 if palm_negative else normal > 0


def to_pixel_point(point: Sequence[float], width: int, height: int) -> Tuple[int, int]:
    """Normalised landmark to pixel coordinates."""
    return (int(point[0] * width), int(point[1] * height))


def resolve_hand_side(label: str, mirrored: bool = False) -> HandSide:
    """
    Convert a detector handedness label into the user's actual hand.

    MediaPipe labels hands as if the image were a mirrored selfie, so for an
    unmirrored feed the label names the opposite hand.
    """
    side = HandSide(label.capitalize())
    if mirrored:
        return side
    return HandSide.LEFT if side == HandSide.RIGHT else HandSide.RIGHT


def build_observation(
    landmarks: Sequence,
    handedness_label: str,
    confidence: float = 1.0,
    timestamp: float = 0.0,
    mirrored: bool = False,
) -> HandObservation:
    """Assemble a HandObservation from raw detector output."""
    points = np.asarray(landmarks, dtype=np.float32)
    hand_side = resolve_hand_side(handedness_label, mirrored)
    return HandObservation(
        hand_side=hand_side,
        is_palm_side=is_palm_facing(points, hand_side, mirrored),
        landmarks=points,
        timestamp=timestamp,
        confidence=float(confidence),
    )
