"""
Unit Tests for Hand Landmark Helpers

This module tests the placement and orientation helpers:
- Finger landmark selection and centroid placement
- Full-hand check
- Palm-facing decision and handedness resolution

Usage:
    pytest tests/test_landmarks.py -v
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from biocapture.landmarks import (
    FINGER_LANDMARK_INDEXES,
    INDEX_FINGER_MCP,
    PINKY_MCP,
    WRIST,
    Finger,
    HandSide,
    PlacementWindow,
    build_observation,
    find_finger_in_position,
    get_finger_landmarks,
    is_finger_in_position,
    is_full_hand,
    is_palm_facing,
    resolve_hand_side,
)


def hand_with_finger_at(finger, x=0.5, y=0.5):
    landmarks = np.full((21, 2), 0.1)
    for index in FINGER_LANDMARK_INDEXES[finger]:
        landmarks[index] = (x, y)
    return landmarks


def right_palm():
    """Right palm seen by an unmirrored camera: index finger on the image right."""
    landmarks = np.full((21, 3), 0.5)
    landmarks[WRIST, :2] = (0.5, 0.8)
    landmarks[INDEX_FINGER_MCP, :2] = (0.6, 0.6)
    landmarks[PINKY_MCP, :2] = (0.4, 0.6)
    return landmarks


# ============================================================
# Test Finger Placement
# ============================================================

class TestFingerPlacement:
    """Tests for finger selection and the placement window."""

    def test_get_finger_landmarks(self):
        landmarks = hand_with_finger_at(Finger.MIDDLE)
        points = get_finger_landmarks(landmarks, int(Finger.MIDDLE))
        assert points.shape == (4, 2)
        assert np.allclose(points, 0.5)

    def test_thumb_includes_wrist(self):
        assert WRIST in FINGER_LANDMARK_INDEXES[Finger.THUMB]

    def test_invalid_index_is_empty(self):
        landmarks = hand_with_finger_at(Finger.INDEX)
        assert len(get_finger_landmarks(landmarks, -1)) == 0
        assert len(get_finger_landmarks(landmarks, 5)) == 0

    def test_short_landmark_list_is_empty(self):
        assert len(get_finger_landmarks(np.zeros((10, 2)), 1)) == 0

    def test_finger_in_position(self):
        landmarks = hand_with_finger_at(Finger.RING)
        assert is_finger_in_position(landmarks, int(Finger.RING))
        assert not is_finger_in_position(landmarks, int(Finger.INDEX))

    def test_window_bounds_are_exclusive(self):
        """Test that a centroid exactly on the window edge is outside."""
        landmarks = hand_with_finger_at(Finger.INDEX, x=0.4, y=0.5)
        assert not is_finger_in_position(landmarks, int(Finger.INDEX))

    def test_custom_window(self):
        landmarks = hand_with_finger_at(Finger.INDEX, x=0.8, y=0.8)
        window = PlacementWindow(x_range=(0.7, 0.9), y_range=(0.7, 0.9))
        assert is_finger_in_position(landmarks, int(Finger.INDEX), window)

    def test_find_finger_in_position(self):
        assert find_finger_in_position(hand_with_finger_at(Finger.PINKY)) == int(Finger.PINKY)
        assert find_finger_in_position(np.full((21, 2), 0.1)) == -1

    def test_placement_from_config(self):
        window = PlacementWindow.from_config({"x_range": [0.3, 0.7]})
        assert window.x_range == (0.3, 0.7)
        assert window.y_range == (0.35, 0.65)


# ============================================================
# Test Full Hand
# ============================================================

class TestFullHand:
    """Tests for is_full_hand()."""

    def test_all_landmarks_inside(self):
        assert is_full_hand(np.full((21, 3), 0.5))

    def test_landmark_outside_frame(self):
        landmarks = np.full((21, 3), 0.5)
        landmarks[12, 1] = -0.05
        assert not is_full_hand(landmarks)

    def test_missing_landmarks(self):
        assert not is_full_hand(np.full((15, 3), 0.5))


# ============================================================
# Test Orientation and Handedness
# ============================================================

class TestOrientation:
    """Tests for palm-facing and handedness helpers."""

    def test_right_palm_facing(self):
        assert is_palm_facing(right_palm(), HandSide.RIGHT)

    def test_right_dorsal(self):
        """Test that swapping index and pinky (back of the hand) is not palm-facing."""
        landmarks = right_palm()
        landmarks[[INDEX_FINGER_MCP, PINKY_MCP]] = landmarks[[PINKY_MCP, INDEX_FINGER_MCP]]
        assert not is_palm_facing(landmarks, HandSide.RIGHT)

    def test_mirrored_swaps_decision(self):
        assert not is_palm_facing(right_palm(), HandSide.RIGHT, mirrored=True)
        assert is_palm_facing(right_palm(), HandSide.LEFT, mirrored=True)

    def test_resolve_hand_side(self):
        assert resolve_hand_side("Left", mirrored=False) == HandSide.RIGHT
        assert resolve_hand_side("Left", mirrored=True) == HandSide.LEFT
        assert resolve_hand_side("right") == HandSide.LEFT

    def test_build_observation(self):
        observation = build_observation(right_palm(), "Left", confidence=0.9, timestamp=12.5)
        assert observation.hand_side == HandSide.RIGHT
        assert observation.is_palm_side is True
        assert observation.confidence == pytest.approx(0.9)
        assert observation.timestamp == 12.5
        assert observation.wrist == pytest.approx((0.5, 0.8))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
