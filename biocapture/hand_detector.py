"""
Hand Detection Module

This module provides hand detection and landmark extraction using MediaPipe
Hand Landmarker. It detects one hand per frame, extracts the 21 hand
landmarks, resolves which hand it is and whether the palm faces the camera.

Note: MediaPipe 0.10.x uses the Tasks API (mp.tasks.vision.HandLandmarker)
instead of the legacy Solutions API (mp.solutions.hands).

Usage:
    from biocapture.hand_detector import get_hand_detector

    detector = get_hand_detector()
    observation = detector.detect(frame)   # HandObservation or None
    machine.observe(observation)
"""

import time
import logging
import urllib.request
from typing import Any, Dict, Optional

import cv2
import numpy as np

# MediaPipe Tasks API imports
import mediapipe as mp
from mediapipe.tasks import python as mp_tasks
from mediapipe.tasks.python import vision

from biocapture.exceptions import DetectorFailureError
from biocapture.frames import Frame
from biocapture.geometry import rotate_frame_upright
from biocapture.landmarks import HandObservation, build_observation

logger = logging.getLogger(__name__)


# URL for the hand landmarker model
MODEL_URL = "https://storage.googleapis.com/mediapipe-models/hand_landmarker/hand_landmarker/float16/1/hand_landmarker.task"
MODEL_FILENAME = "hand_landmarker.task"


def get_model_path() -> str:
    """
    Get the path to the MediaPipe hand landmarker model file.
    Downloads the model if it doesn't exist locally.

    Returns:
        Path to the model file.
    """
    from biocapture.config import get_project_root

    model_dir = get_project_root() / "storage" / "models"
    model_dir.mkdir(parents=True, exist_ok=True)

    model_path = model_dir / MODEL_FILENAME

    if not model_path.exists():
        logger.info(f"Downloading MediaPipe hand landmarker model from {MODEL_URL}")
        urllib.request.urlretrieve(MODEL_URL, str(model_path))
        logger.info(f"Saved model to {model_path}")

    return str(model_path)


class HandDetector:
    """
    Hand detection using MediaPipe Hand Landmarker.

    Frames are rotated upright before detection so landmark coordinates are
    normalised to the image the user sees.

    Attributes:
        mirrored: True if the preview is mirrored (front camera).
        landmarker: MediaPipe HandLandmarker object for detection.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the HandDetector.

        Args:
            config: Configuration dictionary containing:
                - min_detection_confidence: Minimum confidence for detection (0-1)
                - min_presence_confidence: Minimum hand presence confidence (0-1)
                - mirrored: Whether frames come from a mirrored (selfie) camera
                - model_path: Optional path to hand_landmarker.task
        """
        self.config = config
        self.mirrored = config.get("mirrored", False)

        min_detection_conf = config.get("min_detection_confidence", 0.5)
        min_presence_conf = config.get("min_presence_confidence", 0.5)
        model_path = config.get("model_path") or get_model_path()

        base_options = mp_tasks.BaseOptions(model_asset_path=model_path)
        options = vision.HandLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.IMAGE,
            num_hands=1,
            min_hand_detection_confidence=min_detection_conf,
            min_hand_presence_confidence=min_presence_conf,
        )
        self.landmarker = vision.HandLandmarker.create_from_options(options)
        logger.info(f"HandDetector initialized (mirrored={self.mirrored})")

    def detect_image(self, image: np.ndarray, timestamp: Optional[float] = None) -> Optional[HandObservation]:
        """
        Detect a hand in an upright BGR image.

        Returns:
            HandObservation, or None if no hand was found.

        Raises:
            DetectorFailureError: If MediaPipe fails on the image.
        """
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)

        try:
            results = self.landmarker.detect(mp_image)
        except (RuntimeError, ValueError) as e:
            raise DetectorFailureError("HandLandmarker", str(e)) from e

        if not results.hand_landmarks:
            return None

        hand_landmarks = results.hand_landmarks[0]
        points = np.array([[lm.x, lm.y, lm.z] for lm in hand_landmarks], dtype=np.float32)

        category = results.handedness[0][0]
        return build_observation(
            points,
            category.category_name,
            confidence=category.score,
            timestamp=time.time() if timestamp is None else timestamp,
            mirrored=self.mirrored,
        )

    def detect(self, frame: Frame) -> Optional[HandObservation]:
        """Detect a hand in a camera frame (any pixel format and rotation)."""
        try:
            upright = rotate_frame_upright(frame.to_bgr(), frame.geometry.effective_rotation)
        except (ValueError, cv2.error) as e:
            raise DetectorFailureError("HandLandmarker", f"undecodable frame: {e}") from e
        return self.detect_image(upright, frame.timestamp)

    def close(self):
        """Clean up MediaPipe resources."""
        if hasattr(self, "landmarker"):
            self.landmarker.close()

    def __del__(self):
        """Clean up MediaPipe resources on deletion."""
        self.close()


def get_hand_detector(config: Dict[str, Any] = None) -> HandDetector:
    """
    Factory function to get a HandDetector.

    Args:
        config: Optional `detector` config dict. If None, loads from config.yaml.
    """
    if config is None:
        from biocapture.config import get_section_or_default
        config = get_section_or_default("detector")
    return HandDetector(config)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    detector = get_hand_detector({})
    cap = cv2.VideoCapture(0)
    ok, image = cap.read()
    cap.release()

    if ok:
        observation = detector.detect_image(image)
        if observation:
            print(f"{observation.hand_side} hand, palm side: {observation.is_palm_side}")
        else:
            print("No hand detected")
    detector.close()
