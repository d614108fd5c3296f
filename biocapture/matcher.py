"""
Finger Matcher: compare a verification crop against the stored finger crops.

ORB keypoint descriptors are extracted from each grayscale crop and matched
with a brute-force Hamming matcher. A match counts as good when its Hamming
distance is below `max_distance`; the template with the most good matches
wins, and the verification succeeds when that count exceeds
`match_threshold`.

Palm and verification captures are never used as templates.

Usage:
    from biocapture.matcher import get_finger_matcher

    matcher = get_finger_matcher()
    result = matcher.verify(verification_crop, frame_store)
    if result.is_match:
        print(f"Matched {result.best_ref} ({result.score} good matches)")
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Tuple

import cv2
import numpy as np

from biocapture.exceptions import StorageError

logger = logging.getLogger(__name__)


@dataclass
class FingerMatchResult:
    """
    Result of a verification match.

    Attributes:
        score: Good-match count of the best template.
        is_match: True if the score exceeds the match threshold.
        best_ref: Frame reference of the best template, or None.
        details: Per-template scores and thresholds.
    """

    score: int
    is_match: bool
    best_ref: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class FingerMatcher:
    """
    ORB + Hamming brute-force matcher for finger crops.

    Args:
        config: Dictionary with optional keys:
            - max_distance: Hamming distance below which a match is good (default 70)
            - match_threshold: Good matches the best template must exceed (default 30)
            - n_features: ORB keypoint budget (default 1000)
            - exclude_labels: Stored-frame labels never used as templates
                              (default: Palm, Verification and Accepted)
    """

    def __init__(self, config: dict = None):
        if config is None:
            config = {}
        self.max_distance = config.get("max_distance", 70)
        self.match_threshold = config.get("match_threshold", 30)
        self.n_features = config.get("n_features", 1000)
        self.exclude_labels = tuple(config.get("exclude_labels", ("Palm", "Verification", "Accepted")))
        self._orb = cv2.ORB_create(nfeatures=self.n_features)
        self._matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)

    def compute_descriptors(self, image: np.ndarray) -> Optional[np.ndarray]:
        """ORB descriptors of a BGR or grayscale image, or None if no keypoints."""
        if image is None or image.size == 0:
            return None
        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        _, descriptors = self._orb.detectAndCompute(gray, None)
        return descriptors

    def count_good_matches(
        self, probe_desc: Optional[np.ndarray], template_desc: Optional[np.ndarray]
    ) -> int:
        if probe_desc is None or template_desc is None:
            return 0
        if len(probe_desc) == 0 or len(template_desc) == 0:
            return 0
        matches = self._matcher.match(probe_desc, template_desc)
        return sum(1 for m in matches if m.distance < self.max_distance)

    def compare(self, probe: np.ndarray, template: np.ndarray) -> int:
        """Good-match count between two images."""
        return self.count_good_matches(
            self.compute_descriptors(probe), self.compute_descriptors(template)
        )

    def identify(
        self, probe: np.ndarray, templates: Iterable[Tuple[str, np.ndarray]]
    ) -> FingerMatchResult:
        """
        Find the best matching template.

        Args:
            probe: Verification crop.
            templates: (frame_ref, image) pairs.
        """
        probe_desc = self.compute_descriptors(probe)
        if probe_desc is None:
            logger.warning("No ORB keypoints found in verification image")
            return FingerMatchResult(score=0, is_match=False, details={"error": "no_keypoints"})

        scores: Dict[str, int] = {}
        for frame_ref, image in templates:
            scores[frame_ref] = self.count_good_matches(probe_desc, self.compute_descriptors(image))

        if not scores:
            logger.warning("No finger templates to match against")
            return FingerMatchResult(score=0, is_match=False, details={"error": "no_templates"})

        best_ref = max(scores, key=scores.get)
        best_score = scores[best_ref]
        is_match = best_score > self.match_threshold
        logger.info(
            f"Verification: best={best_ref} score={best_score} "
            f"threshold={self.match_threshold} match={is_match}"
        )
        return FingerMatchResult(
            score=best_score,
            is_match=is_match,
            best_ref=best_ref,
            details={
                "scores": scores,
                "max_distance": self.max_distance,
                "match_threshold": self.match_threshold,
            },
        )

    def verify(self, probe: np.ndarray, frame_store) -> FingerMatchResult:
        """Match a verification crop against every stored finger crop."""
        templates = []
        for frame_ref in frame_store.list_frames(exclude_labels=self.exclude_labels):
            try:
                templates.append((frame_ref, frame_store.load(frame_ref)))
            except StorageError as e:
                logger.warning(f"Skipping unreadable template {frame_ref}: {e.message}")
        return self.identify(probe, templates)


def get_finger_matcher(config: Dict[str, Any] = None) -> FingerMatcher:
    """
    Factory function to get a FingerMatcher.

    Args:
        config: Optional `matching` config dict. If None, loads from config.yaml.
    """
    if config is None:
        from biocapture.config import get_section_or_default
        config = get_section_or_default("matching")
    return FingerMatcher(config)
