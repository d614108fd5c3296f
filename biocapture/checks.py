"""
Quality Checks Module

This module defines the checker contract used by the validation pipeline and
ships heuristic OpenCV implementations of the five checks:

1. Low light     - mean luma of the crop
2. Liveness      - fine texture and chroma variation (flat prints and
                   screens have little of either)
3. Segmentation  - fraction of skin-coloured pixels in the crop (YCrCb)
4. Blur          - Laplacian variance
5. Bright spots  - fraction of saturated pixels (specular glare)

The heuristics are stand-ins for trained models: any object implementing
QualityChecker can be dropped into a CheckSuite. Stub checkers are provided
for tests and early integration.

Usage:
    from biocapture.checks import get_check_suite

    suite = get_check_suite()
    result = suite.blur.check(crop)
    if not result.passed:
        print(result.message)
"""

import time
import logging
import numpy as np
import cv2
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from biocapture.validation_warnings import WarningKind

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """
    Result of one quality check.

    Attributes:
        passed: True if the crop is acceptable for this check.
        confidence: Score between 0.0 and 1.0 (higher = better quality).
        warning_kind: Kind of warning to raise when the check fails.
        message: User-facing explanation, used as the warning text.
        details: Diagnostic values (raw scores and thresholds).
    """

    passed: bool
    confidence: float
    warning_kind: Optional[WarningKind] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


class QualityChecker(ABC):
    """
    Abstract base class for a single quality/liveness check.

    Implementations receive the cropped BGR image and must be safe to call
    from worker threads.
    """

    kind: WarningKind
    failure_message: str = ""

    @abstractmethod
    def check(self, image: np.ndarray) -> CheckResult:
        """
        Evaluate a cropped frame.

        Args:
            image: BGR crop, shape (H, W, 3), dtype uint8.

        Returns:
            CheckResult; warning_kind is set when passed is False.
        """
        pass

    def _result(self, passed: bool, confidence: float, **details) -> CheckResult:
        return CheckResult(
            passed=passed,
            confidence=float(np.clip(confidence, 0.0, 1.0)),
            warning_kind=None if passed else self.kind,
            message="" if passed else self.failure_message,
            details=details,
        )


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def compute_blur_score(image: np.ndarray) -> float:
    """
    Compute image sharpness using Laplacian variance.

    A sharp image has strong edges (high variance), while a blurry image
    has weak edges (low variance).

    Args:
        image: Image in BGR or grayscale format.

    Returns:
        Blur score (higher = sharper).
    """
    laplacian = cv2.Laplacian(_to_gray(image), cv2.CV_64F)
    return float(laplacian.var())


class LowLightChecker(QualityChecker):
    """Fails when the crop is too dark to show ridge detail."""

    kind = WarningKind.LOW_LIGHT
    failure_message = "Insufficient lighting detected"

    def __init__(self, config: Dict[str, Any]):
        self.min_luma = config.get("min_luma", 60)

    def check(self, image: np.ndarray) -> CheckResult:
        mean_luma = float(np.mean(_to_gray(image)))
        return self._result(
            mean_luma >= self.min_luma,
            mean_luma / (2.0 * self.min_luma),
            mean_luma=mean_luma,
            min_luma=self.min_luma,
        )


class LivenessChecker(QualityChecker):
    """
    Texture/colour heuristic against flat presentation attacks.

    A live finger shows fine ridge texture and natural variation in skin
    tone. Prints and screens tend to be smoother and more uniform in chroma.
    """

    kind = WarningKind.LIVENESS
    failure_message = "Liveness check failed - ensure finger is live"

    def __init__(self, config: Dict[str, Any]):
        self.min_texture = config.get("min_texture", 8.0)
        self.min_chroma_std = config.get("min_chroma_std", 2.0)

    def check(self, image: np.ndarray) -> CheckResult:
        gray = _to_gray(image)
        texture = float(np.std(cv2.Laplacian(gray, cv2.CV_64F)))

        if image.ndim == 3:
            ycrcb = cv2.cvtColor(image, cv2.COLOR_BGR2YCrCb)
            chroma_std = float(np.std(ycrcb[:, :, 1]))
        else:
            chroma_std = 0.0

        texture_ok = texture >= self.min_texture
        chroma_ok = chroma_std >= self.min_chroma_std
        return self._result(
            texture_ok and chroma_ok,
            min(texture / (2.0 * self.min_texture), chroma_std / (2.0 * self.min_chroma_std)),
            texture=texture,
            chroma_std=chroma_std,
            texture_ok=texture_ok,
            chroma_ok=chroma_ok,
        )


# Skin range in YCrCb (Chai & Ngan)
SKIN_CR_RANGE = (133, 173)
SKIN_CB_RANGE = (77, 127)


def skin_mask(image: np.ndarray) -> np.ndarray:
    """Binary mask (0/255) of skin-coloured pixels."""
    ycrcb = cv2.cvtColor(image, cv2.COLOR_BGR2YCrCb)
    lower = np.array([0, SKIN_CR_RANGE[0], SKIN_CB_RANGE[0]], dtype=np.uint8)
    upper = np.array([255, SKIN_CR_RANGE[1], SKIN_CB_RANGE[1]], dtype=np.uint8)
    mask = cv2.inRange(ycrcb, lower, upper)
    kernel = np.ones((5, 5), np.uint8)
    return cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)


class SegmentationChecker(QualityChecker):
    """Checks that the finger fills enough of the capture window."""

    kind = WarningKind.SEGMENTATION
    failure_message = "Finger segmentation failed - position finger correctly"

    def __init__(self, config: Dict[str, Any]):
        self.min_coverage = config.get("min_coverage", 0.35)

    def check(self, image: np.ndarray) -> CheckResult:
        if image.ndim != 3:
            return self._result(False, 0.0, error="color image required")
        mask = skin_mask(image)
        coverage = float(np.count_nonzero(mask)) / mask.size
        return self._result(
            coverage >= self.min_coverage,
            coverage,
            coverage=coverage,
            min_coverage=self.min_coverage,
        )


class BlurChecker(QualityChecker):
    kind = WarningKind.BLUR
    failure_message = "Image is too blurry - hold finger steady"

    def __init__(self, config: Dict[str, Any]):
        self.threshold = config.get("threshold", 100.0)

    def check(self, image: np.ndarray) -> CheckResult:
        blur_score = compute_blur_score(image)
        logger.debug(f"Blur score: {blur_score:.1f} (threshold: {self.threshold})")
        return self._result(
            blur_score >= self.threshold,
            min(1.0, blur_score / 500.0),
            blur_score=blur_score,
            threshold=self.threshold,
        )


class BrightSpotsChecker(QualityChecker):
    """Fails when specular glare saturates too much of the crop."""

    kind = WarningKind.BRIGHT_SPOTS
    failure_message = "Bright spots detected - adjust finger position or lighting"

    def __init__(self, config: Dict[str, Any]):
        self.saturation_level = config.get("saturation_level", 250)
        self.max_fraction = config.get("max_fraction", 0.02)

    def check(self, image: np.ndarray) -> CheckResult:
        gray = _to_gray(image)
        fraction = float(np.count_nonzero(gray >= self.saturation_level)) / gray.size
        return self._result(
            fraction <= self.max_fraction,
            1.0 - fraction / (2.0 * self.max_fraction) if self.max_fraction > 0 else 1.0 - fraction,
            saturated_fraction=fraction,
            max_fraction=self.max_fraction,
        )


class StubChecker(QualityChecker):
    """
    Stub checker with a fixed outcome.

    `passed` and `confidence` may be changed between calls; `delay_s` makes
    the check slow, `error` makes it raise.
    """

    def __init__(
        self,
        kind: WarningKind,
        passed: bool = True,
        confidence: float = 1.0,
        delay_s: float = 0.0,
        error: Optional[Exception] = None,
        message: str = "",
    ):
        self.kind = kind
        self.passed = passed
        self.confidence = confidence
        self.delay_s = delay_s
        self.error = error
        self.failure_message = message or f"{kind.title} check failed"
        self.calls = 0

    def check(self, image: np.ndarray) -> CheckResult:
        self.calls += 1
        if self.delay_s > 0:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return self._result(self.passed, self.confidence, stub=True)


@dataclass
class CheckSuite:
    """The five checkers the validation pipeline runs, by stage."""

    low_light: QualityChecker
    liveness: QualityChecker
    segmentation: QualityChecker
    blur: QualityChecker
    bright_spots: QualityChecker

    @classmethod
    def stubs(cls) -> "CheckSuite":
        """All-passing stub suite."""
        return cls(
            low_light=StubChecker(WarningKind.LOW_LIGHT),
            liveness=StubChecker(WarningKind.LIVENESS),
            segmentation=StubChecker(WarningKind.SEGMENTATION),
            blur=StubChecker(WarningKind.BLUR),
            bright_spots=StubChecker(WarningKind.BRIGHT_SPOTS),
        )


def get_check_suite(config: Optional[Dict[str, Any]] = None) -> CheckSuite:
    """
    Factory function to get the OpenCV heuristic CheckSuite.

    Args:
        config: Optional `checks` config dict. If None, loads from config.yaml.

    Returns:
        Configured CheckSuite.
    """
    if config is None:
        from biocapture.config import get_section_or_default
        config = get_section_or_default("checks")

    return CheckSuite(
        low_light=LowLightChecker(config.get("low_light", {})),
        liveness=LivenessChecker(config.get("liveness", {})),
        segmentation=SegmentationChecker(config.get("segmentation", {})),
        blur=BlurChecker(config.get("blur", {})),
        bright_spots=BrightSpotsChecker(config.get("bright_spots", {})),
    )


if __name__ == "__main__":
    print("Testing quality checks...")

    suite = get_check_suite({})
    rng = np.random.default_rng(0)

    textured = rng.integers(0, 255, (200, 120, 3), dtype=np.uint8)
    flat = np.full((200, 120, 3), 40, dtype=np.uint8)

    for name in ("low_light", "liveness", "segmentation", "blur", "bright_spots"):
        checker = getattr(suite, name)
        a = checker.check(textured)
        b = checker.check(flat)
        print(f"{name:13s} textured: passed={a.passed} conf={a.confidence:.2f} | "
              f"flat: passed={b.passed} conf={b.confidence:.2f}")
