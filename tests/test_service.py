"""
Unit Tests for the Capture Service

This module tests the wiring between detector, state machine, validation
pipeline and coordinator using fake detectors and devices:
- Frame analysis and luminosity warnings
- Pipeline reset on step changes and frame deletion
- Layout switching between palm and finger windows
- Accepted-frame events and the background analysis worker

Usage:
    pytest tests/test_service.py -v
"""

import time
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from biocapture.capture_coordinator import CaptureCoordinator
from biocapture.capture_state import (
    AllDone,
    AwaitingFinger,
    AwaitingPalm,
    Error,
    FrameAcceptedEvent,
    PalmCaptured,
    PalmDetected,
    Verification,
    WarningEvent,
)
from biocapture.checks import CheckSuite
from biocapture.exceptions import DetectorFailureError
from biocapture.frames import Frame, FrameGeometry
from biocapture.geometry import ScaleMode
from biocapture.landmarks import HandObservation, HandSide
from biocapture.service import CaptureService, build_layouts, step_of
from biocapture.state_machine import TOO_DARK_WARNING, CaptureSessionStateMachine
from biocapture.storage import FrameStore
from biocapture.validation_pipeline import ValidationPipeline

OVERLAY = (160, 120)


def make_hand():
    return HandObservation(HandSide.RIGHT, True, np.full((21, 3), 0.2))


def textured_frame():
    rng = np.random.default_rng(5)
    return Frame(rng.integers(0, 255, (120, 160, 3), dtype=np.uint8), FrameGeometry(160, 120))


class FakeDetector:
    """Returns a fixed observation, or raises a configured error."""

    def __init__(self, observation=None, error=None):
        self.observation = observation
        self.error = error
        self.calls = 0

    def __call__(self, frame):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.observation


@pytest.fixture
def detector():
    return FakeDetector(make_hand())


@pytest.fixture
def service(detector, tmp_path):
    machine = CaptureSessionStateMachine()
    frame_store = FrameStore(str(tmp_path))
    palm_layout, finger_layout = build_layouts(OVERLAY, config={"density": 0.25})
    coordinator = CaptureCoordinator(
        machine, frame_store, textured_frame, palm_layout, finger_layout
    )
    pipeline = ValidationPipeline(CheckSuite.stubs())
    service = CaptureService(machine, detector, pipeline=pipeline, coordinator=coordinator)
    yield service
    service.stop()


def wait_for(condition, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def capture_palm(service):
    service.analyze(textured_frame())
    assert service.take_photo() is not None
    assert isinstance(service.machine.current_state, PalmCaptured)


# ============================================================
# Test Analysis
# ============================================================

class TestAnalysis:
    """Tests for CaptureService.analyze()."""

    def test_detection_feeds_machine(self, service):
        service.analyze(textured_frame())
        assert isinstance(service.machine.current_state, PalmDetected)

    def test_detector_failure_skips_frame(self, service, detector):
        """Test that a detector failure is shown as a warning and the frame skipped."""
        events = []
        service.subscribe(events.append)
        detector.error = DetectorFailureError("HandLandmarker", "bad frame")
        service.analyze(textured_frame())
        assert service.machine.current_state == AwaitingPalm()

        warnings = [e for e in events if isinstance(e, WarningEvent)]
        assert [w.message for w in warnings] == ["HandLandmarker failed to process the frame"]
        assert warnings[0].icon_ref == "error"

    def test_dark_frame_warns(self, service, detector):
        detector.observation = None
        events = []
        service.subscribe(events.append)

        dark = Frame(np.full((120, 160, 3), 10, dtype=np.uint8), FrameGeometry(160, 120))
        service.analyze(dark)
        assert TOO_DARK_WARNING in [e.message for e in events if isinstance(e, WarningEvent)]

    def test_take_photo_requires_coordinator(self, detector):
        service = CaptureService(CaptureSessionStateMachine(), detector)
        with pytest.raises(RuntimeError):
            service.take_photo()


# ============================================================
# Test Pipeline Routing
# ============================================================

class TestPipelineRouting:
    """Tests for pipeline resets and layout changes driven by the session."""

    def test_step_change_clears_pipeline(self, service):
        """Test that confirming the palm restarts validation for the thumb."""
        service.pipeline.process_frame(textured_frame())
        capture_palm(service)
        assert service.pipeline.accepted_count == 1

        service.machine.confirm_step()
        assert isinstance(service.machine.current_state, AwaitingFinger)
        assert service.pipeline.accepted_count == 0

    def test_retake_clears_pipeline(self, service):
        service.pipeline.process_frame(textured_frame())
        capture_palm(service)
        service.machine.retake()
        assert service.pipeline.accepted_count == 0

    def test_layout_follows_step(self, service):
        """Test that the pipeline crops the palm square, then the finger window."""
        accepted = service.pipeline.process_frame(textured_frame())
        assert accepted.image.shape == (96, 96, 3)

        capture_palm(service)
        service.machine.confirm_step()
        accepted = service.pipeline.process_frame(textured_frame())
        # stadium bounds 58.75..101.25 x 28.75..91.25, widened to whole pixels
        assert accepted.image.shape == (64, 44, 3)

    def test_accepted_frames_forwarded(self, service):
        events = []
        service.subscribe(events.append)
        service.pipeline.process_frame(textured_frame())

        accepted = [e for e in events if isinstance(e, FrameAcceptedEvent)]
        assert len(accepted) == 1
        assert accepted[0].frame_ref.startswith("memory://")


# ============================================================
# Test Worker
# ============================================================

class TestWorker:
    """Tests for on_frame() and the analysis worker."""

    def test_on_frame_reaches_machine(self, service):
        service.start()
        service.on_frame(textured_frame())

        deadline = time.time() + 5.0
        while time.time() < deadline:
            if isinstance(service.machine.current_state, PalmDetected):
                break
            time.sleep(0.01)
        assert isinstance(service.machine.current_state, PalmDetected)

    def test_worker_survives_unexpected_error(self, service, detector):
        """Test that an error outside DetectorFailureError does not stop analysis."""
        events = []
        service.subscribe(events.append)
        detector.error = ValueError("cannot reshape array")
        service.start()

        service.on_frame(textured_frame())
        assert wait_for(lambda: detector.calls >= 1)
        assert wait_for(lambda: any(isinstance(e, WarningEvent) for e in events))

        detector.error = None
        service.on_frame(textured_frame())
        assert wait_for(lambda: isinstance(service.machine.current_state, PalmDetected))
        assert service._worker.is_alive()

        warnings = [e.message for e in events if isinstance(e, WarningEvent)]
        assert "analysis failed to process the frame" in warnings

    def test_on_frame_drops_oldest_when_stopped(self, service, detector):
        """Test that queued frames beyond the slot size are counted as dropped."""
        for _ in range(3):
            service.on_frame(textured_frame())
        assert service.dropped_frames == 2
        assert detector.calls == 0


# ============================================================
# Test Helpers
# ============================================================

class TestHelpers:
    """Tests for step_of() and build_layouts()."""

    def test_step_of(self):
        assert step_of(AwaitingPalm()) == ("palm", None)
        assert step_of(AllDone(HandSide.LEFT)) == ("done", None)
        assert step_of(Verification("v.jpg")) == ("verification", None)
        assert step_of(Error("boom")) == ("error", None)

    def test_step_of_unknown_state(self):
        with pytest.raises(TypeError):
            step_of(object())

    def test_build_layouts(self):
        palm, finger = build_layouts((1080, 1920), config={"scale_mode": "fill", "density": 2.0})
        assert palm.scale_mode == ScaleMode.FILL
        assert palm.window.half_width == pytest.approx(432)
        assert finger.window.half_width == pytest.approx(170)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
