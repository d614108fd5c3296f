"""
Unit Tests for the Capture Coordinator

This module tests the take-photo flow end to end with a fake capture device:
- Successful palm and finger captures stored under the right names
- Blurred crops and empty crops rejected with a warning
- Capture device failure entering the Error state
- Storage failures leaving the state unchanged

Usage:
    pytest tests/test_capture_coordinator.py -v
"""

import uuid
import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from biocapture.capture_coordinator import (
    BLURRED_WARNING,
    NO_CROP_WARNING,
    CaptureCoordinator,
)
from biocapture.capture_state import (
    Error,
    FingerCaptured,
    PalmCaptured,
    PalmDetected,
    WarningEvent,
)
from biocapture.exceptions import CaptureDeviceError, StorageError
from biocapture.frames import Frame, FrameGeometry
from biocapture.geometry import CaptureWindow, Rect, ScreenLayout
from biocapture.landmarks import FINGER_LANDMARK_INDEXES, Finger, HandObservation, HandSide
from biocapture.state_machine import CaptureSessionStateMachine
from biocapture.storage import FrameStore, InMemorySessionStore, SessionSnapshot

OVERLAY = (160, 120)


def make_hand(finger_at=None):
    landmarks = np.full((21, 3), 0.2)
    if finger_at is not None:
        for index in FINGER_LANDMARK_INDEXES[finger_at]:
            landmarks[index, :2] = 0.5
    return HandObservation(HandSide.RIGHT, True, landmarks)


def textured_frame():
    rng = np.random.default_rng(3)
    return Frame(rng.integers(0, 255, (120, 160, 3), dtype=np.uint8), FrameGeometry(160, 120))


def flat_frame():
    return Frame(np.full((120, 160, 3), 128, dtype=np.uint8), FrameGeometry(160, 120))


def layout(window):
    return ScreenLayout(window, OVERLAY, Rect.from_size(*OVERLAY))


class FakeDevice:
    def __init__(self, frame=None, error=None):
        self.frame = frame
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.frame


class FailingFrameStore(FrameStore):
    def save(self, image, hand, label):
        raise StorageError("write", reason="disk full")


class FailingSessionStore(InMemorySessionStore):
    def save(self, snapshot):
        raise StorageError("write", "session.json", "disk full")


@pytest.fixture
def frame_store(tmp_path):
    return FrameStore(str(tmp_path))


@pytest.fixture
def machine(frame_store):
    return CaptureSessionStateMachine(delete_frame=frame_store.delete)


@pytest.fixture
def events(machine):
    received = []
    machine.subscribe(received.append)
    return received


def make_coordinator(machine, frame_store, device, palm_window=None):
    return CaptureCoordinator(
        machine,
        frame_store,
        device,
        palm_layout=layout(palm_window or CaptureWindow.palm(OVERLAY)),
        finger_layout=layout(CaptureWindow(80, 60, 20, 30)),
        config={"blur_threshold": 20.0},
    )


def stored_files(frame_store):
    return sorted(p.name for p in Path(frame_store.storage_dir).glob("*.jpg"))


# ============================================================
# Test Successful Captures
# ============================================================

class TestTakePhoto:
    """Tests for successful take_photo() runs."""

    def test_no_detection_does_nothing(self, machine, frame_store):
        device = FakeDevice(textured_frame())
        coordinator = make_coordinator(machine, frame_store, device)
        assert coordinator.take_photo() is None
        assert device.calls == 0
        assert stored_files(frame_store) == []

    def test_palm_capture(self, machine, frame_store):
        """Test that a palm capture is cropped, stored and confirmed."""
        machine.observe(make_hand())
        coordinator = make_coordinator(machine, frame_store, FakeDevice(textured_frame()))

        frame_ref = coordinator.take_photo()
        assert frame_ref is not None
        assert Path(frame_ref).name.startswith("Right_Palm_")

        state = machine.current_state
        assert isinstance(state, PalmCaptured)
        assert state.frame_ref == frame_ref
        assert not machine.capture_in_flight

    def test_palm_crop_size(self, machine, frame_store):
        machine.observe(make_hand())
        coordinator = make_coordinator(machine, frame_store, FakeDevice(textured_frame()))
        frame_ref = coordinator.take_photo()
        # 0.8 * 120 = 96 pixel square
        assert frame_store.load(frame_ref).shape == (96, 96, 3)

    def test_finger_capture_label(self, frame_store):
        store = InMemorySessionStore(SessionSnapshot(uuid.uuid4(), HandSide.RIGHT, 2))
        machine = CaptureSessionStateMachine(session_store=store)
        machine.observe(make_hand(finger_at=Finger.MIDDLE))
        coordinator = make_coordinator(machine, frame_store, FakeDevice(textured_frame()))

        frame_ref = coordinator.take_photo()
        assert Path(frame_ref).name.startswith("Right_Middle_")
        assert isinstance(machine.current_state, FingerCaptured)
        assert frame_store.load(frame_ref).shape == (60, 40, 3)


# ============================================================
# Test Rejected Captures
# ============================================================

class TestRejectedCaptures:
    """Tests for take_photo() failures."""

    def test_blurred_crop_rejected(self, machine, frame_store, events):
        machine.observe(make_hand())
        coordinator = make_coordinator(machine, frame_store, FakeDevice(flat_frame()))

        assert coordinator.take_photo() is None
        assert isinstance(machine.current_state, PalmDetected)
        assert not machine.capture_in_flight
        assert stored_files(frame_store) == []

        warnings = [e for e in events if isinstance(e, WarningEvent)]
        assert warnings[-1].message == BLURRED_WARNING
        assert warnings[-1].icon_ref == "blur"

    def test_empty_crop_rejected(self, machine, frame_store, events):
        machine.observe(make_hand())
        coordinator = make_coordinator(
            machine, frame_store, FakeDevice(textured_frame()),
            palm_window=CaptureWindow(5000, 5000, 10, 10),
        )

        assert coordinator.take_photo() is None
        assert isinstance(machine.current_state, PalmDetected)
        assert NO_CROP_WARNING in [e.message for e in events if isinstance(e, WarningEvent)]

    def test_device_failure_enters_error(self, machine, frame_store):
        machine.observe(make_hand())
        device = FakeDevice(error=CaptureDeviceError("sensor disconnected"))
        coordinator = make_coordinator(machine, frame_store, device)

        assert coordinator.take_photo() is None
        state = machine.current_state
        assert isinstance(state, Error)
        assert "sensor disconnected" in state.message
        assert not machine.capture_in_flight

    def test_device_without_frame_enters_error(self, machine, frame_store):
        machine.observe(make_hand())
        coordinator = make_coordinator(machine, frame_store, FakeDevice(frame=None))
        assert coordinator.take_photo() is None
        assert isinstance(machine.current_state, Error)

    def test_malformed_frame_cancels_capture(self, machine, frame_store):
        """Test that a YUV buffer not matching its geometry leaves no capture in flight."""
        machine.observe(make_hand())
        bad_frame = Frame(np.zeros((10, 10), dtype=np.uint8), FrameGeometry(160, 120), "NV21")
        coordinator = make_coordinator(machine, frame_store, FakeDevice(bad_frame))

        with pytest.raises(ValueError):
            coordinator.take_photo()
        assert isinstance(machine.current_state, PalmDetected)
        assert not machine.capture_in_flight
        assert stored_files(frame_store) == []

        coordinator.capture_device = FakeDevice(textured_frame())
        assert coordinator.take_photo() is not None
        assert isinstance(machine.current_state, PalmCaptured)

    def test_frame_store_failure_propagates(self, machine, tmp_path):
        """Test that a failed write raises and leaves the session in PalmDetected."""
        failing_store = FailingFrameStore(str(tmp_path))
        machine.observe(make_hand())
        coordinator = make_coordinator(machine, failing_store, FakeDevice(textured_frame()))

        with pytest.raises(StorageError):
            coordinator.take_photo()
        assert isinstance(machine.current_state, PalmDetected)
        assert not machine.capture_in_flight

    def test_session_store_failure_removes_frame(self, frame_store):
        machine = CaptureSessionStateMachine(session_store=FailingSessionStore())
        machine.observe(make_hand())
        coordinator = make_coordinator(machine, frame_store, FakeDevice(textured_frame()))

        with pytest.raises(StorageError):
            coordinator.take_photo()
        assert isinstance(machine.current_state, PalmDetected)
        assert not machine.capture_in_flight
        assert stored_files(frame_store) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
