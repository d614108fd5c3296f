"""
Capture Service Module

Wires the collaborators of a capture session together:

    camera frame --> latest-frame slot --> analysis worker
                                             detector -> state machine
                 --> validation pipeline (non-blocking submit)
    shutter      --> capture coordinator

on_frame() never blocks the camera callback. The analysis side keeps only
the newest frames (a bounded deque that drops the oldest) and a single
worker thread drains it, so observe() calls are serialised. The pipeline
drops frames on its own while a run is in flight.

Usage:
    from biocapture.service import create_capture_service

    service = create_capture_service(capture_device, overlay_size=(1080, 1920))
    service.start()
    camera.on_frame = service.on_frame
    ...
    service.take_photo()
    service.stop()
"""

import logging
import threading
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Tuple

from biocapture.capture_coordinator import CaptureCoordinator
from biocapture.capture_state import (
    AllDone,
    AwaitingFinger,
    AwaitingPalm,
    AwaitingVerification,
    CaptureEvent,
    CaptureState,
    DeleteFrameEvent,
    Error,
    FingerCaptured,
    FingerDetected,
    FrameAcceptedEvent,
    PalmCaptured,
    PalmDetected,
    Verification,
    VerificationDetected,
    raise_unhandled_state,
)
from biocapture.exceptions import DetectorFailureError, log_error
from biocapture.frames import Frame
from biocapture.geometry import CaptureWindow, Rect, ScaleMode, ScreenLayout
from biocapture.landmarks import HandObservation
from biocapture.state_machine import CaptureSessionStateMachine
from biocapture.validation_pipeline import AcceptedFrame, ValidationPipeline

logger = logging.getLogger(__name__)


def step_of(state: CaptureState) -> Tuple[str, Optional[int]]:
    """The capture step a state belongs to; the pipeline restarts when it changes."""
    if isinstance(state, (AwaitingPalm, PalmDetected, PalmCaptured)):
        return ("palm", None)
    if isinstance(state, (AwaitingFinger, FingerDetected, FingerCaptured)):
        return ("finger", state.finger_index)
    if isinstance(state, (AwaitingVerification, VerificationDetected, Verification)):
        return ("verification", None)
    if isinstance(state, AllDone):
        return ("done", None)
    if isinstance(state, Error):
        return ("error", None)
    raise_unhandled_state(state)


class CaptureService:
    """
    Runs the analysis worker and routes frames, events and shutter presses.

    Attributes:
        machine: Session state machine.
        detector: Callable returning a HandObservation (or None) for a Frame.
        pipeline: Optional validation pipeline fed with every frame.
        coordinator: Optional take-photo coordinator.
    """

    def __init__(
        self,
        machine: CaptureSessionStateMachine,
        detector: Callable[[Frame], Optional[HandObservation]],
        pipeline: Optional[ValidationPipeline] = None,
        coordinator: Optional[CaptureCoordinator] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.machine = machine
        self.detector = detector
        self.pipeline = pipeline
        self.coordinator = coordinator

        self._slot = deque(maxlen=max(1, config.get("analysis_queue_size", 1)))
        self._cond = threading.Condition()
        self._running = False
        self._worker: Optional[threading.Thread] = None
        self.dropped_frames = 0
        self._listeners: List[Callable[[CaptureEvent], None]] = []

        self._step = step_of(machine.current_state)
        self._apply_layout(machine.current_state)
        machine.add_state_listener(self._on_state)
        machine.subscribe(self._on_event)
        if pipeline is not None:
            pipeline.add_accepted_listener(self._on_accepted)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
        self._worker = threading.Thread(target=self._analysis_loop, name="analysis", daemon=True)
        self._worker.start()
        logger.info("Capture service started")

    def stop(self, timeout: float = 2.0) -> None:
        with self._cond:
            self._running = False
            self._cond.notify_all()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None
        if self.pipeline is not None:
            self.pipeline.shutdown(wait=False)
        logger.info(f"Capture service stopped ({self.dropped_frames} analysis frames dropped)")

    # ------------------------------------------------------------------
    # Frame arrival
    # ------------------------------------------------------------------

    def on_frame(self, frame: Frame) -> None:
        """Camera callback: enqueue for analysis and offer to the pipeline. Never blocks."""
        with self._cond:
            if len(self._slot) == self._slot.maxlen:
                self.dropped_frames += 1
            self._slot.append(frame)
            self._cond.notify()

        if self.pipeline is not None:
            self.pipeline.submit(frame)

    def _next_frame(self) -> Optional[Frame]:
        with self._cond:
            while self._running and not self._slot:
                self._cond.wait(timeout=0.5)
            if not self._running:
                return None
            return self._slot.popleft()

    def _analysis_loop(self) -> None:
        while True:
            frame = self._next_frame()
            if frame is None:
                break
            try:
                self.analyze(frame)
            except Exception as e:
                logger.exception("Frame analysis failed")
                self._report_detector_failure(
                    DetectorFailureError("analysis", f"{type(e).__name__}: {e}")
                )

    def analyze(self, frame: Frame) -> None:
        """Run detection on one frame and feed the state machine."""
        try:
            observation = self.detector(frame)
        except DetectorFailureError as e:
            self._report_detector_failure(e)
            return
        self.machine.observe(observation)
        self.machine.process_luminosity(frame.mean_luma())

    def _report_detector_failure(self, error: DetectorFailureError) -> None:
        log_error(error, logging.WARNING)
        self.machine.notify_warning(error.message, icon_ref="error")

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def take_photo(self) -> Optional[str]:
        if self.coordinator is None:
            raise RuntimeError("No capture coordinator configured")
        return self.coordinator.take_photo()

    # ------------------------------------------------------------------
    # State and event routing
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[CaptureEvent], None]) -> None:
        """Register for session events plus FrameAcceptedEvent from the pipeline."""
        self._listeners.append(callback)
        self.machine.subscribe(callback)

    def _on_accepted(self, accepted: AcceptedFrame) -> None:
        event = FrameAcceptedEvent(accepted.frame_ref, accepted.quality_score)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Listener {callback!r} failed for {event!r}")

    def _apply_layout(self, state: CaptureState) -> None:
        if self.pipeline is None or self.coordinator is None:
            return
        kind, _ = step_of(state)
        if kind == "palm":
            self.pipeline.set_layout(self.coordinator.palm_layout)
        elif kind in ("finger", "verification"):
            self.pipeline.set_layout(self.coordinator.finger_layout)

    def _on_state(self, state: CaptureState) -> None:
        step = step_of(state)
        if step == self._step:
            return
        logger.info(f"Capture step changed: {self._step} -> {step}")
        self._step = step
        self._apply_layout(state)
        if self.pipeline is not None:
            self.pipeline.clear()

    def _on_event(self, event: CaptureEvent) -> None:
        if isinstance(event, DeleteFrameEvent) and self.pipeline is not None:
            self.pipeline.clear()


def build_layouts(
    overlay_size: Tuple[float, float],
    display_surface_rect: Optional[Rect] = None,
    config: Optional[Dict[str, Any]] = None,
) -> Tuple[ScreenLayout, ScreenLayout]:
    """Palm and finger screen layouts from the `geometry` config section."""
    config = config or {}
    scale_mode = ScaleMode(config.get("scale_mode", "fit"))
    if display_surface_rect is None:
        display_surface_rect = Rect.from_size(*overlay_size)

    palm = CaptureWindow.palm(overlay_size, config.get("palm_fraction", 0.8))
    finger = CaptureWindow.finger(
        overlay_size,
        density=config.get("density", 1.0),
        radius_dp=config.get("finger_radius_dp", 85.0),
        straight_dp=config.get("finger_straight_dp", 80.0),
    )
    return (
        ScreenLayout(palm, overlay_size, display_surface_rect, scale_mode=scale_mode),
        ScreenLayout(finger, overlay_size, display_surface_rect, scale_mode=scale_mode),
    )


def create_capture_service(
    capture_device: Callable[[], Frame],
    overlay_size: Tuple[float, float],
    display_surface_rect: Optional[Rect] = None,
    detector: Optional[Callable[[Frame], Optional[HandObservation]]] = None,
    checks=None,
) -> CaptureService:
    """
    Build a fully wired CaptureService from config.yaml.

    Args:
        capture_device: Callable returning a high-resolution Frame on shutter.
        overlay_size: (width, height) of the overlay in screen pixels.
        display_surface_rect: Preview surface; defaults to the overlay.
        detector: Frame -> HandObservation callable. Defaults to the
                  MediaPipe HandDetector.
        checks: Optional CheckSuite for the pipeline.
    """
    from biocapture.config import get_section_or_default
    from biocapture.state_machine import get_state_machine
    from biocapture.storage import get_frame_store
    from biocapture.validation_pipeline import get_validation_pipeline

    frame_store = get_frame_store()
    machine = get_state_machine(delete_frame=frame_store.delete)

    if detector is None:
        from biocapture.hand_detector import get_hand_detector
        detector = get_hand_detector().detect

    palm_layout, finger_layout = build_layouts(
        overlay_size, display_surface_rect, get_section_or_default("geometry")
    )
    coordinator = CaptureCoordinator(
        machine,
        frame_store,
        capture_device,
        palm_layout,
        finger_layout,
        config=get_section_or_default("capture"),
    )
    pipeline = get_validation_pipeline(checks=checks)

    return CaptureService(
        machine,
        detector,
        pipeline=pipeline,
        coordinator=coordinator,
        config=get_section_or_default("detector"),
    )
