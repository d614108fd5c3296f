"""
Capture Coordinator Module

The take-photo flow triggered by the shutter button:

    1. start_capture() on the state machine (must be in a *Detected state)
    2. grab a high-resolution frame from the capture device
    3. crop it to the capture window shown for the current step and rotate
       the crop upright
    4. reject blurred crops
    5. store the crop and hand the frame reference to capture_confirmed()

Failures are routed the way the session expects them:
- capture device failure -> cancel + Error state (needs reset)
- no valid crop or blurred crop -> cancel + warning, the user simply retries
- storage failure -> cancel + StorageError raised to the caller
- any other error -> cancel, then raised to the caller
"""

import logging
from typing import Any, Callable, Dict, Optional

import cv2
import numpy as np

from biocapture.capture_state import (
    FingerDetected,
    PalmDetected,
    VerificationDetected,
    raise_unhandled_state,
)
from biocapture.checks import compute_blur_score
from biocapture.exceptions import CaptureDeviceError, NoValidCropError, StorageError, log_error
from biocapture.frames import Frame
from biocapture.geometry import ScreenLayout, crop_window
from biocapture.state_machine import CaptureSessionStateMachine
from biocapture.storage import FrameStore

logger = logging.getLogger(__name__)


BLURRED_WARNING = "Image is blurred, please try again."
NO_CROP_WARNING = "Could not crop the capture window, please try again."
NO_HAND_WARNING = "Hand lost during capture, please try again."


class CaptureCoordinator:
    """
    Connects the shutter to the state machine, geometry engine and frame store.

    Attributes:
        machine: The session state machine.
        frame_store: Where accepted crops are written.
        capture_device: Callable returning a high-resolution Frame.
        palm_layout: Screen layout of the palm window.
        finger_layout: Screen layout of the finger window (also used for
                       verification).
        blur_threshold: Minimum Laplacian variance of a stored crop.
    """

    def __init__(
        self,
        machine: CaptureSessionStateMachine,
        frame_store: FrameStore,
        capture_device: Callable[[], Frame],
        palm_layout: ScreenLayout,
        finger_layout: ScreenLayout,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.machine = machine
        self.frame_store = frame_store
        self.capture_device = capture_device
        self.palm_layout = palm_layout
        self.finger_layout = finger_layout
        self.blur_threshold = config.get("blur_threshold", 20.0)

    def layout_for(self, state) -> ScreenLayout:
        if isinstance(state, PalmDetected):
            return self.palm_layout
        if isinstance(state, (FingerDetected, VerificationDetected)):
            return self.finger_layout
        raise_unhandled_state(state)

    def _label_for(self, state) -> str:
        if isinstance(state, PalmDetected):
            return "Palm"
        if isinstance(state, FingerDetected):
            return state.finger.display_name
        if isinstance(state, VerificationDetected):
            return "Verification"
        raise_unhandled_state(state)

    def _crop(self, frame: Frame, layout: ScreenLayout) -> np.ndarray:
        crop = crop_window(frame.to_bgr(), layout, frame.geometry)
        if crop is None or crop.size == 0:
            raise NoValidCropError(layout.sensor_rect(frame.geometry).to_int_tuple())
        return np.ascontiguousarray(crop)

    def take_photo(self) -> Optional[str]:
        """
        Run the full capture flow.

        Returns:
            The stored frame reference, or None if nothing was captured.

        Raises:
            StorageError: If the crop cannot be written. The capture is
                          cancelled and the state stays *Detected.

        Any other error while grabbing, cropping or storing also cancels the
        capture before it propagates.
        """
        token = self.machine.start_capture()
        if token is None:
            logger.debug("take_photo ignored: no hand in position")
            return None

        try:
            return self._capture(token)
        except Exception:
            if self.machine.capture_in_flight:
                self.machine.cancel_capture()
            raise

    def _capture(self, token: int) -> Optional[str]:
        state = self.machine.current_state
        observation = getattr(state, "observation", None) or getattr(state, "landmarks", None)
        if observation is None:
            self.machine.cancel_capture()
            self.machine.notify_warning(NO_HAND_WARNING)
            return None

        try:
            frame = self.capture_device()
            if frame is None:
                raise CaptureDeviceError("capture device returned no frame")
        except (CaptureDeviceError, OSError, cv2.error) as e:
            error = e if isinstance(e, CaptureDeviceError) else CaptureDeviceError(str(e))
            log_error(error)
            self.machine.cancel_capture()
            self.machine.on_error(error.message)
            return None

        try:
            crop = self._crop(frame, self.layout_for(state))
        except NoValidCropError as e:
            log_error(e, logging.WARNING)
            self.machine.cancel_capture()
            self.machine.notify_warning(NO_CROP_WARNING)
            return None

        blur_score = compute_blur_score(crop)
        if blur_score < self.blur_threshold:
            logger.info(f"Capture rejected as blurred (score={blur_score:.1f})")
            self.machine.cancel_capture()
            self.machine.notify_warning(BLURRED_WARNING, icon_ref="blur")
            return None

        hand = getattr(state, "hand", None) or observation.hand_side
        try:
            frame_ref = self.frame_store.save(crop, hand, self._label_for(state))
        except StorageError:
            self.machine.cancel_capture()
            raise

        try:
            accepted = self.machine.capture_confirmed(frame_ref, token)
        except StorageError:
            self.machine.cancel_capture()
            self.frame_store.delete(frame_ref)
            raise
        return frame_ref if accepted else None
