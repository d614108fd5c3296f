"""
Capture Session State Machine

Drives the capture ritual: palm first, then Thumb, Index, Middle, Ring and
Pinky of the same hand, or a single verification scan. It consumes landmark
observations from the analysis stream plus user actions and publishes the
current CaptureState together with one-shot events (warnings, autofocus
requests, frame deletions).

Usage:
    from biocapture.state_machine import CaptureSessionStateMachine

    machine = CaptureSessionStateMachine(session_store=store)
    machine.subscribe(on_event)

    # Analysis loop:
    machine.observe(detector.detect(frame))

    # Shutter:
    token = machine.start_capture()
    if token is not None:
        frame_ref = take_photo_and_store()
        machine.capture_confirmed(frame_ref, token)

    # User taps "continue" or "retake":
    machine.confirm_step()
    machine.retake()
"""

import time
import uuid
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from biocapture.capture_state import (
    AllDone,
    AutoFocusEvent,
    AwaitingFinger,
    AwaitingPalm,
    AwaitingVerification,
    CaptureEvent,
    CaptureState,
    DeleteFrameEvent,
    DETECTED_STATES,
    Error,
    FingerCaptured,
    FingerDetected,
    PalmCaptured,
    PalmDetected,
    Verification,
    VerificationDetected,
    WarningEvent,
    raise_unhandled_state,
)
from biocapture.landmarks import (
    FINGER_COUNT,
    FINGER_SEQUENCE,
    HandObservation,
    HandSide,
    PlacementWindow,
    find_finger_in_position,
    get_finger_landmarks,
    is_finger_in_position,
    is_full_hand,
    landmark_centroid,
)
from biocapture.storage import InMemorySessionStore, SessionSnapshot, SessionStore

logger = logging.getLogger(__name__)


DORSAL_WARNING = "Do not show the dorsal side of the hand."
TOO_DARK_WARNING = "Too dark"
TOO_BRIGHT_WARNING = "Too bright"


def wrong_hand_warning(hand: HandSide) -> str:
    return f"Incorrect hand detected. Please use your {hand} hand."


def center_finger_warning(hand: HandSide, finger_index: int) -> str:
    finger = FINGER_SEQUENCE[finger_index].display_name
    return f"{hand} hand detected. Center your {finger}."


class CaptureSessionStateMachine:
    """
    State machine for one guided capture session.

    All operations are serialised by an internal lock, so the analysis worker
    and UI callbacks may call in from different threads. `current_state` is
    the published cell: readers always get a whole, immutable state value.

    Events and state changes are dispatched to listeners after the lock is
    released, in the order they happened.

    A capture is "in flight" between start_capture() and either
    capture_confirmed() or cancel_capture(). While in flight, observe() is a
    no-op so the displayed placement cannot change mid-shutter.
    """

    def __init__(
        self,
        session_store: Optional[SessionStore] = None,
        config: Optional[Dict[str, Any]] = None,
        placement: Optional[PlacementWindow] = None,
        delete_frame: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the state machine, resuming from the session store.

        Args:
            session_store: Where {session_id, hand, finger_index} is persisted.
                           Defaults to an in-memory store.
            config: `capture` section of the config, containing:
                - warning_cooldown_s: Minimum gap between identical warnings
                - luminosity_cooldown_s: Minimum gap between luminosity warnings
                - min_luma / max_luma: "Too dark" / "Too bright" thresholds
                - palm_landmark_count: Landmarks a full hand must have
            placement: Normalised window the finger centroid must fall into.
            delete_frame: Called synchronously with a frame reference before a
                          retake or stale capture is applied. A StorageError it
                          raises propagates and blocks the transition.
            clock: Monotonic time source, injectable for tests.
        """
        config = config or {}
        self.warning_cooldown_s = config.get("warning_cooldown_s", 2.0)
        self.luminosity_cooldown_s = config.get("luminosity_cooldown_s", 2.0)
        self.min_luma = config.get("min_luma", 50)
        self.max_luma = config.get("max_luma", 200)
        self.palm_landmark_count = config.get("palm_landmark_count", 21)

        self.session_store = session_store or InMemorySessionStore()
        self.placement = placement or PlacementWindow()
        self._delete_frame = delete_frame
        self._clock = clock

        self._lock = threading.RLock()
        self._event_listeners: List[Callable[[CaptureEvent], None]] = []
        self._state_listeners: List[Callable[[CaptureState], None]] = []
        self._outbox: List[Any] = []

        self._last_warning_at: Dict[str, float] = {}
        self._last_luminosity_at: Optional[float] = None

        # Session id reserved for the palm step; survives reversion and palm retake
        self._pending_session_id: Optional[uuid.UUID] = None
        self._epoch = 0
        self._capture_token: Optional[int] = None

        self._state: CaptureState = self._restore_state()
        logger.info(f"Capture session started in state {self._state}")

    # ------------------------------------------------------------------
    # Published state and listeners
    # ------------------------------------------------------------------

    @property
    def current_state(self) -> CaptureState:
        with self._lock:
            return self._state

    @property
    def capture_in_flight(self) -> bool:
        with self._lock:
            return self._capture_token is not None

    @property
    def epoch(self) -> int:
        with self._lock:
            return self._epoch

    def subscribe(self, callback: Callable[[CaptureEvent], None]) -> None:
        """Register a callback for one-shot events."""
        with self._lock:
            self._event_listeners.append(callback)

    def add_state_listener(self, callback: Callable[[CaptureState], None]) -> None:
        """Register a callback invoked with every new state."""
        with self._lock:
            self._state_listeners.append(callback)

    def _set_state(self, new_state: CaptureState) -> None:
        if new_state == self._state:
            # Same logical state; refresh the attached observation only
            self._state = new_state
            return
        logger.info(f"State {type(self._state).__name__} -> {new_state}")
        self._state = new_state
        self._outbox.append((self._state_listeners, new_state))

    def _emit(self, event: CaptureEvent) -> None:
        self._outbox.append((self._event_listeners, event))

    def _dispatch(self) -> None:
        """Deliver queued events and states outside the lock."""
        with self._lock:
            pending, self._outbox = self._outbox, []
            pending = [(list(listeners), item) for listeners, item in pending]

        for listeners, item in pending:
            for callback in listeners:
                try:
                    callback(item)
                except Exception:
                    logger.exception(f"Listener {callback!r} failed for {item!r}")

    def _warn(self, message: str, icon_ref: str = "warning") -> None:
        now = self._clock()
        last = self._last_warning_at.get(message)
        if last is not None and now - last < self.warning_cooldown_s:
            return
        self._last_warning_at[message] = now
        logger.debug(f"Warning: {message}")
        self._emit(WarningEvent(message, icon_ref=icon_ref))

    # ------------------------------------------------------------------
    # Restore / persist
    # ------------------------------------------------------------------

    def _restore_state(self) -> CaptureState:
        snapshot = self.session_store.load()
        if snapshot is None:
            return AwaitingPalm()

        if snapshot.finger_index is None:
            self._pending_session_id = snapshot.session_id
            return AwaitingPalm()
        if snapshot.finger_index >= FINGER_COUNT:
            return AllDone(snapshot.hand)
        return AwaitingFinger(
            hand=snapshot.hand,
            finger_index=max(0, snapshot.finger_index),
            session_id=snapshot.session_id,
        )

    def _persist(self, session_id: uuid.UUID, hand: HandSide, finger_index: Optional[int]) -> None:
        self.session_store.save(SessionSnapshot(session_id, hand, finger_index))

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def observe(self, observation: Optional[HandObservation]) -> None:
        """
        Feed the latest landmark result (None when no hand was found).

        Moves between Awaiting* and *Detected states; ignored while a capture
        is in flight and in every state that does not await a hand.
        """
        with self._lock:
            if self._capture_token is not None:
                return

            state = self._state
            if isinstance(state, (AwaitingPalm, PalmDetected)):
                self._observe_palm(state, observation)
            elif isinstance(state, (AwaitingFinger, FingerDetected)):
                self._observe_finger(state, observation)
            elif isinstance(state, (AwaitingVerification, VerificationDetected)):
                self._observe_verification(state, observation)
            elif isinstance(state, (PalmCaptured, FingerCaptured, AllDone, Verification, Error)):
                pass
            else:
                raise_unhandled_state(state)
        self._dispatch()

    def _observe_palm(self, state, observation: Optional[HandObservation]) -> None:
        if observation is not None and not observation.is_palm_side:
            self._warn(DORSAL_WARNING)
            observation = None

        if observation is None or not is_full_hand(observation.landmarks, self.palm_landmark_count):
            if isinstance(state, PalmDetected):
                self._set_state(AwaitingPalm())
            return

        if self._pending_session_id is None:
            self._pending_session_id = uuid.uuid4()

        entering = not isinstance(state, PalmDetected) or state.hand != observation.hand_side
        self._set_state(PalmDetected(observation.hand_side, self._pending_session_id, observation))
        if entering:
            x, y = observation.wrist
            self._emit(AutoFocusEvent(x, y))

    def _observe_finger(self, state, observation: Optional[HandObservation]) -> None:
        waiting = AwaitingFinger(state.hand, state.finger_index, state.session_id)

        if observation is None:
            self._set_state(waiting)
            return
        if not observation.is_palm_side:
            self._warn(DORSAL_WARNING)
            self._set_state(waiting)
            return
        if observation.hand_side != state.hand:
            self._warn(wrong_hand_warning(state.hand))
            self._set_state(waiting)
            return
        if not is_finger_in_position(observation.landmarks, state.finger_index, self.placement):
            self._warn(center_finger_warning(state.hand, state.finger_index))
            self._set_state(waiting)
            return

        entering = isinstance(state, AwaitingFinger)
        self._set_state(
            FingerDetected(state.hand, state.finger_index, state.session_id, observation)
        )
        if entering:
            self._emit_finger_focus(observation, state.finger_index)

    def _observe_verification(self, state, observation: Optional[HandObservation]) -> None:
        if observation is not None and not observation.is_palm_side:
            self._warn(DORSAL_WARNING)
            observation = None

        if isinstance(state, VerificationDetected):
            if observation is None:
                self._set_state(AwaitingVerification())
            else:
                self._set_state(VerificationDetected(observation))
            return

        if observation is None:
            return
        finger_index = find_finger_in_position(observation.landmarks, self.placement)
        if finger_index < 0:
            return
        self._set_state(VerificationDetected(observation))
        self._emit_finger_focus(observation, finger_index)

    def _emit_finger_focus(self, observation: HandObservation, finger_index: int) -> None:
        centroid = landmark_centroid(get_finger_landmarks(observation.landmarks, finger_index))
        if centroid is not None:
            self._emit(AutoFocusEvent(*centroid))

    def notify_warning(self, message: str, icon_ref: str = "warning") -> None:
        """Emit a warning from outside the state machine, subject to the same cooldown."""
        with self._lock:
            self._warn(message, icon_ref)
        self._dispatch()

    def process_luminosity(self, luma: float) -> None:
        """Warn when the average preview brightness is outside [min_luma, max_luma]."""
        with self._lock:
            if isinstance(self._state, Error):
                return
            if self.min_luma <= luma <= self.max_luma:
                return
            now = self._clock()
            last = self._last_luminosity_at
            if last is not None and now - last < self.luminosity_cooldown_s:
                return
            self._last_luminosity_at = now
            message = TOO_DARK_WARNING if luma < self.min_luma else TOO_BRIGHT_WARNING
            logger.debug(f"Luminosity {luma:.1f}: {message}")
            self._emit(WarningEvent(message, icon_ref="brightness"))
        self._dispatch()

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def start_capture(self) -> Optional[int]:
        """
        Begin a capture from a *Detected state.

        Returns:
            Token to pass to capture_confirmed(), or None if no capture can
            start (wrong state or a capture already in flight).
        """
        with self._lock:
            if self._capture_token is not None:
                logger.debug("start_capture ignored: capture already in flight")
                return None
            if not isinstance(self._state, DETECTED_STATES):
                logger.debug(f"start_capture ignored in state {self._state}")
                return None
            self._epoch += 1
            self._capture_token = self._epoch
            logger.info(f"Capture started (token={self._capture_token})")
            return self._capture_token

    def cancel_capture(self) -> None:
        """Abandon the in-flight capture; the Detected state is kept."""
        with self._lock:
            if self._capture_token is not None:
                logger.info(f"Capture cancelled (token={self._capture_token})")
            self._capture_token = None
            self._epoch += 1

    def capture_confirmed(self, frame_ref: str, token: Optional[int] = None) -> bool:
        """
        Record the stored frame for the in-flight capture.

        A result whose token is stale (cancel, reset or error happened since
        start_capture) is discarded and its frame deleted.

        Returns:
            True if the frame was accepted into the session.

        Raises:
            StorageError: If persisting the session fails; the state is unchanged.
        """
        with self._lock:
            state = self._state
            stale = token is not None and token != self._capture_token
            if stale or not isinstance(state, DETECTED_STATES):
                logger.warning(f"Discarding stale capture {frame_ref} (token={token})")
                self._discard_frame(frame_ref)
                accepted = False
            elif isinstance(state, PalmDetected):
                self._persist(state.session_id, state.hand, None)
                self._capture_token = None
                self._set_state(PalmCaptured(state.hand, state.session_id, frame_ref))
                accepted = True
            elif isinstance(state, FingerDetected):
                self._capture_token = None
                self._set_state(
                    FingerCaptured(state.hand, state.finger_index, state.session_id, frame_ref)
                )
                accepted = True
            elif isinstance(state, VerificationDetected):
                self._capture_token = None
                self._set_state(Verification(frame_ref))
                accepted = True
            else:
                raise_unhandled_state(state)
        self._dispatch()
        return accepted

    def _discard_frame(self, frame_ref: str) -> None:
        if self._delete_frame is not None:
            self._delete_frame(frame_ref)
        self._emit(DeleteFrameEvent(frame_ref))

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def confirm_step(self) -> None:
        """
        Accept the captured frame and move on.

        Palm goes to AwaitingFinger(0), finger i to finger i + 1 or AllDone.
        In any other state this is a no-op.

        Raises:
            StorageError: If persisting the new finger index fails.
        """
        with self._lock:
            state = self._state
            if isinstance(state, PalmCaptured):
                self._persist(state.session_id, state.hand, 0)
                self._set_state(AwaitingFinger(state.hand, 0, state.session_id))
            elif isinstance(state, FingerCaptured):
                next_index = state.finger_index + 1
                self._persist(state.session_id, state.hand, next_index)
                if next_index >= FINGER_COUNT:
                    self._set_state(AllDone(state.hand))
                else:
                    self._set_state(AwaitingFinger(state.hand, next_index, state.session_id))
            else:
                logger.debug(f"confirm_step ignored in state {state}")
        self._dispatch()

    def retake(self) -> None:
        """
        Discard the captured frame and return to the matching Awaiting state.

        Raises:
            StorageError: If the frame or the persisted session cannot be
                          removed; the state is unchanged.
        """
        with self._lock:
            state = self._state
            if isinstance(state, PalmCaptured):
                if self._delete_frame is not None:
                    self._delete_frame(state.frame_ref)
                self.session_store.clear()
                self._pending_session_id = state.session_id
                self._set_state(AwaitingPalm())
                self._emit(DeleteFrameEvent(state.frame_ref))
            elif isinstance(state, FingerCaptured):
                if self._delete_frame is not None:
                    self._delete_frame(state.frame_ref)
                self._set_state(AwaitingFinger(state.hand, state.finger_index, state.session_id))
                self._emit(DeleteFrameEvent(state.frame_ref))
            elif isinstance(state, Verification):
                if self._delete_frame is not None:
                    self._delete_frame(state.frame_ref)
                self._set_state(AwaitingVerification())
                self._emit(DeleteFrameEvent(state.frame_ref))
            else:
                logger.debug(f"retake ignored in state {state}")
        self._dispatch()

    def on_error(self, message: str) -> None:
        """Enter the terminal Error state; only reset() leaves it."""
        with self._lock:
            logger.error(f"Capture session error: {message}")
            self._capture_token = None
            self._epoch += 1
            self._set_state(Error(message))
        self._dispatch()

    def start_verification(self) -> None:
        """Switch to the verification scan."""
        with self._lock:
            if isinstance(self._state, Error):
                logger.debug("start_verification ignored in Error state; reset first")
                return
            self._capture_token = None
            self._epoch += 1
            self._set_state(AwaitingVerification())
        self._dispatch()

    def verification_frame_ready(self, frame_ref: str) -> None:
        """Record a verification frame captured outside start_capture()."""
        with self._lock:
            state = self._state
            if isinstance(state, (AwaitingVerification, VerificationDetected)):
                self._capture_token = None
                self._set_state(Verification(frame_ref))
            else:
                logger.debug(f"verification_frame_ready ignored in state {state}")
        self._dispatch()

    def reset(self, discard_session: bool = False) -> None:
        """
        Leave Error (or any state) and start over.

        By default the session resumes from the persisted progress, exactly
        like a fresh start. With discard_session=True the persisted progress
        and the reserved palm session id are dropped as well.
        """
        with self._lock:
            self._capture_token = None
            self._epoch += 1
            self._last_warning_at.clear()
            self._last_luminosity_at = None
            self._pending_session_id = None
            if discard_session:
                self.session_store.clear()
            self._set_state(self._restore_state())
        self._dispatch()


def get_state_machine(
    config: Optional[Dict[str, Any]] = None,
    session_store: Optional[SessionStore] = None,
    delete_frame: Optional[Callable[[str], Any]] = None,
) -> CaptureSessionStateMachine:
    """
    Factory function to get a CaptureSessionStateMachine.

    Args:
        config: Optional `capture` config dict. If None, loads from config.yaml.
        session_store: Optional session store. If None, built from the
                       `storage` section.
        delete_frame: Optional synchronous frame deleter.
    """
    from biocapture.config import get_section_or_default

    if config is None:
        config = get_section_or_default("capture")
    if session_store is None:
        from biocapture.storage import get_session_store
        session_store = get_session_store()

    placement = PlacementWindow.from_config(get_section_or_default("placement"))
    return CaptureSessionStateMachine(
        session_store=session_store,
        config=config,
        placement=placement,
        delete_frame=delete_frame,
    )


if __name__ == "__main__":
    import numpy as np

    logging.basicConfig(level=logging.INFO)

    machine = CaptureSessionStateMachine()
    machine.subscribe(lambda event: print(f"  event: {event}"))

    hand = np.full((21, 2), 0.5)
    hand[5] = (0.45, 0.45)
    hand[17] = (0.55, 0.45)
    hand[0] = (0.5, 0.7)
    observation = HandObservation(HandSide.RIGHT, True, hand)

    machine.observe(observation)
    token = machine.start_capture()
    machine.capture_confirmed("palm.jpg", token)
    machine.confirm_step()
    print(f"Now: {machine.current_state}")
