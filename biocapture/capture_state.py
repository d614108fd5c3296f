"""
Capture State Module

The capture session is always in exactly one of the states below. They form
a closed set: consumers handle every variant explicitly and finish with
`raise_unhandled_state(state)` so a newly added state cannot be silently
ignored.

    AwaitingPalm -> PalmDetected -> PalmCaptured
        -> AwaitingFinger(i) -> FingerDetected(i) -> FingerCaptured(i)
        -> ... -> AllDone
    AwaitingVerification -> VerificationDetected -> Verification
    Error (from anywhere, until reset)

Also defines the one-shot events the session emits.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

from biocapture.landmarks import FINGER_SEQUENCE, Finger, HandObservation, HandSide


@dataclass(frozen=True)
class AwaitingPalm:
    pass


@dataclass(frozen=True)
class PalmDetected:
    hand: HandSide
    session_id: uuid.UUID
    observation: Optional[HandObservation] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class AwaitingFinger:
    hand: HandSide
    finger_index: int
    session_id: uuid.UUID

    @property
    def finger(self) -> Finger:
        return FINGER_SEQUENCE[self.finger_index]


@dataclass(frozen=True)
class FingerDetected:
    hand: HandSide
    finger_index: int
    session_id: uuid.UUID
    observation: Optional[HandObservation] = field(default=None, compare=False, repr=False)

    @property
    def finger(self) -> Finger:
        return FINGER_SEQUENCE[self.finger_index]


@dataclass(frozen=True)
class PalmCaptured:
    hand: HandSide
    session_id: uuid.UUID
    frame_ref: str


@dataclass(frozen=True)
class FingerCaptured:
    hand: HandSide
    finger_index: int
    session_id: uuid.UUID
    frame_ref: str

    @property
    def finger(self) -> Finger:
        return FINGER_SEQUENCE[self.finger_index]


@dataclass(frozen=True)
class AllDone:
    hand: HandSide


@dataclass(frozen=True)
class AwaitingVerification:
    pass


@dataclass(frozen=True)
class VerificationDetected:
    landmarks: Optional[HandObservation] = field(default=None, compare=False)


@dataclass(frozen=True)
class Verification:
    frame_ref: str


@dataclass(frozen=True)
class Error:
    message: str


CaptureState = Union[
    AwaitingPalm,
    PalmDetected,
    AwaitingFinger,
    FingerDetected,
    PalmCaptured,
    FingerCaptured,
    AllDone,
    AwaitingVerification,
    VerificationDetected,
    Verification,
    Error,
]

DETECTED_STATES = (PalmDetected, FingerDetected, VerificationDetected)


def raise_unhandled_state(state) -> None:
    """Terminal branch of every exhaustive state dispatch."""
    raise TypeError(f"Unhandled capture state: {state!r}")


def describe_state(state: CaptureState) -> str:
    """Short human-readable prompt for a state."""
    if isinstance(state, AwaitingPalm):
        return "Place your palm inside the square"
    if isinstance(state, PalmDetected):
        return f"{state.hand} palm detected - hold still"
    if isinstance(state, AwaitingFinger):
        return f"Place your {state.hand} {state.finger.display_name} inside the oval"
    if isinstance(state, FingerDetected):
        return f"{state.hand} {state.finger.display_name} detected - hold still"
    if isinstance(state, PalmCaptured):
        return "Palm captured - confirm or retake"
    if isinstance(state, FingerCaptured):
        return f"{state.finger.display_name} captured - confirm or retake"
    if isinstance(state, AllDone):
        return f"All captures done for the {state.hand} hand"
    if isinstance(state, AwaitingVerification):
        return "Place any finger inside the oval to verify"
    if isinstance(state, VerificationDetected):
        return "Finger detected - hold still"
    if isinstance(state, Verification):
        return "Verification image captured"
    if isinstance(state, Error):
        return f"Error: {state.message}"
    raise_unhandled_state(state)


# ---------------------------------------------------------------------------
# One-shot events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WarningEvent:
    """Transient prompt for the user."""

    message: str
    icon_ref: str = "warning"
    created_at: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True)
class AutoFocusEvent:
    """Ask the camera to focus at a normalised point."""

    x: float
    y: float


@dataclass(frozen=True)
class DeleteFrameEvent:
    """A stored frame is no longer needed and must be removed."""

    frame_ref: str


@dataclass(frozen=True)
class FrameAcceptedEvent:
    """A frame passed every validation stage."""

    frame_ref: str
    quality_score: float


CaptureEvent = Union[WarningEvent, AutoFocusEvent, DeleteFrameEvent, FrameAcceptedEvent]
