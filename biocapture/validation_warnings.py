"""
Validation Warnings

The prioritised, deduplicated set of warnings raised by the validation
pipeline. There is at most one active warning per kind; raising a kind that
is already active refreshes its message and timestamp in place. The set is
always read as a snapshot sorted by (stage, insertion order), so stage-1
problems (lighting, liveness) are shown before segmentation and image
quality problems.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class WarningKind(Enum):
    """Warning kinds with their stage (1 = highest priority), title and icon."""

    LOW_LIGHT = ("low_light", 1, "Poor Lighting", "icon_light")
    LIVENESS = ("liveness", 1, "Liveness Check", "icon_liveness")
    SEGMENTATION = ("segmentation", 2, "Finger Position", "icon_finger")
    BLUR = ("blur", 3, "Image Blur", "icon_blur")
    BRIGHT_SPOTS = ("bright_spots", 3, "Bright Spots", "icon_bright_spots")
    CHECK_FAILURE = ("check_failure", 1, "Check Failed", "icon_error")

    def __init__(self, key: str, stage: int, title: str, icon_ref: str):
        self.key = key
        self.default_stage = stage
        self.title = title
        self.icon_ref = icon_ref


@dataclass(frozen=True)
class ValidationWarning:
    """
    One active pipeline warning.

    Attributes:
        kind: What went wrong; unique within a WarningSet.
        stage: Priority tier, 1 (highest) to 3.
        message: User-facing text.
        icon_ref: Icon identifier for the presentation layer.
        created_at: Unix timestamp of the latest raise.
        sequence: Insertion order, kept when the warning is refreshed.
    """

    kind: WarningKind
    stage: int
    message: str
    icon_ref: str
    created_at: float = field(default_factory=time.time)
    sequence: int = 0

    @property
    def title(self) -> str:
        return self.kind.title


class WarningSet:
    """Thread-safe collection of active warnings, one per kind."""

    def __init__(self):
        self._lock = threading.Lock()
        self._warnings: Dict[WarningKind, ValidationWarning] = {}
        self._next_sequence = 0

    def add_or_refresh(
        self, kind: WarningKind, message: str, stage: Optional[int] = None
    ) -> ValidationWarning:
        """
        Raise a warning, or refresh the active one of the same kind.

        Refreshing replaces message and timestamp but keeps the original
        insertion order.
        """
        with self._lock:
            existing = self._warnings.get(kind)
            if existing is not None:
                sequence = existing.sequence
                stage = existing.stage if stage is None else stage
            else:
                sequence = self._next_sequence
                self._next_sequence += 1
                stage = kind.default_stage if stage is None else stage
                logger.debug(f"Warning raised: {kind.title} (stage {stage})")

            warning = ValidationWarning(
                kind=kind,
                stage=stage,
                message=message,
                icon_ref=kind.icon_ref,
                created_at=time.time(),
                sequence=sequence,
            )
            self._warnings[kind] = warning
            return warning

    def clear(self, kind: WarningKind, stage: Optional[int] = None) -> bool:
        """Drop the warning of `kind`; with `stage`, only if it was raised at that stage."""
        with self._lock:
            existing = self._warnings.get(kind)
            if existing is None or (stage is not None and existing.stage != stage):
                return False
            del self._warnings[kind]
            return True

    def clear_stage(self, stage: int) -> None:
        with self._lock:
            for kind in [k for k, w in self._warnings.items() if w.stage == stage]:
                del self._warnings[kind]

    def clear_all(self) -> None:
        with self._lock:
            self._warnings.clear()

    def snapshot(self) -> List[ValidationWarning]:
        """All active warnings sorted by (stage, insertion order)."""
        with self._lock:
            warnings = list(self._warnings.values())
        return sorted(warnings, key=lambda w: (w.stage, w.sequence))

    @property
    def head(self) -> Optional[ValidationWarning]:
        warnings = self.snapshot()
        return warnings[0] if warnings else None

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._warnings)

    def __len__(self) -> int:
        return self.count

    def __contains__(self, kind: WarningKind) -> bool:
        with self._lock:
            return kind in self._warnings
