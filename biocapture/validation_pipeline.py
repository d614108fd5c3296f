"""
Validation Pipeline Module

Runs incoming camera frames through staged quality checks until enough
good crops have been collected.

    INITIAL_CHECKS  low light + liveness      (concurrent)
    SEGMENTATION    finger segmentation
    QUALITY_CHECKS  blur + bright spots        (concurrent)
    COMPLETED       REQUIRED_COUNT frames accepted

Each frame is first cropped to the capture window through the geometry
engine; a frame without a valid crop is dropped silently. A failing check
raises (or refreshes) its warning and stops the frame; a passing check
clears its warning. A frame that passes every stage is appended to the
bounded accepted-frame buffer with quality = mean(blur, bright-spot
confidence).

At most one frame is in flight: submit() never blocks and drops the frame
if a run is already in progress or the pipeline has completed. clear()
may be called at any time; results of a run started before it are
discarded.

Usage:
    from biocapture.validation_pipeline import get_validation_pipeline

    pipeline = get_validation_pipeline(layout=layout)
    pipeline.add_completion_listener(lambda frames: print("done", frames))

    # Camera callback:
    pipeline.submit(frame)

    # UI:
    head = pipeline.head_warning
    count = pipeline.warning_count
"""

import time
import uuid
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from biocapture.checks import CheckResult, CheckSuite, QualityChecker
from biocapture.exceptions import ConfigurationError, DetectorFailureError, StorageError, log_error
from biocapture.frames import Frame
from biocapture.geometry import ScreenLayout, crop_window, rotate_frame_upright
from biocapture.validation_warnings import ValidationWarning, WarningKind, WarningSet

logger = logging.getLogger(__name__)


REQUIRED_COUNT = 3
MAX_BUFFER_SIZE = 5
CHECK_TIMEOUT_S = 5.0


class ProcessingStage(Enum):
    INITIAL_CHECKS = 1
    SEGMENTATION = 2
    QUALITY_CHECKS = 3
    COMPLETED = 4


@dataclass(frozen=True)
class AcceptedFrame:
    """
    A crop that passed every validation stage.

    Attributes:
        frame_ref: Stored-frame handle (file path, or "memory://<id>" when
                   the pipeline has no frame store).
        quality_score: Mean confidence of the stage-3 checks, 0.0 to 1.0.
        timestamp: Unix timestamp of the source frame.
        image: The upright BGR crop.
    """

    frame_ref: str
    quality_score: float
    timestamp: float
    image: Optional[np.ndarray] = field(default=None, compare=False, repr=False)


class AcceptedFrameBuffer:
    """Ordered, bounded buffer of accepted frames; oldest evicted first."""

    def __init__(self, max_size: int = MAX_BUFFER_SIZE):
        self.max_size = max_size
        self._lock = threading.Lock()
        self._frames = deque(maxlen=max_size)

    def append(self, frame: AcceptedFrame) -> Optional[AcceptedFrame]:
        """Add a frame; returns the evicted frame, if any."""
        with self._lock:
            evicted = self._frames[0] if len(self._frames) == self.max_size else None
            self._frames.append(frame)
            return evicted

    def snapshot(self) -> List[AcceptedFrame]:
        with self._lock:
            return list(self._frames)

    def clear(self) -> None:
        with self._lock:
            self._frames.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)


class _DroppedFrame(Exception):
    """Internal: the current frame must be dropped."""


class ValidationPipeline:
    """
    Staged, partially parallel frame validator.

    The warning set and accepted-frame buffer are owned by the pipeline and
    only exposed as snapshots.
    """

    def __init__(
        self,
        checks: CheckSuite,
        config: Optional[Dict[str, Any]] = None,
        layout: Optional[ScreenLayout] = None,
        frame_store=None,
    ):
        """
        Initialize the pipeline.

        Args:
            checks: The five checkers to run.
            config: `pipeline` section of the config, containing:
                - required_count: Accepted frames needed to complete (default: 3)
                - max_buffer_size: Accepted-frame buffer bound (default: 5)
                - check_timeout_s: Per-check timeout; expiry drops the frame
                - max_workers: Thread pool size for concurrent checks
            layout: Screen layout used to crop frames. If None, the whole
                    frame (rotated upright) is validated.
            frame_store: Optional FrameStore that persists accepted crops.
        """
        config = config or {}
        self.checks = checks
        self.required_count = config.get("required_count", REQUIRED_COUNT)
        if self.required_count < 1:
            raise ConfigurationError("pipeline.required_count", self.required_count, "must be at least 1")
        self.check_timeout_s = config.get("check_timeout_s", CHECK_TIMEOUT_S)
        self.frame_store = frame_store
        self._layout = layout

        max_buffer_size = max(config.get("max_buffer_size", MAX_BUFFER_SIZE), self.required_count)
        self._buffer = AcceptedFrameBuffer(max_buffer_size)
        self._warnings = WarningSet()

        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._stage = ProcessingStage.INITIAL_CHECKS
        self._epoch = 0
        self._in_flight = False
        self._closed = False

        self._run_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pipeline")
        self._check_executor = ThreadPoolExecutor(
            max_workers=config.get("max_workers", 4), thread_name_prefix="pipeline-check"
        )

        self._accepted_listeners: List[Callable[[AcceptedFrame], None]] = []
        self._completion_listeners: List[Callable[[List[AcceptedFrame]], None]] = []
        self._warning_listeners: List[Callable[[List[ValidationWarning]], None]] = []

        logger.info(
            f"ValidationPipeline initialized: required={self.required_count}, "
            f"buffer={max_buffer_size}, timeout={self.check_timeout_s}s"
        )

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @property
    def stage(self) -> ProcessingStage:
        with self._lock:
            return self._stage

    @property
    def is_complete(self) -> bool:
        return self.stage == ProcessingStage.COMPLETED

    @property
    def epoch(self) -> int:
        with self._lock:
            return self._epoch

    @property
    def warnings(self) -> List[ValidationWarning]:
        """Active warnings sorted by (stage, insertion order)."""
        return self._warnings.snapshot()

    @property
    def head_warning(self) -> Optional[ValidationWarning]:
        return self._warnings.head

    @property
    def warning_count(self) -> int:
        return self._warnings.count

    @property
    def accepted_frames(self) -> List[AcceptedFrame]:
        return self._buffer.snapshot()

    @property
    def accepted_count(self) -> int:
        return len(self._buffer)

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    def set_layout(self, layout: Optional[ScreenLayout]) -> None:
        """Change the capture window used for cropping (e.g. palm -> finger)."""
        with self._lock:
            self._layout = layout

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_accepted_listener(self, callback: Callable[[AcceptedFrame], None]) -> None:
        self._accepted_listeners.append(callback)

    def add_completion_listener(self, callback: Callable[[List[AcceptedFrame]], None]) -> None:
        self._completion_listeners.append(callback)

    def add_warning_listener(self, callback: Callable[[List[ValidationWarning]], None]) -> None:
        self._warning_listeners.append(callback)

    def _notify(self, listeners: Sequence[Callable], payload) -> None:
        for callback in list(listeners):
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Pipeline listener {callback!r} failed")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, frame: Frame) -> bool:
        """
        Hand a frame to the pipeline without blocking.

        Returns:
            True if the frame was accepted for processing, False if it was
            dropped (run in flight, pipeline completed or shut down).
        """
        with self._lock:
            if self._closed or self._in_flight or self._stage == ProcessingStage.COMPLETED:
                return False
            self._in_flight = True

        try:
            self._run_executor.submit(self._run, frame)
        except RuntimeError:
            with self._lock:
                self._in_flight = False
                self._idle.notify_all()
            return False
        return True

    def _run(self, frame: Frame) -> None:
        try:
            self._process_frame(frame)
        except Exception:
            logger.exception("Unexpected error while validating frame")
        finally:
            with self._lock:
                self._in_flight = False
                self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no frame is in flight. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_frame(self, frame: Frame) -> Optional[AcceptedFrame]:
        """
        Run one frame through every stage synchronously.

        Takes the same in-flight slot as submit(), so a frame arriving while
        another run is in progress is dropped.

        Returns:
            The AcceptedFrame if the frame passed every stage and the run was
            not cancelled, otherwise None.
        """
        with self._lock:
            if self._closed or self._in_flight:
                logger.debug("process_frame dropped: run already in flight")
                return None
            self._in_flight = True
        try:
            return self._process_frame(frame)
        finally:
            with self._lock:
                self._in_flight = False
                self._idle.notify_all()

    def _process_frame(self, frame: Frame) -> Optional[AcceptedFrame]:
        with self._lock:
            if self._stage == ProcessingStage.COMPLETED:
                return None
            epoch = self._epoch
            layout = self._layout

        crop = self._crop(frame, layout)
        if crop is None:
            return None

        try:
            self._run_stage(
                epoch, ProcessingStage.INITIAL_CHECKS,
                [self.checks.low_light, self.checks.liveness], crop,
            )
            self._run_stage(epoch, ProcessingStage.SEGMENTATION, [self.checks.segmentation], crop)
            results = self._run_stage(
                epoch, ProcessingStage.QUALITY_CHECKS,
                [self.checks.blur, self.checks.bright_spots], crop,
            )
        except _DroppedFrame:
            return None

        quality_score = float(np.mean([r.confidence for r in results]))
        return self._accept(epoch, frame, crop, quality_score)

    def _crop(self, frame: Frame, layout: Optional[ScreenLayout]) -> Optional[np.ndarray]:
        try:
            image = frame.to_bgr()
            if layout is None:
                return rotate_frame_upright(image, frame.geometry.effective_rotation)
            crop = crop_window(image, layout, frame.geometry)
        except (ValueError, cv2.error) as e:
            logger.warning(f"Dropping frame that could not be cropped: {e}")
            return None
        if crop is None or crop.size == 0:
            logger.debug("No valid crop; frame dropped")
            return None
        return crop

    def _run_stage(
        self,
        epoch: int,
        stage: ProcessingStage,
        checkers: List[QualityChecker],
        image: np.ndarray,
    ) -> List[CheckResult]:
        """Run one stage's checks concurrently and apply their warnings."""
        with self._lock:
            if epoch != self._epoch:
                raise _DroppedFrame()
            if stage.value > self._stage.value:
                self._stage = stage

        futures = [(checker, self._check_executor.submit(checker.check, image)) for checker in checkers]
        deadline = time.monotonic() + self.check_timeout_s

        returned: List[Tuple[QualityChecker, CheckResult]] = []
        failures: List[str] = []
        for checker, future in futures:
            try:
                returned.append(
                    (checker, future.result(timeout=max(0.0, deadline - time.monotonic())))
                )
            except FuturesTimeoutError:
                for _, pending in futures:
                    pending.cancel()
                logger.warning(
                    f"{checker.kind.title} check timed out after {self.check_timeout_s}s; frame dropped"
                )
                raise _DroppedFrame()
            except Exception as e:
                error = DetectorFailureError(f"{checker.kind.title} check", f"{type(e).__name__}: {e}")
                log_error(error, logging.WARNING)
                failures.append(error.message)

        changed = False
        with self._lock:
            if epoch != self._epoch:
                raise _DroppedFrame()
            for checker, result in returned:
                if result.passed:
                    changed = self._warnings.clear(checker.kind) or changed
                else:
                    kind = result.warning_kind or checker.kind
                    self._warnings.add_or_refresh(
                        kind, result.message or checker.failure_message, stage=stage.value
                    )
                    changed = True
            if failures:
                self._warnings.add_or_refresh(
                    WarningKind.CHECK_FAILURE, failures[0], stage=stage.value
                )
                changed = True
            else:
                changed = self._warnings.clear(WarningKind.CHECK_FAILURE, stage=stage.value) or changed
            snapshot = self._warnings.snapshot() if changed else None

        if snapshot is not None:
            self._notify(self._warning_listeners, snapshot)

        results = [result for _, result in returned]
        if failures or not all(r.passed for r in results):
            logger.debug(f"Frame stopped at {stage.name}")
            raise _DroppedFrame()
        return results

    def _accept(
        self, epoch: int, frame: Frame, crop: np.ndarray, quality_score: float
    ) -> Optional[AcceptedFrame]:
        if self.frame_store is not None:
            try:
                frame_ref = self.frame_store.save(crop, None, "Accepted")
            except StorageError as e:
                logger.error(f"Could not store accepted frame: {e.message}")
                return None
        else:
            frame_ref = f"memory://{uuid.uuid4().hex}"

        accepted = AcceptedFrame(frame_ref, quality_score, frame.timestamp, crop)
        with self._lock:
            if epoch != self._epoch or self._stage == ProcessingStage.COMPLETED:
                logger.debug(f"Discarding result of cancelled run: {frame_ref}")
                stale = True
            else:
                stale = False
                evicted = self._buffer.append(accepted)
                if evicted is not None:
                    logger.debug(f"Evicted oldest accepted frame {evicted.frame_ref}")
                completed = len(self._buffer) >= self.required_count
                if completed:
                    self._stage = ProcessingStage.COMPLETED
                    self._warnings.clear_all()
                else:
                    self._stage = ProcessingStage.INITIAL_CHECKS
                frames = self._buffer.snapshot()

        if stale:
            if self.frame_store is not None:
                self._delete_quietly(frame_ref)
            return None

        logger.info(
            f"Accepted frame {len(frames)}/{self.required_count} (quality={quality_score:.2f})"
        )
        self._notify(self._accepted_listeners, accepted)
        if completed:
            logger.info("Validation complete")
            self._notify(self._warning_listeners, [])
            self._notify(self._completion_listeners, frames)
        return accepted

    def _delete_quietly(self, frame_ref: str) -> None:
        try:
            self.frame_store.delete(frame_ref)
        except StorageError as e:
            logger.warning(f"Could not delete discarded frame {frame_ref}: {e.message}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def clear(self) -> None:
        """Start a new run: drop warnings and accepted frames, cancel any in-flight result."""
        with self._lock:
            self._epoch += 1
            self._stage = ProcessingStage.INITIAL_CHECKS
            self._buffer.clear()
            self._warnings.clear_all()
        logger.info("Validation pipeline cleared")
        self._notify(self._warning_listeners, [])

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            self._epoch += 1
        self._run_executor.shutdown(wait=wait)
        self._check_executor.shutdown(wait=wait)
        logger.info("Validation pipeline shut down")


def get_validation_pipeline(
    config: Optional[Dict[str, Any]] = None,
    checks: Optional[CheckSuite] = None,
    layout: Optional[ScreenLayout] = None,
    frame_store=None,
) -> ValidationPipeline:
    """
    Factory function to get a ValidationPipeline.

    Args:
        config: Optional `pipeline` config dict. If None, loads from config.yaml.
        checks: Optional CheckSuite. If None, the OpenCV heuristic checks.
        layout: Optional screen layout for cropping.
        frame_store: Optional FrameStore for accepted crops.
    """
    if config is None:
        from biocapture.config import get_section_or_default
        config = get_section_or_default("pipeline")
    if checks is None:
        from biocapture.checks import get_check_suite
        checks = get_check_suite()

    return ValidationPipeline(checks, config=config, layout=layout, frame_store=frame_store)


if __name__ == "__main__":
    from biocapture.frames import FrameGeometry

    logging.basicConfig(level=logging.INFO)

    pipeline = ValidationPipeline(CheckSuite.stubs())
    geometry = FrameGeometry(640, 480)
    image = np.random.randint(0, 255, (480, 640, 3), dtype=np.uint8)

    while not pipeline.is_complete:
        pipeline.process_frame(Frame(image, geometry))

    print(f"Accepted: {[f.frame_ref for f in pipeline.accepted_frames]}")
    pipeline.shutdown()
