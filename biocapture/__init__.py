"""
Core Module for the Guided Biometric Capture System

This package contains the capture session state machine, the geometry
engine that maps the on-screen window into sensor pixels, and the staged
validation pipeline that collects good finger crops.

Main components:
    - config: Configuration loading and management
    - geometry: Screen window -> sensor rect mapping
    - state_machine: Palm / finger / verification capture session
    - validation_pipeline: Staged quality checks and accepted frames
    - capture_coordinator: Shutter flow (crop, blur gate, store, confirm)
    - storage: Frame files and resumable session progress
    - hand_detector: MediaPipe hand landmarks (imported on demand)

Usage:
    from biocapture.config import get_config
    from biocapture.state_machine import get_state_machine
    from biocapture.validation_pipeline import get_validation_pipeline
    from biocapture.hand_detector import get_hand_detector
"""

from biocapture.config import (
    get_config,
    get_section,
    get_section_or_default,
)

from biocapture.frames import Frame, FrameGeometry

from biocapture.geometry import (
    Rect,
    CaptureWindow,
    ScaleMode,
    ScreenLayout,
    map_window_to_sensor_rect,
    project_sensor_rect_to_screen,
    crop_window,
)

from biocapture.landmarks import HandObservation, HandSide, Finger, PlacementWindow

from biocapture.state_machine import CaptureSessionStateMachine, get_state_machine

from biocapture.validation_pipeline import (
    ValidationPipeline,
    AcceptedFrame,
    ProcessingStage,
    get_validation_pipeline,
)

from biocapture.storage import FrameStore, SessionSnapshot, get_frame_store, get_session_store

from biocapture.service import CaptureService, create_capture_service

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_section_or_default",
    # Frames and geometry
    "Frame",
    "FrameGeometry",
    "Rect",
    "CaptureWindow",
    "ScaleMode",
    "ScreenLayout",
    "map_window_to_sensor_rect",
    "project_sensor_rect_to_screen",
    "crop_window",
    # Hand landmarks
    "HandObservation",
    "HandSide",
    "Finger",
    "PlacementWindow",
    # Capture session
    "CaptureSessionStateMachine",
    "get_state_machine",
    # Validation pipeline
    "ValidationPipeline",
    "AcceptedFrame",
    "ProcessingStage",
    "get_validation_pipeline",
    # Storage
    "FrameStore",
    "SessionSnapshot",
    "get_frame_store",
    "get_session_store",
    # Service
    "CaptureService",
    "create_capture_service",
]
