"""
Frame Data Module

Data classes for camera frames delivered by the frame source, plus the
per-frame geometry needed to map on-screen regions into sensor pixels.

The frame source is external: it hands over a raw image (decoded BGR/RGB/GRAY
array or a packed YUV buffer) together with the sensor and device rotation
at the moment the frame was produced.

Usage:
    from biocapture.frames import Frame, FrameGeometry

    geometry = FrameGeometry(
        sensor_width=1920, sensor_height=1080,
        sensor_rotation_degrees=90, device_rotation_degrees=0,
        display_width=1080, display_height=1920,
    )
    frame = Frame(image=bgr_image, geometry=geometry)
    bgr = frame.to_bgr()
"""

import time
import numpy as np
import cv2
from dataclasses import dataclass, field
from typing import Tuple


# Pixel formats understood by Frame.to_bgr()
PIXEL_FORMATS = ("BGR", "RGB", "GRAY", "NV21", "I420")


@dataclass(frozen=True)
class FrameGeometry:
    """
    Orientation and size information supplied with every frame.

    Attributes:
        sensor_width: Raw sensor frame width in pixels (unrotated).
        sensor_height: Raw sensor frame height in pixels (unrotated).
        sensor_rotation_degrees: Clockwise rotation of the sensor relative
                                 to the device's natural orientation.
        device_rotation_degrees: Current display rotation of the device.
        display_width: Width of the preview surface in screen pixels.
        display_height: Height of the preview surface in screen pixels.
    """

    sensor_width: int
    sensor_height: int
    sensor_rotation_degrees: int = 0
    device_rotation_degrees: int = 0
    display_width: int = 0
    display_height: int = 0

    def __post_init__(self):
        if self.sensor_width <= 0 or self.sensor_height <= 0:
            raise ValueError(
                f"Sensor size must be positive, got {self.sensor_width}x{self.sensor_height}"
            )
        for name in ("sensor_rotation_degrees", "device_rotation_degrees"):
            value = getattr(self, name)
            if value % 90 != 0:
                raise ValueError(f"{name} must be a multiple of 90, got {value}")

    @property
    def effective_rotation(self) -> int:
        """Combined rotation in {0, 90, 180, 270}."""
        return (self.sensor_rotation_degrees - self.device_rotation_degrees + 360) % 360

    @property
    def sensor_size(self) -> Tuple[int, int]:
        return (self.sensor_width, self.sensor_height)

    @property
    def effective_size(self) -> Tuple[int, int]:
        """Frame size as the user sees it (width/height swapped for 90/270)."""
        if self.effective_rotation in (90, 270):
            return (self.sensor_height, self.sensor_width)
        return (self.sensor_width, self.sensor_height)


@dataclass
class Frame:
    """
    One frame from the camera.

    Attributes:
        image: Pixel data. For BGR/RGB an (H, W, 3) uint8 array, for GRAY
               an (H, W) array, for NV21/I420 the packed (H * 3/2, W) buffer.
        geometry: FrameGeometry describing orientation at capture time.
        pixel_format: One of PIXEL_FORMATS.
        timestamp: Unix timestamp when the frame was produced.
    """

    image: np.ndarray
    geometry: FrameGeometry
    pixel_format: str = "BGR"
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.pixel_format not in PIXEL_FORMATS:
            raise ValueError(
                f"Unsupported pixel format '{self.pixel_format}'. "
                f"Expected one of {PIXEL_FORMATS}"
            )

    @property
    def width(self) -> int:
        return self.geometry.sensor_width

    @property
    def height(self) -> int:
        return self.geometry.sensor_height

    def to_bgr(self) -> np.ndarray:
        """
        Decode the frame into a BGR uint8 image of sensor size.

        YUV buffers (NV21 from Android-style cameras, I420 planar) are
        converted with OpenCV; the chroma planes are stored after the
        luma plane, so the buffer has H * 3/2 rows.
        """
        if self.pixel_format == "BGR":
            return self.image
        if self.pixel_format == "RGB":
            return cv2.cvtColor(self.image, cv2.COLOR_RGB2BGR)
        if self.pixel_format == "GRAY":
            return cv2.cvtColor(self.image, cv2.COLOR_GRAY2BGR)

        expected_rows = self.height * 3 // 2
        yuv = np.asarray(self.image, dtype=np.uint8).reshape(expected_rows, self.width)
        if self.pixel_format == "NV21":
            return cv2.cvtColor(yuv, cv2.COLOR_YUV2BGR_NV21)
        return cv2.cvtColor(yuv, cv2.COLOR_YUV2BGR_I420)

    def luma(self) -> np.ndarray:
        """Return the luma (grayscale) plane."""
        if self.pixel_format in ("NV21", "I420"):
            flat = np.asarray(self.image, dtype=np.uint8).reshape(-1)
            return flat[: self.width * self.height].reshape(self.height, self.width)
        if self.pixel_format == "GRAY":
            return self.image
        code = cv2.COLOR_RGB2GRAY if self.pixel_format == "RGB" else cv2.COLOR_BGR2GRAY
        return cv2.cvtColor(self.image, code)

    def mean_luma(self) -> float:
        """Average brightness in [0, 255]."""
        return float(np.mean(self.luma()))
