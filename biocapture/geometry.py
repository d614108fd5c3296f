"""
Geometry Engine Module

Pure functions that map rectangles between the three coordinate spaces
involved in a capture:

    overlay / screen   - where the capture window is drawn for the user
    effective preview  - the sensor image rotated upright, as displayed
    raw sensor         - the unrotated pixel grid delivered by the camera

Mapping a capture window into sensor pixels:
    1. Swap the sensor width/height when the effective rotation is 90 or 270.
    2. Compute the uniform scale and centring offset that place the effective
       image inside the display surface (letterbox by default, never stretch).
    3. Invert scale + offset to bring the window into effective coordinates.
    4. Undo the 90/180/270 rotation with an explicit per-case remap.
    5. Clamp to [0, sensor_width] x [0, sensor_height].

The effective image is the sensor image rotated clockwise by the effective
rotation, which is also what rotate_frame_upright() does to a crop.

Usage:
    from biocapture.geometry import CaptureWindow, Rect, map_window_to_sensor_rect

    window = CaptureWindow.finger(overlay_size=(1080, 1920))
    rect = map_window_to_sensor_rect(window, (1080, 1920), Rect.from_size(1080, 1920), geometry)
    if rect.is_empty:
        # no valid crop
        ...
"""

import logging
import math
import numpy as np
import cv2
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from biocapture.frames import FrameGeometry

logger = logging.getLogger(__name__)


class ScaleMode(Enum):
    """How the preview surface renders the camera image."""

    FIT = "fit"    # letterbox: whole image visible, bars on one axis
    FILL = "fill"  # centre-crop: surface fully covered, image overflows one axis


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle with float edges (left/top inclusive)."""

    left: float
    top: float
    right: float
    bottom: float

    @classmethod
    def from_size(cls, width: float, height: float, x: float = 0.0, y: float = 0.0) -> "Rect":
        return cls(x, y, x + width, y + height)

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.left + self.right) / 2.0, (self.top + self.bottom) / 2.0)

    @property
    def is_empty(self) -> bool:
        """True for zero or negative area."""
        return self.width <= 0 or self.height <= 0

    def intersect(self, other: "Rect") -> "Rect":
        """Intersection with another rect (empty rect when disjoint)."""
        left = max(self.left, other.left)
        top = max(self.top, other.top)
        right = min(self.right, other.right)
        bottom = min(self.bottom, other.bottom)
        if right <= left or bottom <= top:
            return Rect(0.0, 0.0, 0.0, 0.0)
        return Rect(left, top, right, bottom)

    def offset(self, dx: float, dy: float) -> "Rect":
        return Rect(self.left + dx, self.top + dy, self.right + dx, self.bottom + dy)

    def to_int_tuple(self) -> Tuple[int, int, int, int]:
        """Pixel bounds (x1, y1, x2, y2), expanded outward to whole pixels."""
        return (
            int(math.floor(self.left)),
            int(math.floor(self.top)),
            int(math.ceil(self.right)),
            int(math.ceil(self.bottom)),
        )


@dataclass(frozen=True)
class CaptureWindow:
    """
    Region of the overlay the user is asked to place their hand in.

    Attributes:
        center_x: Window centre in overlay pixels.
        center_y: Window centre in overlay pixels.
        half_width: Half the window width in overlay pixels.
        half_height: Half the window height in overlay pixels.
    """

    center_x: float
    center_y: float
    half_width: float
    half_height: float

    def to_rect(self) -> Rect:
        return Rect(
            self.center_x - self.half_width,
            self.center_y - self.half_height,
            self.center_x + self.half_width,
            self.center_y + self.half_height,
        )

    @classmethod
    def from_normalized(
        cls, cx: float, cy: float, width: float, height: float, overlay_size: Tuple[float, float]
    ) -> "CaptureWindow":
        """Window centred at a normalised overlay position with a pixel size."""
        ow, oh = overlay_size
        return cls(cx * ow, cy * oh, width / 2.0, height / 2.0)

    @classmethod
    def palm(cls, overlay_size: Tuple[float, float], fraction: float = 0.8) -> "CaptureWindow":
        """Centred square covering `fraction` of the overlay's short side."""
        ow, oh = overlay_size
        half = min(ow, oh) * fraction / 2.0
        return cls(ow / 2.0, oh / 2.0, half, half)

    @classmethod
    def finger(
        cls,
        overlay_size: Tuple[float, float],
        density: float = 1.0,
        radius_dp: float = 85.0,
        straight_dp: float = 80.0,
    ) -> "CaptureWindow":
        """
        Bounding box of the centred finger stadium: two semicircles of
        `radius_dp` joined by a straight section of `straight_dp`.
        """
        ow, oh = overlay_size
        radius = radius_dp * density
        return cls(ow / 2.0, oh / 2.0, radius, straight_dp * density / 2.0 + radius)


@dataclass(frozen=True)
class PreviewTransform:
    """Uniform scale + offset placing the effective image on the surface."""

    scale: float
    offset_x: float
    offset_y: float
    effective_width: int
    effective_height: int

    def preview_rect(self, surface_rect: Rect) -> Rect:
        """Area of the surface actually covered by the image."""
        left = surface_rect.left + self.offset_x
        top = surface_rect.top + self.offset_y
        return Rect(
            left,
            top,
            left + self.effective_width * self.scale,
            top + self.effective_height * self.scale,
        )


def compute_preview_transform(
    surface_rect: Rect, geometry: FrameGeometry, scale_mode: ScaleMode = ScaleMode.FIT
) -> PreviewTransform:
    """
    Compute how the rotated sensor image is scaled into the display surface.

    FIT picks min(surface_w / eff_w, surface_h / eff_h): a wider image is fit
    to the surface width, a taller one to the surface height. FILL picks the
    other axis so the surface is fully covered.
    """
    eff_w, eff_h = geometry.effective_size
    surface_w, surface_h = surface_rect.width, surface_rect.height
    if surface_w <= 0 or surface_h <= 0:
        raise ValueError(f"Display surface must have positive size, got {surface_w}x{surface_h}")

    image_aspect = eff_w / eff_h
    surface_aspect = surface_w / surface_h
    width_scale = surface_w / eff_w
    height_scale = surface_h / eff_h

    if scale_mode == ScaleMode.FIT:
        scale = width_scale if image_aspect > surface_aspect else height_scale
    else:
        scale = height_scale if image_aspect > surface_aspect else width_scale

    offset_x = (surface_w - eff_w * scale) / 2.0
    offset_y = (surface_h - eff_h * scale) / 2.0

    return PreviewTransform(scale, offset_x, offset_y, eff_w, eff_h)


def effective_to_sensor_point(
    x: float, y: float, rotation: int, sensor_width: float, sensor_height: float
) -> Tuple[float, float]:
    """Undo the upright rotation for one point (effective -> sensor)."""
    if rotation == 0:
        return (x, y)
    if rotation == 90:
        return (y, sensor_height - x)
    if rotation == 180:
        return (sensor_width - x, sensor_height - y)
    if rotation == 270:
        return (sensor_width - y, x)
    raise ValueError(f"Unsupported rotation: {rotation}")


def sensor_to_effective_point(
    x: float, y: float, rotation: int, sensor_width: float, sensor_height: float
) -> Tuple[float, float]:
    """Apply the upright rotation to one point (sensor -> effective)."""
    if rotation == 0:
        return (x, y)
    if rotation == 90:
        return (sensor_height - y, x)
    if rotation == 180:
        return (sensor_width - x, sensor_height - y)
    if rotation == 270:
        return (y, sensor_width - x)
    raise ValueError(f"Unsupported rotation: {rotation}")


def _map_rect_corners(rect: Rect, point_fn) -> Rect:
    x1, y1 = point_fn(rect.left, rect.top)
    x2, y2 = point_fn(rect.right, rect.bottom)
    return Rect(min(x1, x2), min(y1, y2), max(x1, x2), max(y1, y2))


def clamp_rect_to_sensor(rect: Rect, geometry: FrameGeometry) -> Rect:
    """Clamp a rect to [0, sensor_width] x [0, sensor_height]."""
    w, h = geometry.sensor_width, geometry.sensor_height
    return Rect(
        min(max(rect.left, 0.0), w),
        min(max(rect.top, 0.0), h),
        min(max(rect.right, 0.0), w),
        min(max(rect.bottom, 0.0), h),
    )


def _resolve_surface(display_surface_rect: Optional[Rect], geometry: FrameGeometry) -> Rect:
    if display_surface_rect is not None:
        return display_surface_rect
    return Rect.from_size(geometry.display_width, geometry.display_height)


def map_window_to_sensor_rect(
    window: CaptureWindow,
    overlay_size: Optional[Tuple[float, float]],
    display_surface_rect: Optional[Rect],
    geometry: FrameGeometry,
    overlay_origin: Tuple[float, float] = (0.0, 0.0),
    scale_mode: ScaleMode = ScaleMode.FIT,
    clamp: bool = True,
) -> Rect:
    """
    Map an on-screen capture window to a pixel rect in the raw sensor frame.

    Args:
        window: Capture window in overlay coordinates.
        overlay_size: (width, height) of the overlay; the window is clipped to
                      it. None skips the clipping.
        display_surface_rect: Preview surface in screen coordinates. None uses
                              geometry.display_width/height at the origin.
        geometry: Frame orientation and size.
        overlay_origin: Screen position of the overlay's top-left corner.
        scale_mode: How the preview renders the image (FIT or FILL).
        clamp: Clamp the result to the sensor bounds.

    Returns:
        Rect in sensor pixels. An empty rect (see Rect.is_empty) means there
        is no valid crop and the caller must not build an image from it.
    """
    rotation = geometry.effective_rotation
    surface = _resolve_surface(display_surface_rect, geometry)

    window_rect = window.to_rect()
    if overlay_size is not None:
        window_rect = window_rect.intersect(Rect.from_size(*overlay_size))
        if window_rect.is_empty:
            logger.debug("Capture window lies outside the overlay")
            return window_rect

    # Overlay -> screen
    screen_rect = window_rect.offset(*overlay_origin)

    # Screen -> effective image coordinates
    transform = compute_preview_transform(surface, geometry, scale_mode)
    origin_x = surface.left + transform.offset_x
    origin_y = surface.top + transform.offset_y
    effective_rect = Rect(
        (screen_rect.left - origin_x) / transform.scale,
        (screen_rect.top - origin_y) / transform.scale,
        (screen_rect.right - origin_x) / transform.scale,
        (screen_rect.bottom - origin_y) / transform.scale,
    )

    # Effective -> raw sensor
    sensor_w, sensor_h = geometry.sensor_width, geometry.sensor_height
    sensor_rect = _map_rect_corners(
        effective_rect,
        lambda x, y: effective_to_sensor_point(x, y, rotation, sensor_w, sensor_h),
    )

    logger.debug(
        f"Window {window_rect} -> effective {effective_rect} -> sensor {sensor_rect} "
        f"(rotation={rotation}, scale={transform.scale:.4f})"
    )

    if clamp:
        sensor_rect = clamp_rect_to_sensor(sensor_rect, geometry)
    return sensor_rect


def project_sensor_rect_to_screen(
    rect: Rect,
    display_surface_rect: Optional[Rect],
    geometry: FrameGeometry,
    scale_mode: ScaleMode = ScaleMode.FIT,
) -> Rect:
    """Forward projection (sensor -> screen), the inverse of the window mapping."""
    rotation = geometry.effective_rotation
    surface = _resolve_surface(display_surface_rect, geometry)
    transform = compute_preview_transform(surface, geometry, scale_mode)

    sensor_w, sensor_h = geometry.sensor_width, geometry.sensor_height
    effective_rect = _map_rect_corners(
        rect,
        lambda x, y: sensor_to_effective_point(x, y, rotation, sensor_w, sensor_h),
    )
    origin_x = surface.left + transform.offset_x
    origin_y = surface.top + transform.offset_y
    return Rect(
        effective_rect.left * transform.scale + origin_x,
        effective_rect.top * transform.scale + origin_y,
        effective_rect.right * transform.scale + origin_x,
        effective_rect.bottom * transform.scale + origin_y,
    )


def crop_to_rect(image: np.ndarray, rect: Rect) -> Optional[np.ndarray]:
    """
    Crop an image to a sensor rect.

    Returns None when the rect has no area inside the image.
    """
    h, w = image.shape[:2]
    x1, y1, x2, y2 = rect.to_int_tuple()
    x1, y1 = max(0, x1), max(0, y1)
    x2, y2 = min(w, x2), min(h, y2)
    if x2 <= x1 or y2 <= y1:
        return None
    return image[y1:y2, x1:x2]


def rotate_frame_upright(frame: np.ndarray, effective_rotation: int) -> np.ndarray:
    """Rotate a sensor-oriented image clockwise so it appears upright."""
    if effective_rotation == 0:
        return frame
    if effective_rotation == 90:
        return cv2.rotate(frame, cv2.ROTATE_90_CLOCKWISE)
    if effective_rotation == 180:
        return cv2.rotate(frame, cv2.ROTATE_180)
    if effective_rotation == 270:
        return cv2.rotate(frame, cv2.ROTATE_90_COUNTERCLOCKWISE)
    raise ValueError(f"Unsupported rotation: {effective_rotation}")


@dataclass(frozen=True)
class ScreenLayout:
    """
    Everything about the screen needed to crop a frame for the user's window.

    Attributes:
        window: Capture window in overlay coordinates.
        overlay_size: (width, height) of the overlay.
        display_surface_rect: Preview surface in screen coordinates.
        overlay_origin: Screen position of the overlay.
        scale_mode: Preview rendering mode.
    """

    window: CaptureWindow
    overlay_size: Tuple[float, float]
    display_surface_rect: Optional[Rect] = None
    overlay_origin: Tuple[float, float] = (0.0, 0.0)
    scale_mode: ScaleMode = ScaleMode.FIT

    def sensor_rect(self, geometry: FrameGeometry) -> Rect:
        return map_window_to_sensor_rect(
            self.window,
            self.overlay_size,
            self.display_surface_rect,
            geometry,
            overlay_origin=self.overlay_origin,
            scale_mode=self.scale_mode,
        )


def crop_window(image: np.ndarray, layout: ScreenLayout, geometry: FrameGeometry) -> Optional[np.ndarray]:
    """
    Crop `image` (sensor orientation) to the user's window and rotate it upright.

    Returns None when the window maps to no valid crop.
    """
    rect = layout.sensor_rect(geometry)
    if rect.is_empty:
        logger.debug(f"No valid crop for window {layout.window}")
        return None
    cropped = crop_to_rect(image, rect)
    if cropped is None:
        return None
    return rotate_frame_upright(cropped, geometry.effective_rotation)
